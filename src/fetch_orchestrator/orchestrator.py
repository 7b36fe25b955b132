"""
Request orchestrator: the façade every outbound call flows through.

caller -> dedupe (InFlightRegistry) -> batching (BatchCoalescer, optional)
       -> Transport -> on AuthFailure, CredentialRefresher -> retry (RetryPolicy)
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Set

from .auth import create_auth_handler
from .batching import BatchCoalescer
from .cancellation import CancellationToken, race
from .config import OrchestratorConfig, merge_config, validate_config
from .credentials import CredentialRefresher
from .errors import AuthFailure, CancelledFailure, NetworkFailure, OrchestratorError
from .fingerprint import generate_fingerprint
from .registry import InFlightRegistry, ResultHandle
from .retry import RetryExecutor, RetryPolicy
from .types import (
    CallOptions,
    CredentialProvider,
    OrchestratorEvent,
    OrchestratorEventListener,
    OrchestratorEventType,
    RequestDescriptor,
    RetryDecision,
    RetryState,
    Transport,
)

logger = logging.getLogger(__name__)


class RequestOrchestrator:
    """
    RequestOrchestrator - deduplicated, batched, retried and re-authenticated calls.

    Per logical call:
        PENDING -> (DEDUPED | DISPATCHED) -> [AUTH_RETRY] -> (SUCCESS | FAILED | CANCELLED)

    Registry, credential state and batch windows belong to this instance, so
    several orchestrators (e.g. one per backend) can coexist in a process.

    Example:
        orchestrator = RequestOrchestrator(HttpxTransport("https://api.example.com"), credentials)

        # 20 concurrent identical reads -> one transport call
        users = await asyncio.gather(*[orchestrator.get("/users") for _ in range(20)])

        # search-as-you-type: each keystroke supersedes the previous search
        await orchestrator.get("/search", params={"q": text}, slot="search")
    """

    def __init__(
        self,
        transport: Transport,
        credentials: Optional[CredentialProvider] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self._config = merge_config(config)
        validate_config(self._config)

        self._transport = transport
        self._refresher = CredentialRefresher(credentials) if credentials is not None else None
        self._auth_handler = create_auth_handler(self._config.auth)
        self._registry = InFlightRegistry()
        self._batcher = BatchCoalescer(
            self._send_batch,
            delay_seconds=self._config.batch.delay_seconds,
            max_batch_size=self._config.batch.max_batch_size,
            on_flush=self._on_batch_flush,
        )
        self._slots: Dict[str, CancellationToken] = {}
        self._slot_handles: Dict[str, ResultHandle] = {}
        self._listeners: Set[OrchestratorEventListener] = set()
        self._closed = False

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def registry(self) -> InFlightRegistry:
        return self._registry

    @property
    def refresher(self) -> Optional[CredentialRefresher]:
        return self._refresher

    @property
    def batcher(self) -> BatchCoalescer:
        return self._batcher

    def supports_dedupe(self, method: str) -> bool:
        """Check if a method is eligible for deduplication."""
        return method.upper() in {m.upper() for m in self._config.dedupe.methods}

    def fingerprint(self, descriptor: RequestDescriptor) -> str:
        return generate_fingerprint(descriptor, self._config.dedupe.header_keys)

    async def call(
        self,
        descriptor: RequestDescriptor,
        options: Optional[CallOptions] = None,
    ) -> Any:
        """
        Issue a call and return its payload.

        Raises:
            OrchestratorError: The terminal failure, shared verbatim with every
                waiter of a deduplicated or batched operation
        """
        if self._closed:
            raise RuntimeError("Orchestrator has been closed")

        opts = options or CallOptions()
        token = self._open_slot(opts, descriptor)
        fingerprint = self.fingerprint(descriptor)
        key = f"{descriptor.method.upper()} {descriptor.target}"

        try:
            token.raise_if_cancelled()

            if opts.dedupe and self.supports_dedupe(descriptor.method):
                handle = self._registry.acquire(
                    fingerprint,
                    lambda signal: self._run(descriptor, opts, signal),
                )
                if opts.slot is not None:
                    self._slot_handles[opts.slot] = handle
                self._emit(
                    OrchestratorEventType.DEDUPE_JOIN if handle.shared else OrchestratorEventType.DEDUPE_LEAD,
                    key,
                    {"fingerprint": fingerprint, "waiters": self._registry.get_waiters(fingerprint)},
                )
                result = await handle.wait(token)
            else:
                result = await race(self._run(descriptor, opts, token), token)

        except CancelledFailure as failure:
            self._emit(OrchestratorEventType.CANCELLED, key, {"reason": str(failure)})
            raise
        except OrchestratorError as failure:
            self._emit(
                OrchestratorEventType.FAILURE,
                key,
                {"category": failure.category.value, "error": str(failure)},
            )
            raise
        finally:
            self._close_slot(opts, token)

        self._emit(OrchestratorEventType.SUCCESS, key)
        return result

    def _open_slot(self, opts: CallOptions, descriptor: RequestDescriptor) -> CancellationToken:
        token = CancellationToken.linked(opts.cancellation_token, descriptor.cancellation_token)
        if opts.slot is None:
            return token

        previous = self._slots.get(opts.slot)
        if previous is not None:
            logger.debug(f"RequestOrchestrator: superseding previous call in slot {opts.slot!r}")
            self._emit(OrchestratorEventType.SUPERSEDED, opts.slot)
            reason = f"superseded by a newer call in slot {opts.slot!r}"
            previous.cancel(reason)
            # Detach before acquiring so the new call cannot join the superseded operation
            handle = self._slot_handles.pop(opts.slot, None)
            if handle is not None:
                handle.release(reason)
        self._slots[opts.slot] = token
        return token

    def _close_slot(self, opts: CallOptions, token: CancellationToken) -> None:
        if opts.slot is not None and self._slots.get(opts.slot) is token:
            del self._slots[opts.slot]
            self._slot_handles.pop(opts.slot, None)
        token.dispose()

    async def _run(
        self,
        descriptor: RequestDescriptor,
        opts: CallOptions,
        signal: CancellationToken,
    ) -> Any:
        if opts.batchable and self._config.batch.enabled:
            self._emit(
                OrchestratorEventType.DISPATCH,
                descriptor.target,
                {"batched": True},
            )
            return await race(self._batcher.enqueue(descriptor), signal)

        self._emit(OrchestratorEventType.DISPATCH, descriptor.target, {"batched": False})
        return await self._execute(descriptor, opts.retry or self._config.retry, signal)

    async def _execute(
        self,
        descriptor: RequestDescriptor,
        policy: Optional[RetryPolicy],
        signal: CancellationToken,
    ) -> Any:
        def on_wait(state: RetryState, decision: RetryDecision) -> None:
            self._emit(
                OrchestratorEventType.RETRY_WAIT,
                descriptor.target,
                {
                    "attempt": state.attempt,
                    "delay_seconds": decision.delay_seconds,
                    "error": str(state.last_failure),
                },
            )

        executor = RetryExecutor(policy, on_wait=on_wait)
        return await executor.execute(
            lambda state: self._attempt(descriptor, state, signal),
            signal,
        )

    async def _attempt(
        self,
        descriptor: RequestDescriptor,
        state: RetryState,
        signal: CancellationToken,
    ) -> Any:
        credential = self._refresher.current() if self._refresher is not None else None
        try:
            return await self._send(descriptor, credential, signal)
        except AuthFailure:
            if self._refresher is None or state.auth_refreshed:
                raise
            state.auth_refreshed = True

        self._emit(OrchestratorEventType.AUTH_REFRESH, descriptor.target)
        credential = await self._refresher.refresh(stale=credential, token=signal)
        # A second AuthFailure propagates without another refresh cycle
        return await self._send(descriptor, credential, signal)

    async def _send(
        self,
        descriptor: RequestDescriptor,
        credential: Optional[str],
        signal: CancellationToken,
    ) -> Any:
        signal.raise_if_cancelled()

        request = descriptor
        header = self._auth_handler.get_header(credential)
        if header:
            request = descriptor.with_headers(header)

        try:
            return await race(self._transport.send(request, signal), signal)
        except OrchestratorError:
            raise
        except (OSError, asyncio.TimeoutError) as error:
            raise NetworkFailure(str(error) or type(error).__name__, cause=error) from error

    async def _send_batch(
        self,
        target: str,
        descriptors: List[RequestDescriptor],
        signal: CancellationToken,
    ) -> Any:
        composite = RequestDescriptor(
            target=self._config.batch.target,
            method=self._config.batch.method,
            body=[{"target": d.target, "params": d.payload} for d in descriptors],
        )
        return await self._execute(composite, self._config.retry, signal)

    def _on_batch_flush(self, key: str, size: int) -> None:
        self._emit(OrchestratorEventType.BATCH_FLUSH, key, {"size": size})

    async def request(
        self,
        method: str,
        target: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        dedupe: bool = True,
        batchable: bool = False,
        retry: Optional[RetryPolicy] = None,
        cancellation_token: Optional[CancellationToken] = None,
        slot: Optional[str] = None,
    ) -> Any:
        """Build a descriptor and route it through call()."""
        descriptor = RequestDescriptor(
            target=target,
            method=method.upper(),
            params=params,
            body=body,
            headers=dict(headers or {}),
        )
        options = CallOptions(
            dedupe=dedupe,
            batchable=batchable,
            retry=retry,
            cancellation_token=cancellation_token,
            slot=slot,
        )
        return await self.call(descriptor, options)

    async def get(self, target: str, **kwargs: Any) -> Any:
        """GET request."""
        return await self.request("GET", target, **kwargs)

    async def post(self, target: str, **kwargs: Any) -> Any:
        """POST request."""
        return await self.request("POST", target, **kwargs)

    async def put(self, target: str, **kwargs: Any) -> Any:
        """PUT request."""
        return await self.request("PUT", target, **kwargs)

    async def patch(self, target: str, **kwargs: Any) -> Any:
        """PATCH request."""
        return await self.request("PATCH", target, **kwargs)

    async def delete(self, target: str, **kwargs: Any) -> Any:
        """DELETE request."""
        return await self.request("DELETE", target, **kwargs)

    def on(self, listener: OrchestratorEventListener):
        """Add event listener. Returns a function removing it."""
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def off(self, listener: OrchestratorEventListener) -> None:
        """Remove event listener."""
        self._listeners.discard(listener)

    def _emit(
        self,
        event_type: OrchestratorEventType,
        key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._listeners:
            return
        event = OrchestratorEvent(type=event_type, key=key, timestamp=time.time(), metadata=metadata)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"RequestOrchestrator: listener failed on {event_type.value}")

    def get_stats(self) -> dict:
        """Get statistics about in-flight work."""
        return {
            "in_flight": self._registry.size,
            "batch_windows": self._batcher.open_windows,
            "batch_flushes": self._batcher.pending_flushes,
            "slots": len(self._slots),
            "refresh_count": self._refresher.refresh_count if self._refresher else 0,
            "credential_status": self._refresher.status.value if self._refresher else None,
        }

    async def close(self) -> None:
        """Abort in-flight work and close the transport."""
        if self._closed:
            return
        self._closed = True

        for token in list(self._slots.values()):
            token.cancel("orchestrator closed")
        self._slots.clear()
        self._slot_handles.clear()
        self._registry.close()
        self._batcher.close()
        if self._refresher is not None:
            self._refresher.close()

        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "RequestOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
