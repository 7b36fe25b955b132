"""
In-flight request registry (singleflight).

When several callers issue an equivalent request concurrently, only one
operation runs and every caller receives its outcome.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

from .cancellation import CancellationToken, consume_exception, race
from .errors import CancelledFailure
from .types import InFlightEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

StartFn = Callable[[CancellationToken], Awaitable[T]]


class ResultHandle(Generic[T]):
    """
    A caller's view of an in-flight operation.

    Leaders and joiners get the same kind of handle; `shared` only tells them
    apart for diagnostics.
    """

    def __init__(self, registry: "InFlightRegistry", entry: InFlightEntry, shared: bool) -> None:
        self._registry = registry
        self._entry = entry
        self._shared = shared
        self._released = False

    @property
    def fingerprint(self) -> str:
        return self._entry.fingerprint

    @property
    def shared(self) -> bool:
        return self._shared

    @property
    def done(self) -> bool:
        return self._entry.future.done()

    async def wait(self, token: Optional[CancellationToken] = None) -> T:
        """
        Wait for the shared outcome.

        Cancelling `token` detaches this caller only. The operation is aborted
        once its last waiter detaches.
        """
        try:
            return await race(self._entry.future, token, abandon=False)
        finally:
            self.release()

    def release(self, reason: str = "all waiters detached") -> None:
        """Stop waiting. Idempotent. `reason` is used if this aborts the operation."""
        if self._released:
            return
        self._released = True
        self._registry._release(self._entry, reason)


class InFlightRegistry:
    """
    InFlightRegistry - at most one live operation per fingerprint.

    Example:
        registry = InFlightRegistry()

        # These 50 concurrent calls result in only 1 actual fetch
        async def fetch_data():
            handle = registry.acquire(fingerprint, lambda signal: transport.send(d, signal))
            return await handle.wait()

        results = await asyncio.gather(*[fetch_data() for _ in range(50)])
    """

    def __init__(self) -> None:
        self._entries: Dict[str, InFlightEntry] = {}

    def acquire(self, fingerprint: str, start_fn: StartFn) -> ResultHandle:
        """
        Join the in-flight operation for `fingerprint`, or start one.

        `start_fn` receives the operation's abort signal. If it raises
        synchronously, nothing is registered and the error propagates.
        Must be called from a running event loop.
        """
        existing = self._entries.get(fingerprint)
        if existing is not None:
            existing.waiters += 1
            logger.debug(
                f"InFlightRegistry.acquire: joined {fingerprint[:12]} "
                f"(waiters={existing.waiters})"
            )
            return ResultHandle(self, existing, shared=True)

        signal = CancellationToken()
        awaitable = start_fn(signal)

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(consume_exception)
        entry = InFlightEntry(
            fingerprint=fingerprint,
            future=future,
            signal=signal,
            waiters=1,
            started_at=time.monotonic(),
        )
        self._entries[fingerprint] = entry
        entry.task = asyncio.ensure_future(self._run(entry, awaitable))

        logger.debug(f"InFlightRegistry.acquire: leading {fingerprint[:12]}")
        return ResultHandle(self, entry, shared=False)

    async def do(
        self,
        fingerprint: str,
        start_fn: StartFn,
        token: Optional[CancellationToken] = None,
    ) -> T:
        """Acquire and wait in one step."""
        return await self.acquire(fingerprint, start_fn).wait(token)

    async def _run(self, entry: InFlightEntry, awaitable: Awaitable) -> None:
        # The entry leaves the registry before the future settles, so a caller
        # woken by settlement can never join the finished operation.
        try:
            value = await awaitable
        except asyncio.CancelledError:
            self._discard(entry)
            self._settle_aborted(entry, entry.signal.reason or "operation aborted")
            raise
        except Exception as error:
            self._discard(entry)
            logger.debug(
                f"InFlightRegistry: {entry.fingerprint[:12]} failed: {error!r} "
                f"(waiters={entry.waiters})"
            )
            if not entry.future.done():
                entry.future.set_exception(error)
        else:
            self._discard(entry)
            if not entry.future.done():
                entry.future.set_result(value)

    @staticmethod
    def _settle_aborted(entry: InFlightEntry, reason: str) -> None:
        if not entry.future.done():
            entry.future.set_exception(CancelledFailure(reason, detail=reason))

    def _discard(self, entry: InFlightEntry) -> None:
        if self._entries.get(entry.fingerprint) is entry:
            del self._entries[entry.fingerprint]

    def _release(self, entry: InFlightEntry, reason: str) -> None:
        entry.waiters -= 1
        if entry.waiters > 0 or entry.future.done():
            return
        logger.debug(f"InFlightRegistry: last waiter left {entry.fingerprint[:12]}, aborting")
        self._abort(entry, reason)

    def _abort(self, entry: InFlightEntry, reason: str) -> None:
        self._discard(entry)
        entry.signal.cancel(reason)
        self._settle_aborted(entry, reason)
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()

    def is_in_flight(self, fingerprint: str) -> bool:
        """Check if an operation is in flight for `fingerprint`."""
        return fingerprint in self._entries

    def get_waiters(self, fingerprint: str) -> int:
        """Number of callers waiting on `fingerprint`."""
        entry = self._entries.get(fingerprint)
        return entry.waiters if entry else 0

    @property
    def size(self) -> int:
        return len(self._entries)

    def close(self) -> None:
        """Abort every in-flight operation."""
        for entry in list(self._entries.values()):
            self._abort(entry, "registry closed")
