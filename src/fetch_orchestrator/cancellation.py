"""
Cooperative cancellation tokens.

A token is observed before each suspension point. Cancelling it wakes every
`race()` currently waiting on it and runs registered callbacks synchronously.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import CancelledFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

CancellationCallback = Callable[["CancellationToken"], None]


class CancellationToken:
    """
    Cancellation token with callbacks and awaitable waiters.

    Example:
        token = CancellationToken()
        task = asyncio.create_task(orchestrator.get("/search", cancellation_token=token))
        token.cancel("user navigated away")
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[CancellationCallback] = []
        self._waiters: List[asyncio.Future] = []
        self._unlinks: List[Callable[[], None]] = []

    @classmethod
    def linked(cls, *parents: Optional["CancellationToken"]) -> "CancellationToken":
        """Create a token that is cancelled when any of the parents is."""
        token = cls()
        for parent in parents:
            if parent is None:
                continue
            token._unlinks.append(
                parent.add_callback(lambda source: token.cancel(source.reason))
            )
        return token

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the token. Later calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Cancellation callback failed")

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(reason)

    def add_callback(self, callback: CancellationCallback) -> Callable[[], None]:
        """
        Register a callback run on cancellation.

        Runs immediately if the token is already cancelled.

        Returns:
            Function removing the callback
        """
        if self._cancelled:
            callback(self)
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_cancelled(self) -> None:
        """Raise CancelledFailure if the token has been cancelled."""
        if self._cancelled:
            raise CancelledFailure(self._reason or "cancelled", detail=self._reason)

    async def wait(self) -> Optional[str]:
        """Wait until the token is cancelled and return the reason."""
        waiter = self._watch()
        try:
            return await waiter
        finally:
            self._unwatch(waiter)

    def dispose(self) -> None:
        """Detach from linked parents."""
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()

    def _watch(self) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        if self._cancelled:
            waiter.set_result(self._reason)
        else:
            self._waiters.append(waiter)
        return waiter

    def _unwatch(self, waiter: asyncio.Future) -> None:
        if waiter in self._waiters:
            self._waiters.remove(waiter)
        if not waiter.done():
            waiter.cancel()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self._reason!r})"


async def race(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    *,
    abandon: bool = True,
) -> T:
    """
    Await `awaitable` unless `token` is cancelled first.

    Args:
        awaitable: Coroutine or future to wait for
        token: Cancellation token to observe
        abandon: Cancel the awaitable when the token wins. Pass False for
            futures shared with other waiters.

    Returns:
        The awaitable's result

    Raises:
        CancelledFailure: If the token was cancelled before the result arrived
    """
    if token is not None and token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    inner = asyncio.ensure_future(awaitable)
    if token is None:
        return await (inner if abandon else asyncio.shield(inner))

    stop = token._watch()
    try:
        await asyncio.wait((inner, stop), return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        if abandon:
            _abandon(inner)
        raise
    finally:
        token._unwatch(stop)

    if inner.done():
        return inner.result()

    if abandon:
        _abandon(inner)
    raise CancelledFailure(token.reason or "cancelled", detail=token.reason)


def _abandon(inner: "asyncio.Future[Any]") -> None:
    inner.add_done_callback(consume_exception)
    inner.cancel()


async def sleep(delay_seconds: float, token: Optional[CancellationToken] = None) -> None:
    """Sleep that ends early with CancelledFailure when the token fires."""
    await race(asyncio.sleep(delay_seconds), token)


def consume_exception(future: "asyncio.Future[Any]") -> None:
    """Done-callback marking a shared future's exception as retrieved."""
    if not future.cancelled():
        future.exception()
