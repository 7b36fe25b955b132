"""
Time-windowed request batching.

Calls to the same target issued within a short window are sent as one
composite call. Results are fanned back out by position.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .cancellation import CancellationToken, consume_exception
from .errors import (
    BatchFailure,
    CancelledFailure,
    OrchestratorError,
    ServerFailure,
    failure_from_status,
)
from .types import BatchItem, BatchWindow, RequestDescriptor

logger = logging.getLogger(__name__)

BatchSender = Callable[[str, List[RequestDescriptor], CancellationToken], Awaitable[Any]]
"""Sends one composite call: (key, descriptors, abort signal) -> list of results."""


def _settle_result(future: asyncio.Future, value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _settle_exception(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


def failure_from_item_error(error: Any) -> OrchestratorError:
    """Classify the `error` entry of one batch item result."""
    if isinstance(error, Mapping):
        status = error.get("status")
        message = error.get("message")
        if isinstance(status, int):
            return failure_from_status(status, detail=error, message=message)
        return ServerFailure(str(message or "batch item failed"), detail=error)
    return ServerFailure(str(error), detail=error)


class BatchCoalescer:
    """
    BatchCoalescer - accumulate calls into composite batch calls.

    The first enqueue for a key opens a window and schedules its flush after
    `delay_seconds`; reaching `max_batch_size` flushes at once. A flush swaps
    the window out before sending, so later enqueues open a new window.

    Example:
        coalescer = BatchCoalescer(send_batch, delay_seconds=0.02)
        a, b = coalescer.enqueue(desc_a), coalescer.enqueue(desc_b)
        print(await a, await b)  # one composite call
    """

    def __init__(
        self,
        send: BatchSender,
        *,
        delay_seconds: float = 0.02,
        max_batch_size: int = 25,
        on_flush: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self._send = send
        self._delay = delay_seconds
        self._max_batch_size = max_batch_size
        self._on_flush = on_flush
        self._windows: Dict[str, BatchWindow] = {}
        self._flushes: Dict[asyncio.Task, List[BatchItem]] = {}
        self._closed = False

    def enqueue(self, descriptor: RequestDescriptor) -> asyncio.Future:
        """
        Queue a call for the next composite call to its target.

        Returns:
            Future settled with the item's result or failure. Cancelling it
            before the flush removes the item from the batch.
        """
        if self._closed:
            raise RuntimeError("BatchCoalescer has been closed")

        loop = asyncio.get_running_loop()
        key = descriptor.target
        window = self._windows.get(key)
        if window is None:
            window = BatchWindow(key=key, opened_at=time.monotonic())
            window.flush_handle = loop.call_later(self._delay, self.flush, key)
            self._windows[key] = window

        future = loop.create_future()
        future.add_done_callback(consume_exception)
        window.items.append(BatchItem(descriptor=descriptor, future=future, enqueued_at=time.monotonic()))

        if len(window.items) >= self._max_batch_size:
            self.flush(key)

        return future

    def flush(self, key: str) -> Optional[asyncio.Task]:
        """Flush the open window for `key` now."""
        window = self._windows.pop(key, None)
        if window is None:
            return None
        if window.flush_handle is not None:
            window.flush_handle.cancel()

        items = [item for item in window.items if not item.future.done()]
        if not items:
            return None

        logger.debug(
            f"BatchCoalescer.flush: {key} with {len(items)} item(s) after "
            f"{time.monotonic() - window.opened_at:.3f}s"
        )
        if self._on_flush is not None:
            self._on_flush(key, len(items))

        task = asyncio.ensure_future(self._send_window(key, items))
        self._flushes[task] = items
        task.add_done_callback(lambda done: self._flushes.pop(done, None))
        return task

    def flush_all(self) -> List[asyncio.Task]:
        """Flush every open window."""
        tasks = [self.flush(key) for key in list(self._windows)]
        return [task for task in tasks if task is not None]

    async def _send_window(self, key: str, items: List[BatchItem]) -> None:
        signal = CancellationToken()

        def on_item_done(_future: asyncio.Future) -> None:
            if all(item.future.cancelled() for item in items):
                signal.cancel("all batch waiters detached")

        for item in items:
            item.future.add_done_callback(on_item_done)

        try:
            results = await self._send(key, [item.descriptor for item in items], signal)
        except asyncio.CancelledError:
            failure = CancelledFailure("batch flush cancelled")
            for item in items:
                _settle_exception(item.future, failure)
            raise
        except Exception as error:
            if isinstance(error, (BatchFailure, CancelledFailure)):
                failure = error
            else:
                failure = BatchFailure(f"batch call to {key} failed: {error}", cause=error)
            logger.warning(f"BatchCoalescer: {failure} ({len(items)} item(s))")
            for item in items:
                _settle_exception(item.future, failure)
            return

        self._distribute(key, items, results)

    def _distribute(self, key: str, items: List[BatchItem], results: Any) -> None:
        if not isinstance(results, list) or len(results) != len(items):
            received = len(results) if isinstance(results, list) else type(results).__name__
            failure = BatchFailure(
                f"batch response for {key} does not match request: "
                f"expected {len(items)} results, got {received}",
                detail=results,
            )
            for item in items:
                _settle_exception(item.future, failure)
            return

        for index, (item, result) in enumerate(zip(items, results)):
            if isinstance(result, Mapping) and result.get("error") is not None:
                _settle_exception(item.future, failure_from_item_error(result["error"]))
            elif isinstance(result, Mapping) and "data" in result:
                _settle_result(item.future, result["data"])
            else:
                _settle_exception(
                    item.future,
                    BatchFailure(f"malformed batch result at index {index}", detail=result),
                )

    @property
    def open_windows(self) -> int:
        return len(self._windows)

    @property
    def pending_flushes(self) -> int:
        return len(self._flushes)

    def queued(self, key: str) -> int:
        """Number of items waiting in the open window for `key`."""
        window = self._windows.get(key)
        return len(window.items) if window else 0

    def close(self) -> None:
        """Settle queued items with CancelledFailure and abort running flushes."""
        self._closed = True
        failure = CancelledFailure("batch coalescer closed")
        for window in list(self._windows.values()):
            if window.flush_handle is not None:
                window.flush_handle.cancel()
            for item in window.items:
                _settle_exception(item.future, failure)
        self._windows.clear()
        for task, items in list(self._flushes.items()):
            for item in items:
                _settle_exception(item.future, failure)
            task.cancel()
