"""
Tests for InFlightRegistry.

Test coverage includes:
- Statement coverage: Lead, join, settle and abort paths
- State transition testing: Entry registered -> settled -> removed
- Decision/Branch coverage: Partial vs total waiter detachment
- Error handling: Shared failures and synchronous start errors
"""

import asyncio

import pytest

from fetch_orchestrator import (
    CancellationToken,
    CancelledFailure,
    InFlightRegistry,
    NetworkFailure,
)


def slow_op(calls, result="value", delay=0.02, aborted=None):
    def start(signal):
        async def run():
            calls.append(signal)
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                if aborted is not None:
                    aborted.append(True)
                raise
            return result

        return run()

    return start


class TestInFlightRegistry:
    """Tests for InFlightRegistry."""

    async def test_single_caller(self):
        """Should run the operation and return its result."""
        registry = InFlightRegistry()
        calls = []
        assert await registry.do("fp", slow_op(calls)) == "value"
        assert len(calls) == 1

    async def test_concurrent_callers_share_one_operation(self):
        """Should run one operation for concurrent equal fingerprints."""
        registry = InFlightRegistry()
        calls = []
        results = await asyncio.gather(*[registry.do("fp", slow_op(calls)) for _ in range(10)])
        assert results == ["value"] * 10
        assert len(calls) == 1

    async def test_distinct_fingerprints_run_separately(self):
        """Should not share across fingerprints."""
        registry = InFlightRegistry()
        calls = []
        await asyncio.gather(registry.do("a", slow_op(calls)), registry.do("b", slow_op(calls)))
        assert len(calls) == 2

    async def test_handles_report_sharing(self):
        """Should mark the first handle as leader and later ones as shared."""
        registry = InFlightRegistry()
        calls = []
        lead = registry.acquire("fp", slow_op(calls))
        join = registry.acquire("fp", slow_op(calls))
        assert lead.shared is False
        assert join.shared is True
        assert registry.get_waiters("fp") == 2
        await asyncio.gather(lead.wait(), join.wait())

    async def test_entry_removed_after_success(self):
        """Should drop the entry once the operation settles."""
        registry = InFlightRegistry()
        handle = registry.acquire("fp", slow_op([]))
        assert registry.is_in_flight("fp")
        await handle.wait()
        assert not registry.is_in_flight("fp")
        assert registry.size == 0

    async def test_entry_removed_before_waiters_resume(self):
        """Should have removed the entry by the time any waiter sees the result."""
        registry = InFlightRegistry()
        seen = []

        async def waiter():
            await registry.do("fp", slow_op([]))
            seen.append(registry.is_in_flight("fp"))

        await asyncio.gather(waiter(), waiter(), waiter())
        assert seen == [False, False, False]

    async def test_new_call_after_settle_starts_fresh(self):
        """Should start a new operation for a call issued after settlement."""
        registry = InFlightRegistry()
        calls = []
        await registry.do("fp", slow_op(calls))
        await registry.do("fp", slow_op(calls))
        assert len(calls) == 2

    async def test_failure_shared_with_every_waiter(self):
        """Should deliver the same failure instance to all waiters."""
        registry = InFlightRegistry()
        failure = NetworkFailure("down")
        starts = []

        def start(signal):
            async def run():
                starts.append(True)
                await asyncio.sleep(0.01)
                raise failure

            return run()

        results = await asyncio.gather(
            *[registry.do("fp", start) for _ in range(3)], return_exceptions=True
        )
        assert all(result is failure for result in results)
        assert len(starts) == 1
        assert registry.size == 0

    async def test_synchronous_start_error_registers_nothing(self):
        """Should propagate a start error without leaving an entry."""
        registry = InFlightRegistry()

        def start(signal):
            raise ValueError("cannot start")

        with pytest.raises(ValueError):
            registry.acquire("fp", start)
        assert registry.size == 0

    async def test_one_waiter_cancelling_does_not_abort_others(self):
        """Should detach only the cancelled waiter."""
        registry = InFlightRegistry()
        calls, aborted = [], []
        token = CancellationToken()

        first = asyncio.ensure_future(registry.do("fp", slow_op(calls, delay=0.05, aborted=aborted), token))
        second = asyncio.ensure_future(registry.do("fp", slow_op(calls, delay=0.05, aborted=aborted)))
        await asyncio.sleep(0.01)
        token.cancel("first caller left")

        with pytest.raises(CancelledFailure):
            await first
        assert await second == "value"
        assert aborted == []
        assert len(calls) == 1
        assert calls[0].cancelled is False

    async def test_last_waiter_cancelling_aborts_operation(self):
        """Should abort the operation once every waiter detached."""
        registry = InFlightRegistry()
        calls, aborted = [], []
        token_a, token_b = CancellationToken(), CancellationToken()

        first = asyncio.ensure_future(registry.do("fp", slow_op(calls, delay=1, aborted=aborted), token_a))
        second = asyncio.ensure_future(registry.do("fp", slow_op(calls, delay=1, aborted=aborted), token_b))
        await asyncio.sleep(0.01)
        token_a.cancel()
        token_b.cancel()

        for task in (first, second):
            with pytest.raises(CancelledFailure):
                await task
        await asyncio.sleep(0.01)
        assert aborted == [True]
        assert calls[0].cancelled is True
        assert registry.size == 0

    async def test_release_reason_reaches_operation(self):
        """Should abort with the reason given to the last release."""
        registry = InFlightRegistry()
        calls, aborted = [], []

        handle = registry.acquire("fp", slow_op(calls, delay=1, aborted=aborted))
        await asyncio.sleep(0.01)
        handle.release("replaced")

        assert registry.size == 0
        assert calls[0].reason == "replaced"
        with pytest.raises(CancelledFailure, match="replaced"):
            await handle.wait()
        await asyncio.sleep(0.01)
        assert aborted == [True]

    async def test_close_aborts_everything(self):
        """Should settle every waiter with CancelledFailure on close."""
        registry = InFlightRegistry()
        aborted = []
        waiter = asyncio.ensure_future(registry.do("fp", slow_op([], delay=1, aborted=aborted)))
        await asyncio.sleep(0.01)
        registry.close()

        with pytest.raises(CancelledFailure):
            await waiter
        await asyncio.sleep(0.01)
        assert aborted == [True]
        assert registry.size == 0
