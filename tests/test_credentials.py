"""
Tests for CredentialRefresher.

Test coverage includes:
- State transition testing: VALID -> REFRESHING -> VALID | INVALID
- Statement coverage: Single-flight join, stale-credential shortcut
- Error handling: Provider errors, empty credentials, close()
"""

import asyncio

import pytest

from conftest import FakeCredentials

from fetch_orchestrator import (
    CallableCredentialProvider,
    CancellationToken,
    CancelledFailure,
    CredentialRefresher,
    CredentialStatus,
    RefreshFailure,
)


class TestCredentialRefresher:
    """Tests for CredentialRefresher."""

    def test_current_loads_from_provider(self):
        """Should load the stored credential lazily."""
        refresher = CredentialRefresher(FakeCredentials("initial"))
        assert refresher.current() == "initial"
        assert refresher.status == CredentialStatus.VALID

    async def test_refresh_updates_current(self):
        """Should replace the current credential."""
        provider = FakeCredentials()
        refresher = CredentialRefresher(provider)
        assert await refresher.refresh() == "token-2"
        assert refresher.current() == "token-2"
        assert refresher.refresh_count == 1

    async def test_concurrent_refreshes_are_single_flight(self):
        """Should run one provider refresh for many concurrent demands."""
        provider = FakeCredentials(delay=0.02)
        refresher = CredentialRefresher(provider)
        results = await asyncio.gather(*[refresher.refresh() for _ in range(10)])
        assert results == ["token-2"] * 10
        assert provider.refresh_calls == 1

    async def test_status_while_refreshing(self):
        """Should report REFRESHING while a refresh is pending."""
        refresher = CredentialRefresher(FakeCredentials(delay=0.02))
        task = asyncio.ensure_future(refresher.refresh())
        await asyncio.sleep(0)
        assert refresher.status == CredentialStatus.REFRESHING
        assert refresher.is_refreshing is True
        await task
        assert refresher.status == CredentialStatus.VALID
        assert refresher.is_refreshing is False

    async def test_stale_credential_reuses_renewed_one(self):
        """Should skip refreshing when the rejected credential was already replaced."""
        provider = FakeCredentials()
        refresher = CredentialRefresher(provider)
        await refresher.refresh(stale="token-1")
        assert await refresher.refresh(stale="token-1") == "token-2"
        assert provider.refresh_calls == 1

    async def test_matching_stale_credential_refreshes(self):
        """Should refresh when the rejected credential is still current."""
        provider = FakeCredentials()
        refresher = CredentialRefresher(provider)
        await refresher.refresh(stale="token-1")
        assert await refresher.refresh(stale="token-2") == "token-3"
        assert provider.refresh_calls == 2

    async def test_missing_credential_reuses_renewed_one(self):
        """Should reuse a credential obtained after the request was sent without one."""
        provider = FakeCredentials(initial=None)
        refresher = CredentialRefresher(provider)
        assert await refresher.refresh(stale=None) == "token-2"
        assert await refresher.refresh(stale=None) == "token-2"
        assert provider.refresh_calls == 1

    async def test_sequential_refreshes_each_run(self):
        """Should start a new refresh after the previous one settled."""
        provider = FakeCredentials()
        refresher = CredentialRefresher(provider)
        await refresher.refresh()
        await refresher.refresh()
        assert provider.refresh_calls == 2

    async def test_failure_reaches_every_waiter(self):
        """Should fail every waiter with the same RefreshFailure."""
        provider = FakeCredentials(delay=0.01, error=RuntimeError("idp down"))
        refresher = CredentialRefresher(provider)
        results = await asyncio.gather(*[refresher.refresh() for _ in range(3)], return_exceptions=True)
        assert all(isinstance(result, RefreshFailure) for result in results)
        assert results[0] is results[1] is results[2]
        assert isinstance(results[0].cause, RuntimeError)
        assert provider.refresh_calls == 1

    async def test_failure_clears_pending_and_marks_invalid(self):
        """Should clear the pending refresh and mark the credential invalid."""
        refresher = CredentialRefresher(FakeCredentials(error=RuntimeError("idp down")))
        with pytest.raises(RefreshFailure):
            await refresher.refresh()
        assert refresher.is_refreshing is False
        assert refresher.status == CredentialStatus.INVALID

    async def test_retry_after_failure_starts_new_refresh(self):
        """Should start a fresh refresh after a failed one."""
        provider = FakeCredentials(error=RuntimeError("idp down"))
        refresher = CredentialRefresher(provider)
        with pytest.raises(RefreshFailure):
            await refresher.refresh()
        provider.error = None
        assert await refresher.refresh(stale="token-1") == "token-3"
        assert refresher.status == CredentialStatus.VALID

    async def test_empty_credential_is_failure(self):
        """Should treat an empty credential as a failed refresh."""
        async def refresh():
            return ""

        refresher = CredentialRefresher(CallableCredentialProvider(refresh))
        with pytest.raises(RefreshFailure, match="empty"):
            await refresher.refresh()

    async def test_waiter_cancellation_does_not_cancel_refresh(self):
        """Should detach a cancelled waiter and let the refresh finish for others."""
        provider = FakeCredentials(delay=0.05)
        refresher = CredentialRefresher(provider)
        token = CancellationToken()

        cancelled = asyncio.ensure_future(refresher.refresh(token=token))
        other = asyncio.ensure_future(refresher.refresh())
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(CancelledFailure):
            await cancelled
        assert await other == "token-2"
        assert provider.refresh_calls == 1

    async def test_close_fails_pending_refresh(self):
        """Should fail pending waiters on close."""
        refresher = CredentialRefresher(FakeCredentials(delay=1))
        waiter = asyncio.ensure_future(refresher.refresh())
        await asyncio.sleep(0.01)
        refresher.close()
        with pytest.raises(RefreshFailure, match="closed"):
            await waiter


class TestCallableCredentialProvider:
    """Tests for CallableCredentialProvider."""

    async def test_delegates(self):
        """Should delegate to the given callables."""
        async def refresh():
            return "new"

        provider = CallableCredentialProvider(refresh, lambda: "old")
        assert provider.get_credential() == "old"
        assert await provider.refresh() == "new"

    def test_no_getter(self):
        """Should return None without a getter."""
        async def refresh():
            return "new"

        assert CallableCredentialProvider(refresh).get_credential() is None
