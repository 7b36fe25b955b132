"""
Single-flight credential refresh.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .auth import _mask_value
from .cancellation import CancellationToken, consume_exception, race
from .errors import RefreshFailure
from .types import CredentialProvider, CredentialStatus

logger = logging.getLogger(__name__)

# Default for `stale`: the caller did not say which credential was rejected
UNSET: Any = object()


class CallableCredentialProvider(CredentialProvider):
    """CredentialProvider built from two callables."""

    def __init__(
        self,
        refresh: Callable[[], Awaitable[str]],
        get_credential: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self._refresh = refresh
        self._get_credential = get_credential

    def get_credential(self) -> Optional[str]:
        if self._get_credential is None:
            return None
        return self._get_credential()

    async def refresh(self) -> str:
        return await self._refresh()


class CredentialRefresher:
    """
    Serializes concurrent refresh demands into one provider refresh.

    While a refresh is pending every caller awaits that same operation. The
    pending slot is cleared in the same step that settles the operation, so
    it is never left dangling after success or failure.
    """

    def __init__(self, provider: CredentialProvider) -> None:
        self._provider = provider
        self._credential: Optional[str] = None
        self._loaded = False
        self._pending: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None
        self._invalid = False
        self._refresh_count = 0

    def current(self) -> Optional[str]:
        """Current credential, loaded from the provider on first use."""
        if not self._loaded:
            self._credential = self._provider.get_credential()
            self._loaded = True
        return self._credential

    @property
    def status(self) -> CredentialStatus:
        if self._pending is not None:
            return CredentialStatus.REFRESHING
        if self._invalid:
            return CredentialStatus.INVALID
        return CredentialStatus.VALID

    @property
    def is_refreshing(self) -> bool:
        return self._pending is not None

    @property
    def refresh_count(self) -> int:
        """Number of provider refreshes started."""
        return self._refresh_count

    async def refresh(
        self,
        stale: Any = UNSET,
        token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Obtain a fresh credential, joining a pending refresh if there is one.

        Args:
            stale: The credential the caller's request was rejected with (None
                when it was sent without one). If it has already been
                replaced, the current one is returned without another
                refresh. Omit it to force a refresh.
            token: Cancels this caller's wait only, never the refresh itself

        Raises:
            RefreshFailure: If the refresh failed (raised to every waiter)
        """
        if self._pending is None:
            current = self.current()
            if stale is not UNSET and current is not None and current != stale and not self._invalid:
                logger.debug("CredentialRefresher.refresh: credential already renewed, reusing it")
                return current
            self._pending = self._start()
        else:
            logger.debug("CredentialRefresher.refresh: joining pending refresh")

        return await race(self._pending, token, abandon=False)

    def _start(self) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(consume_exception)
        self._refresh_count += 1
        logger.debug(f"CredentialRefresher: starting refresh #{self._refresh_count}")
        self._task = asyncio.ensure_future(self._run(future))
        return future

    async def _run(self, future: asyncio.Future) -> None:
        try:
            credential = await self._provider.refresh()
            if not credential:
                raise RefreshFailure("refresh returned an empty credential")
        except asyncio.CancelledError:
            self._fail(future, RefreshFailure("refresh cancelled"))
            raise
        except RefreshFailure as failure:
            self._fail(future, failure)
        except Exception as error:
            self._fail(future, RefreshFailure(f"refresh failed: {error}", cause=error))
        else:
            self._pending = None
            self._credential = credential
            self._loaded = True
            self._invalid = False
            logger.debug(f"CredentialRefresher: refreshed, credential={_mask_value(credential, visible=6)}")
            future.set_result(credential)

    def _fail(self, future: asyncio.Future, failure: RefreshFailure) -> None:
        self._pending = None
        self._invalid = True
        logger.warning(f"CredentialRefresher: refresh failed: {failure}")
        if not future.done():
            future.set_exception(failure)

    def close(self) -> None:
        """Cancel a pending refresh."""
        if self._pending is not None:
            self._fail(self._pending, RefreshFailure("refresher closed"))
        if self._task is not None and not self._task.done():
            self._task.cancel()
