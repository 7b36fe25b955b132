"""
Shared fixtures for fetch_orchestrator tests.
"""
import asyncio
import inspect
from typing import Any, Callable, List, Optional

import pytest

from fetch_orchestrator import (
    AuthFailure,
    BatchConfig,
    CancellationToken,
    CredentialProvider,
    OrchestratorConfig,
    RequestDescriptor,
    RequestOrchestrator,
)


class FakeTransport:
    """Scripted transport recording every request it receives."""

    def __init__(
        self,
        handler: Optional[Callable[[RequestDescriptor], Any]] = None,
        delay: float = 0.0,
    ) -> None:
        self.calls: List[RequestDescriptor] = []
        self.aborted: List[RequestDescriptor] = []
        self.signals: List[Optional[CancellationToken]] = []
        self.delay = delay
        self._handler = handler or (lambda descriptor: {"target": descriptor.target})
        self.closed = False

    async def send(self, descriptor: RequestDescriptor, signal: Optional[CancellationToken] = None) -> Any:
        self.calls.append(descriptor)
        self.signals.append(signal)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.aborted.append(descriptor)
                raise
        result = self._handler(descriptor)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def aclose(self) -> None:
        self.closed = True

    def authorizations(self) -> List[Optional[str]]:
        return [call.headers.get("Authorization") for call in self.calls]


class FakeCredentials(CredentialProvider):
    """Credential provider handing out token-1, token-2, ... on refresh."""

    def __init__(self, initial: Optional[str] = "token-1", delay: float = 0.01, error: Optional[Exception] = None):
        self._current = initial
        self.delay = delay
        self.error = error
        self.refresh_calls = 0

    def get_credential(self) -> Optional[str]:
        return self._current

    async def refresh(self) -> str:
        self.refresh_calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self._current = f"token-{self.refresh_calls + 1}"
        return self._current


def reject_token(rejected: str, payload: Any = "ok") -> Callable[[RequestDescriptor], Any]:
    """Handler failing with AuthFailure when the request carries `rejected`."""

    def handler(descriptor: RequestDescriptor) -> Any:
        if descriptor.headers.get("Authorization") == f"Bearer {rejected}":
            raise AuthFailure("token expired", status=401)
        return payload

    return handler


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def fast_batch_config() -> OrchestratorConfig:
    return OrchestratorConfig(batch=BatchConfig(delay_seconds=0.01, max_batch_size=10))


@pytest.fixture
async def orchestrator(fake_transport: FakeTransport):
    orch = RequestOrchestrator(fake_transport)
    yield orch
    await orch.close()
