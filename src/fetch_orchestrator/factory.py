"""
Factory functions for creating orchestrators.
"""
from typing import Awaitable, Callable, Optional

import httpx

from .config import OrchestratorConfig, load_config_from_env
from .credentials import CallableCredentialProvider
from .orchestrator import RequestOrchestrator
from .transport import HttpxTransport
from .types import CredentialProvider, Transport


def create_orchestrator(
    transport: Transport,
    credentials: Optional[CredentialProvider] = None,
    config: Optional[OrchestratorConfig] = None,
) -> RequestOrchestrator:
    """Create an orchestrator over an existing transport."""
    return RequestOrchestrator(transport, credentials, config)


def create_http_orchestrator(
    base_url: str,
    *,
    refresh: Optional[Callable[[], Awaitable[str]]] = None,
    get_credential: Optional[Callable[[], Optional[str]]] = None,
    config: Optional[OrchestratorConfig] = None,
    timeout: float = 30.0,
    httpx_client: Optional[httpx.AsyncClient] = None,
) -> RequestOrchestrator:
    """
    Create an orchestrator talking HTTP through httpx.

    Without `config`, settings come from FETCH_ORCHESTRATOR_* environment
    variables (defaults where unset).

    Example:
        orchestrator = create_http_orchestrator(
            "https://api.example.com",
            get_credential=lambda: token_store.get("access"),
            refresh=renew_access_token,
        )
        async with orchestrator:
            user = await orchestrator.get("/users/1")
    """
    transport = HttpxTransport(base_url, client=httpx_client, timeout=timeout)
    credentials = None
    if refresh is not None:
        credentials = CallableCredentialProvider(refresh, get_credential)
    return RequestOrchestrator(
        transport,
        credentials,
        config if config is not None else load_config_from_env(),
    )
