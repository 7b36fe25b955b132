"""
HTTP transport using httpx.
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx

from .cancellation import CancellationToken, race
from .errors import NetworkFailure, failure_from_status
from .types import RequestDescriptor

logger = logging.getLogger("fetch_orchestrator.transport")


def _mask_headers_for_logging(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask credential headers for safe logging."""
    masked = dict(headers)
    for key in masked:
        if key.lower() in ("authorization", "x-api-key"):
            masked[key] = masked[key][:10] + "*****"
    return masked


def _decode_body(response: httpx.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class HttpxTransport:
    """
    Transport backed by an httpx.AsyncClient.

    Classifies every outcome at this boundary: 2xx returns the decoded body,
    other statuses raise via failure_from_status, and httpx transport errors
    raise NetworkFailure. Cancelling the abort signal cancels the in-flight
    httpx request.

    Example:
        transport = HttpxTransport("https://api.example.com")
        data = await transport.send(RequestDescriptor(target="/users/1"))
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if client is not None:
            self._client = client
            self._owns_client = False
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url,
                timeout=timeout,
                headers=headers,
            )
            self._owns_client = True
        self._closed = False

    def build_request(self, descriptor: RequestDescriptor) -> httpx.Request:
        """Translate a descriptor into an httpx request."""
        return self._client.build_request(
            method=descriptor.method.upper(),
            url=descriptor.target,
            params=dict(descriptor.params) if descriptor.params is not None else None,
            json=descriptor.body,
            headers=dict(descriptor.headers),
        )

    async def send(
        self,
        descriptor: RequestDescriptor,
        signal: Optional[CancellationToken] = None,
    ) -> Any:
        """Send one request and return the decoded payload."""
        if self._closed:
            raise RuntimeError("Transport has been closed")

        request = self.build_request(descriptor)
        logger.debug(
            f"HttpxTransport.send: {request.method} {request.url} "
            f"headers={_mask_headers_for_logging(dict(request.headers))}"
        )

        try:
            response = await race(self._client.send(request), signal)
        except httpx.TimeoutException as error:
            raise NetworkFailure(f"timeout: {error}", cause=error) from error
        except httpx.TransportError as error:
            raise NetworkFailure(f"network error: {error}", cause=error) from error

        data = _decode_body(response)
        logger.debug(f"HttpxTransport.send: {request.method} {request.url} -> {response.status_code}")

        if 200 <= response.status_code < 300:
            return data

        raise failure_from_status(
            response.status_code,
            detail=data,
            message=f"HTTP {response.status_code} {response.reason_phrase or ''}".strip(),
        )

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        self._closed = True
        if self._owns_client:
            await self._client.aclose()
