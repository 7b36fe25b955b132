"""
Auth handlers: turn an opaque credential into request headers.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .config import AuthConfig

logger = logging.getLogger(__name__)
LOG_PREFIX = "[AUTH]"


def _mask_value(val: Optional[str], visible: int = 10) -> str:
    """Mask a credential for logging, keeping `visible` leading characters."""
    if not val:
        return "<empty>"
    if len(val) <= visible:
        return "*" * len(val)
    return val[:visible] + "*" * (len(val) - visible)


class AuthHandler(ABC):
    """Turns the current credential into request headers."""

    @abstractmethod
    def get_header(self, credential: Optional[str]) -> Optional[Dict[str, str]]:
        """Headers carrying `credential`, or None when there is none."""
        ...


class BearerAuthHandler(AuthHandler):
    """Sends the credential as `Authorization: Bearer <credential>`."""

    def get_header(self, credential: Optional[str]) -> Optional[Dict[str, str]]:
        if not credential:
            return None
        header = {"Authorization": f"Bearer {credential}"}
        logger.debug(
            f"{LOG_PREFIX} BearerAuthHandler.get_header: credential={_mask_value(credential)}"
        )
        return header


class XApiKeyAuthHandler(AuthHandler):
    """Sends the credential in the `x-api-key` header."""

    def get_header(self, credential: Optional[str]) -> Optional[Dict[str, str]]:
        if not credential:
            return None
        logger.debug(
            f"{LOG_PREFIX} XApiKeyAuthHandler.get_header: credential={_mask_value(credential)}"
        )
        return {"x-api-key": credential}


class CustomAuthHandler(AuthHandler):
    """Sends the credential verbatim in a configured header."""

    def __init__(self, header_name: str):
        self._header_name = header_name

    @property
    def header_name(self) -> str:
        return self._header_name

    def get_header(self, credential: Optional[str]) -> Optional[Dict[str, str]]:
        if not credential:
            return None
        logger.debug(
            f"{LOG_PREFIX} CustomAuthHandler.get_header: header_name={self._header_name}, "
            f"credential={_mask_value(credential)}"
        )
        return {self._header_name: credential}


def create_auth_handler(config: Optional[AuthConfig] = None) -> AuthHandler:
    """Pick the handler for `config.type`; bearer when unset or unknown."""
    if config is None or config.type == "bearer":
        return BearerAuthHandler()
    elif config.type == "x-api-key":
        return XApiKeyAuthHandler()
    elif config.type == "custom":
        return CustomAuthHandler(config.header_name or "Authorization")
    else:
        logger.debug(
            f"{LOG_PREFIX} create_auth_handler: Unknown type '{config.type}', defaulting to bearer"
        )
        return BearerAuthHandler()
