"""
Failure taxonomy for fetch_orchestrator.

Failures are classified once, at the transport boundary, and carried as typed
exceptions from then on. Nothing downstream inspects error names or messages.
"""
from enum import Enum
from typing import Any, Optional


class FailureCategory(str, Enum):
    """Failure categories surfaced to callers."""

    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    CANCELLED = "cancelled"
    REFRESH_FAILED = "refresh_failed"
    BATCH_FAILED = "batch_failed"


class OrchestratorError(Exception):
    """Base class for every failure raised by the orchestrator."""

    category: FailureCategory = FailureCategory.SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        detail: Any = None,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.detail = detail
        self.status = status
        self.cause = cause

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({str(self)!r}, category={self.category.value!r}, "
            f"status={self.status!r})"
        )


class NetworkFailure(OrchestratorError):
    """Transport unreachable or timed out."""

    category = FailureCategory.NETWORK_ERROR


class AuthFailure(OrchestratorError):
    """The credential was rejected as expired or invalid."""

    category = FailureCategory.UNAUTHORIZED


class NotFoundFailure(OrchestratorError):
    """The remote target does not exist."""

    category = FailureCategory.NOT_FOUND


class ServerFailure(OrchestratorError):
    """The remote service reported an error."""

    category = FailureCategory.SERVER_ERROR


class RefreshFailure(OrchestratorError):
    """Renewing the credential failed. Terminal for every waiter of that refresh."""

    category = FailureCategory.REFRESH_FAILED


class CancelledFailure(OrchestratorError):
    """The call was cancelled by its cancellation token or superseded."""

    category = FailureCategory.CANCELLED


class BatchFailure(OrchestratorError):
    """The composite batch call failed as a whole."""

    category = FailureCategory.BATCH_FAILED


# Categories no retry policy may override
NON_RETRYABLE_CATEGORIES = frozenset(
    {
        FailureCategory.UNAUTHORIZED,
        FailureCategory.CANCELLED,
        FailureCategory.REFRESH_FAILED,
        FailureCategory.BATCH_FAILED,
    }
)


def failure_from_status(
    status: int,
    detail: Any = None,
    message: Optional[str] = None,
) -> OrchestratorError:
    """
    Classify a remote status code.

    Args:
        status: Status code reported by the remote service
        detail: Response body or error payload
        message: Optional message override

    Returns:
        The matching failure (not raised)
    """
    text = message or f"HTTP {status}"
    if status == 401:
        return AuthFailure(text, detail=detail, status=status)
    if status == 404:
        return NotFoundFailure(text, detail=detail, status=status)
    return ServerFailure(text, detail=detail, status=status)
