"""
Types for fetch_orchestrator package.
"""
import asyncio
import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from .cancellation import CancellationToken
from .errors import OrchestratorError

if TYPE_CHECKING:
    from .retry import RetryPolicy


@dataclass(frozen=True)
class RequestDescriptor:
    """Immutable description of one outbound call."""

    target: str
    """Path or operation name on the remote service."""

    method: str = "GET"
    """Request method."""

    params: Optional[Mapping[str, Any]] = None
    """Query/operation parameters."""

    body: Any = None
    """JSON-serializable request body."""

    headers: Mapping[str, str] = field(default_factory=dict)
    """Request headers."""

    cancellation_token: Optional[CancellationToken] = field(
        default=None, compare=False, repr=False
    )
    """Token cancelling this call."""

    @property
    def payload(self) -> Any:
        """Parameters if present, else the body. Used for the batch wire shape."""
        return self.params if self.params is not None else self.body

    def with_headers(self, headers: Mapping[str, str]) -> "RequestDescriptor":
        """Return a copy with `headers` merged over the existing ones."""
        merged = dict(self.headers)
        merged.update(headers)
        return dataclasses.replace(self, headers=merged)


@dataclass
class CallOptions:
    """Per-call options for RequestOrchestrator.call()."""

    dedupe: bool = True
    """Join an equivalent in-flight call instead of sending a new one."""

    batchable: bool = False
    """Route the call through the batch coalescer."""

    retry: Optional["RetryPolicy"] = None
    """Retry policy; falls back to the orchestrator's configured policy."""

    cancellation_token: Optional[CancellationToken] = None
    """Token cancelling this call (combined with the descriptor's token)."""

    slot: Optional[str] = None
    """Logical slot; a newer call in the same slot supersedes the older one."""


@dataclass
class InFlightEntry:
    """In-flight operation tracked by the InFlightRegistry."""

    fingerprint: str
    future: asyncio.Future
    """Settles with the shared outcome."""

    signal: CancellationToken
    """Abort signal handed to the operation; fired when every waiter leaves."""

    waiters: int = 1
    """Number of callers awaiting the outcome."""

    started_at: float = 0
    """When the operation started (monotonic seconds)."""

    task: Optional[asyncio.Task] = None


@dataclass
class BatchItem:
    """One call queued in a batch window."""

    descriptor: RequestDescriptor
    future: asyncio.Future
    enqueued_at: float


@dataclass
class BatchWindow:
    """Items accumulated for one target since the last flush."""

    key: str
    opened_at: float
    items: List[BatchItem] = field(default_factory=list)
    flush_handle: Optional[asyncio.TimerHandle] = None


@dataclass
class RetryState:
    """Per-call retry bookkeeping. Discarded on settlement."""

    attempt: int = 0
    last_failure: Optional[OrchestratorError] = None
    delay_seconds_total: float = 0.0
    auth_refreshed: bool = False
    """Whether this logical call already went through a credential refresh."""


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of RetryPolicy.decide()."""

    retry: bool
    delay_seconds: float = 0.0
    reason: str = ""


class CredentialStatus(str, Enum):
    """Credential lifecycle state."""

    VALID = "valid"
    REFRESHING = "refreshing"
    INVALID = "invalid"


@runtime_checkable
class Transport(Protocol):
    """Sends one request. Returns the payload or raises an OrchestratorError."""

    async def send(
        self, descriptor: RequestDescriptor, signal: Optional[CancellationToken] = None
    ) -> Any:
        ...


class CredentialProvider(ABC):
    """Credential storage and renewal boundary."""

    @abstractmethod
    def get_credential(self) -> Optional[str]:
        """Return the stored credential, if any."""
        pass

    @abstractmethod
    async def refresh(self) -> str:
        """Obtain a new credential. Raise on failure."""
        pass


class OrchestratorEventType(str, Enum):
    """Event types emitted by the orchestrator."""

    DEDUPE_LEAD = "dedupe:lead"
    DEDUPE_JOIN = "dedupe:join"
    DISPATCH = "request:dispatch"
    SUCCESS = "request:success"
    FAILURE = "request:failure"
    CANCELLED = "request:cancelled"
    SUPERSEDED = "request:superseded"
    AUTH_REFRESH = "auth:refresh"
    RETRY_WAIT = "retry:wait"
    BATCH_FLUSH = "batch:flush"


@dataclass
class OrchestratorEvent:
    """Orchestrator event."""

    type: OrchestratorEventType
    key: str
    timestamp: float
    metadata: Optional[Dict[str, Any]] = None


OrchestratorEventListener = Callable[[OrchestratorEvent], None]
"""Event listener type."""
