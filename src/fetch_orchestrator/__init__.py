"""
Resilient async request orchestration.

Deduplicates concurrent identical calls, coalesces calls into composite batch
calls, retries by policy and refreshes expired credentials single-flight.
"""
from .types import (
    RequestDescriptor,
    CallOptions,
    InFlightEntry,
    BatchItem,
    BatchWindow,
    RetryState,
    RetryDecision,
    CredentialStatus,
    Transport,
    CredentialProvider,
    OrchestratorEventType,
    OrchestratorEvent,
    OrchestratorEventListener,
)
from .errors import (
    FailureCategory,
    OrchestratorError,
    NetworkFailure,
    AuthFailure,
    NotFoundFailure,
    ServerFailure,
    RefreshFailure,
    CancelledFailure,
    BatchFailure,
    failure_from_status,
)
from .cancellation import CancellationToken, race, sleep
from .fingerprint import generate_fingerprint
from .retry import (
    BackoffStrategy,
    RetryPolicy,
    RetryExecutor,
    calculate_delay,
    RETRY_PRESETS,
)
from .config import (
    AuthConfig,
    DedupeConfig,
    BatchConfig,
    OrchestratorConfig,
    merge_config,
    validate_config,
    load_config_from_env,
)
from .auth import (
    AuthHandler,
    BearerAuthHandler,
    XApiKeyAuthHandler,
    CustomAuthHandler,
    create_auth_handler,
)
from .registry import InFlightRegistry, ResultHandle
from .credentials import CredentialRefresher, CallableCredentialProvider
from .batching import BatchCoalescer
from .transport import HttpxTransport
from .orchestrator import RequestOrchestrator
from .factory import create_orchestrator, create_http_orchestrator


__all__ = [
    # Types
    "RequestDescriptor",
    "CallOptions",
    "InFlightEntry",
    "BatchItem",
    "BatchWindow",
    "RetryState",
    "RetryDecision",
    "CredentialStatus",
    "Transport",
    "CredentialProvider",
    "OrchestratorEventType",
    "OrchestratorEvent",
    "OrchestratorEventListener",
    # Errors
    "FailureCategory",
    "OrchestratorError",
    "NetworkFailure",
    "AuthFailure",
    "NotFoundFailure",
    "ServerFailure",
    "RefreshFailure",
    "CancelledFailure",
    "BatchFailure",
    "failure_from_status",
    # Cancellation
    "CancellationToken",
    "race",
    "sleep",
    # Fingerprint
    "generate_fingerprint",
    # Retry
    "BackoffStrategy",
    "RetryPolicy",
    "RetryExecutor",
    "calculate_delay",
    "RETRY_PRESETS",
    # Config
    "AuthConfig",
    "DedupeConfig",
    "BatchConfig",
    "OrchestratorConfig",
    "merge_config",
    "validate_config",
    "load_config_from_env",
    # Auth
    "AuthHandler",
    "BearerAuthHandler",
    "XApiKeyAuthHandler",
    "CustomAuthHandler",
    "create_auth_handler",
    # Components
    "InFlightRegistry",
    "ResultHandle",
    "CredentialRefresher",
    "CallableCredentialProvider",
    "BatchCoalescer",
    "HttpxTransport",
    "RequestOrchestrator",
    # Factory
    "create_orchestrator",
    "create_http_orchestrator",
]

__version__ = "0.1.0"
