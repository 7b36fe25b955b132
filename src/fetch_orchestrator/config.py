"""
Configuration for fetch_orchestrator.
"""
import os
from dataclasses import dataclass, field, replace
from typing import List, Literal, Mapping, Optional

from .retry import BackoffStrategy, RetryPolicy

# Credential header formats
AuthType = Literal["bearer", "x-api-key", "custom"]

VALID_AUTH_TYPES = {"bearer", "x-api-key", "custom"}

ENV_PREFIX = "FETCH_ORCHESTRATOR_"


@dataclass
class AuthConfig:
    """How the current credential is attached to requests."""

    type: AuthType = "bearer"
    header_name: Optional[str] = None  # For the custom type


@dataclass
class DedupeConfig:
    """Configuration for in-flight request deduplication."""

    methods: List[str] = field(default_factory=lambda: ["GET", "HEAD"])
    """Methods eligible for deduplication."""

    header_keys: List[str] = field(default_factory=list)
    """Headers included in the fingerprint."""


@dataclass
class BatchConfig:
    """Configuration for the batch coalescer."""

    enabled: bool = True
    delay_seconds: float = 0.02
    """How long a window stays open after its first item."""

    max_batch_size: int = 25
    """Flush immediately once a window holds this many items."""

    target: str = "/batch"
    """Target of the composite call."""

    method: str = "POST"


@dataclass
class OrchestratorConfig:
    """Orchestrator configuration."""

    dedupe: Optional[DedupeConfig] = None
    batch: Optional[BatchConfig] = None
    auth: Optional[AuthConfig] = None
    retry: Optional[RetryPolicy] = None
    """Default retry policy. None means a single attempt."""


# Default values
DEFAULT_DEDUPE_CONFIG = DedupeConfig()
DEFAULT_BATCH_CONFIG = BatchConfig()
DEFAULT_AUTH_CONFIG = AuthConfig()


def merge_config(config: Optional[OrchestratorConfig] = None) -> OrchestratorConfig:
    """Merge user config with defaults."""
    if config is None:
        config = OrchestratorConfig()

    return OrchestratorConfig(
        dedupe=config.dedupe
        or replace(
            DEFAULT_DEDUPE_CONFIG,
            methods=list(DEFAULT_DEDUPE_CONFIG.methods),
            header_keys=list(DEFAULT_DEDUPE_CONFIG.header_keys),
        ),
        batch=config.batch or replace(DEFAULT_BATCH_CONFIG),
        auth=config.auth or replace(DEFAULT_AUTH_CONFIG),
        retry=config.retry,
    )


def validate_config(config: OrchestratorConfig) -> None:
    """Validate orchestrator configuration."""
    if config.batch is not None:
        if config.batch.max_batch_size < 1:
            raise ValueError("batch.max_batch_size must be at least 1")
        if config.batch.delay_seconds < 0:
            raise ValueError("batch.delay_seconds must be non-negative")
        if not config.batch.target:
            raise ValueError("batch.target is required")

    if config.auth is not None:
        if config.auth.type not in VALID_AUTH_TYPES:
            raise ValueError(
                f"Invalid auth type: {config.auth.type}. Must be one of: {sorted(VALID_AUTH_TYPES)}"
            )
        if config.auth.type == "custom" and not config.auth.header_name:
            raise ValueError("header_name is required for custom auth type")

    if config.retry is not None:
        if config.retry.max_retries < 0:
            raise ValueError("retry.max_retries must be non-negative")
        if config.retry.base_delay_seconds < 0:
            raise ValueError("retry.base_delay_seconds must be non-negative")
        if not 0 <= config.retry.jitter_factor <= 1:
            raise ValueError("retry.jitter_factor must be between 0 and 1")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# (variable suffix, config section, attribute, parser)
_ENV_FIELDS = [
    ("BATCH_ENABLED", "batch", "enabled", _env_bool),
    ("BATCH_DELAY_SECONDS", "batch", "delay_seconds", float),
    ("BATCH_MAX_SIZE", "batch", "max_batch_size", int),
    ("BATCH_TARGET", "batch", "target", str),
    ("DEDUPE_METHODS", "dedupe", "methods", lambda v: [m.upper() for m in _env_list(v)]),
    ("DEDUPE_HEADER_KEYS", "dedupe", "header_keys", _env_list),
    ("AUTH_TYPE", "auth", "type", str),
    ("AUTH_HEADER_NAME", "auth", "header_name", str),
    ("RETRY_BASE_DELAY_SECONDS", "retry", "base_delay_seconds", float),
    ("RETRY_MAX_DELAY_SECONDS", "retry", "max_delay_seconds", float),
    ("RETRY_MAX_RETRIES", "retry", "max_retries", int),
]


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> OrchestratorConfig:
    """
    Build configuration from FETCH_ORCHESTRATOR_* environment variables.

    Unset variables keep their defaults. A retry policy is created only when
    FETCH_ORCHESTRATOR_RETRY_STRATEGY is set.
    """
    env = os.environ if environ is None else environ

    config = merge_config(None)
    strategy = env.get(ENV_PREFIX + "RETRY_STRATEGY")
    if strategy:
        config.retry = RetryPolicy(strategy=BackoffStrategy(strategy.strip().lower()))

    for suffix, section, attribute, parse in _ENV_FIELDS:
        value = env.get(ENV_PREFIX + suffix)
        if not value:
            continue
        target = getattr(config, section)
        if target is None:
            continue
        setattr(target, attribute, parse(value))

    validate_config(config)
    return config
