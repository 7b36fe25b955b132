"""
Retry policy and executor.

The policy is a pure decision function; the executor runs attempts strictly
one after another and sleeps between them with a cancellable backoff.
"""
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

from .cancellation import CancellationToken, sleep
from .errors import (
    CancelledFailure,
    FailureCategory,
    NON_RETRYABLE_CATEGORIES,
    OrchestratorError,
)
from .types import RetryDecision, RetryState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffStrategy(str, Enum):
    """Backoff strategy type"""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class RetryPolicy:
    """Retry policy"""

    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    """Backoff strategy. Default: exponential"""

    base_delay_seconds: float = 0.1
    """Base delay (seconds). Default: 0.1"""

    max_delay_seconds: Optional[float] = None
    """Ceiling applied to every computed delay. Default: none"""

    max_retries: int = 3
    """Maximum number of retries after the first attempt. Default: 3"""

    jitter_factor: float = 0.0
    """Jitter factor (0-1). Default: 0, deterministic delays"""

    retry_on: FrozenSet[FailureCategory] = field(
        default_factory=lambda: frozenset({FailureCategory.NETWORK_ERROR})
    )
    """Failure categories eligible for retry"""

    should_retry: Optional[Callable[[OrchestratorError, int], bool]] = None
    """Veto predicate: returning False stops retrying regardless of attempt"""

    @classmethod
    def fixed(cls, base_delay_seconds: float, **kwargs) -> "RetryPolicy":
        return cls(strategy=BackoffStrategy.FIXED, base_delay_seconds=base_delay_seconds, **kwargs)

    @classmethod
    def linear(cls, base_delay_seconds: float, **kwargs) -> "RetryPolicy":
        return cls(strategy=BackoffStrategy.LINEAR, base_delay_seconds=base_delay_seconds, **kwargs)

    @classmethod
    def exponential(cls, base_delay_seconds: float, **kwargs) -> "RetryPolicy":
        return cls(
            strategy=BackoffStrategy.EXPONENTIAL, base_delay_seconds=base_delay_seconds, **kwargs
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (0-indexed) attempt."""
        return calculate_delay(attempt, self)

    def decide(self, attempt: int, failure: BaseException) -> RetryDecision:
        """
        Decide whether to retry after `attempt` failed with `failure`.

        Args:
            attempt: The attempt that just failed (0-indexed)
            failure: The failure it raised

        Returns:
            RetryDecision with the delay to wait before the next attempt
        """
        if not isinstance(failure, OrchestratorError):
            return RetryDecision(False, reason="unclassified error")

        if failure.category in NON_RETRYABLE_CATEGORIES:
            return RetryDecision(False, reason=f"{failure.category.value} is never retried")

        if attempt >= self.max_retries:
            return RetryDecision(False, reason="max retries reached")

        if failure.category not in self.retry_on:
            return RetryDecision(False, reason=f"{failure.category.value} not retryable")

        if self.should_retry is not None and not self.should_retry(failure, attempt):
            return RetryDecision(False, reason="vetoed by predicate")

        return RetryDecision(True, delay_seconds=self.delay_for(attempt))


def calculate_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Calculate delay based on strategy.

    - fixed: base
    - linear: base * (attempt + 1)
    - exponential: base * 2^attempt

    Args:
        attempt: The current attempt number (0-indexed)
        policy: Retry policy

    Returns:
        Delay in seconds
    """
    base = policy.base_delay_seconds
    max_delay = policy.max_delay_seconds
    jitter = policy.jitter_factor

    if policy.strategy == BackoffStrategy.FIXED:
        base_delay = base
    elif policy.strategy == BackoffStrategy.LINEAR:
        base_delay = base * (attempt + 1)
    else:  # EXPONENTIAL (default)
        base_delay = base * (2 ** attempt)

    if max_delay is not None:
        base_delay = min(max_delay, base_delay)

    if not jitter:
        return base_delay

    jitter_amount = random.random() * jitter * base_delay
    delay = base_delay * (1 - jitter / 2) + jitter_amount

    return min(delay, max_delay) if max_delay is not None else delay


# Preset retry policies
RETRY_PRESETS = {
    "default": RetryPolicy.exponential(0.5, max_delay_seconds=30.0, max_retries=3, jitter_factor=0.5),
    "quick": RetryPolicy.exponential(0.2, max_delay_seconds=2.0, max_retries=2, jitter_factor=0.5),
    "aggressive": RetryPolicy.exponential(
        0.5,
        max_delay_seconds=60.0,
        max_retries=5,
        jitter_factor=0.3,
        retry_on=frozenset({FailureCategory.NETWORK_ERROR, FailureCategory.SERVER_ERROR}),
    ),
}


class RetryExecutor:
    """
    Retry Executor

    Runs attempts sequentially under a RetryPolicy:
    - attempt N+1 starts only after attempt N settled
    - backoff sleeps end early when the cancellation token fires
    - cancellation takes precedence over whatever the attempt failed with
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        on_wait: Optional[Callable[[RetryState, RetryDecision], None]] = None,
    ) -> None:
        """
        Create a new RetryExecutor.

        Args:
            policy: Retry policy; None means a single attempt
            on_wait: Called before each backoff sleep
        """
        self._policy = policy
        self._on_wait = on_wait

    @property
    def policy(self) -> Optional[RetryPolicy]:
        return self._policy

    async def execute(
        self,
        fn: Callable[[RetryState], Awaitable[T]],
        token: Optional[CancellationToken] = None,
        state: Optional[RetryState] = None,
    ) -> T:
        """
        Execute `fn` with retry logic.

        Args:
            fn: Async attempt function, receives the call's RetryState
            token: Cancellation token for the logical call
            state: Existing state to continue from

        Returns:
            The first successful attempt's result
        """
        state = state or RetryState()

        while True:
            if token is not None:
                token.raise_if_cancelled()

            try:
                return await fn(state)
            except OrchestratorError as failure:
                state.last_failure = failure

                if token is not None and token.cancelled and not isinstance(
                    failure, CancelledFailure
                ):
                    raise CancelledFailure(
                        token.reason or "cancelled", detail=token.reason, cause=failure
                    ) from failure

                if self._policy is None:
                    raise

                decision = self._policy.decide(state.attempt, failure)
                if not decision.retry:
                    logger.debug(
                        f"RetryExecutor: giving up after attempt {state.attempt}: {decision.reason}"
                    )
                    raise

                logger.debug(
                    f"RetryExecutor: attempt {state.attempt} failed ({failure.category.value}), "
                    f"retrying in {decision.delay_seconds:.3f}s"
                )
                if self._on_wait is not None:
                    self._on_wait(state, decision)

                await sleep(decision.delay_seconds, token)
                state.delay_seconds_total += decision.delay_seconds
                state.attempt += 1
