"""
Resilience service for bounded asynchronous operations.

A bounded operation is an awaitable factory plus a timeout plus a retry
policy. Call sites describe what to do between attempts through callbacks
instead of racing their own timers.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from infrastructure.config.settings import get_config
from infrastructure.external.backend_errors import (
    AuthorizationError,
    ConnectivityError,
    NotFoundError,
    RequestTimeoutError,
    ValidationError,
)
from infrastructure.monitoring.logging_service import get_logger

logger = get_logger(__name__)

# Define which errors should trigger retries (transient errors)
RETRIABLE_ERRORS = (
    ConnectivityError,  # includes RequestTimeoutError
)

# Define which errors should NOT be retried (permanent errors)
NON_RETRIABLE_ERRORS = (
    AuthorizationError,
    ValidationError,
    NotFoundError,
)

class RetryCancelled(Exception):
    """A before_retry hook declined the next attempt; carries the last failure"""

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_error = last_error


OperationFactory = Callable[[], Awaitable[Any]]
RetryCallback = Callable[[int, Exception, float], Any]


def exponential_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (2 ** attempt), max_delay)

    # Add jitter to avoid thundering herd effect
    jitter = random.uniform(0, 0.1 * delay)

    return delay + jitter


@dataclass
class RetryPolicy:
    """How many times to retry a failed attempt and how long to wait"""
    max_retries: int = 0
    delay: float = 2.0
    backoff: bool = False
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)"""
        if self.backoff:
            return exponential_backoff_delay(attempt, self.delay, self.max_delay)
        return self.delay


NO_RETRY = RetryPolicy(max_retries=0)


async def run_with_timeout(operation: OperationFactory, timeout: Optional[float],
                           name: str = "operation") -> Any:
    """
    Await one attempt of an operation within a time budget

    Raises:
        RequestTimeoutError: If the attempt does not finish in time
    """
    if timeout is None:
        return await operation()
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise RequestTimeoutError(f"{name} timed out after {timeout:g}s") from e


class BoundedOperation:
    """
    An asynchronous operation bounded by a timeout and a retry policy.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        timeout: Per-attempt timeout in seconds (None disables it)
        policy: Retry policy; only RETRIABLE_ERRORS are retried
        name: Name for logging
        on_retry: Called after a failed attempt that will be retried,
            with (attempt_number, error, delay)
        before_retry: Called right before each retry attempt with the attempt number;
            returning False cancels the retry (RetryCancelled is raised)
    """

    def __init__(self, operation: OperationFactory, timeout: Optional[float] = None,
                 policy: Optional[RetryPolicy] = None, name: str = "operation",
                 on_retry: Optional[RetryCallback] = None,
                 before_retry: Optional[Callable[[int], Any]] = None):
        self.operation = operation
        self.timeout = timeout
        self.policy = policy or NO_RETRY
        self.name = name
        self.on_retry = on_retry
        self.before_retry = before_retry
        self.attempts = 0

    async def run(self) -> Any:
        """
        Execute the operation, retrying transient failures

        Returns:
            Operation result if an attempt succeeds

        Raises:
            The last exception once retries are exhausted, or immediately for
            non-retriable errors. RetryCancelled when before_retry declines.
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.policy.max_retries + 1):  # +1 for initial attempt
            if attempt > 0 and self.before_retry:
                if await _maybe_await(self.before_retry(attempt)) is False:
                    logger.info(f"{self.name} retry {attempt} cancelled")
                    raise RetryCancelled(f"{self.name} retry cancelled", last_error)

            self.attempts = attempt + 1
            try:
                result = await run_with_timeout(self.operation, self.timeout, self.name)

                if attempt > 0:
                    logger.info(f"{self.name} succeeded after {attempt} retries")

                return result

            except RETRIABLE_ERRORS as e:
                last_error = e
                if attempt == self.policy.max_retries:
                    logger.warning(f"{self.name} failed after {attempt} retries: {e}")
                    raise

                delay = self.policy.delay_for(attempt)
                logger.warning(
                    f"{self.name} attempt {attempt + 1} failed ({e.__class__.__name__}), "
                    f"retrying in {delay:.2f}s"
                )

                if self.on_retry:
                    await _maybe_await(self.on_retry(attempt + 1, e, delay))

                await asyncio.sleep(delay)

            except NON_RETRIABLE_ERRORS as e:
                logger.warning(f"{self.name} non-retriable error: {e.__class__.__name__}: {e}")
                raise


async def _maybe_await(value: Any) -> Any:
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        return await value
    return value


class RetryService:
    """
    Builds bounded operations with the configured default timeout.
    """

    def __init__(self, default_timeout: Optional[float] = None):
        self.logger = get_logger(__name__)
        self.default_timeout = default_timeout or get_config().messaging.request_timeout

    def bounded(self, operation: OperationFactory, timeout: Optional[float] = None,
                policy: Optional[RetryPolicy] = None, name: str = "operation",
                on_retry: Optional[RetryCallback] = None,
                before_retry: Optional[Callable[[int], Any]] = None) -> BoundedOperation:
        """Create a bounded operation using the default timeout when none is given"""
        return BoundedOperation(
            operation,
            timeout=timeout if timeout is not None else self.default_timeout,
            policy=policy,
            name=name,
            on_retry=on_retry,
            before_retry=before_retry,
        )

    async def call(self, operation: OperationFactory, timeout: Optional[float] = None,
                   policy: Optional[RetryPolicy] = None, name: str = "operation") -> Any:
        """Run an operation once (or per policy) under the timeout"""
        return await self.bounded(operation, timeout=timeout, policy=policy, name=name).run()


# Global retry service instance
_retry_service: Optional[RetryService] = None


def get_retry_service() -> RetryService:
    """Get the global retry service instance"""
    global _retry_service
    if _retry_service is None:
        _retry_service = RetryService()
    return _retry_service
