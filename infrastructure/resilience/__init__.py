"""
Resilience infrastructure - handles timeouts and retry policies for backend calls.
"""

from .retry_service import (
    RetryService,
    RetryPolicy,
    BoundedOperation,
    RetryCancelled,
    NO_RETRY,
    RETRIABLE_ERRORS,
    NON_RETRIABLE_ERRORS,
    get_retry_service,
    run_with_timeout,
    exponential_backoff_delay
)

__all__ = [
    'RetryService',
    'RetryPolicy',
    'BoundedOperation',
    'RetryCancelled',
    'NO_RETRY',
    'RETRIABLE_ERRORS',
    'NON_RETRIABLE_ERRORS',
    'get_retry_service',
    'run_with_timeout',
    'exponential_backoff_delay'
]
