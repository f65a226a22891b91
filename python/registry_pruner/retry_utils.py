"""Retry utilities for metadata and cluster reads with exponential backoff"""

import logging
import random
import time
from enum import Enum
from typing import Callable, Tuple, TypeVar

from pymongo.errors import AutoReconnect, NetworkTimeout, OperationFailure, ServerSelectionTimeoutError

from registry_pruner.error_utils import AuthorizationError, PolicyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNAUTHORIZED_CODES = (13, 18)  # Unauthorized, AuthenticationFailed


class RetryableErrorType(Enum):
    """Types of errors that should trigger retries"""

    NETWORK = "network"  # Connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx errors, rate limiting
    PERMANENT = "permanent"  # auth failures, not found, bad input


def is_retryable_error(error: Exception) -> Tuple[bool, RetryableErrorType]:
    """Determine if an error is retryable and what type it is

    Args:
        error: The exception that occurred

    Returns:
        Tuple of (is_retryable, error_type)
    """
    if isinstance(error, (AuthorizationError, PolicyError, PermissionError, FileNotFoundError)):
        return False, RetryableErrorType.PERMANENT

    # AutoReconnect covers NetworkTimeout and connection resets
    if isinstance(error, (AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError)):
        return True, RetryableErrorType.NETWORK

    if isinstance(error, OperationFailure):
        if error.code in UNAUTHORIZED_CODES:
            return False, RetryableErrorType.PERMANENT
        if error.has_error_label("RetryableWriteError"):
            return True, RetryableErrorType.TEMPORARY
        return False, RetryableErrorType.PERMANENT

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True, RetryableErrorType.NETWORK

    # Kubernetes API errors
    status = getattr(error, "status", None)
    if "ApiException" in type(error).__name__ and isinstance(status, int):
        if status >= 500 or status == 429:
            return True, RetryableErrorType.TEMPORARY
        return False, RetryableErrorType.PERMANENT

    error_str = str(error).lower()
    network_indicators = ["connection", "timed out", "refused", "unreachable", "reset", "broken pipe"]
    if any(indicator in error_str for indicator in network_indicators):
        return True, RetryableErrorType.NETWORK

    return False, RetryableErrorType.PERMANENT


def retry_operation(
    operation: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    operation_name: str = "operation",
) -> T:
    """Retry an operation with exponential backoff

    Args:
        operation: Callable to retry
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay between retries
        exponential_base: Base for exponential backoff
        jitter: Add random jitter
        operation_name: Name for logging purposes

    Returns:
        Result of operation

    Raises:
        The last error once retries are exhausted, or the first non-retryable error
    """
    for attempt in range(max_retries + 1):
        try:
            result = operation()
            if attempt > 0:
                logger.info(f"{operation_name} succeeded on attempt {attempt + 1}")
            return result
        except Exception as e:
            is_retryable, error_type = is_retryable_error(e)

            if not is_retryable:
                logger.debug(f"{operation_name} failed with non-retryable error ({error_type.value}): {e}")
                raise

            if attempt >= max_retries:
                logger.error(f"{operation_name} failed after {max_retries + 1} attempts: {e}")
                raise

            delay = min(initial_delay * (exponential_base**attempt), max_delay)
            if jitter:
                jitter_amount = delay * 0.1
                delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

            logger.warning(
                f"{operation_name} failed on attempt {attempt + 1}/{max_retries + 1} "
                f"({error_type.value} error: {e}). Retrying in {delay:.2f}s..."
            )
            time.sleep(delay)

    raise RuntimeError(f"{operation_name}: retry loop exited without a result")


def retry_from_config(config, operation: Callable[[], T], operation_name: str) -> T:
    """Run retry_operation with the retry settings of a ConfigManager"""
    return retry_operation(
        operation,
        max_retries=config.get_max_retries(),
        initial_delay=config.get_retry_initial_delay(),
        max_delay=config.get_retry_max_delay(),
        exponential_base=config.get_retry_exponential_base(),
        jitter=config.get_retry_jitter(),
        operation_name=operation_name,
    )
