"""Common utilities for provider calls: retry with backoff, per-call timeouts."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from config import RetryPolicy
from provision.errors import OperationTimeoutError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar('T')

Sleeper = Callable[[float], None]


def call_with_timeout(fn: Callable[[], T], timeout: Optional[float], label: str = 'operation') -> T:
    """Run fn in a helper thread and wait at most timeout seconds.

    The helper thread is not interrupted on timeout; the result of a late
    call is discarded.

    Raises:
        OperationTimeoutError: If fn does not return in time
    """
    if timeout is None:
        return fn()

    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f'call-{label}')
    try:
        future = pool.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise OperationTimeoutError(f"{label} timed out after {timeout:g}s")
    finally:
        pool.shutdown(wait=False)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    label: str = 'operation',
    sleep: Sleeper = time.sleep,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call fn, retrying TransientProviderError with bounded exponential backoff.

    Any other exception propagates immediately. When retries are exhausted
    the last TransientProviderError is re-raised.

    Args:
        fn: Zero-argument callable to invoke
        policy: Attempt count and delay bounds
        label: Name used in log messages
        sleep: Sleep function (injectable for tests)
        deadline: Absolute clock() value after which no retry is started
        clock: Monotonic clock matching deadline

    Raises:
        TransientProviderError: When all attempts failed transiently
        OperationTimeoutError: When the deadline leaves no room for a retry
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TransientProviderError as e:
            if attempt >= policy.max_attempts:
                logger.warning("[%s] giving up after %d attempts: %s", label, attempt, e)
                raise
            delay = policy.delay_for(attempt)
            if deadline is not None and clock() + delay >= deadline:
                raise OperationTimeoutError(
                    f"{label} deadline reached after {attempt} attempts (last error: {e})"
                )
            logger.info("[%s] transient failure (attempt %d/%d), retrying in %gs: %s",
                        label, attempt, policy.max_attempts, delay, e)
            sleep(delay)
