"""
retry_helpers.py — Retry loops with exponential backoff.
`retry_with_backoff` reports an outcome instead of raising, and understands the
scraping service's restart window and the "timeout means accepted" rule.
`simple_retry` is the plain variant for storage writes and raises the last error.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from errors import ServiceRestartingError
from monitoring import get_logger, log_attempt

logger = get_logger("retry")


class OperationTimeout(Exception):
    """Raised by an operation whose request was sent but not answered in time."""


@dataclass
class RetryOutcome:
    success: bool
    result: Any = None
    error: Optional[Exception] = None
    timed_out: bool = False
    restarting: bool = False
    attempts: int = 0


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Standard delay after a failed attempt (1-based): base * 2^attempt."""
    return base_delay * (2 ** attempt)


def retry_with_backoff(
    operation: Callable[[], Any],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    restart_delays: tuple = (15, 30),
    break_on_timeout: bool = True,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryOutcome:
    """
    Run `operation` up to `max_retries` times.

    - Returns normally: success.
    - Raises OperationTimeout: with break_on_timeout the loop stops and the
      outcome is timed_out (the far side is assumed to be processing).
    - Raises ServiceRestartingError: retried on the restart tier
      (restart_delays[0], then restart_delays[1] for every later wait).
    - Raises anything else: retried with base * 2^attempt unless should_retry says no.
    """
    last_error = None
    restarting = False

    for attempt in range(1, max_retries + 1):
        logger.debug(f"{operation_name} attempt {attempt}/{max_retries}")
        try:
            result = operation()
            if attempt > 1:
                logger.info(f"{operation_name} succeeded on attempt {attempt}")
            return RetryOutcome(success=True, result=result, attempts=attempt)
        except OperationTimeout as e:
            if break_on_timeout:
                logger.info(f"{operation_name} timed out, assuming background processing")
                return RetryOutcome(success=False, timed_out=True, attempts=attempt)
            last_error = e
            log_attempt(logger, operation_name, attempt, max_retries, f"timeout: {e}")
        except ServiceRestartingError as e:
            restarting = True
            last_error = e
            log_attempt(logger, operation_name, attempt, max_retries, f"service restarting: {e}")
        except Exception as e:
            last_error = e
            log_attempt(logger, operation_name, attempt, max_retries, str(e))
            if not should_retry(e):
                logger.info(f"{operation_name}: error is not retryable, giving up")
                break

        if attempt < max_retries:
            if restarting:
                delay = restart_delays[0] if attempt == 1 else restart_delays[-1]
            else:
                delay = backoff_delay(attempt, base_delay)
            logger.info(f"Retrying {operation_name} in {delay:.1f}s")
            sleep(delay)

    logger.error(f"All {max_retries} {operation_name} attempts failed: {last_error}")
    return RetryOutcome(
        success=False,
        error=last_error,
        restarting=restarting,
        attempts=max_retries,
    )


def simple_retry(
    operation: Callable[[], Any],
    max_retries: int,
    operation_name: str,
    base_delay: float = 0.5,
    retry_on: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Run `operation` until it succeeds, waiting base * 2^attempt between tries.
    Errors outside `retry_on` propagate immediately; the last error is re-raised
    once attempts are exhausted.
    """
    for attempt in range(1, max_retries + 1):
        try:
            result = operation()
            if attempt > 1:
                logger.info(f"{operation_name} succeeded on attempt {attempt}")
            return result
        except retry_on as e:
            log_attempt(logger, operation_name, attempt, max_retries, str(e))
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.info(f"Retrying {operation_name} in {delay:.1f}s")
            sleep(delay)
