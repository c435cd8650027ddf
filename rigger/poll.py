"""
Bounded polling and retry helpers.

Every wait site in the project goes through ``wait_until`` and every
retryable provider call through ``retry``; there are no bare sleeps.
"""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import ProbeFailed, PropagationTimeout, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base: float, maximum: float):
    """Yield exponential backoff delays: base, 2*base, 4*base ... capped at maximum."""
    delay = base
    for _ in range(attempts):
        yield min(delay, maximum)
        delay *= 2


def retry(
    fn: Callable[[], T],
    attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 20.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    describe: str = "provider call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn, retrying transient failures with exponential backoff.

    Args:
        fn: Zero-argument callable
        attempts: Total number of attempts (>= 1)
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for a single delay
        retry_on: Exception types considered transient
        describe: Human description used in logs and the final error
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        ProbeFailed: When every attempt failed with a transient error
    """
    last_error: Optional[BaseException] = None
    delays = list(backoff_delays(attempts - 1, base_delay, max_delay))

    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as e:
            last_error = e
            if attempt < attempts - 1:
                delay = delays[attempt]
                logger.warning(f"{describe} failed (attempt {attempt + 1}/{attempts}), retrying in {delay:.1f}s: {e}")
                sleep(delay)

    resource = getattr(last_error, "resource", None)
    raise ProbeFailed(
        f"{describe} failed after {attempts} attempts: {last_error}",
        resource=resource,
    ) from last_error


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 5.0,
    describe: str = "condition",
    resource: Optional[str] = None,
    stage: Optional[str] = None,
    remediation: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Poll predicate on a fixed interval until it holds or the timeout expires.

    The predicate is always evaluated at least once, and once more right at
    the deadline, so a condition that becomes true during the last interval
    is not reported as a timeout.

    Raises:
        PropagationTimeout: If predicate never returned True within timeout
    """
    deadline = clock() + timeout
    attempt = 0

    while True:
        attempt += 1
        if predicate():
            if attempt > 1:
                logger.debug(f"{describe} satisfied after {attempt} checks")
            return

        remaining = deadline - clock()
        if remaining <= 0:
            break

        logger.info(f"Waiting for {describe}... (check {attempt})")
        sleep(min(interval, remaining))

    raise PropagationTimeout(
        f"Timed out after {timeout:.0f}s waiting for {describe}",
        resource=resource,
        stage=stage,
        remediation=remediation,
    )
