"""
Bounded retry loop for waiting on asynchronous external processes.
"""

import logging
import time
from typing import Callable

from site_deployer.errors import TimeoutExhaustedError

logger = logging.getLogger(__name__)


def poll_until(predicate: Callable[[], bool], max_attempts: int, interval: float,
               description: str = "condition", sleep: Callable[[float], None] = time.sleep) -> int:
    """
    Call predicate until it returns True or max_attempts calls have been made.

    There is no sleep after the final attempt.

    :return: the number of attempts used
    :raises TimeoutExhaustedError: if the predicate never returned True
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        if predicate():
            logger.debug(f"{description} satisfied after {attempt} attempt(s)")
            return attempt
        if attempt < max_attempts:
            logger.info(f"Waiting for {description}... ({attempt}/{max_attempts})")
            sleep(interval)

    raise TimeoutExhaustedError(
        f"{description} not reached after {max_attempts} attempts", attempts=max_attempts)
