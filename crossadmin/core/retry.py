"""Bounded, fixed-delay polling for eventually consistent reads."""
from __future__ import annotations
import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    attempts: int,
    delay: float,
    label: str = "poll",
) -> Optional[T]:
    """Call ``check`` until it returns a truthy value or attempts run out.

    Sleeps ``delay`` seconds between attempts, never after the last one.

    Returns:
        The first truthy value returned by ``check``, or None
    """
    for attempt in range(1, attempts + 1):
        value = check()
        if value:
            return value
        if attempt < attempts:
            logger.debug("[%s] attempt %d/%d not ready; waiting %ss", label, attempt, attempts, delay)
            time.sleep(delay)
    return None
