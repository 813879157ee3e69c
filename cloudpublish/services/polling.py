"""Fixed-interval polling with an optional upper bound."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PollOutcome(Generic[T]):
    """Last observed value and whether the predicate accepted it."""

    value: Optional[T]
    satisfied: bool
    attempts: int
    elapsed: float

    @property
    def timed_out(self) -> bool:
        return not self.satisfied


def poll_until(
    fetch: Callable[[], T],
    predicate: Callable[[T], bool],
    *,
    interval: float,
    timeout: Optional[float] = None,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollOutcome[T]:
    """Call ``fetch`` until ``predicate`` accepts its result.

    The first fetch happens immediately and every later fetch waits
    ``interval`` seconds. Without a ``timeout`` polling continues until the
    predicate is satisfied. With one, an unsatisfied outcome is returned as
    soon as the next sleep would cross the bound. Exceptions raised by
    ``fetch`` or ``predicate`` propagate unchanged.
    """

    start = clock()
    attempts = 0
    while True:
        value = fetch()
        attempts += 1
        if predicate(value):
            elapsed = clock() - start
            logger.debug("%s satisfied after %d poll(s) in %.1fs", description, attempts, elapsed)
            return PollOutcome(value=value, satisfied=True, attempts=attempts, elapsed=elapsed)

        elapsed = clock() - start
        if timeout is not None and elapsed + interval > timeout:
            logger.warning(
                "Gave up waiting for %s after %d poll(s) in %.1fs", description, attempts, elapsed
            )
            return PollOutcome(value=value, satisfied=False, attempts=attempts, elapsed=elapsed)

        sleep(interval)
