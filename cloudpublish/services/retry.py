"""Retry wrapper for management calls that hit transient transport failures."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from ..core.config import settings
from .management_client import ManagementTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Re-issue a remote call against a refreshed connection on transport failures.

    Only ``ManagementTransportError`` is retried. Not-found, conflict and other
    management faults propagate on the first attempt. Mutating calls rely on
    the remote API treating a repeated request as the same request.
    """

    def __init__(
        self,
        *,
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
        backoff: Optional[float] = None,
        refresh: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.retry_max_attempts)
        self.delay = max(0.0, delay if delay is not None else settings.retry_delay_seconds)
        self.backoff = max(1.0, backoff if backoff is not None else settings.retry_backoff)
        self._refresh = refresh
        self._sleep = sleep

    def call(self, description: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke ``func`` and retry transient failures up to ``max_attempts`` times."""

        delay = self.delay
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except ManagementTransportError as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "%s failed after %d attempt(s): %s", description, attempt, exc
                    )
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                if self._refresh is not None:
                    try:
                        self._refresh()
                    except Exception:  # pragma: no cover - defensive logging path
                        logger.debug("Connection refresh failed", exc_info=True)
                if delay:
                    self._sleep(delay)
                delay *= self.backoff
                attempt += 1
