"""
Quota-aware pacing of paginated fetches against remote sources.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Callable

    from .protocols import ProgressSink, SourceConnector

logger: logging.Logger = logging.getLogger(__name__)

LOW_WATER_MARK: Final[int] = 10
# Used when a source signals exhaustion without telling when the window resets
_UNKNOWN_RESET_WAIT_SECONDS: Final[float] = 60.0


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class RateLimiter:
    """Blocks the calling job until the source's rate limit window resets.

    There is no queue: whichever job sees a low quota first simply waits.
    """

    def __init__(
        self,
        source: SourceConnector,
        *,
        low_water_mark: int = LOW_WATER_MARK,
        delay_ms: int = 0,
        progress: ProgressSink | None = None,
        clock: Callable[[], dt.datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._source = source
        self.low_water_mark = low_water_mark
        self.delay_ms = delay_ms
        self._progress = progress
        self._clock = clock
        self._sleep = sleep

    def wait_if_needed(self) -> float:
        """Check the quota and wait for the reset if it is below the low-water mark.

        Returns:
            Seconds waited, 0.0 when no wait was necessary

        Raises:
            SourceConnectionError: If the quota cannot be queried
        """
        quota = self._source.get_quota()
        if quota.remaining is None or quota.remaining >= self.low_water_mark:
            return 0.0
        return self.wait_until(quota.reset_at, reason=f"Rate limit low ({quota.remaining} requests left)")

    def wait_until(self, reset_at: dt.datetime | None, *, reason: str = "Rate limit exceeded") -> float:
        if reset_at is None:
            wait_seconds = _UNKNOWN_RESET_WAIT_SECONDS
        else:
            wait_seconds = max(0.0, (reset_at - self._clock()).total_seconds())
        if wait_seconds <= 0:
            return 0.0

        message = f"{reason}, waiting {wait_seconds:.0f}s for the rate limit window to reset"
        logger.warning(message)
        if self._progress is not None:
            self._progress.report(message, 0, 0)
        self._sleep(wait_seconds)
        return wait_seconds

    def throttle(self) -> None:
        """Pause between two remote items for the configured delay."""
        if self.delay_ms > 0 and self._source.kind.is_remote:
            self._sleep(self.delay_ms / 1000)
