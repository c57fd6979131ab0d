"""
Injectable clocks.

Every component reads "now" from a Clock instead of the system clock so that
tests can freeze time and administrators can override it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol

from backend.utils.datetime_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return utcnow()


class FrozenClock:
    """Clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start: datetime):
        self._now = as_utc(start)

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = as_utc(moment)

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        """Move forward by seconds (and/or timedelta kwargs); returns the new time."""
        self._now = self._now + timedelta(seconds=seconds, **kwargs)
        return self._now


class AdminOverrideClock:
    """
    Wall-clock time unless an administrator has pinned the current time.

    The override is persisted as the ``current_time_override`` setting and
    loaded into this clock at startup.
    """

    def __init__(self, base: Optional[Clock] = None):
        self._base = base or SystemClock()
        self._override: Optional[datetime] = None

    @property
    def override(self) -> Optional[datetime]:
        return self._override

    def set_override(self, moment: Optional[datetime]) -> None:
        self._override = as_utc(moment) if moment is not None else None
        if self._override is None:
            logger.info("Time override cleared")
        else:
            logger.info(f"Time override set to {self._override.isoformat()}")

    def clear_override(self) -> None:
        self.set_override(None)

    def now(self) -> datetime:
        if self._override is not None:
            return self._override
        return self._base.now()


# Global clock instance
_clock = AdminOverrideClock()


def get_clock() -> AdminOverrideClock:
    """Get the global application clock."""
    return _clock
