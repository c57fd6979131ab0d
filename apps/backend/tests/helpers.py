"""
Test doubles and fixed dates shared by the spare notification tests.
"""

from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence

import pytz

from backend.utils.clock import FrozenClock
from backend.utils.shuffle import fisher_yates_shuffle

# Monday 2026-03-02 12:00 UTC (07:00 in the league's Toronto time zone)
TEST_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=pytz.UTC)


class RecordingSender:
    """NotificationSender that records calls; configured channels/members fail."""

    def __init__(self):
        self.calls = []
        self.comments = []
        self.fail_channels = set()
        self.fail_members = set()
        self.raise_members = set()

    async def send(self, channel, member, kind, spare_request, generation, comment=None):
        self.calls.append((channel, member.id, kind, spare_request.id, generation))
        self.comments.append(comment)
        if member.id in self.raise_members:
            raise ConnectionError("transport down")
        if channel in self.fail_channels or member.id in self.fail_members:
            return False
        return True

    def member_ids(self, kind: Optional[str] = None) -> List[int]:
        return [call[1] for call in self.calls if kind is None or call[2].startswith(kind)]


class ScriptedRandom:
    """RandomSource returning a fixed sequence of randrange results."""

    def __init__(self, values: Sequence[int]):
        self._values = list(values)

    def randrange(self, stop: int) -> int:
        value = self._values.pop(0)
        assert 0 <= value < stop
        return value


def scripted_shuffler(values: Sequence[int]):
    """Fisher-Yates shuffler driven by a scripted random source."""

    def shuffle(items):
        return fisher_yates_shuffle(items, ScriptedRandom(values))

    return shuffle


def identity_shuffler(items):
    return list(items)


def staggered_game():
    """Game 2026-03-04 12:00 Toronto time, 53 hours after TEST_NOW."""
    return date(2026, 3, 4), time(12, 0)


def soon_game():
    """Game 2026-03-02 13:00 Toronto time, 6 hours after TEST_NOW."""
    return date(2026, 3, 2), time(13, 0)


def later(clock: FrozenClock, seconds: int) -> datetime:
    return clock.now() + timedelta(seconds=seconds)
