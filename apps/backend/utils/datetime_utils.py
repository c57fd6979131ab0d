"""
Datetime utility functions.
Provides replacements for deprecated datetime functions.
"""

import os
from datetime import date, datetime, time
from typing import Optional, Union
import pytz

# Timezone game dates/times are entered in
LEAGUE_TIMEZONE = os.getenv("LEAGUE_TIMEZONE", "America/Toronto")


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to an aware UTC datetime.

    SQLite hands back naive datetimes for timezone-aware columns; every
    timestamp this application writes is UTC, so naive values are treated
    as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def parse_iso_datetime(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 string (or pass through a datetime) into aware UTC.

    Raises:
        ValueError: If the string is not a valid ISO-8601 datetime
    """
    if isinstance(value, datetime):
        return as_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def game_start_utc(game_date: date, game_time: time, tz_name: Optional[str] = None) -> datetime:
    """
    Combine a local league game date and time into an aware UTC datetime.

    Args:
        game_date: Date of the game in league-local time
        game_time: Start time of the game in league-local time
        tz_name: pytz zone name (defaults to LEAGUE_TIMEZONE)

    Returns:
        Game start as UTC datetime
    """
    tz = pytz.timezone(tz_name or LEAGUE_TIMEZONE)
    local = tz.localize(datetime.combine(game_date, game_time.replace(tzinfo=None)))
    return local.astimezone(pytz.UTC)


def hours_until(moment: datetime, now: datetime) -> float:
    """Hours from now until moment (negative if moment is in the past)."""
    return (as_utc(moment) - as_utc(now)).total_seconds() / 3600.0


def format_game_date(game_date: date) -> str:
    """
    Format a game date for messages, e.g. "Sat, Jan 4" (no leading zero).

    Examples:
        >>> format_game_date(date(2026, 1, 3))
        'Sat, Jan 3'
    """
    return f"{game_date.strftime('%a, %b')} {game_date.day}"


def format_game_time(game_time: time) -> str:
    """
    Format a game time for messages, e.g. "7:00 PM".

    Examples:
        >>> format_game_time(time(19, 0))
        '7:00 PM'
    """
    hour = game_time.hour % 12 or 12
    suffix = "AM" if game_time.hour < 12 else "PM"
    return f"{hour}:{game_time.minute:02d} {suffix}"
