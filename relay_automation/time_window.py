# SPDX-License-Identifier: MPL-2.0
"""
Daily time window evaluation.

Schedules describe a recurring time-of-day interval during which a relay
should be powered. Windows are compared at minute granularity and may cross
midnight (e.g. 22:00-06:00).
"""

from datetime import time as dt_time


def _minutes(t: dt_time) -> int:
    return t.hour * 60 + t.minute


def in_window(now: dt_time, start: dt_time, end: dt_time) -> bool:
    """
    Check if a time of day falls within a schedule window.

    Both ends of the window are inclusive. When start is after end the window
    crosses midnight. A window whose start equals its end is never satisfied,
    so the relay is held off.

    Args:
        now: The time of day to check
        start: Window start
        end: Window end

    Returns:
        True if the relay should be on at ``now``, False otherwise
    """
    now_minutes = _minutes(now)
    start_minutes = _minutes(start)
    end_minutes = _minutes(end)

    if start_minutes == end_minutes:
        return False

    if start_minutes < end_minutes:
        # Normal window (e.g., 07:00-17:00)
        return start_minutes <= now_minutes <= end_minutes

    # Window crosses midnight (e.g., 22:00-06:00)
    return now_minutes >= start_minutes or now_minutes <= end_minutes


def parse_time_of_day(value: str) -> dt_time:
    """
    Parse a time of day from format hh:mm or hh:mm:ss.

    Args:
        value: String such as "07:00" or "17:00:00"

    Returns:
        datetime.time object

    Raises:
        ValueError: If format is invalid
    """
    value = value.strip()
    parts = value.split(':')

    if len(parts) not in (2, 3):
        raise ValueError(
            f"Invalid time format: '{value}'. Expected 'hh:mm' or 'hh:mm:ss'"
        )

    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        raise ValueError(
            f"Invalid time format: '{value}'. Expected 'hh:mm' or 'hh:mm:ss'"
        )

    hour, minute = numbers[0], numbers[1]
    second = numbers[2] if len(numbers) == 3 else 0

    if not (0 <= hour <= 23):
        raise ValueError(f"Hour must be 0-23, got {hour}")
    if not (0 <= minute <= 59):
        raise ValueError(f"Minute must be 0-59, got {minute}")
    if not (0 <= second <= 59):
        raise ValueError(f"Second must be 0-59, got {second}")

    return dt_time(hour, minute, second)


def format_window(start: dt_time, end: dt_time) -> str:
    """Return the window as 'hh:mm - hh:mm'."""
    return f"{start.strftime('%H:%M')} - {end.strftime('%H:%M')}"
