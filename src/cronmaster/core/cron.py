"""Minimal five-field cron matcher.

Fields are minute, hour, day-of-month, month and day-of-week (0 = Sunday).
Each field accepts ``*``, ``*/n``, ``a-b``, ``a,b,c`` or a plain integer.
All five fields must match, so day-of-month and day-of-week are ANDed
rather than ORed as in classic cron.
"""

from __future__ import annotations

from datetime import datetime


def field_matches(field: str, value: int) -> bool:
    """Check whether one cron field matches a value."""
    if field == "*":
        return True

    if "," in field:
        return any(field_matches(part, value) for part in field.split(","))

    if field.startswith("*/"):
        try:
            step = int(field[2:])
        except ValueError:
            return False
        return step > 0 and value % step == 0

    if "-" in field:
        try:
            start, end = (int(part) for part in field.split("-", 1))
        except ValueError:
            return False
        return start <= value <= end

    try:
        return int(field) == value
    except ValueError:
        return False


def time_fields(when: datetime) -> tuple[int, int, int, int, int]:
    """Split a timestamp into (minute, hour, day, month, weekday)."""
    # Python's weekday() is Monday=0; cron counts from Sunday=0
    return (when.minute, when.hour, when.day, when.month, (when.weekday() + 1) % 7)


def is_due(expression: str, when: datetime) -> bool:
    """Check whether a cron expression is due at ``when``.

    Expressions without exactly five fields are never due.
    """
    fields = expression.split()
    if len(fields) != 5:
        return False

    return all(field_matches(f, v) for f, v in zip(fields, time_fields(when)))
