"""Departure review policy - decides whether a stay needs ops approval before payment"""
import re
from datetime import date, datetime
from typing import Union

from app.core.errors import InvalidConfigValue

DateLike = Union[date, datetime, str]

_ISO_DATE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")


def to_date(value: DateLike) -> date:
    """Coerce a YYYY-MM-DD string, date or datetime to a calendar date

    Raises:
        InvalidConfigValue: If a string is not exactly a valid YYYY-MM-DD date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    trimmed = value.strip() if isinstance(value, str) else ""
    if _ISO_DATE.match(trimmed):
        try:
            return date.fromisoformat(trimmed)
        except ValueError:
            pass
    raise InvalidConfigValue(f'Invalid date value: "{value}". Must be YYYY-MM-DD.')


def requires_review(departure: DateLike, cutoff: DateLike) -> bool:
    """True iff departure falls on a calendar day strictly before the cutoff

    Departing on the cutoff date itself is compliant.
    """
    return to_date(departure) < to_date(cutoff)
