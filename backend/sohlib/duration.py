"""Elapsed-hours calculation for absence (novedad) records."""
import re
from datetime import datetime
from typing import Any, Optional

_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_TIME_RE = re.compile(r'^\d{2}:\d{2}(:\d{2})?$')


def check_date(value: Any) -> str:
    """Return *value* if it is a calendar date written ``YYYY-MM-DD``."""
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise ValueError("La fecha debe tener el formato AAAA-MM-DD")
    try:
        datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        raise ValueError("La fecha debe tener el formato AAAA-MM-DD")
    return value


def check_time(value: Any) -> str:
    """Return *value* if it is a clock time ``HH:MM`` or ``HH:MM:SS``."""
    if not isinstance(value, str) or not _TIME_RE.match(value):
        raise ValueError("La hora debe tener el formato HH:MM")
    try:
        datetime.strptime(value, '%H:%M:%S' if len(value) > 5 else '%H:%M')
    except ValueError:
        raise ValueError("La hora debe tener el formato HH:MM")
    return value


def _instant(date_str: str, time_str: str) -> datetime:
    date_str = (date_str or '').strip()
    time_str = (time_str or '').strip()
    if not date_str or not time_str:
        raise ValueError("Fecha y hora son obligatorias")
    try:
        return datetime.fromisoformat(f"{date_str}T{time_str}")
    except ValueError:
        raise ValueError(f"Fecha/hora inválida: {date_str} {time_str}")


def compute_hours(start_date: str, start_time: str, end_date: str, end_time: str) -> float:
    """Hours between (start_date start_time) and (end_date end_time).

    Times may be ``HH:MM`` or ``HH:MM:SS``. An end before the start yields
    ``0.0``, never a negative value. Fractions are kept; rounding for display
    is left to the caller.

    >>> compute_hours('2024-01-01', '08:00', '2024-01-01', '10:30')
    2.5
    >>> compute_hours('2024-01-02', '09:00', '2024-01-01', '09:00')
    0.0
    """
    start = _instant(start_date, start_time)
    end = _instant(end_date, end_time)
    return max(0.0, (end - start).total_seconds() / 3600.0)


def try_compute_hours(start_date: str, start_time: str,
                      end_date: str, end_time: str) -> Optional[float]:
    """Like compute_hours, but None while any input is missing or malformed."""
    try:
        return compute_hours(start_date, start_time, end_date, end_time)
    except ValueError:
        return None
