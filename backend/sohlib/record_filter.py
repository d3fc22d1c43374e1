"""
Client-side search + date-range filtering of record lists.

Matching: the lower-cased query must be a substring of at least one of the
searchable fields (OR across fields). Date bounds are inclusive and compared
as ISO ``YYYY-MM-DD`` strings.
"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence


class MissingDatePolicy(str, Enum):
    """What to do with a record that has no date while a bound is active."""
    EXCLUDE = 'exclude'
    INCLUDE = 'include'


def _text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).lower()


def matches(record: Dict[str, Any], query: Optional[str], fields: Iterable[str]) -> bool:
    """True if the query is a substring of any of *fields* (case-insensitive)."""
    needle = _text(query)
    if not needle:
        return True
    return any(needle in _text(record.get(f)) for f in fields)


def in_date_range(record: Dict[str, Any], date_field: Optional[str],
                  date_from: Optional[str] = None, date_to: Optional[str] = None,
                  missing: MissingDatePolicy = MissingDatePolicy.EXCLUDE) -> bool:
    if not date_from and not date_to:
        return True
    if not date_field:
        return True
    value = record.get(date_field)
    if not value:
        return MissingDatePolicy(missing) is MissingDatePolicy.INCLUDE
    # timestamps like 2024-03-01T10:00:00 compare on their date part
    value = str(value)[:10]
    if date_from and value < date_from:
        return False
    if date_to and value > date_to:
        return False
    return True


def filter_records(records: Sequence[Dict[str, Any]], query: Optional[str] = '',
                   date_from: Optional[str] = None, date_to: Optional[str] = None, *,
                   fields: Iterable[str], date_field: Optional[str] = None,
                   missing: MissingDatePolicy = MissingDatePolicy.EXCLUDE) -> List[Dict[str, Any]]:
    """Return the records passing both the text query and the date bounds.

    Single pass, input order preserved. With an empty query and no bounds the
    result equals the input.
    """
    fields = tuple(fields)
    needle = _text(query)
    result = []
    for r in records:
        if not matches(r, needle, fields):
            continue
        if not in_date_range(r, date_field, date_from, date_to, missing):
            continue
        result.append(r)
    return result
