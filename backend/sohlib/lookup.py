"""Auto-fill of person fields from the staff directory (funcionarios)."""
from typing import Any, Dict, Iterable, Optional, Sequence, Union

# Fields copied from a directory entry into a record draft
PERSON_FIELDS = ('nombre', 'cargo', 'dependencia')


class _NotFound:
    """Sentinel: no directory entry for the key; keep typed fields as they are."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return 'NOT_FOUND'


NOT_FOUND = _NotFound()


def resolve(directory: Sequence[Dict[str, Any]], key: Optional[str],
            fields: Iterable[str] = PERSON_FIELDS,
            key_field: str = 'cedula') -> Union[Dict[str, Any], _NotFound]:
    """Exact-match *key* against the active directory entries.

    Returns the subset of *fields* to overwrite, or ``NOT_FOUND``.
    """
    if key is None or key == '':
        return NOT_FOUND
    for entry in directory:
        if entry.get('activo') is False:
            continue
        if entry.get(key_field) == key:
            return {f: entry.get(f) or '' for f in fields}
    return NOT_FOUND


def apply_lookup(draft: Dict[str, Any], directory: Sequence[Dict[str, Any]], key: str,
                 fields: Iterable[str] = PERSON_FIELDS,
                 key_field: str = 'cedula') -> Dict[str, Any]:
    """Return a new draft with the key set and, on a match, the person fields filled."""
    updated = dict(draft)
    updated[key_field] = key
    found = resolve(directory, key, fields, key_field)
    if found is not NOT_FOUND:
        updated.update(found)
    return updated
