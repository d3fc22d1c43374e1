"""
Permission gate: decides whether a role may perform a mutating action on a
resource (record table or catalog kind).

Pure lookup against a static matrix, no I/O.
"""
from typing import Dict, FrozenSet, Optional

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
ACTIONS = (CREATE, UPDATE, DELETE)

ROLES = ('Admin', 'Editor', 'Lector')

# Catalog tables are only writable by Admin; they are not listed per role.
PERMISSION_MATRIX: Dict[str, Dict[str, FrozenSet[str]]] = {
    'Editor': {
        'accidentes_trabajo': frozenset({CREATE, UPDATE}),
        'enfermeria': frozenset({CREATE, UPDATE}),
        'novedades': frozenset({CREATE, UPDATE}),
    },
    'Lector': {},
}


def allow(role: Optional[str], resource: str, action: str) -> bool:
    """Return True if *role* may perform *action* on *resource*.

    >>> allow('Admin', 'tipos_at', 'delete')
    True
    >>> allow('Editor', 'novedades', 'delete')
    False
    >>> allow(None, 'novedades', 'create')
    False
    """
    if not role or action not in ACTIONS:
        return False
    role = str(role).strip()
    if role == 'Admin':
        return True
    return action in PERMISSION_MATRIX.get(role, {}).get(resource, frozenset())


def has_permission(user: Optional[dict], resource: str, action: str) -> bool:
    """AuthContext predicate for a session user dict (``{'ID', 'NAME', 'role'}``)."""
    if not user:
        return False
    return allow(user.get('role'), resource, action)
