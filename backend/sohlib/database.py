"""
High-level data access for the occupational-health JSON tables.

``SOHDatabase`` is the persistence gateway used by the API and by
in-process controllers: list / insert / update / delete by table name, plus
the API user table and the write changelog.
"""
import copy
import hashlib
import json
import logging
import os
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import RecordNotFound
from .schemas import CATALOG_TABLES, RECORD_TABLES
from .table_store import locked, read_table, table_path, write_table

_logger = logging.getLogger(__name__)

USERS_TABLE = 'usuarios'
TABLES = RECORD_TABLES + CATALOG_TABLES + (USERS_TABLE,)

# Fields set by the store and never overwritten by a patch
_IMMUTABLE = ('id', 'created_at', 'created_by')

# ── Global cross-request table cache ─────────────────────────────
# Maps (db_path, table_name) → (mtime, rows)
_GLOBAL_TABLE_CACHE: Dict[tuple, tuple] = {}

# Starter catalog content written by seed_defaults() on an empty database
DEFAULT_CATALOG_ENTRIES: Dict[str, List[Dict[str, Any]]] = {
    'tipos_novedad': [{'nombre': n} for n in (
        'Permiso', 'Incapacidad', 'Licencia', 'Calamidad Doméstica', 'Cita Médica')],
    'tipos_incapacidad': [{'nombre': n} for n in (
        'Enfermedad General', 'Accidente de Trabajo', 'Licencia de Maternidad')],
    'sintomas': [{'nombre': n} for n in (
        'Cefalea', 'Fiebre', 'Dolor Abdominal', 'Mareo', 'Malestar General')],
    'antecedentes_salud': [{'nombre': n} for n in (
        'Ninguno', 'Hipertensión', 'Diabetes', 'Asma', 'Alergias')],
    'tipos_at': [{'nombre': n} for n in ('Caída', 'Golpe', 'Corte', 'Quemadura', 'Tránsito')],
    'tipos_lesion': [{'nombre': n} for n in (
        'Contusión', 'Esguince', 'Fractura', 'Herida', 'Quemadura')],
    'partes_cuerpo': [{'nombre': n} for n in (
        'Cabeza', 'Espalda', 'Manos', 'Miembros Inferiores', 'Miembros Superiores')],
    'cargos': [{'nombre': n} for n in (
        'Docente', 'Instructor', 'Auxiliar Administrativo', 'Coordinador')],
    'dependencias': [{'nombre': n} for n in (
        'Rectoría', 'Secretaría Académica', 'Talento Humano', 'Bienestar')],
    'diagnosticos': [
        {'codigo': 'J00', 'nombre': 'Rinofaringitis aguda'},
        {'codigo': 'R51', 'nombre': 'Cefalea'},
        {'codigo': 'M54', 'nombre': 'Dorsalgia'},
    ],
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


def _sort_value(value: Any):
    if value is None:
        return (0, '')
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value).lower())


class SOHDatabase:
    def __init__(self, db_path: str):
        self.db_path = db_path

    # ── Internals ──────────────────────────────────────────────
    def _check_table(self, name: str) -> None:
        if name not in TABLES:
            raise ValueError(f"UNKNOWN_TABLE:{name}")

    def _table(self, name: str) -> str:
        return table_path(self.db_path, name)

    def _read(self, name: str) -> List[Dict[str, Any]]:
        """Read a table, using a global mtime-based cache.

        Returns deep copies so callers may mutate the rows freely.
        """
        path = self._table(name)
        key = (self.db_path, name)
        try:
            mtime = os.path.getmtime(path)
        except OSError:
            mtime = 0.0

        cached = _GLOBAL_TABLE_CACHE.get(key)
        if cached is not None and cached[0] == mtime:
            return copy.deepcopy(cached[1])

        data = read_table(path)
        _GLOBAL_TABLE_CACHE[key] = (mtime, data)
        return copy.deepcopy(data)

    def _invalidate_cache(self, name: str) -> None:
        """Drop the cached rows of a table after a write (mtime granularity)."""
        _GLOBAL_TABLE_CACHE.pop((self.db_path, name), None)

    def _write(self, name: str, rows: List[Dict[str, Any]]) -> None:
        write_table(self._table(name), rows)
        self._invalidate_cache(name)

    # ── Schema / bootstrap ─────────────────────────────────────
    def ensure_schema(self) -> None:
        """Create the database directory and any missing table files."""
        os.makedirs(self.db_path, exist_ok=True)
        for name in TABLES:
            path = self._table(name)
            if not os.path.exists(path):
                write_table(path, [])

    def seed_defaults(self) -> int:
        """Fill empty catalog tables with starter entries. Returns rows created."""
        created = 0
        for table, entries in DEFAULT_CATALOG_ENTRIES.items():
            if self._read(table):
                continue
            for entry in entries:
                self.insert(table, {**entry, 'activo': True})
                created += 1
        if created:
            _logger.info("Seeded %d default catalog entries", created)
        return created

    # ── Gateway operations ─────────────────────────────────────
    def list(self, table: str, filter: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return rows of *table* matching all equality conditions in *filter*.

        ``order_by`` is a field name, prefixed with ``-`` for descending. Rows
        with equal sort keys keep the most recently inserted first when
        descending, first-inserted first when ascending.
        """
        self._check_table(table)
        rows = self._read(table)
        if filter:
            rows = [r for r in rows if all(r.get(k) == v for k, v in filter.items())]
        if order_by:
            descending = order_by.startswith('-')
            fld = order_by.lstrip('-')
            if descending:
                rows = sorted(reversed(rows), key=lambda r: _sort_value(r.get(fld)), reverse=True)
            else:
                rows = sorted(rows, key=lambda r: _sort_value(r.get(fld)))
        return rows

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        return next((r for r in self._read(table) if r.get('id') == record_id), None)

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self._check_table(table)
        row = {k: v for k, v in record.items() if k not in ('id', 'created_at')}
        row['id'] = uuid.uuid4().hex
        row['created_at'] = _now()
        path = self._table(table)
        with locked(path):
            rows = read_table(path)
            rows.append(row)
            self._write(table, rows)
        return dict(row)

    def update(self, table: str, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        self._check_table(table)
        path = self._table(table)
        with locked(path):
            rows = read_table(path)
            for row in rows:
                if row.get('id') == record_id:
                    row.update({k: v for k, v in patch.items() if k not in _IMMUTABLE})
                    row['updated_at'] = _now()
                    self._write(table, rows)
                    return dict(row)
        raise RecordNotFound(table, record_id)

    def delete(self, table: str, record_id: str) -> None:
        self._check_table(table)
        path = self._table(table)
        with locked(path):
            rows = read_table(path)
            remaining = [r for r in rows if r.get('id') != record_id]
            if len(remaining) == len(rows):
                raise RecordNotFound(table, record_id)
            self._write(table, remaining)

    def get_stats(self) -> Dict[str, int]:
        return {name: len(self._read(name)) for name in RECORD_TABLES + CATALOG_TABLES}

    # ── Users ──────────────────────────────────────────────────
    @staticmethod
    def _hash_password(password: str, salt: str) -> str:
        """PBKDF2-SHA256 hex digest of *password* with *salt*."""
        return hashlib.pbkdf2_hmac(
            'sha256', password.encode('utf-8'), bytes.fromhex(salt), 100_000
        ).hex()

    @staticmethod
    def _public_user(r: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'ID': r.get('ID'),
            'NAME': r.get('NAME', ''),
            'DESCRIP': r.get('DESCRIP', ''),
            'role': r.get('role', 'Lector'),
            'ADMIN': r.get('role') == 'Admin',
        }

    def get_users(self) -> List[Dict]:
        rows = [r for r in self._read(USERS_TABLE) if not r.get('HIDE')]
        return [self._public_user(r) for r in sorted(rows, key=lambda r: r.get('ID', 0))]

    def create_user(self, data: dict) -> dict:
        """Create an API user. Raises ValueError('DUPLICATE:USERNAME:…') on name clash."""
        path = self._table(USERS_TABLE)
        name = (data.get('NAME') or '').strip()
        with locked(path):
            rows = read_table(path)
            for row in rows:
                if row.get('HIDE'):
                    continue
                if (row.get('NAME') or '').strip().lower() == name.lower():
                    raise ValueError(f"DUPLICATE:USERNAME:{name}")
            new_id = max((r.get('ID', 0) for r in rows), default=0) + 1
            salt = secrets.token_hex(16)
            record = {
                'ID': new_id,
                'NAME': name,
                'DESCRIP': data.get('DESCRIP') or '',
                'role': data.get('role') or 'Lector',
                'SALT': salt,
                'DIGEST': self._hash_password(data.get('PASSWORD') or '', salt),
                'HIDE': False,
                'created_at': _now(),
            }
            rows.append(record)
            self._write(USERS_TABLE, rows)
        return self._public_user(record)

    def update_user(self, user_id: int, data: dict) -> dict:
        path = self._table(USERS_TABLE)
        with locked(path):
            rows = read_table(path)
            row = next((r for r in rows if r.get('ID') == user_id and not r.get('HIDE')), None)
            if row is None:
                raise ValueError(f"User {user_id} not found")
            for key in ('NAME', 'DESCRIP', 'role'):
                if key in data:
                    row[key] = data[key]
            if data.get('PASSWORD'):
                row['SALT'] = secrets.token_hex(16)
                row['DIGEST'] = self._hash_password(data['PASSWORD'], row['SALT'])
            self._write(USERS_TABLE, rows)
        return self._public_user(row)

    def delete_user(self, user_id: int) -> int:
        """Soft-delete (hide) a user. Returns 1 if found, 0 otherwise."""
        path = self._table(USERS_TABLE)
        with locked(path):
            rows = read_table(path)
            row = next((r for r in rows if r.get('ID') == user_id and not r.get('HIDE')), None)
            if row is None:
                return 0
            row['HIDE'] = True
            self._write(USERS_TABLE, rows)
        return 1

    def verify_user_password(self, name: str, password: str) -> Optional[Dict]:
        """Verify username+password, return user dict (without hash) or None."""
        for r in self._read(USERS_TABLE):
            if r.get('HIDE'):
                continue
            if (r.get('NAME') or '').strip().lower() != name.strip().lower():
                continue
            digest = self._hash_password(password, r.get('SALT', ''))
            if secrets.compare_digest(digest, r.get('DIGEST', '')):
                return self._public_user(r)
            return None
        return None

    # ── Changelog ─────────────────────────────────────────────
    def _changelog_path(self) -> str:
        return os.path.join(self.db_path, 'changelog.json')

    def get_changelog(self, limit: int = 100, user: Optional[str] = None,
                      date_from: Optional[str] = None, date_to: Optional[str] = None) -> List[Dict]:
        path = self._changelog_path()
        if not os.path.exists(path):
            return []
        with open(path, 'r', encoding='utf-8') as f:
            entries: List[Dict] = json.load(f)
        if user:
            entries = [e for e in entries if e.get('user', '').lower() == user.lower()]
        if date_from:
            entries = [e for e in entries if e.get('timestamp', '') >= date_from]
        if date_to:
            entries = [e for e in entries if e.get('timestamp', '') <= date_to + 'T23:59:59']
        entries = sorted(entries, key=lambda e: e.get('timestamp', ''), reverse=True)
        return entries[:limit]

    def log_action(self, user: str, action: str, entity: str, entity_id: str,
                   details: str = '') -> Dict:
        """Append a changelog entry. Keeps the newest 1000 entries."""
        path = self._changelog_path()
        entry = {
            'timestamp': datetime.now().isoformat(timespec='seconds'),
            'user': user,
            'action': action,          # CREATE / UPDATE / DELETE
            'entity': entity,          # table name
            'entity_id': entity_id,
            'details': details,
        }
        with locked(path):
            entries = read_table(path)
            entries.append(entry)
            write_table(path, entries[-1000:])
        return entry
