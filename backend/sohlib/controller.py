"""
Record-management controller: the state machine behind every list + modal
form screen.

States::

    IDLE ──open_create/open_edit──▶ MODAL_OPEN ──submit──▶ SUBMITTING ──ok──▶ IDLE (+reload)
      │                              │    ▲                     │
      │                              │    └──────failure────────┘
      │                              └──cancel──▶ IDLE
      └──request_delete──▶ CONFIRMING_DELETE ──confirm──▶ IDLE (+reload)
                                     └──cancel──▶ IDLE

    IDLE ──load──▶ LOADING ──all fetches settled──▶ IDLE

Only ``load``, ``submit``, ``confirm_delete`` and ``toggle_active`` touch the
gateway. Every other transition only changes in-memory UI state. Outcomes
are reported through the ``notify(level, message)`` callback; no error
escapes an operation.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import permissions
from .errors import LoadError, PermissionDenied, PersistenceError, SOHError, ValidationError
from .export import export_records
from .gateway import PersistenceGateway
from .lookup import apply_lookup
from .record_filter import MissingDatePolicy, filter_records
from .schemas import CatalogSchema, ScreenSchema

_logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]


class State(str, Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    MODAL_OPEN = 'modal_open'
    SUBMITTING = 'submitting'
    CONFIRMING_DELETE = 'confirming_delete'


class Mode(str, Enum):
    CREATE = 'create'
    EDIT = 'edit'


class InvalidTransition(RuntimeError):
    """An operation was requested from a state that does not allow it."""


@dataclass(frozen=True)
class AuthContext:
    """Current user as seen by a screen: identity, role and permission predicate."""
    user_id: Any
    name: str
    role: str

    @classmethod
    def from_user(cls, user: Dict[str, Any]) -> 'AuthContext':
        return cls(user.get('ID'), user.get('NAME', ''), user.get('role', 'Lector'))

    def has_permission(self, resource: str, action: str) -> bool:
        return permissions.allow(self.role, resource, action)


def log_notifier(level: str, message: str) -> None:
    """Default notifier: toasts go to the log."""
    if level == 'error':
        _logger.warning("toast[%s] %s", level, message)
    else:
        _logger.info("toast[%s] %s", level, message)


async def _call(fn: Callable, *args):
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    return await asyncio.to_thread(fn, *args)


class CrudController:
    """Owns one screen's record collection, draft and modal/delete state."""

    #: write created_by on insert
    STAMP_CREATOR = True

    MESSAGES = {
        'created': 'Registro creado exitosamente',
        'updated': 'Registro actualizado exitosamente',
        'deleted': 'Registro eliminado exitosamente',
        'save_error': 'Error al guardar el registro',
        'delete_error': 'Error al eliminar el registro',
        'load_error': LoadError.user_message,
        'denied': PermissionDenied.user_message,
        'denied_update': 'No tienes permisos para editar',
        'denied_delete': 'No tienes permisos para eliminar',
        'not_found': 'Registro no encontrado',
        'exported': 'Archivo exportado exitosamente',
    }

    def __init__(self, schema: ScreenSchema, gateway: PersistenceGateway, auth: AuthContext,
                 notify: Optional[Notifier] = None,
                 missing_date: MissingDatePolicy = MissingDatePolicy.EXCLUDE):
        self.schema = schema
        self.gateway = gateway
        self.auth = auth
        self.notify = notify or log_notifier
        self.missing_date = MissingDatePolicy(missing_date)

        self.state = State.IDLE
        self.loaded = False
        self.records: List[Dict[str, Any]] = []
        self.catalogs: Dict[str, List[Dict[str, Any]]] = {}

        self.mode: Optional[Mode] = None
        self.draft: Optional[Dict[str, Any]] = None
        self.editing: Optional[Dict[str, Any]] = None
        self.hours: Optional[float] = None
        self.pending_delete: Optional[str] = None
        self.last_error: Optional[SOHError] = None

        self.query = ''
        self.date_from: Optional[str] = None
        self.date_to: Optional[str] = None

    # ── helpers ────────────────────────────────────────────────
    @property
    def resource(self) -> str:
        return self.schema.resource

    def _require(self, *states: State) -> None:
        if self.state not in states:
            raise InvalidTransition(
                f"{self.resource}: not allowed in state {self.state.value}"
            )

    def _fail(self, error: SOHError, message: str) -> bool:
        self.last_error = error
        self.notify('error', message)
        return False

    def _gate(self, action: str, message_key: str = 'denied') -> bool:
        if self.auth.has_permission(self.resource, action):
            return True
        _logger.warning(
            "Permission denied: user=%s role=%s resource=%s action=%s",
            self.auth.name, self.auth.role, self.resource, action,
        )
        self._fail(PermissionDenied(self.resource, action, self.auth.role),
                   self.MESSAGES[message_key])
        return False

    def _find(self, record_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.records if r.get('id') == record_id), None)

    def _recompute_hours(self) -> None:
        spec = self.schema.duration
        if spec is None or self.draft is None:
            return
        self.hours = spec.compute(self.draft)
        self.draft[spec.target] = self.hours if self.hours is not None else 0.0

    def _close_modal(self) -> None:
        self.mode = None
        self.draft = None
        self.editing = None
        self.hours = None

    # ── Loading ────────────────────────────────────────────────
    def _fetches(self) -> List[Tuple[str, Optional[Dict[str, Any]], str]]:
        calls = [(self.resource, None, self.schema.order_by)]
        calls += [(t, {'activo': True}, 'nombre') for t in self.schema.load_tables]
        return calls

    async def load(self) -> bool:
        """Fetch records and all catalogs in parallel; apply only if all succeed."""
        self._require(State.IDLE)
        self.state = State.LOADING
        fetches = self._fetches()
        results = await asyncio.gather(
            *(_call(self.gateway.list, table, flt, order) for table, flt, order in fetches),
            return_exceptions=True,
        )
        self.state = State.IDLE
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            _logger.error("Load failed for %s: %s", self.resource, errors[0])
            return self._fail(LoadError(str(errors[0])), self.MESSAGES['load_error'])
        self.records = list(results[0])
        self.catalogs = {table: list(rows) for (table, _, _), rows in zip(fetches[1:], results[1:])}
        self.loaded = True
        return True

    # ── List view ──────────────────────────────────────────────
    def set_search(self, query: str = '', date_from: Optional[str] = None,
                   date_to: Optional[str] = None) -> None:
        self.query = query or ''
        self.date_from = date_from or None
        self.date_to = date_to or None

    @property
    def visible(self) -> List[Dict[str, Any]]:
        return filter_records(
            self.records, self.query, self.date_from, self.date_to,
            fields=self.schema.search_fields, date_field=self.schema.date_field,
            missing=self.missing_date,
        )

    def options(self, field_name: str) -> List[str]:
        """Selectable values (active catalog entries) for a categorical field."""
        kind = self.schema.categorical_fields.get(field_name)
        if kind is None:
            return []
        return [e.get('nombre') for e in self.catalogs.get(kind, []) if e.get('activo', True)]

    # ── Modal form ─────────────────────────────────────────────
    def open_create(self) -> bool:
        self._require(State.IDLE)
        if not self._gate(permissions.CREATE):
            return False
        self.mode = Mode.CREATE
        self.editing = None
        self.draft = self.schema.empty_draft()
        self._recompute_hours()
        self.state = State.MODAL_OPEN
        return True

    def open_edit(self, record_id: str) -> bool:
        self._require(State.IDLE)
        if not self._gate(permissions.UPDATE, 'denied_update'):
            return False
        record = self._find(record_id)
        if record is None:
            return self._fail(PersistenceError(f"NOT_FOUND:{self.resource}:{record_id}"),
                              self.MESSAGES['not_found'])
        self.mode = Mode.EDIT
        self.editing = dict(record)
        self.draft = self.schema.draft_from(record)
        self._recompute_hours()
        self.state = State.MODAL_OPEN
        return True

    def set_field(self, name: str, value: Any) -> None:
        """Edit one draft field; the cedula fills person fields from the directory."""
        self._require(State.MODAL_OPEN)
        if name not in self.draft:
            raise KeyError(name)
        directory = self.schema.directory
        if directory and name == 'cedula':
            self.draft = apply_lookup(self.draft, self.catalogs.get(directory, []), value)
        else:
            self.draft[name] = value
        if self.schema.duration is not None and name in self.schema.duration.inputs:
            self._recompute_hours()

    def update_draft(self, **values: Any) -> None:
        for name, value in values.items():
            self.set_field(name, value)

    def cancel(self) -> None:
        self._require(State.MODAL_OPEN)
        self._close_modal()
        self.state = State.IDLE

    def _submit_payload(self) -> Dict[str, Any]:
        payload = self.schema.payload(self.draft)
        spec = self.schema.duration
        if spec is not None:
            # validate() has already rejected drafts whose hours cannot be computed
            self.hours = spec.compute(self.draft)
            payload[spec.target] = self.hours
        return payload

    async def submit(self) -> bool:
        """Persist the draft; on success close the modal and reload."""
        self._require(State.MODAL_OPEN)
        editing = self.mode is Mode.EDIT
        if not self._gate(permissions.UPDATE if editing else permissions.CREATE):
            return False
        try:
            self.schema.validate(self.draft, self.catalogs, previous=self.editing)
        except ValidationError as e:
            return self._fail(e, str(e))

        payload = self._submit_payload()
        self.state = State.SUBMITTING
        try:
            if editing:
                patch = {k: v for k, v in payload.items() if self.editing.get(k) != v}
                await _call(self.gateway.update, self.resource, self.editing['id'], patch)
            else:
                if self.STAMP_CREATOR:
                    payload['created_by'] = self.auth.user_id
                await _call(self.gateway.insert, self.resource, payload)
        except Exception as e:
            _logger.error("Save failed for %s: %s", self.resource, e)
            self.state = State.MODAL_OPEN
            error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
            return self._fail(error, self.MESSAGES['save_error'])

        self.notify('success', self.MESSAGES['updated' if editing else 'created'])
        self._close_modal()
        self.state = State.IDLE
        await self.load()
        return True

    # ── Delete ─────────────────────────────────────────────────
    def request_delete(self, record_id: str) -> bool:
        self._require(State.IDLE)
        if not self._gate(permissions.DELETE, 'denied_delete'):
            return False
        self.pending_delete = record_id
        self.state = State.CONFIRMING_DELETE
        return True

    def cancel_delete(self) -> None:
        self._require(State.CONFIRMING_DELETE)
        self.pending_delete = None
        self.state = State.IDLE

    async def confirm_delete(self) -> bool:
        self._require(State.CONFIRMING_DELETE)
        record_id, self.pending_delete = self.pending_delete, None
        ok = True
        try:
            await _call(self.gateway.delete, self.resource, record_id)
        except Exception as e:
            _logger.error("Delete failed for %s/%s: %s", self.resource, record_id, e)
            error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
            ok = self._fail(error, self.MESSAGES['delete_error'])
        else:
            self.notify('success', self.MESSAGES['deleted'])
        self.state = State.IDLE
        await self.load()
        return ok

    async def delete(self, record_id: str, confirm: Callable[[], bool]) -> bool:
        """Gate, ask *confirm*, then delete. A declined confirmation makes no call."""
        if not self.request_delete(record_id):
            return False
        if not confirm():
            self.cancel_delete()
            return False
        return await self.confirm_delete()

    # ── Export ─────────────────────────────────────────────────
    def export(self) -> Tuple[str, bytes]:
        """Spreadsheet of the currently visible records: (filename, xlsx bytes)."""
        filename, content = export_records(self.schema, self.visible, self.date_from, self.date_to)
        self.notify('success', self.MESSAGES['exported'])
        return filename, content


class CatalogController(CrudController):
    """Catalog management screen: all entries (active or not), Admin-gated."""

    STAMP_CREATOR = False

    MESSAGES = {
        **CrudController.MESSAGES,
        'created': 'Elemento creado exitosamente',
        'updated': 'Elemento actualizado exitosamente',
        'deleted': 'Elemento eliminado exitosamente',
        'save_error': 'Error al guardar el elemento',
        'delete_error': 'Error al eliminar el elemento',
        'load_error': 'Error al cargar los elementos',
        'toggle_error': 'Error al cambiar el estado del elemento',
        'not_found': 'Elemento no encontrado',
    }

    def __init__(self, schema: CatalogSchema, gateway: PersistenceGateway, auth: AuthContext,
                 notify: Optional[Notifier] = None):
        super().__init__(schema, gateway, auth, notify)

    async def toggle_active(self, entry_id: str) -> bool:
        """Flip ``activo`` of an entry and reload."""
        self._require(State.IDLE)
        if not self._gate(permissions.UPDATE):
            return False
        entry = self._find(entry_id)
        if entry is None:
            return self._fail(PersistenceError(f"NOT_FOUND:{self.resource}:{entry_id}"),
                              self.MESSAGES['not_found'])
        new_state = not entry.get('activo', True)
        self.state = State.SUBMITTING
        try:
            await _call(self.gateway.update, self.resource, entry_id, {'activo': new_state})
        except Exception as e:
            _logger.error("Toggle failed for %s/%s: %s", self.resource, entry_id, e)
            error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
            ok = self._fail(error, self.MESSAGES['toggle_error'])
        else:
            verb = 'activado' if new_state else 'desactivado'
            self.notify('success', f'Elemento {verb} exitosamente')
            ok = True
        self.state = State.IDLE
        await self.load()
        return ok
