"""Catalog administration router: lookup lists and the staff directory."""
from fastapi import APIRouter, HTTPException, Query, Depends, Request, Body
from fastapi.responses import Response as _Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError as _PydanticError
from typing import Any, Dict, Optional
from sohlib.errors import RecordNotFound, ValidationError
from sohlib.export import XLSX_MEDIA_TYPE, export_records
from sohlib.lookup import NOT_FOUND, resolve
from sohlib.permissions import CREATE, DELETE, UPDATE
from sohlib.record_filter import filter_records
from sohlib.schemas import CATALOGS, DIRECTORY_TABLE, CatalogSchema
from ..dependencies import (
    get_db, require_admin, require_auth, check_permission, validation_detail, _sanitize_500,
    _logger, limiter,
)
from ..types import CatalogEntry, CatalogList, DirectoryEntry, SessionUser

router = APIRouter()


# ── Request bodies per variant ───────────────────────────────

class _EntryBody(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)


class SimpleEntryCreate(_EntryBody):
    nombre: str = Field(..., max_length=200)
    activo: bool = True


class SimpleEntryUpdate(_EntryBody):
    nombre: Optional[str] = Field(None, max_length=200)
    activo: Optional[bool] = None


class CodedEntryCreate(SimpleEntryCreate):
    codigo: str = Field(..., max_length=20)


class CodedEntryUpdate(SimpleEntryUpdate):
    codigo: Optional[str] = Field(None, max_length=20)


class DirectoryEntryCreate(SimpleEntryCreate):
    cedula: str = Field(..., max_length=20)
    cargo: Optional[str] = Field('', max_length=200)
    dependencia: Optional[str] = Field('', max_length=200)


class DirectoryEntryUpdate(SimpleEntryUpdate):
    cedula: Optional[str] = Field(None, max_length=20)
    cargo: Optional[str] = Field(None, max_length=200)
    dependencia: Optional[str] = Field(None, max_length=200)


_BODIES = {
    'simple': (SimpleEntryCreate, SimpleEntryUpdate),
    'coded': (CodedEntryCreate, CodedEntryUpdate),
    'directory': (DirectoryEntryCreate, DirectoryEntryUpdate),
}

# Field that must be unique (case-insensitive) within a catalog
_UNIQUE_KEY = {'simple': 'nombre', 'coded': 'codigo', 'directory': 'cedula'}


# ── Helpers ───────────────────────────────────────────────────

def _catalog(kind: str) -> CatalogSchema:
    schema = CATALOGS.get(kind)
    if schema is None:
        raise HTTPException(status_code=404, detail=f"Catálogo '{kind}' no encontrado")
    return schema


def _parse(model: type, body: Dict[str, Any], partial: bool = False) -> CatalogEntry:
    try:
        parsed = model.model_validate(body)
    except _PydanticError as e:
        raise HTTPException(status_code=422, detail=validation_detail(e.errors()))
    data = parsed.model_dump(exclude_unset=partial)
    return {k: v for k, v in data.items() if v is not None} if partial else data


def _check_unique(db, schema: CatalogSchema, data: CatalogEntry,
                  exclude_id: Optional[str] = None) -> None:
    key = _UNIQUE_KEY[schema.variant]
    value = str(data.get(key) or '').strip().lower()
    if not value:
        return
    for entry in db.list(schema.kind):
        if entry.get('id') == exclude_id:
            continue
        if str(entry.get(key) or '').strip().lower() == value:
            raise HTTPException(
                status_code=409,
                detail=f"Ya existe un elemento con {key} '{data.get(key)}' en {schema.label}",
            )


def _list_entries(kind: str, active_only: bool, q: Optional[str],
                  order_by: Optional[str]) -> CatalogList:
    schema = _catalog(kind)
    order = order_by or schema.order_by
    if order.lstrip('-') not in set(schema.fields) | {'activo', 'created_at'}:
        raise HTTPException(status_code=400, detail=f"order_by inválido: {order}")
    rows = get_db().list(kind, {'activo': True} if active_only else None, order_by=order)
    return filter_records(rows, q, fields=schema.search_fields)


# ── Routes ────────────────────────────────────────────────────

@router.get("/api/catalogs", tags=["Catalogs"], summary="Catalog kinds",
            description="Kind, label, variant and fields of every catalog.")
def list_catalogs():
    return [c.describe() for c in CATALOGS.values()]


@router.get(f"/api/catalogs/{DIRECTORY_TABLE}/lookup/{{cedula}}", tags=["Catalogs"],
            summary="Staff directory lookup",
            description="Person fields of the active directory entry with this cédula.")
def lookup_person(cedula: str) -> DirectoryEntry:
    found = resolve(get_db().list(DIRECTORY_TABLE), cedula)
    if found is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Funcionario no encontrado")
    return {'cedula': cedula, **found}


@router.get("/api/catalogs/{kind}", tags=["Catalogs"], summary="List catalog entries",
            description="Entries ordered by nombre. Inactive entries are included unless active_only=true.")
def list_entries(
    kind: str,
    active_only: bool = Query(False),
    q: Optional[str] = Query(None, max_length=200),
    order_by: Optional[str] = Query(None),
) -> CatalogList:
    return _list_entries(kind, active_only, q, order_by)


@router.get("/api/catalogs/{kind}/export", tags=["Export"], summary="Export catalog to xlsx")
@limiter.limit("10/minute")
def export_catalog(
    request: Request,
    kind: str,
    q: Optional[str] = Query(None, max_length=200),
    _cur_user: SessionUser = Depends(require_auth),
):
    rows = _list_entries(kind, False, q, None)
    try:
        filename, content = export_records(_catalog(kind), rows)
    except Exception as e:
        raise _sanitize_500(e, f'export_catalog/{kind}')
    return _Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/api/catalogs/{kind}", tags=["Catalogs"], summary="Create catalog entry",
             description="Requires Admin role.")
def create_entry(kind: str, body: Dict[str, Any] = Body(...),
                 _admin: SessionUser = Depends(require_admin)):
    schema = _catalog(kind)
    check_permission(_admin, kind, CREATE)
    data = schema.payload(_parse(_BODIES[schema.variant][0], body))
    try:
        schema.validate(data)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    db = get_db()
    _check_unique(db, schema, data)
    try:
        entry = db.insert(kind, data)
    except Exception as e:
        raise _sanitize_500(e, f'create_entry/{kind}')
    return {"ok": True, "record": entry}


@router.put("/api/catalogs/{kind}/{entry_id}", tags=["Catalogs"], summary="Update catalog entry",
            description="Only the fields sent are changed. Requires Admin role.")
def update_entry(kind: str, entry_id: str, body: Dict[str, Any] = Body(...),
                 _admin: SessionUser = Depends(require_admin)):
    schema = _catalog(kind)
    check_permission(_admin, kind, UPDATE)
    patch = schema.payload(_parse(_BODIES[schema.variant][1], body, partial=True))
    db = get_db()
    existing = db.get(kind, entry_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Elemento no encontrado")
    merged = {**schema.draft_from(existing), **patch}
    try:
        schema.validate(merged)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    _check_unique(db, schema, merged, exclude_id=entry_id)
    try:
        entry = db.update(kind, entry_id, patch)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Elemento no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'update_entry/{kind}/{entry_id}')
    return {"ok": True, "record": entry}


@router.patch("/api/catalogs/{kind}/{entry_id}/toggle", tags=["Catalogs"],
              summary="Toggle catalog entry", description="Flip the activo flag. Requires Admin role.")
def toggle_entry(kind: str, entry_id: str, _admin: SessionUser = Depends(require_admin)):
    _catalog(kind)
    check_permission(_admin, kind, UPDATE)
    db = get_db()
    existing = db.get(kind, entry_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Elemento no encontrado")
    try:
        entry = db.update(kind, entry_id, {'activo': not existing.get('activo', True)})
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Elemento no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'toggle_entry/{kind}/{entry_id}')
    _logger.info("CATALOG_TOGGLE | admin=%s kind=%s id=%s activo=%s",
                 _admin.get('NAME'), kind, entry_id, entry.get('activo'))
    return {"ok": True, "record": entry}


@router.delete("/api/catalogs/{kind}/{entry_id}", tags=["Catalogs"], summary="Delete catalog entry",
               description="Records keep the stored value as plain text. Requires Admin role.")
def delete_entry(kind: str, entry_id: str, _admin: SessionUser = Depends(require_admin)):
    _catalog(kind)
    check_permission(_admin, kind, DELETE)
    try:
        get_db().delete(kind, entry_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Elemento no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'delete_entry/{kind}/{entry_id}')
    _logger.info("CATALOG_DELETE | admin=%s kind=%s id=%s", _admin.get('NAME'), kind, entry_id)
    return {"ok": True, "deleted": 1}
