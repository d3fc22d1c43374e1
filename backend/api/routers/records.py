"""Occupational-health records router: accidents, infirmary visits, absences."""
from fastapi import APIRouter, HTTPException, Query, Depends, Request, Body
from fastapi.responses import Response as _Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError as _PydanticError, field_validator
from typing import Any, Dict, Optional
from sohlib.duration import check_date, check_time
from sohlib.errors import RecordNotFound, ValidationError
from sohlib.export import XLSX_MEDIA_TYPE, export_records
from sohlib.permissions import CREATE, DELETE, UPDATE
from sohlib.record_filter import filter_records
from sohlib.schemas import SCREENS, ScreenSchema
from ..dependencies import (
    get_db, require_auth, check_permission, validation_detail, _sanitize_500, _logger,
    limiter,
)
from .. import dependencies as _deps
from ..types import RecordList, SessionUser, TableRow

router = APIRouter()

_DATE_RE = r'^\d{4}-\d{2}-\d{2}$'


# ── Request bodies ────────────────────────────────────────────

class _RecordBody(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    @field_validator('fecha', 'fecha_inicio', 'fecha_fin', check_fields=False)
    @classmethod
    def validate_date(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == '':
            return v
        return check_date(v)

    @field_validator('hora', 'hora_inicio', 'hora_fin', check_fields=False)
    @classmethod
    def validate_time(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == '':
            return v
        return check_time(v)


class AccidenteTrabajoCreate(_RecordBody):
    cedula: str = Field(..., max_length=20)
    nombre: str = Field(..., max_length=200)
    cargo: str = Field(..., max_length=200)
    dependencia: str = Field(..., max_length=200)
    tipo_at: str
    tipo_lesion: str
    parte_cuerpo_afectada: str
    fecha: str
    hora: str


class AccidenteTrabajoUpdate(_RecordBody):
    cedula: Optional[str] = Field(None, max_length=20)
    nombre: Optional[str] = Field(None, max_length=200)
    cargo: Optional[str] = Field(None, max_length=200)
    dependencia: Optional[str] = Field(None, max_length=200)
    tipo_at: Optional[str] = None
    tipo_lesion: Optional[str] = None
    parte_cuerpo_afectada: Optional[str] = None
    fecha: Optional[str] = None
    hora: Optional[str] = None


class EnfermeriaCreate(_RecordBody):
    cedula: str = Field(..., max_length=20)
    nombre: str = Field(..., max_length=200)
    cargo: str = Field(..., max_length=200)
    dependencia: str = Field(..., max_length=200)
    sintomas: str
    antecedentes_salud: str
    salida: str = 'No'
    observaciones: Optional[str] = Field('', max_length=2000)
    fecha: str


class EnfermeriaUpdate(_RecordBody):
    cedula: Optional[str] = Field(None, max_length=20)
    nombre: Optional[str] = Field(None, max_length=200)
    cargo: Optional[str] = Field(None, max_length=200)
    dependencia: Optional[str] = Field(None, max_length=200)
    sintomas: Optional[str] = None
    antecedentes_salud: Optional[str] = None
    salida: Optional[str] = None
    observaciones: Optional[str] = Field(None, max_length=2000)
    fecha: Optional[str] = None


class NovedadCreate(_RecordBody):
    cedula: str = Field(..., max_length=20)
    nombre: str = Field(..., max_length=200)
    tipo_planta: str = 'Docente'
    dependencia: str
    fecha_inicio: str
    hora_inicio: str
    fecha_fin: str
    hora_fin: str
    # computed by the client and stored as sent
    horas_ausencia: float = Field(0.0, ge=0)
    tipo_novedad: str = 'Permiso'
    observacion: Optional[str] = Field('', max_length=2000)


class NovedadUpdate(_RecordBody):
    cedula: Optional[str] = Field(None, max_length=20)
    nombre: Optional[str] = Field(None, max_length=200)
    tipo_planta: Optional[str] = None
    dependencia: Optional[str] = None
    fecha_inicio: Optional[str] = None
    hora_inicio: Optional[str] = None
    fecha_fin: Optional[str] = None
    hora_fin: Optional[str] = None
    horas_ausencia: Optional[float] = Field(None, ge=0)
    tipo_novedad: Optional[str] = None
    observacion: Optional[str] = Field(None, max_length=2000)


_BODIES = {
    'accidentes_trabajo': (AccidenteTrabajoCreate, AccidenteTrabajoUpdate),
    'enfermeria': (EnfermeriaCreate, EnfermeriaUpdate),
    'novedades': (NovedadCreate, NovedadUpdate),
}


# ── Helpers ───────────────────────────────────────────────────

def _screen(resource: str) -> ScreenSchema:
    screen = SCREENS.get(resource)
    if screen is None:
        raise HTTPException(status_code=404, detail=f"Recurso '{resource}' no encontrado")
    return screen


def _parse(model: type, body: Dict[str, Any], partial: bool = False) -> TableRow:
    try:
        parsed = model.model_validate(body)
    except _PydanticError as e:
        raise HTTPException(status_code=422, detail=validation_detail(e.errors()))
    return parsed.model_dump(exclude_unset=partial)


def _active_catalogs(db, screen: ScreenSchema) -> Dict[str, RecordList]:
    kinds = set(screen.categorical_fields.values())
    return {kind: db.list(kind, {'activo': True}) for kind in kinds}


def _check_order_by(screen: ScreenSchema, order_by: str) -> str:
    allowed = set(screen.field_names) | {'created_at', 'updated_at'}
    if order_by.lstrip('-') not in allowed:
        raise HTTPException(status_code=400, detail=f"order_by inválido: {order_by}")
    return order_by


def _filtered(resource: str, q: Optional[str], date_from: Optional[str],
              date_to: Optional[str], order_by: Optional[str]) -> RecordList:
    screen = _screen(resource)
    order = _check_order_by(screen, order_by or screen.order_by)
    rows = get_db().list(resource, order_by=order)
    return filter_records(
        rows, q, date_from, date_to,
        fields=screen.search_fields, date_field=screen.date_field,
        missing=_deps.MISSING_DATE_POLICY,
    )


# ── Routes ────────────────────────────────────────────────────

@router.get("/api/screens", tags=["Records"], summary="Screen descriptors",
            description="Form fields, searchable fields, date field and catalogs of each record screen.")
def list_screens():
    return [s.describe() for s in SCREENS.values()]


@router.get("/api/records/{resource}", tags=["Records"], summary="List records",
            description="Records newest first, optionally filtered by text query and inclusive date range.")
def list_records(
    resource: str,
    q: Optional[str] = Query(None, max_length=200, description="Texto a buscar"),
    date_from: Optional[str] = Query(None, pattern=_DATE_RE),
    date_to: Optional[str] = Query(None, pattern=_DATE_RE),
    order_by: Optional[str] = Query(None),
) -> RecordList:
    return _filtered(resource, q, date_from, date_to, order_by)


@router.get("/api/records/{resource}/export", tags=["Export"], summary="Export records to xlsx")
@limiter.limit("10/minute")
def export_resource(
    request: Request,
    resource: str,
    q: Optional[str] = Query(None, max_length=200),
    date_from: Optional[str] = Query(None, pattern=_DATE_RE),
    date_to: Optional[str] = Query(None, pattern=_DATE_RE),
    _cur_user: SessionUser = Depends(require_auth),
):
    rows = _filtered(resource, q, date_from, date_to, None)
    try:
        filename, content = export_records(_screen(resource), rows, date_from, date_to)
    except Exception as e:
        raise _sanitize_500(e, f'export/{resource}')
    return _Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/api/records/{resource}/{record_id}", tags=["Records"], summary="Get record")
def get_record(resource: str, record_id: str) -> TableRow:
    _screen(resource)
    record = get_db().get(resource, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Registro no encontrado")
    return record


@router.post("/api/records/{resource}", tags=["Records"], summary="Create record",
             description="Requires the 'create' permission on the resource.")
def create_record(resource: str, body: Dict[str, Any] = Body(...),
                  cur_user: SessionUser = Depends(require_auth)):
    screen = _screen(resource)
    check_permission(cur_user, resource, CREATE)
    data = _parse(_BODIES[resource][0], body)
    db = get_db()
    try:
        screen.validate(data, _active_catalogs(db, screen))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    data['created_by'] = cur_user.get('ID')
    try:
        record = db.insert(resource, data)
    except Exception as e:
        raise _sanitize_500(e, f'create_record/{resource}')
    return {"ok": True, "record": record}


@router.put("/api/records/{resource}/{record_id}", tags=["Records"], summary="Update record",
            description="Only the fields sent are changed. Requires the 'update' permission.")
def update_record(resource: str, record_id: str, body: Dict[str, Any] = Body(...),
                  cur_user: SessionUser = Depends(require_auth)):
    screen = _screen(resource)
    check_permission(cur_user, resource, UPDATE)
    patch = _parse(_BODIES[resource][1], body, partial=True)
    patch = {k: v for k, v in patch.items() if v is not None}
    db = get_db()
    existing = db.get(resource, record_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Registro no encontrado")
    merged = {**screen.draft_from(existing), **patch}
    try:
        screen.validate(merged, _active_catalogs(db, screen), previous=existing)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    try:
        record = db.update(resource, record_id, patch)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Registro no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'update_record/{resource}/{record_id}')
    return {"ok": True, "record": record}


@router.delete("/api/records/{resource}/{record_id}", tags=["Records"], summary="Delete record",
               description="Requires the 'delete' permission on the resource.")
def delete_record(resource: str, record_id: str, cur_user: SessionUser = Depends(require_auth)):
    _screen(resource)
    check_permission(cur_user, resource, DELETE)
    try:
        get_db().delete(resource, record_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Registro no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'delete_record/{resource}/{record_id}')
    _logger.info("RECORD_DELETE | user=%s resource=%s id=%s", cur_user.get('NAME'), resource, record_id)
    return {"ok": True, "deleted": 1}
