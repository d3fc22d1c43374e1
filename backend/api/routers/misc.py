"""Misc router: duration helper, cross-screen search, changelog."""
from fastapi import APIRouter, HTTPException, Query, Depends
from typing import Optional
from sohlib.duration import compute_hours
from sohlib.record_filter import filter_records
from sohlib.schemas import SCREENS
from ..dependencies import get_db, require_admin
from ..types import SessionUser

router = APIRouter()

_DATE_RE = r'^\d{4}-\d{2}-\d{2}$'


@router.get("/api/duration", tags=["Records"], summary="Absence hours",
            description="Hours between start and end (never negative). Advisory; clients may show it live.")
def get_duration(
    fecha_inicio: str = Query(..., pattern=_DATE_RE),
    hora_inicio: str = Query(...),
    fecha_fin: str = Query(..., pattern=_DATE_RE),
    hora_fin: str = Query(...),
):
    try:
        hours = compute_hours(fecha_inicio, hora_inicio, fecha_fin, hora_fin)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"horas_ausencia": hours, "display": f"{hours:.2f}"}


@router.get("/api/search", tags=["Records"], summary="Search all screens",
            description="Text search over the searchable fields of every record screen.")
def global_search(
    q: str = Query("", max_length=200, description="Texto a buscar"),
    limit: int = Query(20, ge=1, le=200, description="Max hits per screen"),
):
    if len(q.strip()) < 2:
        return {"query": q, "results": {}}
    db = get_db()
    results = {}
    for resource, screen in SCREENS.items():
        rows = db.list(resource, order_by=screen.order_by)
        hits = filter_records(rows, q, fields=screen.search_fields)
        if hits:
            results[resource] = hits[:limit]
    return {"query": q, "results": results}


# ── Changelog ────────────────────────────────────────────────

@router.get("/api/changelog", tags=["Admin"], summary="Write audit trail",
            description="Successful create/update/delete calls, newest first. Requires Admin role.")
def get_changelog(
    limit: int = Query(100, ge=1, le=1000, description="Max entries to return"),
    user: Optional[str] = Query(None, description="Filter by user"),
    date_from: Optional[str] = Query(None, pattern=_DATE_RE),
    date_to: Optional[str] = Query(None, pattern=_DATE_RE),
    _admin: SessionUser = Depends(require_admin),
):
    return get_db().get_changelog(limit=limit, user=user, date_from=date_from, date_to=date_to)
