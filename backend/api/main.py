"""FastAPI application for OpenSaludOcupacional."""
import os
import sys
import time as _startup_time_module
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_APP_START_TIME = _startup_time_module.time()

# Load .env file if present
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# Add parent dir to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402

# ── Import shared dependencies ──────────────────────────────────
# These are re-exported here so tests can do `from api.main import _sessions`
from .dependencies import (  # noqa: E402
    _sessions,
    _DEV_TOKEN,
    _DEV_USER,
    _is_token_valid,
    get_db,
    get_current_user,
    require_auth,
    require_admin,
    validation_detail,
    _logger,
    limiter,
    purge_expired_sessions,
    purge_stale_failed_logins,
)

# ── Dev-mode session ────────────────────────────────────────────
# Only active when SOH_DEV_MODE=true (never in production!)
if os.environ.get('SOH_DEV_MODE', '').lower() in ('1', 'true', 'yes'):
    _sessions[_DEV_TOKEN] = {**_DEV_USER, 'expires_at': None}
    _logger.warning("DEV MODE ACTIVE: dev token enabled (SOH_DEV_MODE=true). Do not use in production!")

# ── Config ──────────────────────────────────────────────────────
DB_PATH = os.environ.get(
    'SOH_DB_PATH',
    os.path.join(os.path.dirname(__file__), '..', '..', 'data')
)
DB_PATH = os.path.normpath(DB_PATH)

# CORS origins from env
_raw_origins = os.environ.get('ALLOWED_ORIGINS', '')
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(',') if o.strip()]
    or ['http://localhost:5173', 'http://localhost:8000']
)

_OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and version info"},
    {"name": "Auth", "description": "Authentication: login and logout"},
    {"name": "Users", "description": "API user management (Admin only)"},
    {"name": "Records", "description": "Work accidents, infirmary visits and absence records"},
    {"name": "Catalogs", "description": "Catalog administration (Admin only for writes)"},
    {"name": "Export", "description": "Spreadsheet export of filtered lists"},
    {"name": "Admin", "description": "Changelog and utilities"},
]


def _bootstrap(db) -> None:
    """Create table files, seed catalogs, and add the first admin user if none exists."""
    db.ensure_schema()
    db.seed_defaults()
    if db.get_users():
        return
    admin_name = os.environ.get('SOH_ADMIN_USER', 'admin')
    admin_password = os.environ.get('SOH_ADMIN_PASSWORD')
    if not admin_password:
        _logger.warning("No API users and SOH_ADMIN_PASSWORD not set; login is impossible until a user exists")
        return
    db.create_user({'NAME': admin_name, 'PASSWORD': admin_password, 'role': 'Admin',
                    'DESCRIP': 'Administrador inicial'})
    _logger.info("Bootstrap admin user '%s' created", admin_name)


async def _periodic_cleanup():
    """Background task: purge expired sessions and stale failed-login entries every 5 minutes."""
    import asyncio
    while True:
        await asyncio.sleep(300)
        try:
            sess = purge_expired_sessions()
            logins = purge_stale_failed_logins()
            if sess or logins:
                _logger.debug("Periodic cleanup: removed %d expired sessions, %d stale lockout entries", sess, logins)
        except Exception as _exc:  # pragma: no cover
            _logger.warning("Periodic cleanup error: %s", _exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    import asyncio
    _bootstrap(get_db())
    _logger.info("SOH API started | db=%s", DB_PATH)
    cleanup_task = asyncio.create_task(_periodic_cleanup())
    yield
    cleanup_task.cancel()
    _logger.info("SOH API shutting down")


app = FastAPI(
    lifespan=lifespan,
    title="OpenSaludOcupacional API",
    description=(
        "REST API for occupational-health records: work accidents, infirmary visits, "
        "staff absences and their catalogs.\n\n"
        "## Authentication\n"
        "Most endpoints require an `x-auth-token` header obtained from `POST /api/auth/login`.\n\n"
        "## Roles\n"
        "- **Lector** – read-only access\n"
        "- **Editor** – can create and edit records\n"
        "- **Admin** – full access including deletes, catalogs and users\n"
    ),
    version="1.0.0",
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "x-auth-token", "Authorization"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "img-src 'self' data:; "
        "connect-src 'self'; "
        "frame-ancestors 'none';"
    )
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    # Only send HSTS if running in production (check env)
    if os.environ.get('SOH_HSTS', '').lower() in ('1', 'true', 'yes'):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Translate Pydantic validation errors into Spanish user-friendly messages."""
    return JSONResponse(status_code=422, content={"detail": validation_detail(exc.errors())})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions, log with details, return sanitized 500."""
    import traceback
    _logger.error(
        "Unhandled exception: %s %s | %s | %s",
        request.method, request.url.path,
        type(exc).__name__,
        traceback.format_exc().splitlines()[-1],
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Error interno del servidor. Por favor intenta de nuevo."},
    )


# ── Public paths (no auth required) ────────────────────────────
_PUBLIC_PATHS = {'/api/auth/login', '/api/auth/logout', '/api', '/api/health', '/api/version', '/'}


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log every request as structured JSON with timing info and request-ID."""
    import time as _t
    import uuid as _uuid
    import json as _json_mod
    req_id = _uuid.uuid4().hex[:8]
    start = _t.time()
    response = await call_next(request)
    duration_ms = round((_t.time() - start) * 1000)
    token = request.headers.get('x-auth-token') or request.query_params.get('token')
    user = _sessions.get(token, {}).get('NAME', '-') if token else '-'
    entry = {
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "user": user,
    }
    _logger.info(_json_mod.dumps(entry, ensure_ascii=False))
    response.headers["X-Request-ID"] = req_id
    return response


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    """Require authentication for all /api/* endpoints except public ones."""
    path = request.url.path
    method = request.method
    client_ip = request.client.host if request.client else 'unknown'

    if path in _PUBLIC_PATHS or not path.startswith('/api/'):
        return await call_next(request)
    token = request.headers.get('x-auth-token') or request.query_params.get('token')
    if not token or not _is_token_valid(token):
        _logger.warning("AUTH 401 | ip=%s method=%s path=%s", client_ip, method, path)
        return JSONResponse(
            status_code=401,
            content={"detail": "No autenticado"}
        )
    response = await call_next(request)
    if response.status_code == 403:
        user_info = _sessions.get(token, {})
        _logger.warning(
            "AUTH 403 | ip=%s method=%s path=%s user=%s",
            client_ip, method, path, user_info.get('NAME', '?')
        )
    return response


# ── Changelog Middleware ────────────────────────────────────────
from starlette.middleware.base import BaseHTTPMiddleware  # noqa: E402
from starlette.requests import Request as StarletteRequest  # noqa: E402


class ChangelogMiddleware(BaseHTTPMiddleware):
    """Log successful CREATE/UPDATE/DELETE calls on records, catalogs and users."""

    _LOGGED_ROOTS = ('records', 'catalogs', 'users')
    _ACTIONS = {'POST': 'CREATE', 'PUT': 'UPDATE', 'PATCH': 'UPDATE', 'DELETE': 'DELETE'}

    async def dispatch(self, request: StarletteRequest, call_next):
        response = await call_next(request)
        method = request.method
        if method not in self._ACTIONS or response.status_code >= 300:
            return response
        # /api/<root>/<table>[/<id>[/toggle]]  or  /api/users[/<id>]
        parts = [p for p in request.url.path.strip('/').split('/') if p]
        if len(parts) < 2 or parts[1] not in self._LOGGED_ROOTS:
            return response
        if parts[1] == 'users':
            entity, entity_id = 'usuarios', parts[2] if len(parts) >= 3 else ''
        else:
            entity = parts[2] if len(parts) >= 3 else 'unknown'
            entity_id = parts[3] if len(parts) >= 4 else ''
        token = request.headers.get('x-auth-token') or request.query_params.get('token')
        user = _sessions.get(token, {}).get('NAME', 'api') if token else 'api'
        try:
            get_db().log_action(
                user=user,
                action=self._ACTIONS[method],
                entity=entity,
                entity_id=entity_id,
                details=f"{method} {request.url.path}",
            )
        except OSError as e:
            _logger.warning("Changelog write failed: %s", e)
        return response


app.add_middleware(ChangelogMiddleware)


# ── Include routers ─────────────────────────────────────────────
from .routers import auth, records, catalogs, misc  # noqa: E402

app.include_router(auth.router)
app.include_router(records.router)
app.include_router(catalogs.router)
app.include_router(misc.router)


# ── Routes ──────────────────────────────────────────────────────

_API_VERSION = "1.0.0"


@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description=(
        "Returns service status, API version, uptime in seconds, and storage state. "
        "This endpoint is public (no authentication required)."
    ),
)
def health():
    """Health check endpoint, public. Returns minimal info only."""
    import time as _t
    db_status = "connected"
    try:
        get_db().get_stats()
    except (OSError, ValueError):
        db_status = "error"

    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(_t.time() - _APP_START_TIME, 1),
        "db": {"status": db_status},
    }


@app.get(
    "/api/version",
    tags=["Health"],
    summary="API version",
    description="Returns the current API version string.",
)
def version():
    """Return current API version, public."""
    return {"version": _API_VERSION, "service": "OpenSaludOcupacional API"}


@app.get("/api", tags=["Health"], summary="API root", description="Returns basic service info.")
def root():
    return {"service": "OpenSaludOcupacional API", "version": _API_VERSION, "backend": "json"}


@app.get("/", include_in_schema=False)
def service_root():
    return {"service": "OpenSaludOcupacional API", "version": _API_VERSION}


@app.get("/api/stats", tags=["Health"], summary="Row counts per table")
def get_stats():
    return get_db().get_stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
