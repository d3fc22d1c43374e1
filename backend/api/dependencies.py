"""
Shared dependencies for the OpenSaludOcupacional API.
Logging, rate limiter, session store and auth/permission dependencies.
"""
import os
import logging
import logging.handlers
import time as _time
import traceback

from fastapi import HTTPException, Header, Depends, Request
from typing import Optional
from sohlib.database import SOHDatabase
from sohlib.permissions import ROLES, allow
from sohlib.record_filter import MissingDatePolicy
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Structured JSON Logging setup ───────────────────────────────
import json as _json
from datetime import datetime as _dt, timezone as _tz

class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _dt.fromtimestamp(record.created, tz=_tz.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return _json.dumps(entry, ensure_ascii=False)

_log_file = os.environ.get('SOH_LOG_FILE', '/tmp/soh-api.log')
_handler = logging.handlers.RotatingFileHandler(
    _log_file, maxBytes=10 * 1024 * 1024, backupCount=3
)
_handler.setFormatter(_JsonFormatter())

_logger = logging.getLogger('sohapi')
# Log level configurable via ENV
_log_level_str = os.environ.get('SOH_LOG_LEVEL', 'INFO').upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)
_logger.setLevel(_log_level)
_logger.addHandler(_handler)
_stderr_handler = logging.StreamHandler()
_stderr_handler.setFormatter(_JsonFormatter())
_logger.addHandler(_stderr_handler)

# sohlib modules log under their package name; route them to the same handlers
_lib_logger = logging.getLogger('sohlib')
_lib_logger.setLevel(_log_level)
_lib_logger.addHandler(_handler)
_lib_logger.addHandler(_stderr_handler)

SOH_LOG_FILE = _log_file

# ── Rate Limiter ─────────────────────────────────────────────────
_RATE_LIMIT_ENABLED = os.environ.get('SOH_RATE_LIMIT', '1').lower() not in ('0', 'false', 'no')
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/minute"],
    enabled=_RATE_LIMIT_ENABLED,
)

# ── Filtering policy ─────────────────────────────────────────────
# Records without a date when a date bound is active: 'exclude' or 'include'
MISSING_DATE_POLICY = MissingDatePolicy(
    os.environ.get('SOH_MISSING_DATE_POLICY', MissingDatePolicy.EXCLUDE.value).lower()
)

# ── Session store ────────────────────────────────────────────────
# NOTE: In-process dict — not safe for multi-worker deployments.
_sessions: dict[str, dict] = {}

# Token lifetime
_TOKEN_EXPIRE_HOURS = float(os.environ.get('TOKEN_EXPIRE_HOURS', '8'))

# Brute-force tracking
_failed_logins: dict[str, list] = {}
_LOCKOUT_WINDOW = 15 * 60
_LOCKOUT_MAX = 5

# Dev-mode token
_DEV_TOKEN = "__dev_mode__"
_DEV_USER = {"ID": 0, "NAME": "Developer", "role": "Admin", "ADMIN": True}


def _is_token_valid(token: str) -> bool:
    """Return True if the token exists and has not expired."""
    session = _sessions.get(token)
    if not session:
        return False
    expires_at = session.get('expires_at')
    if expires_at is not None and _time.time() > expires_at:
        del _sessions[token]
        return False
    return True


def get_current_user(
    request: Request,
    x_auth_token: Optional[str] = Header(None),
) -> Optional[dict]:
    """Return user dict for the given token, or None."""
    token = x_auth_token or request.query_params.get('token')
    if token and _is_token_valid(token):
        return _sessions[token]
    return None


def require_auth(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires any authenticated user."""
    if user is None:
        raise HTTPException(status_code=401, detail="No autenticado")
    return user


def require_admin(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires Admin role."""
    if user is None:
        raise HTTPException(status_code=401, detail="No autenticado")
    if user.get('role') != 'Admin':
        raise HTTPException(status_code=403, detail="Solo los administradores pueden realizar esta acción")
    return user


def check_permission(user: dict, resource: str, action: str) -> None:
    """Raise 403 unless the permission gate allows *action* on *resource*."""
    if not allow(user.get('role'), resource, action):
        _logger.warning(
            "PERMISSION DENIED | user=%s role=%s resource=%s action=%s",
            user.get('NAME', '?'), user.get('role'), resource, action,
        )
        raise HTTPException(status_code=403, detail="No tienes permisos para esta acción")


def get_db() -> SOHDatabase:
    """Get a database handle using the current DB_PATH from main module."""
    import api.main as _main
    return SOHDatabase(_main.DB_PATH)


def invalidate_sessions_for_user(user_id: int) -> int:
    """Remove all active sessions for a given user ID. Returns count removed."""
    to_remove = [tok for tok, s in _sessions.items() if s.get('ID') == user_id]
    for tok in to_remove:
        del _sessions[tok]
    return len(to_remove)


def purge_expired_sessions() -> int:
    """Remove all expired sessions from the in-memory store. Returns count removed."""
    now = _time.time()
    to_remove = [
        tok for tok, s in list(_sessions.items())
        if s.get('expires_at') is not None and now > s['expires_at']
    ]
    for tok in to_remove:
        _sessions.pop(tok, None)
    return len(to_remove)


def purge_stale_failed_logins() -> int:
    """Remove username entries whose timestamps have all expired. Returns count removed."""
    now = _time.time()
    stale = [
        uname for uname, timestamps in list(_failed_logins.items())
        if not any(now - t < _LOCKOUT_WINDOW for t in timestamps)
    ]
    for uname in stale:
        _failed_logins.pop(uname, None)
    return len(stale)


def _sanitize_500(e: Exception, context: str = '') -> HTTPException:
    """Log full exception, return sanitized 500."""
    _logger.error(
        "500 error context=%s type=%s msg=%s trace=%s",
        context, type(e).__name__, str(e),
        traceback.format_exc().splitlines()[-1],
    )
    return HTTPException(
        status_code=500,
        detail="Error interno del servidor. Por favor intenta de nuevo.",
    )


_VALIDATION_MSGS = {
    "missing": "Campo obligatorio",
    "int_parsing": "Debe ser un número entero",
    "float_parsing": "Debe ser un número",
    "bool_parsing": "Debe ser true o false",
    "string_type": "Debe ser texto",
    "string_too_short": "Entrada demasiado corta",
    "string_too_long": "Entrada demasiado larga",
    "string_pattern_mismatch": "Formato inválido",
    "greater_than_equal": "Valor demasiado pequeño",
    "value_error": "Valor inválido",
    "type_error": "Tipo de dato incorrecto",
}


def validation_detail(errors: list) -> str:
    """Turn pydantic error dicts into one readable Spanish message."""
    parts = []
    for e in errors:
        field = ".".join(str(loc) for loc in e.get("loc", []) if loc not in ("body", "query", "path"))
        msg = _VALIDATION_MSGS.get(e.get("type", ""), e.get("msg", "Valor inválido"))
        parts.append(f"{field}: {msg}" if field else msg)
    return "; ".join(parts) if parts else "Entrada inválida"
