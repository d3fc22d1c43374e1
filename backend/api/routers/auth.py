"""Auth and user management router."""
import time as _time
import secrets
from fastapi import APIRouter, HTTPException, Header, Depends, Request
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from sohlib.permissions import ACTIONS, allow
from sohlib.schemas import CATALOG_TABLES, RECORD_TABLES
from ..dependencies import (
    get_db, require_admin, require_auth, _sanitize_500, _logger, _sessions, _failed_logins,
    _LOCKOUT_WINDOW, _LOCKOUT_MAX, _TOKEN_EXPIRE_HOURS, ROLES, limiter,
    invalidate_sessions_for_user,
)
from ..types import SessionUser

router = APIRouter()

_ROLE_ERROR = "role debe ser Admin, Editor o Lector"


@router.get("/api/users", tags=["Users"], summary="List users", description="Return all API users. Requires Admin role.")
def get_users(_admin: SessionUser = Depends(require_admin)):
    return get_db().get_users()


# ── User Management (CRUD) ───────────────────────────────────

class UserCreate(BaseModel):
    NAME: str = Field(..., max_length=50)
    DESCRIP: Optional[str] = Field('', max_length=200)
    PASSWORD: str
    role: str = 'Lector'   # Admin | Editor | Lector

    @field_validator('NAME', 'PASSWORD')
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("no puede estar vacío")
        return v


class UserUpdate(BaseModel):
    NAME: Optional[str] = Field(None, max_length=50)
    DESCRIP: Optional[str] = Field(None, max_length=200)
    PASSWORD: Optional[str] = None
    role: Optional[str] = None   # Admin | Editor | Lector


class LoginBody(BaseModel):
    username: str
    password: str


class ChangePasswordBody(BaseModel):
    new_password: str


@router.post("/api/users", tags=["Users"], summary="Create user", description="Create a new API user. Requires Admin role.")
def create_user(body: UserCreate, _admin: SessionUser = Depends(require_admin)):
    if body.role not in ROLES:
        raise HTTPException(status_code=400, detail=_ROLE_ERROR)
    try:
        result = get_db().create_user(body.model_dump())
    except ValueError as e:
        if str(e).startswith('DUPLICATE:USERNAME:'):
            raise HTTPException(status_code=409, detail=f"El usuario '{body.NAME}' ya existe")
        raise _sanitize_500(e, 'create_user')
    except Exception as e:
        raise _sanitize_500(e, 'create_user')
    _logger.warning(
        "AUDIT USER_CREATE | admin=%s new_user=%s role=%s",
        _admin.get('NAME'), body.NAME, body.role
    )
    return {"ok": True, "record": result}


@router.put("/api/users/{user_id}", tags=["Users"], summary="Update user", description="Update an existing API user. Requires Admin role.")
def update_user(user_id: int, body: UserUpdate, _admin: SessionUser = Depends(require_admin)):
    data = {k: v for k, v in body.model_dump().items() if v is not None}
    if 'role' in data and data['role'] not in ROLES:
        raise HTTPException(status_code=400, detail=_ROLE_ERROR)
    try:
        result = get_db().update_user(user_id, data)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Usuario ID {user_id} no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'update_user/{user_id}')
    # a role or password change must not leave old sessions with stale rights
    if 'role' in data or 'PASSWORD' in data:
        invalidate_sessions_for_user(user_id)
    _logger.warning(
        "AUDIT USER_UPDATE | admin=%s target_id=%d fields=%s",
        _admin.get('NAME'), user_id, list(data.keys())
    )
    return {"ok": True, "record": result}


@router.delete("/api/users/{user_id}", tags=["Users"], summary="Delete user", description="Soft-delete (hide) an API user. Requires Admin role.")
def delete_user(user_id: int, _admin: SessionUser = Depends(require_admin)):
    if user_id == _admin.get('ID'):
        raise HTTPException(status_code=400, detail="No puedes eliminar tu propio usuario")
    try:
        count = get_db().delete_user(user_id)
    except Exception as e:
        raise _sanitize_500(e, f'delete_user/{user_id}')
    if count == 0:
        raise HTTPException(status_code=404, detail=f"Usuario ID {user_id} no encontrado")
    removed = invalidate_sessions_for_user(user_id)
    _logger.warning(
        "AUDIT USER_DELETE | admin=%s target_id=%d sessions_revoked=%d",
        _admin.get('NAME'), user_id, removed
    )
    return {"ok": True, "hidden": count}


@router.post("/api/users/{user_id}/change-password", tags=["Users"], summary="Change user password", description="Set a new password for an API user. Requires Admin role.")
def change_user_password(user_id: int, body: ChangePasswordBody, _admin: SessionUser = Depends(require_admin)):
    if not body.new_password.strip():
        raise HTTPException(status_code=400, detail="La contraseña no puede estar vacía")
    try:
        get_db().update_user(user_id, {'PASSWORD': body.new_password})
    except ValueError:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")
    except Exception as e:
        raise _sanitize_500(e, f'change_password/{user_id}')
    removed = invalidate_sessions_for_user(user_id)
    _logger.warning(
        "AUDIT PASSWORD_CHANGE | admin=%s target_id=%d sessions_revoked=%d",
        _admin.get('NAME'), user_id, removed
    )
    return {"ok": True, "sessions_revoked": removed}


@router.post("/api/auth/login", tags=["Auth"], summary="Login", description="Authenticate with username and password. Returns a session token valid for 8 hours (configurable via TOKEN_EXPIRE_HOURS).")
@limiter.limit("5/minute")
def login(request: Request, body: LoginBody):
    client_ip = request.client.host if request.client else 'unknown'
    now = _time.time()
    username = body.username

    # ── Brute-force check ──────────────────────────────────────
    timestamps = [t for t in _failed_logins.get(username, []) if now - t < _LOCKOUT_WINDOW]
    _failed_logins[username] = timestamps
    if len(timestamps) >= _LOCKOUT_MAX:
        _logger.warning(
            "AUTH LOCKOUT | ip=%s username=%s attempts=%d", client_ip, username, len(timestamps)
        )
        raise HTTPException(
            status_code=429,
            detail="Demasiados intentos fallidos. Espera 15 minutos."
        )

    user = get_db().verify_user_password(username, body.password)
    if user is None:
        _failed_logins[username] = timestamps + [now]
        _logger.warning("AUTH LOGIN_FAIL | ip=%s username=%s", client_ip, username)
        raise HTTPException(status_code=401, detail="Usuario o contraseña inválidos")

    _failed_logins.pop(username, None)
    _logger.info("AUTH LOGIN_OK | ip=%s username=%s", client_ip, username)

    token = secrets.token_hex(32)
    expires_at = now + _TOKEN_EXPIRE_HOURS * 3600
    _sessions[token] = {**user, 'expires_at': expires_at}
    return {
        "ok": True,
        "token": token,
        "user": user,
        "expires_at": expires_at,
    }


@router.post("/api/auth/logout", tags=["Auth"], summary="Logout", description="Invalidate the current session token.")
def logout(x_auth_token: Optional[str] = Header(None)):
    if x_auth_token and x_auth_token in _sessions:
        del _sessions[x_auth_token]
    return {"ok": True}


@router.get("/api/auth/me", tags=["Auth"], summary="Current user",
            description="The session user and the actions their role allows per resource.")
def me(cur_user: SessionUser = Depends(require_auth)):
    role = cur_user.get('role')
    permissions = {
        resource: [a for a in ACTIONS if allow(role, resource, a)]
        for resource in RECORD_TABLES + CATALOG_TABLES
    }
    user = {k: v for k, v in cur_user.items() if k != 'expires_at'}
    return {"user": user, "permissions": permissions}
