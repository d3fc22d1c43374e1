"""
Shared test fixtures for OpenSaludOcupacional backend tests.
"""
import os
import sys
import secrets
import tempfile
import pytest

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

# ── Environment (must be set before api.* is imported) ────────────────────────
os.environ['SOH_RATE_LIMIT'] = '0'
os.environ.setdefault('SOH_LOG_FILE', os.path.join(tempfile.gettempdir(), 'soh-api-test.log'))
os.environ.setdefault('SOH_LOG_LEVEL', 'WARNING')
os.environ.pop('SOH_ADMIN_PASSWORD', None)
os.environ.pop('SOH_DEV_MODE', None)


# ── Sample payloads (values exist in the seeded catalogs) ─────────────────────

SAMPLE_RECORDS = {
    'accidentes_trabajo': {
        'cedula': '1001', 'nombre': 'Ana Pérez', 'cargo': 'Docente', 'dependencia': 'Rectoría',
        'tipo_at': 'Caída', 'tipo_lesion': 'Contusión', 'parte_cuerpo_afectada': 'Manos',
        'fecha': '2024-03-05', 'hora': '09:15',
    },
    'enfermeria': {
        'cedula': '1002', 'nombre': 'Luis Gómez', 'cargo': 'Instructor',
        'dependencia': 'Bienestar', 'sintomas': 'Cefalea', 'antecedentes_salud': 'Ninguno',
        'salida': 'No', 'observaciones': '', 'fecha': '2024-03-06',
    },
    'novedades': {
        'cedula': '1003', 'nombre': 'Marta Ruiz', 'tipo_planta': 'Docente',
        'dependencia': 'Talento Humano', 'fecha_inicio': '2024-03-07', 'hora_inicio': '08:00',
        'fecha_fin': '2024-03-07', 'hora_fin': '10:30', 'horas_ausencia': 2.5,
        'tipo_novedad': 'Permiso', 'observacion': '',
    },
}


def sample(resource: str, **overrides) -> dict:
    """A valid create payload for *resource* with optional overrides."""
    return {**SAMPLE_RECORDS[resource], **overrides}


# ── Session injection helpers ──────────────────────────────────────────────────

_USERS = {
    'Admin': {'ID': 901, 'NAME': 'admin', 'ADMIN': True, 'role': 'Admin'},
    'Editor': {'ID': 902, 'NAME': 'editor', 'ADMIN': False, 'role': 'Editor'},
    'Lector': {'ID': 903, 'NAME': 'lector', 'ADMIN': False, 'role': 'Lector'},
}


def inject_token(role: str) -> str:
    """Put a session for a user with *role* into the in-memory store; return its token."""
    from api.main import _sessions
    tok = secrets.token_hex(16)
    _sessions[tok] = {**_USERS[role], 'expires_at': None}
    return tok


def remove_token(tok: str) -> None:
    from api.main import _sessions
    _sessions.pop(tok, None)


# ── Database / app fixtures ────────────────────────────────────────────────────

@pytest.fixture
def db_path(tmp_path):
    """Function-scoped: fresh seeded JSON database, wired into api.main.DB_PATH."""
    from sohlib.database import SOHDatabase
    path = str(tmp_path / "data")
    db = SOHDatabase(path)
    db.ensure_schema()
    db.seed_defaults()

    import api.main as main_module
    original = main_module.DB_PATH
    main_module.DB_PATH = path
    yield path
    main_module.DB_PATH = original


@pytest.fixture
def db(db_path):
    from sohlib.database import SOHDatabase
    return SOHDatabase(db_path)


@pytest.fixture
def app(db_path):
    from api.main import app as _app
    return _app


@pytest.fixture
def anon_client(app):
    """TestClient without a session token."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def _role_client(app, role):
    from starlette.testclient import TestClient
    tok = inject_token(role)
    with TestClient(app, raise_server_exceptions=False) as c:
        c.headers['X-Auth-Token'] = tok
        yield c
    remove_token(tok)


@pytest.fixture
def admin_client(app):
    yield from _role_client(app, 'Admin')


@pytest.fixture
def editor_client(app):
    yield from _role_client(app, 'Editor')


@pytest.fixture
def lector_client(app):
    yield from _role_client(app, 'Lector')
