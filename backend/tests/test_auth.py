"""
Tests for authentication and API user management: login, lockout, logout,
user CRUD.
"""
import pytest

from api.dependencies import _failed_logins


@pytest.fixture(autouse=True)
def _clear_lockouts():
    _failed_logins.clear()
    yield
    _failed_logins.clear()


@pytest.fixture
def editor_user(db):
    return db.create_user({'NAME': 'marta', 'PASSWORD': 'Clave123', 'role': 'Editor'})


def _login(client, username, password):
    return client.post('/api/auth/login', json={'username': username, 'password': password})


# ── Login endpoint tests ──────────────────────────────────────────────────────

class TestLogin:
    def test_login_success(self, anon_client, editor_user):
        res = _login(anon_client, 'marta', 'Clave123')
        assert res.status_code == 200
        data = res.json()
        assert data['ok'] is True
        assert isinstance(data['token'], str) and len(data['token']) == 64
        assert data['user']['role'] == 'Editor'
        assert 'DIGEST' not in data['user']

    def test_token_grants_access(self, anon_client, editor_user):
        token = _login(anon_client, 'marta', 'Clave123').json()['token']
        res = anon_client.get('/api/auth/me', headers={'X-Auth-Token': token})
        assert res.status_code == 200
        assert res.json()['user']['NAME'] == 'marta'

    def test_wrong_password(self, anon_client, editor_user):
        res = _login(anon_client, 'marta', 'incorrecta')
        assert res.status_code == 401
        assert res.json()['detail'] == 'Usuario o contraseña inválidos'

    def test_unknown_user(self, anon_client):
        assert _login(anon_client, 'nadie', 'x').status_code == 401

    def test_lockout_after_repeated_failures(self, anon_client, editor_user):
        for _ in range(5):
            assert _login(anon_client, 'marta', 'mal').status_code == 401
        res = _login(anon_client, 'marta', 'Clave123')
        assert res.status_code == 429

    def test_success_clears_failures(self, anon_client, editor_user):
        for _ in range(3):
            _login(anon_client, 'marta', 'mal')
        assert _login(anon_client, 'marta', 'Clave123').status_code == 200
        assert 'marta' not in _failed_logins

    def test_missing_fields(self, anon_client):
        res = anon_client.post('/api/auth/login', json={'username': 'marta'})
        assert res.status_code == 422
        assert 'password' in res.json()['detail']


class TestLogout:
    def test_logout_invalidates_token(self, anon_client, editor_user):
        token = _login(anon_client, 'marta', 'Clave123').json()['token']
        headers = {'X-Auth-Token': token}
        assert anon_client.post('/api/auth/logout', headers=headers).json() == {'ok': True}
        assert anon_client.get('/api/auth/me', headers=headers).status_code == 401

    def test_logout_without_token(self, anon_client):
        assert anon_client.post('/api/auth/logout').status_code == 200


# ── User management ───────────────────────────────────────────────────────────

class TestUserManagement:
    def test_create_and_list(self, admin_client):
        res = admin_client.post('/api/users', json={'NAME': 'pedro', 'PASSWORD': 'x1', 'role': 'Lector'})
        assert res.status_code == 200
        names = [u['NAME'] for u in admin_client.get('/api/users').json()]
        assert names == ['pedro']

    def test_default_role_is_lector(self, admin_client):
        res = admin_client.post('/api/users', json={'NAME': 'pedro', 'PASSWORD': 'x1'})
        assert res.json()['record']['role'] == 'Lector'

    def test_invalid_role(self, admin_client):
        res = admin_client.post('/api/users', json={'NAME': 'pedro', 'PASSWORD': 'x1', 'role': 'Supervisor'})
        assert res.status_code == 400

    def test_blank_password(self, admin_client):
        res = admin_client.post('/api/users', json={'NAME': 'pedro', 'PASSWORD': '  '})
        assert res.status_code == 422

    def test_duplicate_name(self, admin_client, editor_user):
        res = admin_client.post('/api/users', json={'NAME': 'Marta', 'PASSWORD': 'x1'})
        assert res.status_code == 409

    def test_role_change_revokes_sessions(self, admin_client, anon_client, editor_user):
        token = _login(anon_client, 'marta', 'Clave123').json()['token']
        res = admin_client.put(f"/api/users/{editor_user['ID']}", json={'role': 'Lector'})
        assert res.status_code == 200
        assert res.json()['record']['role'] == 'Lector'
        assert anon_client.get('/api/auth/me', headers={'X-Auth-Token': token}).status_code == 401

    def test_update_unknown_user(self, admin_client):
        assert admin_client.put('/api/users/999', json={'DESCRIP': 'x'}).status_code == 404

    def test_change_password(self, admin_client, anon_client, editor_user):
        res = admin_client.post(f"/api/users/{editor_user['ID']}/change-password",
                                json={'new_password': 'Nueva456'})
        assert res.status_code == 200
        assert _login(anon_client, 'marta', 'Clave123').status_code == 401
        assert _login(anon_client, 'marta', 'Nueva456').status_code == 200

    def test_delete_user(self, admin_client, anon_client, editor_user):
        assert admin_client.delete(f"/api/users/{editor_user['ID']}").status_code == 200
        assert admin_client.get('/api/users').json() == []
        assert _login(anon_client, 'marta', 'Clave123').status_code == 401

    def test_delete_unknown_user(self, admin_client):
        assert admin_client.delete('/api/users/999').status_code == 404

    def test_cannot_delete_self(self, admin_client):
        # injected admin session has ID 901
        assert admin_client.delete('/api/users/901').status_code == 400
