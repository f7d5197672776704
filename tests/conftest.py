"""
Shared fixtures: a Flask test client backed by throwaway SQLite databases.
"""
import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# app.py initialises its databases at import time; keep that away from the repo.
_boot_dir = tempfile.mkdtemp(prefix='salesapp-tests-')
os.environ.setdefault('CRM_DB_PATH', os.path.join(_boot_dir, 'crm.db'))
os.environ.setdefault('MARKET_DB_PATH', os.path.join(_boot_dir, 'market.db'))
os.environ.setdefault('JWT_SECRET', 'test-secret')

import pytest

import app as app_module


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, 'CRM_DB_PATH', str(tmp_path / 'crm.db'))
    monkeypatch.setattr(app_module, 'MARKET_DB_PATH', str(tmp_path / 'market.db'))
    monkeypatch.setattr(app_module, 'JWT_SECRET', 'test-secret')
    app_module.init_crm_db()
    app_module.init_market_db()
    app_module.app.config['TESTING'] = True
    return app_module


@pytest.fixture
def client(app):
    return app.app.test_client()


@pytest.fixture
def crm_conn(app):
    conn = app.get_crm_db()
    yield conn
    conn.close()


@pytest.fixture
def market_conn(app):
    conn = app.get_market_db()
    yield conn
    conn.close()


@pytest.fixture
def make_user(app, client):
    """Create a user directly in the DB and return (user_id, auth headers)."""
    def _make(email='rep@example.com', role='user', name='Jan Kowalski', password='secret123'):
        if role == 'admin':
            app.ADMIN_EMAILS.append(email)
        try:
            resp = client.post('/api/register', json={'email': email, 'password': password, 'name': name})
        finally:
            if role == 'admin':
                app.ADMIN_EMAILS.remove(email)
        assert resp.status_code == 201, resp.get_json()
        login = client.post('/api/auth/login', json={'email': email, 'password': password})
        token = login.get_json()['token']
        return resp.get_json()['user']['id'], {'Authorization': f'Bearer {token}'}
    return _make
