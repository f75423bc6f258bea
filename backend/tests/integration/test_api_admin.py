"""
Tests for admin endpoints.
"""
import pytest


class TestAdminLogin:
    """Tests for POST /api/admin/login."""

    def test_login_wrong_password(self, client):
        """Login with wrong password should return 401."""
        response = client.post('/api/admin/login', json={'password': 'wrong_password'},
                               headers={'X-Forwarded-For': '10.0.1.1'})
        assert response.status_code == 401

    def test_login_correct_password(self, client):
        """Login with correct password should return a token."""
        response = client.post('/api/admin/login', json={'password': 'test_password_123'},
                               headers={'X-Forwarded-For': '10.0.1.2'})
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'authenticated'
        assert data['token']

    def test_lockout_after_repeated_failures(self, client):
        """Five failures lock the IP out, even for the right password."""
        headers = {'X-Forwarded-For': '10.0.1.3'}
        for _ in range(5):
            client.post('/api/admin/login', json={'password': 'nope'}, headers=headers)

        response = client.post('/api/admin/login', json={'password': 'test_password_123'}, headers=headers)
        assert response.status_code == 429
        assert response.get_json()['retry_after'] > 0

        # Other addresses are unaffected
        other = client.post('/api/admin/login', json={'password': 'test_password_123'},
                            headers={'X-Forwarded-For': '10.0.1.4'})
        assert other.status_code == 200

    def test_verify_and_logout(self, client, admin_token):
        headers = {'X-Admin-Token': admin_token}
        assert client.get('/api/admin/verify', headers=headers).status_code == 200
        assert client.post('/api/admin/logout', headers=headers).status_code == 200
        assert client.get('/api/admin/verify', headers=headers).status_code == 401


class TestProtectedRoutes:
    """Admin routes reject missing or unknown tokens."""

    @pytest.mark.parametrize('method,path', [
        ('get', '/api/admin/keys'),
        ('get', '/api/admin/keys/status'),
        ('put', '/api/admin/keys'),
        ('get', '/api/admin/jobs'),
    ])
    def test_requires_token(self, client, method, path):
        assert getattr(client, method)(path).status_code == 401
        assert getattr(client, method)(path, headers={'X-Admin-Token': 'bogus'}).status_code == 401


class TestKeyManagement:
    """Tests for key pool admin endpoints."""

    def test_keys_are_masked(self, client, admin_token, key_pool_env):
        data = client.get('/api/admin/keys', headers={'X-Admin-Token': admin_token}).get_json()
        assert data['count'] == 3
        assert [k['masked'] for k in data['keys']] == ['key-...aa-0', 'key-...bb-1', 'key-...cc-2']
        for key in key_pool_env:
            assert key not in str(data)

    def test_key_status(self, client, admin_token, monkeypatch):
        monkeypatch.setattr('admin_routes.check_api_keys', lambda: [
            {'key': 'API Key 1', 'masked': 'key-...aa-0', 'status': 'ok', 'message': 'Active'},
            {'key': 'API Key 2', 'masked': 'key-...bb-1', 'status': 'rate_limited', 'message': 'Quota exceeded'},
        ])
        data = client.get('/api/admin/keys/status', headers={'X-Admin-Token': admin_token}).get_json()
        assert (data['active'], data['total']) == (1, 2)

    def test_update_keys_rebuilds_pool(self, client, admin_token, key_pool_env, monkeypatch, tmp_path):
        from key_pool import get_key_pool
        env_file = tmp_path / '.env'
        env_file.write_text('GEMINI_API_KEY=old-primary-key\n')
        monkeypatch.setattr('admin_routes.find_dotenv', lambda: str(env_file))

        response = client.put('/api/admin/keys', headers={'X-Admin-Token': admin_token}, json={
            'GEMINI_API_KEY': 'new-primary-key-0000',
            'GEMINI_API_KEYS': ['new-extra-key-1111', ' ', 'new-extra-key-2222'],
        })

        assert response.status_code == 200
        assert response.get_json()['updated'] == ['GEMINI_API_KEY', 'GEMINI_API_KEYS']
        contents = env_file.read_text()
        assert 'new-primary-key-0000' in contents
        assert 'new-extra-key-1111,new-extra-key-2222' in contents
        assert get_key_pool().all() == ['new-primary-key-0000', 'new-extra-key-1111', 'new-extra-key-2222']

    def test_update_without_keys(self, client, admin_token):
        response = client.put('/api/admin/keys', headers={'X-Admin-Token': admin_token}, json={})
        assert response.get_json()['status'] == 'no_changes'


class TestJobsEndpoint:
    """Tests for GET /api/admin/jobs."""

    def test_lists_jobs(self, client, admin_token, test_db):
        from database import create_generation_job
        create_generation_job('project-1', 'Chapter One')
        data = client.get('/api/admin/jobs?project_id=project-1', headers={'X-Admin-Token': admin_token}).get_json()
        assert [j['chapter_title'] for j in data['jobs']] == ['Chapter One']
