"""
Tests for the HTTP API
"""

import sys

import pytest

import executor as executor_module
from executor import PythonExecutor


class TestExecute:
    def test_missing_code(self, client, monkeypatch):
        def no_spawn(*args, **kwargs):
            raise AssertionError('process spawned')
        monkeypatch.setattr(executor_module.subprocess, 'Popen', no_spawn)

        for body in ({}, {'code': ''}, {'code': 42}):
            response = client.post('/api/execute', json=body)
            assert response.status_code == 400
            assert response.get_json() == {'success': False, 'error': 'No code provided'}

    def test_not_json(self, client):
        response = client.post('/api/execute', data='print(1)', content_type='text/plain')

        assert response.status_code == 400

    def test_hello(self, client, run_dir):
        response = client.post('/api/execute', json={'code': 'print("hi")'})

        assert response.status_code == 200
        assert response.get_json() == {'success': True, 'output': 'hi', 'error': None}
        assert list(run_dir.glob('*.py')) == []

    def test_error(self, client, run_dir):
        response = client.post('/api/execute', json={'code': 'raise RuntimeError("boom")'})

        data = response.get_json()
        assert response.status_code == 200
        assert data['success'] is False
        assert 'RuntimeError: boom' in data['error']
        assert list(run_dir.glob('*.py')) == []

    def test_timeout(self, client, app_module, run_dir, monkeypatch):
        monkeypatch.setattr(app_module, 'executor', PythonExecutor(sys.executable, run_dir, timeout=1))

        response = client.post('/api/execute', json={'code': 'while True:\n    pass\n'})

        data = response.get_json()
        assert data['success'] is False
        assert 'timed out' in data['error']
        assert list(run_dir.glob('*.py')) == []

    def test_execution_logged_for_user(self, client, app_module):
        client.post('/api/execute', json={'code': 'print(2 + 2)', 'userId': 'uid-1'})
        client.post('/api/execute', json={'code': 'print(1)'})

        logs = app_module.storage.get_execution_logs_by_user_id('uid-1')
        assert len(logs) == 1
        assert logs[0].code == 'print(2 + 2)'
        assert logs[0].output == '4'
        assert logs[0].error is None
        assert len(app_module.storage.execution_logs) == 1

    def test_log_failure_does_not_fail_request(self, client, app_module, monkeypatch):
        def broken(log):
            raise RuntimeError('storage down')
        monkeypatch.setattr(app_module.storage, 'create_execution_log', broken)

        response = client.post('/api/execute', json={'code': 'print("hi")', 'userId': 'uid-1'})

        assert response.status_code == 200
        assert response.get_json()['output'] == 'hi'

    def test_setup_failure(self, client, app_module, run_dir, monkeypatch):
        monkeypatch.setattr(app_module, 'executor', PythonExecutor('no-such-python', run_dir))

        response = client.post('/api/execute', json={'code': 'print(1)'})

        assert response.status_code == 500
        assert response.get_json() == {'success': False, 'error': 'Server error occurred during execution'}

    def test_code_too_large(self, client, app_module, monkeypatch):
        monkeypatch.setitem(app_module.app.config, 'MAX_CONTENT_LENGTH', 100)

        response = client.post('/api/execute', json={'code': 'x' * 1000})

        assert response.status_code == 413

    def test_output_limit(self, client, app_module, run_dir, monkeypatch):
        monkeypatch.setattr(app_module, 'executor', PythonExecutor(sys.executable, run_dir, timeout=10, max_output=5000))

        response = client.post('/api/execute', json={'code': 'while True:\n    print("x" * 1000)\n'})

        data = response.get_json()
        assert response.status_code == 200
        assert data['success'] is False
        assert data['error'] == 'Output limit exceeded (5000 bytes)'
        assert len(data['output']) <= 5000
        assert list(run_dir.glob('*.py')) == []


def test_health(client):
    response = client.get('/api/health')

    data = response.get_json()
    assert data['status'] == 'ok'
    assert data['executionTimeout'] == 5


def test_unknown_route(client):
    response = client.get('/api/nope')

    assert response.status_code == 404
    assert response.get_json() == {'error': 'Not found'}


class TestWorkspaceRoutes:
    @pytest.fixture
    def users(self, client):
        client.post('/api/users', json={'userId': 'alice', 'email': 'alice@example.com', 'name': 'Alice'})
        client.post('/api/users', json={'userId': 'bob', 'email': 'bob@example.com'})

    def test_register_requires_email(self, client):
        response = client.post('/api/users', json={'userId': 'carol'})

        assert response.status_code == 400

    def test_user_lookup(self, client, users):
        assert client.get('/api/users/lookup?email=bob@example.com').get_json()['userId'] == 'bob'
        assert client.get('/api/users/lookup?email=x@example.com').status_code == 404
        assert client.get('/api/users/lookup').status_code == 400

    def test_list_users(self, client, users):
        response = client.get('/api/users?exclude=alice')

        assert response.get_json() == {'users': [{'email': 'bob@example.com', 'userId': 'bob'}]}

    def test_file_lifecycle(self, client, users):
        response = client.post('/api/users/alice/files', json={'name': 'main.py', 'content': 'print(1)'})
        assert response.status_code == 201
        file_id = response.get_json()['id']

        response = client.put(f'/api/users/alice/files/{file_id}', json={'content': 'print(2)'})
        assert response.get_json()['content'] == 'print(2)'

        files = client.get('/api/users/alice/files').get_json()['files']
        assert [(f['id'], f['content']) for f in files] == [(file_id, 'print(2)')]

        assert client.delete(f'/api/users/alice/files/{file_id}').status_code == 200
        assert client.get(f'/api/users/alice/files/{file_id}').status_code == 404
        assert client.delete(f'/api/users/alice/files/{file_id}').status_code == 404

    def test_create_requires_name(self, client, users):
        response = client.post('/api/users/alice/files', json={})

        assert response.status_code == 400
        assert response.get_json() == {'error': 'File name is required'}

    def test_update_requires_content(self, client, users):
        file_id = client.post('/api/users/alice/files', json={'name': 'a.py'}).get_json()['id']

        assert client.put(f'/api/users/alice/files/{file_id}', json={}).status_code == 400
        assert client.put('/api/users/alice/files/missing', json={'content': ''}).status_code == 404

    def test_share(self, client, users):
        file_id = client.post('/api/users/alice/files', json={'name': 'main.py'}).get_json()['id']

        response = client.post(f'/api/files/{file_id}/share',
                               json={'ownerId': 'alice', 'userId': 'alice', 'email': 'bob@example.com'})
        assert response.get_json()['success'] is True

        response = client.post(f'/api/files/{file_id}/share',
                               json={'ownerId': 'alice', 'userId': 'alice', 'email': 'bob@example.com'})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'This user is already a collaborator'

        collaborators = client.get(f'/api/files/{file_id}/collaborators').get_json()
        assert collaborators == {'collaborators': ['bob@example.com']}

        shared = client.get('/api/users/bob/files').get_json()['files']
        assert shared[0]['isShared'] is True

        client.put(f'/api/users/bob/files/{file_id}', json={'content': 'edit', 'ownerId': 'alice'})
        history = client.get(f'/api/files/{file_id}/history').get_json()['history']
        assert [h['userId'] for h in history] == ['bob']

    def test_user_id_cannot_reach_other_nodes(self, client, app_module, users):
        file_id = client.post('/api/users/alice/files', json={'name': 'main.py'}).get_json()['id']

        response = client.post('/api/users', json={'userId': f'alice/files/{file_id}', 'email': 'eve@example.com'})

        assert response.status_code == 400
        assert app_module.workspace.get_file('alice', file_id)['name'] == 'main.py'
        assert app_module.workspace.get_user_by_email('eve@example.com') is None

    def test_invalid_key_in_url(self, client, users):
        response = client.get('/api/users/alice.x/files')

        assert response.status_code == 400
        assert response.get_json() == {'error': "Invalid userId: 'alice.x'"}

    @pytest.mark.parametrize('body', [
        {'userId': 'carol', 'email': 123},
        {'userId': 'carol', 'email': 'carol@example.com', 'name': ['Carol']},
        {'userId': 42, 'email': 'carol@example.com'},
    ])
    def test_register_rejects_wrong_types(self, client, body):
        response = client.post('/api/users', json=body)

        assert response.status_code == 400

    def test_create_rejects_non_string_name(self, client, users):
        response = client.post('/api/users/alice/files', json={'name': 123})

        assert response.status_code == 400
        assert response.get_json() == {'error': 'File name must be a string'}

    def test_share_rejects_non_string_email(self, client, users):
        file_id = client.post('/api/users/alice/files', json={'name': 'main.py'}).get_json()['id']

        response = client.post(f'/api/files/{file_id}/share',
                               json={'ownerId': 'alice', 'userId': 'alice', 'email': 123})

        assert response.status_code == 400
        assert response.get_json() == {'success': False, 'error': 'Email must be a string'}
