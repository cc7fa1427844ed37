import os
import sys
import time

import pytest

# Must be in place before app/config are imported
os.environ['SOCKETIO_ASYNC_MODE'] = 'threading'
os.environ['SWEEP_ENABLED'] = 'false'
os.environ['SECRET_KEY'] = 'test-secret'

from autosave import Autosaver
from executor import PythonExecutor
from storage import MemStorage
from workspace import Workspace


@pytest.fixture
def run_dir(tmp_path):
    return tmp_path / 'runs'


@pytest.fixture
def executor(run_dir):
    return PythonExecutor(sys.executable, run_dir, timeout=5)


@pytest.fixture
def app_module(monkeypatch, executor):
    """The app module wired to fresh state for each test"""
    import app as app_module

    workspace = Workspace()
    monkeypatch.setattr(app_module, 'executor', executor)
    monkeypatch.setattr(app_module, 'workspace', workspace)
    monkeypatch.setattr(app_module, 'storage', MemStorage())
    monkeypatch.setattr(app_module, 'autosaver', Autosaver(
        workspace, app_module.scheduler, delay=0.2, on_saved=app_module.notify_saved))
    app_module.app.config['TESTING'] = True
    return app_module


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def socket_client(app_module):
    client = app_module.socketio.test_client(app_module.app)
    yield client
    if client.is_connected():
        client.disconnect()


def wait_for_event(client, name, timeout=15):
    """Collect socket packets until one named ``name`` arrives"""
    received = []
    deadline = time.time() + timeout
    while time.time() < deadline:
        received.extend(client.get_received())
        if any(packet['name'] == name for packet in received):
            return received
        time.sleep(0.05)
    raise AssertionError(f'{name!r} not received, got {[p["name"] for p in received]}')
