import os
import sys
import secrets
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Base directory
BASE_DIR = Path(__file__).parent


def _env_bool(name, default='False'):
    return os.environ.get(name, default).lower() == 'true'


# Flask configuration
class Config:
    # Security
    SECRET_KEY = os.environ.get('SECRET_KEY', secrets.token_hex(32))

    # Server
    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', 5000))
    DEBUG = _env_bool('DEBUG')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'gevent')
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')

    # Code execution
    PYTHON_COMMAND = os.environ.get('PYTHON_COMMAND', sys.executable or 'python3')
    EXECUTION_DIR = Path(os.environ.get('EXECUTION_DIR', BASE_DIR / 'temp_python_executions'))
    EXECUTION_TIMEOUT = float(os.environ.get('EXECUTION_TIMEOUT', 10))
    MAX_CODE_SIZE = int(os.environ.get('MAX_CODE_SIZE', 1024 * 1024))  # 1MB
    MAX_OUTPUT_SIZE = int(os.environ.get('MAX_OUTPUT_SIZE', 1024 * 1024))  # 1MB per run
    MAX_CONTENT_LENGTH = MAX_CODE_SIZE

    # Editor
    AUTOSAVE_DELAY = float(os.environ.get('AUTOSAVE_DELAY', 1.0))  # seconds

    # Maintenance
    SWEEP_ENABLED = _env_bool('SWEEP_ENABLED', 'True')
    SWEEP_INTERVAL = int(os.environ.get('SWEEP_INTERVAL', 300))
    STALE_EXECUTION_AGE = int(os.environ.get('STALE_EXECUTION_AGE', 600))
