import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if os.environ.get('SOCKETIO_ASYNC_MODE', 'gevent') == 'gevent':
    from gevent import monkey
    monkey.patch_all()

import atexit
import logging
import time

import psutil
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, request, jsonify
from flask_socketio import SocketIO, emit

from autosave import Autosaver
from config import Config
from executor import ExecutionSetupError, PythonExecutor, sweep_stale_scripts
from schema import InsertExecutionLog
from storage import storage
from workspace import Workspace, WorkspaceError, check_key

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)
app.logger.setLevel(Config.LOG_LEVEL)
socketio = SocketIO(app,
                   cors_allowed_origins=Config.CORS_ALLOWED_ORIGINS,
                   async_mode=Config.SOCKETIO_ASYNC_MODE,
                   ping_timeout=60,
                   ping_interval=25,
                   logger=Config.DEBUG,
                   engineio_logger=Config.DEBUG)

executor = PythonExecutor(Config.PYTHON_COMMAND, Config.EXECUTION_DIR, Config.EXECUTION_TIMEOUT,
                          max_output=Config.MAX_OUTPUT_SIZE)
workspace = Workspace()
scheduler = BackgroundScheduler()


def notify_saved(record, sid):
    """Tell the editor that issued a save that it reached the workspace"""
    if sid:
        socketio.emit('file_saved', {
            'fileId': record['id'],
            'lastModified': record['lastModified'],
        }, to=sid)


autosaver = Autosaver(workspace, scheduler, delay=Config.AUTOSAVE_DELAY, on_saved=notify_saved)


def log_execution(user_id, code, output, error):
    """Append an execution record; a failure here never fails the run"""
    try:
        storage.create_execution_log(InsertExecutionLog(
            user_id=user_id,
            code=code,
            output=output,
            error=error,
        ))
    except Exception:
        app.logger.exception('Error storing execution log')


def get_json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# Routes
@app.route('/api/execute', methods=['POST'])
def execute_code():
    """Run submitted Python code and return its output"""
    data = get_json_body()
    code = data.get('code')
    user_id = data.get('userId')

    if not code or not isinstance(code, str):
        return jsonify({'success': False, 'error': 'No code provided'}), 400

    try:
        result = executor.run(code)
    except ExecutionSetupError:
        app.logger.exception('Could not set up execution')
        return jsonify({'success': False, 'error': 'Server error occurred during execution'}), 500
    except Exception:
        app.logger.exception('API execution error')
        return jsonify({'success': False, 'error': 'Server error occurred during execution'}), 500

    if result.timed_out:
        app.logger.warning('Execution timed out after %ss', executor.timeout)
    elif result.output_exceeded:
        app.logger.warning('Execution stopped at the %d byte output limit', executor.max_output)

    if user_id:
        log_execution(user_id, code, result.output, result.error)

    return jsonify(result.as_response())


@app.route('/api/health')
def health():
    return jsonify({
        'status': 'ok',
        'pythonCommand': executor.python_command,
        'executionTimeout': executor.timeout,
        'executionDir': str(executor.work_dir),
        'pendingSaves': len(autosaver.pending()),
        'memoryPercent': psutil.virtual_memory().percent,
        'timestamp': time.time(),
    })


@app.route('/api/users', methods=['GET', 'POST'])
def users():
    if request.method == 'GET':
        return jsonify({'users': workspace.list_users(exclude=request.args.get('exclude'))})

    data = get_json_body()
    try:
        profile = workspace.ensure_user(data.get('userId'), data.get('email'), data.get('name', ''))
    except WorkspaceError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(profile)


@app.route('/api/users/lookup')
def lookup_user():
    email = request.args.get('email', '')
    if not email:
        return jsonify({'error': 'Email is required'}), 400

    user = workspace.get_user_by_email(email)
    if not user:
        return jsonify({'error': 'User not found'}), 404
    return jsonify(user)


@app.route('/api/users/<user_id>/files', methods=['GET', 'POST'])
def user_files(user_id):
    if request.method == 'GET':
        return jsonify({'files': workspace.list_files(user_id)})

    data = get_json_body()
    try:
        record = workspace.create_file(
            user_id,
            data.get('name', ''),
            content=data.get('content', ''),
            path=data.get('path', '/'),
            type=data.get('type', 'file'),
        )
    except WorkspaceError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify(record), 201


@app.route('/api/users/<user_id>/files/<file_id>', methods=['GET', 'PUT', 'DELETE'])
def user_file(user_id, file_id):
    if request.method == 'GET':
        record = workspace.get_file(user_id, file_id)
        if record is None:
            return jsonify({'error': 'File not found'}), 404
        return jsonify(record)

    if request.method == 'DELETE':
        if not workspace.delete_file(user_id, file_id):
            return jsonify({'error': 'File not found'}), 404
        return jsonify({'success': True, 'message': 'File deleted successfully'})

    data = get_json_body()
    content = data.get('content')
    if not isinstance(content, str):
        return jsonify({'error': 'Content is required'}), 400

    record = workspace.update_file_content(user_id, file_id, content, data.get('ownerId'))
    if record is None:
        return jsonify({'error': 'File not found'}), 404
    return jsonify(record)


@app.route('/api/files/<file_id>/share', methods=['POST'])
def share_file(file_id):
    data = get_json_body()
    try:
        record = workspace.share_file(
            file_id,
            owner_id=data.get('ownerId'),
            target_email=data.get('email'),
            shared_by=data.get('userId'),
        )
    except WorkspaceError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    return jsonify({'success': True, 'message': 'Collaborator added successfully', 'collaborator': record})


@app.route('/api/files/<file_id>/collaborators')
def collaborators(file_id):
    return jsonify({'collaborators': workspace.list_collaborators(file_id)})


@app.route('/api/files/<file_id>/history')
def file_history(file_id):
    return jsonify({'history': workspace.file_history(file_id)})


# Socket.IO Events
@socketio.on('connect')
def handle_connect():
    emit('connected', {'message': 'Connected to DevHub IDE'})


@socketio.on('get_file_list')
def handle_get_files(data=None):
    user_id = (data or {}).get('userId')
    if not user_id:
        emit('error', {'message': 'userId is required'})
        return
    emit('file_list', {'files': workspace.list_files(user_id)})


@socketio.on('save_file')
def handle_save_file(data=None):
    """Queue a debounced save of the editor content"""
    data = data or {}
    user_id = data.get('userId')
    file_id = data.get('fileId')
    content = data.get('content')

    if not user_id or not file_id or not isinstance(content, str):
        emit('error', {'message': 'userId, fileId and content are required'})
        return
    check_key(user_id, 'userId')
    check_key(file_id, 'fileId')
    owner_id = data.get('ownerId')
    if owner_id:
        check_key(owner_id, 'ownerId')

    autosaver.schedule(user_id, file_id, content, owner_id=owner_id, context=request.sid)
    emit('save_status', {'fileId': file_id, 'status': 'saving'})


@socketio.on('run_code')
def handle_run_code(data=None):
    """Run Python code, streaming output to the terminal panel"""
    data = data or {}
    code = data.get('code') or ''
    user_id = data.get('userId')

    if not isinstance(code, str) or not code:
        emit('error', {'message': 'No code provided'})
        return

    sid = request.sid

    def execute_python():
        lines = []

        def on_output(line):
            lines.append(line)
            socketio.emit('command_output', {'output': line}, to=sid)

        try:
            result = executor.stream(code, on_output)
        except Exception:
            app.logger.exception('Error running code for %s', sid)
            socketio.emit('error', {'message': 'Server error occurred during execution'}, to=sid)
            return

        if user_id:
            log_execution(user_id, code, '\n'.join(lines), result.error)

        socketio.emit('execution_finished', {
            'success': result.success,
            'exitCode': result.exit_code,
            'timedOut': result.timed_out,
            'outputExceeded': result.output_exceeded,
        }, to=sid)

    socketio.start_background_task(execute_python)


# Error handlers
@socketio.on_error_default
def handle_socket_error(error):
    if isinstance(error, WorkspaceError):
        emit('error', {'message': str(error)})
        return
    app.logger.exception('Socket event failed')
    emit('error', {'message': 'Internal server error'})


@app.errorhandler(WorkspaceError)
def invalid_workspace_request(error):
    return jsonify({'error': str(error)}), 400


@app.errorhandler(404)
def not_found(error):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(500)
def internal_error(error):
    return jsonify({'error': 'Internal server error'}), 500


@app.errorhandler(413)
def too_large(error):
    return jsonify({'success': False, 'error': 'Code too large'}), 413


# Schedule cleanup
def sweep_executions():
    sweep_stale_scripts(executor.work_dir, Config.STALE_EXECUTION_AGE)


if Config.SWEEP_ENABLED:
    scheduler.add_job(func=sweep_executions, trigger='interval', seconds=Config.SWEEP_INTERVAL,
                      id='sweep_executions')
scheduler.start()
atexit.register(lambda: scheduler.shutdown(wait=False))


def main():
    logging.basicConfig(
        level=Config.LOG_LEVEL,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    Config.EXECUTION_DIR.mkdir(parents=True, exist_ok=True)

    print(f"""
    ============================================================
      DevHub IDE backend starting...

      URL: http://{Config.HOST}:{Config.PORT}
      Python: {Config.PYTHON_COMMAND}
      Scratch directory: {Config.EXECUTION_DIR.absolute()}
      Execution timeout: {Config.EXECUTION_TIMEOUT:g}s
      Debug Mode: {Config.DEBUG}
    ============================================================
    """)

    socketio.run(app,
                 host=Config.HOST,
                 port=Config.PORT,
                 debug=Config.DEBUG,
                 allow_unsafe_werkzeug=True,
                 log_output=Config.DEBUG)


if __name__ == '__main__':
    main()
