"""Run user-submitted Python code in a separate interpreter process.

Every run writes the code to ``<uuid>.py`` in a scratch directory, runs it
with a wall-clock timeout and removes the file again, whatever the outcome.
The interpreter gets its own session, so everything it forks shares one
process group that is killed as a unit when the run ends.
"""
import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, NamedTuple, Optional

import psutil

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# How long to wait for pipes to drain once the interpreter is gone
PIPE_GRACE = 2.0
POLL_INTERVAL = 0.05


class ExecutionSetupError(Exception):
    """The scratch file or the interpreter process could not be set up"""


class ExecutionResult(NamedTuple):
    success: bool
    output: str
    error: Optional[str]
    exit_code: Optional[int] = None
    timed_out: bool = False
    output_exceeded: bool = False

    def as_response(self):
        return {'success': self.success, 'output': self.output, 'error': self.error}


def kill_process_tree(pid):
    """Kill a process and every descendant it spawned"""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    # Collect children first, they get re-parented once the parent dies
    procs = parent.children(recursive=True)
    procs.append(parent)
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(procs, timeout=3)


def kill_process_group(pgid):
    """Kill every process left in a process group, orphans included"""
    if os.name != 'posix':
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class OutputLimit:
    """Byte budget shared by all output streams of one run"""

    def __init__(self, max_bytes):
        self.max_bytes = max_bytes
        self.used = 0
        self.exceeded = threading.Event()
        self._lock = threading.Lock()

    def take(self, data):
        """Return the part of ``data`` that still fits in the budget"""
        with self._lock:
            room = self.max_bytes - self.used
            if len(data) > room:
                self.used = self.max_bytes
                self.exceeded.set()
                return data[:max(room, 0)]
            self.used += len(data)
            return data


def start_reader(read, sink, limit):
    """Pump ``read()`` results into ``sink`` on a daemon thread until EOF or the limit"""
    def pump():
        try:
            for data in iter(read, b''):
                kept = limit.take(data)
                if kept:
                    sink(kept)
                if limit.exceeded.is_set():
                    break
        except OSError:
            logger.debug('Output pipe closed while reading', exc_info=True)

    reader = threading.Thread(target=pump, daemon=True)
    reader.start()
    return reader


def _decode(data):
    return data.decode('utf-8', errors='replace')


def sweep_stale_scripts(work_dir, max_age):
    """Remove scratch scripts older than ``max_age`` seconds, return the count"""
    work_dir = Path(work_dir)
    if not work_dir.is_dir():
        return 0

    cutoff = time.time() - max_age
    removed = 0
    for script in work_dir.glob('*.py'):
        try:
            if script.stat().st_mtime < cutoff:
                script.unlink()
                removed += 1
        except FileNotFoundError:
            continue
        except OSError:
            logger.exception('Could not remove stale script %s', script)
    if removed:
        logger.info('Removed %d stale execution scripts from %s', removed, work_dir)
    return removed


class PythonExecutor:
    def __init__(self, python_command, work_dir, timeout=10.0, max_output=1024 * 1024):
        self.python_command = python_command
        self.work_dir = Path(work_dir)
        self.timeout = timeout
        self.max_output = max_output

    @property
    def timeout_message(self):
        return f'Execution timed out after {self.timeout:g} seconds'

    @property
    def output_limit_message(self):
        return f'Output limit exceeded ({self.max_output} bytes)'

    def _write_script(self, code):
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            script = self.work_dir / f'{uuid.uuid4()}.py'
            script.write_text(code, encoding='utf-8')
        except OSError as e:
            raise ExecutionSetupError(f'Failed to create Python script: {e}') from e
        return script

    def _remove_script(self, script):
        try:
            script.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception('Error cleaning up temp file %s', script)

    def _spawn(self, script, **kwargs):
        env = dict(os.environ, PYTHONUNBUFFERED='1', PYTHONIOENCODING='utf-8')
        try:
            return subprocess.Popen(
                [self.python_command, str(script)],
                cwd=self.work_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
                **kwargs
            )
        except OSError as e:
            raise ExecutionSetupError(f'Could not start {self.python_command}: {e}') from e

    def _supervise(self, process, limit):
        """Wait for exit, the deadline or the output limit; return whether it timed out.

        The process group is killed on every way out, so nothing the code
        started outlives the run.
        """
        deadline = time.monotonic() + self.timeout
        timed_out = False
        try:
            while process.poll() is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                if limit.exceeded.wait(min(remaining, POLL_INTERVAL)):
                    break
        finally:
            if process.poll() is None:
                kill_process_tree(process.pid)
            kill_process_group(process.pid)
            try:
                process.wait(timeout=PIPE_GRACE)
            except subprocess.TimeoutExpired:
                logger.warning('Process %s did not exit after kill', process.pid)
        return timed_out

    def _finish_readers(self, process, readers):
        for reader in readers:
            reader.join(PIPE_GRACE)
        if any(reader.is_alive() for reader in readers):
            # An escaped process still holds the pipes, keep what we have
            logger.warning('Output pipes of %s still open after exit', process.pid)
            return
        for pipe in (process.stdout, process.stderr):
            if pipe:
                pipe.close()

    def run(self, code):
        """Run ``code`` to completion or timeout and capture both streams"""
        script = self._write_script(code)
        logger.debug('Executing %s', script)
        stdout, stderr = [], []
        limit = OutputLimit(self.max_output)
        try:
            process = self._spawn(script, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            readers = [
                start_reader(lambda: process.stdout.read(CHUNK_SIZE), stdout.append, limit),
                start_reader(lambda: process.stderr.read(CHUNK_SIZE), stderr.append, limit),
            ]
            timed_out = self._supervise(process, limit)
            self._finish_readers(process, readers)
        finally:
            self._remove_script(script)

        return self._build_result(
            _decode(b''.join(stdout)),
            _decode(b''.join(stderr)),
            process.returncode,
            timed_out,
            limit.exceeded.is_set(),
        )

    def _build_result(self, stdout, stderr, exit_code, timed_out, output_exceeded=False):
        output = stdout.rstrip('\n')
        error = stderr or None

        if output_exceeded:
            return ExecutionResult(False, output, self.output_limit_message, exit_code, False, True)
        if timed_out:
            error = f'{stderr}{self.timeout_message}'
            return ExecutionResult(False, output, error, exit_code, True)
        if exit_code != 0:
            return ExecutionResult(False, output, error or f'Process exited with code {exit_code}', exit_code)
        return ExecutionResult(True, output, error, exit_code)

    def stream(self, code, on_output: Callable[[str], None]):
        """Run ``code`` and hand every output line to ``on_output`` as it arrives.

        stderr is merged into stdout so lines keep their relative order. The
        returned result carries no output, it has already been delivered.
        Delivery stops once ``max_output`` bytes have been handed over.
        """
        script = self._write_script(code)
        limit = OutputLimit(self.max_output)

        def deliver(data):
            on_output(_decode(data).rstrip('\n'))

        try:
            process = self._spawn(script, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
            readers = [start_reader(lambda: process.stdout.readline(CHUNK_SIZE), deliver, limit)]
            timed_out = self._supervise(process, limit)
            self._finish_readers(process, readers)
        finally:
            self._remove_script(script)

        if limit.exceeded.is_set():
            on_output(f'Error: {self.output_limit_message}')
            return ExecutionResult(False, '', self.output_limit_message, process.returncode, False, True)
        if timed_out:
            on_output(f'Error: {self.timeout_message}')
            return ExecutionResult(False, '', self.timeout_message, process.returncode, True)
        if process.returncode != 0:
            return ExecutionResult(False, '', f'Process exited with code {process.returncode}', process.returncode)
        return ExecutionResult(True, '', None, process.returncode)
