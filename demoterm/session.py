"""Recording session lifecycle

A session runs a program under a pseudo-terminal and records everything
exchanged with it until a stop is requested:

    IDLE -> STARTING -> RUNNING -> STOPPING -> STOPPED

While a session is active a handle file identifying the supervising process
exists on disk. Another process stops the session with `stop_session`, which
signals the supervising process and waits for the handle to disappear.

The `TerminalMode` context manager is to be used around sessions attached to
the user's terminal to ensure that the state of the terminal is always
properly restored, otherwise a failure during the session could render the
terminal unusable.
"""
import enum
import fcntl
import json
import logging
import os
import pty
import shutil
import signal
import struct
import termios
import threading
import time
import tty
from collections import namedtuple

from demoterm import config, eventlog
from demoterm.capture import InputCapture, OutputCapture, Stopwatch
from demoterm.checkpoint import Checkpointer

logger = logging.getLogger(__name__)


class SessionError(Exception):
    pass


class AlreadyRunning(SessionError):
    pass


class NoActiveSession(SessionError):
    pass


class SpawnError(SessionError):
    pass


class TerminationError(SessionError):
    pass


class CaptureError(SessionError):
    pass


SessionHandle = namedtuple('SessionHandle', ['pid', 'started_at'])


class HandleStore:
    """Session handle persisted at a well known path

    The handle exists if and only if a session is active."""
    def __init__(self, path):
        self.path = path

    def exists(self):
        return os.path.exists(self.path)

    def create(self, handle):
        """Raise AlreadyRunning if a handle already exists"""
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as exc:
            raise AlreadyRunning('Recording is already in progress ({})'
                                 .format(self.path)) from exc
        except OSError as exc:
            raise SessionError('Unable to create session handle {}: {}'
                               .format(self.path, exc)) from exc

        with open(fd, 'w') as handle_file:
            json.dump(handle._asdict(), handle_file)

    def read(self):
        """Raise NoActiveSession if there is no handle"""
        try:
            with open(self.path, 'r') as handle_file:
                data = handle_file.read()
        except FileNotFoundError as exc:
            raise NoActiveSession('No recording session found') from exc
        except OSError as exc:
            raise SessionError('Unable to read session handle {}: {}'
                               .format(self.path, exc)) from exc

        try:
            attributes = json.loads(data)
            return SessionHandle(int(attributes['pid']),
                                 float(attributes['started_at']))
        except (ValueError, TypeError, KeyError) as exc:
            raise SessionError('Invalid session handle: {}'
                               .format(self.path)) from exc

    def remove(self):
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class PtyProcess:
    """Program running in the background with a pseudo-terminal as its
    controlling terminal"""
    def __init__(self, pid, master_fd):
        self.pid = pid
        self.master_fd = master_fd
        self.exit_status = None

    @classmethod
    def spawn(cls, process_args, columns, lines):
        if not process_args or shutil.which(process_args[0]) is None:
            raise SpawnError('Command not found: {}'.format(
                process_args[0] if process_args else '(empty command)'))

        try:
            pid, master_fd = pty.fork()
        except OSError as exc:
            raise SpawnError('Unable to spawn {}: {}'
                             .format(process_args[0], exc)) from exc

        if pid == 0:
            # Child process - this call never returns
            try:
                os.execvp(process_args[0], process_args)
            finally:
                os._exit(127)

        # Parent process
        ttysize = struct.pack("HHHH", lines, columns, 0, 0)
        fcntl.ioctl(master_fd, termios.TIOCSWINSZ, ttysize)
        logger.debug('Spawned %s (pid %d)', process_args, pid)
        return cls(pid, master_fd)

    def poll(self):
        """Return the exit status of the process, None if it is running"""
        if self.exit_status is None:
            try:
                pid, status = os.waitpid(self.pid, os.WNOHANG)
            except ChildProcessError:
                # Already reaped
                self.exit_status = -1
            else:
                if pid == self.pid:
                    self.exit_status = status
        return self.exit_status

    def terminate(self, grace=1.0, poll_interval=0.05):
        """Hang up the process, kill it if it is still running after `grace`
        seconds. Terminating a process that already exited does nothing."""
        for signum in (signal.SIGHUP, signal.SIGKILL):
            if self.poll() is not None:
                return
            try:
                os.kill(self.pid, signum)
            except ProcessLookupError:
                self.poll()
                return
            except PermissionError as exc:
                raise TerminationError('Unable to terminate process {}: {}'
                                       .format(self.pid, exc)) from exc

            deadline = time.monotonic() + grace
            while time.monotonic() < deadline:
                if self.poll() is not None:
                    logger.debug('Process %d terminated', self.pid)
                    return
                time.sleep(poll_interval)

        raise TerminationError('Process {} did not terminate'.format(self.pid))

    def close(self):
        if self.master_fd is not None:
            os.close(self.master_fd)
            self.master_fd = None


class TerminalMode:
    """Save terminal mode and size on entry, restore them on exit

    With `raw` set, the terminal is switched to raw mode so that every key
    typed by the user reaches the recorded program untouched.
    """
    def __init__(self, fileno, raw=True):
        self.fileno = fileno
        self.raw = raw
        self.mode = None
        self.ttysize = None

    def __enter__(self):
        try:
            self.mode = tty.tcgetattr(self.fileno)
        except tty.error:
            pass

        try:
            columns, lines = os.get_terminal_size(self.fileno)
        except OSError:
            pass
        else:
            self.ttysize = struct.pack("HHHH", lines, columns, 0, 0)

        if self.raw and self.mode is not None:
            tty.setraw(self.fileno)

        return self.mode, self.ttysize

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.ttysize is not None:
            fcntl.ioctl(self.fileno, termios.TIOCSWINSZ, self.ttysize)

        if self.mode is not None:
            tty.tcsetattr(self.fileno, tty.TCSAFLUSH, self.mode)


class State(enum.Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'


class SessionController:
    """Record a program until a stop is requested or the program exits

    :param process_args: Arguments required to spawn the program
    :param log_path: Path of the recording (checkpoints and final save)
    :param handle_store: HandleStore of the session
    :param input_fileno: File descriptor of the input forwarded to the program
    :param echo_fileno: Optional file descriptor the output of the program is
    mirrored to
    :param geometry: Size of the pseudo-terminal (columns, lines)
    """
    def __init__(self, process_args, log_path, handle_store, input_fileno,
                 echo_fileno=None, geometry=config.DEFAULT_GEOMETRY,
                 checkpoint_interval=config.CHECKPOINT_INTERVAL,
                 poll_interval=config.POLL_INTERVAL,
                 stop_timeout=config.STOP_TIMEOUT):
        self.process_args = process_args
        self.log_path = log_path
        self.handle_store = handle_store
        self.input_fileno = input_fileno
        self.echo_fileno = echo_fileno
        self.geometry = geometry
        self.checkpoint_interval = checkpoint_interval
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout

        self.state = State.IDLE
        self.log = eventlog.EventLog()
        self.handle = None
        self.process = None
        # Liveness flag of the control loop, cleared by request_stop
        self.running = False
        self._stop_event = threading.Event()
        self._output_capture = None
        self._input_capture = None
        self._checkpointer = None

    @property
    def capture_sources(self):
        return [s for s in (self._output_capture, self._input_capture)
                if s is not None]

    def start(self):
        if self.state is not State.IDLE:
            raise SessionError('Session cannot be started twice')
        self.state = State.STARTING

        handle = SessionHandle(os.getpid(), time.time())
        try:
            self.handle_store.create(handle)
        except SessionError:
            self.state = State.IDLE
            raise

        columns, lines = self.geometry
        try:
            self.process = PtyProcess.spawn(self.process_args, columns, lines)
        except SpawnError:
            self.handle_store.remove()
            self.state = State.IDLE
            raise

        self.handle = handle
        stopwatch = Stopwatch()
        self._output_capture = OutputCapture(
            self.process.master_fd, self.log, stopwatch, self._stop_event,
            echo_fileno=self.echo_fileno, poll_interval=self.poll_interval)
        self._input_capture = InputCapture(
            self.input_fileno, self.process.master_fd, self.log, stopwatch,
            self._stop_event, poll_interval=self.poll_interval)
        self._checkpointer = Checkpointer(self.log, self.log_path,
                                          self.checkpoint_interval)
        self._output_capture.start()
        self._input_capture.start()
        self._checkpointer.start()

        self.running = True
        self.state = State.RUNNING
        logger.debug('Session started (pid %d)', handle.pid)

    def request_stop(self):
        """Ask the control loop to end. Safe to call from a signal handler."""
        self.running = False

    def wait(self):
        """Block until a stop is requested, the program exits or a capture
        source fails"""
        while self.running:
            if self._output_capture.finished:
                logger.debug('Recorded program exited')
                break
            if any(s.error is not None for s in self.capture_sources):
                break
            time.sleep(self.poll_interval)

    def stop(self):
        """Terminate the program, save the recording and remove the handle

        Return the list of recorded events. The handle is kept if the program
        cannot be terminated or if the recording cannot be saved so that the
        operation can be retried."""
        if self.state is not State.RUNNING:
            raise NoActiveSession('No recording session in progress')
        self.state = State.STOPPING
        self.running = False

        try:
            self.process.terminate()
        except TerminationError:
            self.state = State.RUNNING
            raise

        # The output capture drains what the program wrote before exiting
        self._output_capture.join(self.stop_timeout)
        self._stop_event.set()
        for source in self.capture_sources:
            source.join(self.stop_timeout)
            if source.is_alive():
                logger.warning('%s did not stop', source.name)
        # A checkpoint in progress must not replace the final save
        self._checkpointer.stop()

        events = self.log.snapshot()
        try:
            eventlog.save(events, self.log_path)
        except eventlog.LogPersistError:
            self.state = State.RUNNING
            raise

        self.process.close()
        self.handle_store.remove()
        self.state = State.STOPPED
        logger.debug('Session stopped, %d events saved to %s', len(events),
                     self.log_path)

        for source in self.capture_sources:
            if source.error is not None:
                raise CaptureError('{} failed: {}'.format(source.name, source.error)) \
                    from source.error
        return events

    def run(self):
        """Start the session, wait for its end and stop it"""
        self.start()
        try:
            self.wait()
        except KeyboardInterrupt:
            logger.debug('Session interrupted')
        return self.stop()


def install_signal_handlers(controller, signums=(signal.SIGTERM, signal.SIGHUP)):
    """Request a stop of the session when one of `signums` is received

    Return the previous handlers"""
    def handler(signum, frame):
        # pylint: disable=unused-argument
        controller.request_stop()

    return {signum: signal.signal(signum, handler) for signum in signums}


def stop_session(handle_store, timeout=config.STOP_TIMEOUT,
                 poll_interval=config.POLL_INTERVAL):
    """Stop the session identified by the handle and wait for it to end

    Raise NoActiveSession if there is no handle and TerminationError if the
    session does not end in time (the handle is then left in place)."""
    handle = handle_store.read()
    try:
        os.kill(handle.pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.warning('Recording process %d no longer exists, removing '
                       'stale session handle', handle.pid)
        handle_store.remove()
        return handle
    except PermissionError as exc:
        raise TerminationError('Unable to stop recording process {}: {}'
                               .format(handle.pid, exc)) from exc

    deadline = time.monotonic() + timeout
    while handle_store.exists():
        if time.monotonic() >= deadline:
            raise TerminationError('Recording process {} did not stop'
                                   .format(handle.pid))
        time.sleep(poll_interval)
    return handle


def get_terminal_size(fileno):
    try:
        columns, lines = os.get_terminal_size(fileno)
    except OSError:
        columns, lines = config.DEFAULT_GEOMETRY

    return columns, lines
