"""Capture of the data exchanged between the user and the recorded program

Each direction is handled by its own thread:
    - `OutputCapture` reads what the program writes on the pseudo-terminal
    - `InputCapture` reads what the user types and forwards it to the program

Both threads wait for data with `select` and a timeout so that they notice
the stop event of the session even when their stream stays open.
"""
import codecs
import logging
import os
import select
import threading
import time

from demoterm.eventlog import TerminalEvent

logger = logging.getLogger(__name__)

BUFFER_SIZE = 1024


class Stopwatch:
    """Milliseconds elapsed since creation, from a monotonic clock"""
    def __init__(self):
        self.start = time.monotonic_ns()

    def elapsed(self):
        return (time.monotonic_ns() - self.start) // 1000000


class CaptureSource(threading.Thread):
    """Read a file descriptor until end of stream and record what is read

    Reaching the end of the stream and read errors both end the capture
    normally. An exception raised while appending to the log is kept in
    `error` and also ends the capture.
    """
    def __init__(self, fileno, log, stopwatch, stop_event,
                 buffer_size=BUFFER_SIZE, poll_interval=0.1, name=None):
        super().__init__(name=name, daemon=True)
        self.fileno = fileno
        self.log = log
        self.stopwatch = stopwatch
        self.stop_event = stop_event
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.error = None
        self.make_event = None
        self._decoder = codecs.getincrementaldecoder('utf-8')('replace')

    @property
    def finished(self):
        return not self.is_alive()

    def run(self):
        logger.debug('%s started', self.name)
        for data in self._read_chunks():
            if not self.handle(data):
                break
        else:
            self.flush()
        logger.debug('%s ended', self.name)

    def _read_chunks(self):
        while not self.stop_event.is_set():
            try:
                rfds, _, _ = select.select([self.fileno], [], [],
                                           self.poll_interval)
            except (OSError, ValueError):
                return
            if not rfds:
                continue

            try:
                data = os.read(self.fileno, self.buffer_size)
            except OSError as exc:
                logger.debug('%s: read error (%s)', self.name, exc)
                return

            if not data:
                return
            yield data

    def record(self, make_event, data, final=False):
        """Append an event built from `data`, return False on failure"""
        text = self._decoder.decode(data, final)
        try:
            self.log.append(make_event(self.stopwatch.elapsed(), text))
        except Exception as exc:  # pylint: disable=broad-except
            logger.error('%s: unable to record event: %s', self.name, exc)
            self.error = exc
            return False
        return True

    def flush(self):
        """Record the bytes of an incomplete character left at end of stream"""
        buffered, _ = self._decoder.getstate()
        if buffered:
            self.record(self.make_event, b'', final=True)

    def handle(self, data):
        raise NotImplementedError


class OutputCapture(CaptureSource):
    """Record the output of the program, optionally mirrored to `echo_fileno`"""
    def __init__(self, master_fd, log, stopwatch, stop_event, echo_fileno=None,
                 **kwargs):
        kwargs.setdefault('name', 'output-capture')
        super().__init__(master_fd, log, stopwatch, stop_event, **kwargs)
        self.echo_fileno = echo_fileno
        self.make_event = TerminalEvent.from_output

    def handle(self, data):
        if self.echo_fileno is not None:
            try:
                _write_all(self.echo_fileno, data)
            except OSError as exc:
                logger.warning('Output mirroring disabled: %s', exc)
                self.echo_fileno = None
        return self.record(self.make_event, data)


class InputCapture(CaptureSource):
    """Forward the input of the user to the program and record it"""
    def __init__(self, input_fileno, master_fd, log, stopwatch, stop_event,
                 **kwargs):
        kwargs.setdefault('name', 'input-capture')
        super().__init__(input_fileno, log, stopwatch, stop_event, **kwargs)
        self.master_fd = master_fd
        self.make_event = TerminalEvent.from_input

    def handle(self, data):
        # Data reaches the program before it is recorded
        try:
            _write_all(self.master_fd, data)
        except OSError as exc:
            logger.debug('%s: forward error (%s)', self.name, exc)
            return False
        return self.record(self.make_event, data)


def _write_all(fileno, data):
    while data:
        n = os.write(fileno, data)
        data = data[n:]
