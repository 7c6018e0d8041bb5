import os
import threading
import time
import unittest
from unittest.mock import MagicMock

from demoterm.capture import InputCapture, OutputCapture, Stopwatch
from demoterm.eventlog import EventLog


def read_available(fileno, size=65536):
    os.set_blocking(fileno, False)
    try:
        return os.read(fileno, size)
    except BlockingIOError:
        return b''


class TestStopwatch(unittest.TestCase):
    def test_elapsed(self):
        stopwatch = Stopwatch()
        first = stopwatch.elapsed()
        time.sleep(0.02)
        second = stopwatch.elapsed()
        self.assertIsInstance(first, int)
        self.assertGreaterEqual(first, 0)
        self.assertGreaterEqual(second, first + 15)


class TestOutputCapture(unittest.TestCase):
    def setUp(self):
        self.fd_read, self.fd_write = os.pipe()
        self.log = EventLog()
        self.stop_event = threading.Event()

    def tearDown(self):
        for fd in self.fd_read, self.fd_write:
            try:
                os.close(fd)
            except OSError:
                pass

    def capture(self, chunks, **kwargs):
        capture = OutputCapture(self.fd_read, self.log, Stopwatch(),
                                self.stop_event, poll_interval=0.01, **kwargs)
        capture.start()
        for chunk in chunks:
            os.write(self.fd_write, chunk)
            time.sleep(0.02)
        os.close(self.fd_write)
        capture.join(5)
        self.assertTrue(capture.finished)
        return capture

    def test_records_output(self):
        capture = self.capture([b'hello', b' world\r\n', b'$ '])
        events = self.log.snapshot()
        self.assertIsNone(capture.error)
        self.assertTrue(events)
        self.assertTrue(all(event.source == 'output' for event in events))
        self.assertEqual(''.join(e.payload for e in events), 'hello world\r\n$ ')

        timestamps = [event.timestamp for event in events]
        self.assertEqual(timestamps, sorted(timestamps))

    def test_invalid_bytes(self):
        self.capture([b'a\xffb'])
        text = ''.join(e.payload for e in self.log.snapshot())
        self.assertEqual(text, 'a\ufffdb')

    def test_character_split_across_reads(self):
        self.capture([b'\xe2\x82', b'\xac'])
        text = ''.join(e.payload for e in self.log.snapshot())
        self.assertEqual(text, '\u20ac')

    def test_incomplete_character_at_end_of_stream(self):
        self.capture([b'ok\xe2\x82'])
        events = self.log.snapshot()
        self.assertEqual(''.join(e.payload for e in events), 'ok\ufffd')
        self.assertTrue(all(event.source == 'output' for event in events))

    def test_incomplete_character_on_stop(self):
        capture = OutputCapture(self.fd_read, self.log, Stopwatch(),
                                self.stop_event, poll_interval=0.01)
        capture.start()
        os.write(self.fd_write, b'\xe2')
        time.sleep(0.05)
        self.stop_event.set()
        capture.join(5)
        self.assertTrue(capture.finished)
        self.assertEqual(''.join(e.payload for e in self.log.snapshot()),
                         '\ufffd')

    def test_echo(self):
        echo_read, echo_write = os.pipe()
        try:
            self.capture([b'mirrored'], echo_fileno=echo_write)
            self.assertEqual(read_available(echo_read), b'mirrored')
        finally:
            os.close(echo_read)
            os.close(echo_write)

    def test_echo_failure_does_not_stop_capture(self):
        echo_read, echo_write = os.pipe()
        os.close(echo_read)
        try:
            with self.assertLogs('demoterm.capture', 'WARNING'):
                capture = self.capture([b'data'], echo_fileno=echo_write)
        finally:
            os.close(echo_write)
        self.assertIsNone(capture.echo_fileno)
        self.assertEqual(''.join(e.payload for e in self.log.snapshot()), 'data')

    def test_stop_event(self):
        capture = OutputCapture(self.fd_read, self.log, Stopwatch(),
                                self.stop_event, poll_interval=0.01)
        capture.start()
        self.stop_event.set()
        capture.join(5)
        self.assertTrue(capture.finished)
        self.assertEqual(self.log.snapshot(), [])


class TestInputCapture(unittest.TestCase):
    def setUp(self):
        self.input_read, self.input_write = os.pipe()
        # Pipe standing in for the master side of the pseudo-terminal
        self.master_read, self.master_write = os.pipe()
        self.log = EventLog()
        self.stop_event = threading.Event()

    def tearDown(self):
        for fd in (self.input_read, self.input_write, self.master_read,
                   self.master_write):
            try:
                os.close(fd)
            except OSError:
                pass

    def test_forward_and_record(self):
        capture = InputCapture(self.input_read, self.master_write, self.log,
                               Stopwatch(), self.stop_event, poll_interval=0.01)
        capture.start()
        for chunk in (b'echo hi\r', b'\x03', b'exit\r'):
            os.write(self.input_write, chunk)
            time.sleep(0.02)
        os.close(self.input_write)
        capture.join(5)

        self.assertTrue(capture.finished)
        self.assertEqual(read_available(self.master_read), b'echo hi\r\x03exit\r')
        events = self.log.snapshot()
        self.assertTrue(all(event.source == 'input' for event in events))
        self.assertEqual(''.join(e.payload for e in events), 'echo hi\r\x03exit\r')
        timestamps = [event.timestamp for event in events]
        self.assertEqual(timestamps, sorted(timestamps))

    def test_stop_event_with_open_input(self):
        capture = InputCapture(self.input_read, self.master_write, self.log,
                               Stopwatch(), self.stop_event, poll_interval=0.01)
        capture.start()
        time.sleep(0.05)
        self.stop_event.set()
        capture.join(5)
        self.assertTrue(capture.finished)

    def test_log_failure_after_forward(self):
        log = MagicMock()
        log.append.side_effect = MemoryError()
        capture = InputCapture(self.input_read, self.master_write, log,
                               Stopwatch(), self.stop_event, poll_interval=0.01)
        capture.start()
        os.write(self.input_write, b'ls\r')
        capture.join(5)

        self.assertTrue(capture.finished)
        self.assertIsInstance(capture.error, MemoryError)
        self.assertEqual(read_available(self.master_read), b'ls\r')

    def test_forward_failure_ends_capture(self):
        os.close(self.master_read)
        capture = InputCapture(self.input_read, self.master_write, self.log,
                               Stopwatch(), self.stop_event, poll_interval=0.01)
        capture.start()
        os.write(self.input_write, b'ls\r')
        capture.join(5)

        self.assertTrue(capture.finished)
        self.assertIsNone(capture.error)
        self.assertEqual(self.log.snapshot(), [])
