"""Terminal session event log

This module provides the event record of a recording session and the
functions used to persist it. A recording is a JSON array of objects such as:

    [{"timestamp": 0, "input": "echo hi\\r", "output": null},
     {"timestamp": 50, "input": null, "output": "hi\\r\\n"}]

Exactly one of "input" and "output" is set on every object and the array is
ordered the way events were appended to the log during the session.
"""
import json
import os
import tempfile
import threading
from collections import namedtuple


class EventLogError(Exception):
    pass


class LogDecodeError(EventLogError):
    pass


class LogPersistError(EventLogError):
    pass


_TerminalEvent = namedtuple('TerminalEvent', ['timestamp', 'input', 'output'])


class TerminalEvent(_TerminalEvent):
    """Event record

    timestamp: Time elapsed since the beginning of the session in milliseconds
    input: Data read on the input of the terminal (None for output events)
    output: Data written by the recorded program (None for input events)
    """
    def __new__(cls, timestamp, input=None, output=None):
        # pylint: disable=redefined-builtin
        self = super(TerminalEvent, cls).__new__(cls, timestamp, input, output)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise EventLogError('Invalid type for attribute timestamp: {} '
                                '(expected int)'.format(type(timestamp)))
        if timestamp < 0:
            raise EventLogError('Invalid timestamp: {}'.format(timestamp))

        payloads = [p for p in (input, output) if p is not None]
        if len(payloads) != 1:
            raise EventLogError('An event must carry exactly one of input and '
                                'output')
        if not isinstance(payloads[0], str):
            raise EventLogError('Invalid type for event payload: {} '
                                '(expected str)'.format(type(payloads[0])))
        return self

    @classmethod
    def from_input(cls, timestamp, text):
        return cls(timestamp, input=text)

    @classmethod
    def from_output(cls, timestamp, text):
        return cls(timestamp, output=text)

    @property
    def source(self):
        return 'input' if self.input is not None else 'output'

    @property
    def payload(self):
        return self.input if self.input is not None else self.output

    def to_json_dict(self):
        return self._asdict()

    @classmethod
    def from_json_dict(cls, json_dict):
        """Raise LogDecodeError if json_dict is not a valid event object"""
        if not isinstance(json_dict, dict):
            raise LogDecodeError('Invalid event (expected an object): {}'
                                 .format(json_dict))
        unknown_attributes = set(json_dict) - set(cls._fields)
        if unknown_attributes:
            raise LogDecodeError('Unknown attributes in event: {}'
                                 .format(sorted(unknown_attributes)))
        if 'timestamp' not in json_dict:
            raise LogDecodeError('Missing timestamp in event: {}'
                                 .format(json_dict))
        try:
            return cls(json_dict['timestamp'],
                       json_dict.get('input'),
                       json_dict.get('output'))
        except EventLogError as exc:
            raise LogDecodeError(str(exc)) from exc


class EventLog:
    """Ordered collection of events shared by the threads of a session

    Every access goes through a single lock. Events are only ever appended;
    readers get a copy of the log through `snapshot`.
    """
    def __init__(self, events=None):
        self._lock = threading.Lock()
        self._events = list(events) if events is not None else []

    def append(self, event):
        with self._lock:
            self._events.append(event)

    def snapshot(self):
        """Return a point in time copy of the events"""
        with self._lock:
            return list(self._events)

    def __len__(self):
        with self._lock:
            return len(self._events)


def encode(events):
    return json.dumps([event.to_json_dict() for event in events],
                      ensure_ascii=False)


def decode(data):
    """Return the list of events stored in `data`

    Raise LogDecodeError if `data` is not a valid recording"""
    try:
        json_list = json.loads(data)
    except json.JSONDecodeError as exc:
        raise LogDecodeError('Invalid JSON data: {}'.format(exc)) from exc

    if not isinstance(json_list, list):
        raise LogDecodeError('Invalid recording (expected an array of events)')

    return [TerminalEvent.from_json_dict(item) for item in json_list]


def save(events, path):
    """Write events to path atomically

    The data is written to a temporary file located in the same directory as
    `path`, synced to disk and then renamed, so that a reader never sees a
    truncated recording."""
    data = encode(events)
    directory = os.path.dirname(os.path.abspath(path))
    try:
        fd, tmp_path = tempfile.mkstemp(prefix='.demoterm_', suffix='.tmp',
                                        dir=directory)
    except OSError as exc:
        raise LogPersistError('Unable to save recording to {}: {}'
                              .format(path, exc)) from exc

    try:
        with open(fd, 'w', encoding='utf-8') as log_file:
            log_file.write(data)
            log_file.flush()
            os.fsync(log_file.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise LogPersistError('Unable to save recording to {}: {}'
                              .format(path, exc)) from exc


def load(path):
    try:
        with open(path, 'r', encoding='utf-8') as log_file:
            data = log_file.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise LogDecodeError('Unable to read recording {}: {}'
                             .format(path, exc)) from exc
    return decode(data)
