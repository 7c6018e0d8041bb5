"""Replay of a recorded session

The content of the screen is modeled as the concatenation of all the data
exchanged with the program so far (escape sequences are not interpreted).
"""
from collections import namedtuple

TimedFrame = namedtuple('TimedFrame', ['time', 'duration', 'text'])


class NoEventsError(Exception):
    pass


class ScreenStates:
    """Cumulative content of the screen after each event of a recording

    Iterating over an instance yields one string per event, in log order.
    Instances can be iterated over any number of times and always produce the
    same sequence.
    """
    def __init__(self, events):
        self.events = tuple(events)
        if not self.events:
            raise NoEventsError('No events recorded')

    def __len__(self):
        return len(self.events)

    def __iter__(self):
        screen = ''
        for event in self.events:
            screen += event.payload
            yield screen


def replay(events):
    """Return the screen states of a recording

    Raise NoEventsError if `events` is empty"""
    return ScreenStates(events)


def timed_frames(events, max_frame_dur=None, last_frame_dur=1000):
    """Return a generator of TimedFrame, one frame per event

    The duration of a frame is the time elapsed until the next event. Frames
    lasting more than `max_frame_dur` milliseconds see their duration reduced
    to that value, and the time of all following frames is shifted
    accordingly. The last frame lasts `last_frame_dur` milliseconds.

    Raise NoEventsError if `events` is empty
    """
    states = replay(events)

    def generator():
        timestamps = [event.timestamp for event in states.events]
        time = 0
        for index, text in enumerate(states):
            if index + 1 < len(timestamps):
                # Events of the two capture sources may be slightly out of
                # order
                duration = max(0, timestamps[index + 1] - timestamps[index])
                if max_frame_dur is not None:
                    duration = min(duration, max_frame_dur)
            else:
                duration = last_frame_dur
            yield TimedFrame(time, duration, text)
            time += duration

    return generator()
