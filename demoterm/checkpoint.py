import logging
import threading

from demoterm import eventlog

logger = logging.getLogger(__name__)


class Checkpointer(threading.Thread):
    """Save a snapshot of the event log to `path` every `interval` seconds

    Checkpoints are best effort: a failed save is logged and attempted again
    at the next interval.
    """
    def __init__(self, log, path, interval=5):
        super().__init__(name='checkpointer', daemon=True)
        self.log = log
        self.path = path
        self.interval = interval
        self.checkpoints = 0
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            self.checkpoint()

    def checkpoint(self):
        events = self.log.snapshot()
        if not events:
            return
        try:
            eventlog.save(events, self.path)
        except eventlog.LogPersistError as exc:
            logger.warning('Checkpoint failed: %s', exc)
        else:
            self.checkpoints += 1
            logger.debug('Checkpoint: %d events saved to %s', len(events),
                         self.path)

    def stop(self, timeout=None):
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
