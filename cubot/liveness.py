from twisted.internet import task
from twisted.python import log

LIVENESS_TICK = 1  # seconds between silence checks


class LivenessMonitor:
    """Restart a session whose stream has gone quiet.

    The transport does not always report a dead connection, so we watch
    the time since the last inbound byte instead of waiting for errors.
    """

    def __init__(self, server, clock, threshold, onSilence):
        self.server = server
        self.clock = clock
        self.threshold = threshold
        self.onSilence = onSilence
        self.lastEventTimestamp = clock.seconds()
        self.loop = task.LoopingCall(self.check)
        self.loop.clock = clock

    def touch(self):
        self.lastEventTimestamp = self.clock.seconds()

    def elapsed(self):
        return self.clock.seconds() - self.lastEventTimestamp

    def check(self):
        elapsed = self.elapsed()
        if elapsed > self.threshold:
            log.msg(f"{self.server}: no traffic for {elapsed:.0f} seconds, reconnecting")
            self.stop()
            self.onSilence()
            return True
        return False

    def start(self, interval=LIVENESS_TICK):
        if not self.loop.running:
            self.touch()
            self.loop.start(interval, now=False)

    def stop(self):
        if self.loop.running:
            self.loop.stop()
