from twisted.internet import task
from twisted.python import log

MOTD_TICK = 0.5       # seconds between queue sweeps
MOTD_GRACE = 2        # seconds after a join before sending
MOTD_COOLDOWN = 300   # seconds after a send before a user can get it again


class PendingMotdRecipient:
    def __init__(self, userId, joinedAt):
        self.userId = userId
        self.joinedAt = joinedAt
        self.sentAt = 0


class MOTDDeliveryQueue:
    """Per-user delayed MOTD sends.

    A join enqueues the user unless they already have an entry or opted
    out. The sweep sends once the grace delay has passed and keeps the
    entry around for the cooldown, so a burst of joins (a reconnect storm
    on their side or ours) collapses into one message.
    """

    def __init__(self, server, clock, send, motd, optOut,
                 grace=MOTD_GRACE, cooldown=MOTD_COOLDOWN):
        self.server = server
        self.clock = clock
        self.send = send      # send(userId, text) -> True if it went out
        self.motd = motd      # motd() -> current text
        self.optOut = optOut  # set of userIds, shared with the session
        self.grace = grace
        self.cooldown = cooldown
        self.pending = {}
        self.stopped = False
        self.loop = task.LoopingCall(self.tick)
        self.loop.clock = clock

    def userJoined(self, userId):
        if self.stopped:
            return False
        if userId in self.pending or userId in self.optOut:
            return False
        self.pending[userId] = PendingMotdRecipient(userId, self.clock.seconds())
        return True

    def tick(self):
        if self.stopped:
            return
        now = self.clock.seconds()
        for userId, entry in list(self.pending.items()):
            if entry.sentAt == 0 and now - entry.joinedAt > self.grace:
                if self.send(userId, self.motd()):
                    entry.sentAt = now
                    log.msg(f"{self.server}: MOTD sent to user '{userId}'")
            elif entry.sentAt > 0 and now - entry.sentAt > self.cooldown:
                del self.pending[userId]

    def start(self, interval=MOTD_TICK):
        if not self.loop.running and not self.stopped:
            self.loop.start(interval, now=False)

    def stop(self):
        self.stopped = True
        if self.loop.running:
            self.loop.stop()
        self.pending.clear()
