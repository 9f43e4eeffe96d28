"""Failure classes shared by the session, tracker and store.

None of these are allowed to escape a session: they are raised close to
where a collaborator misbehaves and caught at the session boundary, where
they are logged.
"""


class CUBotError(Exception):
    pass


class TransportError(CUBotError):
    """The chat connection failed to resolve, connect or authenticate."""


class ProtocolError(CUBotError):
    """A stanza or API record did not have the shape we expect."""


class APIError(CUBotError):
    """A REST query failed: bad status, timeout, refused or undecodable."""

    def __init__(self, verb, reason):
        CUBotError.__init__(self, f"{verb}: {reason}")
        self.verb = verb
        self.reason = reason


class PersistenceError(CUBotError):
    """A stats document could not be written."""
