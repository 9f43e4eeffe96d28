import re

from twisted.python import log

from cubot.commands import ChatCommands
from cubot.rest import GameAPIClient
from cubot.session import ServerSession


def logNotify(message, audience):
    log.msg(f"notify ({audience}): {message}")


class BotSupervisor:
    """Owns the one live ServerSession per configured server.

    Sessions only talk to each other through this object: the command
    table reaches other servers via self.sessions, and restarts always go
    through start/stop here so the map never holds a dead session.
    """

    def __init__(self, config, store, reactor=None, connect=None,
                 apiFactory=None, notify=None):
        if reactor is None:
            from twisted.internet import reactor
        self.config = config
        self.store = store
        self.reactor = reactor
        self.clock = reactor
        self.connect = connect or reactor.connectTCP
        self.apiFactory = apiFactory or (lambda s: GameAPIClient(s.name, s.api_host))
        self.notify = notify or logNotify
        self.testKeywords = [re.compile(k, re.IGNORECASE) for k in config.test_keywords]
        self.sessions = {}
        self.commands = ChatCommands(self)

    def apiFor(self, serverConfig):
        return self.apiFactory(serverConfig)

    def _session(self, sessionOrName):
        if isinstance(sessionOrName, ServerSession):
            return sessionOrName
        return self.sessions.get(sessionOrName)

    def start(self, serverConfig):
        existing = self.sessions.get(serverConfig.name)
        if existing is not None:
            self.stop(existing)
        try:
            session = ServerSession(self, serverConfig)
        except Exception:
            log.err(None, f"{serverConfig.name}: could not create session")
            return None
        self.sessions[serverConfig.name] = session
        try:
            session.open()
        except Exception:
            # leaves the entry in place; the admin can clientoff/clienton it
            log.err(None, f"{serverConfig.name}: could not open connection")
        return session

    def stop(self, sessionOrName):
        session = self._session(sessionOrName)
        if session is None:
            return
        session.stop()
        if self.sessions.get(session.server) is session:
            del self.sessions[session.server]

    def restart(self, sessionOrName):
        session = self._session(sessionOrName)
        if session is None:
            return None
        serverConfig = session.config
        self.stop(session)
        log.msg(f"{serverConfig.name}: restarting session")
        return self.start(serverConfig)

    def startAll(self):
        for serverConfig in self.config.servers.values():
            self.start(serverConfig)

    def stopAll(self):
        for session in list(self.sessions.values()):
            self.stop(session)

    def isRunning(self, name):
        return name in self.sessions

    def relay(self, nick, room, text):
        """Pass a staff message on to the notification collaborator.

        A body matching one of the test keywords also goes to "min".
        """
        message = f"{nick}@{room}: {text}"
        self.notify(message, "all")
        log.msg(f"relayed to all: {message}")
        if any(k.search(text) for k in self.testKeywords):
            self.notify(message, "min")
            log.msg(f"relayed to min: {message}")
