"""Shared fixtures: a fake clock, fake transport and fake REST API.

Nothing here touches the network or the global reactor. Time moves only
when a test advances the Clock, and every fake API call answers with an
already-fired Deferred unless the test hands it one to fire later.
"""

import pytest
from twisted.internet import defer, task
from twisted.words.xish import domish

from cubot.config import CUBotConfig, RoomConfig, ServerConfig
from cubot.errors import APIError
from cubot.session import MUC_USER_NS, child
from cubot.store import StatsStore
from cubot.supervisor import BotSupervisor

ADDRESS = "hatchery.example"
NICK = "CUBot"


def game(state, a=0, t=0, v=0, timeLeft=1800):
    return {"gameState": state, "timeLeft": timeLeft,
            "arthurianScore": a, "tuathaDeDanannScore": t, "vikingScore": v}


class FakeAPI:
    def __init__(self, controlgame=(), players=None, kills=(), default=None):
        self.controlgame = list(controlgame)
        self.default = default if default is not None else game(1)
        self.players = players if players is not None else {
            "arthurians": 4, "tuathaDeDanann": 5, "vikings": 6}
        self.kills = list(kills)
        self.servers = [{"name": "Hatchery"}, {"name": "Wyrmling"}]
        self.events = [{"title": "Siege", "start": "2026-10-20T18:00:00Z"}]
        self.calls = []

    def _answer(self, value):
        if isinstance(value, defer.Deferred):
            return value
        if isinstance(value, Exception):
            return defer.fail(value)
        return defer.succeed(value)

    def getControlGame(self, query=None):
        self.calls.append("controlgame")
        value = self.controlgame.pop(0) if self.controlgame else self.default
        return self._answer(value)

    def getPlayers(self):
        self.calls.append("players")
        return self._answer(self.players)

    def getKills(self, query):
        self.calls.append(("kills", query))
        return self._answer(self.kills.pop(0) if self.kills else [])

    def getServers(self):
        self.calls.append("servers")
        return self._answer(self.servers)

    def getEvents(self):
        self.calls.append("events")
        return self._answer(self.events)


def down():
    return APIError("game/controlgame", "timeout")


class RecordingStore(StatsStore):
    def __init__(self, datadir):
        StatsStore.__init__(self, datadir)
        self.writes = []

    def save(self, server, key, value):
        self.writes.append((server, key))
        return StatsStore.save(self, server, key, value)


class FakeXmlStream:
    def __init__(self):
        self.sent = []
        self.observers = {}
        self.rawDataInFn = None

    def send(self, element):
        self.sent.append(element)

    def addObserver(self, event, fn, *args, **kwargs):
        self.observers.setdefault(event, []).append(fn)

    def removeObserver(self, event, fn):
        if fn in self.observers.get(event, []):
            self.observers[event].remove(fn)

    def deliver(self, stanza):
        if self.rawDataInFn:
            self.rawDataInFn(stanza.toXml())
        for fn in list(self.observers.get("/" + stanza.name, [])):
            fn(stanza)

    def messages(self, mtype=None):
        out = []
        for el in self.sent:
            if el.name == "message" and (mtype is None or el["type"] == mtype):
                out.append((el["to"], el["type"], str(child(el, "body"))))
        return out


class FakeConnector:
    def __init__(self, host, port, factory):
        self.host = host
        self.port = port
        self.factory = factory
        self.disconnected = False

    def disconnect(self):
        self.disconnected = True


def presence(room, nick, role="participant", status=(), ptype=None):
    p = domish.Element((None, "presence"))
    p["from"] = f"{room}@conference.{ADDRESS}/{nick}"
    if ptype:
        p["type"] = ptype
    x = p.addElement((MUC_USER_NS, "x"))
    x.addElement("item")["role"] = role
    for code in status:
        x.addElement("status")["code"] = code
    return p


def groupchat(room, nick, body, staff=False):
    m = domish.Element((None, "message"))
    m["from"] = f"{room}@conference.{ADDRESS}/{nick}"
    m["type"] = "groupchat"
    m.addElement("body", content=body)
    if staff:
        m.addElement("cseflags")["cse"] = "cse"
    return m


def chat(sender, body, staff=False):
    m = domish.Element((None, "message"))
    m["from"] = sender
    m["type"] = "chat"
    m.addElement("body", content=body)
    if staff:
        m.addElement("cseflags")["cse"] = "cse"
    return m


@pytest.fixture
def clock():
    return task.Clock()


@pytest.fixture
def store(tmp_path):
    return RecordingStore(str(tmp_path / "data"))


@pytest.fixture
def api():
    return FakeAPI()


def makeServer(name="Hatchery", address=ADDRESS):
    server = ServerConfig(name, address)
    server.nickname = NICK
    server.rooms = {"lobby": RoomConfig("lobby", monitor=True, motd=True),
                    "it": RoomConfig("it")}
    return server


@pytest.fixture
def server():
    return makeServer()


@pytest.fixture
def config(tmp_path):
    cfg = CUBotConfig()
    cfg.datadir = str(tmp_path / "data")
    cfg.logdir = str(tmp_path / "chatlogs")
    cfg.motd_admins = ["boss"]
    cfg.test_keywords = ["^test"]
    cfg.servers = {"Hatchery": makeServer(),
                   "Wyrmling": makeServer("Wyrmling", "wyrmling.example")}
    return cfg


class Harness:
    """A supervisor wired to fakes, plus handles on what it created."""

    def __init__(self, config, store, clock, api):
        self.clock = clock
        self.api = api
        self.connectors = []
        self.notes = []
        self.supervisor = BotSupervisor(config, store, reactor=clock,
                                        connect=self.connect,
                                        apiFactory=lambda s: api,
                                        notify=lambda m, a: self.notes.append((a, m)))

    def connect(self, host, port, factory):
        connector = FakeConnector(host, port, factory)
        self.connectors.append(connector)
        return connector

    def start(self, name="Hatchery"):
        return self.supervisor.start(self.supervisor.config.servers[name])

    def online(self, name="Hatchery"):
        session = self.supervisor.sessions[name]
        xs = FakeXmlStream()
        session.onConnected(xs)
        session.onOnline(xs)
        return session, xs

    def joined(self, name="Hatchery", rooms=("lobby", "it")):
        self.start(name)
        session, xs = self.online(name)
        for room in rooms:
            xs.deliver(presence(room, NICK, role="moderator", status=("110",)))
        return session, xs


@pytest.fixture
def harness(config, store, clock, api):
    return Harness(config, store, clock, api)
