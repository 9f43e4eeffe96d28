import random

from twisted.internet import task
from twisted.python import log
from twisted.words.protocols.jabber import client, jid, xmlstream
from twisted.words.xish import domish

from cubot.chatlog import ChatLog
from cubot.commands import CommandContext
from cubot.errors import ProtocolError, TransportError
from cubot.liveness import LivenessMonitor
from cubot.motd import MOTDDeliveryQueue
from cubot.rooms import RoomJoinTracker
from cubot.rounds import RoundTracker

MUC_NS = "http://jabber.org/protocol/muc"
MUC_USER_NS = MUC_NS + "#user"
PING_NS = "urn:xmpp:ping"
ROSTER_COMPLETE = "110"   # MUC status: this presence is our own, roster done
MAX_RECONNECT_DELAY = 60  # seconds, cap for the transport's own back-off


def child(element, name, uri=None):
    """First child element called name (any namespace unless uri is given)."""
    for c in element.elements():
        if c.name == name and (uri is None or c.uri == uri):
            return c
    return None


def sender(stanza):
    try:
        return jid.JID(stanza["from"])
    except KeyError:
        raise ProtocolError(f"{stanza.name} without a sender")
    except jid.InvalidFormat as e:
        raise ProtocolError(f"bad sender {stanza.getAttribute('from')!r}: {e}")


class ServerSession:
    """One chat session on one game server.

    Created by the supervisor on start and thrown away on stop; a restart
    always builds a new one. Every callback checks self.stopped first, so a
    timer or stanza arriving after stop() changes nothing.
    """

    def __init__(self, supervisor, serverConfig):
        self.supervisor = supervisor
        self.config = serverConfig
        self.server = serverConfig.name
        self.clock = supervisor.clock
        self.store = supervisor.store
        # random resource so a half-dead previous login can't collide with us
        self.resource = f"bot-{random.getrandbits(32):08x}"
        self.jid = jid.JID(f"{serverConfig.jid}/{self.resource}")
        self.factory = None
        self.connector = None
        self.xmlstream = None
        self.bootstraps = []
        self.connected = False
        self.stopped = False
        self.pings = 0

        self.motd = self.store.load(self.server, "motd")
        self.optOut = set(self.store.load(self.server, "motdIgnore"))
        self.rooms = RoomJoinTracker(self.server, serverConfig.rooms)
        self.chatLog = ChatLog(supervisor.config.logdir, self.server, self.rooms)
        self.liveness = LivenessMonitor(self.server, self.clock,
                                        serverConfig.liveness_threshold, self.onSilence)
        self.motdQueue = MOTDDeliveryQueue(self.server, self.clock, self.sendPM,
                                           lambda: self.motd, self.optOut)
        self.roundTracker = RoundTracker(serverConfig, supervisor.apiFor(serverConfig),
                                         self.store, self.clock)
        self.keepalive = task.LoopingCall(self.sendPing)
        self.keepalive.clock = self.clock

    @property
    def lastEventTimestamp(self):
        return self.liveness.lastEventTimestamp

    def open(self):
        self.factory = client.XMPPClientFactory(self.jid, self.config.password)
        self.factory.maxDelay = MAX_RECONNECT_DELAY
        self.bootstraps = [(xmlstream.STREAM_CONNECTED_EVENT, self.onConnected),
                           (xmlstream.STREAM_AUTHD_EVENT, self.onOnline),
                           (xmlstream.STREAM_END_EVENT, self.onDisconnect),
                           (xmlstream.INIT_FAILED_EVENT, self.onError)]
        for event, fn in self.bootstraps:
            self.factory.addBootstrap(event, fn)
        log.msg(f"{self.server}: connecting to {self.config.address}:{self.config.port} as {self.jid.full()}")
        self.connector = self.supervisor.connect(self.config.address, self.config.port,
                                                 self.factory)
        # a connect or login that never finishes must still end in a restart
        self.liveness.start()

    # Transport events
    def onConnected(self, xs):
        if self.stopped:
            return
        self.xmlstream = xs
        xs.rawDataInFn = self.onRawData
        self.liveness.touch()

    def onRawData(self, data):
        # any traffic at all proves the stream is alive
        if not self.stopped:
            self.liveness.touch()

    def onOnline(self, xs):
        if self.stopped:
            return
        log.msg(f"{self.server}: connected to {self.config.address}")
        self.xmlstream = xs
        self.connected = True
        xs.addObserver("/presence", self.onStanza)
        xs.addObserver("/message", self.onStanza)

        presence = domish.Element((None, "presence"))
        presence.addElement("show", content="chat")
        self.send(presence)
        self.joinRooms()

        # a transport-level reconnect lands here again; timers keep running
        self.liveness.start()
        self.motdQueue.start()
        if not self.keepalive.running:
            self.keepalive.start(self.config.keepalive_interval, now=False)
        self.roundTracker.start()

    def onDisconnect(self, reason):
        if self.stopped:
            return
        self.connected = False
        self.xmlstream = None
        self.rooms.resetAll()
        why = reason.getErrorMessage() if hasattr(reason, "getErrorMessage") else reason
        log.msg(f"{self.server}: disconnected ({why}), waiting to reconnect")

    def onError(self, failure):
        if self.stopped:
            return
        # not fatal: the factory retries and the liveness monitor backs it up
        log.msg(f"{self.server}: connection error: {failure.getErrorMessage()}")

    def onSilence(self):
        if not self.stopped:
            self.supervisor.restart(self)

    # Outbound
    def send(self, element):
        if self.stopped or self.xmlstream is None:
            raise TransportError(f"{self.server} is not connected")
        self.xmlstream.send(element)

    def joinRooms(self):
        for room in self.rooms:
            presence = domish.Element((None, "presence"))
            presence["to"] = f"{self.config.roomJID(room.name)}/{self.config.nickname}"
            x = presence.addElement((MUC_NS, "x"))
            x.addElement("history")["maxstanzas"] = "0"
            self.send(presence)
            log.msg(f"{self.server}: joining '{room.name}'")

    def sendPM(self, user, text):
        to = user if "@" in user else f"{user}@{self.config.address}"
        message = domish.Element((None, "message"))
        message["to"] = to
        message["type"] = "chat"
        message.addElement("body", content=text)
        try:
            self.send(message)
        except TransportError as e:
            log.msg(f"{self.server}: PM to {to} dropped: {e}")
            return False
        return True

    def sendGroup(self, roomJID, text):
        message = domish.Element((None, "message"))
        message["to"] = roomJID
        message["type"] = "groupchat"
        message.addElement("body", content=text)
        try:
            self.send(message)
        except TransportError as e:
            log.msg(f"{self.server}: message to {roomJID} dropped: {e}")
            return False
        return True

    def reply(self, ctx, text):
        if ctx.room == "pm":
            return self.sendPM(ctx.sender, text)
        return self.sendGroup(ctx.room, f"{ctx.sender}: {text}")

    def sendPing(self):
        if self.stopped or self.xmlstream is None:
            return
        self.pings += 1
        iq = domish.Element((None, "iq"))
        iq["type"] = "get"
        iq["to"] = self.config.address
        iq["id"] = f"{self.resource}-ping-{self.pings}"
        iq.addElement((PING_NS, "ping"))
        self.send(iq)

    # Inbound
    def onStanza(self, stanza):
        if self.stopped:
            return
        try:
            if stanza.getAttribute("type") == "error":
                log.msg(f"{self.server}: error stanza {stanza.toXml()}")
            elif stanza.name == "presence":
                self.onPresence(stanza)
            elif stanza.name == "message":
                self.onMessage(stanza)
        except ProtocolError as e:
            log.msg(f"{self.server}: ignoring stanza: {e}")
        except Exception:
            log.err(None, f"{self.server}: error handling stanza")

    def onPresence(self, stanza):
        x = child(stanza, "x", MUC_USER_NS)
        if x is None:
            return
        who = sender(stanza)
        room, nick = who.user, who.resource
        state = self.rooms.get(room)
        if state is None:
            log.msg(f"{self.server}: presence from unknown room {room}")
            return
        item = child(x, "item")
        role = item.getAttribute("role") if item is not None else None

        if stanza.getAttribute("type") == "unavailable" or role == "none":
            if state.joined:
                self.chatLog.write(room, f"-!- {nick} has left {room}")
        elif state.joined:
            self.chatLog.write(room, f"-!- {nick} has joined {room}")
            if state.motdEnabled and nick and nick != self.config.nickname:
                if self.motdQueue.userJoined(nick):
                    log.msg(f"{self.server}: user '{nick}' joined '{room}', MOTD queued")

        codes = [s.getAttribute("code") for s in x.elements() if s.name == "status"]
        if ROSTER_COMPLETE in codes:
            self.rooms.markJoined(room)

    def onMessage(self, stanza):
        body = child(stanza, "body")
        # no body: topic change, chat state, receipt...
        if body is None:
            return
        text = str(body)
        if not text:
            return
        who = sender(stanza)
        flags = child(stanza, "cseflags")
        staff = flags is not None and flags.getAttribute("cse") == "cse"
        if stanza.getAttribute("type") == "groupchat":
            self.onGroupMessage(who, text, staff)
        else:
            self.onPrivateMessage(who, text, staff)

    def isAdmin(self, name, staff):
        return staff or name in self.supervisor.config.motd_admins

    def onGroupMessage(self, who, text, staff):
        room, nick = who.user, who.resource
        state = self.rooms.get(room)
        # before the roster completes this is room history, not live chat
        if state is None or not state.joined or not nick:
            return
        self.chatLog.write(room, f"<{nick}> {text}")
        if nick == self.config.nickname:
            return
        if text.startswith(self.supervisor.config.trigger):
            ctx = CommandContext(self.isAdmin(nick, staff), who.userhost(), nick)
            self.supervisor.commands.dispatch(self, ctx, text)
        elif staff and state.monitored:
            self.supervisor.relay(nick, room, text)

    def onPrivateMessage(self, who, text, staff):
        if who.full() == f"{self.config.address}/Warning":
            self.supervisor.notify(f"ADMIN NOTICE: {text}", "all")
            log.msg(f"{self.server}: server warning relayed")
            return
        if text.startswith(self.supervisor.config.trigger):
            name = who.user or who.full()
            ctx = CommandContext(self.isAdmin(name, staff), "pm", name)
            self.supervisor.commands.dispatch(self, ctx, text)

    # Teardown
    def stop(self):
        """Detach everything and cancel every timer. Safe to call twice."""
        if self.stopped:
            return
        self.stopped = True
        self.liveness.stop()
        self.motdQueue.stop()
        self.roundTracker.stop()
        if self.keepalive.running:
            self.keepalive.stop()
        if self.factory is not None:
            for event, fn in self.bootstraps:
                self.factory.removeBootstrap(event, fn)
            self.factory.stopTrying()
        xs = self.xmlstream
        if xs is not None:
            xs.removeObserver("/presence", self.onStanza)
            xs.removeObserver("/message", self.onStanza)
            xs.rawDataInFn = None
        if self.connector is not None:
            self.connector.disconnect()
        self.chatLog.close()
        self.rooms.resetAll()
        self.connected = False
        self.xmlstream = None
        self.connector = None
        self.factory = None
        self.bootstraps = []
        log.msg(f"{self.server}: session stopped")
