from cubot.session import MUC_NS, PING_NS, child

from conftest import ADDRESS, NICK, FakeXmlStream, chat, groupchat, presence

LOBBY = f"lobby@conference.{ADDRESS}"


def test_open_connects_with_random_resource(harness):
    session = harness.start()
    connector, = harness.connectors
    assert (connector.host, connector.port) == (ADDRESS, 5222)
    assert connector.factory is session.factory
    assert session.jid.userhost() == f"cubot@{ADDRESS}"
    assert session.jid.resource.startswith("bot-")
    assert session.jid.resource != "bot-"


def test_online_announces_and_joins_rooms(harness):
    harness.start()
    session, xs = harness.online()
    presences = [el for el in xs.sent if el.name == "presence"]
    assert str(child(presences[0], "show")) == "chat"
    joins = {el["to"]: el for el in presences[1:]}
    assert sorted(joins) == [f"it@conference.{ADDRESS}/{NICK}", f"{LOBBY}/{NICK}"]
    history = child(child(joins[f"{LOBBY}/{NICK}"], "x", MUC_NS), "history")
    assert history["maxstanzas"] == "0"

    assert session.connected
    assert session.liveness.loop.running
    assert session.motdQueue.loop.running
    assert session.keepalive.running
    assert session.roundTracker.loop.running
    assert not session.rooms.isJoined("lobby")


def test_reconnect_rejoins_without_restarting_timers(harness):
    harness.start()
    session, xs = harness.online()
    session.onDisconnect("connection lost")
    assert not session.connected
    assert session.xmlstream is None
    session2, xs2 = harness.online()
    assert session2 is session
    assert len([el for el in xs2.sent if el.name == "presence"]) == 3
    assert harness.api.calls.count("controlgame") == 1


def test_roster_completion_marks_room_joined(harness):
    session, xs = harness.joined(rooms=("lobby",))
    assert session.rooms.isJoined("lobby")
    assert not session.rooms.isJoined("it")
    session.onDisconnect("connection lost")
    assert not session.rooms.isJoined("lobby")


def test_join_before_roster_does_not_queue_motd(harness):
    harness.start()
    session, xs = harness.online()
    xs.deliver(presence("lobby", "alice"))
    assert session.motdQueue.pending == {}


def test_join_queues_and_sends_motd(harness):
    session, xs = harness.joined()
    xs.deliver(presence("lobby", "alice"))
    xs.deliver(presence("lobby", "alice"))
    assert list(session.motdQueue.pending) == ["alice"]
    harness.clock.pump([0.5] * 6)
    assert xs.messages("chat") == [(f"alice@{ADDRESS}", "chat", "MOTD: ")]


def test_motd_not_queued_for_self_or_leavers_or_quiet_rooms(harness):
    session, xs = harness.joined()
    xs.deliver(presence("lobby", NICK))
    xs.deliver(presence("lobby", "bob", role="none"))
    xs.deliver(presence("lobby", "carol", ptype="unavailable"))
    xs.deliver(presence("it", "dave"))
    assert session.motdQueue.pending == {}


def test_unknown_room_and_bad_stanzas_are_ignored(harness):
    session, xs = harness.joined()
    xs.deliver(presence("elsewhere", "alice", status=("110",)))
    assert session.rooms.get("elsewhere") is None
    nofrom = groupchat("lobby", "alice", "!help")
    del nofrom.attributes["from"]
    xs.deliver(nofrom)
    error = groupchat("lobby", "alice", "!help")
    error["type"] = "error"
    xs.deliver(error)
    assert xs.messages() == []


def test_commands_wait_for_roster(harness):
    harness.start()
    session, xs = harness.online()
    xs.deliver(groupchat("lobby", "alice", "!help"))
    xs.deliver(groupchat("lobby", "gm", "hello", staff=True))
    assert xs.messages() == []
    assert harness.notes == []


def test_group_command_gets_addressed_reply(harness):
    session, xs = harness.joined()
    xs.deliver(groupchat("lobby", "alice", "!help"))
    (to, mtype, body), = xs.messages()
    assert (to, mtype) == (LOBBY, "groupchat")
    assert body.startswith("alice: available commands are: !motd ")


def test_own_messages_are_ignored(harness):
    session, xs = harness.joined()
    xs.deliver(groupchat("lobby", NICK, "!help", staff=True))
    assert xs.messages() == []
    assert harness.notes == []


def test_staff_message_relayed_from_monitored_room(harness):
    session, xs = harness.joined()
    xs.deliver(groupchat("lobby", "gm", "servers up", staff=True))
    xs.deliver(groupchat("lobby", "alice", "not staff"))
    xs.deliver(groupchat("it", "gm", "unmonitored room", staff=True))
    assert harness.notes == [("all", "gm@lobby: servers up")]


def test_test_keyword_also_goes_to_min(harness):
    session, xs = harness.joined()
    xs.deliver(groupchat("lobby", "gm", "patch going out", staff=True))
    assert [a for a, _ in harness.notes] == ["all"]
    harness.notes.clear()
    xs.deliver(groupchat("lobby", "gm", "Test build going out", staff=True))
    assert harness.notes == [("all", "gm@lobby: Test build going out"),
                             ("min", "gm@lobby: Test build going out")]


def test_server_warning_becomes_admin_notice(harness):
    session, xs = harness.joined()
    xs.deliver(chat(f"{ADDRESS}/Warning", "restart in 5 minutes"))
    assert harness.notes == [("all", "ADMIN NOTICE: restart in 5 minutes")]


def test_private_command_replies_privately(harness):
    session, xs = harness.joined()
    xs.deliver(chat(f"alice@{ADDRESS}/client", "!motd"))
    assert xs.messages() == [(f"alice@{ADDRESS}", "chat", "MOTD: ")]


def test_inbound_traffic_feeds_liveness(harness):
    session, xs = harness.joined()
    harness.clock.pump([1] * 50)
    xs.deliver(presence("lobby", "alice"))
    assert session.lastEventTimestamp == 50
    harness.clock.pump([1] * 50)
    assert harness.supervisor.sessions["Hatchery"] is session


def test_keepalive_ping(harness):
    session, xs = harness.joined()
    harness.clock.pump([1] * 30)
    pings = [el for el in xs.sent if el.name == "iq"]
    assert len(pings) == 1
    assert pings[0]["type"] == "get"
    assert child(pings[0], "ping", PING_NS) is not None


def test_stop_detaches_everything(harness):
    session, xs = harness.joined()
    factory = session.factory
    session.stop()
    assert session.stopped
    assert xs.observers["/presence"] == []
    assert xs.observers["/message"] == []
    assert xs.rawDataInFn is None
    assert harness.connectors[0].disconnected
    assert not factory.continueTrying
    for loop in (session.liveness.loop, session.motdQueue.loop,
                 session.keepalive, session.roundTracker.loop):
        assert not loop.running
    assert not session.rooms.isJoined("lobby")
    session.stop()


def test_nothing_happens_after_stop(harness):
    session, xs = harness.joined()
    xs.deliver(presence("lobby", "alice"))
    session.stop()
    sent = len(xs.sent)
    harness.clock.pump([0.5] * 200)
    session.onStanza(groupchat("lobby", "alice", "!help"))
    session.onOnline(xs)
    assert len(xs.sent) == sent
    assert not session.sendPM("alice", "hello")


def test_silence_restarts_session(harness):
    session, xs = harness.joined()
    harness.clock.pump([1] * 65)
    assert harness.supervisor.sessions["Hatchery"] is session
    harness.clock.pump([1])
    fresh = harness.supervisor.sessions["Hatchery"]
    assert fresh is not session
    assert session.stopped
    assert not fresh.stopped
    assert len(harness.connectors) == 2
    assert harness.connectors[0].disconnected
    assert not harness.connectors[1].disconnected


def test_stuck_login_restarts_session(harness):
    session = harness.start()
    assert session.liveness.loop.running
    # stream opened but authentication never completes
    session.onConnected(FakeXmlStream())
    harness.clock.pump([1] * 66)
    assert session.stopped
    assert harness.supervisor.sessions["Hatchery"] is not session
    assert len(harness.connectors) == 2


def test_unanswered_connect_restarts_session(harness):
    session = harness.start()
    harness.clock.pump([1] * 66)
    assert session.stopped
    assert not harness.supervisor.sessions["Hatchery"].stopped
