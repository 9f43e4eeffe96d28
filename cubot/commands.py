from collections import namedtuple

from twisted.internet import defer
from twisted.python import log

from cubot.rounds import FACTION_NAMES, GAME_STATE_NAMES, leaderboard
from cubot.store import FACTIONS

# isAdmin: staff flag or configured MOTD admin
# room: bare room JID, or "pm" for a private message
# sender: nick in a room, local part of the JID in a PM
CommandContext = namedtuple("CommandContext", ["isAdmin", "room", "sender"])

LEADERBOARD_SIZE = 5
MAX_EVENTS = 3


class ChatCommands:
    def __init__(self, supervisor):
        self.supervisor = supervisor
        self.trigger = supervisor.config.trigger
        # Commands must be lowercase here.
        self.commands = {"motd"     : self.doMotd,
                         "motdoff"  : self.doMotdOff,
                         "motdon"   : self.doMotdOn,
                         "clientoff": self.doClientOff,
                         "clienton" : self.doClientOn,
                         "score"    : self.doScore,
                         "wins"     : self.doWins,
                         "players"  : self.doPlayers,
                         "leaders"  : self.doLeaders,
                         "servers"  : self.doServers,
                         "events"   : self.doEvents,
                         "help"     : self.doHelp}

    def dispatch(self, session, ctx, message):
        msgwords = message[len(self.trigger):].strip().split()
        if not msgwords:
            return None
        command = self.commands.get(msgwords[0].lower())
        if command is None:
            return None
        log.msg(f"{session.server}: {ctx.sender} ran {self.trigger}{msgwords[0].lower()}")
        d = defer.maybeDeferred(command, session, ctx, msgwords[1:])
        d.addErrback(log.err, f"{session.server}: {msgwords[0]} from {ctx.sender} failed")
        return d

    # helpers
    def _target(self, session, params):
        """Split an optional leading server name off params."""
        if params and params[0] in self.supervisor.config.servers:
            return params[0], params[1:]
        return session.server, params

    def _live(self, server):
        return self.supervisor.sessions.get(server)

    def _optOut(self, server):
        live = self._live(server)
        if live is not None:
            return live.optOut
        return set(self.supervisor.store.load(server, "motdIgnore"))

    def _gameStats(self, server):
        live = self._live(server)
        if live is not None:
            return live.roundTracker.gameStats
        return self.supervisor.store.load(server, "gameStats")

    def _playerStats(self, server):
        live = self._live(server)
        if live is not None:
            return list(live.roundTracker.playerStats.values())
        return self.supervisor.store.load(server, "playerStats")

    # MOTD
    def doMotd(self, session, ctx, params):
        target, params = self._target(session, params)
        if params:
            if not ctx.isAdmin:
                session.reply(ctx, "You do not have permission to set an MOTD.")
                return
            text = "MOTD: " + " ".join(params)
            if not self.supervisor.store.save(target, "motd", text):
                session.reply(ctx, "Unable to save the MOTD.")
                return
            live = self._live(target)
            if live is not None:
                live.motd = text
            session.reply(ctx, f"MOTD for {target} set to: {' '.join(params)}")
            log.msg(f"{target}: new MOTD set by user '{ctx.sender}'")
            return
        live = self._live(target)
        text = live.motd if live is not None else self.supervisor.store.load(target, "motd")
        if ctx.room == "pm":
            session.sendPM(ctx.sender, text)
        else:
            session.sendGroup(ctx.room, text)

    def _motdServer(self, session, ctx, params):
        if params and params[0] not in self.supervisor.config.servers:
            session.reply(ctx, f"No server exists named '{params[0]}'.")
            return None
        return params[0] if params else session.server

    def doMotdOff(self, session, ctx, params):
        target = self._motdServer(session, ctx, params)
        if target is None:
            return
        optOut = self._optOut(target)
        if ctx.sender in optOut:
            session.reply(ctx, f"User '{ctx.sender}' already unsubscribed from {target} MOTD notices.")
            return
        optOut.add(ctx.sender)
        self.supervisor.store.save(target, "motdIgnore", sorted(optOut))
        session.reply(ctx, f"User '{ctx.sender}' unsubscribed from {target} MOTD notices.")
        log.msg(f"{target}: user '{ctx.sender}' added to MOTD opt-out list")

    def doMotdOn(self, session, ctx, params):
        target = self._motdServer(session, ctx, params)
        if target is None:
            return
        optOut = self._optOut(target)
        if ctx.sender not in optOut:
            session.reply(ctx, f"User '{ctx.sender}' already subscribed to {target} MOTD notices.")
            return
        optOut.discard(ctx.sender)
        self.supervisor.store.save(target, "motdIgnore", sorted(optOut))
        session.reply(ctx, f"User '{ctx.sender}' subscribed to {target} MOTD notices.")
        log.msg(f"{target}: user '{ctx.sender}' removed from MOTD opt-out list")

    # session control
    def doClientOff(self, session, ctx, params):
        if not ctx.isAdmin:
            session.reply(ctx, "You do not have permission to stop a client.")
            return
        target = params[0] if params else session.server
        if self._live(target) is None:
            session.reply(ctx, f"No client is running for server '{target}'.")
            return
        self.supervisor.stop(target)
        log.msg(f"{target}: client stopped by user '{ctx.sender}'")
        if target != session.server:
            session.reply(ctx, f"Client for {target} has been stopped.")

    def doClientOn(self, session, ctx, params):
        if not ctx.isAdmin:
            session.reply(ctx, "You do not have permission to start a client.")
            return
        if not params:
            session.reply(ctx, "You must specify a server to start.")
            return
        target = params[0]
        if self._live(target) is not None:
            session.reply(ctx, f"A client for {target} is already running.")
            return
        serverConfig = self.supervisor.config.server(target)
        if serverConfig is None:
            session.reply(ctx, f"A server named '{target}' does not exist.")
            return
        self.supervisor.start(serverConfig)
        session.reply(ctx, f"A client for {target} has been started.")
        log.msg(f"{target}: client started by user '{ctx.sender}'")

    # game status
    def doScore(self, session, ctx, params):
        target, _ = self._target(session, params)
        live = self._live(target)
        if live is None:
            session.reply(ctx, f"No client is running for server '{target}'.")
            return
        st = live.roundTracker.state
        if st.down:
            session.reply(ctx, f"{target}: error accessing API. Server may be down.")
            return
        if st.gameState is None:
            session.reply(ctx, f"{target}: no score yet.")
            return
        minutes, seconds = divmod(int(st.timeLeft), 60)
        scores = ", ".join(f"{FACTION_NAMES[f]} {st.scores[f]}" for f in FACTIONS)
        session.reply(ctx, f"{target}: {GAME_STATE_NAMES.get(st.gameState, st.gameState)}, "
                           f"{minutes} min. {seconds} sec. left. {scores}")

    def doWins(self, session, ctx, params):
        target, _ = self._target(session, params)
        gs = self._gameStats(target)
        wins = gs.get("winsByFaction", {})
        line = ", ".join(f"{FACTION_NAMES[f]} {wins.get(f, 0)}" for f in FACTIONS)
        session.reply(ctx, f"{target}: {gs.get('roundsPlayed', 0)} rounds played. Wins: {line}")

    def doPlayers(self, session, ctx, params):
        target, _ = self._target(session, params)
        live = self._live(target)
        online = live.roundTracker.state.playersOnline if live is not None else None
        if online is None:
            session.reply(ctx, f"{target}: player count not available.")
            return
        line = ", ".join(f"{FACTION_NAMES[f]} {online[f]}" for f in FACTIONS)
        session.reply(ctx, f"{target}: {sum(online.values())} players online. {line}")

    def doLeaders(self, session, ctx, params):
        target, params = self._target(session, params)
        stat = params[0].lower() if params else "kills"
        if stat not in ("kills", "deaths"):
            session.reply(ctx, f"{self.trigger}leaders [server] [kills|deaths]")
            return
        top = leaderboard(self._playerStats(target), stat, LEADERBOARD_SIZE)
        if not top:
            session.reply(ctx, f"{target}: no player stats yet.")
            return
        ranks = ", ".join(f"#{i} {p['playerId']} ({p.get(stat, 0)})"
                          for i, p in enumerate(top, 1))
        session.reply(ctx, f"{target} top {stat}: {ranks}")

    def doServers(self, session, ctx, params):
        def gotServers(servers):
            names = [s.get("name", "?") for s in servers if isinstance(s, dict)]
            session.reply(ctx, "Servers: " + (", ".join(names) or "none listed"))

        d = session.roundTracker.api.getServers()
        d.addCallbacks(gotServers,
                       lambda f: session.reply(ctx, "Error accessing API."))
        return d

    def doEvents(self, session, ctx, params):
        def gotEvents(events):
            if not isinstance(events, list) or not events:
                session.reply(ctx, "No scheduled events.")
                return
            parts = []
            for e in events[:MAX_EVENTS]:
                if isinstance(e, dict):
                    title = e.get("title") or e.get("name") or "event"
                    when = e.get("start") or e.get("startTime")
                    parts.append(f"{title} ({when})" if when else title)
            session.reply(ctx, "Upcoming events: " + "; ".join(parts))

        d = session.roundTracker.api.getEvents()
        d.addCallbacks(gotEvents,
                       lambda f: session.reply(ctx, "Error accessing API."))
        return d

    def doHelp(self, session, ctx, params):
        commands_list = " ".join(self.trigger + c for c in self.commands)
        session.reply(ctx, f"available commands are: {commands_list}")
