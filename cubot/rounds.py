"""Round tracking from periodic control-game polls.

The API only tells us what the game looks like right now, so rounds are
inferred from transitions between polls: Waiting/Disabled after an active
round is a round end, an active state after a round end is a round start.
Each transition is credited once, when it is first seen.
"""

from datetime import datetime, timezone

from twisted.internet import defer, task
from twisted.python import log

from cubot.errors import ProtocolError
from cubot.rest import API_RETRIES, withRetries
from cubot.store import FACTIONS

# controlgame gameState values
DISABLED = 0
WAITING = 1
BASIC_ACTIVE = 2
ADVANCED_ACTIVE = 3
ACTIVE_STATES = (BASIC_ACTIVE, ADVANCED_ACTIVE)

GAME_STATE_NAMES = {DISABLED       : "Disabled",
                    WAITING        : "Waiting For Next Round",
                    BASIC_ACTIVE   : "Basic Game Active",
                    ADVANCED_ACTIVE: "Advanced Game Active"}

SCORE_FIELDS = {"arthurian"     : "arthurianScore",
                "tuathaDeDanann": "tuathaDeDanannScore",
                "viking"        : "vikingScore"}

PLAYER_FIELDS = {"arthurian"     : "arthurians",
                 "tuathaDeDanann": "tuathaDeDanann",
                 "viking"        : "vikings"}

FACTION_NAMES = {"arthurian"     : "Arthurians",
                 "tuathaDeDanann": "TuathaDeDanann",
                 "viking"        : "Vikings"}


def roundWinners(scores):
    """Every faction sharing the top score; ties credit all leaders."""
    best = max(scores.get(f, 0) for f in FACTIONS)
    return [f for f in FACTIONS if scores.get(f, 0) == best]


def leaderboard(players, stat="kills", n=10):
    return sorted(players, key=lambda p: (-p.get(stat, 0), p["playerId"]))[:n]


def isotime(seconds):
    return datetime.fromtimestamp(seconds, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parseControlGame(data):
    try:
        gameState = int(data["gameState"])
        timeLeft = float(data.get("timeLeft", 0))
        scores = {f: int(data[SCORE_FIELDS[f]]) for f in FACTIONS}
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"controlgame: {e!r}") from e
    return gameState, timeLeft, scores


def parseKill(kill):
    try:
        killer, victim = kill["killer"], kill["victim"]
        if not (killer["name"] and victim["name"]):
            raise ValueError("unnamed player")
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"kill: {e!r}") from e
    return killer, victim


class RoundState:
    def __init__(self):
        self.initialized = False
        self.ended = True
        self.startedAt = 0
        self.gameState = None
        self.timeLeft = 0
        self.scores = dict.fromkeys(FACTIONS, 0)
        self.startScores = dict.fromkeys(FACTIONS, 0)
        self.roundScores = dict.fromkeys(FACTIONS, 0)  # last seen while active
        self.consecutiveDownPolls = 0
        self.down = False
        self.playersOnline = None


class RoundTracker:
    def __init__(self, serverConfig, api, store, clock, retries=API_RETRIES):
        self.config = serverConfig
        self.server = serverConfig.name
        self.api = api
        self.store = store
        self.clock = clock
        self.retries = retries
        self.state = RoundState()
        self.gameStats = store.load(self.server, "gameStats")
        self.playerStats = {}
        for p in store.load(self.server, "playerStats"):
            if not isinstance(p, dict) or not p.get("playerId"):
                log.msg(f"{self.server}: skipping player record without a playerId: {p!r}")
                continue
            self.playerStats[p["playerId"]] = p
        self.participants = {}
        self.lastKillCheck = None
        # (start, end, ids already credited) for round-end kill windows
        # whose fetch failed; retried on every successful poll
        self.lateWindows = []
        self.stopped = False
        self.loop = task.LoopingCall(self.poll)
        self.loop.clock = clock

    def start(self):
        if not self.loop.running and not self.stopped:
            self.loop.start(self.config.poll_interval, now=True)

    def stop(self):
        self.stopped = True
        if self.loop.running:
            self.loop.stop()

    # Polling
    def poll(self):
        """One tick. The returned Deferred never fails, so the loop survives."""
        if self.stopped:
            return defer.succeed(None)
        d = withRetries(self.api.getControlGame, self.retries,
                        f"{self.server} controlgame")
        d.addCallbacks(self._gotControlGame, self._pollFailed)
        d.addCallback(lambda _: self._pollPlayers())
        d.addErrback(log.err, f"{self.server}: round poll failed")
        return d

    def _pollFailed(self, failure):
        if self.stopped:
            return
        st = self.state
        st.consecutiveDownPolls += 1
        if not st.down:
            log.msg(f"{self.server}: API down ({failure.getErrorMessage()})")
        st.down = True
        if (st.initialized and not st.ended
                and st.consecutiveDownPolls >= self.config.max_down_polls):
            # we can't know who won while we were blind, so nobody does
            st.ended = True
            st.initialized = False
            self.participants = {}
            log.msg(f"{self.server}: round abandoned after "
                    f"{st.consecutiveDownPolls} down polls, not credited")

    def _gotControlGame(self, data):
        if self.stopped:
            return
        try:
            gameState, timeLeft, scores = parseControlGame(data)
        except ProtocolError as e:
            log.msg(f"{self.server}: ignoring controlgame response: {e}")
            return

        st = self.state
        if st.down:
            log.msg(f"{self.server}: API back after {st.consecutiveDownPolls} down polls")
        st.down = False
        st.consecutiveDownPolls = 0

        now = self.clock.seconds()
        active = gameState in ACTIVE_STATES
        st.gameState = gameState
        st.timeLeft = timeLeft
        st.scores = scores
        if active:
            st.roundScores = dict(scores)

        if not st.initialized:
            # whatever is going on started before we were watching
            st.initialized = True
            st.ended = not active
            if active:
                st.startScores = dict(scores)
                st.startedAt = self._startedAt(now, timeLeft)
                self.participants = {}
                self.lastKillCheck = now
            log.msg(f"{self.server}: tracking started, {GAME_STATE_NAMES.get(gameState, gameState)}")
            return

        if self.lateWindows and self.config.track_kills:
            d = self._fetchLateKills()
            d.addCallback(lambda _: self._transition(now, active, scores, timeLeft))
            return d
        return self._transition(now, active, scores, timeLeft)

    def _transition(self, now, active, scores, timeLeft):
        if self.stopped:
            return
        st = self.state
        if active and st.ended:
            return self._roundStarted(now, scores, timeLeft)
        if not active and not st.ended:
            return self._roundEnded(now, scores)
        if active and self.config.track_kills:
            start, end = self._killWindow(now)
            d = self._fetchKills(start, end, self.participants)
            d.addCallback(self._advanceKillCheck, end)
            return d

    def _startedAt(self, now, timeLeft):
        return now - max(0, self.config.round_duration - timeLeft)

    def _roundStarted(self, now, scores, timeLeft):
        st = self.state
        st.ended = False
        st.startScores = dict(scores)
        st.startedAt = self._startedAt(now, timeLeft)
        self.participants = {}
        self.lastKillCheck = now
        self.gameStats["roundNumber"] = self.gameStats.get("roundNumber", 0) + 1
        self.gameStats["lastStartTime"] = int(st.startedAt)
        log.msg(f"{self.server}: round {self.gameStats['roundNumber']} started")
        self.store.save(self.server, "gameStats", self.gameStats)

    def _roundEnded(self, now, scores):
        st = self.state
        st.ended = True
        # a scoreboard that already reset to zero says nothing about the winner
        final = scores if any(scores.values()) else st.roundScores
        winners = roundWinners(final)
        wins = self.gameStats.setdefault("winsByFaction", dict.fromkeys(FACTIONS, 0))
        for f in winners:
            wins[f] = wins.get(f, 0) + 1
        self.gameStats["roundsPlayed"] = self.gameStats.get("roundsPlayed", 0) + 1
        gained = ", ".join(f"{FACTION_NAMES[f]} {final.get(f, 0) - st.startScores.get(f, 0):+d}"
                           for f in FACTIONS)
        log.msg(f"{self.server}: round over, winner(s) "
                f"{', '.join(FACTION_NAMES[f] for f in winners)} {final}, "
                f"this round: {gained}")

        participants, self.participants = self.participants, {}
        if self.config.track_kills:
            start, end = self._killWindow(now)
            d = self._fetchKills(start, end, participants)
            d.addCallback(self._roundEndKills, start, end, participants)
            return d
        self._commitRoundEnd(participants)

    def _roundEndKills(self, fetched, start, end, participants):
        if not fetched and not self.stopped:
            self.lateWindows.append((start, end, set(participants)))
            log.msg(f"{self.server}: kills for {isotime(start)}..{isotime(end)} "
                    f"will be added after the next successful poll")
        self._commitRoundEnd(participants)

    def _commitRoundEnd(self, participants):
        if self.stopped:
            log.msg(f"{self.server}: session stopped before round end was saved")
            return
        self._mergePlayers(participants)
        self.store.saveMany(self.server,
                            {"gameStats": self.gameStats,
                             "playerStats": list(self.playerStats.values())})

    def _mergePlayers(self, participants, credited=()):
        for pid, p in participants.items():
            stats = self.playerStats.get(pid)
            if stats is None:
                stats = self.playerStats[pid] = {"playerId": pid}
            for k in ("faction", "race", "archetype"):
                if p.get(k) is not None:
                    stats[k] = p[k]
            stats["kills"] = stats.get("kills", 0) + p["kills"]
            stats["deaths"] = stats.get("deaths", 0) + p["deaths"]
            # victims count too: being killed is taking part
            if pid not in credited:
                stats["roundsPlayed"] = stats.get("roundsPlayed", 0) + 1

    # Kill feed
    def _killWindow(self, now):
        start = self.lastKillCheck if self.lastKillCheck is not None else self.state.startedAt
        return start, now

    def _advanceKillCheck(self, fetched, end):
        if fetched:
            self.lastKillCheck = end

    def _fetchKills(self, start, end, participants):
        """Add one window of the kill feed to participants.

        Fires True if the window was read, False if it has to be asked for
        again.
        """
        query = {"start": isotime(start), "end": isotime(end)}
        d = withRetries(lambda: self.api.getKills(query), self.retries,
                        f"{self.server} kills")
        d.addCallback(self._gotKills, participants)
        d.addCallbacks(lambda _: True, self._killsFailed)
        return d

    def _killsFailed(self, failure):
        log.msg(f"{self.server}: kills unavailable ({failure.getErrorMessage()})")
        return False

    def _fetchLateKills(self):
        d = defer.succeed(None)
        for late in list(self.lateWindows):
            d.addCallback(lambda _, late=late: self._fetchLateWindow(late))
        return d

    def _fetchLateWindow(self, late):
        start, end, _ = late
        participants = {}
        d = self._fetchKills(start, end, participants)
        d.addCallback(self._gotLateKills, late, participants)
        return d

    def _gotLateKills(self, fetched, late, participants):
        if not fetched or self.stopped:
            return
        self.lateWindows.remove(late)
        self._mergePlayers(participants, credited=late[2])
        log.msg(f"{self.server}: added {len(participants)} late player result(s) "
                f"for {isotime(late[0])}..{isotime(late[1])}")
        self.store.save(self.server, "playerStats", list(self.playerStats.values()))

    def _gotKills(self, kills, participants):
        if self.stopped:
            return
        if not isinstance(kills, list):
            raise ProtocolError(f"kills response is a {type(kills).__name__}")
        for kill in kills:
            try:
                killerInfo, victimInfo = parseKill(kill)
            except ProtocolError as e:
                log.msg(f"{self.server}: skipping kill record: {e}")
                continue
            killer = self._participant(participants, killerInfo)
            victim = self._participant(participants, victimInfo)
            killer["kills"] += 1
            victim["deaths"] += 1

    def _participant(self, participants, who):
        pid = who["name"]
        p = participants.get(pid)
        if p is None:
            p = participants[pid] = {"kills": 0, "deaths": 0}
        p["faction"] = who.get("faction", p.get("faction"))
        p["race"] = who.get("race", p.get("race"))
        p["archetype"] = who.get("archetype", p.get("archetype"))
        return p

    # Players online
    def _pollPlayers(self):
        if self.stopped:
            return
        d = withRetries(self.api.getPlayers, self.retries, f"{self.server} players")
        d.addCallbacks(self._gotPlayers,
                       lambda f: log.msg(f"{self.server}: player count unavailable "
                                         f"({f.getErrorMessage()})"))
        return d

    def _gotPlayers(self, data):
        if self.stopped:
            return
        try:
            self.state.playersOnline = {f: int(data.get(PLAYER_FIELDS[f], 0))
                                        for f in FACTIONS}
        except (AttributeError, TypeError, ValueError) as e:
            log.msg(f"{self.server}: ignoring players response: {e!r}")
