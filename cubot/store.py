import json
import time

from twisted.python import filepath, log

from cubot.errors import PersistenceError

FACTIONS = ("arthurian", "tuathaDeDanann", "viking")


def defaultGameStats():
    return {"firstRoundAt" : int(time.time()),
            "roundsPlayed" : 0,
            "roundNumber"  : 0,
            "lastStartTime": 0,
            "winsByFaction": dict.fromkeys(FACTIONS, 0)}


# documented defaults for a server's keys, written out on first read
DEFAULTS = {"motd"       : lambda: "MOTD: ",
            "motdIgnore" : lambda: [],
            "gameStats"  : defaultGameStats,
            "playerStats": lambda: []}


class StatsStore:
    """JSON documents keyed by (server, key), one file each.

    Files live at <datadir>/<server>/<key>.json. Reads of a missing key
    create it from DEFAULTS. Writes go through FilePath.setContent, which
    writes a sibling file and renames it into place.
    """

    def __init__(self, datadir):
        self.root = filepath.FilePath(datadir)

    def _path(self, server, key):
        return self.root.child(server).child(f"{key}.json")

    def load(self, server, key):
        path = self._path(server, key)
        if not path.exists():
            value = DEFAULTS[key]()
            if self.save(server, key, value):
                log.msg(f"{server}: {key} did not exist, created with defaults")
            return value
        default = DEFAULTS[key]()
        try:
            value = json.loads(path.getContent().decode("utf-8"))
        except (IOError, OSError, ValueError) as e:
            log.msg(f"{server}: could not read {path.path} ({e}), using defaults")
            return default
        if not isinstance(value, type(default)):
            log.msg(f"{server}: {path.path} holds a {type(value).__name__}, "
                    f"expected a {type(default).__name__}, using defaults")
            return default
        return value

    def _write(self, server, key, value):
        path = self._path(server, key)
        try:
            path.parent().makedirs(ignoreExistingDirectory=True)
            path.setContent(json.dumps(value, indent=1).encode("utf-8"))
        except (IOError, OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"{server}/{key}: {e}") from e

    def save(self, server, key, value):
        """Write one document. Returns False (and logs) on failure."""
        try:
            self._write(server, key, value)
        except PersistenceError:
            log.err(None, f"{server}: unable to write {key}")
            return False
        return True

    def saveMany(self, server, docs):
        """Write several documents from one callback.

        Every document is attempted even if an earlier one fails.
        """
        ok = True
        for key, value in docs.items():
            ok = self.save(server, key, value) and ok
        return ok
