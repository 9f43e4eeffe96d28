import toml
from more_itertools import flatten
from pathlib import Path, PurePath
from twisted.python import log


class GenericDescriptor():
    def __set_name__(self, owner, name):
        self.public_name = name
        self.private_name = '_' + name

    def __get__(self, obj, objtype=None):
        value = getattr(obj, self.private_name)
        return value

    def __set__(self, obj, value):
        setattr(obj, self.private_name, value)


class RoomConfig:
    name    = GenericDescriptor()
    monitor = GenericDescriptor()
    motd    = GenericDescriptor()
    log     = GenericDescriptor()

    def __init__(self, name, monitor=False, motd=False, log=False):
        self.name    = name
        self.monitor = bool(monitor)
        self.motd    = bool(motd)
        self.log     = bool(log)

    @classmethod
    def from_dict(cls, d):
        if isinstance(d, str):
            return cls(d)
        return cls(d["name"], d.get("monitor", False), d.get("motd", False),
                   d.get("log", False))


class ServerConfig:
    name               = GenericDescriptor()
    address            = GenericDescriptor()
    service            = GenericDescriptor()
    port               = GenericDescriptor()
    username           = GenericDescriptor()
    password           = GenericDescriptor()
    nickname           = GenericDescriptor()
    api_host           = GenericDescriptor()
    round_duration     = GenericDescriptor()
    poll_interval      = GenericDescriptor()
    keepalive_interval = GenericDescriptor()
    liveness_timeout   = GenericDescriptor()
    max_down_polls     = GenericDescriptor()
    track_kills        = GenericDescriptor()
    rooms              = GenericDescriptor()

    def __init__(self, name, address):
        self.name               = name
        self.address            = address
        self.service            = "conference"
        self.port               = 5222
        self.username           = "cubot"
        self.password           = ""
        self.nickname           = "CUBot"
        self.api_host           = None
        self.round_duration     = 3600
        self.poll_interval      = 10
        self.keepalive_interval = 30
        self.liveness_timeout   = 65
        self.max_down_polls     = 1
        self.track_kills        = True
        self.rooms              = {}

    @classmethod
    def from_dict(cls, d):
        server = cls(d["name"], d["address"])
        for key, val in d.items():
            if key == "rooms":
                server.rooms = {}
                for r in val:
                    room = RoomConfig.from_dict(r)
                    server.rooms[room.name] = room
            elif key not in ("name", "address"):
                setattr(server, "_" + key, val)
        return server

    @property
    def jid(self):
        return f"{self.username}@{self.address}"

    @property
    def liveness_threshold(self):
        # never tighter than one and a half keepalives
        return max(self.liveness_timeout, 1.5 * self.keepalive_interval)

    def roomJID(self, room):
        return f"{room}@{self.service}.{self.address}"


class CUBotConfig:
    __default_file__ = "cubot.toml"
    __search_path__ = [
        Path.cwd(),
        Path(__file__).resolve().parent,
        PurePath(Path.home(), '.config'),
        Path("/opt/cubot/config")
    ]
    nickname      = GenericDescriptor()
    trigger       = GenericDescriptor()
    motd_admins   = GenericDescriptor()
    test_keywords = GenericDescriptor()
    datadir       = GenericDescriptor()
    logfile       = GenericDescriptor()
    logdir        = GenericDescriptor()
    test          = GenericDescriptor()

    def __init__(self):
        self.nickname      = "CUBot"
        self.trigger       = "!"
        self.motd_admins   = []
        self.test_keywords = []
        self.datadir       = "data"
        self.logfile       = "cubot.log"
        self.logdir        = "chatlogs"
        self.test          = False
        self.servers       = {}

    def update(self, dict_obj):
        dict_obj = dict(dict_obj)
        servers = dict_obj.pop("servers", [])
        for key, val in flatten(
            map(lambda x: iter(dict_obj[x].items()),
                iter(dict_obj.keys()))
            ):
                self.__dict__["_" + key] = val
        for s in servers:
            server = ServerConfig.from_dict(s)
            if "nickname" not in s:
                server.nickname = self.nickname
            self.servers[server.name] = server

    def from_file(self, file_path=None):
        try:
            self.update(toml.load(file_path))
        except Exception:
            log.err(None, f"parsing {file_path}: failed")
            raise

    def fetch_and_update(self):
        path_join = lambda p: Path(p, self.__default_file__).resolve()
        fexists = lambda f: Path(f).resolve().exists()
        parses = lambda p: toml.load(p)
        try:
            self.update(next(map(parses,
                filter(fexists, map(path_join, iter(self.__search_path__))))))
        except Exception:
            log.err(None, f"could not find config file {self.__default_file__} in search path: {self.__search_path__}")
            raise

    def fetch(self, file_path=None):
        if file_path:
            self.from_file(file_path)
        else:
            self.fetch_and_update()

    def server(self, name):
        return self.servers.get(name)
