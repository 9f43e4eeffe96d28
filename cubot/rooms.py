from twisted.python import log


class RoomState:
    def __init__(self, name, monitored=False, motdEnabled=False, loggingEnabled=False):
        self.name = name
        self.joined = False
        self.monitored = monitored
        self.motdEnabled = motdEnabled
        self.loggingEnabled = loggingEnabled

    def __repr__(self):
        return f"<RoomState {self.name} joined={self.joined}>"


class RoomJoinTracker:
    """Join completion per room, keyed by the room's local name.

    A room counts as joined only once the server has sent the initial
    roster (MUC status 110 on our own presence). MOTD delivery, relay and
    commands are gated on that.
    """

    def __init__(self, server, rooms):
        self.server = server
        self.rooms = {}
        for r in rooms.values():
            self.rooms[r.name] = RoomState(r.name, r.monitor, r.motd, r.log)

    def __iter__(self):
        return iter(self.rooms.values())

    def get(self, name):
        return self.rooms.get(name)

    def markJoined(self, name):
        room = self.rooms.get(name)
        if room is None:
            log.msg(f"{self.server}: roster complete for unknown room {name}, ignoring")
            return
        if not room.joined:
            log.msg(f"{self.server}: joined {name}")
        room.joined = True

    def isJoined(self, name):
        room = self.rooms.get(name)
        return room is not None and room.joined

    def resetAll(self):
        for room in self.rooms.values():
            room.joined = False
