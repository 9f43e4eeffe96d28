import os
import time

from twisted.python import log
from twisted.python.logfile import DailyLogFile


class ChatLog:
    """Daily-rotated transcript for the rooms that have logging turned on."""

    def __init__(self, logdir, server, rooms):
        self.server = server
        self.files = {}
        directory = os.path.join(logdir, server)
        for room in rooms:
            if not room.loggingEnabled:
                continue
            try:
                os.makedirs(directory, exist_ok=True)
                self.files[room.name] = DailyLogFile(f"{room.name}.log", directory)
            except (IOError, OSError) as e:
                log.msg(f"{server}: could not open chat log for {room.name}: {e}")

    def write(self, room, line):
        f = self.files.get(room)
        if f is None:
            return
        try:
            f.write(f"{time.strftime('%H:%M')} {line}\n")
            f.flush()
        except (IOError, OSError) as e:
            log.msg(f"{self.server}: could not write chat log for {room}: {e}")

    def close(self):
        for f in self.files.values():
            f.close()
        self.files = {}
