#!/usr/bin/env python3
# -*- coding: UTF-8 -*-
"""

*** THIS IS CUBOT ***

bot.py - a chat relay and round-tracking XMPP bot for
         Camelot Unchained game servers

Copyright (c) 2015, the cubot contributors
All rights reserved.

Redistribution and use in source and binary forms, with or without
modification, are permitted provided that the following conditions are
met:

1. Redistributions of source code must retain the above copyright
notice, this list of conditions and the following disclaimer.

2. Redistributions in binary form must reproduce the above copyright
notice, this list of conditions and the following disclaimer in the
documentation and/or other materials provided with the distribution.

THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS
IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED
TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A
PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT
HOLDER OR CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL,
SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED
TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR
PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF
LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING
NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.
"""

import sys

from twisted.internet import reactor
from twisted.python import log
from twisted.python.logfile import DailyLogFile

from cubot.config import CUBotConfig
from cubot.store import StatsStore
from cubot.supervisor import BotSupervisor


def main(argv=None):
    if argv is None:
        argv = sys.argv
    config = CUBotConfig()
    config.fetch(argv[1] if len(argv) > 1 else None)

    # initialize logging
    log.startLogging(DailyLogFile.fromFullPath(config.logfile), setStdout=False)
    if config.test:
        log.addObserver(log.FileLogObserver(sys.stdout).emit)

    if not config.servers:
        log.msg("no servers configured, nothing to do")
        return 1

    supervisor = BotSupervisor(config, StatsStore(config.datadir), reactor)
    reactor.callWhenRunning(supervisor.startAll)
    reactor.addSystemEventTrigger("before", "shutdown", supervisor.stopAll)

    # run bot
    reactor.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
