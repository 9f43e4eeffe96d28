"""Camelot Unchained REST API client.

requests is blocking, so every call is pushed into the reactor's thread
pool and comes back as a Deferred that fires with the decoded JSON or
fails with APIError.
"""

from twisted.internet import defer, threads
from twisted.python import log
import requests

from cubot.errors import APIError

API_DOMAIN = "camelotunchained.com"
SERVERS_HOST = "api.citystateentertainment.com"
SERVERS_PORT = 8001
GAME_PORT = 8000
API_TIMEOUT = 2  # seconds; a slow API must never stall a session tick
API_RETRIES = 2  # extra attempts after the first failure
API_HEADERS = {"User-Agent": "cubot/1.0", "Accept": "application/json"}


def withRetries(fn, retries=API_RETRIES, what=""):
    """Call a Deferred-returning fn, retrying up to `retries` more times.

    The last failure propagates.
    """
    def retry(failure, left):
        if left <= 0:
            return failure
        log.msg(f"API: {what or 'call'} failed ({failure.getErrorMessage()}), retrying")
        d = defer.maybeDeferred(fn)
        d.addErrback(retry, left - 1)
        return d

    d = defer.maybeDeferred(fn)
    d.addErrback(retry, retries)
    return d


class GameAPIClient:
    def __init__(self, server, api_host=None, timeout=API_TIMEOUT):
        self.server = server
        self.api_host = api_host
        self.timeout = timeout

    def gameHost(self):
        if self.api_host:
            return self.api_host
        name = "hatchery" if self.server == "Hatchery" else self.server.lower()
        return f"{name}.{API_DOMAIN}"

    def uri(self, verb):
        if verb == "servers":
            return f"http://{SERVERS_HOST}:{SERVERS_PORT}/api/{verb}"
        return f"http://{self.gameHost()}:{GAME_PORT}/api/{verb}"

    def _get(self, verb, query, timeout):
        try:
            r = requests.get(self.uri(verb), params=query, headers=API_HEADERS,
                             timeout=timeout)
        except requests.exceptions.Timeout:
            raise APIError(verb, "timeout")
        except requests.exceptions.RequestException as e:
            raise APIError(verb, str(e))
        if r.status_code != 200:
            raise APIError(verb, f"status {r.status_code}")
        try:
            return r.json()
        except ValueError:
            raise APIError(verb, "response is not JSON")

    def call(self, verb, query=None, timeout=None):
        if timeout is None:
            timeout = self.timeout
        return threads.deferToThread(self._get, verb, query, timeout)

    def getServers(self):
        return self.call("servers")

    def getPlayers(self):
        return self.call("game/players")

    def getControlGame(self, query=None):
        return self.call("game/controlgame", query)

    def getKills(self, query):
        return self.call("kills", query)

    def getEvents(self):
        return self.call("scheduledevents")
