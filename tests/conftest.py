"""
Shared test fixtures.

Fixtures:
  - clock:        FakeClock, advanced by hand
  - store:        MemorySessionStore
  - http:         FakeHTTP, scripted stand-in for requests.Session
  - config:       EngineConfig with small limits, no timer
  - make_engine:  factory for Cmi5Engine wired to the fakes (shut down after the test)
  - launch_url:   factory for LMS launch URLs
"""

import json
import threading
import time
from collections import deque, namedtuple
from urllib.parse import urlencode

import pytest

from cmi5_core.config import EngineConfig
from cmi5_core.engine import Cmi5Engine
from cmi5_core.session_store import MemorySessionStore

ENDPOINT = "https://lrs.example.com/xapi/"
FETCH_BASE = "https://lms.example.com/fetch"
REGISTRATION = "6f1c2a9e-1d2b-4c3d-9e8f-0a1b2c3d4e5f"
ACTIVITY_ID = "https://example.com/courses/platform-launch"
ACTOR = {"objectType": "Agent", "account": {"homePage": "https://lms.example.com", "name": "learner-1"}}
TOKEN = "dG9rZW46c2VjcmV0"

Call = namedtuple("Call", "method url kwargs")


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text

    def json(self):
        return json.loads(self.text)


class FakeHTTP:
    """
    Records every call and answers from scripted rules.

    A rule matches on method + URL fragment; the newest matching rule wins.
    Its responses are consumed in order, the last one repeating. A response
    may be a FakeResponse, an exception instance (raised), or a callable
    (method, url, kwargs) -> FakeResponse.
    """

    def __init__(self, delay=0.0):
        self.calls = []
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._rules = []
        self._lock = threading.Lock()
        self.on("POST", "/fetch", FakeResponse(200, {"auth-token": TOKEN}))
        self.on("GET", "/agents/profile", FakeResponse(404, text="Not Found"))
        self.on("GET", "/activities/state", FakeResponse(404, text="Not Found"))
        self.on("PUT", "/statements", FakeResponse(204))

    def on(self, method, fragment, *responses):
        self._rules.append((method, fragment, deque(responses)))

    def _respond(self, method, url, kwargs):
        with self._lock:
            self.calls.append(Call(method, url, kwargs))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            response = None
            for rule_method, fragment, responses in reversed(self._rules):
                if rule_method == method and fragment in url:
                    response = responses[0] if len(responses) == 1 else responses.popleft()
                    break
        try:
            if self.delay:
                time.sleep(self.delay)
            if response is None:
                return FakeResponse(404, text="no rule")
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(method, url, kwargs)
            return response
        finally:
            with self._lock:
                self.active -= 1

    def post(self, url, **kwargs):
        return self._respond("POST", url, kwargs)

    def put(self, url, **kwargs):
        return self._respond("PUT", url, kwargs)

    def get(self, url, **kwargs):
        return self._respond("GET", url, kwargs)

    def close(self):
        pass

    # ── Inspection helpers ──────────────────────────────────

    def methods(self, method):
        return [c for c in self.calls if c.method == method]

    def statements(self):
        """Bodies of every statement PUT, in call order."""
        return [c.kwargs["json"] for c in self.calls if c.method == "PUT"]

    def verbs(self):
        return [s["verb"]["display"]["en-US"] for s in self.statements()]


def make_launch_url(session="session-1", registration=REGISTRATION, fetch=True, **overrides):
    params = {
        "endpoint": ENDPOINT,
        "fetch": f"{FETCH_BASE}?session={session}" if session else FETCH_BASE,
        "actor": json.dumps(ACTOR),
        "registration": registration,
        "activityId": ACTIVITY_ID,
    }
    if not fetch:
        del params["fetch"]
    params.update(overrides)
    return "https://content.example.com/index.html?" + urlencode(params)


def fail_for(ids, response):
    """PUT responder that answers `response` for the given statement ids, 204 otherwise."""
    ids = set(ids)

    def responder(method, url, kwargs):
        if kwargs["json"]["id"] in ids:
            return response
        return FakeResponse(204)

    return responder


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def http():
    return FakeHTTP()


@pytest.fixture
def config():
    return EngineConfig(max_queue_disconnected=100, batch_interval_sec=0.01)


@pytest.fixture
def launch_url():
    return make_launch_url


@pytest.fixture
def make_engine(store, http, clock, config):
    engines = []

    def factory(http_session=None, session_store=None, engine_config=None, **kwargs):
        session = http_session or http
        engine = Cmi5Engine(
            config=engine_config or config,
            store=session_store if session_store is not None else store,
            session=session,
            plain_session=session,
            clock=clock,
            start_timer=kwargs.pop("start_timer", False),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.shutdown()
