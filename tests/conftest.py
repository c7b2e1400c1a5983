"""Shared fixtures: a scripted gateway, a manual clock and an isolated app."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from agent.agent import GatewayReply
from agent.chat import ChatService
from agent.core.memory import SessionRegistry
from app.main import create_app
from config.settings import Settings


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Gateway double recording calls.

    State is a tuple of (user, assistant) pairs. Replies default to
    ``"echo: <input>"``; ``replies`` maps inputs to fixed answers.
    """

    def __init__(self, replies=None):
        self.replies = dict(replies or {})
        self.calls = []
        self.fail_with = None
        self.block = None
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def new_state(self):
        return ()

    def send(self, state, user_input):
        with self._lock:
            self.calls.append((state, user_input))
        self.entered.set()
        if self.block is not None:
            self.block.wait(timeout=5)
        if self.fail_with is not None:
            raise self.fail_with
        text = self.replies.get(user_input, f"echo: {user_input}")
        return GatewayReply(text=text, state=tuple(state) + ((user_input, text),))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def gateway():
    return FakeGateway(replies={"hi": "hello"})


@pytest.fixture
def registry(clock, gateway):
    return SessionRegistry(provider_state_factory=gateway.new_state, clock=clock)


@pytest.fixture
def service(registry, gateway):
    svc = ChatService(registry, gateway, timeout=2.0)
    yield svc
    svc.close()


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        gemini_api_key="test-key",
        sweep_enabled=False,
        rate_limit_enabled=False,
        gateway_timeout_seconds=2.0,
    )


@pytest.fixture
def client(settings, registry, gateway):
    """FastAPI test client around an isolated registry and fake gateway."""
    app = create_app(settings, registry=registry, gateway=gateway)
    with TestClient(app) as test_client:
        yield test_client

