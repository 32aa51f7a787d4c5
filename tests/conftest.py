"""Shared fakes for the agent tests."""

import subprocess
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest
import websocket

from pm2_client.config import ConfigManager


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Polls ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeSock:
    def __init__(self):
        self.connected = True


class FakeWebSocketApp:
    """Stands in for ``websocket.WebSocketApp`` and fires the same callbacks."""

    def __init__(self, url, on_open=None, on_message=None, on_error=None, on_close=None,
                 fail_handshake: bool = False):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.fail_handshake = fail_handshake
        self.sock: Optional[FakeSock] = None
        self.sent: List[str] = []
        self.close_calls = 0
        self.created_at = time.monotonic()
        self.run_kwargs: Dict[str, Any] = {}
        self._closed = threading.Event()

    def run_forever(self, **kwargs):
        self.run_kwargs = kwargs
        if self.fail_handshake:
            self.on_error(self, ConnectionRefusedError("connection refused"))
            self.on_close(self, None, None)
            return False
        self.sock = FakeSock()
        self.on_open(self)
        self._closed.wait()
        self.sock.connected = False
        self.on_close(self, 1000, "bye")
        return False

    def send(self, data):
        if self.sock is None or not self.sock.connected:
            raise websocket.WebSocketConnectionClosedException("socket is already closed.")
        self.sent.append(data)

    def close(self, **kwargs):
        self.close_calls += 1
        self._closed.set()

    # test helpers

    def receive(self, message):
        self.on_message(self, message)

    def drop(self):
        """Simulates the server closing the connection."""
        self._closed.set()


class FakeAppFactory:
    """Creates FakeWebSocketApp instances; the first ``failures`` fail their handshake."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.apps: List[FakeWebSocketApp] = []
        self._lock = threading.Lock()

    def __call__(self, url, **callbacks):
        with self._lock:
            fail = len(self.apps) < self.failures
            app = FakeWebSocketApp(url, fail_handshake=fail, **callbacks)
            self.apps.append(app)
        return app

    @property
    def latest(self) -> FakeWebSocketApp:
        return self.apps[-1]


Response = Union[Tuple[int, str, str], BaseException]


class FakePm2Runner:
    """Replaces ``subprocess.run`` for the pm2 CLI; responses are keyed by pm2 verb."""

    def __init__(self, responses: Optional[Dict[str, Response]] = None):
        self.responses: Dict[str, Response] = dict(responses or {})
        self.calls: List[List[str]] = []

    def __call__(self, command, **kwargs):
        self.calls.append(list(command))
        response = self.responses.get(command[1], (0, "", ""))
        if isinstance(response, BaseException):
            raise response
        returncode, stdout, stderr = response
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    def verbs(self) -> List[str]:
        return [call[1] for call in self.calls]


@pytest.fixture
def app_factory():
    return FakeAppFactory()


@pytest.fixture
def pm2_runner():
    return FakePm2Runner()


@pytest.fixture
def config_factory():
    """Builds a ConfigManager that ignores the real environment."""

    def _make(path=None, overrides=None, environ=None):
        return ConfigManager(path, overrides=overrides, environ=environ or {})

    return _make
