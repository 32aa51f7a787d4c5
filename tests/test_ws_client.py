"""Tests for the WSClient connection manager."""

import json
import threading
import time
from unittest import mock

import pytest

from pm2_client.communication import WSClient, decode_actions
from pm2_client.core import ActionQueue, ConnectionState, RemoteCommand
from pm2_client.errors import ProtocolError

from .conftest import FakeAppFactory, wait_for

RESTART_3 = json.dumps({"status": "action", "actions": [{"actionName": "restart", "pm2_id": 3}]})


def publish_timers():
    return [t for t in threading.enumerate() if t.name.startswith("PublishTimer") and t.is_alive()]


def total_sent(factory):
    return sum(len(app.sent) for app in factory.apps)


@pytest.fixture
def executor():
    return mock.Mock()


@pytest.fixture
def action_queue(executor):
    queue = ActionQueue(executor, delay=0.5)
    yield queue
    queue.stop()


@pytest.fixture
def make_client(action_queue):
    clients = []

    def _make(factory, publish_interval=0.02, reconnect_delay=0.05, status=None):
        client = WSClient(
            "ws://controller.test:7000",
            action_queue,
            status_provider=status or (lambda: {"hostname": "host", "type": "client-status"}),
            publish_interval=publish_interval,
            reconnect_delay=reconnect_delay,
            app_factory=factory,
        )
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


class TestDecodeActions:
    """Inbound message decoding."""

    def test_action_batch(self):
        raw = json.dumps({"status": "action", "actions": [
            {"actionName": "restart", "pm2_id": 3},
            {"actionName": "stop", "pm2_id": "4"},
        ]})
        assert decode_actions(raw) == [RemoteCommand("restart", 3), RemoteCommand("stop", "4")]

    def test_bytes_frame(self):
        assert decode_actions(RESTART_3.encode("utf-8")) == [RemoteCommand("restart", 3)]

    @pytest.mark.parametrize("raw", [
        json.dumps({"status": "ok"}),
        json.dumps({"type": "ping"}),
        json.dumps([1, 2, 3]),
        json.dumps("action"),
        json.dumps({"status": "action", "actions": []}),
    ])
    def test_other_shapes_are_ignored(self, raw):
        assert decode_actions(raw) == []

    @pytest.mark.parametrize("raw", [
        "{not json",
        b"\xff\xfe",
        json.dumps({"status": "action", "actions": {"actionName": "restart"}}),
        json.dumps({"status": "action"}),
    ])
    def test_malformed_raises_protocol_error(self, raw):
        with pytest.raises(ProtocolError):
            decode_actions(raw)

    def test_bad_entries_are_skipped(self):
        raw = json.dumps({"status": "action", "actions": [
            {"actionName": "restart"},
            "garbage",
            {"actionName": "start", "pm2_id": 1},
        ]})
        assert decode_actions(raw) == [RemoteCommand("start", 1)]


class TestConnect:
    """Startup and publish loop."""

    def test_start_connects_and_publishes(self, make_client, app_factory):
        client = make_client(app_factory)
        assert client.state is ConnectionState.DISCONNECTED

        client.start()

        assert wait_for(lambda: client.state is ConnectionState.OPEN)
        assert app_factory.latest.url == "ws://controller.test:7000"
        assert app_factory.latest.run_kwargs == {"reconnect": 0}
        assert wait_for(lambda: len(app_factory.latest.sent) >= 3)
        message = json.loads(app_factory.latest.sent[0])
        assert message["type"] == "client-status"
        assert message["hostname"] == "host"

    def test_start_twice_opens_one_connection(self, make_client, app_factory):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)
        client.start()
        time.sleep(0.05)
        assert len(app_factory.apps) == 1

    def test_status_provider_failure_skips_tick(self, make_client, app_factory):
        calls = []

        def flaky_status():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("telemetry exploded")
            return {"type": "client-status"}

        client = make_client(app_factory, status=flaky_status)
        client.start()

        assert wait_for(lambda: len(app_factory.latest.sent) >= 1)
        assert client.state is ConnectionState.OPEN
        assert len(app_factory.apps) == 1

    def test_handshake_failure_retries(self, make_client):
        factory = FakeAppFactory(failures=2)
        client = make_client(factory, reconnect_delay=0.05)
        client.start()

        assert wait_for(lambda: len(factory.apps) == 3 and client.state is ConnectionState.OPEN)
        assert wait_for(lambda: len(factory.latest.sent) >= 1)
        assert all(not app.sent for app in factory.apps[:2])

    def test_app_factory_error_is_not_fatal(self, make_client):
        attempts = []
        good = FakeAppFactory()

        def factory(url, **callbacks):
            attempts.append(url)
            if len(attempts) == 1:
                raise ValueError("bad url")
            return good(url, **callbacks)

        client = make_client(factory)
        client.start()

        assert wait_for(lambda: client.state is ConnectionState.OPEN)
        assert len(attempts) == 2


class TestReconnect:
    """Close handling and timer ownership."""

    def test_close_event_reconnects_after_backoff(self, make_client, app_factory):
        client = make_client(app_factory, reconnect_delay=0.3)
        client.start()
        assert wait_for(lambda: client.connected)

        dropped_at = time.monotonic()
        app_factory.latest.drop()

        assert wait_for(lambda: client.state is ConnectionState.DISCONNECTED)
        assert wait_for(lambda: len(app_factory.apps) == 2, timeout=3.0)
        assert app_factory.latest.created_at - dropped_at >= 0.3 - 0.02
        assert wait_for(lambda: client.state is ConnectionState.OPEN)

    def test_publishing_stops_while_disconnected(self, make_client, app_factory):
        client = make_client(app_factory, reconnect_delay=0.4)
        client.start()
        assert wait_for(lambda: len(app_factory.latest.sent) >= 2)

        app_factory.latest.drop()
        assert wait_for(lambda: client.state is ConnectionState.DISCONNECTED)
        sent_while_down = total_sent(app_factory)
        time.sleep(0.15)
        assert total_sent(app_factory) == sent_while_down
        assert publish_timers() == []

        assert wait_for(lambda: len(app_factory.apps) == 2 and len(app_factory.latest.sent) >= 2, timeout=3.0)

    def test_repeated_disconnects_leave_one_publish_timer(self, make_client, app_factory):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)

        for k in range(4):
            app_factory.latest.drop()
            assert wait_for(lambda: len(app_factory.apps) == k + 2 and client.connected)

        assert wait_for(lambda: len(publish_timers()) == 1)
        time.sleep(0.1)
        assert len(publish_timers()) == 1

        older_counts = [len(app.sent) for app in app_factory.apps[:-1]]
        time.sleep(0.1)
        assert [len(app.sent) for app in app_factory.apps[:-1]] == older_counts
        assert len(app_factory.latest.sent) > 0

    def test_send_on_non_open_stream_triggers_reconnect(self, make_client, app_factory):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)
        first = app_factory.latest

        first.sock.connected = False

        assert wait_for(lambda: first.close_calls >= 1)
        assert wait_for(lambda: len(app_factory.apps) == 2 and client.connected)

    def test_stale_close_does_not_affect_new_connection(self, make_client, app_factory):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)
        first = app_factory.latest
        first.drop()
        assert wait_for(lambda: len(app_factory.apps) == 2 and client.connected)

        first.on_close(first, 1006, "late duplicate")

        assert client.state is ConnectionState.OPEN
        time.sleep(0.1)
        assert len(app_factory.apps) == 2

    def test_close_stops_reconnecting(self, make_client, app_factory):
        client = make_client(app_factory, reconnect_delay=0.05)
        client.start()
        assert wait_for(lambda: client.connected)

        client.close()

        assert client.state is ConnectionState.DISCONNECTED
        assert app_factory.latest.close_calls == 1
        time.sleep(0.2)
        assert len(app_factory.apps) == 1
        assert publish_timers() == []


class TestDispatch:
    """Inbound action batches reach the action queue."""

    def test_restart_scenario(self, make_client, app_factory, executor):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)

        with mock.patch("pm2_client.core.action_queue.logger") as log:
            app_factory.latest.receive(RESTART_3)
            assert wait_for(lambda: executor.execute.called, timeout=0.5)
            assert wait_for(lambda: log.info.called)

        executor.execute.assert_called_once_with("restart", 3)
        log.info.assert_any_call("Action restart for PM2 ID 3 completed.")

    def test_malformed_message_keeps_connection(self, make_client, app_factory, executor):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)

        app_factory.latest.receive("{definitely not json")
        app_factory.latest.receive(json.dumps({"status": "action", "actions": "restart"}))

        assert client.state is ConnectionState.OPEN
        assert len(app_factory.apps) == 1
        executor.execute.assert_not_called()

    def test_batch_respects_capacity(self, make_client, app_factory):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)

        blocking = ActionQueue(mock.Mock(), max_size=10)
        client.action_queue = blocking
        batch = [{"actionName": "start", "pm2_id": i} for i in range(12)]
        with mock.patch.object(blocking, "start") as start:
            app_factory.latest.receive(json.dumps({"status": "action", "actions": batch}))

        assert [c.target_id for c in blocking.pending()] == list(range(10))
        start.assert_called_once_with()
        blocking.stop()

    def test_each_batch_triggers_single_flight_drain(self, make_client, app_factory, action_queue):
        client = make_client(app_factory)
        client.start()
        assert wait_for(lambda: client.connected)
        before = {t for t in threading.enumerate() if t.name == "ActionQueueWorker"}

        for _ in range(3):
            app_factory.latest.receive(RESTART_3)

        workers = [t for t in threading.enumerate()
                   if t.name == "ActionQueueWorker" and t.is_alive() and t not in before]
        assert len(workers) == 1
        assert action_queue.is_draining
