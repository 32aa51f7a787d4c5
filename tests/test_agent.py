"""Tests for the Agent orchestrator."""

import logging
import threading
from unittest import mock

import pytest

from pm2_client.core import Agent, AgentState


@pytest.fixture
def parts():
    manager = mock.Mock()
    manager.pm2.connect.return_value = True
    return manager


@pytest.fixture
def agent(parts):
    return Agent(parts.pm2, parts.system_monitor, parts.action_queue, parts.ws_client)


class TestStartup:
    """Startup sequencing."""

    def test_start_order(self, agent, parts):
        agent.start()

        assert parts.mock_calls == [
            mock.call.pm2.connect(),
            mock.call.system_monitor.gather_static(),
            mock.call.ws_client.start(),
        ]
        assert agent.get_state() is AgentState.RUNNING

    def test_pm2_failure_does_not_block_startup(self, agent, parts):
        parts.pm2.connect.return_value = False

        agent.start()

        parts.ws_client.start.assert_called_once_with()
        assert agent.get_state() is AgentState.RUNNING

    def test_start_twice_is_ignored(self, agent, parts):
        agent.start()
        agent.start()
        parts.ws_client.start.assert_called_once_with()


class TestShutdown:
    """Shutdown sequencing."""

    def test_shutdown_order(self, agent, parts):
        agent.start()
        parts.reset_mock()

        agent.graceful_shutdown()

        assert parts.mock_calls == [
            mock.call.action_queue.stop(),
            mock.call.pm2.disconnect(),
            mock.call.ws_client.close(),
        ]
        assert agent.get_state() is AgentState.STOPPED
        assert agent.wait(timeout=0)

    def test_shutdown_is_idempotent(self, agent, parts):
        agent.start()
        agent.graceful_shutdown()
        agent.graceful_shutdown()
        parts.action_queue.stop.assert_called_once_with()
        parts.ws_client.close.assert_called_once_with()

    def test_stream_closed_even_if_queue_stop_fails(self, agent, parts):
        parts.action_queue.stop.side_effect = RuntimeError("boom")
        agent.start()

        with pytest.raises(RuntimeError):
            agent.graceful_shutdown()

        parts.pm2.disconnect.assert_called_once_with()
        parts.ws_client.close.assert_called_once_with()
        assert agent.wait(timeout=0)

    def test_shutdown_reentered_during_state_change(self, agent, parts):
        """A signal arriving while _set_state logs must not deadlock on the state lock."""
        real_logger = logging.getLogger("pm2_client.core.agent")
        reentered = []

        def info(message, *args, **kwargs):
            if message.startswith("State transition") and not reentered:
                reentered.append(message)
                agent.graceful_shutdown()

        with mock.patch("pm2_client.core.agent.logger", wraps=real_logger) as log:
            log.info.side_effect = info
            worker = threading.Thread(target=agent.start, daemon=True)
            worker.start()
            worker.join(timeout=2.0)

        assert not worker.is_alive()
        assert reentered
        parts.action_queue.stop.assert_called_once_with()
        parts.ws_client.close.assert_called_once_with()
        assert agent.get_state() is AgentState.STOPPED

    def test_concurrent_shutdowns_run_sequence_once(self, agent, parts):
        agent.start()
        threads = [threading.Thread(target=agent.graceful_shutdown) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=2.0)

        parts.action_queue.stop.assert_called_once_with()
        parts.pm2.disconnect.assert_called_once_with()

    def test_wait_times_out_while_running(self, agent):
        agent.start()
        assert agent.wait(timeout=0.01) is False
