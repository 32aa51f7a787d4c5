"""
Core Agent module: wires telemetry, the action queue and the controller
connection together and owns startup and shutdown sequencing.
"""
import threading
from typing import Optional, TYPE_CHECKING

from pm2_client.core.agent_state import AgentState
from pm2_client.utils import get_logger

if TYPE_CHECKING:
    from pm2_client.communication import WSClient
    from pm2_client.core.action_queue import ActionQueue
    from pm2_client.monitoring import SystemMonitor
    from pm2_client.supervisor import Pm2Client

logger = get_logger(__name__)


class Agent:
    """
    The main Agent class orchestrating all components.

    Startup connects to PM2 (a failure is logged, later calls reconnect
    lazily), gathers static telemetry once, then starts the controller
    connection. Shutdown stops the action queue first so no further command
    starts, then releases the PM2 connection and the stream.
    """

    def __init__(self,
                 pm2: 'Pm2Client',
                 system_monitor: 'SystemMonitor',
                 action_queue: 'ActionQueue',
                 ws_client: 'WSClient'):
        logger.info("Initializing Agent...")
        self._state = AgentState.STARTING
        self._state_lock = threading.RLock()
        self._running = threading.Event()
        self._stopped = threading.Event()

        self.pm2 = pm2
        self.system_monitor = system_monitor
        self.action_queue = action_queue
        self.ws_client = ws_client

    def start(self):
        """
        Runs the startup sequence. Returns once the connection manager is started;
        use :meth:`wait` to block until shutdown.
        """
        if self._running.is_set():
            logger.warning("Agent start requested but already running.")
            return

        self._set_state(AgentState.STARTING)
        logger.info("================ Starting Agent ================")
        self._running.set()

        if self.pm2.connect():
            logger.info("PM2 connection established.")
        else:
            logger.error("Error establishing PM2 connection. Will retry on demand.")

        self.system_monitor.gather_static()

        if not self._running.is_set():
            return
        self.ws_client.start()
        self._set_state(AgentState.RUNNING, expected=AgentState.STARTING)
        logger.info("Agent started. Publishing status and waiting for actions.")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the agent has shut down.

        :return: True if the agent stopped within the timeout
        :rtype: bool
        """
        return self._stopped.wait(timeout)

    def graceful_shutdown(self):
        """
        Stops the agent. Idempotent. Pending actions are discarded and an action
        already executing is not awaited.
        """
        # Reentrant: a signal handler may interrupt the main thread inside _set_state.
        with self._state_lock:
            if self._state in (AgentState.SHUTTING_DOWN, AgentState.STOPPED):
                logger.debug("Graceful shutdown called but agent already stopping/stopped.")
                return
            self._set_state(AgentState.SHUTTING_DOWN)
        logger.info("Shutting down...")
        self._running.clear()

        try:
            self.action_queue.stop()
        finally:
            try:
                self.pm2.disconnect()
            finally:
                self.ws_client.close()
                self._set_state(AgentState.STOPPED)
                self._stopped.set()
                logger.info("================ Agent Shutdown Complete ================")

    def get_state(self) -> AgentState:
        with self._state_lock:
            return self._state

    def _set_state(self, new_state: AgentState, expected: Optional[AgentState] = None) -> bool:
        """
        Moves to ``new_state``; with ``expected`` only from that state.
        The state is assigned before the transition is logged.
        """
        with self._state_lock:
            old_state = self._state
            if old_state == new_state or (expected is not None and old_state != expected):
                return False
            self._state = new_state
            logger.info(f"State transition: {old_state.name} -> {new_state.name}")
            return True
