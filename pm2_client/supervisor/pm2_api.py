"""
PM2 supervisor adapter.

PM2 has no Python binding, so every operation shells out to the ``pm2`` CLI.
The adapter keeps a shared ``connected`` flag: any failed call clears it and
the next call that needs the daemon re-checks it with ``pm2 ping``.
"""
import json
import subprocess
import threading
from typing import Any, Callable, List, Optional, Sequence

from pm2_client.errors import SupervisorError
from pm2_client.monitoring.models import ProcessSummary
from pm2_client.utils import get_logger

logger = get_logger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class Pm2Client:
    """
    Thin wrapper around the ``pm2`` command line.

    :ivar binary: Name or path of the pm2 executable.
    :ivar timeout: Timeout in seconds for a single pm2 invocation.
    """

    def __init__(self, binary: str = "pm2", timeout: float = 30, runner: Optional[Runner] = None):
        self.binary = binary
        self.timeout = timeout
        self._runner: Runner = runner or subprocess.run
        self._connected = False
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Checks that the PM2 daemon answers.

        :return: True if the daemon is reachable
        :rtype: bool
        """
        try:
            self._run(["ping"])
        except SupervisorError as e:
            logger.error(f"PM2 Connection Error: {e}")
            return False
        with self._lock:
            self._connected = True
        logger.info("PM2 Connected")
        return True

    def ensure_connected(self):
        """
        Re-establishes the connection if an earlier call marked it lost.

        :raises SupervisorError: If the daemon still cannot be reached
        """
        if self._connected:
            return
        logger.info("PM2 connection lost. Attempting to reconnect...")
        if not self.connect():
            raise SupervisorError("Reconnecting to PM2 failed.")

    def disconnect(self):
        with self._lock:
            was_connected = self._connected
            self._connected = False
        if was_connected:
            logger.info("PM2 Disconnected")

    def list_processes(self) -> List[ProcessSummary]:
        """
        Returns one summary per process known to PM2.

        :raises SupervisorError: If pm2 cannot be queried or returns bad JSON
        """
        self.ensure_connected()
        result = self._run(["jlist"])
        try:
            entries = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            self._mark_disconnected()
            raise SupervisorError(f"Invalid JSON from 'pm2 jlist': {e}") from e
        if not isinstance(entries, list):
            self._mark_disconnected()
            raise SupervisorError("'pm2 jlist' did not return a list.")
        return [ProcessSummary.from_pm2(entry) for entry in entries if isinstance(entry, dict)]

    def start(self, target_id: Any) -> str:
        return self._lifecycle("start", target_id)

    def stop(self, target_id: Any) -> str:
        return self._lifecycle("stop", target_id)

    def restart(self, target_id: Any) -> str:
        return self._lifecycle("restart", target_id)

    def reset(self, target_id: Any) -> str:
        """Resets the restart counter and metadata of a process."""
        return self._lifecycle("reset", target_id)

    def _lifecycle(self, verb: str, target_id: Any) -> str:
        self.ensure_connected()
        result = self._run([verb, str(target_id)], exit_code_drops_connection=False)
        return (result.stdout or result.stderr or "").strip()

    def _mark_disconnected(self):
        with self._lock:
            self._connected = False

    def _run(self, args: Sequence[str], exit_code_drops_connection: bool = True) -> subprocess.CompletedProcess:
        """
        Runs one pm2 command.

        A missing binary or a timeout always clears the ``connected`` flag. A
        non-zero exit clears it only for daemon-level commands; a lifecycle
        command failing for a bad target id says nothing about the daemon.
        """
        command = [self.binary, *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            self._mark_disconnected()
            raise SupervisorError(f"pm2 executable not found: '{self.binary}'") from e
        except subprocess.TimeoutExpired as e:
            self._mark_disconnected()
            raise SupervisorError(f"'{' '.join(command)}' timed out after {self.timeout}s") from e
        except OSError as e:
            self._mark_disconnected()
            raise SupervisorError(f"Could not run '{' '.join(command)}': {e}") from e

        if result.returncode != 0:
            if exit_code_drops_connection:
                self._mark_disconnected()
            stderr = (result.stderr or "").strip()
            raise SupervisorError(f"'{' '.join(command)}' exited with code {result.returncode}: {stderr}")
        return result
