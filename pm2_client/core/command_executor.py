"""
Command Executor module: runs remote lifecycle actions against PM2.
"""
from typing import Any, Optional, TYPE_CHECKING

from pm2_client.core.models import ActionKind, normalize_pm2_id, pm2_id_key
from pm2_client.errors import (
    SelfProtectionError,
    SupervisorError,
    SupervisorFailureError,
    UnsupportedActionError,
)
from pm2_client.utils import get_logger

if TYPE_CHECKING:
    from pm2_client.supervisor import Pm2Client

logger = get_logger(__name__)


class Pm2CommandExecutor:
    """
    Maps controller actions onto supervisor calls.

    The agent never stops its own PM2 process: ``stop`` against ``self_id`` is
    refused before the supervisor is touched.
    """

    def __init__(self, pm2: 'Pm2Client', self_id: Optional[Any] = None):
        """
        :param pm2: Supervisor adapter
        :type pm2: Pm2Client
        :param self_id: PM2 id of this agent process (``pm_id``), None when not run under PM2
        :type self_id: Optional[Any]
        """
        if pm2 is None:
            raise ValueError("Pm2Client instance is required for Pm2CommandExecutor.")
        self.pm2 = pm2
        self.self_id = None if self_id is None else pm2_id_key(self_id)
        logger.info(f"Pm2CommandExecutor initialized. Own PM2 ID: {self.self_id or 'N/A'}")

    def is_self(self, target_id: Any) -> bool:
        return self.self_id is not None and pm2_id_key(target_id) == self.self_id

    def execute(self, action: str, target_id: Any):
        """
        Executes one action.

        :param action: Action name (start, stop, restart, reset, logs)
        :type action: str
        :param target_id: PM2 id of the target process
        :type target_id: Any
        :raises SelfProtectionError: On ``stop`` of the agent's own process
        :raises UnsupportedActionError: On an unknown action name
        :raises SupervisorFailureError: If the supervisor call fails
        """
        target_id = normalize_pm2_id(target_id)
        kind = ActionKind.parse(action)

        if kind is ActionKind.STOP and self.is_self(target_id):
            logger.warning(f"Prevented 'stop' action on self (PM2 ID: {target_id})")
            raise SelfProtectionError("Cannot stop the current process.", action, target_id)

        if kind is None:
            raise UnsupportedActionError(f"Unsupported action '{action}'", action, target_id)

        if kind is ActionKind.LOGS:
            logger.info(f"Action 'logs' for PM2 ID {target_id} is not implemented; ignoring.")
            return

        supervisor_call = {
            ActionKind.START: self.pm2.start,
            ActionKind.STOP: self.pm2.stop,
            ActionKind.RESTART: self.pm2.restart,
            ActionKind.RESET: self.pm2.reset,
        }[kind]

        try:
            output = supervisor_call(target_id)
        except SupervisorError as e:
            raise SupervisorFailureError(str(e), action, target_id) from e
        if output:
            logger.debug(f"pm2 {action} {target_id}: {output}")
