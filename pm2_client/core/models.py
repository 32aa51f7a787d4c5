"""
Remote command types received from the controller.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from pm2_client.errors import ProtocolError


class ActionKind(Enum):
    """Actions the controller may request. LOGS is accepted but does nothing."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RESET = "reset"
    LOGS = "logs"

    @classmethod
    def parse(cls, name: Any) -> Optional["ActionKind"]:
        """Returns the matching kind, or None for an unknown name."""
        try:
            return cls(name)
        except ValueError:
            return None


def normalize_pm2_id(value: Any) -> Any:
    """
    Canonical form of a PM2 id as it arrives over JSON.

    JSON has a single number type, so ``3.0`` is the id ``3``. Strings are
    stripped; anything else is returned unchanged.
    """
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return value.strip()
    return value


def pm2_id_key(value: Any) -> str:
    """
    Comparison key for PM2 ids: ``3``, ``3.0``, ``"3"`` and ``" 3 "`` all map to ``"3"``.
    """
    value = normalize_pm2_id(value)
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return value
        if number.is_integer():
            return str(int(number))
    return str(value)


@dataclass(frozen=True)
class RemoteCommand:
    """
    One action requested by the controller.

    ``action`` keeps the raw name so unknown actions still reach the executor
    and are rejected there, in queue order.
    """

    action: str
    target_id: Any

    @property
    def kind(self) -> Optional[ActionKind]:
        return ActionKind.parse(self.action)

    @classmethod
    def from_wire(cls, entry: Any) -> "RemoteCommand":
        """
        Decodes one ``{"actionName": ..., "pm2_id": ...}`` entry.

        :raises ProtocolError: If the entry is not an object or misses a field
        """
        if not isinstance(entry, Mapping):
            raise ProtocolError(f"Action entry is not an object: {entry!r}")
        action = entry.get("actionName")
        target_id = entry.get("pm2_id")
        if not isinstance(action, str) or not action:
            raise ProtocolError(f"Action entry has no 'actionName': {entry!r}")
        if target_id is None or isinstance(target_id, (bool, dict, list)):
            raise ProtocolError(f"Action entry has no usable 'pm2_id': {entry!r}")
        target_id = normalize_pm2_id(target_id)
        if target_id == "":
            raise ProtocolError(f"Action entry has an empty 'pm2_id': {entry!r}")
        return cls(action=action, target_id=target_id)

    def __str__(self):
        return f"{self.action} (PM2 ID: {self.target_id})"
