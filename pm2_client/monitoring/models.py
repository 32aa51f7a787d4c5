"""Telemetry value types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Union

MIB = 1024 * 1024

# Marker used in place of a field whose provider failed.
UNAVAILABLE = "unavailable"

MESSAGE_TYPE = "client-status"


class ProcessStatus(Enum):
    """Normalized status of a supervised process."""

    RUNNING = "running"
    STOPPED = "stopped"
    ERRORED = "errored"
    UNKNOWN = "unknown"

    @classmethod
    def from_pm2(cls, status: Any) -> "ProcessStatus":
        return _PM2_STATUS_MAP.get(str(status).lower(), cls.UNKNOWN)


_PM2_STATUS_MAP = {
    "online": ProcessStatus.RUNNING,
    "launching": ProcessStatus.RUNNING,
    "one-launch-status": ProcessStatus.RUNNING,
    "stopped": ProcessStatus.STOPPED,
    "stopping": ProcessStatus.STOPPED,
    "errored": ProcessStatus.ERRORED,
}


def bytes_to_mib(value: Union[int, float]) -> float:
    """Convert a byte count to MiB rounded to 2 decimals."""
    return round(float(value) / MIB, 2)


def memory_percentage(active: Union[int, float], total: Union[int, float]) -> str:
    """Format ``active / total`` as a percentage string with 2 decimals, e.g. ``"42.10%"``."""
    if total <= 0:
        raise ValueError("total memory must be positive")
    return f"{active / total * 100:.2f}%"


@dataclass(frozen=True)
class ProcessSummary:
    """One supervised process as reported to the controller."""

    name: str
    status: ProcessStatus
    cpu: float
    memory_mib: float
    restart_count: int
    pm_id: Any

    @classmethod
    def from_pm2(cls, proc: Mapping[str, Any]) -> "ProcessSummary":
        """Build a summary from one entry of ``pm2 jlist``."""
        pm2_env = proc.get("pm2_env") or {}
        monit = proc.get("monit") or {}
        return cls(
            name=str(proc.get("name", "")),
            status=ProcessStatus.from_pm2(pm2_env.get("status")),
            cpu=float(monit.get("cpu") or 0),
            memory_mib=bytes_to_mib(monit.get("memory") or 0),
            restart_count=int(pm2_env.get("restart_time") or 0),
            pm_id=proc.get("pm_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "cpu": self.cpu,
            "memory": f"{self.memory_mib:.2f}",
            "restart_time": self.restart_count,
            "pm_id": self.pm_id,
        }


@dataclass(frozen=True)
class StaticInfo:
    """Host facts gathered once per agent lifetime."""

    hostname: Any
    os_info: Any
    virtualization: Any
    ip_info: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "OSInfo": self.os_info,
            "virtInfo": self.virtualization,
            "ipInfo": self.ip_info,
        }


@dataclass(frozen=True)
class MemoryInfo:
    used: int
    total: int

    @property
    def percentage_used(self) -> str:
        return memory_percentage(self.used, self.total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usedMemory": self.used,
            "totalMemory": self.total,
            "PercentageUsed": self.percentage_used,
        }


@dataclass(frozen=True)
class DynamicInfo:
    """Readings refreshed on every publish tick."""

    file_system: Any
    system_load: Any
    memory: Union[MemoryInfo, str]
    system_time: str
    processes: Union[List[ProcessSummary], str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.processes, list):
            processes: Any = [proc.to_dict() for proc in self.processes]
        else:
            processes = self.processes
        return {
            "fileSystemInfo": self.file_system,
            "systemLoad": self.system_load,
            "sysMemory": self.memory.to_dict() if isinstance(self.memory, MemoryInfo) else self.memory,
            "systemTime": self.system_time,
            "pm2_processes": processes,
        }


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Cached static facts merged with one set of dynamic readings."""

    static: StaticInfo
    dynamic: DynamicInfo

    def to_message(self) -> Dict[str, Any]:
        """Wire representation sent to the controller."""
        message = self.static.to_dict()
        message.update(self.dynamic.to_dict())
        message["type"] = MESSAGE_TYPE
        return message
