"""
System monitoring functionality for the telemetry published to the controller.
"""
import datetime
import json
import os
import platform
import socket
import subprocess
import threading
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import psutil
import requests

from pm2_client.errors import TelemetryProviderError
from pm2_client.monitoring.models import (
    UNAVAILABLE,
    DynamicInfo,
    MemoryInfo,
    StaticInfo,
    TelemetrySnapshot,
)
from pm2_client.utils import get_logger

if TYPE_CHECKING:
    from pm2_client.supervisor import Pm2Client

logger = get_logger(__name__)

DEFAULT_IPINFO_URL = "https://ipinfo.io/json"
IP_INFO_UNAVAILABLE = "Failed to retrieve IP info"
NO_VIRTUALIZATION = "None"
GENERIC_VIRTUALIZATION = "Virtualized"

# DMI vendor/product fragments -> virtualization name
_DMI_SIGNATURES = (
    ("vmware", "vmware"),
    ("virtualbox", "oracle"),
    ("qemu", "qemu"),
    ("kvm", "kvm"),
    ("bochs", "bochs"),
    ("xen", "xen"),
    ("microsoft corporation", "microsoft"),
    ("parallels", "parallels"),
    ("amazon ec2", "amazon"),
    ("google compute engine", "google"),
)


class SystemMonitor:
    """
    Collects host telemetry and the list of PM2-managed processes.

    Static host facts (hostname, OS, virtualization, network identity) are
    gathered once and cached for the agent lifetime. Dynamic readings are
    taken on every call to :meth:`gather_dynamic`.

    Every provider is isolated: a failing provider is logged and its field is
    replaced by the ``"unavailable"`` marker, the snapshot is still produced.
    """

    def __init__(self, pm2: Optional['Pm2Client'] = None,
                 ipinfo_url: str = DEFAULT_IPINFO_URL,
                 ipinfo_timeout: float = 5,
                 dmi_path: str = "/sys/class/dmi/id",
                 cpuinfo_path: str = "/proc/cpuinfo"):
        self.pm2 = pm2
        self.ipinfo_url = ipinfo_url
        self.ipinfo_timeout = ipinfo_timeout
        self.dmi_path = dmi_path
        self.cpuinfo_path = cpuinfo_path
        self._static: Optional[StaticInfo] = None
        self._static_lock = threading.Lock()
        logger.debug("SystemMonitor initialized")

    # === SNAPSHOTS ===

    def gather_static(self) -> StaticInfo:
        """
        Gathers the static host facts once and caches them.

        :return: The cached static information
        :rtype: StaticInfo
        """
        with self._static_lock:
            if self._static is None:
                logger.debug("Collecting static system information...")
                self._static = StaticInfo(
                    hostname=self._safe("hostname", socket.getfqdn),
                    os_info=self._safe("OSInfo", self.get_os_info),
                    virtualization=self._safe("virtInfo", self.get_virtualization),
                    ip_info=self._safe("ipInfo", self.get_ip_info),
                )
                logger.info("Static system information collected.")
                logger.debug(f"Static info: {json.dumps(self._static.to_dict(), default=str)}")
            return self._static

    def gather_dynamic(self) -> DynamicInfo:
        """
        Takes one set of dynamic readings.

        :return: Filesystem, load, memory, time and process readings
        :rtype: DynamicInfo
        """
        return DynamicInfo(
            file_system=self._safe("fileSystemInfo", self.get_file_systems),
            system_load=self._safe("systemLoad", self.get_system_load),
            memory=self._safe("sysMemory", self.get_memory),
            system_time=datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds"),
            processes=self._safe("pm2_processes", self.get_processes),
        )

    def collect_snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(static=self.gather_static(), dynamic=self.gather_dynamic())

    def _safe(self, field: str, provider: Callable[[], Any]) -> Any:
        try:
            return provider()
        except Exception as e:
            error = TelemetryProviderError(field, e)
            logger.error(str(error))
            return UNAVAILABLE

    # === STATIC PROVIDERS ===

    def get_os_info(self) -> Dict[str, Any]:
        uname = platform.uname()
        info: Dict[str, Any] = {
            "platform": uname.system.lower(),
            "release": uname.release,
            "kernel": uname.version,
            "arch": uname.machine,
            "hostname": uname.node,
            "distro": uname.system,
            "codename": "",
            "bootTime": datetime.datetime.fromtimestamp(
                psutil.boot_time(), datetime.timezone.utc).isoformat(),
        }
        try:
            os_release = platform.freedesktop_os_release()
        except (AttributeError, OSError):
            os_release = {}
        if os_release:
            info["distro"] = os_release.get("NAME", info["distro"])
            info["release"] = os_release.get("VERSION_ID", info["release"])
            info["codename"] = os_release.get("VERSION_CODENAME", "")
        return info

    def get_virtualization(self) -> str:
        """
        Detects the virtualization technology.

        Tries ``systemd-detect-virt`` first; when it is missing, fails or is
        ambiguous (``vm-other``) falls back to a DMI and CPU flag probe.

        :return: Virtualization name, "Virtualized" or "None"
        :rtype: str
        """
        try:
            result = subprocess.run(
                ["systemd-detect-virt"],
                capture_output=True, text=True, check=False, timeout=5
            )
            output = (result.stdout or "").strip()
            if result.returncode == 0 and output and output != "vm-other":
                return output
            logger.debug(f"systemd-detect-virt returned '{output}' (code {result.returncode}). Probing system instead.")
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"systemd-detect-virt unavailable: {e}. Probing system instead.")
        return self._probe_virtualization()

    def _probe_virtualization(self) -> str:
        dmi = " ".join(
            self._read_text(os.path.join(self.dmi_path, name)).lower()
            for name in ("sys_vendor", "product_name", "board_vendor", "bios_vendor")
        )
        for signature, name in _DMI_SIGNATURES:
            if signature in dmi:
                return name
        cpu_flags = self._read_text(self.cpuinfo_path)
        if any(line.startswith("flags") and " hypervisor" in line for line in cpu_flags.splitlines()):
            return GENERIC_VIRTUALIZATION
        return NO_VIRTUALIZATION

    @staticmethod
    def _read_text(path: str) -> str:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read().strip()
        except OSError:
            return ""

    def get_ip_info(self) -> Any:
        """
        External IP information from the ipinfo service merged with local
        non-internal interfaces.

        :return: Combined dictionary, or an explanatory string on failure
        :rtype: Any
        """
        try:
            response = requests.get(self.ipinfo_url, timeout=self.ipinfo_timeout)
            response.raise_for_status()
            external = response.json()
            if not isinstance(external, dict):
                raise ValueError(f"Unexpected ipinfo payload: {external!r}")
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to retrieve external IP info: {e}")
            return IP_INFO_UNAVAILABLE

        local_ips = self.get_local_ips()
        logger.info(f"localIps {local_ips}")
        combined = dict(external)
        combined["localIps"] = local_ips
        return combined

    def get_local_ips(self) -> List[Dict[str, str]]:
        local_ips = []
        for iface, addresses in psutil.net_if_addrs().items():
            ip4 = next((a.address for a in addresses if a.family == socket.AF_INET), "")
            if not ip4 or ip4.startswith("127."):
                continue
            ip6 = next((a.address for a in addresses if a.family == socket.AF_INET6), "")
            local_ips.append({"iface": iface, "ip4": ip4, "ip6": ip6 or "n/a"})
        return local_ips

    # === DYNAMIC PROVIDERS ===

    def get_file_systems(self) -> List[Dict[str, Any]]:
        file_systems = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError) as e:
                logger.debug(f"Skipping {part.mountpoint}: {e}")
                continue
            file_systems.append({
                "fs": part.device,
                "type": part.fstype,
                "mount": part.mountpoint,
                "size": usage.total,
                "used": usage.used,
                "available": usage.free,
                "use": usage.percent,
            })
        return file_systems

    def get_system_load(self) -> Dict[str, Any]:
        per_core = psutil.cpu_percent(interval=None, percpu=True)
        load: Dict[str, Any] = {
            "currentLoad": round(sum(per_core) / len(per_core), 2) if per_core else 0.0,
            "cpus": [{"load": value} for value in per_core],
        }
        try:
            load["avgLoad"] = list(psutil.getloadavg())
        except (AttributeError, OSError):
            load["avgLoad"] = UNAVAILABLE
        return load

    def get_memory(self) -> MemoryInfo:
        memory = psutil.virtual_memory()
        active = getattr(memory, "active", None)
        if active is None:
            active = memory.used
        return MemoryInfo(used=int(active), total=int(memory.total))

    def get_processes(self) -> list:
        if self.pm2 is None:
            return []
        return self.pm2.list_processes()
