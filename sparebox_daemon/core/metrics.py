"""
Host metrics for heartbeat reports: CPU / RAM / disk usage + static host facts.
CPU usage is a 1s delta of psutil.cpu_times(); sample_cpu_usage() suspends ~1s.
Disk usage shells out (df / wmic) and degrades to -1, never raises.
"""
from __future__ import annotations

import asyncio
import platform
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from sparebox_daemon.core.messages import MessageReply
from sparebox_daemon.utils.logger import get_logger
from sparebox_daemon.utils.process import run_subprocess

log = get_logger("metrics")

DISK_UNKNOWN = -1
CPU_SAMPLE_SECONDS = 1.0
DISK_PROBE_TIMEOUT = 5  # seconds


@dataclass(frozen=True)
class ReportPayload:
    cpu_usage: int
    ram_usage: int
    disk_usage: int
    os_info: str
    total_ram_gb: float
    cpu_cores: int
    cpu_model: str
    uptime: int
    daemon_version: str
    python_version: str = field(default_factory=platform.python_version)

    def to_wire(self, replies: list[MessageReply] | None = None) -> dict:
        return {
            "cpuUsage": self.cpu_usage,
            "ramUsage": self.ram_usage,
            "diskUsage": self.disk_usage,
            "agentCount": 0,
            "agentStatuses": [],
            "daemonVersion": self.daemon_version,
            "osInfo": self.os_info,
            "pythonVersion": self.python_version,
            "uptime": self.uptime,
            "totalRamGb": self.total_ram_gb,
            "cpuCores": self.cpu_cores,
            "cpuModel": self.cpu_model,
            "messageResponses": [r.to_wire() for r in replies or []],
        }


# ── CPU ───────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class CpuSnapshot:
    idle: float
    total: float

    @classmethod
    def take(cls) -> "CpuSnapshot":
        t = psutil.cpu_times()
        # guest time is already counted in user/nice on Linux
        total = sum(t) - getattr(t, "guest", 0.0) - getattr(t, "guest_nice", 0.0)
        return cls(idle=t.idle, total=total)


def cpu_usage_between(a: CpuSnapshot, b: CpuSnapshot) -> int:
    total_delta = b.total - a.total
    if total_delta <= 0:
        return 0
    idle_delta = b.idle - a.idle
    usage = 100 * (1 - idle_delta / total_delta)
    return round(max(0.0, min(100.0, usage)))


# ── Disk ──────────────────────────────────────────────────────────────────
class DiskUsageProbe(ABC):
    """Root/system-drive usage as 0-100, or -1 when it can't be determined."""

    command: list[str] = []

    async def usage(self) -> int:
        result = await run_subprocess(self.command, timeout=DISK_PROBE_TIMEOUT)
        if result["returncode"] != 0:
            log.debug("Disk probe %s failed: %s", self.command[0], result["stderr"].strip())
            return DISK_UNKNOWN
        try:
            return self.parse(result["stdout"])
        except (ValueError, IndexError):
            return DISK_UNKNOWN

    @abstractmethod
    def parse(self, output: str) -> int:
        """Parse command output. May raise ValueError/IndexError."""


class DfDiskProbe(DiskUsageProbe):
    """POSIX `df -P /`: Filesystem 1024-blocks Used Available Capacity Mounted."""

    command = ["df", "-P", "/"]

    def parse(self, output: str) -> int:
        lines = output.strip().splitlines()
        if len(lines) < 2:
            return DISK_UNKNOWN
        capacity = lines[1].split()[4]
        return int(capacity.rstrip("%"))


class WmicDiskProbe(DiskUsageProbe):
    """Windows wmic CSV: Node,FreeSpace,Size for drive C:."""

    command = [
        "wmic", "logicaldisk", "where", "DeviceID='C:'",
        "get", "Size,FreeSpace", "/format:csv",
    ]

    def parse(self, output: str) -> int:
        lines = [ln.strip() for ln in output.strip().splitlines() if ln.strip()]
        if len(lines) < 2:
            return DISK_UNKNOWN
        parts = lines[-1].split(",")
        free, size = int(parts[1]), int(parts[2])
        if size == 0:
            return DISK_UNKNOWN
        return round((size - free) / size * 100)


def select_disk_probe(system: str | None = None) -> DiskUsageProbe:
    system = system or platform.system()
    if system == "Windows":
        return WmicDiskProbe()
    return DfDiskProbe()


# ── Static facts ──────────────────────────────────────────────────────────
def _cpu_model() -> str:
    if sys.platform.startswith("linux"):
        try:
            for line in Path("/proc/cpuinfo").read_text().splitlines():
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
        except OSError:
            pass
    return platform.processor() or "Unknown"


class MetricsCollector:
    def __init__(
        self,
        disk_probe: DiskUsageProbe | None = None,
        sample_seconds: float = CPU_SAMPLE_SECONDS,
    ) -> None:
        self.disk_probe = disk_probe or select_disk_probe()
        self.sample_seconds = sample_seconds

        # Static facts: computed once
        self.os_info = f"{platform.system()} {platform.release()}"
        self.total_ram_gb = round(psutil.virtual_memory().total / 1024 ** 3, 1)
        self.cpu_cores = psutil.cpu_count(logical=True) or 0
        self.cpu_model = _cpu_model()

    async def sample_cpu_usage(self) -> int:
        """CPU usage 0-100 over a ~1s window. Suspends for the whole window."""
        a = CpuSnapshot.take()
        await asyncio.sleep(self.sample_seconds)
        b = CpuSnapshot.take()
        return cpu_usage_between(a, b)

    def ram_usage(self) -> int:
        mem = psutil.virtual_memory()
        if mem.total == 0:
            return 0
        return round((mem.total - mem.available) / mem.total * 100)

    async def disk_usage(self) -> int:
        try:
            return await self.disk_probe.usage()
        except Exception as exc:
            log.debug("Disk probe error: %s", exc)
            return DISK_UNKNOWN

    async def collect(self, daemon_version: str, uptime: int) -> ReportPayload:
        cpu, disk = await asyncio.gather(self.sample_cpu_usage(), self.disk_usage())
        return ReportPayload(
            cpu_usage=cpu,
            ram_usage=self.ram_usage(),
            disk_usage=disk,
            os_info=self.os_info,
            total_ram_gb=self.total_ram_gb,
            cpu_cores=self.cpu_cores,
            cpu_model=self.cpu_model,
            uptime=uptime,
            daemon_version=daemon_version,
        )
