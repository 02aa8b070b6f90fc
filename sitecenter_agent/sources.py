"""
Raw OS readings behind a swappable interface.

`SystemMetricsSource` has one method per metric category. Methods may
raise; the sampler decides what default to substitute. Tests drive the
sampler with a fake source instead of the live host.
"""

import os
import platform
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import psutil

KB = 1024


@dataclass
class LoadInfo:
    load1: float
    load5: float
    load15: float
    running: int
    total: int


@dataclass
class HostMemory:
    """Host-wide memory counters in KB"""
    total_kb: int
    free_kb: int
    available_kb: int
    buffers_kb: int
    cached_kb: int
    swap_total_kb: int
    swap_free_kb: int


@dataclass
class CgroupMemory:
    """Raw cgroup memory limit/usage in bytes; limit None means unlimited"""
    version: int
    limit_bytes: Optional[int]
    usage_bytes: Optional[int]


@dataclass
class CpuInfo:
    user_ticks: int
    system_ticks: int
    idle_ticks: int
    iowait_ticks: int
    cores: int


@dataclass
class FilesystemInfo:
    total_kb: int
    used_kb: int
    available_kb: int
    used_percent: float


@dataclass
class NetCounters:
    """Cumulative counters for one interface"""
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0
    rx_errors: int = 0
    tx_errors: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0


@dataclass
class InterfaceInfo:
    name: str
    speed_mbps: int
    is_up: bool


@dataclass
class HostIdentity:
    hostname: str
    kernel_version: str
    os_name: str
    os_version: str


@dataclass
class JavaProcess:
    """One running JVM: virtual size in KB and its thread count"""
    pid: int
    vms_kb: int
    threads: int


class SystemMetricsSource(ABC):
    """Capability interface over the host's metric sources"""

    @abstractmethod
    def uptime_seconds(self) -> int:
        ...

    @abstractmethod
    def container_uptime_seconds(self) -> int:
        """Seconds since PID 1 started (container lifetime)"""
        ...

    @abstractmethod
    def load(self) -> LoadInfo:
        ...

    @abstractmethod
    def host_memory(self) -> HostMemory:
        ...

    @abstractmethod
    def cgroup_memory(self) -> Optional[CgroupMemory]:
        """Container memory accounting, or None outside a memory cgroup"""
        ...

    @abstractmethod
    def cpu(self) -> CpuInfo:
        ...

    @abstractmethod
    def filesystem(self, path: str = '/') -> FilesystemInfo:
        ...

    @abstractmethod
    def network_counters(self) -> Dict[str, NetCounters]:
        """Cumulative counters keyed by interface name, loopback included"""
        ...

    @abstractmethod
    def interfaces(self) -> List[InterfaceInfo]:
        ...

    @abstractmethod
    def identity(self) -> HostIdentity:
        ...

    @abstractmethod
    def process_count(self) -> int:
        ...

    @abstractmethod
    def open_files(self) -> int:
        ...

    @abstractmethod
    def tcp_connections(self) -> int:
        ...

    @abstractmethod
    def ipv4_addresses(self) -> Dict[str, List[str]]:
        """IPv4 addresses keyed by interface name"""
        ...

    @abstractmethod
    def java_processes(self, limit: int = 5) -> List[JavaProcess]:
        """Up to `limit` running JVMs"""
        ...


def _read_text(path: Path) -> str:
    return path.read_text().strip()


def _read_int(path: Path) -> Optional[int]:
    """Integer contents of a file, None for 'max' or non-numeric data"""
    raw = _read_text(path)
    return int(raw) if raw.isdigit() else None


class LinuxMetricsSource(SystemMetricsSource):
    """Reads a Linux host through psutil, /proc and /sys"""

    def __init__(self, proc_root: str = '/proc', sys_root: str = '/sys'):
        self.proc = Path(proc_root)
        self.sys = Path(sys_root)

    def uptime_seconds(self) -> int:
        return max(0, int(time.time() - psutil.boot_time()))

    def container_uptime_seconds(self) -> int:
        return max(0, int(time.time() - psutil.Process(1).create_time()))

    def load(self) -> LoadInfo:
        load1, load5, load15 = psutil.getloadavg()
        # /proc/loadavg: "0.10 0.20 0.30 2/345 6789"
        fields = _read_text(self.proc / 'loadavg').split()
        running, _, total = fields[3].partition('/')
        return LoadInfo(load1, load5, load15, int(running), int(total))

    def host_memory(self) -> HostMemory:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return HostMemory(
            total_kb=mem.total // KB,
            free_kb=mem.free // KB,
            available_kb=mem.available // KB,
            buffers_kb=getattr(mem, 'buffers', 0) // KB,
            cached_kb=getattr(mem, 'cached', 0) // KB,
            swap_total_kb=swap.total // KB,
            swap_free_kb=swap.free // KB,
        )

    def cgroup_memory(self) -> Optional[CgroupMemory]:
        cgroup = self.sys / 'fs' / 'cgroup'

        v2_max = cgroup / 'memory.max'
        if v2_max.exists():
            current = cgroup / 'memory.current'
            return CgroupMemory(
                version=2,
                limit_bytes=_read_int(v2_max),
                usage_bytes=_read_int(current) if current.exists() else None,
            )

        v1_limit = cgroup / 'memory' / 'memory.limit_in_bytes'
        if v1_limit.exists():
            usage = cgroup / 'memory' / 'memory.usage_in_bytes'
            return CgroupMemory(
                version=1,
                limit_bytes=_read_int(v1_limit),
                usage_bytes=_read_int(usage) if usage.exists() else None,
            )

        return None

    def cpu(self) -> CpuInfo:
        times = psutil.cpu_times()
        clk_tck = os.sysconf('SC_CLK_TCK')

        def ticks(seconds):
            return int(round(seconds * clk_tck))

        try:
            cores = len(os.sched_getaffinity(0))
        except (AttributeError, OSError):
            cores = psutil.cpu_count(logical=True) or 1

        return CpuInfo(
            user_ticks=ticks(times.user + getattr(times, 'nice', 0.0)),
            system_ticks=ticks(times.system),
            idle_ticks=ticks(times.idle),
            iowait_ticks=ticks(getattr(times, 'iowait', 0.0)),
            cores=max(1, cores),
        )

    def filesystem(self, path: str = '/') -> FilesystemInfo:
        usage = psutil.disk_usage(path)
        return FilesystemInfo(
            total_kb=usage.total // KB,
            used_kb=usage.used // KB,
            available_kb=usage.free // KB,
            used_percent=usage.percent,
        )

    def network_counters(self) -> Dict[str, NetCounters]:
        counters = {}
        for name, io in psutil.net_io_counters(pernic=True).items():
            counters[name] = NetCounters(
                rx_bytes=io.bytes_recv,
                tx_bytes=io.bytes_sent,
                rx_packets=io.packets_recv,
                tx_packets=io.packets_sent,
                rx_errors=io.errin,
                tx_errors=io.errout,
                rx_dropped=io.dropin,
                tx_dropped=io.dropout,
            )
        return counters

    def interfaces(self) -> List[InterfaceInfo]:
        result = []
        for name, stats in sorted(psutil.net_if_stats().items()):
            speed = stats.speed
            # psutil reports 0 when the kernel says -1 (unknown)
            speed_file = self.sys / 'class' / 'net' / name / 'speed'
            if not speed and speed_file.exists():
                try:
                    speed = int(_read_text(speed_file))
                except (OSError, ValueError):
                    speed = 0
            result.append(InterfaceInfo(name=name, speed_mbps=speed, is_up=stats.isup))
        return result

    def identity(self) -> HostIdentity:
        os_name, os_version = 'unknown', 'unknown'
        try:
            release = platform.freedesktop_os_release()
            os_name = release.get('NAME', 'unknown')
            os_version = release.get('VERSION_ID', 'unknown')
        except OSError:
            redhat = Path('/etc/redhat-release')
            debian = Path('/etc/debian_version')
            if redhat.exists():
                os_name = _read_text(redhat)
            elif debian.exists():
                os_name, os_version = 'Debian', _read_text(debian)

        return HostIdentity(
            hostname=socket.gethostname() or 'unknown',
            kernel_version=platform.release() or 'unknown',
            os_name=os_name,
            os_version=os_version,
        )

    def process_count(self) -> int:
        return self.load().total

    def open_files(self) -> int:
        # file-nr: allocated free maximum
        return int(_read_text(self.proc / 'sys' / 'fs' / 'file-nr').split()[0])

    def tcp_connections(self) -> int:
        total = 0
        found = False
        for name in ('tcp', 'tcp6'):
            path = self.proc / 'net' / name
            if path.exists():
                found = True
                with path.open() as f:
                    total += max(0, sum(1 for _ in f) - 1)
        if not found:
            total = len(psutil.net_connections(kind='tcp'))
        return total

    def ipv4_addresses(self) -> Dict[str, List[str]]:
        result = {}
        for name, addrs in psutil.net_if_addrs().items():
            ips = [a.address for a in addrs if a.family == socket.AF_INET]
            if ips:
                result[name] = ips
        return result

    def java_processes(self, limit: int = 5) -> List[JavaProcess]:
        found = []
        for proc in psutil.process_iter(['name', 'cmdline']):
            if len(found) >= limit:
                break
            cmdline = proc.info.get('cmdline') or []
            names = {proc.info.get('name') or ''}
            if cmdline:
                names.add(os.path.basename(cmdline[0]))
            if 'java' not in names:
                continue
            try:
                found.append(JavaProcess(
                    pid=proc.pid,
                    vms_kb=proc.memory_info().vms // KB,
                    threads=proc.num_threads(),
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found
