"""
Sampler: turns raw source readings into one best-effort Snapshot.

A failing source never aborts collection; its fields fall back to the
documented defaults (0, 0.00 or "unknown") and the failure is logged.
"""

import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, TypeVar

import requests

from sitecenter_agent.config import DEFAULT_EXTERNAL_IP_SERVICES, VARIANT_CONTAINER, VARIANT_HOST
from sitecenter_agent.control import RuntimeLimitExceeded
from sitecenter_agent.sources import (
    CgroupMemory,
    CpuInfo,
    FilesystemInfo,
    HostIdentity,
    HostMemory,
    InterfaceInfo,
    JavaProcess,
    LoadInfo,
    NetCounters,
    SystemMetricsSource,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

UNKNOWN = 'unknown'
TIB = 1024 ** 4
VIRTUAL_PREFIXES = ('lo', 'docker', 'veth', 'br-', 'virbr')
_LIMIT_RE = re.compile(r'^(\d+)(Ki|Mi|Gi|K|M|G)?$')
_LIMIT_UNITS_KB = {'Gi': 1024 * 1024, 'G': 1024 * 1024, 'Mi': 1024, 'M': 1024, 'Ki': 1, 'K': 1}


@dataclass
class MemorySnapshot:
    """Memory figures in KB after container limits are applied"""
    total_kb: int
    free_kb: int
    available_kb: int
    used_kb: int
    buffers_kb: int
    cached_kb: int
    swap_total_kb: int
    swap_free_kb: int
    usage_percent: float
    source: str = 'host'


@dataclass
class JavaStats:
    """JVM figures for the container report; all zero when no JVM runs"""
    heap_used_kb: int = 0
    heap_max_kb: int = 0
    threads: int = 0


@dataclass
class ContainerInfo:
    """Container/pod metadata taken from the environment"""
    container_name: str
    container_id: str
    pod_name: str
    pod_namespace: str
    pod_ip: str
    node_name: str
    app_name: str
    app_version: str
    deployment_name: str
    replica_set_name: str
    instance_id: str


@dataclass
class Snapshot:
    """One collection cycle's system state"""
    timestamp: datetime
    uptime_seconds: int
    load: LoadInfo
    load_per_core: float
    memory: MemorySnapshot
    cpu: CpuInfo
    rootfs: FilesystemInfo
    net: NetCounters
    interfaces: List[InterfaceInfo]
    interface_speed_mbps: int
    active_interfaces: int
    identity: HostIdentity
    process_count: int
    open_files: int
    tcp_connections: int
    local_ips: List[str]
    primary_ip: str
    external_ip: str
    interface_addresses: Dict[str, List[str]] = field(default_factory=dict)
    container: Optional[ContainerInfo] = None
    java: JavaStats = field(default_factory=JavaStats)


def is_virtual_interface(name: str) -> bool:
    """Loopback, bridges, veth pairs and docker-managed links"""
    return name.startswith(VIRTUAL_PREFIXES)


def parse_memory_limit(text: Optional[str]) -> Optional[int]:
    """
    Parse a memory limit like "512Mi", "1G" or "1073741824" (bytes) into KB.

    Returns None for empty or unparseable input.
    """
    if not text:
        return None
    match = _LIMIT_RE.match(text.strip())
    if not match:
        return None
    number, unit = int(match.group(1)), match.group(2)
    if unit is None:
        return number // 1024
    return number * _LIMIT_UNITS_KB[unit]


def resolve_memory(
    host: HostMemory,
    cgroup: Optional[CgroupMemory],
    limit_text: Optional[str] = None
) -> MemorySnapshot:
    """
    Combine host memory with any container limit.

    Precedence: cgroup v2, cgroup v1 (limits of 1 TiB or more are the
    "unlimited" sentinel and ignored), then an explicit limit string.
    Guarantees 0 <= used_kb <= total_kb and a percentage in [0, 100].
    """
    total_kb = host.total_kb
    available_kb = host.available_kb or host.free_kb
    if total_kb <= 0:
        logger.error("Host memory total is zero; substituting a minimum of 1 KB")
        total_kb = 1
        available_kb = 1

    host_used_kb = total_kb - available_kb
    limit_kb = 0
    used_kb = None
    source = 'host'

    if cgroup is not None and cgroup.limit_bytes:
        if cgroup.version == 2 or cgroup.limit_bytes < TIB:
            limit_kb = cgroup.limit_bytes // 1024
            source = f'cgroup-v{cgroup.version}'
            if cgroup.usage_bytes is not None:
                used_kb = cgroup.usage_bytes // 1024
        else:
            logger.debug(
                "Ignoring unlimited cgroup memory limit",
                extra={'context': {'limit_bytes': cgroup.limit_bytes}}
            )

    if not limit_kb:
        parsed = parse_memory_limit(limit_text)
        if parsed:
            limit_kb = parsed
            source = 'limit'
        elif limit_text:
            logger.warning("Unparseable memory limit", extra={'context': {'value': limit_text}})

    if limit_kb > 0:
        total_kb = limit_kb
    if used_kb is None:
        used_kb = host_used_kb

    used_kb = min(max(used_kb, 0), total_kb)
    usage_percent = round(min(max(used_kb / total_kb * 100, 0.0), 100.0), 2)

    return MemorySnapshot(
        total_kb=total_kb,
        free_kb=max(host.free_kb, 0),
        available_kb=max(available_kb, 0),
        used_kb=used_kb,
        buffers_kb=max(host.buffers_kb, 0),
        cached_kb=max(host.cached_kb, 0),
        swap_total_kb=max(host.swap_total_kb, 0),
        swap_free_kb=max(host.swap_free_kb, 0),
        usage_percent=usage_percent,
        source=source,
    )


def _is_ipv4(text: str) -> bool:
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True


def lookup_external_ip(services: List[str], timeout: float = 5.0) -> str:
    """Ask public what-is-my-IP services in turn; first valid IPv4 wins"""
    for url in services:
        try:
            response = requests.get(url, timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.debug("External IP lookup failed", extra={'context': {'url': url, 'error': str(e)}})
            continue

        candidate = response.text.strip() if response.status_code == 200 else ''
        if _is_ipv4(candidate):
            return candidate

    logger.warning("Could not determine external IP")
    return UNKNOWN


def summarize_java(processes: List[JavaProcess]) -> JavaStats:
    """Largest JVM virtual size and the thread count summed over all JVMs"""
    stats = JavaStats()
    for proc in processes:
        stats.heap_used_kb = max(stats.heap_used_kb, proc.vms_kb)
        stats.threads += max(proc.threads, 0)
    return stats


def container_info_from_env(environ: Mapping[str, str], hostname: str, primary_ip: str) -> ContainerInfo:
    container_name = environ.get('CONTAINER_NAME') or hostname
    container_id = environ.get('CONTAINER_ID') or UNKNOWN
    pod_name = environ.get('POD_NAME') or container_name

    if container_id != UNKNOWN:
        instance_id = f'{pod_name}-{container_id[:12]}'
    else:
        instance_id = f'{pod_name}-{hostname}'

    return ContainerInfo(
        container_name=container_name,
        container_id=container_id,
        pod_name=pod_name,
        pod_namespace=environ.get('POD_NAMESPACE') or UNKNOWN,
        pod_ip=environ.get('POD_IP') or primary_ip,
        node_name=environ.get('NODE_NAME') or UNKNOWN,
        app_name=environ.get('APP_NAME') or UNKNOWN,
        app_version=environ.get('APP_VERSION') or UNKNOWN,
        deployment_name=environ.get('DEPLOYMENT_NAME') or UNKNOWN,
        replica_set_name=environ.get('REPLICA_SET_NAME') or UNKNOWN,
        instance_id=instance_id,
    )


class SystemSampler:
    """Collects a Snapshot from a SystemMetricsSource"""

    def __init__(
        self,
        source: SystemMetricsSource,
        variant: str = VARIANT_HOST,
        memory_limit: Optional[str] = None,
        external_ip_services: Optional[List[str]] = None,
        external_ip_timeout: float = 5.0,
        environ: Optional[Mapping[str, str]] = None
    ):
        self.source = source
        self.variant = variant
        self.environ = os.environ if environ is None else environ
        self.memory_limit = memory_limit or self.environ.get('MEMORY_LIMIT')
        if external_ip_services is None:
            external_ip_services = list(DEFAULT_EXTERNAL_IP_SERVICES)
        self.external_ip_services = external_ip_services
        self.external_ip_timeout = external_ip_timeout

    def _safe(self, what: str, read: Callable[[], T], default: T) -> T:
        try:
            return read()
        except RuntimeLimitExceeded:
            raise
        except Exception as e:
            logger.warning(
                f"Could not read {what}; using default",
                extra={'context': {'metric': what, 'error': f'{type(e).__name__}: {e}'}}
            )
            return default

    def collect(self) -> Snapshot:
        """Collect the current system state"""
        timestamp = datetime.now(timezone.utc)
        src = self.source

        if self.variant == VARIANT_CONTAINER:
            uptime = self._safe('container uptime', src.container_uptime_seconds, 0)
        else:
            uptime = self._safe('uptime', src.uptime_seconds, 0)

        load = self._safe('load averages', src.load, LoadInfo(0.0, 0.0, 0.0, 0, 0))
        cpu = self._safe('cpu ticks', src.cpu, CpuInfo(0, 0, 0, 0, 1))
        cpu.cores = max(cpu.cores, 1)

        host_mem = self._safe('memory', src.host_memory, HostMemory(0, 0, 0, 0, 0, 0, 0))
        cgroup = self._safe('cgroup memory', src.cgroup_memory, None)
        memory = resolve_memory(host_mem, cgroup, self.memory_limit)
        logger.debug(
            "Memory total resolved",
            extra={'context': {'source': memory.source, 'total_kb': memory.total_kb}}
        )

        rootfs = self._safe('root filesystem', lambda: src.filesystem('/'), FilesystemInfo(0, 0, 0, 0))

        net = self._sum_counters(self._safe('network counters', src.network_counters, {}))
        all_interfaces = self._safe('network interfaces', src.interfaces, [])
        physical = [i for i in all_interfaces if not is_virtual_interface(i.name)]
        # only up links with a known speed count toward capacity
        active = [i for i in physical if i.is_up and i.speed_mbps > 0]
        capacity = sum(i.speed_mbps for i in active)

        identity = self._safe(
            'host identity', src.identity,
            HostIdentity(UNKNOWN, UNKNOWN, UNKNOWN, UNKNOWN)
        )

        addresses = self._safe('ip addresses', src.ipv4_addresses, {})
        addresses = {
            name: [ip for ip in ips if not ip.startswith('127.')]
            for name, ips in addresses.items()
            if name != 'lo'
        }
        addresses = {name: ips for name, ips in addresses.items() if ips}
        local_ips = [ip for ips in addresses.values() for ip in ips]
        primary_ip = local_ips[0] if local_ips else ''

        process_count = load.total or self._safe('process count', src.process_count, 0)

        snapshot = Snapshot(
            timestamp=timestamp,
            uptime_seconds=max(int(uptime), 0),
            load=load,
            load_per_core=round(load.load1 / cpu.cores, 2),
            memory=memory,
            cpu=cpu,
            rootfs=rootfs,
            net=net,
            interfaces=physical,
            interface_speed_mbps=capacity,
            active_interfaces=len(active),
            identity=identity,
            process_count=max(process_count, 0),
            open_files=max(self._safe('open files', src.open_files, 0), 0),
            tcp_connections=max(self._safe('tcp connections', src.tcp_connections, 0), 0),
            local_ips=local_ips,
            primary_ip=primary_ip,
            external_ip=lookup_external_ip(self.external_ip_services, self.external_ip_timeout),
            interface_addresses=addresses,
        )

        if self.variant == VARIANT_CONTAINER:
            snapshot.container = container_info_from_env(self.environ, identity.hostname, primary_ip)
            snapshot.java = summarize_java(self._safe('java processes', src.java_processes, []))

        return snapshot

    @staticmethod
    def _sum_counters(per_interface: Dict[str, NetCounters]) -> NetCounters:
        """Aggregate counters over every non-loopback interface"""
        total = NetCounters()
        for name, c in per_interface.items():
            if name == 'lo':
                continue
            total.rx_bytes += max(c.rx_bytes, 0)
            total.tx_bytes += max(c.tx_bytes, 0)
            total.rx_packets += max(c.rx_packets, 0)
            total.tx_packets += max(c.tx_packets, 0)
            total.rx_errors += max(c.rx_errors, 0)
            total.tx_errors += max(c.tx_errors, 0)
            total.rx_dropped += max(c.rx_dropped, 0)
            total.tx_dropped += max(c.tx_dropped, 0)
        return total
