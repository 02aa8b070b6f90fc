"""
Flat JSON payload for the stats endpoints.

Every field is always present; unresolved values carry their placeholder
so the receiving side can rely on a fixed schema per variant.
"""

import json
from datetime import datetime
from typing import Any, Dict

from sitecenter_agent.collectors import UNKNOWN, Snapshot, container_info_from_env
from sitecenter_agent.config import VARIANT_CONTAINER, VARIANT_HOST
from sitecenter_agent.rates import NetworkRates


def format_timestamp(ts: datetime) -> str:
    """UTC ISO 8601 with millisecond precision, e.g. 2026-10-18T12:00:00.123Z"""
    return ts.strftime('%Y-%m-%dT%H:%M:%S.') + f'{ts.microsecond // 1000:03d}Z'


def _text(value: Any, default: str = UNKNOWN) -> str:
    if value is None:
        return default
    value = str(value).strip()
    return value if value else default


def _interface_details(snapshot: Snapshot) -> str:
    return ','.join(f'{i.name}:{max(i.speed_mbps, 0)}Mbps' for i in snapshot.interfaces if i.is_up)


def _interface_addresses(snapshot: Snapshot) -> str:
    return ','.join(
        f'{name}:{ip}'
        for name, ips in snapshot.interface_addresses.items()
        for ip in ips
    )


def build_payload(snapshot: Snapshot, rates: NetworkRates, variant: str = VARIANT_HOST) -> Dict[str, Any]:
    """Assemble the flat key/value record sent to the monitor"""
    mem = snapshot.memory
    cpu = snapshot.cpu
    fs = snapshot.rootfs
    net = snapshot.net
    ident = snapshot.identity
    local_ips = ','.join(snapshot.local_ips)

    payload: Dict[str, Any] = {}

    if variant == VARIANT_CONTAINER:
        container = snapshot.container or container_info_from_env({}, ident.hostname, snapshot.primary_ip)
        payload.update({
            'type': 'container',
            'instance_id': _text(container.instance_id),
            'container_name': _text(container.container_name),
            'container_id': _text(container.container_id),
            'pod_name': _text(container.pod_name),
            'pod_namespace': _text(container.pod_namespace),
            'pod_ip': _text(container.pod_ip, default=''),
            'node_name': _text(container.node_name),
            'app_name': _text(container.app_name),
            'app_version': _text(container.app_version),
            'deployment_name': _text(container.deployment_name),
            'replica_set_name': _text(container.replica_set_name),
        })

    payload.update({
        'uptime_seconds': snapshot.uptime_seconds,
        'loadavg_1': round(snapshot.load.load1, 2),
        'loadavg_5': round(snapshot.load.load5, 2),
        'loadavg_15': round(snapshot.load.load15, 2),
        'load_per_core': snapshot.load_per_core,
        'mem_total_kb': mem.total_kb,
        'mem_free_kb': mem.free_kb,
        'mem_available_kb': mem.available_kb,
        'mem_used_kb': mem.used_kb,
        'mem_usage_percent': mem.usage_percent,
        'mem_buffers_kb': mem.buffers_kb,
        'mem_cached_kb': mem.cached_kb,
        'swap_total_kb': mem.swap_total_kb,
        'swap_free_kb': mem.swap_free_kb,
        'cpu_user_ticks': cpu.user_ticks,
        'cpu_system_ticks': cpu.system_ticks,
        'cpu_idle_ticks': cpu.idle_ticks,
        'cpu_iowait_ticks': cpu.iowait_ticks,
    })
    if variant == VARIANT_CONTAINER:
        payload['cpu_total_ticks'] = cpu.user_ticks + cpu.system_ticks + cpu.idle_ticks + cpu.iowait_ticks

    payload.update({
        'cpu_cores': cpu.cores,
        'rootfs_total_kb': fs.total_kb,
        'rootfs_used_kb': fs.used_kb,
        'rootfs_available_kb': fs.available_kb,
        'rootfs_used_percent': round(min(max(fs.used_percent, 0.0), 100.0), 2),
        'net_rx_bytes': net.rx_bytes,
        'net_tx_bytes': net.tx_bytes,
        'net_rx_bytes_per_sec': rates.rx_bytes_per_sec,
        'net_tx_bytes_per_sec': rates.tx_bytes_per_sec,
        'net_rx_packets': net.rx_packets,
        'net_tx_packets': net.tx_packets,
        'net_rx_packets_per_sec': rates.rx_packets_per_sec,
        'net_tx_packets_per_sec': rates.tx_packets_per_sec,
        'net_rx_errors': net.rx_errors,
        'net_tx_errors': net.tx_errors,
        'net_rx_dropped': net.rx_dropped,
        'net_tx_dropped': net.tx_dropped,
        'net_rx_utilization': rates.rx_utilization,
        'net_tx_utilization': rates.tx_utilization,
        'net_total_utilization': rates.total_utilization,
        'net_interface_speed_mbps': snapshot.interface_speed_mbps,
        'net_active_interfaces': snapshot.active_interfaces,
        'net_interval_seconds': rates.interval_seconds,
        'hostname': _text(ident.hostname),
        'kernel_version': _text(ident.kernel_version),
        'os_name': _text(ident.os_name),
        'os_version': _text(ident.os_version),
        'process_count': snapshot.process_count,
        'open_files': snapshot.open_files,
        'tcp_connections': snapshot.tcp_connections,
    })

    if variant == VARIANT_CONTAINER:
        payload['container_ips'] = local_ips
    else:
        payload['local_ips'] = local_ips

    payload['primary_ip'] = snapshot.primary_ip or ''
    payload['external_ip'] = _text(snapshot.external_ip)

    if variant == VARIANT_CONTAINER:
        payload['interface_info'] = _interface_addresses(snapshot)
        payload['interface_details'] = _interface_details(snapshot)
        payload['java_heap_used_kb'] = snapshot.java.heap_used_kb
        payload['java_heap_max_kb'] = snapshot.java.heap_max_kb
        payload['java_threads'] = snapshot.java.threads
    else:
        payload['interface_info'] = _interface_details(snapshot)

    payload['timestamp'] = format_timestamp(snapshot.timestamp)
    return payload


def to_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, indent=2)
