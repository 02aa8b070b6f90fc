"""
sitecenter_agent: Lightweight host/container telemetry collector

Samples OS metrics once per scheduler tick, derives network rates from the
previous tick's counters and reports one snapshot to a SiteCenter monitor.
"""

__version__ = '2.0.0'

from sitecenter_agent.collectors import Snapshot, SystemSampler
from sitecenter_agent.reporter import Reporter
from sitecenter_agent.sources import LinuxMetricsSource, SystemMetricsSource

__all__ = ['Snapshot', 'SystemSampler', 'Reporter', 'LinuxMetricsSource', 'SystemMetricsSource']
