"""
Shared fixtures: a fake SystemMetricsSource and helpers for building runs.
"""

import time
from unittest.mock import Mock

import pytest

from sitecenter_agent.collectors import SystemSampler
from sitecenter_agent.config import AgentSettings, Credentials, EnvFileStore
from sitecenter_agent.control import StateController
from sitecenter_agent.sources import (
    CpuInfo,
    FilesystemInfo,
    HostIdentity,
    HostMemory,
    InterfaceInfo,
    LoadInfo,
    NetCounters,
    SystemMetricsSource,
)


class FakeSource(SystemMetricsSource):
    """
    In-memory source.

    Name a method in `failing` to make it raise, or map it to seconds in
    `delays` to make it hang that long first.
    """

    def __init__(self):
        self.uptime = 3600
        self.pid1_uptime = 120
        self.load_info = LoadInfo(0.8, 0.5, 0.3, 2, 150)
        self.memory = HostMemory(
            total_kb=8_000_000,
            free_kb=2_000_000,
            available_kb=6_000_000,
            buffers_kb=100_000,
            cached_kb=1_500_000,
            swap_total_kb=2_000_000,
            swap_free_kb=1_900_000,
        )
        self.cgroup = None
        self.cpu_info = CpuInfo(1000, 500, 90000, 200, 4)
        self.fs = FilesystemInfo(100_000_000, 40_000_000, 60_000_000, 40.0)
        self.counters = {
            'lo': NetCounters(rx_bytes=5_000, tx_bytes=5_000, rx_packets=50, tx_packets=50),
            'eth0': NetCounters(
                rx_bytes=10_000_000, tx_bytes=4_000_000,
                rx_packets=20_000, tx_packets=15_000,
                rx_errors=1, tx_errors=2, rx_dropped=3, tx_dropped=4,
            ),
        }
        self.ifaces = [
            InterfaceInfo('lo', 0, True),
            InterfaceInfo('eth0', 1000, True),
            InterfaceInfo('docker0', 10000, True),
        ]
        self.ident = HostIdentity('web-01', '6.1.0-18-amd64', 'Debian GNU/Linux', '12')
        self.addresses = {'lo': ['127.0.0.1'], 'eth0': ['10.0.0.5']}
        self.processes = 150
        self.files = 2048
        self.tcp = 12
        self.jvms = []
        self.failing = set()
        self.delays = {}

    def _check(self, name):
        if name in self.delays:
            time.sleep(self.delays[name])
        if name in self.failing:
            raise OSError(f'{name} unavailable')

    def uptime_seconds(self):
        self._check('uptime_seconds')
        return self.uptime

    def container_uptime_seconds(self):
        self._check('container_uptime_seconds')
        return self.pid1_uptime

    def load(self):
        self._check('load')
        return self.load_info

    def host_memory(self):
        self._check('host_memory')
        return self.memory

    def cgroup_memory(self):
        self._check('cgroup_memory')
        return self.cgroup

    def cpu(self):
        self._check('cpu')
        return self.cpu_info

    def filesystem(self, path='/'):
        self._check('filesystem')
        return self.fs

    def network_counters(self):
        self._check('network_counters')
        return self.counters

    def interfaces(self):
        self._check('interfaces')
        return self.ifaces

    def identity(self):
        self._check('identity')
        return self.ident

    def process_count(self):
        self._check('process_count')
        return self.processes

    def open_files(self):
        self._check('open_files')
        return self.files

    def tcp_connections(self):
        self._check('tcp_connections')
        return self.tcp

    def ipv4_addresses(self):
        self._check('ipv4_addresses')
        return self.addresses

    def java_processes(self, limit=5):
        self._check('java_processes')
        return self.jvms[:limit]


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def sampler(fake_source):
    """Sampler over the fake source that never touches the network"""
    return SystemSampler(fake_source, external_ip_services=[], environ={})


@pytest.fixture
def env_file(tmp_path):
    return tmp_path / 'sitecenter-host-env.sh'


@pytest.fixture
def store(env_file):
    return EnvFileStore(env_file)


@pytest.fixture
def credentials():
    return Credentials(account='acc1', monitor='mon1', secret='s3cret')


@pytest.fixture
def settings(tmp_path, env_file):
    return AgentSettings(
        env_file=str(env_file),
        state_dir=str(tmp_path / 'state'),
        external_ip_services=[],
        send_delay_max=0,
        max_runtime=0,
    )


@pytest.fixture
def clock():
    """Settable clock: clock.now = <epoch seconds>"""
    fake = Mock()
    fake.now = 1_760_000_000.0
    fake.side_effect = lambda: fake.now
    return fake


@pytest.fixture
def controller(store, clock):
    return StateController(store, clock=clock)


@pytest.fixture
def response_factory():
    """Build a fake requests response: response_factory(403, 'Invalid secret!')"""
    def make_response(status_code=200, text='OK'):
        response = Mock()
        response.status_code = status_code
        response.text = text
        return response
    return make_response
