"""
Unit tests for rate state persistence and rate calculation.
"""

import pytest

from sitecenter_agent.rates import (
    CONTAINER_STATE_PREFIX,
    RateState,
    RateStateStore,
    compute_rates,
    utilization,
)


def state(ts, rx=0, tx=0, rxp=0, txp=0):
    return RateState(ts, rx, tx, rxp, txp)


class TestRateState:
    """Test RateState line format"""

    def test_to_line(self):
        assert state(1700000000, 1, 2, 3, 4).to_line() == '1700000000 1 2 3 4\n'

    def test_from_line(self):
        assert RateState.from_line('1700000000 10 20 30 40\n') == state(1700000000, 10, 20, 30, 40)

    @pytest.mark.parametrize('text', [
        '',
        '1700000000 10 20 30',
        '1700000000 10 20 30 40 50',
        '1700000000 10 -20 30 40',
        '1700000000 10 abc 30 40',
        '1700000000.5 10 20 30 40',
    ])
    def test_from_line_rejects_malformed(self, text):
        assert RateState.from_line(text) is None


class TestRateStateStore:
    """Test RateStateStore"""

    def test_path_is_per_monitor(self, tmp_path):
        store = RateStateStore(tmp_path, 'mon1')
        assert store.path == tmp_path / 'sitecenter-net-stats-mon1.tmp'

    def test_container_prefix(self, tmp_path):
        store = RateStateStore(tmp_path, 'mon1', prefix=CONTAINER_STATE_PREFIX)
        assert store.path.name == 'sitecenter-docker-net-stats-mon1.tmp'

    def test_unsafe_monitor_code_is_sanitised(self, tmp_path):
        store = RateStateStore(tmp_path, '../etc/passwd')
        assert store.path.parent == tmp_path
        assert '/' not in store.path.name

    def test_missing_file_loads_none(self, tmp_path):
        assert RateStateStore(tmp_path, 'mon1').load() is None

    def test_corrupt_file_loads_none(self, tmp_path):
        """Should behave like the first run when the file is garbage"""
        store = RateStateStore(tmp_path, 'mon1')
        store.path.write_text('garbage\n')

        assert store.load() is None

    def test_save_then_load(self, tmp_path):
        store = RateStateStore(tmp_path / 'nested', 'mon1')
        saved = state(1700000000, 10, 20, 30, 40)

        assert store.save(saved) is True
        assert store.load() == saved
        assert [p.name for p in store.path.parent.iterdir()] == [store.path.name]

    def test_save_to_unwritable_location_returns_false(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('')
        store = RateStateStore(blocker, 'mon1')

        assert store.save(state(1)) is False


class TestUtilization:
    """Test utilization"""

    def test_percent_of_capacity(self):
        # 12.5 MB/s is 100 Mbps, a tenth of a gigabit link
        assert utilization(12_500_000, 1000) == 10.0

    def test_rounded_to_two_decimals(self):
        assert utilization(100_000, 1000) == 0.08

    def test_clamped_to_hundred(self):
        assert utilization(500_000_000, 100) == 100.0

    def test_unknown_capacity_is_zero(self):
        assert utilization(1_000_000, 0) == 0.0
        assert utilization(1_000_000, -1) == 0.0


class TestComputeRates:
    """Test compute_rates"""

    def test_first_run_is_all_zero(self):
        rates = compute_rates(state(1000, 500, 500), None, 1000)

        assert rates.interval_seconds == 0
        assert rates.rx_bytes_per_sec == 0
        assert rates.total_utilization == 0.0

    def test_sixty_second_interval(self):
        """Should divide byte and packet deltas by the elapsed seconds"""
        previous = state(1000, 10_000_000, 2_000_000, 5_000, 3_000)
        current = state(1060, 16_000_000, 2_600_000, 5_600, 3_060)

        rates = compute_rates(current, previous, 1000)

        assert rates.interval_seconds == 60
        assert rates.rx_bytes_per_sec == 100_000
        assert rates.tx_bytes_per_sec == 10_000
        assert rates.rx_packets_per_sec == 10
        assert rates.tx_packets_per_sec == 1
        assert rates.rx_utilization == 0.08
        assert rates.tx_utilization == 0.01
        assert rates.total_utilization == 0.08

    def test_rates_use_integer_division(self):
        rates = compute_rates(state(1060, rx=119), state(1000), 0)
        assert rates.rx_bytes_per_sec == 1

    def test_negative_delta_clamps_to_zero(self):
        """Should report zero after a counter reset"""
        previous = state(1000, 50_000_000, 50_000_000, 9_000, 9_000)
        current = state(1060, 1_000, 60_000_000, 10, 9_600)

        rates = compute_rates(current, previous, 1000)

        assert rates.rx_bytes_per_sec == 0
        assert rates.rx_packets_per_sec == 0
        assert rates.tx_bytes_per_sec == 166_666
        assert rates.tx_packets_per_sec == 10

    @pytest.mark.parametrize('interval', [10, 1200])
    def test_window_bounds_are_inclusive(self, interval):
        rates = compute_rates(state(1000 + interval, rx=interval * 100), state(1000), 1000)

        assert rates.interval_seconds == interval
        assert rates.rx_bytes_per_sec == 100

    @pytest.mark.parametrize('interval', [9, 1201, 86400])
    def test_outside_window_gives_zero_rates(self, interval):
        """Should keep the raw interval but report no rates"""
        rates = compute_rates(state(1000 + interval, rx=10_000_000), state(1000), 1000)

        assert rates.interval_seconds == interval
        assert rates.rx_bytes_per_sec == 0
        assert rates.rx_utilization == 0.0

    def test_same_timestamp_gives_zero(self):
        same = state(1000, 10, 10, 1, 1)

        rates = compute_rates(same, same, 1000, window=(0, 1200))

        assert rates.interval_seconds == 0
        assert rates.rx_bytes_per_sec == 0

    def test_state_from_future_gives_zero(self):
        """Should not report a negative interval after a clock step back"""
        rates = compute_rates(state(1000, rx=10_000), state(2000), 1000)

        assert rates.interval_seconds == 0
        assert rates.rx_bytes_per_sec == 0

    def test_custom_window(self):
        rates = compute_rates(state(1005, rx=500), state(1000), 0, window=(5, 30))
        assert rates.rx_bytes_per_sec == 100

    def test_total_utilization_is_busier_direction(self):
        previous = state(1000)
        current = state(1010, rx=1_250_000, tx=12_500_000)

        rates = compute_rates(current, previous, 100)

        assert rates.rx_utilization == 1.0
        assert rates.tx_utilization == 10.0
        assert rates.total_utilization == 10.0
