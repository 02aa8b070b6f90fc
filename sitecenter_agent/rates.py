"""
Network rate calculation across invocations.

The previous invocation's cumulative counters live in a small per-monitor
state file: one line of five integers
"timestamp rx_bytes tx_bytes rx_packets tx_packets".
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = (10, 1200)
HOST_STATE_PREFIX = 'sitecenter-net-stats'
CONTAINER_STATE_PREFIX = 'sitecenter-docker-net-stats'


@dataclass
class RateState:
    """Cumulative counters from one collection"""
    timestamp: int
    rx_bytes: int
    tx_bytes: int
    rx_packets: int
    tx_packets: int

    def to_line(self) -> str:
        return f'{self.timestamp} {self.rx_bytes} {self.tx_bytes} {self.rx_packets} {self.tx_packets}\n'

    @classmethod
    def from_line(cls, text: str) -> Optional['RateState']:
        """Parse a state line; anything but five non-negative integers is None"""
        parts = text.split()
        if len(parts) != 5 or not all(p.isdigit() for p in parts):
            return None
        return cls(*(int(p) for p in parts))


@dataclass
class NetworkRates:
    interval_seconds: int = 0
    rx_bytes_per_sec: int = 0
    tx_bytes_per_sec: int = 0
    rx_packets_per_sec: int = 0
    tx_packets_per_sec: int = 0
    rx_utilization: float = 0.0
    tx_utilization: float = 0.0
    total_utilization: float = 0.0


class RateStateStore:
    """Rate state file for one monitor"""

    def __init__(self, state_dir, monitor_code: str, prefix: str = HOST_STATE_PREFIX):
        safe_code = re.sub(r'[^A-Za-z0-9_.-]', '_', monitor_code)
        self.path = Path(state_dir) / f'{prefix}-{safe_code}.tmp'

    def load(self) -> Optional[RateState]:
        """Previous state, or None when missing or corrupt"""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read rate state", extra={'context': {'path': str(self.path), 'error': str(e)}})
            return None

        state = RateState.from_line(text)
        if state is None:
            logger.warning("Ignoring corrupt rate state", extra={'context': {'path': str(self.path)}})
        return state

    def save(self, state: RateState) -> bool:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.')
            with os.fdopen(fd, 'w') as f:
                f.write(state.to_line())
            os.replace(tmp_path, self.path)
            return True
        except OSError as e:
            logger.error("Could not write rate state", extra={'context': {'path': str(self.path), 'error': str(e)}})
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            return False


def utilization(bytes_per_sec: int, capacity_mbps: int) -> float:
    """Percent of link capacity used by a byte rate, clamped to [0, 100]"""
    if capacity_mbps <= 0 or bytes_per_sec <= 0:
        return 0.0
    mbps = bytes_per_sec * 8 / 1_000_000
    return round(min(mbps / capacity_mbps * 100, 100.0), 2)


def compute_rates(
    current: RateState,
    previous: Optional[RateState],
    capacity_mbps: int = 0,
    window: Tuple[int, int] = DEFAULT_WINDOW
) -> NetworkRates:
    """
    Per-second rates between two collections.

    Rates are only computed when the elapsed time lies inside `window`
    (inclusive); otherwise they stay zero and the raw interval is kept for
    diagnostics. Negative deltas (counter reset, interface replaced) count
    as zero, which under-reports traffic across the reset.
    """
    rates = NetworkRates()
    if previous is None:
        return rates

    interval = current.timestamp - previous.timestamp
    if interval < 0:
        logger.warning(
            "Rate state is from the future; skipping rates",
            extra={'context': {'interval': interval}}
        )
        return rates

    rates.interval_seconds = interval
    low, high = window
    if not (low <= interval <= high) or interval == 0:
        logger.debug("Interval outside rate window", extra={'context': {'interval': interval, 'window': list(window)}})
        return rates

    def per_sec(now: int, before: int) -> int:
        return max(now - before, 0) // interval

    rates.rx_bytes_per_sec = per_sec(current.rx_bytes, previous.rx_bytes)
    rates.tx_bytes_per_sec = per_sec(current.tx_bytes, previous.tx_bytes)
    rates.rx_packets_per_sec = per_sec(current.rx_packets, previous.rx_packets)
    rates.tx_packets_per_sec = per_sec(current.tx_packets, previous.tx_packets)

    rates.rx_utilization = utilization(rates.rx_bytes_per_sec, capacity_mbps)
    rates.tx_utilization = utilization(rates.tx_bytes_per_sec, capacity_mbps)
    # full duplex: each direction has the whole link
    rates.total_utilization = max(rates.rx_utilization, rates.tx_utilization)
    return rates
