"""
Invocation gating: control flags, overlap detection and runtime limits.
"""

import logging
import os
import re
import resource
import signal
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import psutil

from sitecenter_agent.config import KEY_PAUSED_TILL, KEY_STOPPED, AgentError, EnvFileStore

logger = logging.getLogger(__name__)

PAUSE_FORMAT = '%Y-%m-%d %H:%M:%S'
TRUE_VALUES = ('true', '1', 'yes', 'on')


class RuntimeLimitExceeded(AgentError):
    """The invocation ran past its wall-time limit."""

    exit_code = 0


@dataclass
class GateDecision:
    proceed: bool
    reason: str = ''


def parse_pause_until(value: Optional[str]) -> Optional[float]:
    """
    Epoch seconds for a paused-until value.

    Accepts epoch seconds, "YYYY-MM-DD HH:MM:SS" (local time) or ISO 8601.
    Returns None when empty or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if re.fullmatch(r'\d+(\.\d+)?', value):
        return float(value)
    for parse in (lambda v: datetime.strptime(v, PAUSE_FORMAT), datetime.fromisoformat):
        try:
            return parse(value).timestamp()
        except ValueError:
            continue
    return None


class StateController:
    """Reads and updates the stopped / paused-until flags"""

    def __init__(self, store: EnvFileStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def check(self) -> GateDecision:
        """Decide whether this invocation may collect and report."""
        values = self.store.load()

        if values.get(KEY_STOPPED, 'false').strip().lower() in TRUE_VALUES:
            logger.warning("Monitoring is stopped permanently; exiting")
            return GateDecision(False, 'stopped')

        raw_pause = values.get(KEY_PAUSED_TILL, '')
        if not raw_pause:
            return GateDecision(True)

        until = parse_pause_until(raw_pause)
        if until is None:
            logger.warning("Ignoring unparseable pause value", extra={'context': {'value': raw_pause}})
            return GateDecision(True)

        now = self.clock()
        if now >= until:
            logger.info("Pause period expired; resuming monitoring", extra={'context': {'paused_till': raw_pause}})
            self.clear_pause()
            return GateDecision(True, 'pause-expired')

        remaining = int(until - now)
        hours, minutes = remaining // 3600, (remaining % 3600) // 60
        logger.warning(
            f"Monitoring is paused until {raw_pause} ({hours}h {minutes}m remaining); exiting",
            extra={'context': {'paused_till': raw_pause, 'remaining_seconds': remaining}}
        )
        return GateDecision(False, 'paused')

    def mark_stopped(self, reason: str) -> bool:
        logger.critical(f"{reason} - stopping monitoring permanently")
        ok = self.store.set(KEY_STOPPED, 'true')
        if ok:
            logger.critical(
                f"Monitoring disabled. To re-enable, set {KEY_STOPPED}=false in {self.store.path}"
            )
        return ok

    def mark_paused(self, reason: str, seconds: int = 86400) -> Optional[str]:
        """Pause for `seconds`; returns the stored pause value or None on failure."""
        until = datetime.fromtimestamp(self.clock() + seconds).strftime(PAUSE_FORMAT)
        logger.warning(f"{reason} - pausing monitoring until {until}")
        if not self.store.set(KEY_PAUSED_TILL, until):
            return None
        return until

    def clear_pause(self) -> bool:
        return self.store.unset(KEY_PAUSED_TILL)


class RunGuard:
    """
    Detects another live collector for the same monitor.

    The marker file only records a PID; whether that PID is still a live
    process that started before the marker was written decides if it
    counts, so a marker left by a killed run never blocks later runs.
    """

    def __init__(self, state_dir, monitor_code: str, prefix: str = 'sitecenter-agent'):
        safe_code = re.sub(r'[^A-Za-z0-9_.-]', '_', monitor_code)
        self.path = Path(state_dir) / f'{prefix}-{safe_code}.pid'
        self._held = False

    def running_pid(self) -> Optional[int]:
        """PID of another live collector for this monitor, if any"""
        try:
            raw = self.path.read_text().strip()
            written_at = self.path.stat().st_mtime
        except (OSError, UnicodeDecodeError):
            return None

        if not raw.isdigit():
            return None
        pid = int(raw)
        if pid == os.getpid():
            return None

        try:
            proc = psutil.Process(pid)
            started = proc.create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
        if started > written_at + 1:
            # PID was recycled by an unrelated process
            return None
        return pid

    def acquire(self) -> bool:
        other = self.running_pid()
        if other is not None:
            logger.warning(
                "Another collector for this monitor is still running; exiting",
                extra={'context': {'pid': other}}
            )
            return False

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.')
            with os.fdopen(fd, 'w') as f:
                f.write(f'{os.getpid()}\n')
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning("Could not write run marker", extra={'context': {'path': str(self.path), 'error': str(e)}})
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        self._held = True
        return True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            if self.path.read_text().strip() == str(os.getpid()):
                self.path.unlink()
        except OSError as e:
            logger.debug("Could not remove run marker", extra={'context': {'error': str(e)}})

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


@contextmanager
def runtime_limit(seconds: int):
    """Raise RuntimeLimitExceeded if the block runs longer than `seconds`."""
    if seconds <= 0 or not hasattr(signal, 'SIGALRM'):
        yield
        return

    def _on_alarm(signum, frame):
        raise RuntimeLimitExceeded(f"Invocation exceeded {seconds}s wall-time limit")

    previous = signal.signal(signal.SIGALRM, _on_alarm)
    signal.alarm(int(seconds))
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, previous)


def limit_cpu_time(seconds: int) -> None:
    """Lower the soft CPU-time limit for this process."""
    if seconds <= 0:
        return
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_CPU)
        if hard != resource.RLIM_INFINITY:
            seconds = min(seconds, hard)
        if soft == resource.RLIM_INFINITY or soft > seconds:
            resource.setrlimit(resource.RLIMIT_CPU, (seconds, hard))
    except (ValueError, OSError) as e:
        logger.debug("Could not set CPU time limit", extra={'context': {'error': str(e)}})
