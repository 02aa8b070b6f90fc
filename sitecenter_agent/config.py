"""
Configuration: credentials/control-flag env file and YAML agent settings.
"""

import logging
import os
import re
import shlex
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

KEY_ACCOUNT = 'SITECENTER_ACCOUNT'
KEY_MONITOR = 'SITECENTER_MONITOR'
KEY_SECRET = 'SITECENTER_SECRET'
KEY_STOPPED = 'SITECENTER_STOPPED'
KEY_PAUSED_TILL = 'SITECENTER_PAUSED_TILL'

HOST_ENV_FILE = '/usr/local/bin/sitecenter-host-env.sh'
CONTAINER_ENV_FILE = '/usr/local/bin/sitecenter-docker-env.sh'

VARIANT_HOST = 'host'
VARIANT_CONTAINER = 'container'

DEFAULT_EXTERNAL_IP_SERVICES = [
    'https://ipv4.icanhazip.com',
    'https://api.ipify.org',
    'https://checkip.amazonaws.com',
]

_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_SAFE_VALUE_RE = re.compile(r'^[A-Za-z0-9_.,:/@%+=-]*$')


class AgentError(Exception):
    """Base class for collector errors that end the invocation."""

    exit_code = 1


class UsageError(AgentError):
    """Required identifiers are missing."""


class ConfigError(AgentError):
    """Settings file is unreadable or malformed."""


def _parse_line(line: str) -> Optional[tuple]:
    stripped = line.strip()
    if not stripped or stripped.startswith('#'):
        return None
    if stripped.startswith('export '):
        stripped = stripped[len('export '):].lstrip()
    key, sep, raw = stripped.partition('=')
    key = key.strip()
    if not sep or not _KEY_RE.match(key):
        return None
    try:
        value = ' '.join(shlex.split(raw, comments=True))
    except ValueError:
        value = raw.strip().strip('"\'')
    return key, value


def _format_value(value: str) -> str:
    if _SAFE_VALUE_RE.match(value):
        return value
    escaped = re.sub(r'(["\\$`])', r'\\\1', value)
    return f'"{escaped}"'


class EnvFileStore:
    """
    Key/value store backed by a shell-style env file.

    Reads tolerate a missing or unreadable file (empty store). Writes
    replace the whole file so an interrupted run never leaves a
    half-written file behind.
    """

    def __init__(self, path):
        self.path = Path(path)

    def _read_lines(self) -> List[str]:
        try:
            return self.path.read_text().splitlines()
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(
                "Could not read env file",
                extra={'context': {'path': str(self.path), 'error': str(e)}}
            )
            return []

    def load(self) -> Dict[str, str]:
        values = {}
        for line in self._read_lines():
            parsed = _parse_line(line)
            if parsed:
                values[parsed[0]] = parsed[1]
        return values

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.load().get(key, default)

    def set(self, key: str, value: str) -> bool:
        """Set key to value. Returns False if the file could not be written."""
        lines = self._read_lines()
        new_line = f'{key}={_format_value(value)}'
        updated = []
        replaced = False
        for line in lines:
            parsed = _parse_line(line)
            if parsed and parsed[0] == key:
                if not replaced:
                    updated.append(new_line)
                    replaced = True
                continue
            updated.append(line)
        if not replaced:
            updated.append(new_line)

        if updated == lines:
            return True
        return self._write(updated)

    def unset(self, key: str) -> bool:
        """Remove every assignment of key. Returns False on write failure."""
        lines = self._read_lines()
        updated = []
        for line in lines:
            parsed = _parse_line(line)
            if parsed and parsed[0] == key:
                continue
            updated.append(line)
        if updated == lines:
            return True
        return self._write(updated)

    def _write(self, lines: List[str]) -> bool:
        content = '\n'.join(lines) + '\n'
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.')
            with os.fdopen(fd, 'w') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
            return True
        except OSError as e:
            logger.error(
                "Could not write env file",
                extra={'context': {'path': str(self.path), 'error': str(e)}}
            )
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            return False


@dataclass
class Credentials:
    account: str
    monitor: str
    secret: str

    def missing(self) -> List[str]:
        return [name for name in ('account', 'monitor', 'secret') if not getattr(self, name)]

    def require(self, usage: str) -> 'Credentials':
        """Raise UsageError naming whatever is missing"""
        missing = self.missing()
        if missing:
            raise UsageError(f"Missing: {', '.join(missing)}\nUsage: {usage}")
        return self


def resolve_credentials(
    store: EnvFileStore,
    account: Optional[str] = None,
    monitor: Optional[str] = None,
    secret: Optional[str] = None
) -> Credentials:
    """Positional arguments win over values from the env file."""
    values = store.load()
    return Credentials(
        account=(account or values.get(KEY_ACCOUNT, '')).strip(),
        monitor=(monitor or values.get(KEY_MONITOR, '')).strip(),
        secret=(secret or values.get(KEY_SECRET, '')).strip(),
    )


@dataclass
class AgentSettings:
    """Tunables for one collector invocation."""
    monitor_host: str = 'mon.sitecenter.app'
    variant: str = VARIANT_HOST
    env_file: Optional[str] = None
    state_dir: str = '/tmp'
    send_delay_max: float = 40.0
    request_timeout: float = 30.0
    external_ip_timeout: float = 5.0
    external_ip_services: List[str] = field(default_factory=lambda: list(DEFAULT_EXTERNAL_IP_SERVICES))
    rate_window_min: int = 10
    rate_window_max: int = 1200
    pause_seconds: int = 86400
    max_runtime: int = 120
    memory_limit: Optional[str] = None

    def resolved_env_file(self) -> str:
        if self.env_file:
            return self.env_file
        return CONTAINER_ENV_FILE if self.variant == VARIANT_CONTAINER else HOST_ENV_FILE

    @property
    def base_url(self) -> str:
        host = self.monitor_host.rstrip('/')
        if host.startswith(('http://', 'https://')):
            return host
        return f'https://{host}'


def load_settings(path: Optional[str] = None) -> AgentSettings:
    """
    Load agent settings from the `agent:` section of a YAML file.

    Unknown keys are ignored. With no path the defaults are returned.
    """
    settings = AgentSettings()
    if path is None:
        return settings

    try:
        with Path(path).open() as f:
            config_data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")

    agent_config = config_data.get('agent', {}) or {}
    if not isinstance(agent_config, dict):
        raise ConfigError(f"'agent' section in {path} must be a mapping")

    known = {f.name: f for f in fields(AgentSettings)}
    for key, value in agent_config.items():
        if key not in known:
            logger.debug("Ignoring unknown setting", extra={'context': {'key': key}})
            continue
        default = getattr(settings, key)
        if isinstance(default, bool) or value is None:
            setattr(settings, key, value)
        elif isinstance(default, (int, float)):
            try:
                setattr(settings, key, type(default)(value))
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Setting '{key}' must be numeric, got {value!r}") from e
        else:
            setattr(settings, key, value)

    if settings.variant not in (VARIANT_HOST, VARIANT_CONTAINER):
        raise ConfigError(f"Unknown variant '{settings.variant}' (expected host or container)")
    if settings.rate_window_min > settings.rate_window_max:
        raise ConfigError("rate_window_min must not exceed rate_window_max")

    return settings
