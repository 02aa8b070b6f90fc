"""
LogCore: structured diagnostic logging for the collector.

Everything goes to stderr so stdout stays clean for wrapper tooling.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO

PLAIN_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'
REQUIRED_FIELDS = ('timestamp', 'level', 'logger', 'message')
VALID_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class JSONFormatter(logging.Formatter):
    """
    Formats each record as a single JSON line.

    Output format:
    {
        "timestamp": "2026-02-08T20:30:00.123Z",
        "level": "WARNING",
        "logger": "sitecenter_agent.collectors",
        "message": "Could not read memory",
        "context": {...}  # from extra={'context': {...}}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_data = {
            'timestamp': created.strftime('%Y-%m-%dT%H:%M:%S.') + f'{created.microsecond // 1000:03d}Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        context = getattr(record, 'context', None)
        if context:
            log_data['context'] = context

        if record.exc_info and record.exc_info[0] is not None:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info),
            }

        if record.levelno <= logging.DEBUG:
            log_data['source'] = {
                'file': record.pathname,
                'line': record.lineno,
                'function': record.funcName,
            }

        return json.dumps(log_data, default=str)


def _make_formatter(use_json: bool) -> logging.Formatter:
    if use_json:
        return JSONFormatter()
    return logging.Formatter(PLAIN_FORMAT)


def get_logger(
    name: str,
    level: int = logging.WARNING,
    use_json: bool = True,
    stream: Optional[TextIO] = None
) -> logging.Logger:
    """
    Get a logger with a single stderr handler attached.

    Calling this again for the same name replaces the previous handler
    instead of stacking a second one.

    Args:
        name: Logger name (typically the package name)
        level: Logging level (default: WARNING)
        use_json: Use JSON formatter (default: True)
        stream: Output stream (default: sys.stderr)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    for old in [h for h in logger.handlers if getattr(h, '_logcore', False)]:
        logger.removeHandler(old)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._logcore = True
    logger.addHandler(handler)
    handler.setLevel(level)
    handler.setFormatter(_make_formatter(use_json))
    logger.propagate = False
    return logger


def setup_logging(
    package: str,
    verbose: bool = False,
    use_json: bool = True,
    stream: Optional[TextIO] = None
) -> logging.Logger:
    """Configure the package logger once at process start."""
    level = logging.DEBUG if verbose else logging.WARNING
    return get_logger(package, level=level, use_json=use_json, stream=stream)


def validate_log_format(log_line: str) -> bool:
    """
    Validate that a log line is a JSON object with the required fields.

    Args:
        log_line: Log line to validate

    Returns:
        True if valid, False otherwise
    """
    try:
        data = json.loads(log_line)
    except (json.JSONDecodeError, TypeError):
        return False

    if not isinstance(data, dict):
        return False
    if not all(field in data for field in REQUIRED_FIELDS):
        return False
    return data['level'] in VALID_LEVELS
