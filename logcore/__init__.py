"""
logcore: structured JSON logging to the diagnostic stream

Used by sitecenter_agent so every diagnostic lands on stderr in one
consistent line format.
"""

from logcore.logger import JSONFormatter, get_logger, setup_logging, validate_log_format

__all__ = ['JSONFormatter', 'get_logger', 'setup_logging', 'validate_log_format']
__version__ = '1.1.0'
