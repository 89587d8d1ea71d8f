"""
Common Utilities

Shared modules used across the sync components:
- config.py - Identity, options and reserved registry keys
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Fixed-phase interval scheduler
"""

from .config import (
    ConfigurKeys,
    ConfigurOptions,
    Identity,
    format_interval,
    load_options,
    parse_connection_string,
    parse_interval,
)
from .exceptions import (
    AuthError,
    BundleFormatError,
    CacheMiss,
    ConfigurError,
    DecryptError,
    DecryptFailure,
    FetchError,
    FetchFailure,
    PushError,
)
from .logging_setup import get_service_logger, setup_logging
from .scheduler import ScheduledLoop

__all__ = [
    # Config
    "ConfigurKeys",
    "ConfigurOptions",
    "Identity",
    "format_interval",
    "load_options",
    "parse_connection_string",
    "parse_interval",
    # Exceptions
    "AuthError",
    "BundleFormatError",
    "CacheMiss",
    "ConfigurError",
    "DecryptError",
    "DecryptFailure",
    "FetchError",
    "FetchFailure",
    "PushError",
    # Logging
    "get_service_logger",
    "setup_logging",
    # Scheduling
    "ScheduledLoop",
]
