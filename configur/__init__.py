"""
Configur client

Keeps an application's settings in sync with the Configur API.
Values travel end-to-end encrypted and are decrypted locally with the
app password.
"""

from configur.common.config import ConfigurKeys, ConfigurOptions, Identity, load_options
from configur.services.sync import (
    ConfigurProvider,
    SettingsStore,
    SyncOrchestrator,
    add_configur,
)

__version__ = "1.0.0"

__all__ = [
    "ConfigurKeys",
    "ConfigurOptions",
    "ConfigurProvider",
    "Identity",
    "SettingsStore",
    "SyncOrchestrator",
    "add_configur",
    "load_options",
]
