"""
Settings Sync Service

Responsibilities:
- Fetch the encrypted settings bundle from the Configur API
- Keep the last good bundle in a local file cache for offline start
- Decrypt settings with the app password
- Swap them atomically into the settings store
- Refresh on a timer and whenever the push channel says so
"""

from .provider import ConfigurProvider, add_configur
from .service import SyncOrchestrator, SyncState
from .store import SettingsStore

__all__ = [
    "ConfigurProvider",
    "SettingsStore",
    "SyncOrchestrator",
    "SyncState",
    "add_configur",
]
