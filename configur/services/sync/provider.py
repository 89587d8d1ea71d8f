"""
Configur Provider

Entry point for host applications:
- Blocking load()/reload() for synchronous startup code
- start()/stop() for asyncio hosts that want the refresh timer and push
- `settings` is the registry the host reads from
"""

import asyncio

from configur.common.config import (
    ConfigurOptions,
    Identity,
    parse_connection_string,
)
from configur.common.logging_setup import get_service_logger

from .service import SyncOrchestrator
from .store import SettingsStore

logger = get_service_logger("provider")


class ConfigurProvider:
    """Populates one SettingsStore from the Configur API"""

    def __init__(
        self,
        identity: Identity,
        options: ConfigurOptions | None = None,
        settings: SettingsStore | None = None,
    ):
        self.identity = identity
        self.options = options or ConfigurOptions()
        self.settings = settings or SettingsStore()
        self._orchestrator: SyncOrchestrator | None = None

    def _new_orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(self.identity, self.options, store=self.settings)

    def load(self) -> bool:
        """
        Run one sync cycle, blocking until it finishes.

        Must not be called from inside a running event loop; asyncio
        hosts await reload_async() instead.

        Returns:
            True if the settings were replaced
        """
        return asyncio.run(self.reload_async())

    def reload(self) -> bool:
        """Alias of load(); every cycle replaces the whole store"""
        return self.load()

    async def reload_async(self) -> bool:
        """Run one sync cycle on the current event loop"""
        if self._orchestrator is not None:
            return await self._orchestrator.run_cycle("reload")

        orchestrator = self._new_orchestrator()
        try:
            return await orchestrator.run_cycle("load")
        finally:
            await orchestrator.aclose()

    async def start(self) -> None:
        """Initial cycle plus refresh timer and push listener"""
        if self._orchestrator is not None:
            return
        self._orchestrator = self._new_orchestrator()
        await self._orchestrator.start()

    async def stop(self) -> None:
        orchestrator, self._orchestrator = self._orchestrator, None
        if orchestrator is not None:
            await orchestrator.stop()

    @property
    def orchestrator(self) -> SyncOrchestrator | None:
        return self._orchestrator


def add_configur(
    connection_string: str | None,
    options: ConfigurOptions | None = None,
) -> ConfigurProvider | None:
    """
    Build a provider from a connection string.

    Returns:
        ConfigurProvider, or None when the connection string is blank or
        lacks AppId, AppSecret or AppPassword
    """
    identity = parse_connection_string(connection_string)
    if identity is None:
        logger.warning("Configur connection string is missing or incomplete")
        return None

    return ConfigurProvider(identity, options)
