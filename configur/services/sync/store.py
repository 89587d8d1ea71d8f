"""
Settings Store

Case-insensitive key/value registry populated by the sync cycle and
read by the host application.

Writes build a brand new mapping and swap it in with one assignment,
so readers on any thread see either the old contents or the new ones.
"""

from collections.abc import Iterable, Iterator, Mapping
from typing import Callable

from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger

from .fetch import Setting


class SettingsStore(Mapping):
    """
    Read-mostly settings registry.

    Keys compare case-insensitively; iteration yields keys with the
    casing they were stored with.
    """

    def __init__(self, logger: ServiceLoggerAdapter | None = None):
        self._logger = logger or get_service_logger("sync.store")
        # casefolded key -> (original key, value)
        self._data: dict[str, tuple[str, str]] = {}
        self._version = 0
        self._listeners: list[Callable[["SettingsStore"], None]] = []

    @property
    def version(self) -> int:
        """Number of merges applied so far"""
        return self._version

    def __getitem__(self, key: str) -> str:
        return self._data[key.casefold()][1]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.casefold() in self._data

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: str | None = None) -> str | None:
        entry = self._data.get(key.casefold())
        return entry[1] if entry is not None else default

    def snapshot(self) -> dict[str, str]:
        """Copy of the current contents"""
        return {original: value for original, value in self._data.values()}

    def merge(
        self,
        settings: Iterable[Setting],
        static_metadata: Mapping[str, str],
    ) -> None:
        """
        Replace the whole store with static metadata plus settings.

        A setting whose key matches an earlier entry wins; the
        collision is logged, not rejected.
        """
        data: dict[str, tuple[str, str]] = {}

        for key, value in static_metadata.items():
            data[key.casefold()] = (key, value)

        for setting in settings:
            folded = setting.key.casefold()
            if folded in data:
                self._logger.debug(
                    "App setting overrides an existing key",
                    extra={"setting_key": setting.key},
                )
            data[folded] = (setting.key, setting.value)

        self._data = data
        self._version += 1

        self._notify()

    def add_reload_listener(self, callback: Callable[["SettingsStore"], None]) -> None:
        """Call `callback(store)` after every merge"""
        self._listeners.append(callback)

    def remove_reload_listener(self, callback: Callable[["SettingsStore"], None]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception as e:
                self._logger.error(f"Reload listener failed: {e}", exc_info=True)
