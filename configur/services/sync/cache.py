"""
Bundle File Cache

Local file caching for offline start.
Keeps the last successfully fetched bundle document per application,
byte for byte as the API returned it.
"""

import os
import re
import tempfile
from pathlib import Path

from configur.common.exceptions import BundleFormatError, CacheMiss
from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger

from .fetch import Bundle, parse_bundle

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class LocalCache:
    """
    One cache file per app id.

    Saving is best-effort and never raises. Loading raises CacheMiss for
    anything short of a parseable bundle, including when the cache is
    disabled.
    """

    def __init__(
        self,
        cache_dir: Path | str = ".",
        enabled: bool = True,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.enabled = enabled
        self._logger = logger or get_service_logger("sync.cache")

    def path_for(self, app_id: str) -> Path:
        """Cache file for an application"""
        safe_id = _UNSAFE_CHARS.sub("_", app_id)
        return self.cache_dir / f"configur_appsettings_{safe_id}.json"

    def save(self, app_id: str, raw_bundle: str) -> None:
        """
        Persist a raw bundle document, replacing any previous one.

        Written to a temp file and renamed so readers never see a
        half-written cache.
        """
        if not self.enabled:
            return

        path = self.path_for(app_id)
        self._logger.debug(
            "Saving app settings to the file cache",
            extra={"app_id": app_id, "stage": "cache_save"},
        )

        temp_name = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=self.cache_dir
            )
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(raw_bundle)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_name, path)
            temp_name = None

            self._logger.info(
                "Saved app settings to the file cache",
                extra={"app_id": app_id, "stage": "cache_save", "path": str(path)},
            )
        except OSError as e:
            self._logger.error(
                f"Failed to save app settings to the file cache: {e}",
                extra={"app_id": app_id, "stage": "cache_save"},
            )
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    pass

    def load(self, app_id: str) -> Bundle:
        """
        Load the cached bundle.

        Raises:
            CacheMiss: disabled, absent, unreadable or unparseable
        """
        if not self.enabled:
            raise CacheMiss(app_id, "file cache disabled")

        path = self.path_for(app_id)
        if not path.exists():
            raise CacheMiss(app_id, "no cached bundle")

        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                raw = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise CacheMiss(app_id, f"unreadable cache file: {e}") from e

        try:
            bundle = parse_bundle(raw)
        except BundleFormatError as e:
            raise CacheMiss(app_id, f"corrupt cache file: {e.message}") from e

        self._logger.info(
            "Loaded app settings from the file cache",
            extra={"app_id": app_id, "stage": "cache_load", "etag": bundle.etag},
        )
        return bundle

