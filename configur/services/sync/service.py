"""
Sync Orchestrator

Keeps the settings store in step with the Configur API:
- Fetch the bundle (falling back to the file cache when the API fails)
- Decrypt it with the app password
- Swap the decrypted settings plus static metadata into the store
- Re-arm the push listener with the channel from the new bundle

Cycles run one at a time. They are triggered by the refresh timer and
by push invalidations; the latter go through a single-slot queue so a
burst of notifications costs one extra cycle, not one per message.
"""

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum

import httpx

from configur.common.config import (
    ConfigurKeys,
    ConfigurOptions,
    Identity,
    format_bool,
    format_interval,
)
from configur.common.exceptions import AuthError, CacheMiss, DecryptError, FetchError
from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger
from configur.common.scheduler import ScheduledLoop

from .auth import CredentialExchanger
from .cache import LocalCache
from .crypto import DecryptedBundle, Decryptor
from .fetch import Bundle, PushChannel, RemoteFetcher
from .push import PushListener, PushSubscription
from .store import SettingsStore


class SyncState(str, Enum):
    """Where the current (or last) cycle is"""
    IDLE = "idle"
    FETCHING = "fetching"
    FETCHED_OK = "fetched_ok"
    FETCH_FAILED = "fetch_failed"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    DECRYPTING = "decrypting"
    MERGED_OK = "merged_ok"
    DECRYPT_FAILED = "decrypt_failed"


class SyncOrchestrator:
    """
    Runs sync cycles against one application identity.

    Owns the refresh state (timer, last success, push subscription).
    Every stage failure is logged and ends the cycle with the store
    untouched; nothing is raised to the caller.
    """

    def __init__(
        self,
        identity: Identity,
        options: ConfigurOptions,
        store: SettingsStore | None = None,
        fetcher: RemoteFetcher | None = None,
        cache: LocalCache | None = None,
        decryptor: Decryptor | None = None,
        push_listener: PushListener | None = None,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self.identity = identity
        self.options = options
        self._logger = logger or get_service_logger("sync")

        self._client: httpx.AsyncClient | None = None
        if fetcher is None:
            self._client = httpx.AsyncClient(timeout=options.request_timeout_s)
            exchanger = CredentialExchanger(
                self._client,
                is_development=options.is_development,
                timeout=options.request_timeout_s,
            )
            fetcher = RemoteFetcher(self._client, options, exchanger)

        self.store = store or SettingsStore()
        self.fetcher = fetcher
        self.cache = cache or LocalCache(
            options.file_cache_dir, enabled=options.is_file_cache_enabled
        )
        self.decryptor = decryptor or Decryptor()
        self.push_listener = push_listener or PushListener(timeout=options.request_timeout_s)

        self.state = SyncState.IDLE
        self.last_success_at: datetime | None = None
        self.cycle_count = 0

        self._cycle_lock = asyncio.Lock()
        self._refresh_requests: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._timer: ScheduledLoop | None = None
        self._refresh_task: asyncio.Task | None = None
        self._push_subscription: PushSubscription | None = None
        self._running = False

    @property
    def push_subscription(self) -> PushSubscription | None:
        return self._push_subscription

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run the first cycle, then start the refresh timer and worker"""
        if self._running:
            return

        self._running = True
        self._logger.info(
            f"Starting settings sync (refresh: {format_interval(self.options.refresh_interval_s)})",
            extra={"app_id": self.identity.app_id},
        )

        await self.run_cycle("startup")

        self._refresh_task = asyncio.create_task(
            self._refresh_loop(), name="configur:refresh"
        )
        self._timer = ScheduledLoop(
            self.options.refresh_interval_s,
            self._scheduled_cycle,
            name="configur-refresh",
        )
        await self._timer.start()

    async def stop(self) -> None:
        """
        Stop timer and push subscription.

        A cycle already in progress is allowed to finish.
        """
        self._running = False

        if self._timer:
            await self._timer.stop()
            self._timer = None

        await self._cancel_push()

        # Wait out an in-flight cycle before tearing down the worker
        async with self._cycle_lock:
            if self._refresh_task:
                self._refresh_task.cancel()
                try:
                    await self._refresh_task
                except asyncio.CancelledError:
                    pass
                self._refresh_task = None

        await self.aclose()

        self._logger.info("Settings sync stopped", extra={"app_id": self.identity.app_id})

    async def aclose(self) -> None:
        """Release the HTTP client this orchestrator created"""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def request_refresh(self, reason: str = "push") -> bool:
        """
        Ask for an out-of-schedule cycle without waiting for it.

        Dropped while another request is queued or a cycle is running.

        Returns:
            True if the request was queued
        """
        if self._cycle_lock.locked() or self._refresh_requests.full():
            self._logger.debug(
                f"Refresh request suppressed ({reason})",
                extra={"app_id": self.identity.app_id},
            )
            return False

        self._refresh_requests.put_nowait(reason)
        return True

    async def _refresh_loop(self) -> None:
        """Drain out-of-schedule refresh requests one at a time"""
        while True:
            reason = await self._refresh_requests.get()
            await self._background_cycle(reason)

    async def _scheduled_cycle(self) -> None:
        # Stopping the timer must not interrupt a cycle halfway
        await asyncio.shield(self._background_cycle("timer"))

    async def _background_cycle(self, trigger: str) -> bool:
        async with self._cycle_lock:
            if not self._running:
                return False
            return await self._guarded_cycle(trigger)

    async def run_cycle(self, trigger: str = "manual") -> bool:
        """
        Run one fetch, decrypt, merge cycle.

        Returns:
            True if the store was replaced
        """
        async with self._cycle_lock:
            return await self._guarded_cycle(trigger)

    async def _guarded_cycle(self, trigger: str) -> bool:
        self.cycle_count += 1
        try:
            return await self._run_cycle(trigger)
        except Exception as e:
            self._logger.error(
                f"Unexpected error in sync cycle: {e}",
                exc_info=True,
                extra={"app_id": self.identity.app_id, "trigger": trigger},
            )
            return False
        finally:
            self.state = SyncState.IDLE

    async def _run_cycle(self, trigger: str) -> bool:
        app_id = self.identity.app_id
        self._logger.info(
            f"Sync cycle started ({trigger})",
            extra={"app_id": app_id, "trigger": trigger},
        )

        bundle = await self._fetch_bundle()
        if bundle is None:
            self._logger.warning(
                "Failed to load the app settings",
                extra={"app_id": app_id, "trigger": trigger},
            )
            return False

        decrypted = await self._decrypt_bundle(bundle)
        if decrypted is None:
            return False

        self.store.merge(decrypted.settings, self._static_metadata(decrypted.push_channel))
        self.state = SyncState.MERGED_OK
        self.last_success_at = datetime.now(timezone.utc)

        self._logger.info(
            f"Added {len(decrypted.settings)} app settings",
            extra={"app_id": app_id, "etag": bundle.etag, "trigger": trigger},
        )

        await self._arm_push(decrypted.push_channel)
        return True

    async def _fetch_bundle(self) -> Bundle | None:
        """API first, then the file cache"""
        app_id = self.identity.app_id
        self.state = SyncState.FETCHING
        start = time.monotonic()

        try:
            bundle = await self.fetcher.fetch(self.identity)
        except (AuthError, FetchError) as e:
            self.state = SyncState.FETCH_FAILED
            extra = {
                "app_id": app_id,
                "stage": "fetch",
                "elapsed_ms": _elapsed_ms(start),
            }
            if isinstance(e, FetchError):
                extra["kind"] = e.kind.value
                extra["status_code"] = e.status_code
                if e.raw_body is not None:
                    # Never cached: only parseable bundles overwrite the cache
                    extra["discarded_body_bytes"] = len(e.raw_body)
            self._logger.error(f"Failed to load app settings from the API: {e}", extra=extra)
        else:
            self.state = SyncState.FETCHED_OK
            self._logger.info(
                "Loaded app settings from the API",
                extra={"app_id": app_id, "stage": "fetch", "elapsed_ms": _elapsed_ms(start)},
            )
            self.cache.save(app_id, bundle.raw)
            return bundle

        if not self.cache.enabled:
            return None

        start = time.monotonic()
        try:
            bundle = self.cache.load(app_id)
        except CacheMiss as e:
            self.state = SyncState.CACHE_MISS
            self._logger.warning(
                f"No cached app settings: {e.reason}",
                extra={"app_id": app_id, "stage": "cache_load", "elapsed_ms": _elapsed_ms(start)},
            )
            return None

        self.state = SyncState.CACHE_HIT
        return bundle

    async def _decrypt_bundle(self, bundle: Bundle) -> DecryptedBundle | None:
        app_id = self.identity.app_id
        self.state = SyncState.DECRYPTING
        start = time.monotonic()

        # Runs to completion in a worker thread even if this task is cancelled
        try:
            decrypted = await asyncio.to_thread(
                self.decryptor.decrypt, bundle, self.identity.app_password
            )
        except DecryptError as e:
            self.state = SyncState.DECRYPT_FAILED
            self._logger.error(
                f"Failed to decrypt app settings: {e}",
                extra={
                    "app_id": app_id,
                    "stage": "decrypt",
                    "kind": e.kind.value,
                    "elapsed_ms": _elapsed_ms(start),
                },
            )
            return None

        self._logger.debug(
            "Decrypted app settings",
            extra={"app_id": app_id, "stage": "decrypt", "elapsed_ms": _elapsed_ms(start)},
        )
        return decrypted

    def _static_metadata(self, push_channel: PushChannel | None) -> dict[str, str]:
        options = self.options
        metadata = {
            ConfigurKeys.API_HOST: options.api_host,
            ConfigurKeys.APP_ID: self.identity.app_id,
            ConfigurKeys.IDENTITY_SERVER_AUTHORITY: options.identity_server_authority,
            ConfigurKeys.IS_DEVELOPMENT: format_bool(options.is_development),
            ConfigurKeys.IS_FILE_CACHE_ENABLED: format_bool(options.is_file_cache_enabled),
            ConfigurKeys.REFRESH_INTERVAL: format_interval(options.refresh_interval_s),
        }
        if push_channel is not None:
            metadata[ConfigurKeys.SIGNALR_URL] = push_channel.url
            metadata[ConfigurKeys.SIGNALR_ACCESS_TOKEN] = push_channel.access_token
        return metadata

    async def _arm_push(self, push_channel: PushChannel | None) -> None:
        """Replace the push subscription with one on the new channel"""
        await self._cancel_push()

        if not self.options.push_enabled or not self._running or push_channel is None:
            return

        self._push_subscription = self.push_listener.subscribe(
            push_channel,
            lambda: self.request_refresh("push"),
            app_id=self.identity.app_id,
        )

    async def _cancel_push(self) -> None:
        subscription, self._push_subscription = self._push_subscription, None
        if subscription is not None:
            await subscription.close()


def _elapsed_ms(start: float) -> int:
    return round((time.monotonic() - start) * 1000)
