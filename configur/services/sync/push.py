"""
Push Listener

Subscribes to the SignalR hub delivered inside the bundle and asks for
an out-of-schedule refresh whenever the server announces new settings.

Protocol (JSON hub protocol over websockets):
- POST {url}/negotiate?negotiateVersion=1 for a connection token
  (skipped when the url is already ws:// or wss://)
- Open the websocket and exchange the handshake
- Records are JSON objects terminated by 0x1E
- Invocations targeting "ValuablesDeposited" trigger the callback

Failures are logged and never propagate. There is no reconnect: the
next successful sync cycle subscribes again.
"""

import asyncio
import json
from enum import IntEnum
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from configur.common.exceptions import PushError
from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger

from .fetch import PushChannel

RECORD_SEPARATOR = "\x1e"
INVALIDATION_EVENT = "ValuablesDeposited"
MAX_NEGOTIATE_REDIRECTS = 5


class MessageType(IntEnum):
    """Hub protocol message types"""
    INVOCATION = 1
    STREAM_ITEM = 2
    COMPLETION = 3
    STREAM_INVOCATION = 4
    CANCEL_INVOCATION = 5
    PING = 6
    CLOSE = 7


def encode_record(message: dict) -> str:
    """Serialize one hub protocol record"""
    return json.dumps(message, separators=(",", ":")) + RECORD_SEPARATOR


def split_records(buffer: str) -> tuple[list[dict], str]:
    """
    Split a text buffer into complete records.

    Returns:
        (parsed records, trailing partial record)

    Raises:
        PushError: a complete record is not a JSON object
    """
    *complete, remainder = buffer.split(RECORD_SEPARATOR)
    records = []
    for chunk in complete:
        if not chunk:
            continue
        try:
            record = json.loads(chunk)
        except json.JSONDecodeError as e:
            raise PushError(f"malformed record: {e.msg}") from e
        if not isinstance(record, dict):
            raise PushError("record is not an object")
        records.append(record)
    return records, remainder


def _to_ws_url(url: str) -> str:
    parts = urlsplit(url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


def _negotiate_url(url: str) -> str:
    parts = urlsplit(url)
    path = parts.path.rstrip("/") + "/negotiate"
    query = "negotiateVersion=1" + (f"&{parts.query}" if parts.query else "")
    return urlunsplit((parts.scheme, parts.netloc, path, query, ""))


class PushSubscription:
    """Cancellable handle on a running subscription"""

    def __init__(self, task: asyncio.Task, url: str):
        self._task = task
        self.url = url

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Tear down the subscription; safe at any stage, including connect"""
        self._task.cancel()

    async def close(self) -> None:
        """Cancel and wait until the connection is gone"""
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class PushListener:
    """
    Opens push subscriptions.

    Each subscribe() call runs on its own task; the caller owns the
    returned handle and cancels it before subscribing again.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        keepalive_interval: float = 15.0,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self.timeout = timeout
        self.keepalive_interval = keepalive_interval
        self._logger = logger or get_service_logger("sync.push")

    def subscribe(
        self,
        push_channel: PushChannel,
        on_invalidate: Callable[[], object],
        app_id: str | None = None,
    ) -> PushSubscription:
        """Start listening on a push channel"""
        task = asyncio.create_task(
            self._run(push_channel, on_invalidate, app_id),
            name="configur:push",
        )
        return PushSubscription(task, push_channel.url)

    async def _run(
        self,
        push_channel: PushChannel,
        on_invalidate: Callable[[], object],
        app_id: str | None,
    ) -> None:
        log_extra = {"app_id": app_id, "stage": "push"}
        try:
            session_timeout = aiohttp.ClientTimeout(
                total=None, connect=self.timeout, sock_connect=self.timeout
            )
            async with aiohttp.ClientSession(timeout=session_timeout) as session:
                ws_url, connection_token, access_token = await self._negotiate(
                    session, push_channel
                )
                params = {}
                if connection_token:
                    params["id"] = connection_token
                if access_token:
                    params["access_token"] = access_token

                async with session.ws_connect(
                    ws_url,
                    params=params,
                    timeout=aiohttp.ClientWSTimeout(ws_close=self.timeout),
                    autoping=True,
                ) as ws:
                    buffer = await self._handshake(ws)
                    self._logger.info("Push channel connected", extra=log_extra)
                    await self._receive_loop(ws, buffer, on_invalidate, log_extra)

            self._logger.info("Push channel closed", extra=log_extra)
        except asyncio.CancelledError:
            self._logger.debug("Push subscription cancelled", extra=log_extra)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, PushError) as e:
            self._logger.warning(f"Push channel failed: {e}", extra=log_extra)
        except Exception as e:
            self._logger.error(
                f"Unexpected push channel error: {e}", exc_info=True, extra=log_extra
            )

    async def _negotiate(
        self,
        session: aiohttp.ClientSession,
        push_channel: PushChannel,
    ) -> tuple[str, str | None, str]:
        """
        Resolve the websocket endpoint.

        Returns:
            (websocket url, connection token or None, access token)
        """
        url = push_channel.url
        access_token = push_channel.access_token

        if urlsplit(url).scheme in ("ws", "wss"):
            return url, None, access_token

        for _ in range(MAX_NEGOTIATE_REDIRECTS + 1):
            headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
            async with session.post(
                _negotiate_url(url),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    raise PushError(f"negotiate returned {response.status}")
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise PushError("negotiate response is not JSON") from e

            if not isinstance(payload, dict):
                raise PushError("negotiate response is not an object")
            if payload.get("error"):
                raise PushError(f"negotiate refused: {payload['error']}")

            # Redirect to another service (e.g. Azure SignalR)
            if payload.get("url"):
                url = payload["url"]
                access_token = payload.get("accessToken") or access_token
                continue

            connection_token = payload.get("connectionToken") or payload.get("connectionId")
            return _to_ws_url(url), connection_token, access_token

        raise PushError("too many negotiate redirects")

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        """Send the protocol handshake and return whatever followed the reply"""
        await ws.send_str(encode_record({"protocol": "json", "version": 1}))

        buffer = ""
        while RECORD_SEPARATOR not in buffer:
            msg = await ws.receive(timeout=self.timeout)
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise PushError(f"handshake interrupted ({msg.type.name})")
            buffer += msg.data

        reply, _, rest = buffer.partition(RECORD_SEPARATOR)
        try:
            response = json.loads(reply)
        except json.JSONDecodeError as e:
            raise PushError("malformed handshake response") from e
        if not isinstance(response, dict):
            raise PushError("malformed handshake response")
        if response.get("error"):
            raise PushError(f"handshake rejected: {response['error']}")

        return rest

    async def _receive_loop(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        buffer: str,
        on_invalidate: Callable[[], object],
        log_extra: dict,
    ) -> None:
        keepalive = asyncio.create_task(self._keepalive(ws))
        try:
            # Records that arrived in the same frame as the handshake reply
            keep_going, buffer = self._process(buffer, on_invalidate, log_extra)
            if not keep_going:
                return

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    keep_going, buffer = self._process(
                        buffer + msg.data, on_invalidate, log_extra
                    )
                    if not keep_going:
                        return
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise PushError(f"websocket error: {ws.exception()}")
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    return
        finally:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass

    async def _keepalive(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        ping = encode_record({"type": MessageType.PING})
        while not ws.closed:
            await asyncio.sleep(self.keepalive_interval)
            if ws.closed:
                break
            await ws.send_str(ping)

    def _process(
        self,
        buffer: str,
        on_invalidate: Callable[[], object],
        log_extra: dict,
    ) -> tuple[bool, str]:
        """Dispatch complete records; returns (keep listening, leftover)"""
        records, remainder = split_records(buffer)
        for record in records:
            if not self.dispatch(record, on_invalidate, log_extra):
                return False, remainder
        return True, remainder

    def dispatch(
        self,
        record: dict,
        on_invalidate: Callable[[], object],
        log_extra: dict | None = None,
    ) -> bool:
        """
        Handle one hub message.

        Returns:
            False when the server closed the connection
        """
        log_extra = log_extra or {}
        message_type = record.get("type")

        if message_type == MessageType.INVOCATION:
            if record.get("target") != INVALIDATION_EVENT:
                self._logger.debug(
                    f"Ignoring hub invocation '{record.get('target')}'", extra=log_extra
                )
                return True

            arguments = record.get("arguments") or []
            vault_id = arguments[0] if arguments else None
            self._logger.info(
                "Reloading configuration via push",
                extra={**log_extra, "vault_id": vault_id},
            )
            try:
                on_invalidate()
            except Exception as e:
                self._logger.error(
                    f"Failed to request reload via push: {e}", exc_info=True, extra=log_extra
                )
            return True

        if message_type == MessageType.CLOSE:
            error = record.get("error")
            if error:
                self._logger.warning(f"Push channel closed by server: {error}", extra=log_extra)
            else:
                self._logger.info("Push channel closed by server", extra=log_extra)
            return False

        return True
