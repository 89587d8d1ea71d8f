"""
Tests for the push listener: record framing, message dispatch and a
full subscription against a local hub.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from aiohttp import web

from configur.common.exceptions import PushError
from configur.services.sync.fetch import PushChannel
from configur.services.sync.push import (
    INVALIDATION_EVENT,
    MessageType,
    PushListener,
    _negotiate_url,
    _to_ws_url,
    encode_record,
    split_records,
)

HANDSHAKE_OK = "{}\x1e"


class TestFraming:

    def test_encode_record(self):
        assert encode_record({"type": 6}) == '{"type":6}\x1e'

    def test_split_complete_and_partial(self):
        records, rest = split_records('{"type":6}\x1e{"type":1}\x1e{"ty')

        assert records == [{"type": 6}, {"type": 1}]
        assert rest == '{"ty'

    def test_split_ignores_empty_records(self):
        records, rest = split_records('\x1e{"type":6}\x1e')

        assert records == [{"type": 6}]
        assert rest == ""

    @pytest.mark.parametrize("buffer", ["nope\x1e", "[1]\x1e"])
    def test_split_rejects_bad_records(self, buffer):
        with pytest.raises(PushError):
            split_records(buffer)

    def test_url_helpers(self):
        assert _negotiate_url("https://hub.test/settings") == (
            "https://hub.test/settings/negotiate?negotiateVersion=1"
        )
        assert _negotiate_url("https://hub.test/settings/?tenant=a") == (
            "https://hub.test/settings/negotiate?negotiateVersion=1&tenant=a"
        )
        assert _to_ws_url("https://hub.test/settings") == "wss://hub.test/settings"
        assert _to_ws_url("http://hub.test/settings") == "ws://hub.test/settings"


class TestDispatch:

    def test_invalidation_calls_back(self):
        callback = MagicMock()
        record = {"type": MessageType.INVOCATION, "target": INVALIDATION_EVENT,
                  "arguments": ["vault-1"]}

        assert PushListener().dispatch(record, callback) is True
        callback.assert_called_once_with()

    def test_other_invocations_are_ignored(self):
        callback = MagicMock()
        record = {"type": MessageType.INVOCATION, "target": "SomethingElse"}

        assert PushListener().dispatch(record, callback) is True
        callback.assert_not_called()

    def test_ping_is_ignored(self):
        callback = MagicMock()

        assert PushListener().dispatch({"type": MessageType.PING}, callback) is True
        callback.assert_not_called()

    def test_close_stops_listening(self):
        listener = PushListener()

        assert listener.dispatch({"type": MessageType.CLOSE}, MagicMock()) is False
        assert listener.dispatch({"type": 7, "error": "shutdown"}, MagicMock()) is False

    def test_callback_errors_are_contained(self):
        callback = MagicMock(side_effect=RuntimeError("boom"))
        record = {"type": 1, "target": INVALIDATION_EVENT}

        assert PushListener().dispatch(record, callback) is True


async def _start_hub(app: web.Application) -> tuple[web.AppRunner, str]:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]
    return runner, f"http://127.0.0.1:{port}"


async def _wait_until(predicate, timeout: float = 3.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def _hub_app(seen: dict, after_handshake: list[str], hub_path: str = "/hub") -> web.Application:
    async def negotiate(request):
        seen["negotiate_auth"] = request.headers.get("Authorization")
        seen["negotiate_version"] = request.query.get("negotiateVersion")
        return web.json_response({"connectionToken": "conn-1", "negotiateVersion": 1})

    async def hub(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        seen["query"] = dict(request.query)
        seen["handshake"] = await ws.receive_str()
        for frame in after_handshake:
            await ws.send_str(frame)
        async for _ in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_post(f"{hub_path}/negotiate", negotiate)
    app.router.add_get(hub_path, hub)
    return app


class TestSubscription:

    @pytest.mark.asyncio
    async def test_invalidation_from_hub(self):
        seen = {}
        invocation = encode_record(
            {"type": 1, "target": INVALIDATION_EVENT, "arguments": ["vault-1"]}
        )
        runner, base_url = await _start_hub(_hub_app(seen, [HANDSHAKE_OK + invocation]))
        invalidated = asyncio.Event()

        try:
            subscription = PushListener().subscribe(
                PushChannel(f"{base_url}/hub", "t"), invalidated.set, app_id="demo"
            )
            await asyncio.wait_for(invalidated.wait(), 3)
            await subscription.close()
        finally:
            await runner.cleanup()

        assert seen["negotiate_auth"] == "Bearer t"
        assert seen["negotiate_version"] == "1"
        assert seen["query"] == {"id": "conn-1", "access_token": "t"}
        assert seen["handshake"] == '{"protocol":"json","version":1}\x1e'
        assert subscription.done

    @pytest.mark.asyncio
    async def test_records_split_across_frames(self):
        seen = {}
        invocation = encode_record({"type": 1, "target": INVALIDATION_EVENT})
        frames = [HANDSHAKE_OK, invocation[:10], invocation[10:]]
        runner, base_url = await _start_hub(_hub_app(seen, frames))
        callback = MagicMock()

        try:
            subscription = PushListener().subscribe(PushChannel(f"{base_url}/hub", "t"), callback)
            await _wait_until(lambda: callback.called)
            await subscription.close()
        finally:
            await runner.cleanup()

        callback.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_server_close_ends_subscription(self):
        seen = {}
        frames = [HANDSHAKE_OK + encode_record({"type": 7})]
        runner, base_url = await _start_hub(_hub_app(seen, frames))

        try:
            subscription = PushListener().subscribe(PushChannel(f"{base_url}/hub", "t"), MagicMock())
            await _wait_until(lambda: subscription.done)
        finally:
            await runner.cleanup()

        await subscription.close()

    @pytest.mark.asyncio
    async def test_negotiate_redirect(self):
        seen = {}
        app = _hub_app(seen, [HANDSHAKE_OK + encode_record({"type": 7})], hub_path="/real")

        async def redirect(request):
            return web.json_response({"url": f"http://{request.host}/real", "accessToken": "t2"})

        app.router.add_post("/hub/negotiate", redirect)
        runner, base_url = await _start_hub(app)

        try:
            subscription = PushListener().subscribe(PushChannel(f"{base_url}/hub", "t1"), MagicMock())
            await _wait_until(lambda: subscription.done)
        finally:
            await runner.cleanup()

        assert seen["negotiate_auth"] == "Bearer t2"
        assert seen["query"]["access_token"] == "t2"

    @pytest.mark.asyncio
    async def test_rejected_handshake_is_not_raised(self):
        seen = {}
        frames = ['{"error":"unsupported protocol"}\x1e']
        runner, base_url = await _start_hub(_hub_app(seen, frames))

        try:
            subscription = PushListener().subscribe(PushChannel(f"{base_url}/hub", "t"), MagicMock())
            await _wait_until(lambda: subscription.done)
        finally:
            await runner.cleanup()

        await subscription.close()

    @pytest.mark.asyncio
    async def test_unreachable_hub_is_not_raised(self):
        callback = MagicMock()
        subscription = PushListener(timeout=1.0).subscribe(
            PushChannel("http://127.0.0.1:1/hub", "t"), callback
        )

        await _wait_until(lambda: subscription.done)
        await subscription.close()

        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_during_negotiate(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_negotiate(request):
            started.set()
            await release.wait()
            return web.json_response({})

        app = web.Application()
        app.router.add_post("/hub/negotiate", slow_negotiate)
        runner, base_url = await _start_hub(app)

        try:
            subscription = PushListener().subscribe(PushChannel(f"{base_url}/hub", "t"), MagicMock())
            await asyncio.wait_for(started.wait(), 3)

            await asyncio.wait_for(subscription.close(), 1)
        finally:
            release.set()
            await runner.cleanup()

        assert subscription.done
