"""
Tests for bundle parsing and the remote fetcher.
"""

import asyncio
import base64
import json
import time

import httpx
import pytest

from configur.common.config import ConfigurOptions
from configur.common.exceptions import BundleFormatError, FetchError, FetchFailure
from configur.services.sync.auth import CredentialExchanger
from configur.services.sync.fetch import PushChannel, RemoteFetcher, parse_bundle

CIPHERTEXT_B64 = base64.b64encode(b"ciphertext").decode()
KEY_B64 = base64.b64encode(b"private-key").decode()


def _document(**overrides) -> str:
    document = {"ciphertext": CIPHERTEXT_B64, "privateKeyCiphertext": KEY_B64}
    document.update(overrides)
    return json.dumps(document)


class TestParseBundle:

    def test_minimal_bundle(self):
        bundle = parse_bundle(_document())

        assert bundle.ciphertext == b"ciphertext"
        assert bundle.private_key_ciphertext == b"private-key"
        assert bundle.etag is None
        assert bundle.push_channel is None

    def test_member_names_are_case_insensitive(self):
        raw = json.dumps({
            "CipherText": CIPHERTEXT_B64,
            "PRIVATEKEYCIPHERTEXT": KEY_B64,
            "ETag": "v7",
            "SignalR": {"URL": "wss://x", "AccessToken": "t"},
        })

        bundle = parse_bundle(raw)

        assert bundle.etag == "v7"
        assert bundle.push_channel == PushChannel(url="wss://x", access_token="t")

    def test_push_channel_alias(self):
        bundle = parse_bundle(_document(pushChannel={"url": "https://hub", "accessToken": "t"}))

        assert bundle.push_channel.url == "https://hub"

    def test_push_channel_without_url_is_absent(self):
        bundle = parse_bundle(_document(signalR={"accessToken": "t"}))

        assert bundle.push_channel is None

    def test_push_channel_without_token(self):
        bundle = parse_bundle(_document(signalR={"url": "wss://x"}))

        assert bundle.push_channel == PushChannel(url="wss://x", access_token="")

    def test_keeps_raw_document(self):
        raw = _document(eTag="v1")

        assert parse_bundle(raw).raw == raw
        assert parse_bundle(raw.encode()).raw == raw

    @pytest.mark.parametrize("raw", [
        "",
        "not json",
        "[1, 2]",
        json.dumps({"privateKeyCiphertext": KEY_B64}),
        json.dumps({"ciphertext": CIPHERTEXT_B64}),
        json.dumps({"ciphertext": "***", "privateKeyCiphertext": KEY_B64}),
        json.dumps({"ciphertext": 5, "privateKeyCiphertext": KEY_B64}),
        _document(signalR="wss://x"),
        b"\xff\xfe",
    ])
    def test_rejects_invalid_documents(self, raw):
        with pytest.raises(BundleFormatError):
            parse_bundle(raw)


def _fetcher(handler, options: ConfigurOptions) -> tuple[RemoteFetcher, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    exchanger = CredentialExchanger(client, is_development=options.is_development)
    return RemoteFetcher(client, options, exchanger), client


class TestRemoteFetcher:

    @pytest.mark.asyncio
    async def test_fetch_success(self, identity, options):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["client_id"] = request.headers.get("X-ClientId")
            return httpx.Response(200, text=_document(eTag="v2"))

        fetcher, client = _fetcher(handler, options)
        async with client:
            bundle = await fetcher.fetch(identity)

        assert seen["url"] == "https://api.test/app-settings/find"
        assert seen["client_id"] == "demo"
        assert bundle.etag == "v2"

    @pytest.mark.asyncio
    async def test_fetch_with_bearer_token(self, identity, options):
        options.is_development = False
        seen = {}

        def handler(request):
            if request.url.path == "/connect/token":
                return httpx.Response(200, json={"access_token": "tok"})
            seen["authorization"] = request.headers.get("Authorization")
            return httpx.Response(200, text=_document())

        fetcher, client = _fetcher(handler, options)
        async with client:
            await fetcher.fetch(identity)

        assert seen["authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_http_error_keeps_body(self, identity, options):
        fetcher, client = _fetcher(
            lambda request: httpx.Response(503, text="maintenance"), options
        )
        async with client:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(identity)

        error = exc_info.value
        assert error.kind is FetchFailure.HTTP
        assert error.status_code == 503
        assert error.raw_body == "maintenance"

    @pytest.mark.asyncio
    async def test_undecodable_body(self, identity, options):
        fetcher, client = _fetcher(
            lambda request: httpx.Response(200, text="<html>login</html>"), options
        )
        async with client:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(identity)

        assert exc_info.value.kind is FetchFailure.DECODE
        assert exc_info.value.raw_body == "<html>login</html>"

    @pytest.mark.asyncio
    async def test_network_failure(self, identity, options):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        fetcher, client = _fetcher(handler, options)
        async with client:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(identity)

        assert exc_info.value.kind is FetchFailure.NETWORK
        assert exc_info.value.raw_body is None

    @pytest.mark.asyncio
    async def test_timeout(self, identity, options):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        fetcher, client = _fetcher(handler, options)
        async with client:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(identity)

        assert exc_info.value.kind is FetchFailure.NETWORK
        assert "timed out" in str(exc_info.value)

    def test_settings_url(self, options):
        options.settings_path = "/valuables/find"
        fetcher = RemoteFetcher(None, options, None)

        assert fetcher.settings_url() == "https://api.test/valuables/find"


class TrickleStream(httpx.AsyncByteStream):
    """Body that never stalls long enough to trip a per-read timeout"""

    def __init__(self, chunks: int = 40, delay: float = 0.1):
        self.chunks = chunks
        self.delay = delay

    async def __aiter__(self):
        for _ in range(self.chunks):
            await asyncio.sleep(self.delay)
            yield b" "


@pytest.mark.asyncio
async def test_trickling_response_is_bounded_in_total(identity, options):
    options.request_timeout_s = 0.5
    fetcher, client = _fetcher(
        lambda request: httpx.Response(200, stream=TrickleStream()), options
    )

    start = time.monotonic()
    async with client:
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(identity)
    elapsed = time.monotonic() - start

    assert exc_info.value.kind is FetchFailure.NETWORK
    assert elapsed < 2.0
