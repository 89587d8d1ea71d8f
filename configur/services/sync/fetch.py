"""
Settings Fetch

Retrieves the encrypted settings bundle ("projection") for one
application from the Configur API.

The bundle parser here is shared with the file cache, so a cached
bundle and a freshly fetched one go through identical deserialization.
"""

import asyncio
import base64
import binascii
import json
import time
from dataclasses import dataclass, field

import httpx

from configur.common.config import ConfigurOptions, Identity
from configur.common.exceptions import BundleFormatError, FetchError, FetchFailure
from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger

from .auth import CredentialExchanger


@dataclass(frozen=True)
class PushChannel:
    """Push subscription endpoint delivered next to the ciphertext"""
    url: str
    access_token: str = field(repr=False)


@dataclass(frozen=True)
class Setting:
    """One decrypted key/value pair"""
    key: str
    value: str


@dataclass(frozen=True)
class Bundle:
    """Encrypted settings bundle, opaque to everything but the decryptor"""
    ciphertext: bytes = field(repr=False)
    private_key_ciphertext: bytes = field(repr=False)
    etag: str | None = None
    push_channel: PushChannel | None = None
    # Document the bundle was parsed from, persisted verbatim by the cache
    raw: str = field(default="", repr=False, compare=False)


def _lower_keys(document: dict) -> dict:
    return {str(k).lower(): v for k, v in document.items()}


def _decode_b64(document: dict, name: str) -> bytes:
    value = document.get(name.lower())
    if not isinstance(value, str) or not value:
        raise BundleFormatError(f"missing or invalid '{name}'")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise BundleFormatError(f"'{name}' is not valid base64") from e


def _parse_push_channel(document: dict) -> PushChannel | None:
    section = document.get("signalr")
    if section is None:
        section = document.get("pushchannel")
    if section is None:
        return None
    if not isinstance(section, dict):
        raise BundleFormatError("push channel must be an object")

    section = _lower_keys(section)
    url = section.get("url")
    access_token = section.get("accesstoken")
    if not url or not isinstance(url, str):
        return None
    if access_token is not None and not isinstance(access_token, str):
        raise BundleFormatError("push channel accessToken must be a string")

    return PushChannel(url=url, access_token=access_token or "")


def parse_bundle(raw: str | bytes) -> Bundle:
    """
    Parse a bundle document.

    Member names are case-insensitive. Ciphertext fields are base64.

    Raises:
        BundleFormatError: document is not a valid bundle
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BundleFormatError("document is not UTF-8") from e

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BundleFormatError(f"invalid JSON: {e.msg}") from e

    if not isinstance(document, dict):
        raise BundleFormatError("document is not an object")

    document = _lower_keys(document)

    etag = document.get("etag")
    if etag is not None and not isinstance(etag, str):
        etag = str(etag)

    return Bundle(
        ciphertext=_decode_b64(document, "ciphertext"),
        private_key_ciphertext=_decode_b64(document, "privateKeyCiphertext"),
        etag=etag,
        push_channel=_parse_push_channel(document),
        raw=raw,
    )


class RemoteFetcher:
    """
    Fetches the current bundle from the API.

    Every failure surfaces as FetchError (network, http or decode) or
    AuthError from the credential exchange. The raw response body rides
    along on HTTP and decode errors.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        options: ConfigurOptions,
        exchanger: CredentialExchanger,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self._client = client
        self.options = options
        self.exchanger = exchanger
        self._logger = logger or get_service_logger("sync.fetch")

    def settings_url(self) -> str:
        """Endpoint returning the bundle"""
        return f"https://{self.options.api_host}/{self.options.settings_path.lstrip('/')}"

    async def fetch(self, identity: Identity) -> Bundle:
        """
        Fetch and parse the bundle for an application.

        Raises:
            AuthError: credential exchange failed
            FetchError: request, status or body was unusable
        """
        credential = await self.exchanger.obtain(
            identity, self.options.identity_server_authority
        )

        url = self.settings_url()
        start = time.monotonic()

        self._logger.debug(
            "Calling API to retrieve app settings",
            extra={"app_id": identity.app_id, "stage": "fetch"},
        )

        # httpx timeouts are per phase; a trickling server needs a total bound
        try:
            async with asyncio.timeout(self.options.request_timeout_s):
                response = await self._client.get(
                    url,
                    headers={"Accept": "application/json", **credential.headers()},
                    timeout=self.options.request_timeout_s,
                )
        except (httpx.TimeoutException, TimeoutError) as e:
            raise FetchError(FetchFailure.NETWORK, f"Request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise FetchError(FetchFailure.NETWORK, f"Request failed: {e}") from e

        body = response.text

        if not response.is_success:
            raise FetchError(
                FetchFailure.HTTP,
                f"API returned {response.status_code}",
                status_code=response.status_code,
                raw_body=body,
            )

        try:
            bundle = parse_bundle(body)
        except BundleFormatError as e:
            raise FetchError(
                FetchFailure.DECODE,
                e.message,
                status_code=response.status_code,
                raw_body=body,
            ) from e

        self._logger.debug(
            f"Received bundle ({len(body)} bytes)",
            extra={
                "app_id": identity.app_id,
                "stage": "fetch",
                "etag": bundle.etag,
                "elapsed_ms": round((time.monotonic() - start) * 1000),
            },
        )

        return bundle
