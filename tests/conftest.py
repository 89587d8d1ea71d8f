"""
Shared fixtures: real encrypted bundles built the way the Configur API
builds them.
"""

import base64
import hashlib
import json
import logging
import os

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from configur.common.config import ConfigurOptions, Identity
from configur.common.logging_setup import PACKAGE_LOGGER
from configur.services.sync.crypto import derive_content_key

APP_PASSWORD = "correct horse battery staple"


def seal(plaintext: bytes, public_key: X25519PublicKey) -> bytes:
    """Encrypt for a recipient public key (ephemeral X25519 + AES-256-GCM)"""
    ephemeral = X25519PrivateKey.generate()
    shared_secret = ephemeral.exchange(public_key)
    content_key = bytes(derive_content_key(shared_secret))
    nonce = os.urandom(12)
    ephemeral_public = ephemeral.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return ephemeral_public + nonce + AESGCM(content_key).encrypt(nonce, plaintext, None)


def wrap_private_key(private_key: X25519PrivateKey, password: str) -> bytes:
    unlock_key = hashlib.sha256(password.encode("utf-8")).digest()
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(unlock_key),
    )


def make_bundle_json(
    settings: list[dict] | None = None,
    password: str = APP_PASSWORD,
    push_channel: dict | None = None,
    etag: str = "etag-1",
    payload: bytes | None = None,
) -> str:
    """Bundle document as the API returns it"""
    private_key = X25519PrivateKey.generate()
    if payload is None:
        payload = json.dumps(settings or []).encode("utf-8")

    document = {
        "ciphertext": base64.b64encode(seal(payload, private_key.public_key())).decode(),
        "eTag": etag,
        "privateKeyCiphertext": base64.b64encode(
            wrap_private_key(private_key, password)
        ).decode(),
    }
    if push_channel is not None:
        document["signalR"] = push_channel
    return json.dumps(document)


@pytest.fixture
def identity() -> Identity:
    return Identity(app_id="demo", app_secret="s3cret", app_password=APP_PASSWORD)


@pytest.fixture
def options(tmp_path) -> ConfigurOptions:
    return ConfigurOptions(
        api_host="api.test",
        identity_server_authority="https://id.test",
        is_development=True,
        is_file_cache_enabled=True,
        file_cache_dir=str(tmp_path),
        refresh_interval_s=60,
    )


@pytest.fixture
def bundle_json() -> str:
    return make_bundle_json(
        [{"key": "A", "value": "1"}, {"key": "B", "value": "2"}],
        push_channel={"url": "wss://x", "accessToken": "t"},
    )


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo whatever handlers and level the CLI attached"""
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
