"""
Bundle Decryption

Turns an encrypted bundle into plaintext settings:
1. SHA-256 of the app password gives the unlock key
2. The unlock key opens the bundle's encrypted PKCS#8 X25519 private key
3. The private key opens the ciphertext (X25519 + HKDF-SHA256 + AES-256-GCM)
4. The plaintext is a JSON array of {key, value} records

The envelope is this client's own format. Bundles sealed with Virgil
Crypto envelopes do not decrypt here.

Stateless: no key material is kept between decrypt() calls. Scrubbing is
best effort: the bytearrays owned here are zeroed on every exit path, but
the immutable bytes `cryptography` hands back (shared secret, decrypted
payload) and the bytes copy of the unlock key given to the PKCS#8 loader
are only released, not wiped.
"""

import json
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from configur.common.exceptions import DecryptError, DecryptFailure
from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger

from .fetch import Bundle, PushChannel, Setting

EPHEMERAL_KEY_SIZE = 32
NONCE_SIZE = 12
HKDF_INFO = b"configur-settings-v1"

# Single message for both a wrong password and broken key material
_UNLOCK_FAILED = "Unable to unlock the private key"


@dataclass(frozen=True)
class DecryptedBundle:
    """Result of a successful decryption"""
    settings: tuple[Setting, ...]
    push_channel: PushChannel | None


def derive_unlock_key(app_password: str) -> bytearray:
    """Hash the app password into the 32-byte unlock key"""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(app_password.encode("utf-8"))
    return bytearray(digest.finalize())


def derive_content_key(shared_secret: bytes) -> bytearray:
    """HKDF the X25519 shared secret into the AES-256-GCM key"""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=HKDF_INFO,
    )
    return bytearray(hkdf.derive(shared_secret))


def _scrub(buffer: bytearray | None) -> None:
    if buffer is not None:
        for i in range(len(buffer)):
            buffer[i] = 0


def _parse_settings(plaintext: bytes | bytearray) -> tuple[Setting, ...]:
    try:
        records = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptError(DecryptFailure.BAD_CIPHERTEXT, "payload is not JSON") from e

    if not isinstance(records, list):
        raise DecryptError(DecryptFailure.BAD_CIPHERTEXT, "payload is not a list")

    settings = []
    for record in records:
        if not isinstance(record, dict):
            raise DecryptError(DecryptFailure.BAD_CIPHERTEXT, "setting is not an object")
        record = {str(k).lower(): v for k, v in record.items()}
        key = record.get("key")
        value = record.get("value")
        if not isinstance(key, str) or not key:
            raise DecryptError(DecryptFailure.BAD_CIPHERTEXT, "setting has no key")
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise DecryptError(
                DecryptFailure.BAD_CIPHERTEXT, f"setting '{key}' value is not a string"
            )
        settings.append(Setting(key=key, value=value))

    return tuple(settings)


class Decryptor:
    """
    Decrypts bundles with the application's password.

    Safe to share between tasks and threads; holds no key material.
    """

    def __init__(self, logger: ServiceLoggerAdapter | None = None):
        self._logger = logger or get_service_logger("sync.crypto")

    def decrypt(self, bundle: Bundle, app_password: str) -> DecryptedBundle:
        """
        Decrypt a bundle.

        Raises:
            DecryptError: UNLOCK if the private key cannot be opened,
                BAD_CIPHERTEXT if the payload cannot be decrypted or parsed
        """
        unlock_key = None
        private_key = None
        try:
            unlock_key = derive_unlock_key(app_password)
            private_key = self._unwrap_private_key(bundle.private_key_ciphertext, unlock_key)
            plaintext = self._open(bundle.ciphertext, private_key)
        finally:
            _scrub(unlock_key)
            del private_key

        try:
            settings = _parse_settings(plaintext)
        finally:
            _scrub(plaintext)

        self._logger.debug(f"Decrypted {len(settings)} app settings")

        return DecryptedBundle(settings=settings, push_channel=bundle.push_channel)

    def _unwrap_private_key(
        self,
        private_key_ciphertext: bytes,
        unlock_key: bytearray,
    ) -> X25519PrivateKey:
        try:
            private_key = serialization.load_der_private_key(
                private_key_ciphertext,
                password=bytes(unlock_key),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm):
            raise DecryptError(DecryptFailure.UNLOCK, _UNLOCK_FAILED) from None

        if not isinstance(private_key, X25519PrivateKey):
            raise DecryptError(DecryptFailure.UNLOCK, _UNLOCK_FAILED)

        return private_key

    def _open(self, ciphertext: bytes, private_key: X25519PrivateKey) -> bytearray:
        if len(ciphertext) < EPHEMERAL_KEY_SIZE + NONCE_SIZE + 16:
            raise DecryptError(DecryptFailure.BAD_CIPHERTEXT, "ciphertext too short")

        ephemeral_public = X25519PublicKey.from_public_bytes(
            ciphertext[:EPHEMERAL_KEY_SIZE]
        )
        nonce = ciphertext[EPHEMERAL_KEY_SIZE:EPHEMERAL_KEY_SIZE + NONCE_SIZE]
        sealed = ciphertext[EPHEMERAL_KEY_SIZE + NONCE_SIZE:]

        content_key = None
        try:
            try:
                shared_secret = private_key.exchange(ephemeral_public)
            except ValueError:
                # All-zero shared secret from a low-order point
                raise DecryptError(
                    DecryptFailure.BAD_CIPHERTEXT, "invalid ephemeral key"
                ) from None
            content_key = derive_content_key(shared_secret)
            try:
                return bytearray(AESGCM(content_key).decrypt(nonce, sealed, None))
            except InvalidTag:
                raise DecryptError(
                    DecryptFailure.BAD_CIPHERTEXT, "ciphertext failed authentication"
                ) from None
        finally:
            _scrub(content_key)
