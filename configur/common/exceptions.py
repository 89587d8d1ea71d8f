"""
Custom Exception Classes for the Configur client

Hierarchical exception structure for the sync pipeline stages.
None of these ever reach the host application from a sync cycle;
the orchestrator logs them and keeps the previous settings.
"""

from enum import Enum


class ConfigurError(Exception):
    """Base exception for all Configur client errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class AuthError(ConfigurError):
    """Credential exchange with the identity authority failed"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(f"Auth Error: {message}", recoverable=True)


class FetchFailure(str, Enum):
    """Why a settings fetch failed"""
    NETWORK = "network"
    HTTP = "http"
    DECODE = "decode"


class FetchError(ConfigurError):
    """Settings could not be retrieved from the API"""

    def __init__(
        self,
        kind: FetchFailure,
        message: str,
        status_code: int | None = None,
        raw_body: str | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        # Kept so callers can decide what to do with an unusable response
        self.raw_body = raw_body
        super().__init__(f"Fetch Error ({kind.value}): {message}", recoverable=True)


class BundleFormatError(ConfigurError):
    """A settings bundle document could not be parsed"""

    def __init__(self, message: str):
        super().__init__(f"Bundle Error: {message}", recoverable=True)


class CacheMiss(ConfigurError):
    """No usable cached bundle for this application"""

    def __init__(self, app_id: str, reason: str):
        self.app_id = app_id
        self.reason = reason
        super().__init__(f"Cache Miss [{app_id}]: {reason}", recoverable=True)


class DecryptFailure(str, Enum):
    """Why a bundle could not be decrypted"""
    # Wrong password and corrupted key material are indistinguishable
    UNLOCK = "unlock"
    BAD_CIPHERTEXT = "bad_ciphertext"


class DecryptError(ConfigurError):
    """Bundle decryption failed"""

    def __init__(self, kind: DecryptFailure, message: str):
        self.kind = kind
        super().__init__(f"Decrypt Error ({kind.value}): {message}", recoverable=True)


class PushError(ConfigurError):
    """Push channel protocol errors"""

    def __init__(self, message: str):
        super().__init__(f"Push Error: {message}", recoverable=True)
