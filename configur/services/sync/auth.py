"""
Credential Exchange

Obtains the credential attached to settings requests:
- Development mode: the app id is sent as a plain X-ClientId header
- Production mode: client-credentials grant against the identity authority
"""

import asyncio
from dataclasses import dataclass, field

import httpx

from configur.common.config import Identity
from configur.common.exceptions import AuthError
from configur.common.logging_setup import ServiceLoggerAdapter, get_service_logger

API_SCOPE = "configur_api"


@dataclass(frozen=True)
class BearerCredential:
    """Credential for one settings request"""
    value: str = field(repr=False)
    development: bool = False

    def headers(self) -> dict[str, str]:
        """Request headers carrying this credential"""
        if self.development:
            return {"X-ClientId": self.value}
        return {"Authorization": f"Bearer {self.value}"}


class CredentialExchanger:
    """
    Exchanges app id/secret for a short-lived bearer token.

    No retries: a failed exchange surfaces as AuthError and the caller
    decides what to do next.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        is_development: bool = False,
        timeout: float = 5.0,
        logger: ServiceLoggerAdapter | None = None,
    ):
        self._client = client
        self.is_development = is_development
        self.timeout = timeout
        self._logger = logger or get_service_logger("sync.auth")

    async def obtain(self, identity: Identity, authority_url: str) -> BearerCredential:
        """
        Obtain a credential for the given identity.

        Args:
            identity: Application identity
            authority_url: Base URL of the identity authority

        Returns:
            BearerCredential

        Raises:
            AuthError: authority unreachable or returned an error
        """
        if self.is_development:
            return BearerCredential(value=identity.app_id, development=True)

        token_url = f"{authority_url.rstrip('/')}/connect/token"

        self._logger.debug(
            "Requesting access token",
            extra={"app_id": identity.app_id, "stage": "auth"},
        )

        try:
            # Total bound for the exchange; httpx only bounds each phase
            async with asyncio.timeout(self.timeout):
                response = await self._client.post(
                    token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": identity.app_id,
                        "client_secret": identity.app_secret,
                        "scope": API_SCOPE,
                    },
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
        except TimeoutError as e:
            raise AuthError(f"Identity authority timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise AuthError(f"Identity authority unreachable: {e}") from e

        if response.status_code >= 400:
            raise AuthError(
                f"Token request rejected ({response.status_code}): "
                f"{_error_description(response)}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthError("Token response is not JSON", response.status_code) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token or not isinstance(access_token, str):
            raise AuthError("Token response has no access_token", response.status_code)

        return BearerCredential(value=access_token)


def _error_description(response: httpx.Response) -> str:
    """Best description an OAuth error response offers"""
    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase or "unknown error"

    if isinstance(payload, dict):
        return payload.get("error_description") or payload.get("error") or "unknown error"
    return "unknown error"
