"""
Token endpoint client: authorization_code and refresh_token grants.
Classifies failures: transport errors are NetworkFailure (retry later), any
non-success answer is AuthFailure (the grant is presumed revoked).
"""
import logging
from typing import Any

import httpx

from auth_session.config import CLIENT_ID, HTTP_TIMEOUT_SECONDS, TOKEN_URL
from auth_session.errors import AuthFailure, NetworkFailure

logger = logging.getLogger(__name__)


def _error_description(r: httpx.Response) -> str:
    try:
        err = r.json() if r.headers.get("content-type", "").startswith("application/json") else {}
    except ValueError:
        err = {}
    if not isinstance(err, dict):
        err = {}
    return str(err.get("error_description") or err.get("error") or r.reason_phrase or r.status_code)


class TokenExchange:
    def __init__(
        self,
        *,
        token_url: str = TOKEN_URL,
        client_id: str = CLIENT_ID,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str, scope: str) -> dict[str, Any]:
        """Exchange an authorization code (plus PKCE verifier) for tokens."""
        logger.info("Exchanging login code for token")
        data = await self._post(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "scope": scope,
                "code_verifier": code_verifier,
                "redirect_uri": redirect_uri,
            },
            failure_message="Unable to login.",
        )
        logger.info("Exchanging login code for token success")
        return data

    async def refresh(self, refresh_token: str, scope: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access token (and usually a rotated refresh token)."""
        logger.info("Refreshing token...")
        data = await self._post(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "scope": scope,
            },
            failure_message="Refreshing token failed",
        )
        logger.info("Token refresh success")
        return data

    async def _post(self, form: dict[str, str], *, failure_message: str) -> dict[str, Any]:
        try:
            r = await self._client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            logger.error("Token request to %s failed: %s", self.token_url, e)
            raise NetworkFailure() from e

        if not r.is_success:
            reason = _error_description(r)
            logger.error("%s: %s (%s)", failure_message, reason, r.status_code)
            raise AuthFailure(f"{failure_message} {reason}", status_code=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise AuthFailure(f"{failure_message} Invalid token response", status_code=r.status_code) from e
        if not isinstance(data, dict):
            raise AuthFailure(f"{failure_message} Invalid token response", status_code=r.status_code)
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
