"""
Google OAuth client for the gateway.

The gateway never hands Google credentials to its own clients. This module is
the only place that talks to Google's OAuth endpoints:

1. Consent URL: send the user to Google with the tasks scope
2. Code exchange: trade Google's authorization code for an UpstreamCredential
3. Refresh: renew an expired access token with the stored refresh token

Everything else in the gateway deals in UpstreamCredential records.
"""

import logging
import secrets
import time
from typing import Any
from urllib.parse import urlencode

import aiohttp
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import UpstreamRejected, UpstreamUnavailable
from .models import UpstreamCredential

logger = logging.getLogger(__name__)

TASKS_SCOPE = "https://www.googleapis.com/auth/tasks"


class GoogleAuthSettings(BaseSettings):
    """
    Settings for the upstream Google OAuth integration.

    Read from GOOGLE_* environment variables.
    """

    model_config = SettingsConfigDict(env_prefix="GOOGLE_")

    client_id: str | None = None
    client_secret: str | None = None

    authorize_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint: str = "https://oauth2.googleapis.com/token"

    tasks_scope: str = TASKS_SCOPE

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


def credential_from_token_response(
    identity: str,
    data: dict[str, Any],
    previous: UpstreamCredential | None = None,
    now: float | None = None,
) -> UpstreamCredential:
    """
    Build an UpstreamCredential from a token endpoint response.

    Google omits ``refresh_token`` on refresh responses, so the previous one
    is carried over when present.
    """
    access_token = data.get("access_token")
    if not access_token:
        logger.error(f"No access token in token response. Keys: {list(data.keys())}")
        raise UpstreamRejected("No access token received from upstream")

    now = time.time() if now is None else now
    expires_in = data.get("expires_in")
    refresh_token = data.get("refresh_token") or (previous.refresh_token if previous else None)
    scope = data.get("scope") or (previous.scope if previous else "")

    return UpstreamCredential(
        identity=identity,
        access_token=access_token,
        refresh_token=refresh_token,
        scope=scope,
        token_type=data.get("token_type", "Bearer"),
        expiry=now + float(expires_in) if expires_in is not None else None,
    )


class GoogleOAuthClient:
    """Talks to Google's authorization and token endpoints."""

    def __init__(self, settings: GoogleAuthSettings):
        self.settings = settings
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session for Google token calls."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=30),
            )
        return self._session

    async def close(self) -> None:
        """Clean up HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def build_consent_url(self, state: str, redirect_uri: str) -> str:
        """Google consent URL with the scope fixed to task management."""
        params = {
            "client_id": self.settings.client_id or "",
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.settings.tasks_scope,
            "access_type": "offline",
            "prompt": "consent",  # Force a refresh token on every consent
            "state": state,
        }
        return f"{self.settings.authorize_endpoint}?{urlencode(params)}"

    async def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        session = await self._get_session()
        grant_type = form.get("grant_type")
        try:
            async with session.post(self.settings.token_endpoint, data=form) as response:
                if response.status >= 500:
                    error_text = await response.text()
                    logger.error(f"Token endpoint failed: {response.status} - {error_text}")
                    raise UpstreamUnavailable(f"Upstream token endpoint returned {response.status}")

                if response.status != 200:
                    error_text = await response.text()
                    logger.warning(
                        f"Upstream rejected {grant_type} request: {response.status} - {error_text}"
                    )
                    raise UpstreamRejected(f"Upstream token request failed: {response.status}")

                return await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Could not reach upstream token endpoint: {e}")
            raise UpstreamUnavailable(f"Upstream token endpoint unreachable: {e}") from e

    async def exchange_auth_code(
        self, code: str, redirect_uri: str, identity: str | None = None
    ) -> UpstreamCredential:
        """Exchange a Google authorization code for an UpstreamCredential."""
        identity = identity or f"google-{secrets.token_hex(8)}"
        logger.info(f"Exchanging upstream authorization code for identity {identity}")

        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.settings.client_id or "",
                "client_secret": self.settings.client_secret or "",
                "redirect_uri": redirect_uri,
            }
        )
        credential = credential_from_token_response(identity, data)
        logger.info("Successfully exchanged code for upstream credential")
        return credential

    async def refresh(self, credential: UpstreamCredential) -> UpstreamCredential:
        """Refresh an upstream credential. Raises UpstreamRejected if it cannot be renewed."""
        if not credential.refresh_token:
            raise UpstreamRejected(f"No refresh token for identity {credential.identity}")

        logger.info(f"Refreshing upstream credential for identity {credential.identity}")
        data = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "client_id": self.settings.client_id or "",
                "client_secret": self.settings.client_secret or "",
            }
        )
        return credential_from_token_response(credential.identity, data, previous=credential)
