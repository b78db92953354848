"""Pytest configuration and fixtures for tests."""

import os
import time
from collections.abc import Callable

import pytest

# Set Google client settings before any imports that read them
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-secret")

from gtasks_mcp.credentials import UpstreamCredentialStore  # noqa: E402
from gtasks_mcp.errors import UpstreamRejected  # noqa: E402
from gtasks_mcp.google_oauth import GoogleAuthSettings, GoogleOAuthClient  # noqa: E402
from gtasks_mcp.models import UpstreamCredential  # noqa: E402
from gtasks_mcp.storage import MemoryStore  # noqa: E402


class FakeGoogleOAuth(GoogleOAuthClient):
    """Google OAuth client that never leaves the process."""

    def __init__(self, settings: GoogleAuthSettings | None = None):
        super().__init__(
            settings or GoogleAuthSettings(client_id="test-google-client", client_secret="test-google-secret")
        )
        self.exchanged: list[tuple[str, str, str | None]] = []
        self.refreshed: list[str] = []
        self.reject_refresh = False

    async def exchange_auth_code(
        self, code: str, redirect_uri: str, identity: str | None = None
    ) -> UpstreamCredential:
        self.exchanged.append((code, redirect_uri, identity))
        return UpstreamCredential(
            identity=identity or "google-test",
            access_token=f"google-access-{code}",
            refresh_token=f"google-refresh-{code}",
            scope="https://www.googleapis.com/auth/tasks",
            expiry=time.time() + 3600,
        )

    async def refresh(self, credential: UpstreamCredential) -> UpstreamCredential:
        self.refreshed.append(credential.identity)
        if self.reject_refresh:
            raise UpstreamRejected("refresh token revoked")
        return credential.model_copy(
            update={"access_token": f"{credential.access_token}-refreshed", "expiry": time.time() + 3600}
        )


@pytest.fixture
def fake_google() -> FakeGoogleOAuth:
    return FakeGoogleOAuth()


@pytest.fixture
def credential_store(fake_google: FakeGoogleOAuth) -> UpstreamCredentialStore:
    return UpstreamCredentialStore(MemoryStore("credentials"), fake_google)


@pytest.fixture
def make_credential() -> Callable[..., UpstreamCredential]:
    """Factory for upstream credentials; expires in an hour unless told otherwise."""

    def factory(
        identity: str = "user-1",
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
        expires_in: float | None = 3600,
    ) -> UpstreamCredential:
        return UpstreamCredential(
            identity=identity,
            access_token=access_token,
            refresh_token=refresh_token,
            scope="https://www.googleapis.com/auth/tasks",
            expiry=time.time() + expires_in if expires_in is not None else None,
        )

    return factory
