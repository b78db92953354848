"""Records owned by the gateway. All are stored as JSON dicts."""

import time

from pydantic import BaseModel, Field

# Refresh a little before the upstream actually expires the token
EXPIRY_LEEWAY_SECONDS = 60


class UpstreamCredential(BaseModel):
    """Long-lived credential issued by the upstream task API for one identity."""

    identity: str
    access_token: str
    refresh_token: str | None = None
    scope: str = ""
    token_type: str = "Bearer"
    expiry: float | None = None  # Unix timestamp

    def is_expired(self, now: float | None = None, leeway: float = EXPIRY_LEEWAY_SECONDS) -> bool:
        if self.expiry is None:
            return False
        now = time.time() if now is None else now
        return self.expiry - leeway <= now

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class AuthorizationGrant(BaseModel):
    """Single-use authorization code issued by /authorize."""

    code: str
    client_id: str
    redirect_uri: str | None = None
    requested_scope: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    original_state: str | None = None
    created_at: float = Field(default_factory=time.time)
    expires_at: float
    upstream_credential: UpstreamCredential | None = None

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at < now


class BridgeToken(BaseModel):
    """Gateway-issued bearer token bound to one upstream credential by identity."""

    token: str
    identity: str
    client_id: str
    scope: str
    issued_at: float = Field(default_factory=time.time)
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at < now


class Session(BaseModel):
    """Opaque session identifier for trusted session-header transports."""

    session_id: str
    identity: str
    created_at: float = Field(default_factory=time.time)
    last_used_at: float = Field(default_factory=time.time)


class PendingConsent(BaseModel):
    """Upstream consent round-trip started by the session or trusted-proxy flow."""

    state: str
    flow: str  # "session" or "proxy"
    identity: str | None = None
    created_at: float = Field(default_factory=time.time)
    expires_at: float


class LocalClientConfig(BaseModel):
    """Persisted configuration of the stdio proxy forwarder."""

    remote_url: str
    session_id: str | None = None
