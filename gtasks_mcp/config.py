from pydantic_settings import BaseSettings, SettingsConfigDict

from .oauth_bridge import GRANT_TTL_SECONDS, TOKEN_TTL_SECONDS
from .sessions import SESSION_IDLE_TTL_SECONDS


class GatewaySettings(BaseSettings):
    """
    Settings for the HTTP gateway.

    Read from GTASKS_* environment variables; ``database_url`` also accepts
    plain DATABASE_URL.
    """

    model_config = SettingsConfigDict(env_prefix="GTASKS_")

    server_url: str = "http://localhost:3000"
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000

    database_url: str | None = None
    credentials_dir: str = "~/.gtasks-mcp/credentials"

    grant_ttl: int = GRANT_TTL_SECONDS
    token_ttl: int = TOKEN_TTL_SECONDS
    session_idle_ttl: int = SESSION_IDLE_TTL_SECONDS

    enforce_pkce: bool = True
    allow_manual_code: bool = True
    trust_proxy_headers: bool = False

    @property
    def public_url(self) -> str:
        return self.server_url.rstrip("/")
