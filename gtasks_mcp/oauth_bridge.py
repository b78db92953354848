"""
Authorization-code bridge between MCP clients and the upstream Google account.

OAuth 2.1 Flow Overview:
1. Authorization Request: client opens /authorize; a grant is minted and the
   user is sent to Google's consent page
2. Upstream Consent: Google redirects back to /callback; the Google code is
   exchanged for an UpstreamCredential which is attached to the grant
3. Client Redirect: the user agent returns to the client's redirect_uri with
   the grant's code (or the code is shown for manual copy)
4. Token Exchange: the client trades the code (plus its PKCE verifier) at
   /token for a one-hour bridge token
5. Resource Access: the bridge token opens the streaming transport; the
   Google credential itself never leaves the gateway

Grants are single use and expire after ten minutes. Bridge tokens expire
after one hour and cannot be renewed.
"""

import base64
import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode, urlparse

from mcp.server.auth.provider import construct_redirect_uri

from .credentials import UpstreamCredentialStore
from .errors import InvalidGrant, InvalidRequest, UnknownGrant, UnsupportedGrantType
from .models import AuthorizationGrant, BridgeToken, UpstreamCredential
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

GRANT_TTL_SECONDS = 10 * 60
TOKEN_TTL_SECONDS = 60 * 60
DEFAULT_SCOPE = "gtasks:read gtasks:write"
SUPPORTED_CHALLENGE_METHODS = ("S256", "plain")


class UpstreamAuthClient(Protocol):
    def build_consent_url(self, state: str, redirect_uri: str) -> str: ...

    async def exchange_auth_code(
        self, code: str, redirect_uri: str, identity: str | None = None
    ) -> UpstreamCredential: ...


@dataclass
class ConsentPage:
    """Caller sent no PKCE challenge; show a page that retries with one attached."""

    authorize_url: str
    code_verifier: str


@dataclass
class UpstreamRedirect:
    """Send the user agent to the upstream consent screen."""

    url: str
    grant_code: str


@dataclass
class ClientRedirect:
    """Send the user agent back to the client with the grant code."""

    url: str


@dataclass
class ManualCode:
    """No redirect_uri: display the grant code for manual copy."""

    code: str
    expires_in: int


def compute_s256_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def verify_code_verifier(code_verifier: str, code_challenge: str, method: str) -> bool:
    """Verify a PKCE code_verifier against the stored code_challenge."""
    if method == "S256":
        computed = compute_s256_challenge(code_verifier)
    elif method == "plain":
        computed = code_verifier
    else:
        return False
    return secrets.compare_digest(computed.encode(), code_challenge.encode())


def _mask(value: str) -> str:
    return f"{value[:8]}..." if len(value) > 8 else value


def _is_absolute_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


class GrantIssuer:
    """Issues authorization grants and completes them after upstream consent."""

    def __init__(
        self,
        grants: KeyValueStore,
        credentials: UpstreamCredentialStore,
        upstream: UpstreamAuthClient,
        authorize_url: str,
        callback_url: str,
        grant_ttl: int = GRANT_TTL_SECONDS,
        allow_manual_code: bool = True,
    ):
        self.grants = grants
        self.credentials = credentials
        self.upstream = upstream
        self.authorize_url = authorize_url
        self.callback_url = callback_url
        self.grant_ttl = grant_ttl
        self.allow_manual_code = allow_manual_code

    async def begin_authorization(
        self,
        client_id: str | None,
        redirect_uri: str | None = None,
        requested_scope: str | None = None,
        state: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        response_type: str | None = "code",
    ) -> ConsentPage | UpstreamRedirect:
        """
        Start an authorization-code grant.

        Without a PKCE challenge a ConsentPage is returned whose link retries
        this request with a freshly generated ``plain`` challenge. That is a
        convenience for clients that cannot generate one and adds no security.
        """
        if not client_id:
            raise InvalidRequest("client_id is required")
        if response_type not in (None, "code"):
            raise InvalidRequest(f"Unsupported response_type: {response_type}")
        if redirect_uri is None and not self.allow_manual_code:
            raise InvalidRequest("redirect_uri is required")
        if redirect_uri is not None and not _is_absolute_url(redirect_uri):
            raise InvalidRequest(f"redirect_uri must be an absolute URL: {redirect_uri}")

        if not code_challenge:
            code_verifier = secrets.token_urlsafe(32)
            params = {
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": requested_scope,
                "state": state,
                "code_challenge": code_verifier,
                "code_challenge_method": "plain",
            }
            query = urlencode({k: v for k, v in params.items() if v is not None})
            logger.info(f"No PKCE challenge from client {client_id}, rendering consent page")
            return ConsentPage(authorize_url=f"{self.authorize_url}?{query}", code_verifier=code_verifier)

        method = code_challenge_method or "plain"
        if method not in SUPPORTED_CHALLENGE_METHODS:
            raise InvalidRequest(f"Unsupported code_challenge_method: {method}")

        now = time.time()
        grant = AuthorizationGrant(
            code=secrets.token_hex(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            requested_scope=requested_scope,
            code_challenge=code_challenge,
            code_challenge_method=method,
            original_state=state,
            created_at=now,
            expires_at=now + self.grant_ttl,
        )
        await self.grants.put(grant.code, grant.model_dump(mode="json"), expires_at=grant.expires_at)
        logger.info(f"Minted grant {_mask(grant.code)} for client {client_id}")

        upstream_state = json.dumps({"code": grant.code, "state": state})
        url = self.upstream.build_consent_url(upstream_state, self.callback_url)
        return UpstreamRedirect(url=url, grant_code=grant.code)

    async def complete_authorization(
        self, upstream_auth_code: str | None, state: str | None
    ) -> ClientRedirect | ManualCode:
        """Handle the upstream consent callback for a grant."""
        if not upstream_auth_code or not state:
            raise InvalidRequest("Missing code or state parameter")

        try:
            state_data = json.loads(state)
            code = state_data["code"]
            original_state = state_data.get("state")
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Malformed state in upstream callback: {e}")
            raise InvalidRequest("Malformed state parameter") from e
        if not isinstance(code, str):
            raise InvalidRequest("Malformed state parameter")

        data = await self.grants.get(code)
        if data is None:
            logger.error(f"Upstream callback for unknown grant {_mask(code)}")
            raise UnknownGrant("Invalid authorization code")
        grant = AuthorizationGrant.model_validate(data)
        if grant.is_expired():
            await self.grants.delete(code)
            logger.warning(f"Upstream callback for expired grant {_mask(code)}")
            raise UnknownGrant("Authorization code expired")

        credential = await self.upstream.exchange_auth_code(
            upstream_auth_code,
            self.callback_url,
            identity=f"bridge-{secrets.token_hex(8)}",
        )
        await self.credentials.save(credential)

        grant.upstream_credential = credential
        await self.grants.put(code, grant.model_dump(mode="json"), expires_at=grant.expires_at)
        logger.info(f"Attached upstream credential to grant {_mask(code)}")

        if grant.redirect_uri:
            url = construct_redirect_uri(grant.redirect_uri, code=code, state=original_state)
            return ClientRedirect(url=url)

        return ManualCode(code=code, expires_in=max(0, int(grant.expires_at - time.time())))


class TokenExchanger:
    """Exchanges grants for bridge tokens and resolves bridge tokens."""

    def __init__(
        self,
        grants: KeyValueStore,
        tokens: KeyValueStore,
        credentials: UpstreamCredentialStore,
        token_ttl: int = TOKEN_TTL_SECONDS,
        enforce_pkce: bool = True,
    ):
        self.grants = grants
        self.tokens = tokens
        self.credentials = credentials
        self.token_ttl = token_ttl
        self.enforce_pkce = enforce_pkce
        if not enforce_pkce:
            logger.warning("PKCE verification is DISABLED - use for local testing only")

    async def exchange(
        self,
        grant_type: str | None,
        code: str | None,
        redirect_uri: str | None = None,
        code_verifier: str | None = None,
    ) -> dict[str, Any]:
        """Exchange an authorization code for a bridge token."""
        if grant_type != "authorization_code":
            raise UnsupportedGrantType(f"Unsupported grant_type: {grant_type}")
        if not code:
            raise InvalidGrant("Missing authorization code")

        data = await self.grants.get(code)
        if data is None:
            logger.warning(f"Exchange attempted with unknown code {_mask(code)}")
            raise InvalidGrant("Unknown or already used authorization code")
        grant = AuthorizationGrant.model_validate(data)

        if grant.is_expired():
            await self.grants.delete(code)
            logger.warning(f"Exchange attempted with expired code {_mask(code)}")
            raise InvalidGrant("Authorization code expired")
        if grant.upstream_credential is None:
            logger.warning(f"Exchange attempted before upstream consent for {_mask(code)}")
            raise InvalidGrant("Authorization not completed")
        if grant.redirect_uri and redirect_uri and redirect_uri != grant.redirect_uri:
            raise InvalidGrant("redirect_uri does not match the authorization request")

        if self.enforce_pkce and grant.code_challenge:
            if not code_verifier:
                raise InvalidGrant("Missing code_verifier")
            method = grant.code_challenge_method or "plain"
            if not verify_code_verifier(code_verifier, grant.code_challenge, method):
                logger.warning(f"code_verifier mismatch for {_mask(code)} (method={method})")
                raise InvalidGrant("code_verifier does not match code_challenge")

        # Only a valid exchange spends the code; a concurrent winner leaves None
        if await self.grants.pop(code) is None:
            logger.warning(f"Code {_mask(code)} was consumed by a concurrent exchange")
            raise InvalidGrant("Unknown or already used authorization code")

        now = time.time()
        scope = grant.requested_scope or DEFAULT_SCOPE
        bridge_token = BridgeToken(
            token=secrets.token_hex(32),
            identity=grant.upstream_credential.identity,
            client_id=grant.client_id,
            scope=scope,
            issued_at=now,
            expires_at=now + self.token_ttl,
        )
        await self.tokens.put(
            bridge_token.token, bridge_token.model_dump(mode="json"), expires_at=bridge_token.expires_at
        )
        logger.info(f"Issued bridge token for client {grant.client_id}")

        return {
            "access_token": bridge_token.token,
            "token_type": "bearer",
            "expires_in": self.token_ttl,
            "scope": scope,
        }

    async def resolve(self, token: str | None) -> BridgeToken | None:
        """Look up a bridge token. Expired tokens are treated as unknown."""
        if not token:
            return None
        data = await self.tokens.get(token)
        if data is None:
            logger.debug(f"Bridge token {_mask(token)} not found")
            return None
        bridge_token = BridgeToken.model_validate(data)
        if bridge_token.is_expired():
            await self.tokens.delete(token)
            logger.debug(f"Bridge token {_mask(token)} has expired")
            return None
        return bridge_token

    async def resolve_credential(self, token: str | None) -> UpstreamCredential | None:
        bridge_token = await self.resolve(token)
        if bridge_token is None:
            return None
        return await self.credentials.get(bridge_token.identity)

    async def revoke(self, token: str) -> bool:
        removed = await self.tokens.delete(token)
        if removed:
            logger.info(f"Revoked bridge token {_mask(token)}")
        return removed
