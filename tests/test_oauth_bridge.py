"""Tests for the authorization grant issuer and bridge token exchanger."""

import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import pytest

from gtasks_mcp.credentials import UpstreamCredentialStore
from gtasks_mcp.errors import InvalidGrant, InvalidRequest, UnknownGrant, UnsupportedGrantType
from gtasks_mcp.oauth_bridge import (
    ClientRedirect,
    ConsentPage,
    GrantIssuer,
    ManualCode,
    TokenExchanger,
    UpstreamRedirect,
    verify_code_verifier,
)
from gtasks_mcp.storage import MemoryStore

VERIFIER = "a-client-generated-verifier-that-is-long-enough-1234567890"
CHALLENGE = base64.urlsafe_b64encode(hashlib.sha256(VERIFIER.encode()).digest()).rstrip(b"=").decode()
REDIRECT_URI = "http://localhost:8080/callback"


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def grants() -> MemoryStore:
    return MemoryStore("grants")


@pytest.fixture
def tokens() -> MemoryStore:
    return MemoryStore("tokens")


@pytest.fixture
def issuer(grants, credential_store, fake_google) -> GrantIssuer:
    return GrantIssuer(
        grants,
        credential_store,
        fake_google,
        authorize_url="http://gateway.test/authorize",
        callback_url="http://gateway.test/callback",
    )


@pytest.fixture
def exchanger(grants, tokens, credential_store) -> TokenExchanger:
    return TokenExchanger(grants, tokens, credential_store)


async def _authorized_code(issuer: GrantIssuer, redirect_uri: str | None = REDIRECT_URI) -> str:
    """Run the grant through upstream consent and return the client's code."""
    outcome = await issuer.begin_authorization(
        client_id="client-1",
        redirect_uri=redirect_uri,
        state="client-state",
        code_challenge=CHALLENGE,
        code_challenge_method="S256",
    )
    assert isinstance(outcome, UpstreamRedirect)
    upstream_state = _query(outcome.url)["state"]
    completed = await issuer.complete_authorization("google-code", upstream_state)
    if isinstance(completed, ManualCode):
        return completed.code
    return _query(completed.url)["code"]


class TestVerifyCodeVerifier:
    """Tests for PKCE verification."""

    def test_s256_match(self) -> None:
        assert verify_code_verifier(VERIFIER, CHALLENGE, "S256") is True

    def test_s256_mismatch(self) -> None:
        assert verify_code_verifier("some-other-verifier", CHALLENGE, "S256") is False

    def test_plain(self) -> None:
        assert verify_code_verifier("abc", "abc", "plain") is True
        assert verify_code_verifier("abc", "abd", "plain") is False

    def test_unknown_method(self) -> None:
        assert verify_code_verifier(VERIFIER, CHALLENGE, "S512") is False


class TestBeginAuthorization:
    """Tests for GrantIssuer.begin_authorization."""

    @pytest.mark.asyncio
    async def test_redirects_to_google_with_tasks_scope(self, issuer: GrantIssuer, grants: MemoryStore) -> None:
        outcome = await issuer.begin_authorization(
            client_id="client-1",
            redirect_uri=REDIRECT_URI,
            state="xyz",
            code_challenge=CHALLENGE,
            code_challenge_method="S256",
        )

        assert isinstance(outcome, UpstreamRedirect)
        params = _query(outcome.url)
        assert outcome.url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert params["scope"] == "https://www.googleapis.com/auth/tasks"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["redirect_uri"] == "http://gateway.test/callback"
        assert json.loads(params["state"]) == {"code": outcome.grant_code, "state": "xyz"}

        stored = await grants.get(outcome.grant_code)
        assert stored is not None
        assert stored["client_id"] == "client-1"
        assert stored["code_challenge"] == CHALLENGE
        assert stored["upstream_credential"] is None
        assert stored["expires_at"] - stored["created_at"] == pytest.approx(600)

    @pytest.mark.asyncio
    async def test_missing_challenge_returns_consent_page(self, issuer: GrantIssuer, grants: MemoryStore) -> None:
        outcome = await issuer.begin_authorization(
            client_id="client-1", redirect_uri=REDIRECT_URI, state="xyz"
        )

        assert isinstance(outcome, ConsentPage)
        params = _query(outcome.authorize_url)
        assert params["code_challenge_method"] == "plain"
        assert params["code_challenge"] == outcome.code_verifier
        assert params["client_id"] == "client-1"
        assert params["state"] == "xyz"
        assert await grants.count() == 0

    @pytest.mark.asyncio
    async def test_challenge_defaults_to_plain(self, issuer: GrantIssuer, grants: MemoryStore) -> None:
        outcome = await issuer.begin_authorization(
            client_id="client-1", redirect_uri=REDIRECT_URI, code_challenge="plain-value"
        )
        stored = await grants.get(outcome.grant_code)
        assert stored["code_challenge_method"] == "plain"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"client_id": None},
            {"client_id": ""},
            {"client_id": "c", "response_type": "token"},
            {"client_id": "c", "code_challenge": CHALLENGE, "code_challenge_method": "S512"},
            {"client_id": "c", "redirect_uri": "not-a-url"},
        ],
    )
    async def test_invalid_requests(self, issuer: GrantIssuer, kwargs: dict) -> None:
        kwargs.setdefault("redirect_uri", REDIRECT_URI)
        with pytest.raises(InvalidRequest):
            await issuer.begin_authorization(**kwargs)

    @pytest.mark.asyncio
    async def test_redirect_uri_required_without_manual_code(
        self, grants: MemoryStore, credential_store: UpstreamCredentialStore, fake_google
    ) -> None:
        issuer = GrantIssuer(
            grants,
            credential_store,
            fake_google,
            authorize_url="http://gateway.test/authorize",
            callback_url="http://gateway.test/callback",
            allow_manual_code=False,
        )
        with pytest.raises(InvalidRequest):
            await issuer.begin_authorization(client_id="c", code_challenge=CHALLENGE)


class TestCompleteAuthorization:
    """Tests for GrantIssuer.complete_authorization."""

    @pytest.mark.asyncio
    async def test_redirects_to_client_with_code_and_state(
        self, issuer: GrantIssuer, grants: MemoryStore, credential_store: UpstreamCredentialStore, fake_google
    ) -> None:
        outcome = await issuer.begin_authorization(
            client_id="client-1",
            redirect_uri=REDIRECT_URI,
            state="client-state",
            code_challenge=CHALLENGE,
            code_challenge_method="S256",
        )
        upstream_state = _query(outcome.url)["state"]

        completed = await issuer.complete_authorization("google-code", upstream_state)

        assert isinstance(completed, ClientRedirect)
        assert completed.url.startswith(REDIRECT_URI)
        assert _query(completed.url) == {"code": outcome.grant_code, "state": "client-state"}

        assert fake_google.exchanged[0][:2] == ("google-code", "http://gateway.test/callback")
        stored = await grants.get(outcome.grant_code)
        identity = stored["upstream_credential"]["identity"]
        credential = await credential_store.get(identity)
        assert credential is not None
        assert credential.access_token == "google-access-google-code"

    @pytest.mark.asyncio
    async def test_manual_code_without_redirect_uri(self, issuer: GrantIssuer) -> None:
        outcome = await issuer.begin_authorization(client_id="cli", code_challenge=CHALLENGE, code_challenge_method="S256")
        completed = await issuer.complete_authorization("google-code", _query(outcome.url)["state"])

        assert isinstance(completed, ManualCode)
        assert completed.code == outcome.grant_code
        assert 0 < completed.expires_in <= 600

    @pytest.mark.asyncio
    async def test_unknown_grant(self, issuer: GrantIssuer, fake_google) -> None:
        with pytest.raises(UnknownGrant):
            await issuer.complete_authorization("google-code", json.dumps({"code": "nope", "state": None}))
        assert fake_google.exchanged == []

    @pytest.mark.asyncio
    async def test_expired_grant_is_deleted(
        self, grants: MemoryStore, credential_store: UpstreamCredentialStore, fake_google
    ) -> None:
        issuer = GrantIssuer(
            grants,
            credential_store,
            fake_google,
            authorize_url="http://gateway.test/authorize",
            callback_url="http://gateway.test/callback",
            grant_ttl=-1,
        )
        outcome = await issuer.begin_authorization(client_id="c", redirect_uri=REDIRECT_URI, code_challenge=CHALLENGE)

        with pytest.raises(UnknownGrant):
            await issuer.complete_authorization("google-code", _query(outcome.url)["state"])
        assert await grants.get(outcome.grant_code) is None
        assert fake_google.exchanged == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [None, "", "not json", "[1, 2]", '{"state": "x"}', '{"code": 5}'])
    async def test_malformed_state(self, issuer: GrantIssuer, state: str | None) -> None:
        with pytest.raises(InvalidRequest):
            await issuer.complete_authorization("google-code", state)


class TestTokenExchange:
    """Tests for TokenExchanger.exchange and resolve."""

    @pytest.mark.asyncio
    async def test_round_trip(
        self, issuer: GrantIssuer, exchanger: TokenExchanger, credential_store: UpstreamCredentialStore
    ) -> None:
        code = await _authorized_code(issuer)

        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)

        assert result["token_type"] == "bearer"
        assert result["expires_in"] == 3600
        assert result["scope"] == "gtasks:read gtasks:write"
        credential = await exchanger.resolve_credential(result["access_token"])
        assert credential is not None
        assert credential.access_token == "google-access-google-code"

        bridge_token = await exchanger.resolve(result["access_token"])
        assert bridge_token.client_id == "client-1"
        assert bridge_token.identity == credential.identity

    @pytest.mark.asyncio
    async def test_code_exchanges_at_most_once(self, issuer: GrantIssuer, exchanger: TokenExchanger) -> None:
        code = await _authorized_code(issuer)

        await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)
        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)

    @pytest.mark.asyncio
    async def test_early_exchange_leaves_grant_for_consent(
        self, issuer: GrantIssuer, exchanger: TokenExchanger, grants: MemoryStore
    ) -> None:
        outcome = await issuer.begin_authorization(
            client_id="client-1",
            redirect_uri=REDIRECT_URI,
            state="client-state",
            code_challenge=CHALLENGE,
            code_challenge_method="S256",
        )

        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", outcome.grant_code, REDIRECT_URI, VERIFIER)
        assert await grants.get(outcome.grant_code) is not None

        completed = await issuer.complete_authorization("google-code", _query(outcome.url)["state"])
        code = _query(completed.url)["code"]
        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)

        assert result["access_token"]
        assert await grants.get(code) is None

    @pytest.mark.asyncio
    async def test_failed_verifier_does_not_spend_code(
        self, issuer: GrantIssuer, exchanger: TokenExchanger, grants: MemoryStore
    ) -> None:
        code = await _authorized_code(issuer)

        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, REDIRECT_URI, "wrong-verifier")
        assert await grants.get(code) is not None

        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)
        assert result["access_token"]

    @pytest.mark.asyncio
    async def test_concurrent_consumer_wins(
        self, issuer: GrantIssuer, exchanger: TokenExchanger, grants: MemoryStore, tokens: MemoryStore
    ) -> None:
        code = await _authorized_code(issuer)
        original_pop = grants.pop

        async def pop_after_rival(key: str):
            await original_pop(key)
            return None

        grants.pop = pop_after_rival

        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)
        assert await tokens.count() == 0

    @pytest.mark.asyncio
    async def test_expired_grant(self, issuer: GrantIssuer, exchanger: TokenExchanger, grants: MemoryStore) -> None:
        code = await _authorized_code(issuer)
        stored = await grants.get(code)
        stored["expires_at"] = stored["created_at"] - 1
        await grants.put(code, stored)

        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)

    @pytest.mark.asyncio
    async def test_wrong_verifier(self, issuer: GrantIssuer, exchanger: TokenExchanger) -> None:
        code = await _authorized_code(issuer)
        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, REDIRECT_URI, "wrong-verifier")

    @pytest.mark.asyncio
    async def test_missing_verifier(self, issuer: GrantIssuer, exchanger: TokenExchanger) -> None:
        code = await _authorized_code(issuer)
        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_pkce_not_enforced_for_local_testing(
        self, issuer: GrantIssuer, grants: MemoryStore, tokens: MemoryStore, credential_store: UpstreamCredentialStore
    ) -> None:
        exchanger = TokenExchanger(grants, tokens, credential_store, enforce_pkce=False)
        code = await _authorized_code(issuer)

        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI)

        assert result["access_token"]

    @pytest.mark.asyncio
    async def test_redirect_uri_mismatch(self, issuer: GrantIssuer, exchanger: TokenExchanger) -> None:
        code = await _authorized_code(issuer)
        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", code, "http://evil.test/callback", VERIFIER)

    @pytest.mark.asyncio
    async def test_unsupported_grant_type(self, exchanger: TokenExchanger) -> None:
        with pytest.raises(UnsupportedGrantType):
            await exchanger.exchange("refresh_token", "whatever")

    @pytest.mark.asyncio
    async def test_unknown_code(self, exchanger: TokenExchanger) -> None:
        with pytest.raises(InvalidGrant):
            await exchanger.exchange("authorization_code", "never-issued", REDIRECT_URI, VERIFIER)

    @pytest.mark.asyncio
    async def test_expired_token_resolves_like_unknown(
        self, issuer: GrantIssuer, grants: MemoryStore, tokens: MemoryStore, credential_store: UpstreamCredentialStore
    ) -> None:
        exchanger = TokenExchanger(grants, tokens, credential_store, token_ttl=-1)
        code = await _authorized_code(issuer)
        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)

        assert await exchanger.resolve(result["access_token"]) is None
        assert await exchanger.resolve("never-issued") is None
        assert await exchanger.resolve(None) is None
        assert await tokens.count() == 0

    @pytest.mark.asyncio
    async def test_token_stops_resolving_after_credential_invalidated(
        self, issuer: GrantIssuer, exchanger: TokenExchanger, credential_store: UpstreamCredentialStore
    ) -> None:
        code = await _authorized_code(issuer)
        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)
        bridge_token = await exchanger.resolve(result["access_token"])

        await credential_store.invalidate(bridge_token.identity)

        assert await exchanger.resolve_credential(result["access_token"]) is None

    @pytest.mark.asyncio
    async def test_revoke(self, issuer: GrantIssuer, exchanger: TokenExchanger) -> None:
        code = await _authorized_code(issuer)
        result = await exchanger.exchange("authorization_code", code, REDIRECT_URI, VERIFIER)

        assert await exchanger.revoke(result["access_token"]) is True
        assert await exchanger.resolve(result["access_token"]) is None
        assert await exchanger.revoke(result["access_token"]) is False
