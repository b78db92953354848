"""
OAuth routes of the gateway.

Three ways to end up holding an upstream credential:

1. Authorization-code bridge (/authorize, /callback, /token) for MCP clients
   on the streaming transport
2. Session flow (/auth/google, /auth/google/callback) for the stdio proxy,
   which stores the returned session id locally
3. Trusted-proxy flow (/setup-google-auth, /google-api-callback) when an
   authenticating reverse proxy in front of the gateway supplies the user's
   email address
"""

import html
import logging
import secrets
import time
from json import JSONDecodeError
from typing import TYPE_CHECKING

from mcp.server.auth.routes import cors_middleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from .errors import InvalidRequest, Unauthorized, UnknownGrant
from .models import PendingConsent
from .oauth_bridge import DEFAULT_SCOPE, SUPPORTED_CHALLENGE_METHODS, ConsentPage, ManualCode

if TYPE_CHECKING:
    from .server import Gateway

logger = logging.getLogger(__name__)

PENDING_CONSENT_TTL_SECONDS = 10 * 60
PROXY_IDENTITY_HEADERS = ("x-auth-request-email", "x-forwarded-email")


def proxy_identity(request: Request, trust_proxy_headers: bool) -> str | None:
    """Email address asserted by an authenticating reverse proxy, if trusted."""
    if not trust_proxy_headers:
        return None
    for header in PROXY_IDENTITY_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip().lower()
    return None


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""
        <html>
        <head><title>{html.escape(title)}</title></head>
        <body>
            <h1>{html.escape(title)}</h1>
            {body}
        </body>
        </html>
        """,
        status_code=status_code,
    )


def _consent_page(outcome: ConsentPage) -> HTMLResponse:
    url = html.escape(outcome.authorize_url, quote=True)
    verifier = html.escape(outcome.code_verifier)
    return _page(
        "Authorize Google Tasks access",
        f"""
            <p>Your client did not send a PKCE code challenge, so one was generated for you.</p>
            <p>Keep this code verifier; you will need it to exchange the authorization code:</p>
            <pre>{verifier}</pre>
            <p><a href="{url}">Continue to Google</a></p>
        """,
    )


def _manual_code_page(outcome: ManualCode) -> HTMLResponse:
    return _page(
        "Authorization Successful!",
        f"""
            <p>Copy this authorization code back into your client:</p>
            <pre>{html.escape(outcome.code)}</pre>
            <p>It expires in {outcome.expires_in // 60} minutes and can be used once.</p>
        """,
    )


async def _read_params(request: Request) -> dict[str, str]:
    """Token request parameters from a form or JSON body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except (JSONDecodeError, ValueError) as e:
            raise InvalidRequest("Request body is not valid JSON") from e
        if not isinstance(data, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return {k: str(v) for k, v in data.items() if v is not None}

    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


async def _start_consent(
    gateway: "Gateway", flow: str, redirect_path: str, identity: str | None = None
) -> RedirectResponse:
    now = time.time()
    pending = PendingConsent(
        state=secrets.token_urlsafe(32),
        flow=flow,
        identity=identity,
        created_at=now,
        expires_at=now + PENDING_CONSENT_TTL_SECONDS,
    )
    await gateway.pending.put(pending.state, pending.model_dump(mode="json"), expires_at=pending.expires_at)
    url = gateway.oauth_client.build_consent_url(
        pending.state, f"{gateway.settings.public_url}{redirect_path}"
    )
    logger.info(f"Redirecting to Google consent for {flow} flow")
    return RedirectResponse(url, status_code=302)


async def _claim_consent(gateway: "Gateway", request: Request, flow: str) -> tuple[str, PendingConsent]:
    error = request.query_params.get("error")
    if error:
        raise InvalidRequest(f"Google authorization failed: {error}")

    code = request.query_params.get("code")
    state = request.query_params.get("state")
    if not code or not state:
        raise InvalidRequest("Missing code or state parameter")

    data = await gateway.pending.pop(state)
    if data is None:
        logger.warning(f"Consent callback with unknown state for {flow} flow")
        raise UnknownGrant("Unknown or already used state")
    pending = PendingConsent.model_validate(data)
    if pending.flow != flow or pending.expires_at < time.time():
        raise UnknownGrant("Consent request expired or belongs to another flow")
    return code, pending


def create_auth_routes(gateway: "Gateway") -> list[Route]:
    """Routes for every authentication flow plus discovery metadata."""
    settings = gateway.settings
    server_url = settings.public_url

    async def authorize_handler(request: Request) -> Response:
        params = request.query_params
        logger.info(f"=== Authorization request from client {params.get('client_id')} ===")
        outcome = await gateway.issuer.begin_authorization(
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            requested_scope=params.get("scope"),
            state=params.get("state"),
            code_challenge=params.get("code_challenge"),
            code_challenge_method=params.get("code_challenge_method"),
            response_type=params.get("response_type", "code"),
        )
        if isinstance(outcome, ConsentPage):
            return _consent_page(outcome)
        return RedirectResponse(outcome.url, status_code=302)

    async def callback_handler(request: Request) -> Response:
        logger.info("=== Upstream authorization callback ===")
        error = request.query_params.get("error")
        if error:
            logger.warning(f"Google returned error: {error}")
            return _page(
                "Authorization Failed",
                f"<p>Error: {html.escape(error)}</p><p>You can close this window.</p>",
                status_code=400,
            )

        outcome = await gateway.issuer.complete_authorization(
            request.query_params.get("code"), request.query_params.get("state")
        )
        if isinstance(outcome, ManualCode):
            return _manual_code_page(outcome)
        return RedirectResponse(outcome.url, status_code=302)

    async def token_handler(request: Request) -> Response:
        logger.info("=== Token request ===")
        params = await _read_params(request)
        result = await gateway.exchanger.exchange(
            grant_type=params.get("grant_type"),
            code=params.get("code"),
            redirect_uri=params.get("redirect_uri"),
            code_verifier=params.get("code_verifier"),
        )
        return JSONResponse(result, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    async def authorization_server_metadata(request: Request) -> JSONResponse:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        logger.info("=== OAuth Authorization Server Metadata Request ===")
        return JSONResponse(
            {
                "issuer": server_url,
                "authorization_endpoint": f"{server_url}/authorize",
                "token_endpoint": f"{server_url}/token",
                "response_types_supported": ["code"],
                "grant_types_supported": ["authorization_code"],
                "token_endpoint_auth_methods_supported": ["none"],
                "code_challenge_methods_supported": list(SUPPORTED_CHALLENGE_METHODS),
                "scopes_supported": DEFAULT_SCOPE.split(),
            }
        )

    async def protected_resource_metadata(request: Request) -> JSONResponse:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
        logger.info("=== OAuth Protected Resource Metadata Request ===")
        return JSONResponse(
            {
                "resource": server_url,
                "authorization_servers": [server_url],
                "scopes_supported": DEFAULT_SCOPE.split(),
                "bearer_methods_supported": ["header"],
            }
        )

    async def session_auth_handler(request: Request) -> Response:
        logger.info("=== Session flow: starting Google consent ===")
        return await _start_consent(gateway, "session", "/auth/google/callback")

    async def session_callback_handler(request: Request) -> Response:
        logger.info("=== Session flow: Google callback ===")
        code, _ = await _claim_consent(gateway, request, "session")
        identity = f"session-{secrets.token_hex(8)}"
        credential = await gateway.oauth_client.exchange_auth_code(
            code, f"{server_url}/auth/google/callback", identity=identity
        )
        session_id = await gateway.sessions.upsert_session(identity, credential)
        return JSONResponse(
            {
                "success": True,
                "session_id": session_id,
                "message": "Authentication successful. Paste this session id into your MCP client.",
            }
        )

    async def proxy_setup_handler(request: Request) -> Response:
        identity = proxy_identity(request, settings.trust_proxy_headers)
        logger.info(f"=== Trusted-proxy flow: setup for {identity} ===")
        if identity is None:
            raise Unauthorized("No authenticated user identity from the reverse proxy")
        return await _start_consent(gateway, "proxy", "/google-api-callback", identity=identity)

    async def proxy_callback_handler(request: Request) -> Response:
        logger.info("=== Trusted-proxy flow: Google callback ===")
        if not settings.trust_proxy_headers:
            raise Unauthorized("Trusted-proxy authentication is disabled")
        code, pending = await _claim_consent(gateway, request, "proxy")
        if not pending.identity:
            raise InvalidRequest("Consent request has no identity")
        credential = await gateway.oauth_client.exchange_auth_code(
            code, f"{server_url}/google-api-callback", identity=pending.identity
        )
        await gateway.credentials.save(credential)
        return _page(
            "Google Tasks connected",
            f"<p>Access granted for {html.escape(pending.identity)}. You can close this window.</p>",
        )

    return [
        Route("/authorize", endpoint=authorize_handler, methods=["GET"]),
        Route("/callback", endpoint=callback_handler, methods=["GET"]),
        Route(
            "/token",
            endpoint=cors_middleware(token_handler, ["POST", "OPTIONS"]),
            methods=["POST", "OPTIONS"],
        ),
        Route(
            "/.well-known/oauth-authorization-server",
            endpoint=cors_middleware(authorization_server_metadata, ["GET", "OPTIONS"]),
            methods=["GET", "OPTIONS"],
        ),
        Route(
            "/.well-known/openid-configuration",
            endpoint=cors_middleware(authorization_server_metadata, ["GET", "OPTIONS"]),
            methods=["GET", "OPTIONS"],
        ),
        Route(
            "/.well-known/oauth-protected-resource",
            endpoint=cors_middleware(protected_resource_metadata, ["GET", "OPTIONS"]),
            methods=["GET", "OPTIONS"],
        ),
        Route("/auth/google", endpoint=session_auth_handler, methods=["GET"]),
        Route("/auth/google/callback", endpoint=session_callback_handler, methods=["GET"]),
        Route("/setup-google-auth", endpoint=proxy_setup_handler, methods=["GET"]),
        Route("/google-api-callback", endpoint=proxy_callback_handler, methods=["GET"]),
    ]
