"""
Streaming Session Handler.

Authenticates an SSE connection with a bridge token, binds the connection to
the token's identity for its whole lifetime and runs the MCP server over the
event stream. Client messages arrive on the ``/messages/`` endpoint of the
same SseServerTransport.
"""

import logging
import secrets
from typing import Any

from mcp.server.lowlevel import Server
from mcp.server.sse import SseServerTransport
from starlette.requests import Request
from starlette.responses import JSONResponse

from .oauth_bridge import TokenExchanger
from .operations import ConnectionBinding, current_binding

logger = logging.getLogger(__name__)

MESSAGES_PATH = "/messages/"


def extract_bearer_token(request: Request) -> str | None:
    """Bearer token from the Authorization header, or the ``token`` query parameter."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token

    token = request.query_params.get("token")
    if token:
        # Query strings end up in proxy and access logs
        logger.warning("Bearer token supplied in query string; prefer the Authorization header")
        return token
    return None


class StreamingSessionHandler:
    """ASGI endpoint for ``GET /sse``."""

    def __init__(
        self,
        exchanger: TokenExchanger,
        mcp_server: Server,
        server_url: str,
        transport: SseServerTransport | None = None,
    ):
        self.exchanger = exchanger
        self.mcp_server = mcp_server
        self.server_url = server_url.rstrip("/")
        self.transport = transport or SseServerTransport(MESSAGES_PATH)
        self.connections: dict[str, ConnectionBinding] = {}

    @property
    def active_connections(self) -> int:
        return len(self.connections)

    def _unauthorized(self, description: str) -> JSONResponse:
        resource_metadata = f"{self.server_url}/.well-known/oauth-protected-resource"
        return JSONResponse(
            {"error": "unauthorized", "error_description": description},
            status_code=401,
            headers={
                "WWW-Authenticate": f'Bearer realm="MCP Server", resource_metadata="{resource_metadata}"'
            },
        )

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        request = Request(scope, receive)
        logger.info("=== SSE connection request ===")

        token = extract_bearer_token(request)
        if not token:
            logger.warning("SSE connection rejected: no bearer token")
            await self._unauthorized("Bearer token required")(scope, receive, send)
            return

        bridge_token = await self.exchanger.resolve(token)
        if bridge_token is None:
            logger.warning(f"SSE connection rejected: unknown or expired token {token[:8]}...")
            await self._unauthorized("Invalid or expired token")(scope, receive, send)
            return

        if await self.exchanger.credentials.get(bridge_token.identity) is None:
            logger.warning(f"SSE connection rejected: no credential for {bridge_token.identity}")
            await self._unauthorized("Authorization is no longer valid")(scope, receive, send)
            return

        connection_id = secrets.token_hex(16)
        binding = ConnectionBinding(
            connection_id=connection_id,
            identity=bridge_token.identity,
            client_id=bridge_token.client_id,
        )
        self.connections[connection_id] = binding
        context_token = current_binding.set(binding)
        logger.info(
            f"SSE connection {connection_id} opened for client {bridge_token.client_id} "
            f"({self.active_connections} active)"
        )

        try:
            async with self.transport.connect_sse(scope, receive, send) as (read_stream, write_stream):
                await self.mcp_server.run(
                    read_stream,
                    write_stream,
                    self.mcp_server.create_initialization_options(),
                )
        finally:
            current_binding.reset(context_token)
            self.connections.pop(connection_id, None)
            logger.info(f"SSE connection {connection_id} closed ({self.active_connections} active)")
