import asyncio
import contextlib
import logging
import os
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from json import JSONDecodeError
from pathlib import Path
from typing import Any

import click
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route
from uvicorn import Config, Server

from .auth_server import create_auth_routes, proxy_identity
from .config import GatewaySettings
from .credentials import UpstreamCredentialStore
from .errors import GatewayError, InvalidRequest, Unauthorized
from .google_oauth import GoogleAuthSettings, GoogleOAuthClient
from .models import UpstreamCredential
from .oauth_bridge import GrantIssuer, TokenExchanger
from .operations import TaskGateway
from .sessions import SessionRegistry
from .storage import JsonFileStore, KeyValueStore, MemoryStore
from .streaming import MESSAGES_PATH, StreamingSessionHandler
from .task_api import TasksAPI
from .token_storage import GatewayDatabase
from .tools import register_task_tools

logger = logging.getLogger(__name__)

SESSION_HEADER = "x-session-id"
_SECRET_QUERY = re.compile(r"(token|code|code_verifier|session_id)=[^&]*")


@dataclass
class StorageBackend:
    """The stores behind every registry of the gateway."""

    credentials: KeyValueStore
    grants: KeyValueStore
    tokens: KeyValueStore
    sessions: KeyValueStore
    session_index: KeyValueStore
    pending: KeyValueStore
    database: GatewayDatabase | None = None

    @classmethod
    def in_memory(cls) -> "StorageBackend":
        return cls(
            credentials=MemoryStore("credentials"),
            grants=MemoryStore("grants"),
            tokens=MemoryStore("tokens"),
            sessions=MemoryStore("sessions"),
            session_index=MemoryStore("session_index"),
            pending=MemoryStore("pending"),
        )

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "StorageBackend":
        """PostgreSQL when a database URL is configured, otherwise memory plus credential files."""
        database_url = settings.database_url or os.environ.get("DATABASE_URL")
        if database_url:
            database = GatewayDatabase(database_url)
            return cls(
                credentials=database.store("credentials"),
                grants=database.store("grants"),
                tokens=database.store("tokens"),
                sessions=database.store("sessions"),
                session_index=database.store("session_index"),
                pending=database.store("pending"),
                database=database,
            )

        logger.warning(
            "DATABASE_URL not configured - grants, tokens and sessions are kept in memory "
            "and will be lost on server restart!"
        )
        backend = cls.in_memory()
        backend.credentials = JsonFileStore("credentials", Path(settings.credentials_dir).expanduser())
        return backend

    def all(self) -> list[KeyValueStore]:
        return [
            self.credentials,
            self.grants,
            self.tokens,
            self.sessions,
            self.session_index,
            self.pending,
        ]


@dataclass
class Gateway:
    """Everything one gateway process needs, wired together."""

    settings: GatewaySettings
    google_settings: GoogleAuthSettings
    storage: StorageBackend
    oauth_client: GoogleOAuthClient
    task_api: TasksAPI
    credentials: UpstreamCredentialStore
    issuer: GrantIssuer
    exchanger: TokenExchanger
    sessions: SessionRegistry
    tasks: TaskGateway
    mcp: FastMCP
    streaming: StreamingSessionHandler = field(init=False)

    def __post_init__(self) -> None:
        self.streaming = StreamingSessionHandler(
            self.exchanger, self.mcp._mcp_server, self.settings.public_url
        )

    @property
    def pending(self) -> KeyValueStore:
        return self.storage.pending

    async def startup(self) -> None:
        if self.storage.database is not None:
            await self.storage.database.initialize()
        for store in self.storage.all():
            await store.purge_expired()

    async def shutdown(self) -> None:
        await self.oauth_client.close()
        await self.task_api.close()
        if self.storage.database is not None:
            await self.storage.database.close()


def build_gateway(
    settings: GatewaySettings,
    google_settings: GoogleAuthSettings,
    storage: StorageBackend | None = None,
    oauth_client: GoogleOAuthClient | None = None,
    task_api: TasksAPI | None = None,
) -> Gateway:
    storage = storage or StorageBackend.from_settings(settings)
    oauth_client = oauth_client or GoogleOAuthClient(google_settings)
    task_api = task_api or TasksAPI()
    server_url = settings.public_url

    credentials = UpstreamCredentialStore(storage.credentials, oauth_client)
    issuer = GrantIssuer(
        storage.grants,
        credentials,
        oauth_client,
        authorize_url=f"{server_url}/authorize",
        callback_url=f"{server_url}/callback",
        grant_ttl=settings.grant_ttl,
        allow_manual_code=settings.allow_manual_code,
    )
    exchanger = TokenExchanger(
        storage.grants,
        storage.tokens,
        credentials,
        token_ttl=settings.token_ttl,
        enforce_pkce=settings.enforce_pkce,
    )
    sessions = SessionRegistry(
        storage.sessions, storage.session_index, credentials, idle_ttl=settings.session_idle_ttl
    )
    tasks = TaskGateway(task_api, credentials)

    mcp = FastMCP("gtasks-mcp")
    register_task_tools(mcp, tasks.run_bound)

    return Gateway(
        settings=settings,
        google_settings=google_settings,
        storage=storage,
        oauth_client=oauth_client,
        task_api=task_api,
        credentials=credentials,
        issuer=issuer,
        exchanger=exchanger,
        sessions=sessions,
        tasks=tasks,
        mcp=mcp,
    )


class NormalizePathMiddleware:
    """ASGI middleware to normalize paths so /tasks and /tasks/ work identically.

    Strips trailing slashes from all paths (except root and the message
    endpoint mount) before routing.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] == "http":
            path = scope.get("path", "/")
            if path != "/" and path.endswith("/") and path != MESSAGES_PATH:
                scope = dict(scope)
                scope["path"] = path.rstrip("/")
        await self.app(scope, receive, send)


def create_logging_middleware(app: Any) -> Callable[[dict[str, Any], Any, Any], Any]:
    """Create ASGI middleware that logs each request and its response status.

    Uses raw ASGI interface to avoid interfering with the event stream.
    """

    async def middleware(scope: dict[str, Any], receive: Any, send: Any) -> Any:
        if scope["type"] != "http":
            await app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "/")
        query_string = scope.get("query_string", b"").decode("utf-8", errors="replace")
        headers = {k.decode(): v.decode() for k, v in scope.get("headers", [])}

        logger.info(f"=== Incoming Request: {method} {path} ===")
        if query_string:
            masked = _SECRET_QUERY.sub(r"\1=***", query_string)
            logger.info(f"Query string: {masked}")
        for name, value in headers.items():
            if name.lower() == "authorization":
                logger.debug(f"  {name}: Bearer ***")
            elif name.lower() == SESSION_HEADER:
                logger.debug(f"  {name}: ***")
            else:
                logger.debug(f"  {name}: {value}")

        response_status: list[int | None] = [None]

        async def send_wrapper(message: dict[str, Any]) -> Any:
            if message["type"] == "http.response.start":
                response_status[0] = message.get("status")
                logger.info(f"=== Response: {response_status[0]} for {method} {path} ===")
            elif message["type"] == "http.response.body":
                body = message.get("body", b"")
                if body and response_status[0] == 400:
                    logger.error(f"400 Response body: {body.decode('utf-8', errors='replace')}")
            await send(message)

        await app(scope, receive, send_wrapper)

    return middleware


async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    logger.warning(f"{request.method} {request.url.path} failed: {exc.error_code} - {exc.description}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def create_task_routes(gateway: Gateway) -> list[Route]:
    """Plain HTTP task routes for session-header and trusted-proxy callers."""
    settings = gateway.settings
    server_url = settings.public_url

    def not_authenticated() -> JSONResponse:
        auth_path = "/setup-google-auth" if settings.trust_proxy_headers else "/auth/google"
        return JSONResponse(
            {"error": "Not authenticated", "auth_url": f"{server_url}{auth_path}"},
            status_code=401,
        )

    async def resolve_caller(
        request: Request,
    ) -> tuple[UpstreamCredential, Callable[[], Awaitable[Any]] | None]:
        session_id = request.headers.get(SESSION_HEADER) or request.query_params.get("session_id")
        if session_id:
            credential = await gateway.sessions.resolve(session_id)

            async def drop_session() -> None:
                await gateway.sessions.invalidate(session_id)

            return credential, drop_session

        identity = proxy_identity(request, settings.trust_proxy_headers)
        if identity:
            credential = await gateway.credentials.get(identity)
            if credential is None:
                raise Unauthorized(f"No Google credential stored for {identity}")
            return credential, None

        raise Unauthorized("No session or proxy identity")

    async def read_body(request: Request) -> dict[str, Any]:
        body = await request.body()
        if not body:
            return {}
        try:
            data = await request.json()
        except (JSONDecodeError, ValueError) as e:
            raise InvalidRequest("Request body is not valid JSON") from e
        if not isinstance(data, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return data

    async def run(request: Request, operation: str, args: dict[str, Any]) -> Response:
        logger.info(f"=== {operation} via HTTP ===")
        try:
            credential, on_rejected = await resolve_caller(request)
            result = await gateway.tasks.run(credential, operation, args, on_rejected=on_rejected)
        except Unauthorized as e:
            logger.warning(f"{operation} not authenticated: {e.description}")
            return not_authenticated()
        return JSONResponse(result)

    async def list_tasks(request: Request) -> Response:
        params = request.query_params
        return await run(
            request, "list", {"cursor": params.get("cursor"), "task_list_id": params.get("task_list_id")}
        )

    async def search_tasks(request: Request) -> Response:
        return await run(request, "search", {"query": request.query_params.get("q")})

    async def get_task(request: Request) -> Response:
        return await run(
            request,
            "get",
            {"id": request.path_params["task_id"], "task_list_id": request.query_params.get("task_list_id")},
        )

    async def create_task(request: Request) -> Response:
        return await run(request, "create", await read_body(request))

    async def update_task(request: Request) -> Response:
        args = await read_body(request)
        args["id"] = request.path_params["task_id"]
        return await run(request, "update", args)

    async def delete_task(request: Request) -> Response:
        return await run(
            request,
            "delete",
            {"id": request.path_params["task_id"], "task_list_id": request.query_params.get("task_list_id")},
        )

    async def clear_tasks(request: Request) -> Response:
        args = await read_body(request)
        args.setdefault("task_list_id", request.query_params.get("task_list_id"))
        return await run(request, "clear", args)

    return [
        Route("/tasks", endpoint=list_tasks, methods=["GET"]),
        Route("/tasks", endpoint=create_task, methods=["POST"]),
        Route("/tasks/search", endpoint=search_tasks, methods=["GET"]),
        Route("/tasks/clear", endpoint=clear_tasks, methods=["POST"]),
        Route("/tasks/{task_id}", endpoint=get_task, methods=["GET"]),
        Route("/tasks/{task_id}", endpoint=update_task, methods=["PUT"]),
        Route("/tasks/{task_id}", endpoint=delete_task, methods=["DELETE"]),
    ]


def create_gateway_app(gateway: Gateway) -> Starlette:
    """Create the gateway Starlette application."""

    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "service": "gtasks-mcp",
                "auth_configured": gateway.google_settings.configured,
                "active_connections": gateway.streaming.active_connections,
            }
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await gateway.startup()
        try:
            yield
        finally:
            await gateway.shutdown()

    routes = [
        *create_auth_routes(gateway),
        Route("/sse", endpoint=gateway.streaming, methods=["GET"]),
        Mount(MESSAGES_PATH, app=gateway.streaming.transport.handle_post_message),
        *create_task_routes(gateway),
        Route("/health", endpoint=health, methods=["GET"]),
    ]

    return Starlette(
        routes=routes,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
                allow_headers=["*"],
                expose_headers=["WWW-Authenticate"],
            )
        ],
        exception_handlers={GatewayError: gateway_error_handler},
        lifespan=lifespan,
    )


async def run_server(settings: GatewaySettings, google_settings: GoogleAuthSettings) -> None:
    """Run the gateway."""
    gateway = build_gateway(settings, google_settings)
    app = NormalizePathMiddleware(create_logging_middleware(create_gateway_app(gateway)))

    config = Config(app, host=settings.host, port=settings.port, log_level="info")
    server = Server(config)

    storage_type = "database" if gateway.storage.database else "memory + credential files"
    logger.info("=" * 60)
    logger.info(f"Google Tasks MCP gateway running on {settings.public_url}")
    logger.info(f"Binding to: {settings.host}:{settings.port}")
    logger.info(f"State storage: {storage_type}")
    logger.info(f"PKCE enforced: {settings.enforce_pkce}")
    logger.info(f"Trusted proxy headers: {settings.trust_proxy_headers}")
    logger.info("=" * 60)

    await server.serve()


@click.command()
@click.option("--host", default=None, help="Interface to bind to")
@click.option("--port", type=int, default=None, help="Port to listen on")
@click.option("--server-url", default=None, help="Public URL of the gateway (for redirect URIs)")
@click.option("--database-url", default=None, help="PostgreSQL URL for shared state")
@click.option("--log-level", default="INFO", help="Logging level")
def main(
    host: str | None,
    port: int | None,
    server_url: str | None,
    database_url: str | None,
    log_level: str,
) -> int:
    """
    Run the Google Tasks MCP gateway.

    Serves the OAuth bridge, the SSE transport and the plain HTTP task API.
    """
    load_dotenv()

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    logging.basicConfig(level=log_level.upper(), format=log_format)
    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        uv_logger = logging.getLogger(logger_name)
        uv_logger.handlers = []
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(log_format))
        uv_logger.addHandler(handler)

    overrides: dict[str, Any] = {
        "host": host,
        "port": port,
        "server_url": server_url,
        "database_url": database_url,
    }
    settings = GatewaySettings(**{k: v for k, v in overrides.items() if v is not None})
    if server_url is None and port is not None and "GTASKS_SERVER_URL" not in os.environ:
        settings.server_url = f"http://localhost:{port}"

    google_settings = GoogleAuthSettings()
    if not google_settings.configured:
        logger.error("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set")
        return 1

    try:
        asyncio.run(run_server(settings, google_settings))
    except Exception as e:
        logger.error(f"Server error: {e}")
        logger.exception("Exception details:")
        return 1
    logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    main()
