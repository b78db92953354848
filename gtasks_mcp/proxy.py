"""
Proxy Forwarder.

Runs locally as a stdio MCP server and forwards each task operation to a
remote gateway over HTTP, authenticated by a session id stored in
``~/.gtasks-mcp-config.json``. When the gateway answers 401 the operator is
sent through the Google consent flow again and asked for the new session id.

The prompt reads from the controlling terminal, never from stdin: stdin and
stdout carry the MCP protocol.
"""

import asyncio
import json
import logging
import os
import sys
import threading
import webbrowser
from collections.abc import Awaitable, Callable
from json import JSONDecodeError
from pathlib import Path
from typing import Any
from urllib.parse import quote

import click
import httpx
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from .errors import InvalidRequest, Unauthorized, UpstreamUnavailable
from .models import LocalClientConfig
from .tools import register_task_tools

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".gtasks-mcp-config.json"
DEFAULT_REAUTH_TIMEOUT = 300.0
SESSION_HEADER = "X-Session-ID"

Prompt = Callable[[str], Awaitable[str]]


def load_config(path: Path) -> LocalClientConfig | None:
    try:
        with path.open("r", encoding="utf-8") as f:
            return LocalClientConfig.model_validate(json.load(f))
    except FileNotFoundError:
        return None
    except (JSONDecodeError, ValueError) as e:
        logger.error(f"Ignoring unreadable config file {path}: {e}")
        return None


def save_config(path: Path, config: LocalClientConfig) -> None:
    """Write the config readable by the owner only; it holds a session id."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(), f, indent=2)
    os.chmod(path, 0o600)
    logger.info(f"Saved proxy configuration to {path}")


class TerminalPrompt:
    """Opens the consent URL and reads the session id from the operator's terminal.

    The terminal read runs on a daemon thread and outlives a timed-out prompt:
    the next prompt picks up the same pending read instead of starting a
    second reader that would compete for the operator's input.
    """

    def __init__(self, tty_path: str = "/dev/tty"):
        self.tty_path = tty_path
        self._pending: asyncio.Future[str] | None = None

    def _read_line(self) -> str:
        with open(self.tty_path, encoding="utf-8") as tty:
            return tty.readline()

    def _start_read(self) -> asyncio.Future[str]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def deliver(line: str | None, error: BaseException | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(line or "")

        def read() -> None:
            try:
                line, error = self._read_line(), None
            except OSError as e:
                line, error = None, e
            try:
                loop.call_soon_threadsafe(deliver, line, error)
            except RuntimeError:
                logger.debug("Event loop closed before the terminal read finished")

        threading.Thread(target=read, name="gtasks-tty-prompt", daemon=True).start()
        return future

    async def __call__(self, auth_url: str) -> str:
        click.echo("\nAuthentication with Google Tasks is required.", err=True)
        click.echo(f"Open this URL to sign in:\n  {auth_url}", err=True)
        try:
            webbrowser.open(auth_url)
        except webbrowser.Error as e:
            logger.debug(f"Could not open browser: {e}")
        click.echo("Paste the session_id shown after signing in: ", err=True, nl=False)

        if self._pending is None:
            self._pending = self._start_read()
        try:
            line = await asyncio.shield(self._pending)
        except asyncio.CancelledError:
            # the read stays pending for the next prompt
            raise
        except OSError:
            self._pending = None
            raise
        self._pending = None
        return line.strip()


class ProxyForwarder:
    def __init__(
        self,
        config: LocalClientConfig,
        config_path: Path = DEFAULT_CONFIG_PATH,
        client: httpx.AsyncClient | None = None,
        prompt: Prompt | None = None,
        reauth_timeout: float = DEFAULT_REAUTH_TIMEOUT,
    ):
        self.config = config
        self.config_path = config_path
        self.client = client or httpx.AsyncClient(timeout=60.0)
        self.prompt = prompt or TerminalPrompt()
        self.reauth_timeout = reauth_timeout

    @property
    def remote_url(self) -> str:
        return self.config.remote_url.rstrip("/")

    async def close(self) -> None:
        await self.client.aclose()

    async def reauthenticate(self) -> str:
        """
        Walk the operator through consent and store the new session id.

        Raises:
            Unauthorized: no session id was entered before the timeout
        """
        auth_url = f"{self.remote_url}/auth/google"
        logger.info(f"Re-authenticating via {auth_url}")
        try:
            session_id = await asyncio.wait_for(self.prompt(auth_url), timeout=self.reauth_timeout)
        except asyncio.TimeoutError as e:
            raise Unauthorized(f"No session id entered within {self.reauth_timeout:.0f}s") from e

        if not session_id:
            raise Unauthorized("No session id entered")

        self.config = self.config.model_copy(update={"session_id": session_id})
        save_config(self.config_path, self.config)
        return session_id

    def _build_request(self, operation: str, args: dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
        args = {k: v for k, v in args.items() if v is not None}

        if operation == "list":
            return "GET", "/tasks", {"params": args}
        if operation == "search":
            return "GET", "/tasks/search", {"params": {"q": args.get("query", "")}}
        if operation == "create":
            return "POST", "/tasks", {"json": args}
        if operation == "clear":
            return "POST", "/tasks/clear", {"json": args}

        task_id = args.pop("id", None)
        if not task_id:
            raise InvalidRequest("'id' is required")
        path = f"/tasks/{quote(str(task_id), safe='')}"
        if operation == "update":
            return "PUT", path, {"json": args}
        if operation == "delete":
            return "DELETE", path, {"params": args}
        if operation == "get":
            return "GET", path, {"params": args}
        raise InvalidRequest(f"Unknown operation: {operation}")

    async def _send(self, operation: str, args: dict[str, Any]) -> httpx.Response:
        method, path, kwargs = self._build_request(operation, args)
        headers = {SESSION_HEADER: self.config.session_id or ""}
        try:
            return await self.client.request(method, f"{self.remote_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Request to gateway failed: {e}")
            raise UpstreamUnavailable(f"Gateway unreachable: {e}") from e

    async def call(self, operation: str, args: dict[str, Any]) -> dict[str, Any]:
        """Forward one operation, re-authenticating at most once."""
        reauthenticated = False
        if not self.config.session_id:
            await self.reauthenticate()
            reauthenticated = True

        response = await self._send(operation, args)
        if response.status_code == 401:
            if reauthenticated:
                raise Unauthorized("Gateway rejected the new session")
            logger.warning(f"Gateway rejected session for '{operation}', re-authenticating")
            await self.reauthenticate()
            response = await self._send(operation, args)
            if response.status_code == 401:
                raise Unauthorized("Gateway rejected the new session")

        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except (JSONDecodeError, ValueError):
            data = None

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"Gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            message = None
            if isinstance(data, dict):
                message = data.get("error_description") or data.get("error")
            raise InvalidRequest(message or f"HTTP {response.status_code}")
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Gateway returned a non-JSON response")
        return data


@click.command()
@click.option("--remote-url", envvar="GTASKS_REMOTE_URL", default=None, help="Gateway base URL")
@click.option(
    "--config-file",
    envvar="GTASKS_CONFIG_FILE",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    help="Where the session id is stored",
)
@click.option("--login", is_flag=True, help="Authenticate now instead of on first use")
@click.option("--reauth-timeout", type=float, default=DEFAULT_REAUTH_TIMEOUT, help="Seconds to wait for a session id")
def main(remote_url: str | None, config_file: Path, login: bool, reauth_timeout: float) -> int:
    """Run the Google Tasks MCP proxy over stdio."""
    load_dotenv()
    # stdout carries the protocol; logs go to stderr
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    config = load_config(config_file)
    if remote_url:
        if config is None or config.remote_url.rstrip("/") != remote_url.rstrip("/"):
            config = LocalClientConfig(remote_url=remote_url)
    if config is None:
        logger.error("No gateway configured: pass --remote-url or set GTASKS_REMOTE_URL")
        return 1

    forwarder = ProxyForwarder(config, config_path=config_file, reauth_timeout=reauth_timeout)
    app = FastMCP("gtasks-mcp-proxy")
    register_task_tools(app, forwarder.call)

    async def serve() -> None:
        try:
            if login:
                await forwarder.reauthenticate()
            await app.run_stdio_async()
        finally:
            await forwarder.close()

    logger.info(f"Forwarding to {forwarder.remote_url}")
    try:
        asyncio.run(serve())
    except Unauthorized as e:
        logger.error(f"Authentication failed: {e.description}")
        return 1
    return 0


if __name__ == "__main__":
    main()
