"""Google Tasks MCP Gateway Package.

Credential-bridging MCP gateway for Google Tasks.
"""

from gtasks_mcp.credentials import UpstreamCredentialStore
from gtasks_mcp.errors import GatewayError, Unauthorized
from gtasks_mcp.oauth_bridge import GrantIssuer, TokenExchanger
from gtasks_mcp.sessions import SessionRegistry
from gtasks_mcp.task_api import TasksAPI

__all__ = [
    "GatewayError",
    "GrantIssuer",
    "SessionRegistry",
    "TasksAPI",
    "TokenExchanger",
    "Unauthorized",
    "UpstreamCredentialStore",
]

__version__ = "0.1.0"
