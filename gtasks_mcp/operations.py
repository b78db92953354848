"""
Task Operation Translator.

Every task operation runs with exactly one UpstreamCredential. The credential
is refreshed when it has expired, and when the upstream rejects it the
credential is purged and the caller gets Unauthorized so the client knows to
re-authenticate.
"""

import logging
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from .credentials import UpstreamCredentialStore
from .errors import InvalidRequest, Unauthorized, UpstreamRejected
from .models import UpstreamCredential
from .task_api import DEFAULT_LIST_ID, UPDATABLE_FIELDS, TasksAPI

logger = logging.getLogger(__name__)

OPERATIONS = ("list", "search", "create", "update", "delete", "clear", "get")


@dataclass(frozen=True)
class ConnectionBinding:
    """Who a streaming connection acts for. Bound for the connection's lifetime."""

    connection_id: str
    identity: str
    client_id: str


current_binding: ContextVar[ConnectionBinding | None] = ContextVar("current_binding", default=None)


def _require_str(args: dict[str, Any], name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"'{name}' is required")
    return value


def _optional_str(args: dict[str, Any], name: str) -> str | None:
    value = args.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"'{name}' must be a string")
    return value


class TaskGateway:
    def __init__(self, task_api: TasksAPI, credentials: UpstreamCredentialStore):
        self.task_api = task_api
        self.credentials = credentials

    async def run(
        self,
        credential: UpstreamCredential,
        operation: str,
        args: dict[str, Any] | None = None,
        on_rejected: Callable[[], Awaitable[Any]] | None = None,
    ) -> dict[str, Any]:
        """
        Run one task operation on behalf of a credential.

        Args:
            credential: The upstream credential to act with
            operation: One of OPERATIONS
            args: Operation arguments
            on_rejected: Called instead of the default credential purge when the
                upstream rejects the credential (e.g. to drop a whole session)

        Raises:
            InvalidRequest: unknown operation or bad arguments
            Unauthorized: the upstream rejected the credential; it has been purged
            UpstreamUnavailable: the upstream could not be reached
        """
        args = args or {}
        if operation not in OPERATIONS:
            raise InvalidRequest(f"Unknown operation: {operation}")

        try:
            credential = await self.credentials.ensure_fresh(credential)
            return await self._dispatch(credential, operation, args)
        except UpstreamRejected as e:
            logger.warning(f"Upstream rejected credential for {credential.identity} during '{operation}'")
            if on_rejected is not None:
                await on_rejected()
            else:
                await self.credentials.invalidate(credential.identity)
            raise Unauthorized("Upstream authorization was rejected; please re-authenticate") from e

    async def _dispatch(
        self, credential: UpstreamCredential, operation: str, args: dict[str, Any]
    ) -> dict[str, Any]:
        list_id = _optional_str(args, "task_list_id") or DEFAULT_LIST_ID
        api = self.task_api

        if operation == "list":
            tasks, next_cursor = await api.list_tasks(credential, cursor=_optional_str(args, "cursor"), list_id=list_id)
            return {"tasks": tasks, "next_cursor": next_cursor}

        if operation == "search":
            query = _require_str(args, "query")
            tasks = await api.search_tasks(credential, query)
            return {"tasks": tasks, "count": len(tasks)}

        if operation == "create":
            task = await api.create_task(
                credential,
                title=_require_str(args, "title"),
                notes=_optional_str(args, "notes"),
                due=_optional_str(args, "due"),
                list_id=list_id,
            )
            return {"task": task}

        if operation == "update":
            task_id = _require_str(args, "id")
            fields = {name: args[name] for name in UPDATABLE_FIELDS if args.get(name) is not None}
            task = await api.update_task(credential, task_id, list_id, fields)
            return {"task": task}

        if operation == "delete":
            return await api.delete_task(credential, _require_str(args, "id"), list_id)

        if operation == "clear":
            return await api.clear_tasks(credential, list_id)

        # get
        task = await api.get_task(credential, _require_str(args, "id"), list_id)
        return {"task": task}

    async def run_bound(self, operation: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run an operation for the connection bound in the current context."""
        binding = current_binding.get()
        if binding is None:
            raise Unauthorized("No authenticated connection")
        credential = await self.credentials.get(binding.identity)
        if credential is None:
            raise Unauthorized("Credential for this connection is no longer available")
        return await self.run(credential, operation, args)
