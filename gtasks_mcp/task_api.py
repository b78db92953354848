import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any
from urllib.parse import quote

import httpx

from .errors import InvalidRequest, UpstreamRejected, UpstreamUnavailable
from .models import UpstreamCredential

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://tasks.googleapis.com/tasks/v1"
DEFAULT_LIST_ID = "@default"
PAGE_SIZE = 100

UPDATABLE_FIELDS = ("title", "notes", "status", "due")
TASK_STATUSES = ("needsAction", "completed")


@dataclass
class ApiResponse:
    success: bool
    data: Any | None = None
    error: str | None = None
    status_code: int | None = None


def validate_list_response(
    response: ApiResponse, context: str, key: str | None = None
) -> tuple[list[dict[str, Any]], str | None]:
    """Validate that an API response contains a list of dictionaries.

    Args:
        response: The API response to validate
        context: Description of what we're fetching (e.g., "tasks", "task lists")
        key: Key holding the list in a wrapped response (Google uses "items").
             Google omits the key entirely when the collection is empty.

    Returns:
        Tuple of (validated list, error message or None)
    """
    if not response.success:
        return [], response.error or f"Failed to fetch {context}"

    data = response.data
    if data is None:
        return [], None  # Empty result, not an error

    if isinstance(data, dict):
        if key is None:
            error_msg = f"Backend returned {context} as dict without expected key: {list(data.keys())}"
            logger.error(error_msg)
            return [], error_msg
        data = data.get(key, [])

    if not isinstance(data, list):
        error_msg = (
            f"Backend returned invalid {context} format: expected list, got {type(data).__name__}"
        )
        logger.error(f"{error_msg}. Value: {data!r}")
        return [], error_msg

    validated = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning(
                f"Invalid {context} item at index {i}: expected dict, got {type(item).__name__}. Skipping."
            )
            continue
        validated.append(item)

    return validated, None


def validate_dict_response(
    response: ApiResponse, context: str
) -> tuple[dict[str, Any] | None, str | None]:
    """Validate that an API response contains a dictionary.

    Args:
        response: The API response to validate
        context: Description of what we're fetching (e.g., "task")

    Returns:
        Tuple of (validated dict or None, error message or None)
    """
    if not response.success:
        return None, response.error or f"Failed to fetch {context}"

    data = response.data
    if data is None:
        return None, f"No {context} data returned from backend"

    if not isinstance(data, dict):
        error_msg = (
            f"Backend returned invalid {context} format: expected dict, got {type(data).__name__}"
        )
        logger.error(f"{error_msg}. Value: {data!r}")
        return None, error_msg

    return data, None


def _path_segment(value: str) -> str:
    return quote(value, safe="@")


class TasksAPI:
    """
    Client for the Google Tasks REST API.

    Every call takes the UpstreamCredential to act with. Authentication
    failures raise UpstreamRejected so the caller can purge the credential;
    network errors and 5xx raise UpstreamUnavailable. Other failures come back
    as an unsuccessful ApiResponse and are turned into InvalidRequest by the
    operation methods.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self.client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        credential: UpstreamCredential,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResponse:
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"{credential.token_type} {credential.access_token}",
            "Accept": "application/json",
        }

        try:
            response = await self.client.request(
                method.upper(), url, json=data, params=params, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Upstream request {method} {endpoint} failed: {e}")
            raise UpstreamUnavailable(f"Task API unreachable: {e}") from e

        logger.debug(f"{method} {endpoint} -> {response.status_code}")

        if response.status_code == 401:
            logger.warning(f"Task API rejected credential for identity {credential.identity}")
            raise UpstreamRejected("Task API rejected the upstream credential")

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"Task API returned HTTP {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
                error = error_data.get("error", {})
                error_message = (
                    error.get("message") if isinstance(error, dict) else str(error)
                ) or f"HTTP {response.status_code}"
            except (JSONDecodeError, ValueError):
                error_message = f"HTTP {response.status_code}: {response.text}"

            return ApiResponse(success=False, error=error_message, status_code=response.status_code)

        try:
            json_data = response.json() if response.content else None
        except (JSONDecodeError, ValueError):
            json_data = None

        return ApiResponse(success=True, data=json_data, status_code=response.status_code)

    async def list_task_lists(self, credential: UpstreamCredential) -> list[dict[str, Any]]:
        task_lists: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            response = await self._make_request("GET", "/users/@me/lists", credential, params=params)
            items, error = validate_list_response(response, "task lists", key="items")
            if error:
                raise InvalidRequest(error)
            task_lists.extend(items)
            page_token = response.data.get("nextPageToken") if response.data else None
            if not page_token:
                return task_lists

    async def list_tasks(
        self,
        credential: UpstreamCredential,
        cursor: str | None = None,
        list_id: str = DEFAULT_LIST_ID,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """One page of tasks from a task list and the cursor for the next page."""
        params: dict[str, Any] = {"maxResults": PAGE_SIZE, "showCompleted": "true"}
        if cursor:
            params["pageToken"] = cursor
        response = await self._make_request(
            "GET", f"/lists/{_path_segment(list_id)}/tasks", credential, params=params
        )
        tasks, error = validate_list_response(response, "tasks", key="items")
        if error:
            raise InvalidRequest(error)
        next_cursor = response.data.get("nextPageToken") if response.data else None
        return tasks, next_cursor

    async def search_tasks(self, credential: UpstreamCredential, query: str) -> list[dict[str, Any]]:
        """Case-insensitive match on title or notes across every task list."""
        needle = query.lower()
        matches = []
        for task_list in await self.list_task_lists(credential):
            list_id = task_list.get("id")
            if not list_id:
                continue
            cursor: str | None = None
            while True:
                tasks, cursor = await self.list_tasks(credential, cursor=cursor, list_id=list_id)
                for task in tasks:
                    haystack = f"{task.get('title') or ''}\n{task.get('notes') or ''}".lower()
                    if needle in haystack:
                        matches.append({**task, "task_list_id": list_id})
                if not cursor:
                    break
        logger.info(f"Found {len(matches)} tasks matching '{query}'")
        return matches

    async def get_task(
        self, credential: UpstreamCredential, task_id: str, list_id: str = DEFAULT_LIST_ID
    ) -> dict[str, Any]:
        response = await self._make_request(
            "GET",
            f"/lists/{_path_segment(list_id)}/tasks/{_path_segment(task_id)}",
            credential,
        )
        task, error = validate_dict_response(response, "task")
        if error or task is None:
            raise InvalidRequest(error)
        return task

    async def create_task(
        self,
        credential: UpstreamCredential,
        title: str,
        notes: str | None = None,
        due: str | None = None,
        list_id: str = DEFAULT_LIST_ID,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"title": title}
        if notes is not None:
            data["notes"] = notes
        if due is not None:
            data["due"] = due
        response = await self._make_request(
            "POST", f"/lists/{_path_segment(list_id)}/tasks", credential, data=data
        )
        task, error = validate_dict_response(response, "created task")
        if error or task is None:
            raise InvalidRequest(error)
        return task

    async def update_task(
        self,
        credential: UpstreamCredential,
        task_id: str,
        list_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        data = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
        if not data:
            raise InvalidRequest(f"Nothing to update; supported fields: {', '.join(UPDATABLE_FIELDS)}")
        if "status" in data and data["status"] not in TASK_STATUSES:
            raise InvalidRequest(f"Invalid status '{data['status']}'; use one of {TASK_STATUSES}")
        if data.get("status") == "needsAction":
            data["completed"] = None  # Reopening a task clears its completion time

        response = await self._make_request(
            "PATCH",
            f"/lists/{_path_segment(list_id)}/tasks/{_path_segment(task_id)}",
            credential,
            data=data,
        )
        task, error = validate_dict_response(response, "updated task")
        if error or task is None:
            raise InvalidRequest(error)
        return task

    async def delete_task(
        self, credential: UpstreamCredential, task_id: str, list_id: str
    ) -> dict[str, Any]:
        response = await self._make_request(
            "DELETE",
            f"/lists/{_path_segment(list_id)}/tasks/{_path_segment(task_id)}",
            credential,
        )
        if not response.success:
            raise InvalidRequest(response.error)
        return {"deleted": True, "id": task_id, "task_list_id": list_id}

    async def clear_tasks(self, credential: UpstreamCredential, list_id: str) -> dict[str, Any]:
        """Remove all completed tasks from a task list."""
        response = await self._make_request(
            "POST", f"/lists/{_path_segment(list_id)}/clear", credential
        )
        if not response.success:
            raise InvalidRequest(response.error)
        return {"cleared": True, "task_list_id": list_id}
