"""Task tracker REST client (OAuth client-credentials)."""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from ...core.config import TrackerConfig
from ...core.models import Comment, Task

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
# Refresh this long before the server-side expiry
TOKEN_EXPIRY_MARGIN_SECONDS = 300


class TrackerError(Exception):
    """A tracker API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class TrackerClient:
    """Reads tasks and comments; posts comments; reassigns and completes tasks.

    Use as an async context manager, or call ``aclose()`` when done.
    """

    def __init__(
        self,
        config: TrackerConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not config.api_url:
            raise TrackerError("Tracker api_url is not configured")
        self.config = config
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=httpx.Timeout(config.request_timeout, connect=DEFAULT_CONNECT_TIMEOUT),
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._agent_user_ids: Dict[str, str] = dict(config.agent_user_ids)

    @property
    def is_configured(self) -> bool:
        return bool(self.config.client_id and self.config.client_secret)

    async def __aenter__(self) -> "TrackerClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Transport ---

    async def _get_access_token(self) -> str:
        if self._access_token and self._clock() < self._token_expiry:
            return self._access_token

        try:
            response = await self._client.post(
                "/api/v1/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise TrackerError(f"Failed to obtain access token: {e}") from e
        if not response.is_success:
            raise TrackerError(
                f"Failed to obtain access token: {self._error_text(response)}", response.status_code
            )

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expiry = self._clock() + (int(data.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN_SECONDS)
        logger.debug("🔑 Obtained tracker access token")
        return self._access_token

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP {response.status_code}: {response.reason_phrase}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await self._get_access_token()
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers={"X-OAuth-Token": token},
            )
        except httpx.TimeoutException as e:
            raise TrackerError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TrackerError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            # Token revoked server-side; next call fetches a fresh one
            self._access_token = None
        if not response.is_success:
            raise TrackerError(f"{method} {path} failed: {self._error_text(response)}", response.status_code)
        return response.json() if response.content else {}

    # --- Mapping ---

    def _is_agent_identity(self, email: str) -> bool:
        return email.lower() in (i.lower() for i in self.config.agent_identities)

    def _is_agent_author(self, author: Dict[str, Any]) -> bool:
        if author.get("isAIAgent"):
            return True
        email = author.get("email") or ""
        if email and self._is_agent_identity(email):
            return True
        return bool(author.get("id")) and author.get("id") in self._agent_user_ids.values()

    def _to_comment(self, raw: Dict[str, Any]) -> Comment:
        author = raw.get("author") or {}
        if not author and raw.get("authorId"):
            author = {"id": raw.get("authorId"), "email": raw.get("authorEmail")}
        return Comment(
            id=str(raw["id"]),
            content=raw.get("content") or "",
            created_at=_parse_datetime(raw["createdAt"]),
            author_id=author.get("id"),
            author_name=author.get("name") or author.get("email"),
            is_agent=self._is_agent_author(author),
        )

    def _to_task(self, raw: Dict[str, Any]) -> Task:
        assignee = raw.get("assignee") or {}
        creator = raw.get("creator") or {}
        repository = next(
            (lst["githubRepositoryId"] for lst in raw.get("lists") or [] if lst.get("githubRepositoryId")),
            None,
        )
        email = assignee.get("email")
        if email and assignee.get("id") and self._is_agent_identity(email):
            self._agent_user_ids.setdefault(email, assignee["id"])
        return Task(
            id=str(raw["id"]),
            title=raw.get("title") or "",
            description=raw.get("description"),
            assignee_id=assignee.get("id") or raw.get("assigneeId"),
            assignee=email,
            completed=bool(raw.get("completed") or raw.get("isCompleted")),
            repository=repository,
            creator_id=raw.get("creatorId") or creator.get("id"),
        )

    # --- Tasks ---

    async def list_tasks(self, include_completed: bool = False) -> List[Task]:
        params: Dict[str, str] = {}
        if self.config.list_id:
            params["listId"] = self.config.list_id
        if include_completed:
            params["includeCompleted"] = "true"
        data = await self._request("GET", "/api/v1/tasks", params=params or None)
        return [self._to_task(raw) for raw in data.get("tasks") or []]

    async def get_task(self, task_id: str) -> Task:
        data = await self._request("GET", f"/api/v1/tasks/{task_id}")
        if not data.get("task"):
            raise TrackerError(f"Task {task_id} not found", 404)
        return self._to_task(data["task"])

    async def reassign_task(self, task_id: str, assignee_id: Optional[str]) -> None:
        """Assign to ``assignee_id``; None unassigns."""
        await self._request("PUT", f"/api/v1/tasks/{task_id}", json={"assigneeId": assignee_id})
        logger.info(f"🔄 Reassigned task {task_id} to {assignee_id or 'nobody'}")

    async def complete_task(self, task_id: str) -> None:
        await self._request("PUT", f"/api/v1/tasks/{task_id}", json={"completed": True, "isCompleted": True})
        logger.info(f"✅ Marked task {task_id} complete")

    # --- Comments ---

    async def list_comments(self, task_id: str) -> List[Comment]:
        data = await self._request("GET", f"/api/v1/tasks/{task_id}/comments")
        return [self._to_comment(raw) for raw in data.get("comments") or []]

    async def create_comment(self, task_id: str, content: str, agent_id: Optional[str] = None) -> None:
        body: Dict[str, Any] = {"content": content}
        if agent_id:
            body["aiAgentId"] = agent_id
        await self._request("POST", f"/api/v1/tasks/{task_id}/comments", json=body)
        logger.debug(f"📝 Posted comment to task {task_id}")

    # --- Agents ---

    async def get_agent_id_by_email(self, email: str) -> Optional[str]:
        """Tracker user id of the AI agent ``email``, searched across list members."""
        if email in self._agent_user_ids:
            return self._agent_user_ids[email]

        lists = (await self._request("GET", "/api/v1/lists")).get("lists") or []
        for summary in lists:
            detail = (await self._request("GET", f"/api/v1/lists/{summary['id']}")).get("list") or {}
            for member in detail.get("listMembers") or []:
                user = member.get("user") or {}
                if user.get("email") == email and user.get("isAIAgent") and user.get("id"):
                    self._agent_user_ids[email] = user["id"]
                    return user["id"]
        logger.warning(f"⚠️ No agent user found for {email}; comments will post as the OAuth client")
        return None
