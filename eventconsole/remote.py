"""HTTP access to the realtime store and the backend API."""

import inspect
import json
import logging
import re

import httpx

from eventconsole.models import Event, Schedule
from eventconsole.utils import natural_sort_key, to_millis

logger = logging.getLogger(__name__)

_AUTH_ERROR = re.compile(r"Auth")


class RemoteError(RuntimeError):
    """A store read or API call failed."""


class ApiAuthError(RemoteError):
    """The backend rejected the request's credentials."""


class RemoteStore:
    """
    Reads and writes the realtime store through its REST interface.

    Args:
        database_url: Base URL of the store.
        auth_token: Optional credential sent as the `auth` query parameter.
        client: Shared httpx client; one is created if omitted.
        timeout: Request timeout in seconds for a created client.
    """

    def __init__(
        self,
        database_url: str,
        auth_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.database_url = database_url.rstrip("/")
        self.auth_token = auth_token
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, path: str) -> str:
        path = path.strip("/")
        return f"{self.database_url}/{path}.json" if path else f"{self.database_url}/.json"

    def _params(self) -> dict:
        return {"auth": self.auth_token} if self.auth_token else {}

    async def fetch_value(self, path: str):
        """
        Returns the JSON value stored at `path`, or None if nothing is there.

        Raises:
            RemoteError: On transport failure or a non-success status.
        """
        try:
            response = await self.client.get(self._url(path), params=self._params())
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteError(f"failed to read {path!r}: {exc}") from exc

    async def update(self, updates: dict) -> None:
        """
        Applies a multi-path update at the store root; None values delete.

        Raises:
            RemoteError: On transport failure or a non-success status.
        """
        try:
            response = await self.client.patch(
                self._url(""), params=self._params(), json=updates
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RemoteError(f"failed to update {len(updates)} paths: {exc}") from exc

    async def aclose(self) -> None:
        await self.client.aclose()


class BackendApi:
    """
    Posts actions to the backend API.

    Args:
        api_url: Endpoint URL.
        get_id_token: Callable returning the current id token; called with
            `force=True` to refresh it. May be a coroutine function.
        client: Shared httpx client; one is created if omitted.
        timeout: Request timeout in seconds for a created client.
    """

    def __init__(
        self,
        api_url: str,
        get_id_token,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.api_url = api_url
        self.get_id_token = get_id_token
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _id_token(self, force: bool = False) -> str:
        token = self.get_id_token(force=force)
        if inspect.isawaitable(token):
            token = await token
        return token

    async def post(self, payload: dict, retry_on_auth_error: bool = True) -> dict:
        """
        Posts `payload` and returns the decoded success response.

        An auth failure refreshes the id token and retries exactly once.

        Raises:
            ApiAuthError: If the retry also fails authentication.
            RemoteError: On any other failure.
        """
        id_token = await self._id_token()
        try:
            response = await self.client.post(
                self.api_url,
                content=_encode_body({**payload, "idToken": id_token}),
                headers={"Content-Type": "text/plain"},
            )
        except httpx.HTTPError as exc:
            raise RemoteError(f"request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteError("failed to parse the server response") from exc
        if not isinstance(body, dict):
            raise RemoteError("unexpected server response")

        if not body.get("success"):
            message = str(body.get("error") or "")
            if _AUTH_ERROR.search(message):
                if retry_on_auth_error:
                    logger.info("auth error from backend, refreshing id token")
                    await self._id_token(force=True)
                    return await self.post(payload, retry_on_auth_error=False)
                raise ApiAuthError(message)
            raise RemoteError(message or "API request failed")
        return body

    async def aclose(self) -> None:
        await self.client.aclose()


def _encode_body(payload: dict) -> bytes:
    # the backend only accepts text/plain bodies
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


async def drain_question_queue(api: BackendApi) -> None:
    """Asks the backend to process queued questions; failures are only logged."""
    try:
        await api.post({"action": "processQuestionQueue"})
    except RemoteError:
        logger.warning("processQuestionQueue failed", exc_info=True)


def _schedule_sort_key(schedule: Schedule) -> tuple:
    start = schedule.start_at or f"{schedule.date}T00:00"
    return (to_millis(start), schedule.created_at, natural_sort_key(schedule.label))


def normalize_events(events_branch, schedules_branch) -> list[Event]:
    """
    Builds the ordered event collection from the raw store branches.

    Schedules are ordered by start, then creation time, then label; events
    by creation time, then name.

    Args:
        events_branch: Raw events keyed by event id.
        schedules_branch: Raw schedules keyed by event id, then schedule id.

    Returns:
        list[Event]: Normalized events.
    """
    events_branch = events_branch if isinstance(events_branch, dict) else {}
    schedules_branch = schedules_branch if isinstance(schedules_branch, dict) else {}

    events = []
    for event_id, raw_event in events_branch.items():
        raw_event = raw_event if isinstance(raw_event, dict) else {}
        raw_schedules = schedules_branch.get(event_id)
        raw_schedules = raw_schedules if isinstance(raw_schedules, dict) else {}

        schedules = []
        for schedule_id, raw in raw_schedules.items():
            raw = raw if isinstance(raw, dict) else {}
            try:
                count = int(raw.get("participantCount") or 0)
            except (TypeError, ValueError, OverflowError):
                count = 0
            schedules.append(
                Schedule(
                    id=str(schedule_id),
                    label=str(raw.get("label") or ""),
                    location=str(raw.get("location") or ""),
                    date=str(raw.get("date") or ""),
                    start_at=str(raw.get("startAt") or ""),
                    end_at=str(raw.get("endAt") or ""),
                    created_at=to_millis(raw.get("createdAt")),
                    updated_at=to_millis(raw.get("updatedAt")),
                    participant_count=count,
                )
            )
        schedules.sort(key=_schedule_sort_key)

        events.append(
            Event(
                id=str(event_id),
                name=str(raw_event.get("name") or ""),
                created_at=to_millis(raw_event.get("createdAt")),
                updated_at=to_millis(raw_event.get("updatedAt")),
                schedules=schedules,
            )
        )

    events.sort(key=lambda event: (event.created_at, natural_sort_key(event.name)))
    return events
