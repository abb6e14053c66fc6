"""Google Tasks, Calendar and Contacts adapters.

Each adapter serves one entity type. They share a small httpx client that
attaches the bearer token and turns API errors into ``AdapterError``.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from ..adapter import ExportResult, ImportResult, RemoteAdapter
from ..detection import DEADLINE_PREFIX
from ..exceptions import AdapterError
from ..models import EntityType, ExternalService, Friend, Objective, Task, TimeSlot
from ..utils.datetime import clock_time, date_part, parse_timestamp


logger = logging.getLogger(__name__)

TASKS_API = "https://tasks.googleapis.com/tasks/v1"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"
PEOPLE_API = "https://people.googleapis.com/v1"

COLOR_IDS = {
    "deep-work": "9",
    "goal-work": "10",
    "life-area": "11",
    "meeting": "6",
    "personal": "3",
}
DEFAULT_COLOR_ID = "1"

PERSON_FIELDS = "names,photos,emailAddresses,phoneNumbers,addresses,biographies,metadata"
UPDATE_PERSON_FIELDS = "names,photos,emailAddresses,phoneNumbers,biographies"

RRULE_RE = re.compile(r"^RRULE:FREQ=(?P<freq>[A-Z]+)(?:;UNTIL=(?P<until>\d{8}))?")


class GoogleApiClient:
    """Thin async client for Google REST APIs."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        """Initialize the client.

        Args:
            client: Preconfigured httpx client, e.g. with a mock transport
            timeout: Request timeout when creating a client
        """
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def request(self, method: str, url: str, token: str, json: Optional[Dict[str, Any]] = None,
                      params: Optional[Dict[str, Any]] = None, api_name: str = "Google API") -> Dict[str, Any]:
        """Make an authenticated request.

        Returns:
            Decoded JSON body, or an empty dict for empty responses

        Raises:
            AdapterError: On HTTP errors, timeouts and transport failures
        """
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await self.client.request(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException:
            raise AdapterError(f"{api_name} request timed out")
        except httpx.RequestError as e:
            raise AdapterError(f"{api_name} request failed: {e}")

        if response.status_code >= 400:
            raise AdapterError(self._error_message(response, api_name), status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            raise AdapterError(f"Invalid JSON response from {api_name}")

    @staticmethod
    def _error_message(response: httpx.Response, api_name: str) -> str:
        fallback = f"{api_name} error: {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            return response.text or fallback

        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        return fallback

    async def paginate(self, url: str, token: str, items_key: str, params: Optional[Dict[str, Any]] = None,
                       api_name: str = "Google API") -> List[Dict[str, Any]]:
        """Collect ``items_key`` across every page of a list endpoint."""
        params = dict(params or {})
        items: List[Dict[str, Any]] = []

        while True:
            data = await self.request("GET", url, token, params=params, api_name=api_name)
            items.extend(data.get(items_key) or [])
            next_page = data.get("nextPageToken")
            if not next_page:
                return items
            params["pageToken"] = next_page


class GoogleAdapter(RemoteAdapter):
    """Shared plumbing for the Google adapters."""

    api_name = "Google API"

    def __init__(self, api: Optional[GoogleApiClient] = None):
        super().__init__()
        self.api = api or GoogleApiClient()

    async def _export(self, method: str, url: str, token: str, body: Dict[str, Any],
                      params: Optional[Dict[str, Any]] = None) -> ExportResult:
        try:
            data = await self.api.request(method, url, token, json=body, params=params, api_name=self.api_name)
        except AdapterError as e:
            self.logger.error(f"Export to {self.provider_name} failed: {e}")
            return ExportResult(success=False, error=str(e))

        remote_id = self.remote_id(data)
        if not remote_id:
            return ExportResult(success=False, error=f"No id returned from {self.api_name}")
        return ExportResult(success=True, remote_id=remote_id)

    async def _import(self, url: str, token: str, items_key: str,
                      params: Optional[Dict[str, Any]] = None) -> ImportResult:
        try:
            items = await self.api.paginate(url, token, items_key, params=params, api_name=self.api_name)
        except AdapterError as e:
            self.logger.error(f"Import from {self.provider_name} failed: {e}")
            return ImportResult(success=False, error=str(e))

        self.logger.info(f"Fetched {len(items)} items from {self.provider_name}")
        return ImportResult(success=True, items=items)

    async def _delete(self, url: str, token: str, external_id: str) -> ExportResult:
        try:
            await self.api.request("DELETE", url, token, api_name=self.api_name)
        except AdapterError as e:
            if e.status_code in (404, 410):
                return ExportResult(success=True, remote_id=external_id)
            return ExportResult(success=False, error=str(e))
        return ExportResult(success=True, remote_id=external_id)

    @staticmethod
    def _external_id(entity) -> Optional[str]:
        return entity.sync_metadata.external_id if entity.sync_metadata else None


class GoogleTasksAdapter(GoogleAdapter):
    """Tasks <-> Google Tasks."""

    entity_type = EntityType.TASK
    service = ExternalService.GOOGLE_TASKS
    api_name = "Tasks API"

    def __init__(self, api: Optional[GoogleApiClient] = None, task_list: str = "@default"):
        super().__init__(api)
        self.task_list = task_list

    def _tasks_url(self, task_id: Optional[str] = None) -> str:
        url = f"{TASKS_API}/lists/{self.task_list}/tasks"
        return f"{url}/{task_id}" if task_id else url

    def to_remote(self, task: Task) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "title": task.title or "Untitled Task",
            "status": "completed" if task.completed else "needsAction",
        }
        if task.description:
            body["notes"] = task.description
        if task.scheduled_date:
            body["due"] = f"{task.scheduled_date}T00:00:00.000Z"
        return body

    async def export(self, entity: Task, token: str) -> ExportResult:
        task_id = self._external_id(entity)
        body = self.to_remote(entity)
        if task_id:
            body["id"] = task_id
            return await self._export("PUT", self._tasks_url(task_id), token, body)
        return await self._export("POST", self._tasks_url(), token, body)

    async def import_pending(self, token: str) -> ImportResult:
        params = {"showCompleted": "true", "showHidden": "true", "maxResults": 100}
        return await self._import(self._tasks_url(), token, "items", params=params)

    async def delete(self, external_id: str, token: str) -> ExportResult:
        return await self._delete(self._tasks_url(external_id), token, external_id)

    def to_local(self, remote: Dict[str, Any], entity_id: Optional[str] = None) -> Task:
        return Task(
            id=entity_id or self.new_local_id(),
            title=remote.get("title") or "",
            completed=remote.get("status") == "completed",
            completed_at=parse_timestamp(remote.get("completed")),
            scheduled_date=date_part(remote.get("due")),
            description=remote.get("notes") or "",
        )


class _CalendarAdapter(GoogleAdapter):
    service = ExternalService.GOOGLE_CALENDAR
    api_name = "Calendar API"

    def __init__(self, api: Optional[GoogleApiClient] = None, calendar_id: str = "primary",
                 time_zone: str = "UTC"):
        super().__init__(api)
        self.calendar_id = calendar_id
        self.time_zone = time_zone

    def _events_url(self, event_id: Optional[str] = None) -> str:
        url = f"{CALENDAR_API}/calendars/{self.calendar_id}/events"
        return f"{url}/{event_id}" if event_id else url

    def _moment(self, day: str, time: str) -> Dict[str, str]:
        return {"dateTime": f"{day}T{time}:00", "timeZone": self.time_zone}

    async def _save_event(self, entity, token: str, body: Dict[str, Any]) -> ExportResult:
        event_id = self._external_id(entity)
        if event_id:
            return await self._export("PUT", self._events_url(event_id), token, body)
        return await self._export("POST", self._events_url(), token, body)

    async def _fetch_events(self, token: str) -> ImportResult:
        return await self._import(self._events_url(), token, "items", params={"maxResults": 250})

    async def delete(self, external_id: str, token: str) -> ExportResult:
        return await self._delete(self._events_url(external_id), token, external_id)

    @staticmethod
    def _is_deadline(event: Dict[str, Any]) -> bool:
        return (event.get("summary") or "").startswith(DEADLINE_PREFIX)


class GoogleCalendarTimeSlotAdapter(_CalendarAdapter):
    """Time slots <-> Google Calendar events."""

    entity_type = EntityType.TIME_SLOT

    def to_remote(self, slot: TimeSlot) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "summary": slot.title,
            "start": self._moment(slot.date, slot.start_time or "00:00"),
            "end": self._moment(slot.date, slot.end_time or slot.start_time or "00:00"),
            "colorId": COLOR_IDS.get(slot.type, DEFAULT_COLOR_ID),
        }
        if slot.description:
            event["description"] = slot.description
        if slot.recurring:
            event["recurrence"] = [build_recurrence_rule(slot.recurring)]
        return event

    async def export(self, entity: TimeSlot, token: str) -> ExportResult:
        if not entity.date:
            return ExportResult(success=False, error=f"Time slot {entity.id} has no date")
        return await self._save_event(entity, token, self.to_remote(entity))

    async def import_pending(self, token: str) -> ImportResult:
        result = await self._fetch_events(token)
        if result.success:
            result.items = [event for event in result.items if not self._is_deadline(event)]
        return result

    def to_local(self, remote: Dict[str, Any], entity_id: Optional[str] = None) -> TimeSlot:
        start = remote.get("start") or {}
        end = remote.get("end") or {}
        slot_types = {color: name for name, color in COLOR_IDS.items()}
        recurrence = remote.get("recurrence") or []

        return TimeSlot(
            id=entity_id or self.new_local_id(),
            title=remote.get("summary") or "",
            date=start.get("date") or date_part(start.get("dateTime")),
            start_time=clock_time(start.get("dateTime")),
            end_time=clock_time(end.get("dateTime")),
            type=slot_types.get(remote.get("colorId"), "personal"),
            description=remote.get("description") or "",
            recurring=parse_recurrence_rule(recurrence[0]) if recurrence else None,
        )


class GoogleCalendarObjectiveAdapter(_CalendarAdapter):
    """Objective deadlines <-> Google Calendar events."""

    entity_type = EntityType.OBJECTIVE

    def to_remote(self, objective: Objective) -> Dict[str, Any]:
        description = f"Goal deadline for: {objective.title}"
        if objective.description:
            description = f"{description}\n{objective.description}"
        return {
            "summary": f"{DEADLINE_PREFIX}{objective.title}",
            "description": description,
            "start": self._moment(objective.due_date, "09:00"),
            "end": self._moment(objective.due_date, "10:00"),
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 60},
                ],
            },
        }

    async def export(self, entity: Objective, token: str) -> ExportResult:
        if not entity.due_date:
            self.logger.debug(f"Objective {entity.id} has no deadline, nothing to export")
            return ExportResult(success=True, remote_id=self._external_id(entity))
        return await self._save_event(entity, token, self.to_remote(entity))

    async def import_pending(self, token: str) -> ImportResult:
        result = await self._fetch_events(token)
        if result.success:
            result.items = [event for event in result.items if self._is_deadline(event)]
        return result

    def to_local(self, remote: Dict[str, Any], entity_id: Optional[str] = None) -> Objective:
        summary = remote.get("summary") or ""
        title = summary[len(DEADLINE_PREFIX):] if summary.startswith(DEADLINE_PREFIX) else summary
        start = remote.get("start") or {}

        description = remote.get("description") or ""
        first_line, _, rest = description.partition("\n")
        if first_line.startswith("Goal deadline for:"):
            description = rest

        return Objective(
            id=entity_id or self.new_local_id(),
            title=title,
            description=description,
            due_date=start.get("date") or date_part(start.get("dateTime")),
        )


class GoogleContactsAdapter(GoogleAdapter):
    """Friends <-> Google Contacts (People API)."""

    entity_type = EntityType.FRIEND
    service = ExternalService.GOOGLE_CONTACTS
    api_name = "People API"

    def remote_id(self, remote: Dict[str, Any]) -> Optional[str]:
        return remote.get("resourceName")

    def remote_modified(self, remote: Dict[str, Any]):
        sources = (remote.get("metadata") or {}).get("sources") or []
        if not sources:
            return None
        return parse_timestamp(sources[0].get("updateTime"))

    def to_remote(self, friend: Friend) -> Dict[str, Any]:
        given, _, family = friend.name.partition(" ")
        return {
            "names": [{"givenName": given or friend.name, "familyName": family}],
            "photos": [{"url": friend.image}] if friend.image else [],
            "emailAddresses": [{"value": friend.email}] if friend.email else [],
            "phoneNumbers": [{"value": friend.phone}] if friend.phone else [],
            "biographies": [{"value": friend.role}] if friend.role else [],
        }

    async def export(self, entity: Friend, token: str) -> ExportResult:
        resource_name = self._external_id(entity)
        body = self.to_remote(entity)
        if not resource_name:
            return await self._export("POST", f"{PEOPLE_API}/people:createContact", token, body)

        # updateContact needs the current etag
        try:
            current = await self.api.request(
                "GET", f"{PEOPLE_API}/{resource_name}", token,
                params={"personFields": "metadata"}, api_name=self.api_name,
            )
        except AdapterError as e:
            return ExportResult(success=False, error=str(e))
        body["etag"] = current.get("etag")

        return await self._export(
            "PATCH", f"{PEOPLE_API}/{resource_name}:updateContact", token, body,
            params={"updatePersonFields": UPDATE_PERSON_FIELDS},
        )

    async def import_pending(self, token: str) -> ImportResult:
        params = {"personFields": PERSON_FIELDS, "pageSize": 100}
        return await self._import(f"{PEOPLE_API}/people/me/connections", token, "connections", params=params)

    async def delete(self, external_id: str, token: str) -> ExportResult:
        return await self._delete(f"{PEOPLE_API}/{external_id}:deleteContact", token, external_id)

    def to_local(self, remote: Dict[str, Any], entity_id: Optional[str] = None) -> Friend:
        def first(key: str) -> Dict[str, Any]:
            values = remote.get(key) or []
            return values[0] if values else {}

        names = first("names")
        name = names.get("displayName") or " ".join(
            part for part in (names.get("givenName"), names.get("familyName")) if part
        )

        return Friend(
            id=entity_id or self.new_local_id(),
            name=name,
            role=first("biographies").get("value") or "",
            email=first("emailAddresses").get("value") or "",
            phone=first("phoneNumbers").get("value") or "",
            image=first("photos").get("url") or "",
            location=first("addresses").get("formattedValue") or "",
        )


def build_recurrence_rule(recurring: Dict[str, Any]) -> str:
    """``{"frequency": "weekly", "end_date": "2024-03-01"}`` -> ``RRULE:FREQ=WEEKLY;UNTIL=20240301``."""
    rule = f"RRULE:FREQ={str(recurring.get('frequency', 'daily')).upper()}"
    end_date = recurring.get("end_date")
    if end_date:
        rule += f";UNTIL={end_date.replace('-', '')}"
    return rule


def parse_recurrence_rule(rule: str) -> Optional[Dict[str, Any]]:
    match = RRULE_RE.match(rule or "")
    if not match:
        return None
    recurring: Dict[str, Any] = {"frequency": match.group("freq").lower()}
    until = match.group("until")
    if until:
        recurring["end_date"] = f"{until[:4]}-{until[4:6]}-{until[6:]}"
    return recurring
