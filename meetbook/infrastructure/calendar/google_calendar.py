from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from meetbook.application.exceptions import GatewayUnavailable, InvalidInput
from meetbook.application.ports.calendar import CalendarPort
from meetbook.application.ports.token_source import TokenSourcePort
from meetbook.domain.entities.calendar_event import CalendarEvent, EventInput
from meetbook.domain.entities.time_window import TimeWindow
from meetbook.infrastructure.google.api_errors import raise_for_status


logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


class GoogleCalendarGateway(CalendarPort):
    def __init__(
        self,
        token_source: TokenSourcePort,
        http_client: httpx.AsyncClient,
        timezone: str = "UTC",
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._token_source = token_source
        self._client = http_client
        self._timezone = timezone
        self._base_url = base_url.rstrip("/")

    async def list_busy_windows(self, calendar_id: str, start: datetime, end: datetime) -> list[TimeWindow]:
        _validate_range(start, end)

        payload = {
            "timeMin": _rfc3339(start),
            "timeMax": _rfc3339(end),
            "items": [{"id": calendar_id}],
        }
        data = await self._request_json("POST", "/freeBusy", json_body=payload)

        # Busy time we cannot read must not turn into free time.
        calendars = data.get("calendars")
        if not isinstance(calendars, dict):
            raise GatewayUnavailable("freeBusy response missing calendars object")
        entry = calendars.get(calendar_id)
        if not isinstance(entry, dict):
            raise GatewayUnavailable(f"freeBusy response missing entry for calendar {calendar_id!r}")
        if entry.get("errors"):
            raise GatewayUnavailable(f"calendar {calendar_id!r} freeBusy lookup returned errors")
        busy_list = entry.get("busy")
        if not isinstance(busy_list, list):
            raise GatewayUnavailable("freeBusy response missing busy array")

        windows: list[TimeWindow] = []
        for index, busy in enumerate(busy_list):
            try:
                windows.append(TimeWindow(_parse_rfc3339(busy["start"]), _parse_rfc3339(busy["end"])))
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                raise GatewayUnavailable(f"freeBusy busy window {index} is malformed") from e
        windows.sort()
        return windows

    async def create_event(self, calendar_id: str, event: EventInput) -> CalendarEvent:
        body: dict[str, Any] = {
            "summary": event.summary,
            "description": event.description,
            "start": {"dateTime": _rfc3339(event.window.start), "timeZone": self._timezone},
            "end": {"dateTime": _rfc3339(event.window.end), "timeZone": self._timezone},
            "attendees": [{"email": address} for address in event.attendees if address],
            "conferenceData": {
                "createRequest": {
                    "requestId": event.request_id or f"booking-{uuid.uuid4().hex}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }
        data = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params={"conferenceDataVersion": 1},
            json_body=body,
        )

        event_id = data.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise GatewayUnavailable("calendar API returned no event id")

        logger.info("Calendar event created", extra={"calendar_id": calendar_id, "event_id": event_id})
        return CalendarEvent(
            event_id=event_id,
            html_link=data.get("htmlLink") or None,
            hangout_link=data.get("hangoutLink") or None,
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        path = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        response = await self._request_with_bearer("DELETE", path)
        # Already gone counts as deleted.
        if response.status_code in (404, 410):
            return
        raise_for_status(response)
        logger.info("Calendar event deleted", extra={"calendar_id": calendar_id, "event_id": event_id})

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(method, path, params=params, json_body=json_body)
        raise_for_status(response)
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayUnavailable("calendar API returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise GatewayUnavailable("calendar API returned an unexpected payload shape")
        return payload

    async def _request_with_bearer(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        response = await self._request_once(method, url, params=params, json_body=json_body)
        if response.status_code == 401:
            logger.warning("Calendar API rejected credential, retrying once", extra={"path": path})
            self._token_source.invalidate()
            response = await self._request_once(method, url, params=params, json_body=json_body)
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        credential = await self._token_source.acquire()
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            return await self._client.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"calendar API request failed: {type(e).__name__}") from e


def _validate_range(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise InvalidInput("range boundaries must be timezone-aware")
    if start >= end:
        raise InvalidInput("range start must be before range end")


def _rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
