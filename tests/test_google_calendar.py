from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from meetbook.application.exceptions import CredentialUnavailable, GatewayUnavailable, InvalidInput
from meetbook.application.ports.token_source import TokenSourcePort
from meetbook.domain.entities.calendar_event import EventInput
from meetbook.domain.entities.credential import Credential
from meetbook.domain.entities.time_window import TimeWindow
from meetbook.infrastructure.calendar.google_calendar import GoogleCalendarGateway

BASE_URL = "https://calendar.test/v3"
START = datetime(2026, 3, 3, 9, 0, tzinfo=UTC)
END = datetime(2026, 3, 3, 17, 0, tzinfo=UTC)


class _CountingTokenSource(TokenSourcePort):
    name = "test"

    def __init__(self) -> None:
        self.generation = 1
        self.invalidations = 0

    async def acquire(self) -> Credential:
        return Credential(access_token=f"token-{self.generation}", source=self.name)

    def invalidate(self) -> None:
        self.invalidations += 1
        self.generation += 1


def _gateway(handler, tokens: TokenSourcePort | None = None) -> GoogleCalendarGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarGateway(
        token_source=tokens or _CountingTokenSource(),
        http_client=client,
        timezone="UTC",
        base_url=BASE_URL,
    )


def _free_busy(busy: list[dict[str, str]]) -> dict:
    return {"calendars": {"primary": {"busy": busy}}}


async def test_list_busy_windows_parses_and_orders():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json=_free_busy(
                [
                    {"start": "2026-03-03T13:00:00Z", "end": "2026-03-03T14:00:00Z"},
                    {"start": "2026-03-03T10:00:00Z", "end": "2026-03-03T10:30:00Z"},
                ]
            ),
        )

    windows = await _gateway(handler).list_busy_windows("primary", START, END)

    assert windows == [
        TimeWindow(datetime(2026, 3, 3, 10, 0, tzinfo=UTC), datetime(2026, 3, 3, 10, 30, tzinfo=UTC)),
        TimeWindow(datetime(2026, 3, 3, 13, 0, tzinfo=UTC), datetime(2026, 3, 3, 14, 0, tzinfo=UTC)),
    ]
    assert requests[0].url.path == "/v3/freeBusy"
    assert requests[0].headers["Authorization"] == "Bearer token-1"
    body = json.loads(requests[0].content)
    assert body["timeMin"] == "2026-03-03T09:00:00Z"
    assert body["items"] == [{"id": "primary"}]


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"calendars": {}},
        {"calendars": {"someone-else": {"busy": []}}},
        {"calendars": {"primary": "not-an-object"}},
        {"calendars": {"primary": {}}},
        {"calendars": {"primary": {"busy": None}}},
        {"calendars": {"primary": {"errors": [{"reason": "notFound"}], "busy": []}}},
        _free_busy([{"start": "2026-03-03T10:00:00Z"}]),
        _free_busy([{"start": "2026-03-03T10:00:00Z", "end": "later"}]),
        _free_busy([{"start": "2026-03-03T11:00:00Z", "end": "2026-03-03T10:00:00Z"}]),
        _free_busy(["2026-03-03T10:00:00Z"]),
    ],
)
async def test_unreadable_busy_data_is_an_error_not_free_time(payload):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    with pytest.raises(GatewayUnavailable):
        await _gateway(handler).list_busy_windows("primary", START, END)


async def test_invalid_range_raises_without_network_call():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(InvalidInput):
        await _gateway(handler).list_busy_windows("primary", END, START)


async def test_unauthorized_invalidates_and_retries_once():
    tokens = _CountingTokenSource()
    seen_tokens: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_tokens.append(request.headers["Authorization"])
        if len(seen_tokens) == 1:
            return httpx.Response(401, json={"error": {"message": "expired"}})
        return httpx.Response(200, json=_free_busy([]))

    assert await _gateway(handler, tokens).list_busy_windows("primary", START, END) == []
    assert seen_tokens == ["Bearer token-1", "Bearer token-2"]
    assert tokens.invalidations == 1


async def test_second_unauthorized_surfaces_gateway_unavailable():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(401, json={"error": {"message": "expired"}})

    with pytest.raises(GatewayUnavailable) as exc_info:
        await _gateway(handler).list_busy_windows("primary", START, END)
    assert calls == 2
    assert exc_info.value.status_code == 401


async def test_server_error_is_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503, text="backend unavailable")

    with pytest.raises(GatewayUnavailable):
        await _gateway(handler).list_busy_windows("primary", START, END)
    assert calls == 1


async def test_network_error_maps_to_gateway_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(GatewayUnavailable):
        await _gateway(handler).list_busy_windows("primary", START, END)


async def test_credential_failure_propagates():
    class _NoCredential(TokenSourcePort):
        name = "none"

        async def acquire(self) -> Credential:
            raise CredentialUnavailable("no strategies")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(CredentialUnavailable):
        await _gateway(handler, _NoCredential()).list_busy_windows("primary", START, END)


async def test_create_event_requests_meet_conference():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={"id": "evt-1", "htmlLink": "https://calendar.test/evt-1", "hangoutLink": "https://meet.test/abc"},
        )

    event = await _gateway(handler).create_event(
        "primary",
        EventInput(
            summary="Consultation with Ada",
            window=TimeWindow(START, datetime(2026, 3, 3, 9, 30, tzinfo=UTC)),
            attendees=["ada@example.com"],
            request_id="booking-1",
        ),
    )

    assert event.event_id == "evt-1"
    assert event.meet_url == "https://meet.test/abc"
    request = captured[0]
    assert request.url.path == "/v3/calendars/primary/events"
    assert request.url.params["conferenceDataVersion"] == "1"
    body = json.loads(request.content)
    assert body["conferenceData"]["createRequest"]["requestId"] == "booking-1"
    assert body["attendees"] == [{"email": "ada@example.com"}]


async def test_delete_event_treats_gone_as_success():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(410)

    await _gateway(handler).delete_event("primary", "evt-1")
