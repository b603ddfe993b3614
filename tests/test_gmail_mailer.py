from __future__ import annotations

import base64
import json
from email import message_from_bytes

import httpx
import pytest

from meetbook.application.exceptions import GatewayUnavailable
from meetbook.application.ports.token_source import TokenSourcePort
from meetbook.domain.entities.credential import Credential
from meetbook.domain.entities.notification import MailMessage
from meetbook.infrastructure.mail.gmail_mailer import GmailMailer

SEND_URL = "https://gmail.test/send"
MESSAGE = MailMessage(
    sender="owner@example.com",
    to=["ada@example.com"],
    cc=["assistant@example.com"],
    subject="Meeting request confirmed: Tue, 03 Mar 2026 09:00 UTC",
    body="Hi Ada,\n\nYour meeting has been scheduled.\n",
)


class _Tokens(TokenSourcePort):
    name = "test"

    def __init__(self) -> None:
        self.generation = 1

    async def acquire(self) -> Credential:
        return Credential(access_token=f"token-{self.generation}", source=self.name)

    def invalidate(self) -> None:
        self.generation += 1


def _mailer(handler, tokens: TokenSourcePort | None = None) -> GmailMailer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GmailMailer(token_source=tokens or _Tokens(), http_client=client, send_url=SEND_URL)


async def test_send_posts_raw_rfc822_message():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"id": "msg-1"})

    await _mailer(handler).send(MESSAGE)

    request = captured[0]
    assert str(request.url) == SEND_URL
    assert request.headers["Authorization"] == "Bearer token-1"
    raw = json.loads(request.content)["raw"]
    parsed = message_from_bytes(base64.urlsafe_b64decode(raw))
    assert parsed["To"] == "ada@example.com"
    assert parsed["Cc"] == "assistant@example.com"
    assert parsed["From"] == "owner@example.com"
    assert parsed["Subject"] == MESSAGE.subject
    assert "Your meeting has been scheduled." in parsed.get_payload(decode=True).decode()


async def test_unauthorized_send_refreshes_token_once():
    tokens = _Tokens()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        if len(seen) == 1:
            return httpx.Response(401, json={"error": {"message": "expired"}})
        return httpx.Response(200, json={"id": "msg-1"})

    await _mailer(handler, tokens).send(MESSAGE)

    assert seen == ["Bearer token-1", "Bearer token-2"]


async def test_server_error_is_gateway_unavailable_with_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "backend"}})

    with pytest.raises(GatewayUnavailable) as exc_info:
        await _mailer(handler).send(MESSAGE)
    assert exc_info.value.status_code == 500


async def test_network_error_is_gateway_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(GatewayUnavailable):
        await _mailer(handler).send(MESSAGE)
