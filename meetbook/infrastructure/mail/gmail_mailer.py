from __future__ import annotations

import base64
import logging
from email.mime.text import MIMEText

import httpx

from meetbook.application.exceptions import GatewayUnavailable
from meetbook.application.ports.mailer import MailerPort
from meetbook.application.ports.token_source import TokenSourcePort
from meetbook.domain.entities.notification import MailMessage
from meetbook.infrastructure.google.api_errors import raise_for_status


logger = logging.getLogger(__name__)

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"


def build_raw_message(message: MailMessage) -> str:
    mime = MIMEText(message.body, "plain", "utf-8")
    if message.sender:
        mime["From"] = message.sender
    mime["To"] = ", ".join(message.to)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    mime["Subject"] = message.subject
    return base64.urlsafe_b64encode(mime.as_bytes()).decode()


class GmailMailer(MailerPort):
    """Sends plain-text mail through the Gmail REST API with the shared Google token chain."""

    def __init__(
        self,
        token_source: TokenSourcePort,
        http_client: httpx.AsyncClient,
        send_url: str = GMAIL_SEND_URL,
    ) -> None:
        self._token_source = token_source
        self._client = http_client
        self._send_url = send_url

    async def send(self, message: MailMessage) -> None:
        if not message.to:
            raise ValueError("mail message needs at least one recipient")

        payload = {"raw": build_raw_message(message)}
        response = await self._post_once(payload)
        if response.status_code == 401:
            logger.warning("Gmail rejected credential, retrying once")
            self._token_source.invalidate()
            response = await self._post_once(payload)
        raise_for_status(response, api="Gmail API")
        logger.info("Mail sent", extra={"subject": message.subject})

    async def _post_once(self, payload: dict[str, str]) -> httpx.Response:
        credential = await self._token_source.acquire()
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        try:
            return await self._client.post(self._send_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Gmail API request failed: {type(e).__name__}") from e
