from __future__ import annotations

import logging

from meetbook.application.ports.mailer import MailerPort
from meetbook.domain.entities.notification import MailMessage


class MockMailer(MailerPort):
    def __init__(self) -> None:
        self.sent: list[MailMessage] = []
        self._logger = logging.getLogger(__name__)

    async def send(self, message: MailMessage) -> None:
        self.sent.append(message)
        self._logger.info("Mock mail sent", extra={"subject": message.subject})
