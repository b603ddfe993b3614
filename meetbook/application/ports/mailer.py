from __future__ import annotations

from abc import ABC, abstractmethod

from meetbook.domain.entities.notification import MailMessage


class MailerPort(ABC):
    @abstractmethod
    async def send(self, message: MailMessage) -> None:
        """Deliver the message. Raises GatewayUnavailable / CredentialUnavailable."""
        raise NotImplementedError
