from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class NotificationKind(str, Enum):
    confirmation_email = "confirmation_email"
    cancellation_email = "cancellation_email"


class NotificationStatus(str, Enum):
    sent = "sent"
    failed = "failed"


@dataclass(frozen=True)
class MailMessage:
    sender: str
    to: list[str]
    subject: str
    body: str
    cc: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MeetingNotification:
    """Delivery record for one e-mail sent about a reservation."""

    reservation_id: str
    kind: NotificationKind
    status: NotificationStatus
    error_message: str = ""
    notification_id: int | None = None
    created_at: datetime | None = None
