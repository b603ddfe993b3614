from __future__ import annotations

from abc import ABC, abstractmethod

from meetbook.domain.entities.notification import MeetingNotification


class NotificationRepository(ABC):
    @abstractmethod
    async def record(self, notification: MeetingNotification) -> MeetingNotification:
        """Persist a delivery record and return it with id and timestamp assigned."""
        raise NotImplementedError

    @abstractmethod
    async def list_for_reservation(self, reservation_id: str) -> list[MeetingNotification]:
        """Records for one reservation, oldest first."""
        raise NotImplementedError
