from __future__ import annotations

from abc import ABC, abstractmethod

from meetbook.domain.entities.blacklist import BlacklistEntry


class BlacklistRepository(ABC):
    @abstractmethod
    async def find_by_email(self, email: str) -> BlacklistEntry:
        """Case-insensitive lookup. Raises NotFoundError when the address is not listed."""
        raise NotImplementedError

    @abstractmethod
    async def list_entries(self) -> list[BlacklistEntry]:
        raise NotImplementedError

    @abstractmethod
    async def add_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        """Raises DuplicateError when the address is already listed, InvalidInputError when it is blank."""
        raise NotImplementedError

    @abstractmethod
    async def remove_entry(self, entry_id: int) -> None:
        """Raises NotFoundError when the id is unknown."""
        raise NotImplementedError
