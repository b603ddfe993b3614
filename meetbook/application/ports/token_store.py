from __future__ import annotations

from abc import ABC, abstractmethod

from meetbook.domain.entities.credential import TokenRecord


class TokenNotFound(LookupError):
    """No token record exists for the provider."""
    pass


class TokenStorePort(ABC):
    @abstractmethod
    async def load(self, provider: str) -> TokenRecord:
        """Load the durable token record. Raises TokenNotFound if missing."""
        raise NotImplementedError

    @abstractmethod
    async def save(self, provider: str, record: TokenRecord) -> None:
        raise NotImplementedError
