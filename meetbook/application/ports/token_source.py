from __future__ import annotations

from abc import ABC, abstractmethod

from meetbook.domain.entities.credential import Credential


class TokenSourcePort(ABC):
    name: str = "token_source"

    @abstractmethod
    async def acquire(self) -> Credential:
        """Return a usable credential or raise CredentialUnavailable."""
        raise NotImplementedError

    def invalidate(self) -> None:
        """Forget any cached access token so the next acquire fetches a fresh one."""
        return None
