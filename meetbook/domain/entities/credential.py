from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class Credential:
    access_token: str
    source: str
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"Credential(access_token=<REDACTED>, source={self.source!r}, expires_at={self.expires_at!r})"

    __str__ = __repr__


@dataclass(frozen=True)
class TokenRecord:
    """Durable OAuth token pair persisted by a TokenStore."""

    access_token: str
    refresh_token: str
    expires_at: datetime | None = None

    def is_fresh(self, now: datetime, skew: timedelta = timedelta(minutes=1)) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        return now < self.expires_at - skew

    def __repr__(self) -> str:
        return f"TokenRecord(access_token=<REDACTED>, refresh_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__
