from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class BlacklistEntry:
    email: str  # stored lower-cased
    reason: str = ""
    entry_id: int | None = None
    created_at: datetime | None = None
