from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from meetbook.application.ports.token_store import TokenNotFound, TokenStorePort
from meetbook.domain.entities.credential import TokenRecord


logger = logging.getLogger(__name__)


class JsonTokenStore(TokenStorePort):
    """Persists OAuth token records in a single JSON file keyed by provider."""

    def __init__(self, path: str = "./data/tokens.json") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    async def load(self, provider: str) -> TokenRecord:
        return await asyncio.to_thread(self._load_sync, provider)

    async def save(self, provider: str, record: TokenRecord) -> None:
        await asyncio.to_thread(self._save_sync, provider, record)

    def _load_sync(self, provider: str) -> TokenRecord:
        with self._lock:
            data = self._read_all()
        entry = data.get(provider)
        if not entry or not entry.get("refresh_token"):
            raise TokenNotFound(f"token record for {provider!r} not found")
        return _deserialize_record(entry)

    def _save_sync(self, provider: str, record: TokenRecord) -> None:
        with self._lock:
            data = self._read_all()
            data[provider] = _serialize_record(record)
            self._write_all(data)
        logger.info("Token record saved", extra={"provider": provider})

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            # A corrupted file behaves like an empty store; the next save rewrites it.
            logger.warning("Token store unreadable", extra={"error": str(e)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        """Write the token file atomically."""
        temp_path = self._path.with_suffix(".json.tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            temp_path.replace(self._path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)
            raise


class MemoryTokenStore(TokenStorePort):
    def __init__(self, records: dict[str, TokenRecord] | None = None) -> None:
        self._records: dict[str, TokenRecord] = dict(records or {})

    async def load(self, provider: str) -> TokenRecord:
        record = self._records.get(provider)
        if record is None:
            raise TokenNotFound(f"token record for {provider!r} not found")
        return record

    async def save(self, provider: str, record: TokenRecord) -> None:
        self._records[provider] = record


def _serialize_record(record: TokenRecord) -> dict[str, Any]:
    return {
        "access_token": record.access_token,
        "refresh_token": record.refresh_token,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
    }


def _deserialize_record(data: dict[str, Any]) -> TokenRecord:
    expires_at = None
    if data.get("expires_at"):
        try:
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (ValueError, TypeError):
            expires_at = None
    return TokenRecord(
        access_token=data.get("access_token") or "",
        refresh_token=data["refresh_token"],
        expires_at=expires_at,
    )
