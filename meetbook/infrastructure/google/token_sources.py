"""Access-token strategies for the Google APIs and the chain that orders them.

Each strategy implements :class:`TokenSourcePort`. A strategy that cannot
produce a token raises :class:`CredentialUnavailable`; the chain then moves to
the next one and returns the first credential it gets. Refresh tokens are
never logged.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from meetbook.application.exceptions import CredentialUnavailable
from meetbook.application.ports.token_source import TokenSourcePort
from meetbook.application.ports.token_store import TokenNotFound, TokenStorePort
from meetbook.domain.entities.credential import Credential, TokenRecord


logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_PROVIDER = "google"
DEFAULT_EXPIRES_IN_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SingleFlight:
    """Hands out one asyncio.Lock per key so concurrent refreshes collapse into one."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]


class RefreshingTokenSource(TokenSourcePort):
    """Keeps an access token fresh by exchanging the refresh token persisted in a TokenStore."""

    name = "refresh"

    def __init__(
        self,
        store: TokenStorePort,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        provider: str = GOOGLE_PROVIDER,
        guard: SingleFlight | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required for the refreshing token source")
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._token_url = token_url
        self._provider = provider
        self._guard = guard or SingleFlight()
        self._clock = clock
        self._cached: TokenRecord | None = None
        self._force_refresh = False

    async def acquire(self) -> Credential:
        cached = self._fresh_cached()
        if cached is not None:
            return cached

        async with self._guard.lock(self.name):
            # Another caller may have refreshed while this one waited.
            cached = self._fresh_cached()
            if cached is not None:
                return cached

            record = self._cached or await self._load_record()
            if not self._force_refresh and record.is_fresh(self._clock()):
                self._cached = record
                return self._to_credential(record)

            refreshed = await self._refresh(record)
            await self._store.save(self._provider, refreshed)
            self._cached = refreshed
            self._force_refresh = False
            logger.info("Access token refreshed", extra={"strategy": self.name, "provider": self._provider})
            return self._to_credential(refreshed)

    def invalidate(self) -> None:
        self._force_refresh = True

    def _fresh_cached(self) -> Credential | None:
        if self._force_refresh or self._cached is None:
            return None
        if not self._cached.is_fresh(self._clock()):
            return None
        return self._to_credential(self._cached)

    async def _load_record(self) -> TokenRecord:
        try:
            record = await self._store.load(self._provider)
        except TokenNotFound as e:
            raise CredentialUnavailable(f"no refresh token stored for {self._provider}") from e
        if not record.refresh_token:
            raise CredentialUnavailable(f"refresh token unavailable for {self._provider}")
        return record

    async def _refresh(self, record: TokenRecord) -> TokenRecord:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": record.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise CredentialUnavailable(f"token endpoint request failed: {type(e).__name__}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise CredentialUnavailable(f"token endpoint returned status {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise CredentialUnavailable("token endpoint returned invalid JSON") from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialUnavailable("token endpoint response is missing access_token")

        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = record.refresh_token

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenRecord(
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip(),
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )

    def _to_credential(self, record: TokenRecord) -> Credential:
        return Credential(access_token=record.access_token, source=self.name, expires_at=record.expires_at)


class EnvTokenSource(TokenSourcePort):
    """
    Reads a static access token from an environment variable.
    The value may carry an expiry hint: ``<token>|exp=<RFC3339>``.
    """

    name = "env"

    def __init__(self, env_var: str, clock: Callable[[], datetime] = _utcnow) -> None:
        self._env_var = env_var
        self._clock = clock
        self._cached: Credential | None = None

    async def acquire(self) -> Credential:
        if self._cached is not None:
            expires_at = self._cached.expires_at
            if expires_at is None or self._clock() < expires_at:
                return self._cached

        if not self._env_var:
            raise CredentialUnavailable("no environment variable configured for static token")

        raw = os.environ.get(self._env_var, "").strip()
        if not raw:
            raise CredentialUnavailable(f"{self._env_var} is not set")

        token, expires_at = split_token_and_expiry(raw)
        if expires_at is not None and self._clock() >= expires_at:
            raise CredentialUnavailable(f"{self._env_var} holds an expired token")

        self._cached = Credential(access_token=token, source=self.name, expires_at=expires_at)
        return self._cached

    def invalidate(self) -> None:
        self._cached = None


class TokenSourceChain(TokenSourcePort):
    """Tries each strategy in order and returns the first credential produced."""

    name = "chain"

    def __init__(self, sources: Sequence[TokenSourcePort]) -> None:
        self._sources = [source for source in sources if source is not None]

    @property
    def sources(self) -> list[TokenSourcePort]:
        return list(self._sources)

    async def acquire(self) -> Credential:
        failures: list[str] = []
        for source in self._sources:
            try:
                credential = await source.acquire()
            except CredentialUnavailable as e:
                logger.info("Credential strategy failed", extra={"strategy": source.name, "error": str(e)})
                failures.append(f"{source.name}: {e}")
                continue
            logger.debug("Credential acquired", extra={"strategy": source.name})
            return credential

        if not failures:
            raise CredentialUnavailable("no credential strategies configured")
        raise CredentialUnavailable("all credential strategies failed (" + "; ".join(failures) + ")")

    def invalidate(self) -> None:
        for source in self._sources:
            source.invalidate()


def split_token_and_expiry(raw: str) -> tuple[str, datetime | None]:
    parts = raw.split("|")
    token = parts[0].strip()
    for part in parts[1:]:
        part = part.strip()
        if not part.startswith("exp="):
            continue
        value = part[len("exp="):]
        if value.endswith("Z"):
            value = f"{value[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return token, parsed
    return token, None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS
