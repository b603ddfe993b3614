"""SQLite-backed repositories.

All blocking sqlite3 work runs in worker threads via ``asyncio.to_thread``.
The database file is opened read-write without ``create`` so a missing file
surfaces as :class:`StoreUnavailableError` instead of silently producing an
empty database; :meth:`SqliteDatabase.initialize` creates file and schema.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, date, datetime, time
from pathlib import Path
from typing import Any

from meetbook.application.ports.availability_rules import AvailabilityRuleAdminRepository
from meetbook.application.ports.blacklist import BlacklistRepository
from meetbook.application.ports.errors import (
    AccessDeniedError,
    ConflictError,
    DuplicateError,
    InvalidInputError,
    NotFoundError,
    RepositoryError,
    SchemaMissingError,
    StoreUnavailableError,
)
from meetbook.application.ports.notifications import NotificationRepository
from meetbook.application.ports.reservations import ReservationRepository
from meetbook.domain.entities.availability_rule import AvailabilityRule
from meetbook.domain.entities.blacklist import BlacklistEntry
from meetbook.domain.entities.notification import MeetingNotification, NotificationKind, NotificationStatus
from meetbook.domain.entities.reservation import Requester, Reservation, ReservationStatus
from meetbook.domain.entities.time_window import TimeWindow
from meetbook.infrastructure.store.memory_store import check_transition


logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS availability_rules (
    owner_id TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    open_from TEXT NOT NULL,
    open_until TEXT NOT NULL,
    slot_minutes INTEGER NOT NULL,
    buffer_before_minutes INTEGER NOT NULL DEFAULT 0,
    buffer_after_minutes INTEGER NOT NULL DEFAULT 0,
    timezone TEXT NOT NULL,
    weekdays TEXT NOT NULL,
    valid_from TEXT,
    valid_until TEXT,
    PRIMARY KEY (owner_id, rule_id)
);

CREATE TABLE IF NOT EXISTS reservations (
    reservation_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    start_at TEXT NOT NULL,
    end_at TEXT NOT NULL,
    requester_name TEXT NOT NULL,
    requester_email TEXT NOT NULL,
    topic TEXT NOT NULL DEFAULT '',
    agenda TEXT NOT NULL DEFAULT '',
    lookup_hash TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    external_event_id TEXT,
    meet_url TEXT,
    cancellation_reason TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_reservations_owner_window_active
    ON reservations (owner_id, start_at, end_at)
    WHERE status IN ('pending', 'confirmed');

CREATE INDEX IF NOT EXISTS ix_reservations_owner_start
    ON reservations (owner_id, start_at);

CREATE TABLE IF NOT EXISTS blacklist_entries (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    reason TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS meeting_notifications (
    notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
    reservation_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_meeting_notifications_reservation
    ON meeting_notifications (reservation_id);
"""


def translate_sqlite_error(exc: sqlite3.Error) -> RepositoryError:
    message = str(exc).lower()
    if isinstance(exc, sqlite3.IntegrityError):
        if "unique" in message:
            return DuplicateError(str(exc))
        return InvalidInputError(str(exc))
    if "no such table" in message or "no such column" in message:
        return SchemaMissingError(str(exc))
    if "readonly database" in message or "authorization denied" in message or "permission denied" in message:
        return AccessDeniedError(str(exc))
    if "unable to open database file" in message or "file is not a database" in message:
        return StoreUnavailableError(str(exc))
    if "database is locked" in message:
        return ConflictError(str(exc))
    return RepositoryError(str(exc))


class SqliteDatabase:
    def __init__(self, path: str, timeout_seconds: float = 5.0) -> None:
        self._path = path
        self._timeout = timeout_seconds

    @property
    def path(self) -> str:
        return self._path

    async def initialize(self) -> None:
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path, timeout=self._timeout) as conn:
            conn.executescript(SCHEMA)
        conn.close()
        logger.info("SQLite schema ensured", extra={"path": self._path})

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                f"file:{self._path}?mode=rw",
                uri=True,
                timeout=self._timeout,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise translate_sqlite_error(e) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise translate_sqlite_error(e) from e
        finally:
            conn.close()


class SqliteAvailabilityRuleStore(AvailabilityRuleAdminRepository):
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def list_rules(self, owner_id: str) -> list[AvailabilityRule]:
        return await asyncio.to_thread(self._list_rules_sync, owner_id)

    async def upsert_rule(self, rule: AvailabilityRule) -> AvailabilityRule:
        await asyncio.to_thread(self._upsert_rule_sync, rule)
        return rule

    async def delete_rule(self, owner_id: str, rule_id: str) -> None:
        await asyncio.to_thread(self._delete_rule_sync, owner_id, rule_id)

    def _list_rules_sync(self, owner_id: str) -> list[AvailabilityRule]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM availability_rules WHERE owner_id = ? ORDER BY rule_id",
                (owner_id,),
            ).fetchall()
        if not rows:
            raise NotFoundError(f"no availability rules for owner {owner_id!r}")
        rules = []
        for row in rows:
            try:
                rules.append(_row_to_rule(row))
            except ValueError as e:
                raise InvalidInputError(f"stored rule {row['rule_id']!r} is invalid: {e}") from e
        return rules

    def _upsert_rule_sync(self, rule: AvailabilityRule) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO availability_rules (
                    owner_id, rule_id, open_from, open_until, slot_minutes,
                    buffer_before_minutes, buffer_after_minutes, timezone, weekdays,
                    valid_from, valid_until
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner_id, rule_id) DO UPDATE SET
                    open_from = excluded.open_from,
                    open_until = excluded.open_until,
                    slot_minutes = excluded.slot_minutes,
                    buffer_before_minutes = excluded.buffer_before_minutes,
                    buffer_after_minutes = excluded.buffer_after_minutes,
                    timezone = excluded.timezone,
                    weekdays = excluded.weekdays,
                    valid_from = excluded.valid_from,
                    valid_until = excluded.valid_until
                """,
                (
                    rule.owner_id,
                    rule.rule_id,
                    rule.open_from.strftime("%H:%M"),
                    rule.open_until.strftime("%H:%M"),
                    rule.slot_minutes,
                    rule.buffer_before_minutes,
                    rule.buffer_after_minutes,
                    rule.timezone,
                    ",".join(str(d) for d in sorted(rule.weekdays)),
                    rule.valid_from.isoformat() if rule.valid_from else None,
                    rule.valid_until.isoformat() if rule.valid_until else None,
                ),
            )

    def _delete_rule_sync(self, owner_id: str, rule_id: str) -> None:
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM availability_rules WHERE owner_id = ? AND rule_id = ?",
                (owner_id, rule_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"availability rule {rule_id!r} not found")


class SqliteReservationStore(ReservationRepository):
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def insert_pending(self, reservation: Reservation) -> Reservation:
        return await asyncio.to_thread(self._insert_pending_sync, reservation)

    async def get(self, reservation_id: str) -> Reservation:
        return await asyncio.to_thread(self._fetch_one, "reservation_id", reservation_id)

    async def find_by_lookup_hash(self, lookup_hash: str) -> Reservation:
        return await asyncio.to_thread(self._fetch_one, "lookup_hash", lookup_hash)

    async def list_active(self, owner_id: str, start: datetime, end: datetime) -> list[Reservation]:
        return await asyncio.to_thread(self._list_active_sync, owner_id, start, end)

    async def list_reservations(
        self,
        owner_id: str,
        statuses: Iterable[ReservationStatus] | None = None,
    ) -> list[Reservation]:
        return await asyncio.to_thread(self._list_reservations_sync, owner_id, list(statuses or []))

    async def update_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        *,
        external_event_id: str | None = None,
        meet_url: str | None = None,
        reason: str = "",
    ) -> Reservation:
        return await asyncio.to_thread(
            self._update_status_sync, reservation_id, status, external_event_id, meet_url, reason
        )

    def _insert_pending_sync(self, reservation: Reservation) -> Reservation:
        if reservation.status is not ReservationStatus.pending:
            raise InvalidInputError("only pending reservations can be inserted")

        now = datetime.now(UTC)
        created_at = reservation.created_at or now
        with self._db.connect() as conn:
            # BEGIN IMMEDIATE takes the write lock so the overlap check and insert are atomic.
            conn.execute("BEGIN IMMEDIATE")
            try:
                overlapping = conn.execute(
                    """
                    SELECT start_at, end_at FROM reservations
                    WHERE owner_id = ? AND status IN ('pending', 'confirmed')
                      AND start_at < ? AND end_at > ?
                    LIMIT 1
                    """,
                    (reservation.owner_id, _ts(reservation.window.end), _ts(reservation.window.start)),
                ).fetchone()
                if overlapping is not None:
                    same_window = (
                        overlapping["start_at"] == _ts(reservation.window.start)
                        and overlapping["end_at"] == _ts(reservation.window.end)
                    )
                    if same_window:
                        raise DuplicateError("an active reservation already holds this window")
                    raise ConflictError("an active reservation overlaps this window")

                conn.execute(
                    """
                    INSERT INTO reservations (
                        reservation_id, owner_id, start_at, end_at, requester_name, requester_email,
                        topic, agenda, lookup_hash, status, external_event_id, meet_url,
                        cancellation_reason, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        reservation.reservation_id,
                        reservation.owner_id,
                        _ts(reservation.window.start),
                        _ts(reservation.window.end),
                        reservation.requester.name,
                        reservation.requester.email,
                        reservation.requester.topic,
                        reservation.requester.agenda,
                        reservation.lookup_hash,
                        reservation.status.value,
                        reservation.external_event_id,
                        reservation.meet_url,
                        reservation.cancellation_reason,
                        _ts(created_at),
                        _ts(now),
                    ),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return replace(reservation, created_at=created_at, updated_at=now)

    def _fetch_one(self, column: str, value: str) -> Reservation:
        with self._db.connect() as conn:
            row = conn.execute(f"SELECT * FROM reservations WHERE {column} = ?", (value,)).fetchone()
        if row is None:
            raise NotFoundError("reservation not found")
        return _row_to_reservation(row)

    def _list_active_sync(self, owner_id: str, start: datetime, end: datetime) -> list[Reservation]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reservations
                WHERE owner_id = ? AND status IN ('pending', 'confirmed')
                  AND start_at < ? AND end_at > ?
                ORDER BY start_at
                """,
                (owner_id, _ts(end), _ts(start)),
            ).fetchall()
        return [_row_to_reservation(row) for row in rows]

    def _list_reservations_sync(self, owner_id: str, statuses: list[ReservationStatus]) -> list[Reservation]:
        query = "SELECT * FROM reservations WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY start_at DESC"
        with self._db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_reservation(row) for row in rows]

    def _update_status_sync(
        self,
        reservation_id: str,
        status: ReservationStatus,
        external_event_id: str | None,
        meet_url: str | None,
        reason: str,
    ) -> Reservation:
        with self._db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM reservations WHERE reservation_id = ?", (reservation_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"reservation {reservation_id!r} not found")
                current = _row_to_reservation(row)
                check_transition(current.status, status)

                event_id = external_event_id or current.external_event_id
                if status is ReservationStatus.confirmed and not event_id:
                    raise InvalidInputError("confirmed reservations require an external event id")

                cancellation_reason = (
                    reason.strip() if status is ReservationStatus.cancelled else current.cancellation_reason
                )
                conn.execute(
                    """
                    UPDATE reservations
                    SET status = ?, external_event_id = ?, meet_url = ?, cancellation_reason = ?, updated_at = ?
                    WHERE reservation_id = ?
                    """,
                    (
                        status.value,
                        event_id,
                        meet_url or current.meet_url,
                        cancellation_reason,
                        _ts(datetime.now(UTC)),
                        reservation_id,
                    ),
                )
                updated = conn.execute(
                    "SELECT * FROM reservations WHERE reservation_id = ?", (reservation_id,)
                ).fetchone()
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return _row_to_reservation(updated)


class SqliteBlacklistStore(BlacklistRepository):
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def find_by_email(self, email: str) -> BlacklistEntry:
        return await asyncio.to_thread(self._find_by_email_sync, email.strip().lower())

    async def list_entries(self) -> list[BlacklistEntry]:
        return await asyncio.to_thread(self._list_entries_sync)

    async def add_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        return await asyncio.to_thread(self._add_entry_sync, entry)

    async def remove_entry(self, entry_id: int) -> None:
        await asyncio.to_thread(self._remove_entry_sync, entry_id)

    def _find_by_email_sync(self, email: str) -> BlacklistEntry:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM blacklist_entries WHERE email = ?", (email,)).fetchone()
        if row is None:
            raise NotFoundError("email is not blacklisted")
        return _row_to_blacklist_entry(row)

    def _list_entries_sync(self) -> list[BlacklistEntry]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM blacklist_entries ORDER BY entry_id").fetchall()
        return [_row_to_blacklist_entry(row) for row in rows]

    def _add_entry_sync(self, entry: BlacklistEntry) -> BlacklistEntry:
        email = entry.email.strip().lower()
        if not email:
            raise InvalidInputError("blacklist email is required")
        created_at = entry.created_at or datetime.now(UTC)
        with self._db.connect() as conn:
            cursor = conn.execute(
                "INSERT INTO blacklist_entries (email, reason, created_at) VALUES (?, ?, ?)",
                (email, entry.reason, _ts(created_at)),
            )
            entry_id = cursor.lastrowid
        return replace(entry, email=email, entry_id=entry_id, created_at=created_at)

    def _remove_entry_sync(self, entry_id: int) -> None:
        with self._db.connect() as conn:
            cursor = conn.execute("DELETE FROM blacklist_entries WHERE entry_id = ?", (entry_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"blacklist entry {entry_id} not found")


class SqliteNotificationStore(NotificationRepository):
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def record(self, notification: MeetingNotification) -> MeetingNotification:
        return await asyncio.to_thread(self._record_sync, notification)

    async def list_for_reservation(self, reservation_id: str) -> list[MeetingNotification]:
        return await asyncio.to_thread(self._list_sync, reservation_id)

    def _record_sync(self, notification: MeetingNotification) -> MeetingNotification:
        created_at = notification.created_at or datetime.now(UTC)
        with self._db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO meeting_notifications (reservation_id, kind, status, error_message, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    notification.reservation_id,
                    notification.kind.value,
                    notification.status.value,
                    notification.error_message,
                    _ts(created_at),
                ),
            )
            notification_id = cursor.lastrowid
        return replace(notification, notification_id=notification_id, created_at=created_at)

    def _list_sync(self, reservation_id: str) -> list[MeetingNotification]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM meeting_notifications WHERE reservation_id = ? ORDER BY notification_id",
                (reservation_id,),
            ).fetchall()
        return [
            MeetingNotification(
                reservation_id=row["reservation_id"],
                kind=NotificationKind(row["kind"]),
                status=NotificationStatus(row["status"]),
                error_message=row["error_message"],
                notification_id=row["notification_id"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so lexical order equals chronological order.
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value).astimezone(UTC)


def _row_to_rule(row: sqlite3.Row) -> AvailabilityRule:
    weekdays = frozenset(int(d) for d in row["weekdays"].split(",") if d.strip())
    return AvailabilityRule(
        rule_id=row["rule_id"],
        owner_id=row["owner_id"],
        open_from=time.fromisoformat(row["open_from"]),
        open_until=time.fromisoformat(row["open_until"]),
        slot_minutes=row["slot_minutes"],
        buffer_before_minutes=row["buffer_before_minutes"],
        buffer_after_minutes=row["buffer_after_minutes"],
        timezone=row["timezone"],
        weekdays=weekdays,
        valid_from=date.fromisoformat(row["valid_from"]) if row["valid_from"] else None,
        valid_until=date.fromisoformat(row["valid_until"]) if row["valid_until"] else None,
    )


def _row_to_reservation(row: sqlite3.Row) -> Reservation:
    return Reservation(
        reservation_id=row["reservation_id"],
        owner_id=row["owner_id"],
        window=TimeWindow(_parse_ts(row["start_at"]), _parse_ts(row["end_at"])),
        requester=Requester(
            name=row["requester_name"],
            email=row["requester_email"],
            topic=row["topic"],
            agenda=row["agenda"],
        ),
        lookup_hash=row["lookup_hash"],
        status=ReservationStatus(row["status"]),
        external_event_id=row["external_event_id"],
        meet_url=row["meet_url"],
        cancellation_reason=row["cancellation_reason"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_blacklist_entry(row: sqlite3.Row) -> BlacklistEntry:
    return BlacklistEntry(
        email=row["email"],
        reason=row["reason"],
        entry_id=row["entry_id"],
        created_at=_parse_ts(row["created_at"]),
    )
