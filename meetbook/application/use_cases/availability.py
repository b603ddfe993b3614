from __future__ import annotations

import asyncio
import logging
from bisect import bisect_left
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from meetbook.application.exceptions import (
    AvailabilityUnavailable,
    CredentialUnavailable,
    GatewayUnavailable,
    InvalidInput,
)
from meetbook.application.ports.availability_rules import AvailabilityRuleRepository
from meetbook.application.ports.calendar import CalendarPort
from meetbook.application.ports.errors import NotFoundError, RepositoryError
from meetbook.application.ports.reservations import ReservationRepository
from meetbook.application.reliability import NO_RETRY, CircuitBreaker, RetryPolicy, call_with_retry
from meetbook.domain.entities.availability_rule import AvailabilityRule
from meetbook.domain.entities.slot import Availability, AvailabilityDay, Slot
from meetbook.domain.entities.time_window import TimeWindow, merge_windows


def expand_rules(owner_id: str, rules: list[AvailabilityRule], start: datetime, end: datetime) -> list[Slot]:
    """Expand recurring rules into candidate slots lying entirely inside [start, end)."""
    seen: set[TimeWindow] = set()
    slots: list[Slot] = []
    for rule in rules:
        if rule.slot_minutes <= 0 or rule.open_until <= rule.open_from:
            continue
        tz = rule.zone
        day = start.astimezone(tz).date()
        last_day = end.astimezone(tz).date()
        while day <= last_day:
            if rule.applies_on(day):
                for window in _day_windows(day, rule, tz):
                    if window.start < start or window.end > end:
                        continue
                    if window in seen:
                        continue
                    seen.add(window)
                    slots.append(Slot(window=window, owner_id=owner_id, rule_id=rule.rule_id))
            day += timedelta(days=1)
    return sorted(slots)


def _day_windows(day: date, rule: AvailabilityRule, tz: ZoneInfo) -> list[TimeWindow]:
    open_start = datetime.combine(day, rule.open_from, tzinfo=tz)
    open_end = datetime.combine(day, rule.open_until, tzinfo=tz)
    windows: list[TimeWindow] = []
    cursor = open_start
    while cursor + rule.slot_duration <= open_end:
        windows.append(TimeWindow(cursor, cursor + rule.slot_duration))
        cursor += rule.slot_duration
    return windows


def overlaps_any(candidate: TimeWindow, merged: list[TimeWindow], starts: list[datetime]) -> bool:
    # `merged` is sorted and disjoint, so ends ascend with starts.
    index = bisect_left(starts, candidate.end)
    return index > 0 and merged[index - 1].end > candidate.start


class AvailabilityUseCase:
    def __init__(
        self,
        rules: AvailabilityRuleRepository,
        reservations: ReservationRepository,
        calendar: CalendarPort,
        calendar_id: str,
        timezone: ZoneInfo,
        horizon_days: int = 14,
        max_range_days: int = 62,
        call_timeout: float = 8.0,
        retry_policy: RetryPolicy | None = None,
        calendar_breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rules = rules
        self._reservations = reservations
        self._calendar = calendar
        self._calendar_id = calendar_id
        self._timezone = timezone
        self._horizon_days = horizon_days if horizon_days > 0 else 14
        self._max_range_days = max_range_days if max_range_days > 0 else 62
        self._call_timeout = call_timeout
        self._retry_policy = retry_policy or NO_RETRY
        self._calendar_breaker = calendar_breaker
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logging.getLogger(__name__)

    async def compute_slots(self, owner_id: str, range_start: datetime, range_end: datetime) -> list[Slot]:
        """
        Open slots for the owner in [range_start, range_end), ordered by start.
        Every call recomputes from current rules, calendar and reservations.
        """
        query = _query_window(range_start, range_end)
        if query.duration > timedelta(days=self._max_range_days):
            raise InvalidInput(f"range must not span more than {self._max_range_days} days")
        return await self._open_slots(owner_id, query)

    async def get_availability(
        self,
        owner_id: str,
        start_date: date | None = None,
        days: int | None = None,
        minimum_lead: timedelta = timedelta(0),
    ) -> Availability:
        horizon = days if days and days > 0 else self._horizon_days
        if horizon > self._max_range_days:
            raise InvalidInput(f"days must not exceed {self._max_range_days}")
        now = self._clock()
        first_day = start_date or now.astimezone(self._timezone).date()
        try:
            range_start = datetime.combine(first_day, time.min, tzinfo=self._timezone)
            range_end = datetime.combine(first_day + timedelta(days=horizon), time.min, tzinfo=self._timezone)
        except OverflowError as e:
            raise InvalidInput("requested dates are out of range") from e

        # Capped on `horizon`, not on the range: DST can stretch the range past whole days.
        slots = await self._open_slots(owner_id, _query_window(range_start, range_end))
        earliest = now + minimum_lead

        buckets: dict[date, list[Slot]] = {first_day + timedelta(days=i): [] for i in range(horizon)}
        for slot in slots:
            if slot.start < earliest:
                continue
            local_day = slot.start.astimezone(self._timezone).date()
            if local_day in buckets:
                buckets[local_day].append(slot)

        return Availability(
            timezone=str(self._timezone),
            generated_at=now.astimezone(self._timezone),
            days=[AvailabilityDay(date=day.isoformat(), slots=day_slots) for day, day_slots in buckets.items()],
        )

    async def _open_slots(self, owner_id: str, query: TimeWindow) -> list[Slot]:
        rules = await self.load_rules(owner_id)
        try:
            candidates = expand_rules(owner_id, rules, query.start, query.end)
            if not candidates:
                return []
            max_before = max(rule.buffer_before for rule in rules)
            max_after = max(rule.buffer_after for rule in rules)
            lookup = query.expand(max_before, max_after)
        except OverflowError as e:
            raise InvalidInput("requested range is outside the supported dates") from e

        rules_by_id = {rule.rule_id: rule for rule in rules}
        excluded = await self.excluded_windows(owner_id, lookup)
        starts = [window.start for window in excluded]

        open_slots = []
        for slot in candidates:
            rule = rules_by_id[slot.rule_id]
            padded = slot.window.expand(rule.buffer_before, rule.buffer_after)
            if not overlaps_any(padded, excluded, starts):
                open_slots.append(slot)

        self._logger.info(
            "Slots computed",
            extra={"owner_id": owner_id, "candidates": len(candidates), "open": len(open_slots)},
        )
        return open_slots

    async def load_rules(self, owner_id: str) -> list[AvailabilityRule]:
        try:
            async with asyncio.timeout(self._call_timeout):
                return await self._rules.list_rules(owner_id)
        except NotFoundError as e:
            raise InvalidInput(f"owner {owner_id!r} has no availability configured") from e
        except (RepositoryError, TimeoutError) as e:
            raise AvailabilityUnavailable("availability rules could not be loaded") from e

    async def excluded_windows(self, owner_id: str, window: TimeWindow) -> list[TimeWindow]:
        """Busy windows from the calendar plus active local reservations, merged."""
        try:
            busy = await call_with_retry(
                "calendar availability",
                lambda: self._calendar.list_busy_windows(self._calendar_id, window.start, window.end),
                policy=self._retry_policy,
                breaker=self._calendar_breaker,
                timeout=self._call_timeout,
            )
        except (GatewayUnavailable, CredentialUnavailable, TimeoutError) as e:
            self._logger.error(
                "Busy windows unavailable",
                extra={"owner_id": owner_id, "calendar_id": self._calendar_id, "error": str(e)},
            )
            raise AvailabilityUnavailable("calendar busy windows could not be fetched") from e

        try:
            async with asyncio.timeout(self._call_timeout):
                reservations = await self._reservations.list_active(owner_id, window.start, window.end)
        except (RepositoryError, TimeoutError) as e:
            self._logger.error("Reservations unavailable", extra={"owner_id": owner_id, "error": str(e)})
            raise AvailabilityUnavailable("existing reservations could not be loaded") from e

        return merge_windows([*busy, *(r.window for r in reservations)])

    async def find_conflicts(
        self,
        owner_id: str,
        window: TimeWindow,
        buffer_before: timedelta = timedelta(0),
        buffer_after: timedelta = timedelta(0),
    ) -> list[TimeWindow]:
        try:
            padded = window.expand(buffer_before, buffer_after)
        except OverflowError as e:
            raise InvalidInput("requested window is outside the supported dates") from e
        excluded = await self.excluded_windows(owner_id, padded)
        return [w for w in excluded if w.overlaps(padded)]


def _query_window(start: datetime, end: datetime) -> TimeWindow:
    try:
        return TimeWindow(start, end)
    except (ValueError, OverflowError) as e:
        raise InvalidInput(str(e) or "invalid range") from e
