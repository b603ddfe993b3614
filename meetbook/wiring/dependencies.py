from functools import lru_cache
import logging
import os
from datetime import timedelta
from zoneinfo import ZoneInfo

import httpx

from meetbook.core.config import Settings, settings
from meetbook.application.ports.availability_rules import AvailabilityRuleAdminRepository
from meetbook.application.ports.blacklist import BlacklistRepository
from meetbook.application.ports.calendar import CalendarPort
from meetbook.application.ports.mailer import MailerPort
from meetbook.application.ports.notifications import NotificationRepository
from meetbook.application.ports.reservations import ReservationRepository
from meetbook.application.ports.token_source import TokenSourcePort
from meetbook.application.reliability import CircuitBreaker, RetryPolicy
from meetbook.application.use_cases.availability import AvailabilityUseCase
from meetbook.application.use_cases.booking import BookingUseCase
from meetbook.infrastructure.calendar.google_calendar import GoogleCalendarGateway
from meetbook.infrastructure.calendar.mock_calendar import MockCalendar
from meetbook.infrastructure.google.token_sources import (
    EnvTokenSource,
    RefreshingTokenSource,
    SingleFlight,
    TokenSourceChain,
)
from meetbook.infrastructure.mail.gmail_mailer import GmailMailer
from meetbook.infrastructure.mail.mock_mailer import MockMailer
from meetbook.infrastructure.store.json_token_store import JsonTokenStore
from meetbook.infrastructure.store.memory_store import (
    MemoryAvailabilityRuleStore,
    MemoryBlacklistStore,
    MemoryNotificationStore,
    MemoryReservationStore,
)
from meetbook.infrastructure.store.resilient import (
    ResilientAvailabilityRuleStore,
    ResilientBlacklistStore,
    ResilientNotificationStore,
    ResilientReservationStore,
)
from meetbook.infrastructure.store.seed import default_rules
from meetbook.infrastructure.store.sqlite_store import (
    SqliteAvailabilityRuleStore,
    SqliteBlacklistStore,
    SqliteDatabase,
    SqliteNotificationStore,
    SqliteReservationStore,
)


logger = logging.getLogger(__name__)


@lru_cache
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.REQUEST_TIMEOUT_SECONDS))


@lru_cache
def get_database() -> SqliteDatabase | None:
    if not settings.DATABASE_PATH:
        return None
    return SqliteDatabase(settings.DATABASE_PATH, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)


def build_token_chain(config: Settings, http_client: httpx.AsyncClient) -> TokenSourceChain:
    guard = SingleFlight()
    sources: list[TokenSourcePort] = []
    for strategy in config.CREDENTIAL_STRATEGIES:
        name = strategy.strip().lower()
        if name == "refresh":
            if not (config.GOOGLE_OAUTH_CLIENT_ID and config.GOOGLE_OAUTH_CLIENT_SECRET):
                logger.info("Skipping refresh strategy, OAuth client is not configured", extra={"strategy": name})
                continue
            sources.append(
                RefreshingTokenSource(
                    store=JsonTokenStore(config.TOKEN_STORE_PATH),
                    client_id=config.GOOGLE_OAUTH_CLIENT_ID,
                    client_secret=config.GOOGLE_OAUTH_CLIENT_SECRET,
                    http_client=http_client,
                    token_url=config.GOOGLE_OAUTH_TOKEN_URL,
                    guard=guard,
                )
            )
        elif name == "env":
            sources.append(EnvTokenSource(config.GOOGLE_ACCESS_TOKEN_ENV))
        else:
            logger.warning("Unknown credential strategy ignored", extra={"strategy": strategy})
    return TokenSourceChain(sources)


def has_google_credentials(config: Settings) -> bool:
    if config.GOOGLE_OAUTH_CLIENT_ID and config.GOOGLE_OAUTH_CLIENT_SECRET:
        return True
    return bool(config.GOOGLE_ACCESS_TOKEN_ENV and os.environ.get(config.GOOGLE_ACCESS_TOKEN_ENV, "").strip())


def _use_mocks(config: Settings) -> bool:
    return config.ENV.lower() in {"dev", "local"} and not has_google_credentials(config)


@lru_cache
def get_token_chain() -> TokenSourceChain:
    # Shared by calendar and Gmail so one refresh serves both.
    return build_token_chain(settings, get_http_client())


@lru_cache
def get_calendar() -> CalendarPort:
    if _use_mocks(settings):
        logger.info("Using MockCalendar (no Google credentials, ENV=dev/local)")
        return MockCalendar()

    logger.info("Using GoogleCalendarGateway", extra={"calendar_id": settings.OWNER_CALENDAR_ID})
    return GoogleCalendarGateway(
        token_source=get_token_chain(),
        http_client=get_http_client(),
        timezone=settings.BUSINESS_TIMEZONE,
        base_url=settings.GOOGLE_CALENDAR_BASE_URL,
    )


@lru_cache
def get_mailer() -> MailerPort:
    if _use_mocks(settings):
        logger.info("Using MockMailer (no Google credentials, ENV=dev/local)")
        return MockMailer()

    return GmailMailer(
        token_source=get_token_chain(),
        http_client=get_http_client(),
        send_url=settings.GMAIL_SEND_URL,
    )


@lru_cache
def get_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.MAX_RETRIES,
        initial_backoff_seconds=settings.INITIAL_BACKOFF_SECONDS,
        backoff_multiplier=settings.BACKOFF_MULTIPLIER,
    )


@lru_cache
def get_calendar_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "calendar",
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        open_seconds=settings.CIRCUIT_OPEN_SECONDS,
    )


@lru_cache
def get_mail_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "mail",
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        open_seconds=settings.CIRCUIT_OPEN_SECONDS,
    )


@lru_cache
def get_rule_store() -> AvailabilityRuleAdminRepository:
    fallback = MemoryAvailabilityRuleStore(default_rules(settings))
    db = get_database()
    if db is None:
        return fallback
    return ResilientAvailabilityRuleStore(primary=SqliteAvailabilityRuleStore(db), fallback=fallback)


@lru_cache
def get_reservation_store() -> ReservationRepository:
    fallback = MemoryReservationStore()
    db = get_database()
    if db is None:
        return fallback
    return ResilientReservationStore(primary=SqliteReservationStore(db), fallback=fallback)


@lru_cache
def get_blacklist_store() -> BlacklistRepository:
    fallback = MemoryBlacklistStore()
    db = get_database()
    if db is None:
        return fallback
    return ResilientBlacklistStore(primary=SqliteBlacklistStore(db), fallback=fallback)


@lru_cache
def get_notification_store() -> NotificationRepository:
    fallback = MemoryNotificationStore()
    db = get_database()
    if db is None:
        return fallback
    return ResilientNotificationStore(primary=SqliteNotificationStore(db), fallback=fallback)


@lru_cache
def get_availability_use_case() -> AvailabilityUseCase:
    return AvailabilityUseCase(
        rules=get_rule_store(),
        reservations=get_reservation_store(),
        calendar=get_calendar(),
        calendar_id=settings.OWNER_CALENDAR_ID,
        timezone=ZoneInfo(settings.BUSINESS_TIMEZONE),
        horizon_days=settings.HORIZON_DAYS,
        max_range_days=settings.MAX_RANGE_DAYS,
        call_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        retry_policy=get_retry_policy(),
        calendar_breaker=get_calendar_breaker(),
    )


@lru_cache
def get_booking_use_case() -> BookingUseCase:
    return BookingUseCase(
        availability=get_availability_use_case(),
        reservations=get_reservation_store(),
        calendar=get_calendar(),
        calendar_id=settings.OWNER_CALENDAR_ID,
        minimum_lead=timedelta(minutes=settings.MINIMUM_LEAD_MINUTES),
        max_duration=timedelta(minutes=settings.MAX_DURATION_MINUTES),
        meet_template=settings.MEET_TEMPLATE,
        call_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        blacklist=get_blacklist_store(),
        notifications=get_notification_store(),
        mailer=get_mailer(),
        notification_sender=settings.NOTIFICATION_SENDER,
        notification_cc=settings.NOTIFICATION_RECEIVER,
        display_timezone=ZoneInfo(settings.BUSINESS_TIMEZONE),
        retry_policy=get_retry_policy(),
        calendar_breaker=get_calendar_breaker(),
        mail_breaker=get_mail_breaker(),
    )
