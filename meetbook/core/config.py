from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    OWNER_ID: str = "owner"
    OWNER_CALENDAR_ID: str = "primary"
    BUSINESS_TIMEZONE: str = "Asia/Tokyo"

    SLOT_DURATION_MINUTES: int = 30
    WORKDAY_START_HOUR: int = 9
    WORKDAY_END_HOUR: int = 18
    BUFFER_MINUTES: int = 0
    HORIZON_DAYS: int = 14
    MINIMUM_LEAD_MINUTES: int = 15
    MAX_DURATION_MINUTES: int = 240
    MAX_RANGE_DAYS: int = 62
    REQUEST_TIMEOUT_SECONDS: float = 8.0
    MEET_TEMPLATE: str = ""

    # Caller-side retry and circuit breaker around calendar and mail calls.
    MAX_RETRIES: int = 3
    INITIAL_BACKOFF_SECONDS: float = 0.75
    BACKOFF_MULTIPLIER: float = 2.0
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_OPEN_SECONDS: float = 60.0

    NOTIFICATION_SENDER: str = ""
    NOTIFICATION_RECEIVER: str = ""  # cc'd on every notification
    GMAIL_SEND_URL: str = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

    DATABASE_PATH: str | None = None  # unset -> in-memory stores only
    TOKEN_STORE_PATH: str = "./data/tokens.json"

    GOOGLE_OAUTH_CLIENT_ID: str | None = None
    GOOGLE_OAUTH_CLIENT_SECRET: str | None = None
    GOOGLE_OAUTH_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"
    GOOGLE_ACCESS_TOKEN_ENV: str = "GOOGLE_ACCESS_TOKEN"

    # Evaluated in order; unknown names are ignored.
    CREDENTIAL_STRATEGIES: list[str] = ["refresh", "env"]

    @field_validator("WORKDAY_END_HOUR")
    @classmethod
    def _end_after_start(cls, value: int, info: ValidationInfo) -> int:
        start = info.data.get("WORKDAY_START_HOUR", 0)
        if value <= start:
            raise ValueError("WORKDAY_END_HOUR must be after WORKDAY_START_HOUR")
        if value > 23:
            raise ValueError("WORKDAY_END_HOUR must be at most 23")
        return value

    @field_validator("BUSINESS_TIMEZONE")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown BUSINESS_TIMEZONE {value!r}") from e
        return value


settings = Settings()
