import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI

from meetbook.api.v1.bookings import router as bookings_router
from meetbook.core.config import settings
from meetbook.wiring.dependencies import get_database, get_http_client


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        extras = []
        for key in (
            "owner_id",
            "reservation_id",
            "calendar_id",
            "event_id",
            "strategy",
            "entity",
            "operation",
            "reason",
            "kind",
            "attempt",
            "failures",
            "error",
        ):
            value = getattr(record, key, None)
            if value not in (None, ""):
                extras.append(f"{key}={value}")
        base = super().format(record)
        if extras:
            return f"{base} | " + " ".join(extras)
        return base


handler = logging.StreamHandler()
handler.setFormatter(ContextFormatter("%(levelname)s:%(name)s:%(message)s"))

root = logging.getLogger()
root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
root.handlers.clear()
root.addHandler(handler)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_database()
    if db is not None:
        try:
            await db.initialize()
        except (sqlite3.Error, OSError) as e:
            # Requests still degrade to the in-memory stores per call.
            logger.warning("SQLite store could not be initialized", extra={"error": str(e)})
    yield
    if get_http_client.cache_info().currsize:
        await get_http_client().aclose()


app = FastAPI(title="Meetbook", version="1.0.0", lifespan=lifespan)

app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
