"""Attendance Streaks - FastAPI entrypoint."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ServerSelectionTimeoutError

from attendance_streaks.config import settings
from attendance_streaks.db import db_shutdown, db_startup
from attendance_streaks.log import configure_logging
from attendance_streaks.api import notifications, streaks
from attendance_streaks.api.deps import get_notifier, get_store
from attendance_streaks.services.maintenance import run_daily_maintenance

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_format)
    try:
        await db_startup()
    except ServerSelectionTimeoutError as e:
        logger.error(
            "MongoDB is not running. Start it with: docker compose up -d (from project root)"
        )
        raise RuntimeError(
            "MongoDB connection failed. Start MongoDB (e.g. docker compose up -d)."
        ) from e

    startup_run = None
    if settings.run_maintenance_on_startup:
        # Background work: the app serves requests while it runs
        startup_run = asyncio.create_task(
            run_daily_maintenance(get_store(), "startup", notifier=get_notifier())
        )
    yield
    if startup_run and not startup_run.done():
        await startup_run
    await db_shutdown()


app = FastAPI(
    title=settings.app_name,
    description="Absence streak accrual and consecutive-absence alerts over MongoDB attendance records",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(streaks.router, prefix="/api/streaks", tags=["Streaks"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.app_name}
