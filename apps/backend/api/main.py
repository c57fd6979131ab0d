"""
Curling Spares API Server

FastAPI server for spare requests and their staggered member notifications.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from backend.api.routes import router, limiter as routes_limiter
from backend.database import db
from backend.database.init_defaults import init_defaults
from backend.services import data_service, settings_service
from backend.services.notification_dispatcher import get_notification_dispatcher
from backend.services.task_supervisor import get_task_supervisor
from backend.utils.clock import get_clock
from backend.utils.constants import TIME_OVERRIDE_SETTING_KEY
from backend.utils.datetime_utils import parse_iso_datetime

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
# Note: Database setting will be checked after database initialization
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Set ENABLE_DISPATCHER=false to run API-only instances
ENABLE_DISPATCHER = settings_service.get_bool_env("ENABLE_DISPATCHER", default=True)


async def load_runtime_settings() -> None:
    """Apply log level and time override stored in the settings table."""
    async with db.AsyncSessionLocal() as session:
        log_level_setting = await data_service.get_setting(session, "log_level")
        if log_level_setting:
            log_level_name = log_level_setting.upper()
            logging.getLogger().setLevel(getattr(logging, log_level_name, logging.INFO))
            logger.info(f"Log level set from database: {log_level_name}")
        else:
            logger.info(f"Log level set from environment: {log_level}")

        override = await data_service.get_setting(session, TIME_OVERRIDE_SETTING_KEY)
        if override:
            try:
                get_clock().set_override(parse_iso_datetime(override))
            except ValueError:
                logger.warning(f"Ignoring invalid {TIME_OVERRIDE_SETTING_KEY} setting: {override!r}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up Curling Spares API...")

    # Initialize database (create tables if they don't exist)
    # This is a fallback for tables that might not be in migrations yet
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Initialize default values (settings, etc.)
    try:
        await init_defaults()
        logger.info("✓ Default values initialized")
    except Exception as e:
        logger.error(f"Failed to initialize defaults: {e}", exc_info=True)

    try:
        await load_runtime_settings()
    except Exception as e:
        logger.warning(f"Could not load runtime settings from database: {e}")

    # Start notification dispatcher
    if ENABLE_DISPATCHER:
        try:
            get_notification_dispatcher().start()
            logger.info("✓ Notification dispatcher started")
        except Exception as e:
            logger.error(f"Failed to start notification dispatcher: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down Curling Spares API...")

    try:
        get_notification_dispatcher().stop()
        logger.info("✓ Notification dispatcher stopped")
    except Exception as e:
        logger.error(f"Error stopping notification dispatcher: {e}", exc_info=True)

    # Let lifecycle notices finish
    try:
        await get_task_supervisor().shutdown()
        logger.info("✓ Background tasks drained")
    except Exception as e:
        logger.error(f"Error draining background tasks: {e}", exc_info=True)

    # Close Redis connection
    try:
        await settings_service.close_redis_connection()
        logger.info("✓ Redis connection closed")
    except Exception as e:
        logger.error(f"Error closing Redis connection: {e}", exc_info=True)

    try:
        await db.dispose_database()
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}", exc_info=True)


app = FastAPI(
    title="Curling Spares API",
    description="API for requesting spares and notifying available league members",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware; origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health():
    """Health check with dispatcher state."""
    return {"status": "ok", "dispatcher_running": get_notification_dispatcher().running}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
