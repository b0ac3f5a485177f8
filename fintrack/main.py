import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from the project root .env (tests configure env explicitly)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from fintrack.api import admin, auth, billing, health
from fintrack.core.config import settings, validate_config
from fintrack.core.database import create_all_tables
from fintrack.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from fintrack.core.logging import configure_logging
from fintrack.core.middleware.request_id import RequestIdMiddleware
from fintrack.core.rate_limit import RateLimitMiddleware, build_rate_limit_config
from fintrack.core.validation import validate_env
from fintrack.features.session.registry import session_registry

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("fintrack")
    logger.info("Starting fintrack backend...")
    create_all_tables()
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        # Stop every session's poll task before the loop goes away
        await session_registry.close_all()
        logger.info("Stopping fintrack backend...")


app = FastAPI(title="fintrack - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RateLimitMiddleware, limits=build_rate_limit_config())
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(billing.router)
app.include_router(health.router)
app.include_router(health.root_router)
