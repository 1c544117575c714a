import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from the working directory .env (skipped under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from meterchat.core.config import settings, validate_config, cors_origins
from meterchat.core.database import create_all_tables, get_database_url
from meterchat.core.logging import configure_logging
from meterchat.core.middleware.request_id import RequestIdMiddleware
from meterchat.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from meterchat.api import auth, billing, chat, health

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("meterchat")
    logger.info("Starting meterchat backend...")
    if get_database_url():
        create_all_tables()
    else:
        logger.warning("DATABASE_URL not set; skipping table creation")
    try:
        yield
    finally:
        logger.info("Stopping meterchat backend...")


app = FastAPI(title="meterchat", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(health.router, tags=["health"])
