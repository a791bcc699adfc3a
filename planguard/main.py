import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the working directory before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from planguard.core.config import settings, validate_config
from planguard.core.database import create_all_tables
from planguard.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_error_handler,
    unhandled_exception_handler,
)
from planguard.core.logging import configure_logging
from planguard.core.middleware.request_id import RequestIdMiddleware
from planguard.api import admin, health, subscription


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("planguard")
    logger.info("Starting planguard...")
    app.state.startup_time = time.time()
    if settings.AUTO_CREATE_TABLES:
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping planguard...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="planguard", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscription.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")
    app.include_router(health.router)
    app.include_router(health.root_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("planguard.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
