# sns_publisher/main.py
import os
from contextlib import asynccontextmanager

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from sns_publisher.config import get_settings
from sns_publisher.infrastructure.database import configure_engine, dispose_engine, init_db
from sns_publisher.infrastructure.vault import CredentialVault
from sns_publisher.logging_config import configure_structlog
from sns_publisher.middleware.logging import RequestIdMiddleware
from sns_publisher.platforms.registry import build_platforms
from sns_publisher.routers.connect_router import router as connect_router
from sns_publisher.routers.content_router import router as content_router
from sns_publisher.routers.cron_router import router as cron_router
from sns_publisher.routers.jobs_router import router as jobs_router

configure_structlog()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    # ConfigurationError here stops the process
    settings.validate()
    app.state.vault = CredentialVault.from_hex(settings.credential_key)
    if not settings.cron_secret:
        logger.warning("cron_secret_missing", effect="cron endpoints reject all requests")
    if not settings.worker_secret:
        logger.warning("worker_secret_missing", effect="worker endpoints reject all requests")
    if not settings.session_secret:
        logger.warning("session_secret_missing", effect="owner endpoints reject all requests")

    configure_engine(settings.database_url)
    await init_db()
    app.state.http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.platforms = build_platforms()
    logger.info("app_startup")
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        await dispose_engine()
        logger.info("app_shutdown")


def create_app() -> FastAPI:
    app = FastAPI(title="SNS Publisher", lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)
    app.include_router(connect_router)
    app.include_router(content_router)
    app.include_router(jobs_router)
    app.include_router(cron_router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("sns_publisher.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
