# sns_publisher/dependencies/services.py
from datetime import datetime
from typing import Dict

import httpx
from fastapi import Depends, HTTPException, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.clock import utcnow
from sns_publisher.config import Settings, get_settings
from sns_publisher.dependencies.db import get_session_dep
from sns_publisher.infrastructure.vault import CredentialVault
from sns_publisher.platforms.base import Platform
from sns_publisher.platforms.registry import PLATFORMS
from sns_publisher.services.browser_accounts import BrowserAccountService
from sns_publisher.services.content_service import ContentService
from sns_publisher.services.job_queue import JobQueue
from sns_publisher.services.oauth_broker import OAuthBroker
from sns_publisher.services.orchestrator import PublishOrchestrator
from sns_publisher.services.schedule_engine import ScheduleEngine


def get_now() -> datetime:
    return utcnow()


def get_vault(request: Request) -> CredentialVault:
    vault = getattr(request.app.state, "vault", None)
    if vault is None:
        raise HTTPException(status_code=503, detail="credential vault is not configured")
    return vault


def get_http_client(request: Request) -> httpx.AsyncClient:
    client = getattr(request.app.state, "http_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="http client is not ready")
    return client


def get_platforms(request: Request) -> Dict[str, Platform]:
    return getattr(request.app.state, "platforms", None) or PLATFORMS


def get_oauth_broker(
    session: AsyncSession = Depends(get_session_dep),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    platforms: Dict[str, Platform] = Depends(get_platforms),
) -> OAuthBroker:
    return OAuthBroker(session, settings, client, platforms)


def get_content_service(session: AsyncSession = Depends(get_session_dep)) -> ContentService:
    return ContentService(session)


def get_schedule_engine(session: AsyncSession = Depends(get_session_dep)) -> ScheduleEngine:
    return ScheduleEngine(session)


def get_job_queue(
    request: Request,
    session: AsyncSession = Depends(get_session_dep),
    settings: Settings = Depends(get_settings),
) -> JobQueue:
    # owner and sweep paths work without the vault; lease checks for it
    vault = getattr(request.app.state, "vault", None)
    return JobQueue(session, vault=vault, lease_ttl_seconds=settings.job_lease_ttl_seconds)


def get_browser_accounts(
    session: AsyncSession = Depends(get_session_dep),
    vault: CredentialVault = Depends(get_vault),
) -> BrowserAccountService:
    return BrowserAccountService(session, vault)


def get_orchestrator(
    session: AsyncSession = Depends(get_session_dep),
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    platforms: Dict[str, Platform] = Depends(get_platforms),
    job_queue: JobQueue = Depends(get_job_queue),
) -> PublishOrchestrator:
    return PublishOrchestrator(session, settings, client, job_queue, platforms)
