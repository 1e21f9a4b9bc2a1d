# sns_publisher/routers/connect_router.py
import uuid
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse

from sns_publisher.config import Settings, get_settings
from sns_publisher.dependencies.auth import get_current_owner
from sns_publisher.dependencies.services import get_now, get_oauth_broker
from sns_publisher.exceptions import NotFoundError, OAuthError
from sns_publisher.schemas.sns_schema import ConnectionRead
from sns_publisher.services.oauth_broker import OAuthBroker

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sns", tags=["connections"])


def _return_to(settings: Settings, **params) -> RedirectResponse:
    return RedirectResponse(f"{settings.redirect_base}?{urlencode(params)}", status_code=302)


@router.get("/connect/{platform}")
async def connect(
    platform: str,
    owner_id: uuid.UUID = Depends(get_current_owner),
    broker: OAuthBroker = Depends(get_oauth_broker),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    try:
        url = await broker.begin_authorization(owner_id, platform, now)
    except OAuthError as exc:
        logger.warning("oauth_connect_failed", platform=platform, error=str(exc))
        return _return_to(settings, error=str(exc))
    return RedirectResponse(url, status_code=302)


@router.get("/callback/{platform}")
async def callback(
    platform: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    owner_id: uuid.UUID = Depends(get_current_owner),
    broker: OAuthBroker = Depends(get_oauth_broker),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    if error:
        # the user declined on the platform's consent screen
        return _return_to(settings, error=error_description or error)
    if not code or not state:
        return _return_to(settings, error="missing authorization code or state")
    try:
        await broker.complete_authorization(owner_id, platform, code, state, now)
    except OAuthError as exc:
        logger.warning("oauth_callback_failed", platform=platform, error_type=exc.__class__.__name__)
        return _return_to(settings, error=str(exc))
    return _return_to(settings, connected=platform)


@router.get("/connections", response_model=List[ConnectionRead])
async def list_connections(
    owner_id: uuid.UUID = Depends(get_current_owner),
    broker: OAuthBroker = Depends(get_oauth_broker),
):
    return await broker.list_connections(owner_id)


@router.delete("/connections/{platform}", response_model=ConnectionRead)
async def revoke_connection(
    platform: str,
    owner_id: uuid.UUID = Depends(get_current_owner),
    broker: OAuthBroker = Depends(get_oauth_broker),
    now: datetime = Depends(get_now),
):
    try:
        return await broker.revoke(owner_id, platform, now)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
