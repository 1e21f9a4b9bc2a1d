# sns_publisher/dependencies/auth.py
import secrets
import uuid
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from sns_publisher.config import Settings, get_settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

SESSION_COOKIE = "access_token"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_session_token(token: str, settings: Settings) -> uuid.UUID:
    if not settings.session_secret:
        raise _unauthorized("session verification is not configured")
    try:
        payload = jwt.decode(token, settings.session_secret, algorithms=[settings.session_algorithm])
    except JWTError as exc:
        logger.warning("session_token_invalid", error=str(exc))
        raise _unauthorized("invalid token")
    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("invalid token subject")


async def get_current_owner(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID:
    """Owner id from the session JWT, taken from the bearer header or the session cookie."""
    token = credentials.credentials if credentials else request.cookies.get(SESSION_COOKIE)
    if not token:
        raise _unauthorized("not authenticated")
    owner_id = decode_session_token(token, settings)
    structlog.contextvars.bind_contextvars(owner_id=str(owner_id))
    return owner_id


def _check_shared_secret(credentials: Optional[HTTPAuthorizationCredentials], expected: Optional[str], name: str) -> None:
    # unset secret rejects everything
    if not expected:
        logger.warning("shared_secret_not_configured", secret=name)
        raise _unauthorized("unauthorized")
    supplied = credentials.credentials if credentials else ""
    if not secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("shared_secret_rejected", secret=name)
        raise _unauthorized("unauthorized")


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    _check_shared_secret(credentials, settings.cron_secret, "CRON_SECRET")


async def require_worker_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    _check_shared_secret(credentials, settings.worker_secret, "WORKER_SECRET")
