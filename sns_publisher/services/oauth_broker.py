# sns_publisher/services/oauth_broker.py
import base64
import hashlib
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import httpx
import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.config import Settings
from sns_publisher.exceptions import (
    AuthExpired,
    NotFoundError,
    PlatformNotConfigured,
    StateExpired,
    StateMismatch,
)
from sns_publisher.infrastructure.connections_repo import ConnectionsRepository, OAuthStateRepository
from sns_publisher.models.connection import Connection
from sns_publisher.models.oauth_state import OAuthState
from sns_publisher.platforms.base import Platform, TokenSet
from sns_publisher.platforms.registry import PLATFORMS

logger = structlog.get_logger(__name__)


def generate_state() -> str:
    # 32 random bytes = 256 bits
    return secrets.token_urlsafe(32)


def generate_pkce_verifier() -> str:
    return secrets.token_urlsafe(48)


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthBroker:
    """
    Authorization-code flow for the API platforms.

    State rows are single-use: `complete_authorization` deletes the row before
    doing anything else, so a replayed callback always finds nothing. A
    Connection is written only after both the token exchange and the profile
    lookup succeed.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        client: httpx.AsyncClient,
        platforms: Optional[Dict[str, Platform]] = None,
    ):
        self.session = session
        self.settings = settings
        self.client = client
        self.platforms = PLATFORMS if platforms is None else platforms
        self.states = OAuthStateRepository(session)
        self.connections = ConnectionsRepository(session)

    def _platform(self, platform: str) -> Platform:
        adapter = self.platforms.get(platform)
        if adapter is None:
            raise PlatformNotConfigured(f"unsupported platform: {platform}")
        return adapter

    def _credentials(self, platform: str) -> Tuple[str, str]:
        client_id, client_secret = self.settings.client_credentials(platform)
        if not client_id or not client_secret:
            raise PlatformNotConfigured(f"{platform} OAuth credentials are not configured")
        return client_id, client_secret

    async def begin_authorization(self, owner_id: uuid.UUID, platform: str, now: datetime) -> str:
        adapter = self._platform(platform)
        client_id, _ = self._credentials(platform)

        verifier = challenge = None
        if adapter.config.uses_pkce:
            verifier = generate_pkce_verifier()
            challenge = pkce_challenge(verifier)

        state = OAuthState(
            owner_id=owner_id,
            platform=platform,
            state_nonce=generate_state(),
            pkce_verifier=verifier,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.oauth_state_ttl_seconds),
        )
        state = await self.states.create(state)
        logger.info("oauth_authorization_started", owner_id=str(owner_id), platform=platform)
        return adapter.authorization_url(client_id, self.settings.callback_uri(platform), state.state_nonce, challenge)

    async def complete_authorization(
        self,
        owner_id: uuid.UUID,
        platform: str,
        code: str,
        state_nonce: str,
        now: datetime,
    ) -> Connection:
        adapter = self._platform(platform)

        state = await self.states.find(state_nonce, platform, owner_id)
        if state is None:
            logger.warning("oauth_state_mismatch", owner_id=str(owner_id), platform=platform)
            raise StateMismatch("authorization state is unknown or already used")
        verifier, expires_at = state.pkce_verifier, state.expires_at
        if not await self.states.consume(state):
            # lost the race against a concurrent callback with the same state
            raise StateMismatch("authorization state is unknown or already used")
        if expires_at <= now:
            logger.warning("oauth_state_expired", owner_id=str(owner_id), platform=platform)
            raise StateExpired("authorization took too long; start again")

        client_id, client_secret = self._credentials(platform)
        tokens = await adapter.exchange_code(
            self.client,
            client_id,
            client_secret,
            self.settings.callback_uri(platform),
            code,
            verifier,
        )
        profile = await adapter.fetch_profile(self.client, tokens)

        connection = await self.connections.upsert(
            owner_id,
            platform,
            {
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": tokens.expires_at(now),
                "platform_account_id": profile.account_id,
                "username": profile.username,
                "display_name": profile.display_name,
                "avatar_url": profile.avatar_url,
            },
            now,
        )
        logger.info(
            "oauth_connection_saved",
            owner_id=str(owner_id),
            platform=platform,
            connection_id=str(connection.id),
        )
        return connection

    async def refresh_tokens(self, connection: Connection) -> TokenSet:
        """Network half of a refresh; raises AuthExpired when a reconnect is needed."""
        adapter = self._platform(connection.platform)
        client_id, client_secret = self.settings.client_credentials(connection.platform)
        if not client_id or not client_secret:
            raise AuthExpired(f"{connection.platform} OAuth credentials are not configured", platform=connection.platform)
        return await adapter.refresh(self.client, client_id, client_secret, connection.refresh_token)

    async def store_refreshed(self, connection: Connection, tokens: TokenSet, now: datetime) -> Connection:
        connection = await self.connections.update_tokens(
            connection,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at(now),
            now,
        )
        logger.info("oauth_token_refreshed", connection_id=str(connection.id), platform=connection.platform)
        return connection

    async def refresh_connection(self, connection: Connection, now: datetime) -> Connection:
        tokens = await self.refresh_tokens(connection)
        return await self.store_refreshed(connection, tokens, now)

    async def list_connections(self, owner_id: uuid.UUID):
        return await self.connections.list_by_owner(owner_id)

    async def revoke(self, owner_id: uuid.UUID, platform: str, now: datetime) -> Connection:
        connection = await self.connections.get_by_owner_and_platform(owner_id, platform)
        if connection is None:
            raise NotFoundError(f"no {platform} connection")
        connection = await self.connections.deactivate(connection, now)
        logger.info("oauth_connection_revoked", owner_id=str(owner_id), platform=platform)
        return connection

    async def purge_expired_states(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.settings.oauth_state_retention_seconds)
        purged = await self.states.purge_expired(cutoff)
        if purged:
            logger.info("oauth_states_purged", count=purged)
        return purged
