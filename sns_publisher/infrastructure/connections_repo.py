# sns_publisher/infrastructure/connections_repo.py
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.models.connection import Connection
from sns_publisher.models.oauth_state import OAuthState


class ConnectionsRepository:
    """
    Repository for Connection rows.
    All methods are async and expect an AsyncSession to be injected from the outside.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_owner_and_platform(self, owner_id: uuid.UUID, platform: str) -> Optional[Connection]:
        q = select(Connection).where(
            Connection.owner_id == owner_id,
            Connection.platform == platform,
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_active(self, owner_id: uuid.UUID, platform: str) -> Optional[Connection]:
        cp = await self.get_by_owner_and_platform(owner_id, platform)
        if cp is None or not cp.active:
            return None
        return cp

    async def list_by_owner(self, owner_id: uuid.UUID) -> List[Connection]:
        q = select(Connection).where(Connection.owner_id == owner_id).order_by(Connection.platform)
        res = await self.session.execute(q)
        return list(res.scalars().all())

    def _apply(self, cp: Connection, values: dict, now: datetime) -> None:
        for key, value in values.items():
            setattr(cp, key, value)
        cp.active = True
        cp.updated_at = now

    async def upsert(self, owner_id: uuid.UUID, platform: str, values: dict, now: datetime) -> Connection:
        """
        Insert or fully replace the (owner, platform) connection in one commit.
        A concurrent insert for the same pair falls back to updating the winner's row.
        """
        existing = await self.get_by_owner_and_platform(owner_id, platform)
        if existing is not None:
            self._apply(existing, values, now)
            cp = existing
        else:
            cp = Connection(owner_id=owner_id, platform=platform, created_at=now, **values)
            cp.updated_at = now
        self.session.add(cp)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self.get_by_owner_and_platform(owner_id, platform)
            if existing is None:
                raise
            self._apply(existing, values, now)
            cp = existing
            self.session.add(cp)
            await self.session.commit()
        await self.session.refresh(cp)
        return cp

    async def update_tokens(
        self,
        cp: Connection,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        now: datetime,
    ) -> Connection:
        cp.access_token = access_token
        if refresh_token:
            cp.refresh_token = refresh_token
        cp.expires_at = expires_at
        cp.updated_at = now
        self.session.add(cp)
        await self.session.commit()
        await self.session.refresh(cp)
        return cp

    async def deactivate(self, cp: Connection, now: datetime) -> Connection:
        cp.active = False
        cp.updated_at = now
        self.session.add(cp)
        await self.session.commit()
        await self.session.refresh(cp)
        return cp


class OAuthStateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, state: OAuthState) -> OAuthState:
        self.session.add(state)
        await self.session.commit()
        await self.session.refresh(state)
        return state

    async def find(self, state_nonce: str, platform: str, owner_id: uuid.UUID) -> Optional[OAuthState]:
        q = select(OAuthState).where(
            OAuthState.state_nonce == state_nonce,
            OAuthState.platform == platform,
            OAuthState.owner_id == owner_id,
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def consume(self, state: OAuthState) -> bool:
        """Delete the row; False if another request consumed it first."""
        res = await self.session.execute(delete(OAuthState).where(OAuthState.id == state.id))
        await self.session.commit()
        return res.rowcount == 1

    async def purge_expired(self, before: datetime) -> int:
        res = await self.session.execute(delete(OAuthState).where(OAuthState.expires_at < before))
        await self.session.commit()
        return res.rowcount or 0
