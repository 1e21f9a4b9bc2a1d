# sns_publisher/models/connection.py
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from sns_publisher.clock import utcnow


class Connection(SQLModel, table=True):
    __tablename__ = "sns_connections"
    __table_args__ = (UniqueConstraint("owner_id", "platform", name="uq_connection_owner_platform"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    platform: str = Field(index=True)
    # bearer tokens stay plaintext: platform APIs need them in transit
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    platform_account_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
