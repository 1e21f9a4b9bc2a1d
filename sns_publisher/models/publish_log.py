# sns_publisher/models/publish_log.py
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from sns_publisher.clock import utcnow


class PublishLog(SQLModel, table=True):
    """Append-only audit row; never updated."""

    __tablename__ = "publish_logs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    platform: str
    status: str  # success | failed
    schedule_id: Optional[uuid.UUID] = Field(default=None, index=True)
    job_id: Optional[uuid.UUID] = Field(default=None, index=True)
    template_id: Optional[uuid.UUID] = None
    external_post_id: Optional[str] = None
    error: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow, index=True)
