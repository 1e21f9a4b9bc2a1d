# sns_publisher/models/content.py
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from sns_publisher.clock import utcnow

RECURRENCE_UNITS = ("hours", "days")


class ContentTemplate(SQLModel, table=True):
    """Immutable post payload shared by schedules and post-now."""

    __tablename__ = "sns_post_templates"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    title: str
    body: str
    media_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    target_platforms: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    # [{"platform": "threads", "text": "..."}]
    comments: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)

    def comment_for(self, platform: str) -> Optional[str]:
        for comment in self.comments or []:
            if comment.get("platform") == platform and comment.get("text"):
                return comment["text"]
        return None


class Schedule(SQLModel, table=True):
    __tablename__ = "sns_schedules"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    template_id: uuid.UUID = Field(foreign_key="sns_post_templates.id", index=True)
    platforms: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    recurrence_unit: str  # hours | days
    recurrence_interval: int
    start_at: datetime
    end_at: Optional[datetime] = None
    next_run_at: datetime = Field(index=True)
    active: bool = Field(default=True, index=True)
    run_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
