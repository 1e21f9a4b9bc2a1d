# sns_publisher/models/job.py
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from sns_publisher.clock import utcnow


class JobStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    LEASED = "leased"
    PUBLISHED = "published"
    FAILED = "failed"


class BrowserAccount(SQLModel, table=True):
    """Login for a platform with no public API; the password only exists encrypted."""

    __tablename__ = "browser_accounts"
    __table_args__ = (UniqueConstraint("owner_id", "platform", "login_id", name="uq_browser_account_login"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    platform: str = Field(default="naver_blog")
    login_id: str
    password_enc: str
    blog_id: Optional[str] = None
    display_name: Optional[str] = None
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PublishJob(SQLModel, table=True):
    __tablename__ = "publish_jobs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    platform: str = Field(index=True)
    account_id: Optional[uuid.UUID] = Field(default=None, foreign_key="browser_accounts.id")
    title: Optional[str] = None
    content: str
    # Naver blog category; 0 is the blog default
    category_no: int = Field(default=0)
    media_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    followup_comment: Optional[str] = None
    status: str = Field(default=JobStatus.DRAFT.value, index=True)
    retry_count: int = Field(default=0)
    scheduled_at: Optional[datetime] = Field(default=None, index=True)
    lease_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    external_post_id: Optional[str] = None
    error: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
