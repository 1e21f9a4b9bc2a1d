# sns_publisher/schemas/sns_schema.py
import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sns_publisher.clock import to_utc


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return to_utc(value) if value is not None else None


# --- connections ---
class ConnectionRead(ORMModel):
    id: uuid.UUID
    platform: str
    platform_account_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    active: bool
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# --- templates ---
class TemplateComment(BaseModel):
    platform: str
    text: str = Field(min_length=1)


class TemplateCreate(BaseModel):
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    media_urls: List[str] = []
    target_platforms: List[str] = []
    comments: List[TemplateComment] = []


class TemplateRead(ORMModel):
    id: uuid.UUID
    title: str
    body: str
    media_urls: List[str]
    target_platforms: List[str]
    comments: List[dict]
    created_at: datetime


# --- schedules ---
class ScheduleCreate(BaseModel):
    template_id: uuid.UUID
    platforms: List[str] = Field(min_length=1)
    recurrence_unit: Literal["hours", "days"]
    recurrence_interval: int = Field(gt=0)
    start_at: datetime
    end_at: Optional[datetime] = None

    @field_validator("start_at", "end_at")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)


class ScheduleRead(ORMModel):
    id: uuid.UUID
    template_id: uuid.UUID
    platforms: List[str]
    recurrence_unit: str
    recurrence_interval: int
    start_at: datetime
    end_at: Optional[datetime] = None
    next_run_at: datetime
    active: bool
    run_count: int
    created_at: datetime


# --- post now / logs ---
class PostNowRequest(BaseModel):
    template_id: uuid.UUID
    platforms: Optional[List[str]] = None


class PostNowResult(BaseModel):
    platform: str
    success: bool
    external_post_id: Optional[str] = None
    comment_error: Optional[str] = None
    error: Optional[str] = None


class PostNowResponse(BaseModel):
    results: List[PostNowResult]


class PublishLogRead(ORMModel):
    id: uuid.UUID
    platform: str
    status: str
    schedule_id: Optional[uuid.UUID] = None
    job_id: Optional[uuid.UUID] = None
    template_id: Optional[uuid.UUID] = None
    external_post_id: Optional[str] = None
    error: Optional[str] = None
    occurred_at: datetime


# --- jobs ---
class JobCreate(BaseModel):
    platform: str
    content: str = Field(min_length=1)
    title: Optional[str] = None
    account_id: Optional[uuid.UUID] = None
    category_no: int = Field(default=0, ge=0)
    media_urls: List[str] = []
    tags: List[str] = []
    followup_comment: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    queue: bool = False

    @field_validator("scheduled_at")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)


class JobUpdate(BaseModel):
    """Only the fields present in the request body are changed."""

    title: Optional[str] = None
    content: Optional[str] = Field(default=None, min_length=1)
    category_no: Optional[int] = Field(default=None, ge=0)
    account_id: Optional[uuid.UUID] = None
    media_urls: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    followup_comment: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    @field_validator("scheduled_at")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)

    @field_validator("content", "category_no")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


class JobRead(ORMModel):
    id: uuid.UUID
    platform: str
    account_id: Optional[uuid.UUID] = None
    title: Optional[str] = None
    content: str
    category_no: int
    media_urls: List[str]
    tags: List[str]
    followup_comment: Optional[str] = None
    status: str
    retry_count: int
    scheduled_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    external_post_id: Optional[str] = None
    error: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class JobReport(BaseModel):
    job_id: uuid.UUID
    lease_id: Optional[str] = None
    success: bool
    external_post_id: Optional[str] = None
    error: Optional[str] = None


# --- browser accounts ---
class BrowserAccountCreate(BaseModel):
    platform: str = "naver_blog"
    login_id: str = Field(min_length=1)
    password: str = Field(min_length=1)
    blog_id: Optional[str] = None
    display_name: Optional[str] = None


class BrowserAccountUpdate(BaseModel):
    password: Optional[str] = None
    blog_id: Optional[str] = None
    display_name: Optional[str] = None
    active: Optional[bool] = None


class BrowserAccountRead(ORMModel):
    id: uuid.UUID
    platform: str
    login_id: str
    blog_id: Optional[str] = None
    display_name: Optional[str] = None
    active: bool
    created_at: datetime
    updated_at: datetime
