# sns_publisher/services/content_service.py
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.exceptions import NotFoundError
from sns_publisher.infrastructure.content_repo import PublishLogRepository, SchedulesRepository, TemplatesRepository
from sns_publisher.models.content import ContentTemplate
from sns_publisher.models.publish_log import PublishLog
from sns_publisher.platforms.registry import API_PLATFORMS

logger = structlog.get_logger(__name__)

RECENT_LOG_LIMIT = 50


class ContentService:
    """Templates are write-once; changing content means creating a new template."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.templates = TemplatesRepository(session)
        self.schedules = SchedulesRepository(session)
        self.logs = PublishLogRepository(session)

    async def create_template(
        self,
        owner_id: uuid.UUID,
        title: str,
        body: str,
        media_urls: List[str],
        target_platforms: List[str],
        comments: Optional[List[dict]],
        now: datetime,
    ) -> ContentTemplate:
        unknown = sorted(set(target_platforms) - API_PLATFORMS)
        unknown += sorted({c.get("platform") for c in comments or []} - API_PLATFORMS - set(unknown))
        if unknown:
            raise ValueError(f"unsupported platforms: {', '.join(str(p) for p in unknown)}")

        template = ContentTemplate(
            owner_id=owner_id,
            title=title,
            body=body,
            media_urls=list(media_urls),
            target_platforms=list(dict.fromkeys(target_platforms)),
            comments=[{"platform": c["platform"], "text": c["text"]} for c in comments or []],
            created_at=now,
        )
        template = await self.templates.create(template)
        logger.info("template_created", template_id=str(template.id), owner_id=str(owner_id))
        return template

    async def get_template(self, owner_id: uuid.UUID, template_id: uuid.UUID) -> ContentTemplate:
        template = await self.templates.get_owned(template_id, owner_id)
        if template is None:
            raise NotFoundError("template not found")
        return template

    async def list_templates(self, owner_id: uuid.UUID) -> List[ContentTemplate]:
        return await self.templates.list_by_owner(owner_id)

    async def delete_template(self, owner_id: uuid.UUID, template_id: uuid.UUID) -> None:
        template = await self.get_template(owner_id, template_id)
        # schedules cannot outlive the content they publish
        removed = await self.schedules.delete_for_template(template.id)
        await self.templates.delete(template)
        logger.info("template_deleted", template_id=str(template_id), schedules_removed=removed)

    async def recent_logs(self, owner_id: uuid.UUID, limit: int = RECENT_LOG_LIMIT) -> List[PublishLog]:
        return await self.logs.list_recent(owner_id, limit=limit)
