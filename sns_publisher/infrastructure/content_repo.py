# sns_publisher/infrastructure/content_repo.py
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, or_, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.models.content import ContentTemplate, Schedule
from sns_publisher.models.publish_log import PublishLog


class TemplatesRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, template: ContentTemplate) -> ContentTemplate:
        self.session.add(template)
        await self.session.commit()
        await self.session.refresh(template)
        return template

    async def get_owned(self, template_id: uuid.UUID, owner_id: uuid.UUID) -> Optional[ContentTemplate]:
        q = select(ContentTemplate).where(
            ContentTemplate.id == template_id,
            ContentTemplate.owner_id == owner_id,
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_many(self, template_ids: Iterable[uuid.UUID]) -> dict:
        ids = list(set(template_ids))
        if not ids:
            return {}
        res = await self.session.execute(select(ContentTemplate).where(ContentTemplate.id.in_(ids)))
        return {t.id: t for t in res.scalars().all()}

    async def list_by_owner(self, owner_id: uuid.UUID) -> List[ContentTemplate]:
        q = (
            select(ContentTemplate)
            .where(ContentTemplate.owner_id == owner_id)
            .order_by(ContentTemplate.created_at.desc())
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def delete(self, template: ContentTemplate) -> None:
        await self.session.delete(template)
        await self.session.commit()


class SchedulesRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, schedule: Schedule) -> Schedule:
        self.session.add(schedule)
        await self.session.commit()
        await self.session.refresh(schedule)
        return schedule

    async def get_owned(self, schedule_id: uuid.UUID, owner_id: uuid.UUID) -> Optional[Schedule]:
        q = select(Schedule).where(Schedule.id == schedule_id, Schedule.owner_id == owner_id)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list_by_owner(self, owner_id: uuid.UUID) -> List[Schedule]:
        q = select(Schedule).where(Schedule.owner_id == owner_id).order_by(Schedule.created_at.desc())
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def list_due(self, now: datetime) -> List[Schedule]:
        q = select(Schedule).where(
            Schedule.active == True,  # noqa: E712
            Schedule.next_run_at <= now,
            or_(Schedule.end_at == None, Schedule.end_at >= now),  # noqa: E711
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def apply_advance(
        self,
        schedule: Schedule,
        next_run_at: datetime,
        deactivate: bool,
        now: datetime,
    ) -> bool:
        """
        Conditional on next_run_at still holding the value this run was based on,
        so a concurrent sweep cannot advance the same run twice. Never re-activates.
        """
        values = {
            "next_run_at": next_run_at,
            "run_count": Schedule.run_count + 1,
            "updated_at": now,
        }
        if deactivate:
            values["active"] = False
        stmt = (
            update(Schedule)
            .where(Schedule.id == schedule.id, Schedule.next_run_at == schedule.next_run_at)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        await self.session.commit()
        if res.rowcount == 1:
            await self.session.refresh(schedule)
            return True
        return False

    async def delete_for_template(self, template_id: uuid.UUID) -> int:
        res = await self.session.execute(
            delete(Schedule)
            .where(Schedule.template_id == template_id)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    async def deactivate(self, schedule: Schedule, now: datetime) -> Schedule:
        schedule.active = False
        schedule.updated_at = now
        self.session.add(schedule)
        await self.session.commit()
        await self.session.refresh(schedule)
        return schedule


class PublishLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def add(self, entry: PublishLog) -> None:
        """Stage a row; the caller's commit writes it."""
        self.session.add(entry)

    async def append_many(self, entries: Iterable[PublishLog]) -> None:
        self.session.add_all(list(entries))
        await self.session.commit()

    async def list_recent(self, owner_id: uuid.UUID, limit: int = 50) -> List[PublishLog]:
        q = (
            select(PublishLog)
            .where(PublishLog.owner_id == owner_id)
            .order_by(PublishLog.occurred_at.desc())
            .limit(limit)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def list_for_job(self, job_id: uuid.UUID) -> List[PublishLog]:
        q = select(PublishLog).where(PublishLog.job_id == job_id).order_by(PublishLog.occurred_at)
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def list_for_schedule(self, schedule_id: uuid.UUID) -> List[PublishLog]:
        q = select(PublishLog).where(PublishLog.schedule_id == schedule_id).order_by(PublishLog.occurred_at)
        res = await self.session.execute(q)
        return list(res.scalars().all())
