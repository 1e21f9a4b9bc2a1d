# sns_publisher/services/schedule_engine.py
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.exceptions import NotFoundError
from sns_publisher.infrastructure.content_repo import SchedulesRepository, TemplatesRepository
from sns_publisher.models.content import RECURRENCE_UNITS, Schedule
from sns_publisher.platforms.registry import API_PLATFORMS

logger = structlog.get_logger(__name__)

UNIT_SECONDS = {"hours": 3600, "days": 86400}


def recurrence_delta(unit: str, interval: int) -> timedelta:
    if unit not in UNIT_SECONDS:
        raise ValueError(f"recurrence unit must be one of {', '.join(RECURRENCE_UNITS)}")
    if interval <= 0:
        raise ValueError("recurrence interval must be positive")
    return timedelta(seconds=UNIT_SECONDS[unit] * interval)


@dataclass(frozen=True)
class Advance:
    next_run_at: datetime
    deactivate: bool


def compute_advance(
    next_run_at: datetime,
    unit: str,
    interval: int,
    end_at: Optional[datetime] = None,
) -> Advance:
    """
    Step from the previously scheduled time, never from the execution time,
    so late sweeps do not shift the cadence.
    """
    following = next_run_at + recurrence_delta(unit, interval)
    return Advance(next_run_at=following, deactivate=end_at is not None and following > end_at)


def is_due(schedule: Schedule, now: datetime) -> bool:
    if not schedule.active or schedule.next_run_at > now:
        return False
    return schedule.end_at is None or schedule.end_at >= now


class ScheduleEngine:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.schedules = SchedulesRepository(session)
        self.templates = TemplatesRepository(session)

    async def due_schedules(self, now: datetime) -> List[Schedule]:
        return await self.schedules.list_due(now)

    async def advance(self, schedule: Schedule, now: datetime) -> Schedule:
        step = compute_advance(
            schedule.next_run_at,
            schedule.recurrence_unit,
            schedule.recurrence_interval,
            schedule.end_at,
        )
        applied = await self.schedules.apply_advance(schedule, step.next_run_at, step.deactivate, now)
        if not applied:
            logger.warning("schedule_advance_conflict", schedule_id=str(schedule.id))
            await self.session.refresh(schedule)
            return schedule
        logger.info(
            "schedule_advanced",
            schedule_id=str(schedule.id),
            next_run_at=schedule.next_run_at.isoformat(),
            run_count=schedule.run_count,
            active=schedule.active,
        )
        if step.deactivate:
            logger.info("schedule_completed", schedule_id=str(schedule.id))
        return schedule

    async def create_schedule(
        self,
        owner_id: uuid.UUID,
        template_id: uuid.UUID,
        platforms: List[str],
        recurrence_unit: str,
        recurrence_interval: int,
        start_at: datetime,
        end_at: Optional[datetime],
        now: datetime,
    ) -> Schedule:
        recurrence_delta(recurrence_unit, recurrence_interval)
        if not platforms:
            raise ValueError("at least one platform is required")
        unknown = sorted(set(platforms) - API_PLATFORMS)
        if unknown:
            raise ValueError(f"unsupported platforms: {', '.join(unknown)}")
        if end_at is not None and end_at < start_at:
            raise ValueError("end_at must not be before start_at")
        template = await self.templates.get_owned(template_id, owner_id)
        if template is None:
            raise NotFoundError("template not found")

        schedule = Schedule(
            owner_id=owner_id,
            template_id=template.id,
            platforms=list(dict.fromkeys(platforms)),
            recurrence_unit=recurrence_unit,
            recurrence_interval=recurrence_interval,
            start_at=start_at,
            end_at=end_at,
            next_run_at=start_at,
            created_at=now,
            updated_at=now,
        )
        schedule = await self.schedules.create(schedule)
        logger.info("schedule_created", schedule_id=str(schedule.id), owner_id=str(owner_id))
        return schedule

    async def list_schedules(self, owner_id: uuid.UUID) -> List[Schedule]:
        return await self.schedules.list_by_owner(owner_id)

    async def deactivate(self, owner_id: uuid.UUID, schedule_id: uuid.UUID, now: datetime) -> Schedule:
        schedule = await self.schedules.get_owned(schedule_id, owner_id)
        if schedule is None:
            raise NotFoundError("schedule not found")
        schedule = await self.schedules.deactivate(schedule, now)
        logger.info("schedule_deactivated", schedule_id=str(schedule.id))
        return schedule
