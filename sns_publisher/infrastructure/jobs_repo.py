# sns_publisher/infrastructure/jobs_repo.py
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, or_, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.models.job import BrowserAccount, JobStatus, PublishJob


class JobsRepository:
    """
    Every status transition is a conditional UPDATE whose WHERE clause restates
    the state it expects; callers check the returned bool instead of trusting
    a previously loaded row.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, job: PublishJob) -> PublishJob:
        self.session.add(job)
        await self.session.commit()
        await self.session.refresh(job)
        return job

    async def get(self, job_id: uuid.UUID) -> Optional[PublishJob]:
        return await self.session.get(PublishJob, job_id, populate_existing=True)

    async def get_owned(self, job_id: uuid.UUID, owner_id: uuid.UUID) -> Optional[PublishJob]:
        q = select(PublishJob).where(PublishJob.id == job_id, PublishJob.owner_id == owner_id)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list_by_owner(self, owner_id: uuid.UUID, status: Optional[str] = None, limit: int = 100) -> List[PublishJob]:
        q = select(PublishJob).where(PublishJob.owner_id == owner_id)
        if status:
            q = q.where(PublishJob.status == status)
        q = q.order_by(PublishJob.created_at.desc()).limit(limit)
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def delete_unleased(self, job_id: uuid.UUID, owner_id: uuid.UUID) -> bool:
        stmt = (
            delete(PublishJob)
            .where(
                PublishJob.id == job_id,
                PublishJob.owner_id == owner_id,
                PublishJob.status != JobStatus.LEASED.value,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def update_in_status(
        self,
        job_id: uuid.UUID,
        owner_id: uuid.UUID,
        statuses: Iterable[str],
        values: dict,
        now: datetime,
    ) -> bool:
        stmt = (
            update(PublishJob)
            .where(
                PublishJob.id == job_id,
                PublishJob.owner_id == owner_id,
                PublishJob.status.in_(list(statuses)),
            )
            .values(**values, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def count_for_account(self, account_id: uuid.UUID) -> int:
        q = select(func.count()).select_from(PublishJob).where(PublishJob.account_id == account_id)
        res = await self.session.execute(q)
        return res.scalar_one()

    async def list_claimable_ids(
        self,
        now: datetime,
        platforms: Iterable[str],
        max_retries: int,
        limit: int,
    ) -> List[uuid.UUID]:
        q = (
            select(PublishJob.id)
            .where(
                PublishJob.status == JobStatus.QUEUED.value,
                PublishJob.platform.in_(list(platforms)),
                PublishJob.retry_count < max_retries,
                or_(PublishJob.scheduled_at == None, PublishJob.scheduled_at <= now),  # noqa: E711
            )
            .order_by(PublishJob.created_at)
            .limit(limit)
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def claim(
        self,
        job_id: uuid.UUID,
        lease_id: str,
        lease_expires_at: datetime,
        max_retries: int,
        now: datetime,
    ) -> bool:
        stmt = (
            update(PublishJob)
            .where(
                PublishJob.id == job_id,
                PublishJob.status == JobStatus.QUEUED.value,
                PublishJob.retry_count < max_retries,
            )
            .values(
                status=JobStatus.LEASED.value,
                lease_id=lease_id,
                lease_expires_at=lease_expires_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def list_expired_leases(self, now: datetime) -> List[PublishJob]:
        q = select(PublishJob).where(
            PublishJob.status == JobStatus.LEASED.value,
            PublishJob.lease_expires_at < now,
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def transition_from_lease(self, job: PublishJob, values: dict, now: datetime) -> bool:
        """Move a leased job out of its lease, only if the lease is still the one we saw."""
        values = dict(values, lease_id=None, lease_expires_at=None, updated_at=now)
        stmt = (
            update(PublishJob)
            .where(
                PublishJob.id == job.id,
                PublishJob.status == JobStatus.LEASED.value,
                PublishJob.lease_id == job.lease_id,
                PublishJob.retry_count == job.retry_count,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def requeue(self, job: PublishJob, now: datetime) -> bool:
        """draft or failed -> queued with a fresh retry budget."""
        return await self.update_in_status(
            job.id,
            job.owner_id,
            (JobStatus.DRAFT.value, JobStatus.FAILED.value),
            {
                "status": JobStatus.QUEUED.value,
                "retry_count": 0,
                "error": None,
                "lease_id": None,
                "lease_expires_at": None,
            },
            now,
        )


class BrowserAccountsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_login(self, owner_id: uuid.UUID, platform: str, login_id: str) -> Optional[BrowserAccount]:
        q = select(BrowserAccount).where(
            BrowserAccount.owner_id == owner_id,
            BrowserAccount.platform == platform,
            BrowserAccount.login_id == login_id,
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_owned(self, account_id: uuid.UUID, owner_id: uuid.UUID) -> Optional[BrowserAccount]:
        q = select(BrowserAccount).where(BrowserAccount.id == account_id, BrowserAccount.owner_id == owner_id)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_many(self, account_ids: Iterable[uuid.UUID]) -> dict:
        ids = [i for i in set(account_ids) if i is not None]
        if not ids:
            return {}
        res = await self.session.execute(select(BrowserAccount).where(BrowserAccount.id.in_(ids)))
        return {a.id: a for a in res.scalars().all()}

    async def list_by_owner(self, owner_id: uuid.UUID) -> List[BrowserAccount]:
        q = (
            select(BrowserAccount)
            .where(BrowserAccount.owner_id == owner_id)
            .order_by(BrowserAccount.created_at.desc())
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def save(self, account: BrowserAccount) -> BrowserAccount:
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        return account

    async def delete(self, account: BrowserAccount) -> None:
        await self.session.delete(account)
        await self.session.commit()
