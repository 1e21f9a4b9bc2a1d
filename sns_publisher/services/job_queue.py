# sns_publisher/services/job_queue.py
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.exceptions import DecryptionError, JobNotFound, JobStateError, NotFoundError
from sns_publisher.infrastructure.content_repo import PublishLogRepository
from sns_publisher.infrastructure.jobs_repo import BrowserAccountsRepository, JobsRepository
from sns_publisher.infrastructure.vault import CredentialVault
from sns_publisher.models.job import BrowserAccount, JobStatus, PublishJob
from sns_publisher.models.publish_log import PublishLog
from sns_publisher.platforms.registry import API_PLATFORMS, WORKER_PLATFORMS

logger = structlog.get_logger(__name__)

# shared by the lease filter and the report handler
MAX_RETRIES = 3
LEASE_EXPIRED_ERROR = "lease expired before a report arrived"

EDITABLE_STATUSES = (JobStatus.DRAFT.value, JobStatus.QUEUED.value, JobStatus.FAILED.value)
EDITABLE_FIELDS = {
    "title",
    "content",
    "category_no",
    "media_urls",
    "tags",
    "followup_comment",
    "scheduled_at",
    "account_id",
}


@dataclass
class JobOutcome:
    success: bool
    external_post_id: Optional[str] = None
    error: Optional[str] = None
    # False sends a failure straight to the terminal state
    retryable: bool = True


@dataclass
class LeasedJob:
    """A claimed worker job with its account password in plaintext."""

    job: PublishJob
    account: BrowserAccount
    password: str

    def to_payload(self) -> dict:
        job = self.job
        return {
            "id": str(job.id),
            "lease_id": job.lease_id,
            "lease_expires_at": job.lease_expires_at.isoformat() if job.lease_expires_at else None,
            "platform": job.platform,
            "title": job.title,
            "content": job.content,
            "category_no": job.category_no,
            "media_urls": list(job.media_urls or []),
            "tags": list(job.tags or []),
            "retry_count": job.retry_count,
            "account": {
                "id": str(self.account.id),
                "login_id": self.account.login_id,
                "password": self.password,
                "blog_id": self.account.blog_id,
                "display_name": self.account.display_name,
            },
        }


class JobQueue:
    """
    Pull queue for publish jobs.

    Worker-platform jobs are only ever handed out through `lease`, which is also
    the single place where account passwords are decrypted. API-platform jobs
    are claimed by the sweep through `claim_inprocess`. Both paths share the
    claim primitive and the report state machine.
    """

    def __init__(
        self,
        session: AsyncSession,
        vault: Optional[CredentialVault] = None,
        lease_ttl_seconds: int = 900,
        max_retries: int = MAX_RETRIES,
    ):
        self.session = session
        self.vault = vault
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self.max_retries = max_retries
        self.jobs = JobsRepository(session)
        self.accounts = BrowserAccountsRepository(session)
        self.logs = PublishLogRepository(session)

    # --- owner operations ---
    async def create_job(
        self,
        owner_id: uuid.UUID,
        platform: str,
        content: str,
        now: datetime,
        title: Optional[str] = None,
        account_id: Optional[uuid.UUID] = None,
        category_no: int = 0,
        media_urls: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        followup_comment: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        queue: bool = False,
    ) -> PublishJob:
        if platform not in API_PLATFORMS and platform not in WORKER_PLATFORMS:
            raise ValueError(f"unsupported platform: {platform}")
        await self._check_account(owner_id, platform, account_id)

        job = PublishJob(
            owner_id=owner_id,
            platform=platform,
            account_id=account_id,
            title=title,
            content=content,
            category_no=category_no,
            media_urls=list(media_urls or []),
            tags=list(tags or []),
            followup_comment=followup_comment,
            scheduled_at=scheduled_at,
            status=JobStatus.QUEUED.value if queue else JobStatus.DRAFT.value,
            created_at=now,
            updated_at=now,
        )
        job = await self.jobs.create(job)
        logger.info("job_created", job_id=str(job.id), platform=platform, status=job.status)
        return job

    async def get_job(self, owner_id: uuid.UUID, job_id: uuid.UUID) -> PublishJob:
        job = await self.jobs.get_owned(job_id, owner_id)
        if job is None:
            raise JobNotFound("job not found")
        return job

    async def list_jobs(self, owner_id: uuid.UUID, status: Optional[str] = None) -> List[PublishJob]:
        return await self.jobs.list_by_owner(owner_id, status=status)

    async def _check_account(self, owner_id: uuid.UUID, platform: str, account_id: Optional[uuid.UUID]) -> None:
        if platform in WORKER_PLATFORMS:
            if account_id is None:
                raise ValueError(f"{platform} jobs need an account")
            account = await self.accounts.get_owned(account_id, owner_id)
            if account is None or account.platform != platform:
                raise NotFoundError("account not found")
        elif account_id is not None:
            raise ValueError(f"{platform} jobs publish through the owner's connection, not an account")

    async def _state_error(self, job_id: uuid.UUID, action: str) -> JobStateError:
        await self.session.rollback()
        job = await self.jobs.get(job_id)
        current = job.status if job is not None else "gone"
        return JobStateError(f"cannot {action} a {current} job")

    async def enqueue(self, owner_id: uuid.UUID, job_id: uuid.UUID, now: datetime) -> PublishJob:
        """Queue a draft, or re-queue a failed job with a fresh retry budget."""
        job = await self.get_job(owner_id, job_id)
        if not await self.jobs.requeue(job, now):
            raise await self._state_error(job_id, "queue")
        await self.session.commit()
        logger.info("job_enqueued", job_id=str(job_id))
        return await self.jobs.get(job_id)

    async def update_job(self, owner_id: uuid.UUID, job_id: uuid.UUID, changes: dict, now: datetime) -> PublishJob:
        """Edit a job that no worker holds and that has not been published."""
        job = await self.get_job(owner_id, job_id)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"fields cannot be edited: {', '.join(sorted(unknown))}")
        if "account_id" in changes:
            await self._check_account(owner_id, job.platform, changes["account_id"])
        values = dict(changes)
        for key in ("media_urls", "tags"):
            if key in values:
                values[key] = list(values[key] or [])
        if not await self.jobs.update_in_status(job_id, owner_id, EDITABLE_STATUSES, values, now):
            raise await self._state_error(job_id, "edit")
        await self.session.commit()
        logger.info("job_updated", job_id=str(job_id), fields=sorted(values))
        return await self.jobs.get(job_id)

    async def delete_job(self, owner_id: uuid.UUID, job_id: uuid.UUID) -> None:
        await self.get_job(owner_id, job_id)
        if not await self.jobs.delete_unleased(job_id, owner_id):
            raise await self._state_error(job_id, "delete")
        await self.session.commit()
        logger.info("job_deleted", job_id=str(job_id))

    # --- lease / report ---
    def _failure_values(self, job: PublishJob, error: str, retryable: bool) -> dict:
        retry_count = job.retry_count + 1
        terminal = not retryable or retry_count >= self.max_retries
        return {
            "status": JobStatus.FAILED.value if terminal else JobStatus.QUEUED.value,
            "retry_count": retry_count,
            "error": error,
        }

    def _log_row(self, job: PublishJob, status: str, now: datetime, external_post_id=None, error=None) -> PublishLog:
        return PublishLog(
            owner_id=job.owner_id,
            platform=job.platform,
            status=status,
            job_id=job.id,
            external_post_id=external_post_id,
            error=error,
            occurred_at=now,
        )

    async def expire_leases(self, now: datetime) -> int:
        """An expired lease counts as one failed attempt."""
        expired = 0
        for job in await self.jobs.list_expired_leases(now):
            values = self._failure_values(job, LEASE_EXPIRED_ERROR, retryable=True)
            if await self.jobs.transition_from_lease(job, values, now):
                self.logs.add(self._log_row(job, "failed", now, error=LEASE_EXPIRED_ERROR))
                expired += 1
                logger.warning(
                    "job_lease_expired",
                    job_id=str(job.id),
                    retry_count=values["retry_count"],
                    status=values["status"],
                )
        await self.session.commit()
        return expired

    async def _claim(self, now: datetime, platforms: Iterable[str], limit: int) -> List[PublishJob]:
        await self.expire_leases(now)
        candidates = await self.jobs.list_claimable_ids(now, platforms, self.max_retries, limit)
        claimed = []
        for job_id in candidates:
            lease_id = uuid.uuid4().hex
            if await self.jobs.claim(job_id, lease_id, now + self.lease_ttl, self.max_retries, now):
                claimed.append(job_id)
        await self.session.commit()
        jobs = []
        for job_id in claimed:
            job = await self.jobs.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def claim_inprocess(self, limit: int, now: datetime) -> List[PublishJob]:
        jobs = await self._claim(now, API_PLATFORMS, limit)
        if jobs:
            logger.info("jobs_claimed_inprocess", count=len(jobs))
        return jobs

    async def lease(self, limit: int, now: datetime) -> List[LeasedJob]:
        if self.vault is None:
            raise JobStateError("credential vault is not configured")
        jobs = await self._claim(now, WORKER_PLATFORMS, limit)
        accounts = await self.accounts.get_many(job.account_id for job in jobs)

        leased = []
        for job in jobs:
            account = accounts.get(job.account_id)
            if account is None or not account.active:
                await self.report(job.id, JobOutcome(success=False, error="account unavailable", retryable=False), now, job.lease_id)
                continue
            try:
                password = self.vault.decrypt(account.password_enc)
            except DecryptionError:
                logger.error("job_credential_unreadable", job_id=str(job.id), account_id=str(account.id))
                await self.report(
                    job.id,
                    JobOutcome(success=False, error="credential decryption failed", retryable=False),
                    now,
                    job.lease_id,
                )
                continue
            leased.append(LeasedJob(job=job, account=account, password=password))

        logger.info("jobs_leased", requested=limit, count=len(leased))
        return leased

    async def report(
        self,
        job_id: uuid.UUID,
        outcome: JobOutcome,
        now: datetime,
        lease_id: Optional[str] = None,
    ) -> PublishJob:
        """
        Close the current lease. Without a lease_id the current lease is assumed;
        with one, a report for an older lease is rejected.
        """
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFound("job not found")
        if job.status != JobStatus.LEASED.value:
            raise JobStateError(f"job is {job.status}, not leased")
        if lease_id is not None and lease_id != job.lease_id:
            raise JobStateError("lease is no longer held")

        if outcome.success:
            values = {
                "status": JobStatus.PUBLISHED.value,
                "external_post_id": outcome.external_post_id,
                "error": None,
                "published_at": now,
            }
            log = self._log_row(job, "success", now, external_post_id=outcome.external_post_id)
        else:
            error = outcome.error or "unknown error"
            values = self._failure_values(job, error, outcome.retryable)
            log = self._log_row(job, "failed", now, error=error)

        if not await self.jobs.transition_from_lease(job, values, now):
            await self.session.rollback()
            raise JobStateError("lease is no longer held")
        self.logs.add(log)
        await self.session.commit()

        job = await self.jobs.get(job_id)
        logger.info(
            "job_reported",
            job_id=str(job_id),
            success=outcome.success,
            status=job.status,
            retry_count=job.retry_count,
        )
        return job
