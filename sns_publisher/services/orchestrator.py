# sns_publisher/services/orchestrator.py
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import httpx
import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.config import Settings
from sns_publisher.exceptions import JobError, NotFoundError, PublishError
from sns_publisher.infrastructure.connections_repo import ConnectionsRepository
from sns_publisher.infrastructure.content_repo import PublishLogRepository, TemplatesRepository
from sns_publisher.models.connection import Connection
from sns_publisher.models.content import ContentTemplate, Schedule
from sns_publisher.models.job import PublishJob
from sns_publisher.models.publish_log import PublishLog
from sns_publisher.platforms import registry
from sns_publisher.platforms.base import Platform, PublishContent, PublishResult, TokenSet
from sns_publisher.services.job_queue import JobOutcome, JobQueue
from sns_publisher.services.oauth_broker import OAuthBroker
from sns_publisher.services.schedule_engine import ScheduleEngine

logger = structlog.get_logger(__name__)

# one-off API jobs claimed per sweep
SWEEP_JOB_LIMIT = 50


@dataclass
class DispatchTarget:
    owner_id: uuid.UUID
    platform: str
    content: PublishContent
    connection: Optional[Connection] = None
    # set when the target failed before any platform call
    error: Optional[str] = None
    schedule: Optional[Schedule] = None
    template_id: Optional[uuid.UUID] = None
    job: Optional[PublishJob] = None


@dataclass
class DispatchOutcome:
    target: DispatchTarget
    result: Optional[PublishResult] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.result is not None


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    schedules: int = 0
    jobs: int = 0

    def as_dict(self) -> dict:
        return {"processed": self.processed, "failed": self.failed, "schedules": self.schedules, "jobs": self.jobs}


@dataclass
class _ConnectionCache:
    found: Dict[Tuple[uuid.UUID, str], Optional[Connection]] = field(default_factory=dict)
    errors: Dict[Tuple[uuid.UUID, str], str] = field(default_factory=dict)


def content_for(template: ContentTemplate, platform: str) -> PublishContent:
    return PublishContent(
        text=template.body,
        media_urls=list(template.media_urls or []),
        followup_comment=template.comment_for(platform),
    )


class PublishOrchestrator:
    """
    Runs a sweep in phases so that no transaction is open while a platform is
    being called: read what is due, refresh expired tokens, publish
    concurrently, then write logs, advances and job reports.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        client: httpx.AsyncClient,
        job_queue: JobQueue,
        platforms: Optional[Dict[str, Platform]] = None,
    ):
        self.session = session
        self.settings = settings
        self.client = client
        self.platforms = registry.PLATFORMS if platforms is None else platforms
        self.job_queue = job_queue
        self.broker = OAuthBroker(session, settings, client, self.platforms)
        self.engine = ScheduleEngine(session)
        self.connections = ConnectionsRepository(session)
        self.templates = TemplatesRepository(session)
        self.logs = PublishLogRepository(session)

    # --- resolution ---
    async def _connection(
        self,
        cache: _ConnectionCache,
        owner_id: uuid.UUID,
        platform: str,
    ) -> Tuple[Optional[Connection], Optional[str]]:
        key = (owner_id, platform)
        if key not in cache.found:
            connection = await self.connections.get_active(owner_id, platform)
            cache.found[key] = connection
            if connection is None:
                cache.errors[key] = f"{platform} is not connected"
        return cache.found[key], cache.errors.get(key)

    async def _target(
        self,
        cache: _ConnectionCache,
        owner_id: uuid.UUID,
        platform: str,
        content: PublishContent,
        **refs,
    ) -> DispatchTarget:
        connection, error = await self._connection(cache, owner_id, platform)
        return DispatchTarget(owner_id=owner_id, platform=platform, content=content, connection=connection, error=error, **refs)

    async def _refresh_expired(self, cache: _ConnectionCache, now: datetime) -> None:
        expired = [
            (key, connection)
            for key, connection in cache.found.items()
            if connection is not None and key not in cache.errors and connection.is_expired(now)
        ]
        if not expired:
            return

        async def refresh(connection: Connection):
            try:
                return await self.broker.refresh_tokens(connection)
            except PublishError as exc:
                return exc

        results = await asyncio.gather(*(refresh(connection) for _, connection in expired))
        for (key, connection), outcome in zip(expired, results):
            if isinstance(outcome, TokenSet):
                cache.found[key] = await self.broker.store_refreshed(connection, outcome, now)
            else:
                logger.warning(
                    "connection_refresh_failed",
                    connection_id=str(connection.id),
                    platform=connection.platform,
                    error=str(outcome),
                )
                cache.errors[key] = f"{connection.platform} authorization expired; reconnect required"

    # --- dispatch ---
    async def _publish_one(self, target: DispatchTarget) -> DispatchOutcome:
        if target.error is not None:
            return DispatchOutcome(target, error=target.error, retryable=False)
        connection = target.connection
        try:
            result = await registry.publish(
                target.platform,
                connection.access_token,
                connection.platform_account_id,
                target.content,
                self.client,
                self.platforms,
            )
        except PublishError as exc:
            logger.warning(
                "dispatch_failed",
                platform=target.platform,
                owner_id=str(target.owner_id),
                error=str(exc),
                retryable=exc.retryable,
            )
            return DispatchOutcome(target, error=str(exc) or exc.__class__.__name__, retryable=exc.retryable)
        except Exception as exc:
            logger.exception("dispatch_crashed", platform=target.platform, owner_id=str(target.owner_id))
            return DispatchOutcome(target, error=f"unexpected error: {exc.__class__.__name__}", retryable=False)
        logger.info("dispatch_succeeded", platform=target.platform, external_post_id=result.external_post_id)
        return DispatchOutcome(target, result=result)

    async def dispatch(self, targets: List[DispatchTarget]) -> List[DispatchOutcome]:
        semaphore = asyncio.Semaphore(self.settings.dispatch_concurrency)

        async def bounded(target: DispatchTarget) -> DispatchOutcome:
            async with semaphore:
                return await self._publish_one(target)

        return list(await asyncio.gather(*(bounded(t) for t in targets)))

    def _log(self, outcome: DispatchOutcome, now: datetime) -> PublishLog:
        target = outcome.target
        return PublishLog(
            owner_id=target.owner_id,
            platform=target.platform,
            status="success" if outcome.success else "failed",
            schedule_id=target.schedule.id if target.schedule else None,
            template_id=target.template_id,
            external_post_id=outcome.result.external_post_id if outcome.result else None,
            error=outcome.error,
            occurred_at=now,
        )

    # --- entry points ---
    async def run_sweep(self, now: datetime) -> SweepResult:
        sweep = SweepResult()
        cache = _ConnectionCache()
        await self.broker.purge_expired_states(now)

        schedules = await self.engine.due_schedules(now)
        templates = await self.templates.get_many(s.template_id for s in schedules)
        schedule_targets: Dict[uuid.UUID, List[DispatchTarget]] = {}
        for schedule in schedules:
            template = templates.get(schedule.template_id)
            targets = []
            for platform in schedule.platforms or []:
                if template is None:
                    targets.append(
                        DispatchTarget(
                            schedule.owner_id,
                            platform,
                            PublishContent(text=""),
                            error="template not found",
                            schedule=schedule,
                            template_id=schedule.template_id,
                        )
                    )
                    continue
                target = await self._target(
                    cache,
                    schedule.owner_id,
                    platform,
                    content_for(template, platform),
                    schedule=schedule,
                    template_id=template.id,
                )
                targets.append(target)
            schedule_targets[schedule.id] = targets

        jobs = await self.job_queue.claim_inprocess(SWEEP_JOB_LIMIT, now)
        job_targets = []
        for job in jobs:
            content = PublishContent(
                text=job.content,
                media_urls=list(job.media_urls or []),
                followup_comment=job.followup_comment,
            )
            job_targets.append(await self._target(cache, job.owner_id, job.platform, content, job=job))

        # release the read transaction before any network call
        await self.session.commit()
        await self._refresh_expired(cache, now)
        for targets in schedule_targets.values():
            for target in targets:
                self._rebind(cache, target)
        for target in job_targets:
            self._rebind(cache, target)

        all_targets = [t for targets in schedule_targets.values() for t in targets] + job_targets
        outcomes = await self.dispatch(all_targets)

        for outcome in outcomes:
            sweep.processed += 1
            if not outcome.success:
                sweep.failed += 1
            if outcome.target.job is None:
                self.logs.add(self._log(outcome, now))
        await self.session.commit()

        # every due schedule advances exactly once, whatever its platforms did
        for schedule in schedules:
            await self.engine.advance(schedule, now)
            sweep.schedules += 1

        for outcome in outcomes:
            job = outcome.target.job
            if job is None:
                continue
            if outcome.success:
                result = JobOutcome(success=True, external_post_id=outcome.result.external_post_id)
            else:
                result = JobOutcome(success=False, error=outcome.error, retryable=outcome.retryable)
            try:
                await self.job_queue.report(job.id, result, now, job.lease_id)
            except JobError as exc:
                logger.warning("job_report_rejected", job_id=str(job.id), error=str(exc))
                continue
            sweep.jobs += 1

        logger.info("sweep_finished", **sweep.as_dict())
        return sweep

    def _rebind(self, cache: _ConnectionCache, target: DispatchTarget) -> None:
        if target.error is not None:
            return
        key = (target.owner_id, target.platform)
        target.connection = cache.found.get(key)
        target.error = cache.errors.get(key)

    async def post_now(
        self,
        owner_id: uuid.UUID,
        template_id: uuid.UUID,
        platforms: Optional[List[str]],
        now: datetime,
    ) -> List[dict]:
        template = await self.templates.get_owned(template_id, owner_id)
        if template is None:
            raise NotFoundError("template not found")
        chosen = list(dict.fromkeys(platforms or template.target_platforms or []))
        if not chosen:
            raise ValueError("no platforms selected")
        unknown = sorted(set(chosen) - registry.API_PLATFORMS)
        if unknown:
            raise ValueError(f"unsupported platforms: {', '.join(unknown)}")

        cache = _ConnectionCache()
        targets = [
            await self._target(cache, owner_id, platform, content_for(template, platform), template_id=template.id)
            for platform in chosen
        ]
        await self.session.commit()
        await self._refresh_expired(cache, now)
        for target in targets:
            self._rebind(cache, target)

        outcomes = await self.dispatch(targets)
        await self.logs.append_many(self._log(outcome, now) for outcome in outcomes)
        logger.info(
            "post_now_finished",
            template_id=str(template_id),
            succeeded=sum(1 for o in outcomes if o.success),
            failed=sum(1 for o in outcomes if not o.success),
        )
        return [
            {
                "platform": o.target.platform,
                "success": o.success,
                "external_post_id": o.result.external_post_id if o.result else None,
                "comment_error": o.result.comment_error if o.result else None,
                "error": o.error,
            }
            for o in outcomes
        ]
