# sns_publisher/routers/jobs_router.py
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from sns_publisher.config import Settings, get_settings
from sns_publisher.dependencies.auth import get_current_owner, require_worker_secret
from sns_publisher.dependencies.services import get_browser_accounts, get_job_queue, get_now
from sns_publisher.exceptions import JobNotFound, JobStateError, NotFoundError
from sns_publisher.models.job import JobStatus
from sns_publisher.schemas.sns_schema import (
    BrowserAccountCreate,
    BrowserAccountRead,
    BrowserAccountUpdate,
    JobCreate,
    JobRead,
    JobReport,
    JobUpdate,
)
from sns_publisher.services.browser_accounts import BrowserAccountService
from sns_publisher.services.job_queue import JobOutcome, JobQueue

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["jobs"])


# --- worker contract ---
@router.get("/jobs/pending", dependencies=[Depends(require_worker_secret)])
async def pending_jobs(
    limit: Optional[int] = Query(default=None, ge=1, le=50),
    queue: JobQueue = Depends(get_job_queue),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    try:
        leased = await queue.lease(limit or settings.job_lease_limit, now)
    except JobStateError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"jobs": [item.to_payload() for item in leased]}


@router.post("/jobs/report", response_model=JobRead, dependencies=[Depends(require_worker_secret)])
async def report_job(
    payload: JobReport,
    queue: JobQueue = Depends(get_job_queue),
    now: datetime = Depends(get_now),
):
    outcome = JobOutcome(
        success=payload.success,
        external_post_id=payload.external_post_id,
        error=payload.error,
    )
    try:
        return await queue.report(payload.job_id, outcome, now, payload.lease_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


# --- owner jobs ---
@router.post("/jobs", response_model=JobRead, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreate,
    owner_id: uuid.UUID = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
    now: datetime = Depends(get_now),
):
    try:
        return await queue.create_job(
            owner_id,
            payload.platform,
            payload.content,
            now,
            title=payload.title,
            account_id=payload.account_id,
            category_no=payload.category_no,
            media_urls=payload.media_urls,
            tags=payload.tags,
            followup_comment=payload.followup_comment,
            scheduled_at=payload.scheduled_at,
            queue=payload.queue,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/jobs", response_model=List[JobRead])
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    owner_id: uuid.UUID = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
):
    return await queue.list_jobs(owner_id, status=status_filter.value if status_filter else None)


@router.get("/jobs/{job_id}", response_model=JobRead)
async def get_job(
    job_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
):
    try:
        return await queue.get_job(owner_id, job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.patch("/jobs/{job_id}", response_model=JobRead)
async def update_job(
    job_id: uuid.UUID,
    payload: JobUpdate,
    owner_id: uuid.UUID = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
    now: datetime = Depends(get_now),
):
    try:
        return await queue.update_job(owner_id, job_id, payload.model_dump(exclude_unset=True), now)
    except (JobNotFound, NotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/jobs/{job_id}/enqueue", response_model=JobRead)
async def enqueue_job(
    job_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
    now: datetime = Depends(get_now),
):
    try:
        return await queue.enqueue(owner_id, job_id, now)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
):
    try:
        await queue.delete_job(owner_id, job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


# --- browser accounts ---
@router.post("/accounts", response_model=BrowserAccountRead, status_code=status.HTTP_201_CREATED)
async def save_account(
    payload: BrowserAccountCreate,
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: BrowserAccountService = Depends(get_browser_accounts),
    now: datetime = Depends(get_now),
):
    try:
        return await svc.save_account(
            owner_id,
            payload.login_id,
            payload.password,
            now,
            platform=payload.platform,
            blog_id=payload.blog_id,
            display_name=payload.display_name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/accounts", response_model=List[BrowserAccountRead])
async def list_accounts(
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: BrowserAccountService = Depends(get_browser_accounts),
):
    return await svc.list_accounts(owner_id)


@router.patch("/accounts/{account_id}", response_model=BrowserAccountRead)
async def update_account(
    account_id: uuid.UUID,
    payload: BrowserAccountUpdate,
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: BrowserAccountService = Depends(get_browser_accounts),
    now: datetime = Depends(get_now),
):
    try:
        return await svc.update_account(
            owner_id,
            account_id,
            now,
            password=payload.password,
            blog_id=payload.blog_id,
            display_name=payload.display_name,
            active=payload.active,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    account_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: BrowserAccountService = Depends(get_browser_accounts),
):
    try:
        await svc.delete_account(owner_id, account_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
