# sns_publisher/routers/content_router.py
import uuid
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from sns_publisher.dependencies.auth import get_current_owner
from sns_publisher.dependencies.services import (
    get_content_service,
    get_now,
    get_orchestrator,
    get_schedule_engine,
)
from sns_publisher.exceptions import NotFoundError
from sns_publisher.schemas.sns_schema import (
    PostNowRequest,
    PostNowResponse,
    PublishLogRead,
    ScheduleCreate,
    ScheduleRead,
    TemplateCreate,
    TemplateRead,
)
from sns_publisher.services.content_service import ContentService
from sns_publisher.services.orchestrator import PublishOrchestrator
from sns_publisher.services.schedule_engine import ScheduleEngine

router = APIRouter(prefix="/sns", tags=["content"])


# --- templates ---
@router.post("/templates", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateCreate,
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: ContentService = Depends(get_content_service),
    now: datetime = Depends(get_now),
):
    try:
        return await svc.create_template(
            owner_id,
            payload.title,
            payload.body,
            payload.media_urls,
            payload.target_platforms,
            [c.model_dump() for c in payload.comments],
            now,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/templates", response_model=List[TemplateRead])
async def list_templates(
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: ContentService = Depends(get_content_service),
):
    return await svc.list_templates(owner_id)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: ContentService = Depends(get_content_service),
):
    try:
        await svc.delete_template(owner_id, template_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


# --- schedules ---
@router.post("/schedules", response_model=ScheduleRead, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    payload: ScheduleCreate,
    owner_id: uuid.UUID = Depends(get_current_owner),
    engine: ScheduleEngine = Depends(get_schedule_engine),
    now: datetime = Depends(get_now),
):
    try:
        return await engine.create_schedule(
            owner_id,
            payload.template_id,
            payload.platforms,
            payload.recurrence_unit,
            payload.recurrence_interval,
            payload.start_at,
            payload.end_at,
            now,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/schedules", response_model=List[ScheduleRead])
async def list_schedules(
    owner_id: uuid.UUID = Depends(get_current_owner),
    engine: ScheduleEngine = Depends(get_schedule_engine),
):
    return await engine.list_schedules(owner_id)


@router.post("/schedules/{schedule_id}/deactivate", response_model=ScheduleRead)
async def deactivate_schedule(
    schedule_id: uuid.UUID,
    owner_id: uuid.UUID = Depends(get_current_owner),
    engine: ScheduleEngine = Depends(get_schedule_engine),
    now: datetime = Depends(get_now),
):
    try:
        return await engine.deactivate(owner_id, schedule_id, now)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


# --- post now / logs ---
@router.post("/post-now", response_model=PostNowResponse)
async def post_now(
    payload: PostNowRequest,
    owner_id: uuid.UUID = Depends(get_current_owner),
    orchestrator: PublishOrchestrator = Depends(get_orchestrator),
    now: datetime = Depends(get_now),
):
    try:
        results = await orchestrator.post_now(owner_id, payload.template_id, payload.platforms, now)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"results": results}


@router.get("/logs", response_model=List[PublishLogRead])
async def recent_logs(
    owner_id: uuid.UUID = Depends(get_current_owner),
    svc: ContentService = Depends(get_content_service),
):
    return await svc.recent_logs(owner_id)
