# sns_publisher/routers/cron_router.py
from datetime import datetime

from fastapi import APIRouter, Depends

from sns_publisher.dependencies.auth import require_cron_secret
from sns_publisher.dependencies.services import get_now, get_orchestrator
from sns_publisher.services.orchestrator import PublishOrchestrator

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/sweep")
@router.get("/sweep")  # some schedulers can only issue GETs
async def sweep(
    orchestrator: PublishOrchestrator = Depends(get_orchestrator),
    now: datetime = Depends(get_now),
):
    result = await orchestrator.run_sweep(now)
    return result.as_dict()
