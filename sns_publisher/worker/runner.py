# sns_publisher/worker/runner.py
"""
Reference out-of-process worker.

Pulls leased jobs from ``GET /jobs/pending``, hands each one to a pluggable
executor (for example a Playwright driver for naver_blog) and posts the
outcome to ``POST /jobs/report``. Killing the process between jobs is safe:
unreported leases expire on the server and count as a failed attempt.

    WORKER_API_URL=https://publisher.example.com \
    WORKER_SECRET=... \
    WORKER_EXECUTOR=my_driver.naver:publish \
    python -m sns_publisher.worker.runner
"""
import asyncio
import importlib
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from sns_publisher.exceptions import ConfigurationError
from sns_publisher.logging_config import configure_structlog

logger = structlog.get_logger(__name__)

# receives the leased job payload, returns the external post id or raises
Executor = Callable[[Dict[str, Any]], Awaitable[Optional[str]]]

DEFAULT_POLL_INTERVAL = 60.0


def load_executor(path: str) -> Executor:
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"WORKER_EXECUTOR must look like 'package.module:function', got {path!r}")
    executor = getattr(importlib.import_module(module_name), attr, None)
    if executor is None or not callable(executor):
        raise ConfigurationError(f"{path} is not a callable")
    return executor


class WorkerRunner:
    def __init__(
        self,
        client: httpx.AsyncClient,
        secret: str,
        executor: Executor,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not secret:
            raise ConfigurationError("WORKER_SECRET is required")
        self.client = client
        self.headers = {"Authorization": f"Bearer {secret}"}
        self.executor = executor
        self.poll_interval = poll_interval
        self.sleep = sleep

    async def fetch_pending(self) -> List[Dict[str, Any]]:
        response = await self.client.get("/jobs/pending", headers=self.headers)
        response.raise_for_status()
        return response.json().get("jobs") or []

    async def report(
        self,
        job: Dict[str, Any],
        success: bool,
        external_post_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        payload = {
            "job_id": job["id"],
            "lease_id": job.get("lease_id"),
            "success": success,
            "external_post_id": external_post_id,
            "error": error,
        }
        try:
            response = await self.client.post("/jobs/report", json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            logger.error("worker_report_failed", job_id=job["id"], error=exc.__class__.__name__)
            return False
        if response.status_code == 409:
            # lease expired while the job ran; the server has already counted it
            logger.warning("worker_report_stale", job_id=job["id"])
            return False
        if not response.is_success:
            logger.error("worker_report_rejected", job_id=job["id"], status_code=response.status_code)
            return False
        return True

    async def run_job(self, job: Dict[str, Any]) -> bool:
        log = logger.bind(job_id=job["id"], platform=job.get("platform"))
        log.info("worker_job_started", retry_count=job.get("retry_count"))
        try:
            external_post_id = await self.executor(job)
        except Exception as exc:
            # executors are third-party automation code; any failure is a failed attempt
            log.exception("worker_job_failed")
            await self.report(job, False, error=str(exc) or exc.__class__.__name__)
            return False
        log.info("worker_job_published", external_post_id=external_post_id)
        await self.report(job, True, external_post_id=external_post_id)
        return True

    async def run_once(self) -> int:
        """One poll cycle; returns how many jobs were executed."""
        jobs = await self.fetch_pending()
        if jobs:
            logger.info("worker_jobs_received", count=len(jobs))
        for job in jobs:
            await self.run_job(job)
        return len(jobs)

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        logger.info("worker_started", poll_interval=self.poll_interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except httpx.HTTPError as exc:
                logger.error("worker_poll_failed", error=exc.__class__.__name__)
            await self.sleep(self.poll_interval)
        logger.info("worker_stopped")


async def _main() -> None:
    base_url = os.getenv("WORKER_API_URL", "http://localhost:8000")
    executor = load_executor(os.getenv("WORKER_EXECUTOR", ""))
    poll_interval = float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL))
    async with httpx.AsyncClient(base_url=base_url, timeout=60.0) as client:
        runner = WorkerRunner(client, os.getenv("WORKER_SECRET", ""), executor, poll_interval=poll_interval)
        await runner.run_forever()


if __name__ == "__main__":
    configure_structlog()
    asyncio.run(_main())
