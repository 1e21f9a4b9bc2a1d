"""Reference worker against a fake publisher API."""

import asyncio
import json

import httpx
import pytest

from sns_publisher.exceptions import ConfigurationError
from sns_publisher.worker.runner import WorkerRunner, load_executor

from helpers import SleepRecorder


class FakePublisher:
    def __init__(self, jobs, report_status=200):
        self.jobs = list(jobs)
        self.reports = []
        self.report_status = report_status
        self.pending_status = 200
        self.auth = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.auth.append(request.headers.get("authorization"))
        if request.url.path == "/jobs/pending":
            if self.pending_status != 200:
                return httpx.Response(self.pending_status)
            jobs, self.jobs = self.jobs, []
            return httpx.Response(200, json={"jobs": jobs})
        if request.url.path == "/jobs/report":
            self.reports.append(json.loads(request.content))
            return httpx.Response(self.report_status, json={})
        return httpx.Response(404)


def job(job_id="j1"):
    return {
        "id": job_id,
        "lease_id": f"lease-{job_id}",
        "platform": "naver_blog",
        "content": "body",
        "retry_count": 0,
        "account": {"login_id": "blogger", "password": "pw"},
    }


def runner_for(server, executor, sleep=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://publisher")
    return WorkerRunner(client, "worker-secret", executor, poll_interval=5.0, sleep=sleep or SleepRecorder())


@pytest.mark.asyncio
async def test_success_is_reported_with_the_lease():
    server = FakePublisher([job("a"), job("b")])

    async def executor(payload):
        return f"post-{payload['id']}"

    runner = runner_for(server, executor)
    assert await runner.run_once() == 2
    await runner.client.aclose()

    assert server.reports == [
        {"job_id": "a", "lease_id": "lease-a", "success": True, "external_post_id": "post-a", "error": None},
        {"job_id": "b", "lease_id": "lease-b", "success": True, "external_post_id": "post-b", "error": None},
    ]
    assert set(server.auth) == {"Bearer worker-secret"}


@pytest.mark.asyncio
async def test_executor_failure_is_reported_and_does_not_stop_the_batch():
    server = FakePublisher([job("a"), job("b")])

    async def executor(payload):
        if payload["id"] == "a":
            raise RuntimeError("login captcha")
        return "ok"

    runner = runner_for(server, executor)
    await runner.run_once()
    await runner.client.aclose()

    assert [(r["job_id"], r["success"], r["error"]) for r in server.reports] == [
        ("a", False, "login captcha"),
        ("b", True, None),
    ]


@pytest.mark.asyncio
async def test_stale_report_is_not_an_error():
    server = FakePublisher([], report_status=409)

    async def executor(payload):
        return "ok"

    runner = runner_for(server, executor)
    assert await runner.report(job(), True, external_post_id="ok") is False
    await runner.client.aclose()


@pytest.mark.asyncio
async def test_run_forever_survives_poll_errors_until_stopped():
    server = FakePublisher([job()])
    server.pending_status = 503
    stop = asyncio.Event()
    polls = []

    async def sleep(delay):
        polls.append(delay)
        if len(polls) == 1:
            server.pending_status = 200
        else:
            stop.set()

    async def executor(payload):
        return "ok"

    runner = runner_for(server, executor, sleep=sleep)
    await runner.run_forever(stop)
    await runner.client.aclose()

    assert polls == [5.0, 5.0]
    assert [r["job_id"] for r in server.reports] == ["j1"]


def test_worker_requires_a_secret():
    with pytest.raises(ConfigurationError):
        WorkerRunner(None, "", lambda job: None)


def test_load_executor():
    assert load_executor("json:dumps") is json.dumps
    for bad in ("", "json", "json:", "json:not_there"):
        with pytest.raises(ConfigurationError):
            load_executor(bad)
