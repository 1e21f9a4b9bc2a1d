"""Sweep and post-now orchestration against mocked platforms."""

from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from sns_publisher.exceptions import NotFoundError
from sns_publisher.infrastructure.connections_repo import ConnectionsRepository
from sns_publisher.infrastructure.content_repo import PublishLogRepository
from sns_publisher.models.job import JobStatus
from sns_publisher.services.browser_accounts import BrowserAccountService
from sns_publisher.services.content_service import ContentService
from sns_publisher.services.job_queue import JobQueue
from sns_publisher.services.orchestrator import PublishOrchestrator
from sns_publisher.services.schedule_engine import ScheduleEngine

from helpers import NOW, body, form, mock_client


class FakePlatforms:
    """Threads and X endpoints with just enough behaviour for a sweep."""

    def __init__(self):
        self.requests = []
        self.fail_threads = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path
        if host == "graph.threads.net":
            if self.fail_threads:
                return httpx.Response(400, json={"error": {"message": "Invalid parameter", "code": 100}})
            if path.endswith("/threads_publish"):
                return httpx.Response(200, json={"id": f"thread-{len(self.requests)}"})
            return httpx.Response(200, json={"id": f"container-{len(self.requests)}"})
        if host == "api.twitter.com" and path == "/2/oauth2/token":
            return httpx.Response(200, json={"access_token": "fresh-x", "refresh_token": "rt-2", "expires_in": 7200})
        if host == "api.twitter.com" and path == "/2/tweets":
            return httpx.Response(201, json={"data": {"id": "tweet-1"}})
        return httpx.Response(404)

    def to(self, host):
        return [r for r in self.requests if r.url.host == host]


@pytest.fixture
def fake():
    return FakePlatforms()


@pytest_asyncio.fixture
async def client(fake):
    async with mock_client(fake) as client:
        yield client


@pytest.fixture
def orchestrator(session, settings, client, vault, platforms):
    return PublishOrchestrator(session, settings, client, JobQueue(session, vault), platforms)


@pytest_asyncio.fixture
async def template(session, owner_id):
    return await ContentService(session).create_template(
        owner_id,
        "launch",
        "We launched!",
        [],
        ["threads", "twitter"],
        [{"platform": "threads", "text": "details in the reply"}],
        NOW,
    )


async def connect(session, owner_id, platform, **values):
    defaults = {"access_token": f"{platform}-token", "platform_account_id": f"{platform}-acct"}
    return await ConnectionsRepository(session).upsert(owner_id, platform, {**defaults, **values}, NOW - timedelta(days=1))


async def schedule_for(session, owner_id, template, platforms):
    """Every six hours, first run due at NOW."""
    return await ScheduleEngine(session).create_schedule(
        owner_id, template.id, platforms, "hours", 6, NOW, None, NOW - timedelta(days=1)
    )


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_missing_connection_is_logged_and_schedule_still_advances(
    session, orchestrator, fake, owner_id, template
):
    await connect(session, owner_id, "threads")
    schedule = await schedule_for(session, owner_id, template, ["threads", "twitter"])

    result = await orchestrator.run_sweep(NOW + timedelta(minutes=5))

    assert result.as_dict() == {"processed": 2, "failed": 1, "schedules": 1, "jobs": 0}
    logs = await PublishLogRepository(session).list_for_schedule(schedule.id)
    by_platform = {log.platform: log for log in logs}
    assert by_platform["threads"].status == "success"
    assert by_platform["threads"].template_id == template.id
    assert by_platform["twitter"].status == "failed"
    assert by_platform["twitter"].error == "twitter is not connected"
    assert fake.to("api.twitter.com") == []

    advanced = (await ScheduleEngine(session).list_schedules(owner_id))[0]
    assert advanced.next_run_at == NOW + timedelta(hours=6)
    assert advanced.run_count == 1


@pytest.mark.asyncio
async def test_followup_comment_is_posted_as_reply(session, orchestrator, fake, owner_id, template):
    await connect(session, owner_id, "threads")
    await schedule_for(session, owner_id, template, ["threads"])

    await orchestrator.run_sweep(NOW)

    creates = [r for r in fake.to("graph.threads.net") if r.url.path.endswith("/threads")]
    assert creates[0].url.params["text"] == "We launched!"
    assert creates[1].url.params["text"] == "details in the reply"
    assert creates[1].url.params["reply_to_id"].startswith("thread-")


@pytest.mark.asyncio
async def test_platform_failure_does_not_stop_other_platforms(session, orchestrator, fake, owner_id, template):
    await connect(session, owner_id, "threads")
    await connect(session, owner_id, "twitter")
    schedule = await schedule_for(session, owner_id, template, ["threads", "twitter"])
    fake.fail_threads = True

    result = await orchestrator.run_sweep(NOW)

    assert result.processed == 2 and result.failed == 1
    logs = {log.platform: log for log in await PublishLogRepository(session).list_for_schedule(schedule.id)}
    assert logs["twitter"].external_post_id == "tweet-1"
    assert logs["threads"].error == "Invalid parameter"


@pytest.mark.asyncio
async def test_nothing_due_does_nothing(session, orchestrator, fake, owner_id, template):
    await connect(session, owner_id, "threads")
    await schedule_for(session, owner_id, template, ["threads"])

    result = await orchestrator.run_sweep(NOW - timedelta(minutes=1))

    assert result.as_dict() == {"processed": 0, "failed": 0, "schedules": 0, "jobs": 0}
    assert fake.requests == []


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_publishing(session, orchestrator, fake, owner_id, template):
    await connect(session, owner_id, "twitter", refresh_token="rt-1", expires_at=NOW - timedelta(minutes=1))
    await schedule_for(session, owner_id, template, ["twitter"])

    result = await orchestrator.run_sweep(NOW)

    assert result.failed == 0
    token_call, tweet_call = fake.to("api.twitter.com")
    assert form(token_call)["refresh_token"] == "rt-1"
    assert tweet_call.headers["authorization"] == "Bearer fresh-x"
    assert body(tweet_call) == {"text": "We launched!"}
    stored = await ConnectionsRepository(session).get_active(owner_id, "twitter")
    assert stored.access_token == "fresh-x"
    assert stored.expires_at == NOW + timedelta(hours=2)


@pytest.mark.asyncio
async def test_unrefreshable_token_fails_with_reconnect_hint(session, orchestrator, fake, owner_id, template):
    # Threads tokens have no refresh grant
    await connect(session, owner_id, "threads", expires_at=NOW - timedelta(days=1))
    schedule = await schedule_for(session, owner_id, template, ["threads"])

    result = await orchestrator.run_sweep(NOW)

    assert result.failed == 1
    assert fake.requests == []
    [log] = await PublishLogRepository(session).list_for_schedule(schedule.id)
    assert log.error == "threads authorization expired; reconnect required"


@pytest.mark.asyncio
async def test_inprocess_jobs_are_published_and_reported(session, orchestrator, owner_id):
    await connect(session, owner_id, "threads")
    queue = JobQueue(session)
    job = await queue.create_job(owner_id, "threads", "one-off", NOW, queue=True)
    unconnected = await queue.create_job(owner_id, "twitter", "one-off", NOW, queue=True)

    result = await orchestrator.run_sweep(NOW)

    assert result.jobs == 2
    published = await queue.get_job(owner_id, job.id)
    assert published.status == JobStatus.PUBLISHED.value
    assert published.external_post_id.startswith("thread-")
    # a missing connection will not fix itself on retry
    failed = await queue.get_job(owner_id, unconnected.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error == "twitter is not connected"
    logs = await PublishLogRepository(session).list_for_job(job.id)
    assert [log.status for log in logs] == ["success"]


@pytest.mark.asyncio
async def test_worker_jobs_are_left_for_the_worker(session, orchestrator, vault, owner_id):
    account = await BrowserAccountService(session, vault).save_account(owner_id, "blogger", "pw", NOW)
    queue = JobQueue(session, vault)
    job = await queue.create_job(owner_id, "naver_blog", "blog post", NOW, account_id=account.id, queue=True)

    result = await orchestrator.run_sweep(NOW)

    assert result.jobs == 0
    assert (await queue.get_job(owner_id, job.id)).status == JobStatus.QUEUED.value


# ---------------------------------------------------------------------------
# Post now
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_post_now_reports_per_platform(session, orchestrator, owner_id, template):
    await connect(session, owner_id, "threads")

    results = await orchestrator.post_now(owner_id, template.id, None, NOW)

    by_platform = {r["platform"]: r for r in results}
    assert by_platform["threads"]["success"] is True
    assert by_platform["threads"]["comment_error"] is None
    assert by_platform["twitter"] == {
        "platform": "twitter",
        "success": False,
        "external_post_id": None,
        "comment_error": None,
        "error": "twitter is not connected",
    }
    logs = await PublishLogRepository(session).list_recent(owner_id)
    assert sorted(log.platform for log in logs) == ["threads", "twitter"]


@pytest.mark.asyncio
async def test_post_now_validation(session, orchestrator, owner_id, template):
    with pytest.raises(NotFoundError):
        await orchestrator.post_now(owner_id, owner_id, None, NOW)
    with pytest.raises(ValueError):
        await orchestrator.post_now(owner_id, template.id, ["naver_blog"], NOW)
