"""HTTP surface: auth guards, OAuth redirects, content and worker endpoints."""

import dataclasses
import uuid

import httpx
import pytest
import pytest_asyncio
from jose import jwt

from sns_publisher.config import get_settings
from sns_publisher.dependencies.db import get_session_dep
from sns_publisher.dependencies.services import get_now
from sns_publisher.main import create_app

from helpers import NOW, mock_client


def outbound(request: httpx.Request) -> httpx.Response:
    """X token and profile endpoints as seen from the OAuth callback."""
    if request.url.path == "/2/oauth2/token":
        return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 7200})
    if request.url.path == "/2/users/me":
        return httpx.Response(200, json={"data": {"id": "42", "username": "alice", "name": "Alice"}})
    return httpx.Response(404)


@pytest_asyncio.fixture
async def app(session_factory, settings, vault, platforms):
    application = create_app()

    async def session_override():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_session_dep] = session_override
    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_now] = lambda: NOW
    application.state.vault = vault
    application.state.platforms = platforms
    async with mock_client(outbound) as client:
        application.state.http_client = client
        yield application


@pytest_asyncio.fixture
async def api(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest.fixture
def auth(owner_id, settings):
    token = jwt.encode({"sub": str(owner_id)}, settings.session_secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


WORKER = {"Authorization": "Bearer worker-secret"}
CRON = {"Authorization": "Bearer cron-secret"}


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_owner_endpoints_require_a_session(api, settings):
    assert (await api.get("/sns/templates")).status_code == 401
    forged = jwt.encode({"sub": str(uuid.uuid4())}, "not-the-secret", algorithm="HS256")
    response = await api.get("/sns/templates", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401
    no_subject = jwt.encode({"sub": "admin"}, settings.session_secret, algorithm="HS256")
    response = await api.get("/sns/templates", headers={"Authorization": f"Bearer {no_subject}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_session_cookie_is_accepted(api, auth):
    token = auth["Authorization"].split(" ", 1)[1]
    api.cookies.set("access_token", token)
    assert (await api.get("/sns/templates")).status_code == 200


@pytest.mark.asyncio
async def test_cron_requires_its_secret(api):
    assert (await api.post("/cron/sweep")).status_code == 401
    assert (await api.post("/cron/sweep", headers=WORKER)).status_code == 401
    response = await api.post("/cron/sweep", headers=CRON)
    assert response.status_code == 200
    assert response.json() == {"processed": 0, "failed": 0, "schedules": 0, "jobs": 0}
    assert (await api.get("/cron/sweep", headers=CRON)).status_code == 200


@pytest.mark.asyncio
async def test_unset_secrets_fail_closed(app, api, settings):
    app.dependency_overrides[get_settings] = lambda: dataclasses.replace(settings, cron_secret=None, worker_secret=None)
    assert (await api.post("/cron/sweep", headers={"Authorization": "Bearer "})).status_code == 401
    assert (await api.post("/cron/sweep", headers=CRON)).status_code == 401
    assert (await api.get("/jobs/pending", headers=WORKER)).status_code == 401


@pytest.mark.asyncio
async def test_responses_carry_a_request_id(api):
    response = await api.post("/cron/sweep", headers={**CRON, "X-Request-ID": "req-123"})
    assert response.headers["x-request-id"] == "req-123"
    assert (await api.post("/cron/sweep", headers=CRON)).headers["x-request-id"]


# ---------------------------------------------------------------------------
# OAuth connect / callback
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_connect_and_callback_round_trip(api, auth):
    response = await api.get("/sns/connect/twitter", headers=auth)
    assert response.status_code == 302
    location = httpx.URL(response.headers["location"])
    assert location.host == "twitter.com"
    state = location.params["state"]

    response = await api.get("/sns/callback/twitter", params={"code": "c", "state": state}, headers=auth)
    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example.com/sns?connected=twitter"

    connections = (await api.get("/sns/connections", headers=auth)).json()
    assert [(c["platform"], c["username"]) for c in connections] == [("twitter", "@alice")]
    assert "access_token" not in connections[0]

    # replaying the callback fails
    response = await api.get("/sns/callback/twitter", params={"code": "c", "state": state}, headers=auth)
    assert response.headers["location"].startswith("https://app.example.com/sns?error=")

    assert (await api.delete("/sns/connections/twitter", headers=auth)).json()["active"] is False
    assert (await api.delete("/sns/connections/threads", headers=auth)).status_code == 404


@pytest.mark.asyncio
async def test_callback_reports_consent_denial(api, auth):
    response = await api.get(
        "/sns/callback/threads",
        params={"error": "access_denied", "error_description": "User denied"},
        headers=auth,
    )
    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example.com/sns?error=User+denied"


@pytest.mark.asyncio
async def test_connect_unknown_platform_redirects_with_error(api, auth):
    response = await api.get("/sns/connect/myspace", headers=auth)
    assert response.status_code == 302
    assert "error=" in response.headers["location"]


# ---------------------------------------------------------------------------
# Templates, schedules, post-now, logs
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_template_and_schedule_lifecycle(api, auth):
    response = await api.post(
        "/sns/templates",
        json={
            "title": "Launch",
            "body": "We launched",
            "target_platforms": ["threads"],
            "comments": [{"platform": "threads", "text": "link"}],
        },
        headers=auth,
    )
    assert response.status_code == 201
    template = response.json()
    assert template["comments"] == [{"platform": "threads", "text": "link"}]

    response = await api.post(
        "/sns/schedules",
        json={
            "template_id": template["id"],
            "platforms": ["threads"],
            "recurrence_unit": "hours",
            "recurrence_interval": 6,
            "start_at": "2025-01-01T09:00:00+09:00",
        },
        headers=auth,
    )
    assert response.status_code == 201
    schedule = response.json()
    assert schedule["next_run_at"] == "2025-01-01T00:00:00Z"
    assert schedule["run_count"] == 0

    response = await api.post(f"/sns/schedules/{schedule['id']}/deactivate", headers=auth)
    assert response.json()["active"] is False

    assert (await api.delete(f"/sns/templates/{template['id']}", headers=auth)).status_code == 204
    assert (await api.get("/sns/schedules", headers=auth)).json() == []


@pytest.mark.asyncio
async def test_content_validation_errors(api, auth):
    response = await api.post(
        "/sns/templates",
        json={"title": "t", "body": "b", "target_platforms": ["myspace"]},
        headers=auth,
    )
    assert response.status_code == 400
    response = await api.post(
        "/sns/schedules",
        json={
            "template_id": str(uuid.uuid4()),
            "platforms": ["threads"],
            "recurrence_unit": "hours",
            "recurrence_interval": 1,
            "start_at": "2025-01-01T00:00:00",
        },
        headers=auth,
    )
    assert response.status_code == 404
    response = await api.post(
        "/sns/schedules",
        json={
            "template_id": str(uuid.uuid4()),
            "platforms": ["threads"],
            "recurrence_unit": "weeks",
            "recurrence_interval": 1,
            "start_at": "2025-01-01T00:00:00",
        },
        headers=auth,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_post_now_and_logs(api, auth):
    template = (
        await api.post(
            "/sns/templates",
            json={"title": "t", "body": "hello", "target_platforms": ["threads"]},
            headers=auth,
        )
    ).json()

    response = await api.post("/sns/post-now", json={"template_id": template["id"]}, headers=auth)
    assert response.status_code == 200
    [result] = response.json()["results"]
    assert result["platform"] == "threads"
    assert result["success"] is False
    assert result["error"] == "threads is not connected"

    logs = (await api.get("/sns/logs", headers=auth)).json()
    assert [(log["platform"], log["status"]) for log in logs] == [("threads", "failed")]

    missing = await api.post("/sns/post-now", json={"template_id": str(uuid.uuid4())}, headers=auth)
    assert missing.status_code == 404


# ---------------------------------------------------------------------------
# Worker contract
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_worker_leases_and_reports(api, auth):
    response = await api.post("/accounts", json={"login_id": "blogger01", "password": "pw-123"}, headers=auth)
    assert response.status_code == 201
    account = response.json()
    assert "password" not in account and "password_enc" not in account

    response = await api.post(
        "/jobs",
        json={"platform": "naver_blog", "content": "post", "title": "T", "account_id": account["id"], "queue": True},
        headers=auth,
    )
    assert response.status_code == 201
    job = response.json()
    assert job["status"] == "queued"

    assert (await api.get("/jobs/pending")).status_code == 401
    assert (await api.get("/jobs/pending", headers=auth)).status_code == 401

    pending = (await api.get("/jobs/pending", headers=WORKER)).json()["jobs"]
    assert [p["id"] for p in pending] == [job["id"]]
    assert pending[0]["account"]["password"] == "pw-123"
    assert (await api.get("/jobs/pending", headers=WORKER)).json() == {"jobs": []}

    report = {"job_id": job["id"], "lease_id": pending[0]["lease_id"], "success": True, "external_post_id": "blog/1"}
    response = await api.post("/jobs/report", json=report, headers=WORKER)
    assert response.status_code == 200
    assert response.json()["status"] == "published"

    assert (await api.post("/jobs/report", json=report, headers=WORKER)).status_code == 409
    unknown = dict(report, job_id=str(uuid.uuid4()))
    assert (await api.post("/jobs/report", json=unknown, headers=WORKER)).status_code == 404

    published = (await api.get("/jobs", params={"status": "published"}, headers=auth)).json()
    assert [j["id"] for j in published] == [job["id"]]
    assert (await api.get("/jobs", params={"status": "bogus"}, headers=auth)).status_code == 422


@pytest.mark.asyncio
async def test_job_owner_endpoints(api, auth):
    response = await api.post("/jobs", json={"platform": "threads", "content": "hi"}, headers=auth)
    job = response.json()
    assert job["status"] == "draft"

    assert (await api.post(f"/jobs/{job['id']}/enqueue", headers=auth)).json()["status"] == "queued"
    assert (await api.get(f"/jobs/{job['id']}", headers=auth)).status_code == 200
    assert (await api.delete(f"/jobs/{job['id']}", headers=auth)).status_code == 204
    assert (await api.get(f"/jobs/{job['id']}", headers=auth)).status_code == 404

    bad = await api.post("/jobs", json={"platform": "naver_blog", "content": "hi"}, headers=auth)
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_job_edit_endpoint(api, auth):
    account = (await api.post("/accounts", json={"login_id": "b", "password": "pw"}, headers=auth)).json()
    job = (
        await api.post(
            "/jobs",
            json={"platform": "naver_blog", "content": "post", "account_id": account["id"], "category_no": 2},
            headers=auth,
        )
    ).json()
    assert job["category_no"] == 2

    response = await api.patch(
        f"/jobs/{job['id']}",
        json={"content": "edited", "scheduled_at": "2025-01-02T09:00:00+09:00"},
        headers=auth,
    )
    assert response.status_code == 200
    assert response.json()["content"] == "edited"
    assert response.json()["scheduled_at"] == "2025-01-02T00:00:00Z"
    assert response.json()["category_no"] == 2

    assert (await api.patch(f"/jobs/{job['id']}", json={"content": None}, headers=auth)).status_code == 422
    assert (await api.patch(f"/jobs/{uuid.uuid4()}", json={"title": "x"}, headers=auth)).status_code == 404
    assert (await api.delete(f"/accounts/{account['id']}", headers=auth)).status_code == 409

    cleared = await api.patch(f"/jobs/{job['id']}", json={"scheduled_at": None}, headers=auth)
    assert cleared.json()["scheduled_at"] is None
    await api.post(f"/jobs/{job['id']}/enqueue", headers=auth)
    assert len((await api.get("/jobs/pending", headers=WORKER)).json()["jobs"]) == 1
    assert (await api.patch(f"/jobs/{job['id']}", json={"title": "late"}, headers=auth)).status_code == 409


@pytest.mark.asyncio
async def test_account_update_and_delete(api, auth):
    account = (await api.post("/accounts", json={"login_id": "b", "password": "pw"}, headers=auth)).json()
    updated = await api.patch(f"/accounts/{account['id']}", json={"display_name": "Blog", "active": False}, headers=auth)
    assert updated.json()["display_name"] == "Blog"
    assert updated.json()["active"] is False
    assert (await api.delete(f"/accounts/{account['id']}", headers=auth)).status_code == 204
    assert (await api.get("/accounts", headers=auth)).json() == []
