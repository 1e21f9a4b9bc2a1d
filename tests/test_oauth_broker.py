"""OAuth broker: state lifecycle, PKCE and connection persistence."""

import dataclasses
import uuid
from datetime import timedelta

import httpx
import pytest
from sqlmodel import select

from sns_publisher.exceptions import (
    NotFoundError,
    PlatformNotConfigured,
    StateExpired,
    StateMismatch,
    TokenExchangeError,
)
from sns_publisher.infrastructure.connections_repo import ConnectionsRepository
from sns_publisher.models.connection import Connection
from sns_publisher.models.oauth_state import OAuthState
from sns_publisher.services.oauth_broker import OAuthBroker, generate_state, pkce_challenge

from helpers import NOW, form, mock_client


def twitter_api(tokens=None, token_status=200, user_id="u-1", username="alice"):
    """Fake X token and profile endpoints; records every request."""
    seen = []
    tokens = tokens or {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 7200}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/2/oauth2/token":
            return httpx.Response(token_status, json=tokens)
        if request.url.path == "/2/users/me":
            return httpx.Response(200, json={"data": {"id": user_id, "username": username, "name": "Alice"}})
        return httpx.Response(404)

    return handler, seen


async def start(broker, owner_id, platform="twitter"):
    url = httpx.URL(await broker.begin_authorization(owner_id, platform, NOW))
    return url, url.params["state"]


def test_state_nonce_is_high_entropy():
    # 32 random bytes, base64url encoded
    values = {generate_state() for _ in range(50)}
    assert len(values) == 50
    assert all(len(v) >= 43 for v in values)


def test_pkce_challenge_matches_rfc7636_example():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


@pytest.mark.asyncio
async def test_twitter_round_trip_uses_matching_verifier(session, settings, owner_id, platforms):
    handler, seen = twitter_api()
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        url, state = await start(broker, owner_id)
        assert url.params["client_id"] == "twitter-client-id"
        assert url.params["redirect_uri"] == "https://app.example.com/sns/callback/twitter"

        connection = await broker.complete_authorization(owner_id, "twitter", "the-code", state, NOW)

    sent = form(seen[0])
    assert sent["code"] == "the-code"
    assert pkce_challenge(sent["code_verifier"]) == url.params["code_challenge"]
    assert connection.access_token == "at-1"
    assert connection.refresh_token == "rt-1"
    assert connection.expires_at == NOW + timedelta(seconds=7200)
    assert connection.platform_account_id == "u-1"
    assert connection.username == "@alice"
    assert connection.active


@pytest.mark.asyncio
async def test_non_pkce_platform_stores_no_verifier(session, settings, owner_id, platforms):
    async with mock_client(lambda r: httpx.Response(404)) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        url, state = await start(broker, owner_id, "facebook")
    assert "code_challenge" not in url.params
    row = (await session.execute(select(OAuthState).where(OAuthState.state_nonce == state))).scalar_one()
    assert row.pkce_verifier is None
    assert row.expires_at == NOW + timedelta(seconds=settings.oauth_state_ttl_seconds)


@pytest.mark.asyncio
async def test_state_is_single_use(session, settings, owner_id, platforms):
    handler, _ = twitter_api()
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        await broker.complete_authorization(owner_id, "twitter", "code", state, NOW)
        with pytest.raises(StateMismatch):
            await broker.complete_authorization(owner_id, "twitter", "code", state, NOW)


@pytest.mark.asyncio
async def test_unknown_state_or_wrong_owner_is_rejected(session, settings, owner_id, platforms):
    handler, seen = twitter_api()
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        with pytest.raises(StateMismatch):
            await broker.complete_authorization(owner_id, "twitter", "code", "forged", NOW)
        with pytest.raises(StateMismatch):
            await broker.complete_authorization(uuid.uuid4(), "twitter", "code", state, NOW)
        with pytest.raises(StateMismatch):
            await broker.complete_authorization(owner_id, "threads", "code", state, NOW)
    assert seen == []


@pytest.mark.asyncio
async def test_expired_state_is_rejected_and_consumed(session, settings, owner_id, platforms):
    handler, seen = twitter_api()
    later = NOW + timedelta(seconds=settings.oauth_state_ttl_seconds)
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        with pytest.raises(StateExpired):
            await broker.complete_authorization(owner_id, "twitter", "code", state, later)
        with pytest.raises(StateMismatch):
            await broker.complete_authorization(owner_id, "twitter", "code", state, NOW)
    assert seen == []


@pytest.mark.asyncio
async def test_failed_exchange_persists_nothing(session, settings, owner_id, platforms):
    handler, _ = twitter_api(tokens={"error": "invalid_grant"}, token_status=400)
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        with pytest.raises(TokenExchangeError):
            await broker.complete_authorization(owner_id, "twitter", "code", state, NOW)
    rows = (await session.execute(select(Connection))).scalars().all()
    assert rows == []


@pytest.mark.asyncio
async def test_reconnect_replaces_tokens_in_place(session, settings, owner_id, platforms):
    first, _ = twitter_api()
    second, _ = twitter_api(tokens={"access_token": "at-2", "expires_in": 60}, username="alice2")
    async with mock_client(first) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        original = await broker.complete_authorization(owner_id, "twitter", "code", state, NOW)
    async with mock_client(second) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        later = NOW + timedelta(minutes=1)
        replaced = await broker.complete_authorization(owner_id, "twitter", "code", state, later)

    assert replaced.id == original.id
    assert replaced.access_token == "at-2"
    assert replaced.username == "@alice2"
    assert replaced.expires_at == later + timedelta(seconds=60)
    assert len(await broker.list_connections(owner_id)) == 1


@pytest.mark.asyncio
async def test_missing_client_credentials(session, settings, owner_id, platforms):
    bare = dataclasses.replace(settings, platform_credentials={})
    async with mock_client(lambda r: httpx.Response(404)) as client:
        broker = OAuthBroker(session, bare, client, platforms)
        with pytest.raises(PlatformNotConfigured):
            await broker.begin_authorization(owner_id, "twitter", NOW)
        with pytest.raises(PlatformNotConfigured):
            await broker.begin_authorization(owner_id, "myspace", NOW)


@pytest.mark.asyncio
async def test_revoke_deactivates_connection(session, settings, owner_id, platforms):
    handler, _ = twitter_api()
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        await broker.complete_authorization(owner_id, "twitter", "code", state, NOW)
        revoked = await broker.revoke(owner_id, "twitter", NOW)
        with pytest.raises(NotFoundError):
            await broker.revoke(owner_id, "threads", NOW)
    assert revoked.active is False
    assert await ConnectionsRepository(session).get_active(owner_id, "twitter") is None


@pytest.mark.asyncio
async def test_refresh_connection_keeps_old_refresh_token_when_none_returned(session, settings, owner_id, platforms):
    repo = ConnectionsRepository(session)
    connection = await repo.upsert(
        owner_id,
        "twitter",
        {"access_token": "old", "refresh_token": "rt-old", "expires_at": NOW, "platform_account_id": "u-1"},
        NOW,
    )

    def handler(request):
        assert form(request)["refresh_token"] == "rt-old"
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        refreshed = await broker.refresh_connection(connection, NOW)
    assert refreshed.access_token == "fresh"
    assert refreshed.refresh_token == "rt-old"
    assert refreshed.expires_at == NOW + timedelta(hours=1)


@pytest.mark.asyncio
async def test_purge_keeps_recently_expired_states(session, settings, owner_id, platforms):
    retention = timedelta(seconds=settings.oauth_state_retention_seconds)
    async with mock_client(lambda r: httpx.Response(404)) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        await start(broker, owner_id)
        assert await broker.purge_expired_states(NOW) == 0
        assert await broker.purge_expired_states(NOW + timedelta(hours=1)) == 0
        assert await broker.purge_expired_states(NOW + timedelta(hours=1) + retention) == 1


@pytest.mark.asyncio
async def test_late_callback_after_purge_is_reported_as_expired(session, settings, owner_id, platforms):
    later = NOW + timedelta(hours=1)
    handler, _ = twitter_api()
    async with mock_client(handler) as client:
        broker = OAuthBroker(session, settings, client, platforms)
        _, state = await start(broker, owner_id)
        await broker.purge_expired_states(later)
        with pytest.raises(StateExpired):
            await broker.complete_authorization(owner_id, "twitter", "code", state, later)
