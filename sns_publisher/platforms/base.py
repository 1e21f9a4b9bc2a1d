# sns_publisher/platforms/base.py
import asyncio
import dataclasses
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import structlog

from sns_publisher.exceptions import (
    AuthExpired,
    ContentTooLong,
    PermanentRejection,
    RateLimited,
    TokenExchangeError,
    TransientFailure,
)
from sns_publisher.platforms.retry import RetryPolicy, call_with_retry, is_retryable_write

logger = structlog.get_logger(__name__)

VIDEO_EXTENSIONS = {"mp4", "mov", "avi", "mkv", "webm", "m4v"}
SAFE_METHODS = {"GET", "HEAD"}

# Graph API error codes (Threads / Facebook / Instagram)
GRAPH_AUTH_CODES = {102, 190, 463, 467}
GRAPH_RATE_LIMIT_CODES = {4, 17, 32, 613, 80001, 80002, 80004}
GRAPH_TRANSIENT_CODES = {1, 2}


@dataclass(frozen=True)
class PlatformConfig:
    key: str
    name: str
    auth_url: str
    token_url: str
    scopes: Tuple[str, ...]
    char_limit: int
    scope_separator: str = ","
    uses_pkce: bool = False


@dataclass
class PublishContent:
    text: str
    media_urls: List[str] = field(default_factory=list)
    followup_comment: Optional[str] = None


@dataclass
class PublishResult:
    external_post_id: str
    comment_id: Optional[str] = None
    comment_error: Optional[str] = None


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    account_id: Optional[str] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return now + timedelta(seconds=int(self.expires_in))


@dataclass
class Profile:
    account_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


def is_video_url(url: str) -> bool:
    ext = url.split("?")[0].rsplit(".", 1)[-1].lower()
    return ext in VIDEO_EXTENSIONS


def guess_mime(url: str) -> str:
    mime, _ = mimetypes.guess_type(url.split("?")[0])
    return mime or "application/octet-stream"


def json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def classify_graph_response(response: httpx.Response, platform: str) -> dict:
    """
    Meta Graph APIs can answer 200 with an ``error`` object, so the body decides
    before the status code does.
    """
    body = json_or_none(response)
    error = body.get("error") if isinstance(body, dict) else None
    if error:
        if isinstance(error, str):
            error = {"message": error}
        message = error.get("error_user_msg") or error.get("message") or "unknown error"
        code = error.get("code")
        if code in GRAPH_AUTH_CODES:
            raise AuthExpired(message, platform=platform, status_code=response.status_code)
        if code in GRAPH_RATE_LIMIT_CODES:
            raise RateLimited(message, platform=platform, status_code=response.status_code)
        if error.get("is_transient") or code in GRAPH_TRANSIENT_CODES:
            raise TransientFailure(message, platform=platform, status_code=response.status_code)
        raise PermanentRejection(message, platform=platform, status_code=response.status_code)
    return _classify_status(response, body, platform)


def classify_twitter_response(response: httpx.Response, platform: str = "twitter") -> dict:
    body = json_or_none(response)
    if response.is_success and isinstance(body, dict) and body.get("errors") and not body.get("data"):
        detail = body["errors"][0].get("message") or body["errors"][0].get("detail") or "rejected"
        raise PermanentRejection(detail, platform=platform, status_code=response.status_code)
    return _classify_status(response, body, platform)


def _classify_status(response: httpx.Response, body: Any, platform: str) -> dict:
    status = response.status_code
    if response.is_success:
        if not isinstance(body, dict):
            raise PermanentRejection("malformed response payload", platform=platform, status_code=status)
        return body
    detail = response.text[:500]
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("title") or body.get("message") or detail
    if status == 429:
        raise RateLimited(detail, platform=platform, status_code=status)
    if status == 401:
        raise AuthExpired(detail, platform=platform, status_code=status)
    if status >= 500:
        raise TransientFailure(detail, platform=platform, status_code=status, outcome_unknown=True)
    raise PermanentRejection(detail, platform=platform, status_code=status)


class Platform:
    """
    One implementation per platform key. Subclasses own the request/response
    shapes; this base supplies length checks, retrying requests and token calls.
    """

    config: PlatformConfig
    classify: Callable[[httpx.Response, str], dict] = staticmethod(classify_graph_response)
    poll_attempts = 20
    poll_interval = 3.0

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep or asyncio.sleep

    @property
    def key(self) -> str:
        return self.config.key

    # --- OAuth ---
    def authorization_params(
        self,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
    ) -> Dict[str, str]:
        return {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": self.config.scope_separator.join(self.config.scopes),
            "response_type": "code",
            "state": state,
        }

    def authorization_url(self, client_id: str, redirect_uri: str, state: str, code_challenge: Optional[str] = None) -> str:
        params = self.authorization_params(client_id, redirect_uri, state, code_challenge)
        return str(httpx.URL(self.config.auth_url).copy_merge_params(params))

    async def exchange_code(
        self,
        client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        code: str,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        raise NotImplementedError

    async def fetch_profile(self, client: httpx.AsyncClient, tokens: TokenSet) -> Profile:
        raise NotImplementedError

    async def refresh(
        self,
        client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        refresh_token: Optional[str],
    ) -> TokenSet:
        raise AuthExpired(f"{self.config.name} tokens cannot be refreshed; reconnect required", platform=self.key)

    async def _token_request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> dict:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"{self.config.name} token endpoint unreachable: {exc.__class__.__name__}")
        body = json_or_none(response)
        if not response.is_success or not isinstance(body, dict) or body.get("error"):
            logger.warning("token_exchange_rejected", platform=self.key, status_code=response.status_code)
            raise TokenExchangeError(f"{self.config.name} rejected the authorization code (HTTP {response.status_code})")
        if not body.get("access_token"):
            raise TokenExchangeError(f"{self.config.name} returned no access token")
        return body

    async def _profile_request(self, client: httpx.AsyncClient, url: str, **kwargs) -> dict:
        try:
            response = await client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"{self.config.name} profile endpoint unreachable: {exc.__class__.__name__}")
        body = json_or_none(response)
        if not response.is_success or not isinstance(body, dict) or body.get("error"):
            raise TokenExchangeError(f"{self.config.name} profile lookup failed (HTTP {response.status_code})")
        return body

    # --- publishing ---
    def check_length(self, text: str) -> None:
        if len(text) > self.config.char_limit:
            raise ContentTooLong(
                f"{self.config.name} allows {self.config.char_limit} characters, got {len(text)}",
                platform=self.key,
            )

    async def request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> dict:
        """
        Single API call, classified by body and retried per the retry policy.

        Writes are not repeated after a timeout or a bare 5xx: the post may
        already exist, so those surface as a TransientFailure for the caller.
        """

        async def attempt() -> dict:
            try:
                response = await client.request(method, url, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                # never reached the platform
                raise TransientFailure(f"cannot reach {self.config.name}: {exc.__class__.__name__}", platform=self.key)
            except httpx.TimeoutException as exc:
                raise TransientFailure(
                    f"timeout calling {self.config.name}: {exc.__class__.__name__}",
                    platform=self.key,
                    outcome_unknown=True,
                )
            except httpx.TransportError as exc:
                raise TransientFailure(
                    f"network error calling {self.config.name}: {exc.__class__.__name__}",
                    platform=self.key,
                    outcome_unknown=True,
                )
            return self.classify(response, self.key)

        policy = self.retry_policy
        if method.upper() not in SAFE_METHODS:
            policy = dataclasses.replace(policy, classifier=is_retryable_write)
        return await call_with_retry(attempt, policy, sleep=self.sleep, operation_name=f"{self.key}_{method.lower()}")

    async def wait_until_ready(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict,
        status_field: str,
    ) -> None:
        """Poll a media container until the platform finishes processing it."""
        for _ in range(self.poll_attempts):
            body = await self.request(client, "GET", url, params=params)
            status = body.get(status_field)
            if status == "FINISHED":
                return
            if status in ("ERROR", "EXPIRED"):
                raise PermanentRejection(
                    body.get("error_message") or f"{self.config.name} media processing failed",
                    platform=self.key,
                )
            await self.sleep(self.poll_interval)
        raise TransientFailure(f"{self.config.name} media still processing", platform=self.key)

    async def publish(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        account_id: str,
        content: PublishContent,
    ) -> PublishResult:
        self.check_length(content.text)
        post_id = await self.publish_post(client, access_token, account_id, content)
        result = PublishResult(external_post_id=post_id)
        if content.followup_comment:
            # the post is already live; a failed comment must not trigger a re-publish
            try:
                result.comment_id = await self.publish_comment(client, access_token, account_id, post_id, content.followup_comment)
            except (PermanentRejection, TransientFailure, RateLimited, AuthExpired) as exc:
                logger.warning("followup_comment_failed", platform=self.key, post_id=post_id, error=str(exc))
                result.comment_error = str(exc)
        return result

    async def publish_post(self, client: httpx.AsyncClient, access_token: str, account_id: str, content: PublishContent) -> str:
        raise NotImplementedError

    async def publish_comment(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        account_id: str,
        post_id: str,
        text: str,
    ) -> str:
        raise NotImplementedError
