# sns_publisher/platforms/threads.py
from typing import List

import httpx
import structlog

from sns_publisher.exceptions import PermanentRejection, TokenExchangeError
from sns_publisher.platforms.base import (
    Platform,
    PlatformConfig,
    Profile,
    PublishContent,
    TokenSet,
    is_video_url,
    json_or_none,
)

logger = structlog.get_logger(__name__)

# Threads API (Graph API based)
GRAPH_API_BASE = "https://graph.threads.net/v1.0"
LONG_LIVED_TOKEN_URL = "https://graph.threads.net/access_token"
MAX_CAROUSEL_ITEMS = 20


class ThreadsPlatform(Platform):
    config = PlatformConfig(
        key="threads",
        name="Threads",
        auth_url="https://threads.net/oauth/authorize",
        token_url="https://graph.threads.net/oauth/access_token",
        scopes=("threads_basic", "threads_content_publish", "threads_manage_replies"),
        char_limit=500,
    )

    async def exchange_code(self, client, client_id, client_secret, redirect_uri, code, code_verifier=None) -> TokenSet:
        body = await self._token_request(
            client,
            "POST",
            self.config.token_url,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
        )
        if not body.get("user_id"):
            raise TokenExchangeError("Threads token response had no user id")
        tokens = TokenSet(access_token=body["access_token"], account_id=str(body["user_id"]))
        return await self._exchange_long_lived(client, client_secret, tokens)

    async def _exchange_long_lived(self, client: httpx.AsyncClient, client_secret: str, tokens: TokenSet) -> TokenSet:
        """Short-lived tokens last an hour; keep the short one if the upgrade fails."""
        try:
            response = await client.get(
                LONG_LIVED_TOKEN_URL,
                params={
                    "grant_type": "th_exchange_token",
                    "client_secret": client_secret,
                    "access_token": tokens.access_token,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("long_lived_token_exchange_failed", platform=self.key, error=exc.__class__.__name__)
            return tokens
        body = json_or_none(response)
        if response.is_success and isinstance(body, dict) and body.get("access_token"):
            return TokenSet(
                access_token=body["access_token"],
                expires_in=body.get("expires_in"),
                account_id=tokens.account_id,
            )
        logger.warning("long_lived_token_exchange_failed", platform=self.key, status_code=response.status_code)
        return tokens

    async def fetch_profile(self, client, tokens: TokenSet) -> Profile:
        body = await self._profile_request(
            client,
            f"{GRAPH_API_BASE}/{tokens.account_id or 'me'}",
            params={
                "fields": "id,username,name,threads_profile_picture_url",
                "access_token": tokens.access_token,
            },
        )
        username = body.get("username")
        return Profile(
            account_id=str(body.get("id") or tokens.account_id),
            username=f"@{username}" if username else None,
            display_name=body.get("name") or username,
            avatar_url=body.get("threads_profile_picture_url"),
        )

    def _media_params(self, url: str) -> dict:
        if is_video_url(url):
            return {"media_type": "VIDEO", "video_url": url}
        return {"media_type": "IMAGE", "image_url": url}

    async def _create_container(self, client, access_token: str, user_id: str, params: dict) -> str:
        body = await self.request(
            client,
            "POST",
            f"{GRAPH_API_BASE}/{user_id}/threads",
            params=dict(params, access_token=access_token),
        )
        if not body.get("id"):
            raise PermanentRejection("Threads returned no container id", platform=self.key)
        return str(body["id"])

    async def _wait(self, client, access_token: str, container_id: str) -> None:
        await self.wait_until_ready(
            client,
            f"{GRAPH_API_BASE}/{container_id}",
            {"fields": "status,error_message", "access_token": access_token},
            "status",
        )

    async def _publish_container(self, client, access_token: str, user_id: str, container_id: str) -> str:
        body = await self.request(
            client,
            "POST",
            f"{GRAPH_API_BASE}/{user_id}/threads_publish",
            params={"creation_id": container_id, "access_token": access_token},
        )
        if not body.get("id"):
            raise PermanentRejection("Threads publish returned no id", platform=self.key)
        return str(body["id"])

    async def _carousel_items(self, client, access_token: str, user_id: str, media_urls: List[str]) -> List[str]:
        if len(media_urls) > MAX_CAROUSEL_ITEMS:
            raise PermanentRejection(f"Threads carousels hold at most {MAX_CAROUSEL_ITEMS} items", platform=self.key)
        item_ids = []
        for url in media_urls:
            params = dict(self._media_params(url), is_carousel_item="true")
            item_ids.append(await self._create_container(client, access_token, user_id, params))
        for item_id in item_ids:
            await self._wait(client, access_token, item_id)
        return item_ids

    async def publish_post(self, client, access_token: str, account_id: str, content: PublishContent) -> str:
        media = content.media_urls
        if not media:
            params = {"media_type": "TEXT", "text": content.text}
        elif len(media) == 1:
            params = dict(self._media_params(media[0]), text=content.text)
        else:
            children = await self._carousel_items(client, access_token, account_id, media)
            params = {"media_type": "CAROUSEL", "children": ",".join(children), "text": content.text}

        container_id = await self._create_container(client, access_token, account_id, params)
        if media:
            await self._wait(client, access_token, container_id)
        return await self._publish_container(client, access_token, account_id, container_id)

    async def publish_comment(self, client, access_token, account_id, post_id, text) -> str:
        self.check_length(text)
        container_id = await self._create_container(
            client,
            access_token,
            account_id,
            {"media_type": "TEXT", "text": text, "reply_to_id": post_id},
        )
        return await self._publish_container(client, access_token, account_id, container_id)
