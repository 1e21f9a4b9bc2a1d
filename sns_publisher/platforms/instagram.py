# sns_publisher/platforms/instagram.py
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

GRAPH_API_BASE = "https://graph.instagram.com"
MAX_CAROUSEL_ITEMS = 10


class InstagramPlatform(Platform):
    config = PlatformConfig(
        key="instagram",
        name="Instagram",
        auth_url="https://api.instagram.com/oauth/authorize",
        token_url="https://api.instagram.com/oauth/access_token",
        scopes=("instagram_basic", "instagram_content_publish"),
        char_limit=2200,
    )
    # reels take longer to process than Threads containers
    poll_attempts = 30
    poll_interval = 5.0

    async def exchange_code(self, client, client_id, client_secret, redirect_uri, code, code_verifier=None) -> TokenSet:
        body = await self._token_request(
            client,
            "POST",
            self.config.token_url,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        if not body.get("user_id"):
            raise TokenExchangeError("Instagram token response had no user id")
        tokens = TokenSet(access_token=body["access_token"], account_id=str(body["user_id"]))

        try:
            response = await client.get(
                f"{GRAPH_API_BASE}/access_token",
                params={
                    "grant_type": "ig_exchange_token",
                    "client_secret": client_secret,
                    "access_token": tokens.access_token,
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("long_lived_token_exchange_failed", platform=self.key, error=exc.__class__.__name__)
            return tokens
        long_lived = json_or_none(response)
        if not response.is_success or not isinstance(long_lived, dict) or not long_lived.get("access_token"):
            logger.warning("long_lived_token_exchange_failed", platform=self.key, status_code=response.status_code)
            return tokens
        return TokenSet(
            access_token=long_lived["access_token"],
            expires_in=long_lived.get("expires_in"),
            account_id=tokens.account_id,
        )

    async def fetch_profile(self, client, tokens: TokenSet) -> Profile:
        body = await self._profile_request(
            client,
            f"{GRAPH_API_BASE}/{tokens.account_id or 'me'}",
            params={"fields": "id,username,account_type", "access_token": tokens.access_token},
        )
        username = body.get("username")
        return Profile(
            account_id=str(body.get("id") or tokens.account_id),
            username=f"@{username}" if username else None,
            display_name=username,
        )

    async def _create_container(self, client, access_token: str, user_id: str, params: dict) -> str:
        body = await self.request(
            client,
            "POST",
            f"{GRAPH_API_BASE}/{user_id}/media",
            params=dict(params, access_token=access_token),
        )
        if not body.get("id"):
            raise PermanentRejection("Instagram returned no container id", platform=self.key)
        return str(body["id"])

    async def _wait(self, client, access_token: str, container_id: str) -> None:
        await self.wait_until_ready(
            client,
            f"{GRAPH_API_BASE}/{container_id}",
            {"fields": "status_code", "access_token": access_token},
            "status_code",
        )

    def _media_params(self, url: str) -> dict:
        if is_video_url(url):
            return {"media_type": "REELS", "video_url": url}
        return {"image_url": url}

    async def _carousel(self, client, access_token: str, user_id: str, media_urls: List[str], caption: str) -> str:
        children = []
        for url in media_urls:
            params = dict(self._media_params(url), is_carousel_item="true")
            if params.get("media_type") == "REELS":
                params["media_type"] = "VIDEO"
            child_id = await self._create_container(client, access_token, user_id, params)
            await self._wait(client, access_token, child_id)
            children.append(child_id)
        return await self._create_container(
            client,
            access_token,
            user_id,
            {"media_type": "CAROUSEL", "children": ",".join(children), "caption": caption},
        )

    async def publish_post(self, client, access_token: str, account_id: str, content: PublishContent) -> str:
        media = content.media_urls
        if not media:
            raise PermanentRejection("Instagram posts need at least one image or video", platform=self.key)
        if len(media) > MAX_CAROUSEL_ITEMS:
            raise PermanentRejection(f"Instagram carousels hold at most {MAX_CAROUSEL_ITEMS} items", platform=self.key)

        if len(media) == 1:
            params = dict(self._media_params(media[0]), caption=content.text)
            container_id = await self._create_container(client, access_token, account_id, params)
        else:
            container_id = await self._carousel(client, access_token, account_id, media, content.text)
        await self._wait(client, access_token, container_id)

        body = await self.request(
            client,
            "POST",
            f"{GRAPH_API_BASE}/{account_id}/media_publish",
            params={"creation_id": container_id, "access_token": access_token},
        )
        if not body.get("id"):
            raise PermanentRejection("Instagram publish returned no media id", platform=self.key)
        return str(body["id"])

    async def publish_comment(self, client, access_token, account_id, post_id, text) -> str:
        self.check_length(text)
        body = await self.request(
            client,
            "POST",
            f"{GRAPH_API_BASE}/{post_id}/comments",
            params={"message": text, "access_token": access_token},
        )
        return str(body.get("id"))
