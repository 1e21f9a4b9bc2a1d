# sns_publisher/platforms/facebook.py
import json
from typing import List, Tuple

from sns_publisher.exceptions import PermanentRejection
from sns_publisher.platforms.base import (
    Platform,
    PlatformConfig,
    Profile,
    PublishContent,
    TokenSet,
    is_video_url,
)

GRAPH_API_BASE = "https://graph.facebook.com/v18.0"


class FacebookPlatform(Platform):
    config = PlatformConfig(
        key="facebook",
        name="Facebook",
        auth_url="https://www.facebook.com/v18.0/dialog/oauth",
        token_url=f"{GRAPH_API_BASE}/oauth/access_token",
        scopes=("pages_show_list", "pages_manage_posts", "pages_read_engagement"),
        char_limit=63206,
    )

    async def exchange_code(self, client, client_id, client_secret, redirect_uri, code, code_verifier=None) -> TokenSet:
        body = await self._token_request(
            client,
            "GET",
            self.config.token_url,
            params={
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        return TokenSet(access_token=body["access_token"], expires_in=body.get("expires_in"))

    async def fetch_profile(self, client, tokens: TokenSet) -> Profile:
        body = await self._profile_request(
            client,
            f"{GRAPH_API_BASE}/me",
            params={"fields": "id,name,picture", "access_token": tokens.access_token},
        )
        picture = (body.get("picture") or {}).get("data") or {}
        return Profile(
            account_id=str(body.get("id")),
            username=body.get("name"),
            display_name=body.get("name"),
            avatar_url=picture.get("url"),
        )

    async def _resolve_target(self, client, access_token: str) -> Tuple[str, str]:
        """
        Posts go to the first managed page with that page's token; accounts
        without pages fall back to the user's own feed.
        """
        body = await self.request(client, "GET", f"{GRAPH_API_BASE}/me/accounts", params={"access_token": access_token})
        pages = body.get("data") or []
        if not pages:
            return "me", access_token
        page = pages[0]
        return str(page["id"]), page.get("access_token") or access_token

    async def _post_photos(self, client, target: str, token: str, media_urls: List[str], message: str) -> str:
        if len(media_urls) == 1:
            body = await self.request(
                client,
                "POST",
                f"{GRAPH_API_BASE}/{target}/photos",
                params={"url": media_urls[0], "caption": message, "access_token": token},
            )
            return str(body.get("post_id") or body.get("id"))

        # upload unpublished photos first, then attach them to one feed post
        photo_ids = []
        for url in media_urls:
            body = await self.request(
                client,
                "POST",
                f"{GRAPH_API_BASE}/{target}/photos",
                params={"url": url, "published": "false", "access_token": token},
            )
            photo_ids.append(str(body["id"]))
        params = {"message": message, "access_token": token}
        for i, photo_id in enumerate(photo_ids):
            params[f"attached_media[{i}]"] = json.dumps({"media_fbid": photo_id})
        body = await self.request(client, "POST", f"{GRAPH_API_BASE}/{target}/feed", params=params)
        return str(body["id"])

    async def publish_post(self, client, access_token: str, account_id: str, content: PublishContent) -> str:
        target, token = await self._resolve_target(client, access_token)
        media = content.media_urls
        videos = [url for url in media if is_video_url(url)]

        if videos:
            if len(media) > 1:
                raise PermanentRejection("Facebook video posts take a single video", platform=self.key)
            body = await self.request(
                client,
                "POST",
                f"{GRAPH_API_BASE}/{target}/videos",
                params={"file_url": videos[0], "description": content.text, "access_token": token},
            )
            post_id = body.get("id")
        elif media:
            post_id = await self._post_photos(client, target, token, media, content.text)
        else:
            body = await self.request(
                client,
                "POST",
                f"{GRAPH_API_BASE}/{target}/feed",
                params={"message": content.text, "access_token": token},
            )
            post_id = body.get("id")

        if not post_id or post_id == "None":
            raise PermanentRejection("Facebook returned no post id", platform=self.key)
        return str(post_id)

    async def publish_comment(self, client, access_token, account_id, post_id, text) -> str:
        # page posts only accept comments made with the page token
        _, token = await self._resolve_target(client, access_token)
        body = await self.request(
            client,
            "POST",
            f"{GRAPH_API_BASE}/{post_id}/comments",
            params={"message": text, "access_token": token},
        )
        return str(body.get("id"))
