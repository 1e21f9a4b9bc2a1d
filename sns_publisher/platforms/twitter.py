# sns_publisher/platforms/twitter.py
import base64
from typing import Dict, List, Optional

import httpx

from sns_publisher.exceptions import AuthExpired, PermanentRejection, TokenExchangeError
from sns_publisher.platforms.base import (
    Platform,
    PlatformConfig,
    Profile,
    PublishContent,
    TokenSet,
    json_or_none,
    classify_twitter_response,
    guess_mime,
    is_video_url,
)

API_BASE = "https://api.twitter.com/2"
MEDIA_UPLOAD_URL = "https://api.x.com/2/media/upload"
MAX_MEDIA = 4


def _basic_auth(client_id: str, client_secret: str) -> str:
    return base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()


class TwitterPlatform(Platform):
    config = PlatformConfig(
        key="twitter",
        name="X (Twitter)",
        auth_url="https://twitter.com/i/oauth2/authorize",
        token_url=f"{API_BASE}/oauth2/token",
        scopes=("tweet.read", "tweet.write", "users.read", "offline.access", "media.write"),
        char_limit=280,
        scope_separator=" ",
        uses_pkce=True,
    )
    classify = staticmethod(classify_twitter_response)

    def authorization_params(
        self,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
    ) -> Dict[str, str]:
        params = super().authorization_params(client_id, redirect_uri, state)
        params["code_challenge"] = code_challenge or ""
        params["code_challenge_method"] = "S256"
        return params

    async def exchange_code(self, client, client_id, client_secret, redirect_uri, code, code_verifier=None) -> TokenSet:
        body = await self._token_request(
            client,
            "POST",
            self.config.token_url,
            headers={"Authorization": f"Basic {_basic_auth(client_id, client_secret)}"},
            data={
                "code": code,
                "grant_type": "authorization_code",
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier or "",
            },
        )
        return TokenSet(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
        )

    async def fetch_profile(self, client, tokens: TokenSet) -> Profile:
        body = await self._profile_request(
            client,
            f"{API_BASE}/users/me",
            params={"user.fields": "profile_image_url,name"},
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        data = body.get("data") or {}
        if not data.get("id"):
            raise TokenExchangeError("X profile response had no account id")
        return Profile(
            account_id=str(data["id"]),
            username=f"@{data.get('username')}" if data.get("username") else None,
            display_name=data.get("name"),
            avatar_url=data.get("profile_image_url"),
        )

    async def refresh(self, client, client_id, client_secret, refresh_token) -> TokenSet:
        if not refresh_token:
            return await super().refresh(client, client_id, client_secret, refresh_token)
        try:
            response = await client.post(
                self.config.token_url,
                headers={"Authorization": f"Basic {_basic_auth(client_id, client_secret)}"},
                data={"grant_type": "refresh_token", "refresh_token": refresh_token, "client_id": client_id},
            )
        except httpx.HTTPError as exc:
            raise AuthExpired(f"X token refresh failed: {exc.__class__.__name__}", platform=self.key)
        body = json_or_none(response) if response.is_success else None
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthExpired(f"X token refresh rejected (HTTP {response.status_code})", platform=self.key)
        return TokenSet(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
        )

    async def _upload_media(self, client, access_token: str, media_urls: List[str]) -> List[str]:
        if len(media_urls) > MAX_MEDIA:
            raise PermanentRejection(f"X allows at most {MAX_MEDIA} images per post", platform=self.key)
        media_ids = []
        for url in media_urls:
            if is_video_url(url):
                raise PermanentRejection("video attachments are not supported for X", platform=self.key)
            try:
                download = await client.get(url)
                download.raise_for_status()
            except httpx.HTTPError as exc:
                raise PermanentRejection(f"could not fetch media {url}: {exc.__class__.__name__}", platform=self.key)
            body = await self.request(
                client,
                "POST",
                MEDIA_UPLOAD_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                data={"media_category": "tweet_image"},
                files={"media": (url.rsplit("/", 1)[-1] or "media", download.content, guess_mime(url))},
            )
            media_id = (body.get("data") or {}).get("id") or body.get("media_id_string")
            if not media_id:
                raise PermanentRejection("X media upload returned no id", platform=self.key)
            media_ids.append(str(media_id))
        return media_ids

    def _tweet_id(self, body: dict) -> str:
        tweet_id = (body.get("data") or {}).get("id")
        if not tweet_id:
            raise PermanentRejection("X returned no tweet id", platform=self.key)
        return str(tweet_id)

    async def publish_post(self, client, access_token: str, account_id: str, content: PublishContent) -> str:
        payload: dict = {"text": content.text}
        if content.media_urls:
            # media must exist before the tweet that references it
            payload["media"] = {"media_ids": await self._upload_media(client, access_token, content.media_urls)}
        body = await self.request(
            client,
            "POST",
            f"{API_BASE}/tweets",
            headers={"Authorization": f"Bearer {access_token}"},
            json=payload,
        )
        return self._tweet_id(body)

    async def publish_comment(self, client, access_token, account_id, post_id, text) -> str:
        self.check_length(text)
        body = await self.request(
            client,
            "POST",
            f"{API_BASE}/tweets",
            headers={"Authorization": f"Bearer {access_token}"},
            json={"text": text, "reply": {"in_reply_to_tweet_id": post_id}},
        )
        return self._tweet_id(body)
