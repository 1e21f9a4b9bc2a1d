# sns_publisher/platforms/registry.py
from typing import Awaitable, Callable, Dict, Optional, Type

import httpx

from sns_publisher.exceptions import PermanentRejection
from sns_publisher.platforms.base import Platform, PublishContent, PublishResult
from sns_publisher.platforms.facebook import FacebookPlatform
from sns_publisher.platforms.instagram import InstagramPlatform
from sns_publisher.platforms.retry import RetryPolicy
from sns_publisher.platforms.threads import ThreadsPlatform
from sns_publisher.platforms.twitter import TwitterPlatform

PLATFORM_CLASSES: Dict[str, Type[Platform]] = {
    cls.config.key: cls
    for cls in (TwitterPlatform, ThreadsPlatform, FacebookPlatform, InstagramPlatform)
}

API_PLATFORMS = frozenset(PLATFORM_CLASSES)
# platforms without a public API, serviced by the out-of-process worker
WORKER_PLATFORMS = frozenset({"naver_blog"})

PLATFORMS: Dict[str, Platform] = {key: cls() for key, cls in PLATFORM_CLASSES.items()}


def build_platforms(
    retry_policy: Optional[RetryPolicy] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Dict[str, Platform]:
    return {key: cls(retry_policy=retry_policy, sleep=sleep) for key, cls in PLATFORM_CLASSES.items()}


def get_platform(key: str, platforms: Optional[Dict[str, Platform]] = None) -> Platform:
    table = PLATFORMS if platforms is None else platforms
    try:
        return table[key]
    except KeyError:
        raise PermanentRejection(f"unsupported platform: {key}", platform=key)


async def publish(
    platform: str,
    access_token: str,
    account_id: str,
    content: PublishContent,
    client: httpx.AsyncClient,
    platforms: Optional[Dict[str, Platform]] = None,
) -> PublishResult:
    return await get_platform(platform, platforms).publish(client, access_token, account_id, content)
