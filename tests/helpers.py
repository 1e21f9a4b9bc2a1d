"""Helpers shared by test modules (fixtures live in conftest.py)."""

import json
from datetime import datetime, timezone
from typing import Callable, List

import httpx

NOW = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
TEST_KEY_HEX = "8f" * 32


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def form(request: httpx.Request) -> dict:
    return dict(httpx.QueryParams(request.content.decode()))


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)
