import asyncio
from typing import Any, Dict, List, Optional

import pytest

from storefront.providers import CREDENTIALS, ProviderFailure, ProviderSuccess


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeImageProvider:
    """Returns a fresh URL per call and records what it was asked."""

    name = "fake-image"
    endpoint = "memory://image"
    timeout = 1.0
    has_token = True

    def __init__(self, fail_with: Optional[str] = None, delay: float = 0.0):
        self.calls: List[Dict[str, str]] = []
        self.fail_with = fail_with
        self.delay = delay

    async def generate(self, prompt: str, source_url: str):
        self.calls.append({"prompt": prompt, "source_url": source_url})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            return ProviderFailure(self.fail_with, f"fake failure: {self.fail_with}")
        return ProviderSuccess(f"https://cdn.example/gen/{len(self.calls)}.webp")


class FakeTextProvider:
    name = "fake-text"
    model = "fake-model"
    timeout = 1.0

    def __init__(self, reply: Optional[str] = None, delay: float = 0.0):
        self.reply = reply
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    @property
    def has_token(self) -> bool:
        return self.reply is not None

    async def complete(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.reply is None:
            return ProviderFailure(CREDENTIALS, "no key")
        return ProviderSuccess(self.reply)


@pytest.fixture
def clock():
    return FakeClock()
