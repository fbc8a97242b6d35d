"""Clients for the external generative providers.

Neither client raises to its caller. Every call resolves to a ``ProviderSuccess``
or a ``ProviderFailure`` with a reason code, so the orchestrator can decide what
to cache and what to report without inspecting log output.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ValidationError

log = logging.getLogger(__name__)

FAL_KEY = os.getenv("FAL_KEY", "").strip()
FAL_MODEL = os.getenv("FAL_MODEL", "fal-ai/nano-banana/edit").strip()
FAL_ENDPOINT = os.getenv("FAL_ENDPOINT", f"https://fal.run/{FAL_MODEL}").strip()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
TEXT_MODEL = os.getenv("TEXT_MODEL", "gpt-4.1-mini").strip()
TEXT_PROVIDER_ENDPOINT = os.getenv(
    "TEXT_PROVIDER_ENDPOINT", "https://api.openai.com/v1/chat/completions"
).strip()

try:
    IMAGE_TIMEOUT_SECS = float(os.getenv("IMAGE_TIMEOUT_SECS", "120"))
except ValueError:
    IMAGE_TIMEOUT_SECS = 120.0
try:
    TEXT_TIMEOUT_SECS = float(os.getenv("TEXT_TIMEOUT_SECS", "8"))
except ValueError:
    TEXT_TIMEOUT_SECS = 8.0

TIMEOUT = "timeout"
NETWORK = "network"
HTTP_STATUS = "http_status"
MALFORMED = "malformed"
CREDENTIALS = "credentials"


@dataclass(frozen=True)
class ProviderSuccess:
    value: str
    raw: Any = None
    elapsed_ms: int = 0
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class ProviderFailure:
    reason: str
    message: str
    elapsed_ms: int = 0
    ok: bool = field(default=False, init=False)


ProviderResult = Union[ProviderSuccess, ProviderFailure]


# Known image response shapes, tried in this order.
class _ImageRef(BaseModel):
    url: str


class _ImagesShape(BaseModel):
    images: List[_ImageRef]


class _SingleImageShape(BaseModel):
    image: _ImageRef


def extract_image_url(payload: Any) -> Optional[str]:
    """Return the artifact URL from a provider payload, or None if no known shape matches."""
    try:
        shaped = _ImagesShape.model_validate(payload)
        if shaped.images and shaped.images[0].url.strip():
            return shaped.images[0].url.strip()
    except ValidationError:
        pass
    try:
        single = _SingleImageShape.model_validate(payload)
        if single.image.url.strip():
            return single.image.url.strip()
    except ValidationError:
        pass
    return None


class _Message(BaseModel):
    content: Optional[str] = None


class _Choice(BaseModel):
    message: _Message


class _ChatShape(BaseModel):
    choices: List[_Choice]


def extract_chat_text(payload: Any) -> Optional[str]:
    try:
        shaped = _ChatShape.model_validate(payload)
    except ValidationError:
        return None
    if not shaped.choices:
        return None
    text = (shaped.choices[0].message.content or "").strip()
    return text or None


def _ms_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def _post_json(
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
    label: str,
) -> Union[Any, ProviderFailure]:
    """POST and decode JSON under a hard deadline; failures come back as ProviderFailure."""
    start = time.monotonic()

    async def _send() -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            return await client.post(url, headers=headers, json=body)

    try:
        resp = await asyncio.wait_for(_send(), timeout=timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        log.warning("%s: timed out after %.1fs", label, timeout)
        return ProviderFailure(TIMEOUT, f"{label} request timed out after {timeout:g}s", _ms_since(start))
    except httpx.HTTPError as exc:
        log.warning("%s: request error err=%r", label, exc)
        return ProviderFailure(NETWORK, f"{label} request failed: {exc}", _ms_since(start))

    if resp.status_code < 200 or resp.status_code >= 300:
        snippet = (resp.text or "")[:300]
        log.warning("%s: HTTP %s body=%s", label, resp.status_code, snippet)
        return ProviderFailure(HTTP_STATUS, f"{label} returned HTTP {resp.status_code}", _ms_since(start))
    try:
        return resp.json()
    except ValueError:
        log.warning("%s: non-JSON body", label)
        return ProviderFailure(MALFORMED, f"{label} returned a non-JSON body", _ms_since(start))


class ImageProvider:
    """Image-to-image edit via fal.ai: (prompt, source image URL) -> result image URL."""

    name = "fal"

    def __init__(
        self,
        api_key: str = FAL_KEY,
        endpoint: str = FAL_ENDPOINT,
        timeout: float = IMAGE_TIMEOUT_SECS,
        output_format: str = "webp",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.output_format = output_format
        self._transport = transport

    @property
    def has_token(self) -> bool:
        return bool(self.api_key)

    async def generate(self, prompt: str, source_url: str) -> ProviderResult:
        if not self.api_key:
            return ProviderFailure(CREDENTIALS, "image provider credentials are not configured")
        start = time.monotonic()
        body = {"prompt": prompt, "image_urls": [source_url], "output_format": self.output_format}
        headers = {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}
        data = await _post_json(self.endpoint, headers, body, self.timeout, self._transport, "image_provider")
        if isinstance(data, ProviderFailure):
            return data
        url = extract_image_url(data)
        if not url:
            log.warning("image_provider: no image in payload keys=%s", sorted(data) if isinstance(data, dict) else type(data).__name__)
            return ProviderFailure(MALFORMED, "image provider returned no image", _ms_since(start))
        return ProviderSuccess(url, data, _ms_since(start))


class TextProvider:
    """OpenAI-compatible chat completions."""

    name = "openai"

    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        endpoint: str = TEXT_PROVIDER_ENDPOINT,
        model: str = TEXT_MODEL,
        timeout: float = TEXT_TIMEOUT_SECS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self._transport = transport

    @property
    def has_token(self) -> bool:
        return bool(self.api_key)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: int = 200,
        temperature: float = 0.7,
        json_mode: bool = False,
        timeout: Optional[float] = None,
    ) -> ProviderResult:
        if not self.api_key:
            return ProviderFailure(CREDENTIALS, "text provider credentials are not configured")
        start = time.monotonic()
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        data = await _post_json(
            self.endpoint, headers, body, timeout or self.timeout, self._transport, "text_provider"
        )
        if isinstance(data, ProviderFailure):
            return data
        text = extract_chat_text(data)
        if text is None:
            log.warning("text_provider: empty completion")
            return ProviderFailure(MALFORMED, "text provider returned an empty completion", _ms_since(start))
        return ProviderSuccess(text, data, _ms_since(start))


def status(image: Optional[ImageProvider] = None, text: Optional[TextProvider] = None) -> Dict[str, Any]:
    image = image or ImageProvider()
    text = text or TextProvider()
    return {
        "image": {
            "provider": image.name,
            "endpoint": image.endpoint,
            "has_token": image.has_token,
            "timeout_secs": image.timeout,
        },
        "text": {
            "provider": text.name,
            "model": text.model,
            "has_token": text.has_token,
            "timeout_secs": text.timeout,
        },
        "using": "live" if image.has_token else "unconfigured",
    }
