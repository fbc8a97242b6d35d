from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from storefront.cache import GenerationCache
from storefront.fingerprint import fingerprint
from storefront.llm_parsing import strip_wrapping_quotes
from storefront.models import RequestContext, SubjectMeta
from storefront.prompts import PromptStrategy, strategy_for
from storefront.providers import ImageProvider, ProviderFailure, TextProvider

log = logging.getLogger(__name__)

try:
    PROVIDER_MAX_IN_FLIGHT = int(os.getenv("PROVIDER_MAX_IN_FLIGHT", "8") or 8)
except ValueError:
    PROVIDER_MAX_IN_FLIGHT = 8
if PROVIDER_MAX_IN_FLIGHT < 1:
    PROVIDER_MAX_IN_FLIGHT = 1


@dataclass(frozen=True)
class GenerationOutcome:
    success: bool
    fingerprint: str
    artifact_url: Optional[str] = None
    generator_input: Optional[str] = None
    cached: bool = False
    error: Optional[str] = None
    reason: Optional[str] = None


class Orchestrator:
    """Turns a cache miss into a cache hit by calling the providers.

    Failures are returned, never cached and never retried here. Two concurrent
    misses on one key may both reach the provider; the later write simply replaces
    the earlier one.
    """

    def __init__(
        self,
        cache: GenerationCache,
        image_provider: ImageProvider,
        text_provider: Optional[TextProvider] = None,
        strategies: Optional[Mapping[str, PromptStrategy]] = None,
        max_in_flight: int = PROVIDER_MAX_IN_FLIGHT,
    ) -> None:
        self.cache = cache
        self.image_provider = image_provider
        self.text_provider = text_provider
        self.strategies = strategies
        self._slots = asyncio.Semaphore(max(1, max_in_flight))

    def key_for(self, context: RequestContext) -> str:
        return fingerprint(context.subject_identity, context.subject_kind, context)

    def lookup(self, context: RequestContext) -> Optional[GenerationOutcome]:
        key = self.key_for(context)
        entry = self.cache.get(key)
        if entry is None:
            return None
        return GenerationOutcome(
            success=True,
            fingerprint=key,
            artifact_url=entry.artifact,
            generator_input=entry.generator_input,
            cached=True,
        )

    async def scene_for(self, strategy: PromptStrategy, context: RequestContext, meta: SubjectMeta) -> str:
        """Ask the text provider for a scene; fall back to the strategy's fixed scene."""
        if self.text_provider is not None:
            result = await self.text_provider.complete(
                strategy.scene_messages(context, meta),
                max_tokens=strategy.max_tokens,
                temperature=strategy.temperature,
            )
            if result.ok:
                scene = strip_wrapping_quotes(result.value)
                if scene:
                    return scene
            else:
                log.info("generate.scene: text provider failed reason=%s; using fallback", result.reason)
        return strategy.fallback_scene(context, meta)

    async def generate(
        self,
        context: RequestContext,
        meta: Optional[SubjectMeta] = None,
        *,
        source_url: Optional[str] = None,
        force_regenerate: bool = False,
    ) -> GenerationOutcome:
        key = self.key_for(context)
        if not force_regenerate:
            hit = self.lookup(context)
            if hit is not None:
                log.info("generate.cache: hit key=%s", key[:12])
                return hit

        meta = meta or SubjectMeta()
        strategy = strategy_for(context.subject_kind, self.strategies)
        scene = await self.scene_for(strategy, context, meta)
        instruction = strategy.instruction(scene)

        async with self._slots:
            log.info(
                "generate.provider: calling kind=%s key=%s force=%s",
                context.subject_kind,
                key[:12],
                force_regenerate,
            )
            result = await self.image_provider.generate(instruction, source_url or context.subject_identity)

        if isinstance(result, ProviderFailure):
            log.warning("generate.provider: failed key=%s reason=%s", key[:12], result.reason)
            return GenerationOutcome(
                success=False,
                fingerprint=key,
                generator_input=scene,
                error=result.message,
                reason=result.reason,
            )

        self.cache.put(key, result.value, scene)
        log.info("generate.provider: stored key=%s elapsed_ms=%d", key[:12], result.elapsed_ms)
        return GenerationOutcome(
            success=True,
            fingerprint=key,
            artifact_url=result.value,
            generator_input=scene,
            cached=False,
        )
