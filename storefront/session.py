"""Page-load coordinator for the storefront script.

One ``PageSession`` lives for a browsing session. ``load_page`` runs the
sequence every page view follows:

1. settle the session UTM and apply the instant keyword sort/filter,
2. start the AI personalization phase (bounded wait, fallback on timeout),
3. for each still-visible subject, serve from the mirror or queue a fetch,
4. drain the queue through the concurrency gate, applying results as they land.

Step 1 always finishes before step 4 starts, so filtered-out subjects never
cost a provider call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence

from storefront.context import normalize
from storefront.gate import ConcurrencyGate, GateResult
from storefront.mirror import MirrorCache, SessionUtm
from storefront.models import PersonalizationConfig, PersonalizeRequest, ProductInfo, RawSignals, SubjectMeta
from storefront.personalize import (
    PERSONALIZE_WAIT_SECS,
    InstantLayout,
    PersonalizationEngine,
    build_fallback_config,
    instant_layout,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageSubject:
    identity: str
    kind: str = "product"
    handle: Optional[str] = None
    meta: SubjectMeta = field(default_factory=SubjectMeta)


Fetcher = Callable[[PageSubject, Mapping[str, str]], Awaitable[Optional[str]]]
Applier = Callable[[PageSubject, str, bool], Any]


@dataclass
class PageReport:
    layout: InstantLayout
    config: Optional[PersonalizationConfig] = None
    from_mirror: List[str] = field(default_factory=list)
    generated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    hidden: List[str] = field(default_factory=list)


class PageSession:
    def __init__(
        self,
        fetch: Fetcher,
        apply: Applier,
        engine: Optional[PersonalizationEngine] = None,
        mirror: Optional[MirrorCache] = None,
        gate: Optional[ConcurrencyGate] = None,
        shop_host: str = "",
        wait_bound: float = PERSONALIZE_WAIT_SECS,
        on_layout: Optional[Callable[[InstantLayout], Any]] = None,
    ) -> None:
        self.fetch = fetch
        self.apply = apply
        self.engine = engine
        self.mirror = mirror if mirror is not None else MirrorCache()
        self.gate = gate if gate is not None else ConcurrencyGate()
        self.utm = SessionUtm(shop_host)
        self.wait_bound = wait_bound
        self.on_layout = on_layout

    async def _config_within_bound(self, req: PersonalizeRequest) -> PersonalizationConfig:
        if self.engine is None or not req.has_utm():
            return build_fallback_config(req)
        try:
            outcome = await asyncio.wait_for(self.engine.personalize(req), timeout=self.wait_bound)
        except asyncio.TimeoutError:
            log.warning("session.personalize: exceeded %.1fs; applying fallback", self.wait_bound)
            return build_fallback_config(req)
        return outcome.config

    async def load_page(
        self,
        subjects: Sequence[PageSubject],
        products: Sequence[ProductInfo] = (),
        url_utm: Optional[Mapping[str, Optional[str]]] = None,
        referrer: Optional[str] = None,
    ) -> PageReport:
        utm = self.utm.observe(url_utm, referrer)
        req = PersonalizeRequest(products=list(products), **utm)

        layout = instant_layout(req)
        if self.on_layout is not None:
            self.on_layout(layout)
        report = PageReport(layout=layout)

        visible_handles = set(layout.visible)
        visible: List[PageSubject] = []
        for s in subjects:
            if s.handle is not None and s.handle not in visible_handles:
                report.hidden.append(s.identity)
            else:
                visible.append(s)

        config_task = asyncio.ensure_future(self._config_within_bound(req))

        pending: List[PageSubject] = []
        for s in visible:
            hit = self.mirror.get(s.identity, utm)
            if hit is not None:
                self.apply(s, hit.artifact_url, hit.animate)
                report.from_mirror.append(s.identity)
            else:
                pending.append(s)
        log.info(
            "session.load: visible=%d hidden=%d mirror_hits=%d to_fetch=%d",
            len(visible),
            len(report.hidden),
            len(report.from_mirror),
            len(pending),
        )

        def landed(res: GateResult[PageSubject, Optional[str]]) -> None:
            subject = res.item
            if res.ok and res.value:
                # stale results are still kept for the next view of this subject
                self.mirror.set(subject.identity, utm, res.value)
            if res.stale:
                report.stale.append(subject.identity)
                return
            if not res.ok or not res.value:
                report.failed.append(subject.identity)
                return
            self.apply(subject, res.value, True)
            report.generated.append(subject.identity)

        async def worker(subject: PageSubject) -> Optional[str]:
            return await self.fetch(subject, utm)

        try:
            await self.gate.run(pending, worker, on_result=landed)
        finally:
            report.config = await config_task
        return report

    def navigate(self) -> int:
        """The shopper left the page; in-flight results will be discarded."""
        return self.gate.invalidate()

    def end(self) -> None:
        self.mirror.end_session()
        self.utm.clear()


def orchestrator_fetcher(orchestrator: Any, weather_lookup: Any = None) -> Fetcher:
    """Adapt an in-process ``Orchestrator`` to the fetcher signature."""

    async def fetch(subject: PageSubject, utm: Mapping[str, str]) -> Optional[str]:
        ctx = await normalize(
            RawSignals(**dict(utm)),
            subject_kind=subject.kind,
            subject_identity=subject.identity,
            weather_lookup=weather_lookup,
        )
        outcome = await orchestrator.generate(ctx, subject.meta, source_url=subject.identity)
        return outcome.artifact_url if outcome.success else None

    return fetch
