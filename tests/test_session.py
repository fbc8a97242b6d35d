import asyncio

from conftest import FakeImageProvider, FakeTextProvider

from storefront.cache import GenerationCache
from storefront.gate import ConcurrencyGate
from storefront.mirror import MirrorCache
from storefront.models import ProductInfo
from storefront.orchestrator import Orchestrator
from storefront.personalize import PersonalizationEngine, new_personalize_cache
from storefront.session import PageSession, PageSubject, orchestrator_fetcher

CATALOG = [
    ProductInfo(handle="cat-tree", tags=["cat"]),
    ProductInfo(handle="dog-harness", tags=["dog"]),
    ProductInfo(handle="dog-bed", tags=["dog"]),
]
SUBJECTS = [
    PageSubject(identity="https://x/hero.jpg", kind="banner"),
    PageSubject(identity="https://x/cat-tree.jpg", handle="cat-tree"),
    PageSubject(identity="https://x/dog-harness.jpg", handle="dog-harness"),
    PageSubject(identity="https://x/dog-bed.jpg", handle="dog-bed"),
]


class Recorder:
    def __init__(self):
        self.fetched = []
        self.applied = []
        self.layout_seen_before_first_fetch = None
        self.layouts = []

    async def fetch(self, subject, utm):
        if self.layout_seen_before_first_fetch is None:
            self.layout_seen_before_first_fetch = bool(self.layouts)
        self.fetched.append(subject.identity)
        await asyncio.sleep(0)
        return f"https://cdn/{subject.identity.rsplit('/', 1)[-1]}.webp"

    def apply(self, subject, url, animate):
        self.applied.append((subject.identity, url, animate))


def _session(rec, clock, **kw):
    return PageSession(
        rec.fetch,
        rec.apply,
        mirror=MirrorCache(clock=clock),
        gate=ConcurrencyGate(batch_size=2),
        shop_host="shop.example",
        on_layout=rec.layouts.append,
        **kw,
    )


def test_filter_happens_before_any_fetch_and_hidden_subjects_cost_nothing(clock):
    rec = Recorder()
    session = _session(rec, clock)
    report = asyncio.run(
        session.load_page(SUBJECTS, CATALOG, {"utm_source": "ig", "utm_campaign": "dog_days"})
    )
    assert rec.layout_seen_before_first_fetch is True
    assert report.hidden == ["https://x/cat-tree.jpg"]
    assert "https://x/cat-tree.jpg" not in rec.fetched
    assert sorted(report.generated) == sorted(
        ["https://x/hero.jpg", "https://x/dog-harness.jpg", "https://x/dog-bed.jpg"]
    )
    assert all(animate for _, _, animate in rec.applied)
    assert report.config.intensity == "full"


def test_repeat_view_is_served_from_mirror_without_animation(clock):
    rec = Recorder()
    session = _session(rec, clock)
    utm = {"utm_source": "ig"}
    asyncio.run(session.load_page(SUBJECTS[:2], CATALOG, utm))
    rec.applied.clear()
    fetched_before = len(rec.fetched)

    report = asyncio.run(session.load_page(SUBJECTS[:2], CATALOG, {}, "https://shop.example/products/x"))
    assert len(rec.fetched) == fetched_before
    assert sorted(report.from_mirror) == ["https://x/cat-tree.jpg", "https://x/hero.jpg"]
    assert all(animate is False for _, _, animate in rec.applied)


def test_new_campaign_in_same_session_refetches(clock):
    rec = Recorder()
    session = _session(rec, clock)
    asyncio.run(session.load_page(SUBJECTS[:1], CATALOG, {"utm_campaign": "spring"}))
    report = asyncio.run(session.load_page(SUBJECTS[:1], CATALOG, {"utm_campaign": "summer"}))
    assert report.from_mirror == []
    assert rec.fetched == ["https://x/hero.jpg", "https://x/hero.jpg"]


def test_failed_fetch_leaves_subject_untouched(clock):
    rec = Recorder()

    async def failing(subject, utm):
        return None

    session = PageSession(failing, rec.apply, mirror=MirrorCache(clock=clock))
    report = asyncio.run(session.load_page(SUBJECTS[:1]))
    assert report.failed == ["https://x/hero.jpg"]
    assert rec.applied == []
    assert len(session.mirror) == 0


def test_navigation_discards_in_flight_results(clock):
    rec = Recorder()
    holder = {}

    async def fetch(subject, utm):
        holder["session"].navigate()
        await asyncio.sleep(0)
        return "https://cdn/late.webp"

    session = PageSession(fetch, rec.apply, mirror=MirrorCache(clock=clock), gate=ConcurrencyGate(batch_size=1))
    holder["session"] = session
    report = asyncio.run(session.load_page(SUBJECTS[:3]))
    assert rec.applied == []
    assert len(report.stale) == 1
    # the late result is not applied but is remembered for the next view
    assert len(session.mirror) == 1


def test_slow_personalization_falls_back_within_bound(clock):
    rec = Recorder()
    slow = PersonalizationEngine(new_personalize_cache(clock=clock), FakeTextProvider(reply="{}", delay=1.0))
    session = _session(rec, clock, engine=slow, wait_bound=0.05)
    report = asyncio.run(session.load_page(SUBJECTS[:1], CATALOG, {"utm_source": "ig", "utm_campaign": "cats"}))
    assert report.config is not None
    assert report.config.boost_tags == ["cat"]


def test_end_clears_session_state(clock):
    rec = Recorder()
    session = _session(rec, clock)
    asyncio.run(session.load_page(SUBJECTS[:1], CATALOG, {"utm_source": "ig"}))
    session.end()
    assert len(session.mirror) == 0
    assert session.utm.active == {}


def test_orchestrator_fetcher_end_to_end(clock):
    image = FakeImageProvider()
    orch = Orchestrator(GenerationCache(clock=clock), image)
    rec = Recorder()
    session = PageSession(orchestrator_fetcher(orch), rec.apply, mirror=MirrorCache(clock=clock))
    report = asyncio.run(session.load_page(SUBJECTS[:2], CATALOG, {"utm_source": "tt"}))
    assert len(report.generated) == 2
    assert {c["source_url"] for c in image.calls} == {"https://x/hero.jpg", "https://x/cat-tree.jpg"}
