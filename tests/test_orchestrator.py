import asyncio

from conftest import FakeImageProvider, FakeTextProvider

from storefront.cache import GenerationCache
from storefront.models import RequestContext, SubjectMeta
from storefront.orchestrator import Orchestrator
from storefront.providers import TIMEOUT


def _ctx(campaign="dog_sale", subject="https://x/a.jpg", kind="product"):
    return RequestContext(
        traffic_source="instagram",
        time_of_day="evening",
        season="autumn",
        utm_source="instagram",
        utm_campaign=campaign,
        subject_kind=kind,
        subject_identity=subject,
    )


def test_miss_then_hit(clock):
    image = FakeImageProvider()
    orch = Orchestrator(GenerationCache(clock=clock), image)
    first = asyncio.run(orch.generate(_ctx()))
    assert first.success and first.cached is False
    second = asyncio.run(orch.generate(_ctx()))
    assert second.cached is True
    assert second.artifact_url == first.artifact_url
    assert len(image.calls) == 1


def test_force_regenerate_bypasses_and_overwrites(clock):
    image = FakeImageProvider()
    orch = Orchestrator(GenerationCache(clock=clock), image)
    first = asyncio.run(orch.generate(_ctx()))
    forced = asyncio.run(orch.generate(_ctx(), force_regenerate=True))
    assert forced.cached is False
    assert forced.artifact_url != first.artifact_url
    assert len(image.calls) == 2
    again = asyncio.run(orch.generate(_ctx()))
    assert again.cached is True and again.artifact_url == forced.artifact_url


def test_failures_are_reported_and_not_cached(clock):
    image = FakeImageProvider(fail_with=TIMEOUT)
    cache = GenerationCache(clock=clock)
    orch = Orchestrator(cache, image)
    outcome = asyncio.run(orch.generate(_ctx()))
    assert outcome.success is False
    assert outcome.reason == TIMEOUT
    assert outcome.error
    assert len(cache) == 0
    asyncio.run(orch.generate(_ctx()))
    assert len(image.calls) == 2


def test_different_campaigns_do_not_share_entries(clock):
    image = FakeImageProvider()
    orch = Orchestrator(GenerationCache(clock=clock), image)
    dogs = asyncio.run(orch.generate(_ctx(campaign="dogs")))
    cats = asyncio.run(orch.generate(_ctx(campaign="cats")))
    assert dogs.fingerprint != cats.fingerprint
    assert cats.cached is False


def test_scene_comes_from_text_provider_when_available(clock):
    image = FakeImageProvider()
    text = FakeTextProvider(reply='"Golden retriever napping beside the product"')
    orch = Orchestrator(GenerationCache(clock=clock), image, text)
    outcome = asyncio.run(orch.generate(_ctx(), SubjectMeta(product_name="Rope")))
    assert outcome.generator_input == "Golden retriever napping beside the product"
    assert "Golden retriever napping" in image.calls[0]["prompt"]
    assert "Rope" in text.calls[0]["messages"][1]["content"]


def test_scene_falls_back_when_text_provider_fails(clock):
    image = FakeImageProvider()
    orch = Orchestrator(GenerationCache(clock=clock), image, FakeTextProvider(reply=None))
    outcome = asyncio.run(orch.generate(_ctx()))
    assert outcome.success
    assert "golden hour" in outcome.generator_input
    assert "autumn" in outcome.generator_input


def test_source_url_defaults_to_subject_identity(clock):
    image = FakeImageProvider()
    orch = Orchestrator(GenerationCache(clock=clock), image)
    asyncio.run(orch.generate(_ctx(subject="https://x/b.jpg")))
    asyncio.run(orch.generate(_ctx(subject="sku-1"), source_url="https://x/c.jpg", force_regenerate=True))
    assert [c["source_url"] for c in image.calls] == ["https://x/b.jpg", "https://x/c.jpg"]


def test_concurrent_misses_converge_on_one_valid_entry(clock):
    image = FakeImageProvider(delay=0.01)
    cache = GenerationCache(clock=clock)
    orch = Orchestrator(cache, image)

    async def both():
        return await asyncio.gather(orch.generate(_ctx()), orch.generate(_ctx()))

    a, b = asyncio.run(both())
    assert a.success and b.success
    assert len(image.calls) == 2
    entry = cache.get(a.fingerprint)
    assert entry is not None
    assert entry.artifact in (a.artifact_url, b.artifact_url)
    assert len(cache) == 1


def test_in_flight_cap_limits_provider_concurrency(clock):
    active = {"now": 0, "peak": 0}

    class Tracking(FakeImageProvider):
        async def generate(self, prompt, source_url):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return await super().generate(prompt, source_url)

    async def run():
        # the semaphore binds to the running loop on first use
        orch = Orchestrator(GenerationCache(clock=clock), Tracking(), max_in_flight=2)
        await asyncio.gather(*(orch.generate(_ctx(subject=f"s{i}")) for i in range(6)))

    asyncio.run(run())
    assert active["peak"] == 2
