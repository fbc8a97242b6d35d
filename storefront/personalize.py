"""Personalization Decision Engine.

Keyed by the campaign fingerprint rather than a subject, and producing a page
configuration (copy, product order, icons, theme) instead of an image URL. The
text provider is asked first; anything it gets wrong is coerced field by field,
and if it fails outright a keyword-matching fallback builds a complete config
with no network call.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from storefront.cache import (
    PERSONALIZE_CACHE_MAX_ENTRIES,
    PERSONALIZE_CACHE_TTL_SECONDS,
    GenerationCache,
)
from storefront.fingerprint import NO_CONTEXT_KEY, campaign_fingerprint
from storefront.llm_parsing import json_object_from_text
from storefront.models import (
    Intensity,
    PersonalizationConfig,
    PersonalizationCopy,
    PersonalizeRequest,
    ProductInfo,
)
from storefront.prompts import clean_utm_value, render
from storefront.providers import TextProvider

log = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


try:
    PERSONALIZE_WAIT_SECS = float(os.getenv("PERSONALIZE_WAIT_SECS", "10"))
except ValueError:
    PERSONALIZE_WAIT_SECS = 10.0
SAFETY_VALVE_MIN_VISIBLE = _env_int("SAFETY_VALVE_MIN_VISIBLE", 2)
THEME_COUNT = max(1, _env_int("THEME_COUNT", 10))

AVAILABLE_ICONS = (
    "paw-print", "heart", "star", "sparkles", "shield-check",
    "truck", "leaf", "award", "check-circle", "gift",
    "smile", "sun", "zap", "home", "package",
)

THEME_DESCRIPTIONS = (
    ("Bold Showcase", "products first, large 2-column grid, sticky vibe bar", "sales, new arrivals, product-focused campaigns"),
    ("Story First", "story block right after the hero, 4-column grid, section dividers", "brand storytelling, emotional or lifestyle campaigns"),
    ("Quick Shop", "products right after a compact hero, story block last", "flash sales, promotions, urgency"),
    ("Gallery", "standard order, large rounded cards, parallax hero", "visual, Instagram-style, curated collections"),
    ("Discovery", "story first, then collections, products last", "new visitors, exploration, broad audiences"),
    ("Premium", "standard order, extra spacing, image overlap, parallax hero", "premium or luxury positioning, high-value products"),
    ("Energetic", "4-column grid, compact hero, enlarged first card", "playful campaigns, young audience, TikTok-style"),
    ("Cozy Browse", "story first, rounded cards, extra spacing", "relaxed browsing, cozy themes, returning customers"),
    ("Impact", "products first, compact hero, enlarged first card", "bold launches, conversion-focused campaigns"),
    ("Clean Default", "standard order, subtle hover only", "generic traffic, unclear intent, direct visits"),
)

MAX_BOOST_TAGS = 5
HERO_TITLE_MAX = 60
FEATURED_TITLE_MAX = 60
IWT_TITLE_MAX = 50
IWT_BODY_MAX = 200
VIBE_BAR_MAX = 80
TRUST_ITEM_MAX = 30

DEFAULT_COPY = {
    "hero_title": "Pawsome Style for Your Fur Babies!",
    "featured_title": "Featured Products",
    "iwt_title": "Stay Happy",
    "iwt_body": "Try our toy subscription so you can keep your fur baby happy and surprised!",
    "vibe_bar_text": "Curated Just for You",
    "trust_items": ["Pet-Safe Materials", "Free Shipping", "100% Natural"],
}
DEFAULT_VIBE_ICON = "paw-print"
DEFAULT_TRUST_ICONS = ["shield-check", "truck", "leaf"]


@dataclass(frozen=True)
class KeywordTheme:
    name: str
    pattern: re.Pattern
    boost_tags: Tuple[str, ...]
    theme: int
    copy: Dict[str, Any]
    vibe_icon: str
    trust_icons: Tuple[str, str, str]


KEYWORD_THEMES: Tuple[KeywordTheme, ...] = (
    KeywordTheme(
        name="dog",
        pattern=re.compile(r"dog|puppy|pup|canine"),
        boost_tags=("dog",),
        theme=1,
        copy={
            "hero_title": "Pawsome Style for Your Pup!",
            "featured_title": "Best Picks for Your Dog",
            "iwt_title": "Keep Your Pup Happy",
            "iwt_body": "Try our toy subscription so you can keep your furry friend happy and surprised!",
            "vibe_bar_text": "Curated for Dog Lovers",
            "trust_items": ["Vet Approved", "Durable & Safe", "100% Natural"],
        },
        vibe_icon="heart",
        trust_icons=("shield-check", "award", "leaf"),
    ),
    KeywordTheme(
        name="cat",
        pattern=re.compile(r"cat|kitten|kitty|feline"),
        boost_tags=("cat",),
        theme=1,
        copy={
            "hero_title": "Purrfect Style for Your Cat!",
            "featured_title": "Purrfect Picks for Your Cat",
            "iwt_title": "Keep Your Cat Happy",
            "iwt_body": "Try our toy subscription so you can keep your feline friend happy and surprised!",
            "vibe_bar_text": "Curated for Cat Parents",
            "trust_items": ["Cat-Safe Materials", "Purr-fect Quality", "100% Natural"],
        },
        vibe_icon="heart",
        trust_icons=("shield-check", "star", "leaf"),
    ),
)


def campaign_text(req: PersonalizeRequest) -> str:
    """Lower-cased free text the keyword matchers look at (campaign, content, term)."""
    parts = (req.utm_campaign, req.utm_content, req.utm_term)
    return " ".join(clean_utm_value(p) for p in parts if p).lower()


def match_theme(req: PersonalizeRequest) -> Optional[KeywordTheme]:
    text = campaign_text(req)
    for kt in KEYWORD_THEMES:
        if kt.pattern.search(text):
            return kt
    return None


def select_theme(text: str, theme_count: int = THEME_COUNT) -> int:
    """Deterministically shard free text into one of ``theme_count`` themes (1-based)."""
    digest = hashlib.sha256((text or "").encode("utf-8")).hexdigest()
    return int(digest, 16) % max(1, theme_count) + 1


def gate_intensity(req: PersonalizeRequest) -> Intensity:
    if not req.has_utm():
        return "none"
    if match_theme(req) is not None:
        return "full"
    return "light"


def sort_handles_by_tags(products: Sequence[ProductInfo], boost_tags: Sequence[str]) -> List[str]:
    """Handles ordered by how many boost tags they carry; ties keep catalog order."""
    wanted = [b.lower() for b in boost_tags if b]

    def score(p: ProductInfo) -> int:
        tags = [t.lower() for t in p.tags]
        return sum(10 for b in wanted if any(b in t for t in tags))

    return [p.handle for p in sorted(products, key=score, reverse=True)]


def apply_relevance_filter(
    products: Sequence[ProductInfo],
    boost_tags: Sequence[str],
    min_visible: int = SAFETY_VALVE_MIN_VISIBLE,
) -> List[ProductInfo]:
    """Keep products matching a boost tag, unless that would leave fewer than ``min_visible``."""
    everything = list(products)
    wanted = [b.lower() for b in boost_tags if b]
    if not wanted:
        return everything
    kept = [p for p in everything if any(b in t.lower() for t in p.tags for b in wanted)]
    if len(kept) < min_visible:
        log.info(
            "personalize.filter: safety valve kept=%d min_visible=%d total=%d; showing all",
            len(kept),
            min_visible,
            len(everything),
        )
        return everything
    return kept


def build_fallback_config(req: PersonalizeRequest, theme_count: int = THEME_COUNT) -> PersonalizationConfig:
    """Keyword-matching config; no provider call, always complete."""
    products = list(req.products)
    intensity = gate_intensity(req)
    kt = match_theme(req)
    if kt is not None:
        return PersonalizationConfig(
            theme=min(kt.theme, theme_count),
            product_order=sort_handles_by_tags(products, kt.boost_tags),
            copy_=PersonalizationCopy(**kt.copy),
            vibe_icon=kt.vibe_icon,
            trust_icons=list(kt.trust_icons),
            intensity=intensity,
            boost_tags=list(kt.boost_tags),
        )
    if intensity == "none":
        theme = theme_count
    else:
        theme = select_theme(campaign_text(req) or (req.utm_source or ""), theme_count)
    return PersonalizationConfig(
        theme=theme,
        product_order=[p.handle for p in products],
        copy_=PersonalizationCopy(**DEFAULT_COPY),
        vibe_icon=DEFAULT_VIBE_ICON,
        trust_icons=list(DEFAULT_TRUST_ICONS),
        intensity=intensity,
        boost_tags=[],
    )


def _text(value: Any, limit: int, default: str) -> str:
    if not isinstance(value, str) or not value.strip():
        return default
    return value.strip()[:limit]


def _icon(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value in AVAILABLE_ICONS else default


def validate_config(
    raw: Any,
    products: Sequence[ProductInfo],
    intensity: Intensity = "light",
    theme_count: int = THEME_COUNT,
) -> PersonalizationConfig:
    """Coerce provider output into a complete config; bad fields take defaults."""
    raw = raw if isinstance(raw, dict) else {}
    handles = [p.handle for p in products]

    order_raw = raw.get("productOrder")
    if isinstance(order_raw, list):
        ordered: List[str] = []
        for h in order_raw:
            if isinstance(h, str) and h in handles and h not in ordered:
                ordered.append(h)
        product_order = ordered + [h for h in handles if h not in ordered]
    else:
        product_order = handles

    theme = raw.get("theme")
    if isinstance(theme, bool) or not isinstance(theme, int) or not 1 <= theme <= theme_count:
        theme = theme_count

    copy_raw = raw.get("copy") if isinstance(raw.get("copy"), dict) else {}
    trust_raw = copy_raw.get("trustItems")
    if isinstance(trust_raw, list) and len(trust_raw) >= 3:
        trust_items = [_text(str(v), TRUST_ITEM_MAX, DEFAULT_COPY["trust_items"][i]) for i, v in enumerate(trust_raw[:3])]
    else:
        trust_items = list(DEFAULT_COPY["trust_items"])
    copy = PersonalizationCopy(
        hero_title=_text(copy_raw.get("heroTitle"), HERO_TITLE_MAX, DEFAULT_COPY["hero_title"]),
        featured_title=_text(copy_raw.get("featuredTitle"), FEATURED_TITLE_MAX, DEFAULT_COPY["featured_title"]),
        iwt_title=_text(copy_raw.get("iwtTitle"), IWT_TITLE_MAX, DEFAULT_COPY["iwt_title"]),
        iwt_body=_text(copy_raw.get("iwtBody"), IWT_BODY_MAX, DEFAULT_COPY["iwt_body"]),
        vibe_bar_text=_text(copy_raw.get("vibeBarText"), VIBE_BAR_MAX, DEFAULT_COPY["vibe_bar_text"]),
        trust_items=trust_items,
    )

    icons_raw = raw.get("trustIcons")
    if isinstance(icons_raw, list) and len(icons_raw) >= 3:
        trust_icons = [_icon(icons_raw[i], DEFAULT_TRUST_ICONS[i]) for i in range(3)]
    else:
        trust_icons = list(DEFAULT_TRUST_ICONS)

    known_tags = {t.lower() for p in products for t in p.tags}
    tags_raw = raw.get("boostTags")
    tags_raw = tags_raw if isinstance(tags_raw, list) else []
    boost_tags: List[str] = []
    for t in tags_raw:
        if not isinstance(t, str):
            continue
        tag = t.strip().lower()
        if tag and tag not in boost_tags and (not known_tags or tag in known_tags):
            boost_tags.append(tag)
    return PersonalizationConfig(
        theme=theme,
        product_order=product_order,
        copy_=copy,
        vibe_icon=_icon(raw.get("vibeIcon"), DEFAULT_VIBE_ICON),
        trust_icons=trust_icons,
        intensity=intensity,
        boost_tags=boost_tags[:MAX_BOOST_TAGS],
    )


@dataclass(frozen=True)
class EffectPlan:
    apply_copy: bool = False
    show_banner: bool = False
    reorder: bool = False
    restructure: bool = False


def plan_effects(config: PersonalizationConfig) -> EffectPlan:
    if config.intensity == "full":
        return EffectPlan(apply_copy=True, show_banner=True, reorder=True, restructure=True)
    if config.intensity == "light":
        return EffectPlan(apply_copy=True, show_banner=True)
    return EffectPlan()


@dataclass(frozen=True)
class InstantLayout:
    intensity: Intensity
    order: List[str]
    visible: List[str]


def instant_layout(req: PersonalizeRequest, min_visible: int = SAFETY_VALVE_MIN_VISIBLE) -> InstantLayout:
    """The keyword-only sort/filter applied before any image is requested."""
    fallback = build_fallback_config(req)
    plan = plan_effects(fallback)
    products = list(req.products)
    order = fallback.product_order if plan.reorder else [p.handle for p in products]
    if plan.restructure:
        kept = {p.handle for p in apply_relevance_filter(products, fallback.boost_tags, min_visible)}
    else:
        kept = {p.handle for p in products}
    return InstantLayout(
        intensity=fallback.intensity,
        order=order,
        visible=[h for h in order if h in kept],
    )


def utm_lines(req: PersonalizeRequest) -> List[str]:
    labelled = (
        ("Traffic source", req.utm_source),
        ("Medium", req.utm_medium),
        ("Campaign", req.utm_campaign),
        ("Ad content", req.utm_content),
        ("Keywords/Audience", req.utm_term),
    )
    return [f"{label}: {clean_utm_value(v)}" for label, v in labelled if v and v.strip()]


def personalize_messages(req: PersonalizeRequest, theme_count: int = THEME_COUNT) -> List[Dict[str, str]]:
    system = render(
        "personalize_system.j2",
        theme_count=theme_count,
        themes=THEME_DESCRIPTIONS[:theme_count],
        icons=AVAILABLE_ICONS,
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": render("personalize_user.j2", utm_lines=utm_lines(req), products=req.products)},
    ]


@dataclass(frozen=True)
class PersonalizeOutcome:
    config: PersonalizationConfig
    cached: bool = False
    source: str = "fallback"
    key: str = NO_CONTEXT_KEY


def new_personalize_cache(**kwargs: Any) -> GenerationCache:
    kwargs.setdefault("ttl_seconds", PERSONALIZE_CACHE_TTL_SECONDS)
    kwargs.setdefault("max_entries", PERSONALIZE_CACHE_MAX_ENTRIES)
    kwargs.setdefault("name", "personalize")
    return GenerationCache(**kwargs)


class PersonalizationEngine:
    """Cache + text provider + fallback for campaign configs.

    Only provider-produced configs are cached. A fallback is cheap to rebuild and
    caching it would pin a degraded answer for the whole TTL.
    """

    def __init__(
        self,
        cache: Optional[GenerationCache] = None,
        text_provider: Optional[TextProvider] = None,
        wait_bound: float = PERSONALIZE_WAIT_SECS,
        theme_count: int = THEME_COUNT,
    ) -> None:
        self.cache = cache if cache is not None else new_personalize_cache()
        self.text_provider = text_provider
        self.wait_bound = wait_bound
        self.theme_count = theme_count

    def cached_config(self, key: str) -> Optional[PersonalizationConfig]:
        entry = self.cache.get(key)
        if entry is None:
            return None
        try:
            return PersonalizationConfig.model_validate_json(entry.artifact)
        except ValidationError as exc:
            log.warning("personalize.cache: unreadable entry key=%s err=%s", key[:12], exc)
            return None

    async def _ask_provider(self, req: PersonalizeRequest, intensity: Intensity) -> Optional[PersonalizationConfig]:
        if self.text_provider is None:
            return None
        result = await self.text_provider.complete(
            personalize_messages(req, self.theme_count),
            max_tokens=800,
            temperature=0.6,
            json_mode=True,
            timeout=self.wait_bound,
        )
        if not result.ok:
            log.warning("personalize.llm: provider failed reason=%s", result.reason)
            return None
        try:
            raw = json_object_from_text(result.value)
        except ValueError as exc:
            log.warning("personalize.llm: unparseable response err=%s", exc)
            return None
        return validate_config(raw, req.products, intensity, self.theme_count)

    async def personalize(self, req: PersonalizeRequest) -> PersonalizeOutcome:
        if not req.has_utm():
            return PersonalizeOutcome(config=build_fallback_config(req, self.theme_count))

        key = campaign_fingerprint(req)
        hit = self.cached_config(key)
        if hit is not None:
            log.info("personalize.cache: hit key=%s", key[:12])
            return PersonalizeOutcome(config=hit, cached=True, source="cache", key=key)

        intensity = gate_intensity(req)
        log.info(
            "personalize.llm: calling source=%s campaign=%s products=%d",
            req.utm_source,
            req.utm_campaign,
            len(req.products),
        )
        try:
            config = await asyncio.wait_for(self._ask_provider(req, intensity), timeout=self.wait_bound)
        except asyncio.TimeoutError:
            log.warning("personalize.llm: no answer within %.1fs; using fallback", self.wait_bound)
            config = None
        if config is None:
            return PersonalizeOutcome(config=build_fallback_config(req, self.theme_count), key=key)

        payload = config.model_dump_json(by_alias=True)
        self.cache.put(key, payload, campaign_text(req))
        log.info("personalize.llm: stored key=%s theme=%d intensity=%s", key[:12], config.theme, config.intensity)
        return PersonalizeOutcome(config=config, source="llm", key=key)
