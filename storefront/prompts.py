"""Prompt strategies, one per subject kind.

A strategy turns (context, subject metadata) into chat messages for the text
provider, a deterministic fallback scene for when that provider is unavailable,
and the final image instruction. The instruction is where creative latitude
lives: product strategies may restage but must keep the product literal,
banner/text-block strategies may re-imagine the whole composition, collection
strategies re-compose while keeping product identity.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional
from urllib.parse import unquote_plus

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from storefront.models import RequestContext, SubjectMeta
from storefront.platforms import style_hint

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)

_WS_RE = re.compile(r"\s+")
_PET_PATTERNS = (
    re.compile(r"\b(cat|cats|kitten|kittens|feline)\b", re.IGNORECASE),
    re.compile(r"\b(dog|dogs|puppy|puppies|canine)\b", re.IGNORECASE),
    re.compile(
        r"\b(golden.?retriever|corgi|bulldog|poodle|labrador|husky|beagle|terrier|shiba"
        r"|persian|siamese|maine.?coon|ragdoll|british.?shorthair)\b",
        re.IGNORECASE,
    ),
)

_PRODUCT_SCENES = {
    "morning": "Product prominently displayed on natural wood surface, curious puppy peeking from behind, soft morning light, cozy home setting",
    "afternoon": "Product hero shot on clean surface, playful cat paw reaching toward it, bright natural lighting, premium pet lifestyle aesthetic",
    "evening": "Product on cozy blanket surface, sleepy dog curled up nearby, warm golden hour glow through window, homey atmosphere",
    "night": "Product elegantly lit on textured surface, peaceful sleeping pet in soft focus background, warm ambient lighting, serene mood",
}
_BANNER_SCENES = {
    "morning": "Golden retriever stretching in warm morning sunlight, modern living room with designer pet bed, fresh energetic start to the day",
    "afternoon": "Playful corgi mid-action in bright airy space, natural window light, joyful dynamic energy, happy pet parent lifestyle",
    "evening": "Cat curled up on soft blanket with golden hour glow streaming through window, cozy warm atmosphere, cinematic warmth",
    "night": "Peaceful sleeping puppy in elegant home setting, soft ambient lighting, calm serene mood, premium comfort aesthetic",
}
_SEASON_MOODS = {
    "spring": "fresh spring energy with blooming pet-friendly plants nearby",
    "summer": "bright vibrant summer vibes with happy energetic pet presence",
    "autumn": "warm cozy autumn tones with snuggly pet atmosphere",
    "winter": "crisp elegant winter mood with cozy indoor pet comfort",
}


def render(template: str, **values) -> str:
    return _env.get_template(template).render(**values).strip()


def clean_utm_value(value: str) -> str:
    try:
        decoded = unquote_plus(value)
    except (TypeError, ValueError):
        decoded = value
    return _WS_RE.sub(" ", decoded).strip()


def extract_pet_keywords(text: str) -> List[str]:
    found: List[str] = []
    for pattern in _PET_PATTERNS:
        for m in pattern.finditer(text or ""):
            kw = m.group(0).lower()
            if kw not in found:
                found.append(kw)
    return found


def format_utm_info(ctx: RequestContext) -> str:
    parts: List[str] = []
    values: List[str] = []
    labelled = (
        ("utm_source", ctx.utm_source),
        ("utm_medium", ctx.utm_medium),
        ("utm_campaign", ctx.utm_campaign),
        ("utm_content", ctx.utm_content),
        ("utm_term (audience/targeting)", ctx.utm_term),
    )
    for label, raw in labelled:
        if not raw:
            continue
        cleaned = clean_utm_value(raw)
        parts.append(f"{label}: {cleaned}")
        values.append(cleaned)
    if not parts:
        return "No UTM parameters available - use general premium pet brand aesthetic"
    keywords = extract_pet_keywords(" ".join(values))
    if keywords:
        parts.append(f"DETECTED PET KEYWORDS (MUST USE): {', '.join(keywords)}")
    return "\n".join(parts)


def _weather_line(ctx: RequestContext) -> str:
    if not ctx.weather:
        return ""
    return f"Weather: {ctx.weather.condition}, {ctx.weather.temperature}"


class PromptStrategy:
    kind = "product"
    system_template = "product_system.j2"
    user_template = "product_user.j2"
    instruction_template = "product_instruction.j2"
    max_tokens = 150
    temperature = 0.7

    def template_values(self, ctx: RequestContext, meta: SubjectMeta) -> Dict[str, object]:
        return {
            "ctx": ctx,
            "utm_info": format_utm_info(ctx),
            "style": style_hint(ctx.traffic_source),
            "weather_line": _weather_line(ctx),
            "product_line": "",
        }

    def scene_messages(self, ctx: RequestContext, meta: SubjectMeta) -> List[Dict[str, str]]:
        values = self.template_values(ctx, meta)
        return [
            {"role": "system", "content": render(self.system_template, **values)},
            {"role": "user", "content": render(self.user_template, **values)},
        ]

    def fallback_scene(self, ctx: RequestContext, meta: SubjectMeta) -> str:
        return f"{_PRODUCT_SCENES[ctx.time_of_day]}, {_SEASON_MOODS[ctx.season]}"

    def instruction(self, scene: str) -> str:
        return render(self.instruction_template, scene=scene)


class ProductStrategy(PromptStrategy):
    def template_values(self, ctx: RequestContext, meta: SubjectMeta) -> Dict[str, object]:
        values = super().template_values(ctx, meta)
        name, category = meta.product_name, meta.product_category
        if name and category:
            values["product_line"] = f"Product: {name} ({category})"
        elif name:
            values["product_line"] = f"Product: {name}"
        elif category:
            values["product_line"] = f"Product category: {category}"
        return values


class BannerStrategy(PromptStrategy):
    kind = "banner"
    system_template = "banner_system.j2"
    user_template = "banner_user.j2"
    instruction_template = "banner_instruction.j2"
    max_tokens = 200
    subject_label = "banner"

    def template_values(self, ctx: RequestContext, meta: SubjectMeta) -> Dict[str, object]:
        values = super().template_values(ctx, meta)
        values["subject_label"] = self.subject_label
        return values

    def fallback_scene(self, ctx: RequestContext, meta: SubjectMeta) -> str:
        return _BANNER_SCENES.get(ctx.time_of_day, _BANNER_SCENES["afternoon"])


class TextBlockStrategy(BannerStrategy):
    kind = "textBlock"
    instruction_template = "textblock_instruction.j2"
    subject_label = "image-with-text"


class CollectionStrategy(PromptStrategy):
    kind = "collection"
    system_template = "collection_system.j2"
    user_template = "collection_user.j2"
    instruction_template = "collection_instruction.j2"
    max_tokens = 200
    temperature = 0.8

    def template_values(self, ctx: RequestContext, meta: SubjectMeta) -> Dict[str, object]:
        values = super().template_values(ctx, meta)
        lines: List[str] = []
        if meta.collection_title:
            lines.append(f'Collection: "{meta.collection_title}"')
        if meta.collection_description:
            lines.append(f"Description: {meta.collection_description[:150]}")
        if meta.product_names:
            members = f"Products in this collection: {', '.join(meta.product_names)}"
            if meta.product_count:
                members += f" ({meta.product_count} products total)"
            lines.append(members)
        values["collection_info"] = "\n".join(lines)
        return values

    def fallback_scene(self, ctx: RequestContext, meta: SubjectMeta) -> str:
        title = meta.collection_title or "premium pet products"
        return (
            f"Elegant flat lay arrangement showcasing {title} collection, with curious pet peeking "
            f"into frame, {ctx.season} {ctx.time_of_day} lighting, premium lifestyle photography"
        )


DEFAULT_STRATEGIES: Mapping[str, PromptStrategy] = {
    "product": ProductStrategy(),
    "banner": BannerStrategy(),
    "collection": CollectionStrategy(),
    "textBlock": TextBlockStrategy(),
}


def strategy_for(kind: str, strategies: Optional[Mapping[str, PromptStrategy]] = None) -> PromptStrategy:
    table = strategies or DEFAULT_STRATEGIES
    return table.get(kind) or table.get("product") or DEFAULT_STRATEGIES["product"]
