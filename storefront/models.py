"""Shared pydantic types for the personalization service.

Inbound bodies use the camelCase keys the storefront script sends; Python code
uses snake_case attributes.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


TrafficSource = Literal["instagram", "tiktok", "facebook", "google", "direct", "other"]
TimeOfDay = Literal["morning", "afternoon", "evening", "night"]
Season = Literal["spring", "summer", "autumn", "winter"]
WeatherCondition = Literal["sunny", "cloudy", "rainy", "snowy", "stormy"]
Temperature = Literal["hot", "warm", "cool", "cold"]
SubjectKind = Literal["product", "banner", "collection", "textBlock"]
Intensity = Literal["none", "light", "full"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Weather(_CamelModel):
    condition: WeatherCondition
    temperature: Temperature


class SubjectMeta(_CamelModel):
    """Optional descriptive data about the thing being regenerated."""

    product_name: Optional[str] = None
    product_description: Optional[str] = None
    product_category: Optional[str] = None
    collection_title: Optional[str] = None
    collection_description: Optional[str] = None
    product_names: List[str] = Field(default_factory=list)
    product_count: Optional[int] = None


class RawSignals(_CamelModel):
    """Acquisition signals exactly as the browser collected them; every field optional."""

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    referrer: Optional[str] = None
    client_time: Optional[str] = None
    timezone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    # explicit overrides; unknown values are ignored by the normalizer
    traffic_source: Optional[str] = None
    time_of_day: Optional[str] = None
    season: Optional[str] = None


class RequestContext(_CamelModel):
    """Fully resolved context. Built only by ``context.normalize``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    traffic_source: TrafficSource
    time_of_day: TimeOfDay
    season: Season
    weather: Optional[Weather] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    subject_kind: SubjectKind = "product"
    subject_identity: str = ""


class GenerateRequest(RawSignals):
    subject_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("subjectURL", "subjectUrl", "imageUrl", "subject_url"),
    )
    subject_kind: SubjectKind = Field(
        default="product",
        validation_alias=AliasChoices("subjectKind", "imageType", "subject_kind"),
    )
    subject_id: Optional[str] = None
    product_name: Optional[str] = None
    product_description: Optional[str] = None
    product_category: Optional[str] = None
    collection_title: Optional[str] = None
    collection_description: Optional[str] = None
    product_names: List[str] = Field(default_factory=list)
    product_count: Optional[int] = None
    force_regenerate: bool = Field(
        default=False,
        validation_alias=AliasChoices("forceRegenerate", "forceGenerate", "force_regenerate"),
    )

    @field_validator("subject_kind", mode="before")
    @classmethod
    def _legacy_kind(cls, v):
        # older collectors send imageType="imageWithText" for text blocks
        if v in (None, ""):
            return "product"
        if v == "imageWithText":
            return "textBlock"
        return v

    def meta(self) -> SubjectMeta:
        return SubjectMeta(
            product_name=self.product_name,
            product_description=self.product_description,
            product_category=self.product_category,
            collection_title=self.collection_title,
            collection_description=self.collection_description,
            product_names=list(self.product_names),
            product_count=self.product_count,
        )


class ResponseContext(_CamelModel):
    traffic_source: TrafficSource = "direct"
    time_of_day: TimeOfDay = "afternoon"
    season: Season = "summer"
    weather: Optional[WeatherCondition] = None
    campaign: Optional[str] = None

    @classmethod
    def from_context(cls, ctx: RequestContext) -> "ResponseContext":
        return cls(
            traffic_source=ctx.traffic_source,
            time_of_day=ctx.time_of_day,
            season=ctx.season,
            weather=ctx.weather.condition if ctx.weather else None,
            campaign=ctx.utm_campaign,
        )


class GenerateResponse(_CamelModel):
    success: bool
    artifact_url: Optional[str] = Field(default=None, alias="artifactURL")
    generator_input: Optional[str] = None
    cached: bool = False
    processing_time_ms: int = 0
    error: Optional[str] = None
    context: ResponseContext = Field(default_factory=ResponseContext)


class ProductInfo(_CamelModel):
    handle: str
    title: str = ""
    tags: List[str] = Field(default_factory=list)


class PersonalizeRequest(_CamelModel):
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    products: List[ProductInfo] = Field(default_factory=list)

    def has_utm(self) -> bool:
        return any(
            (v or "").strip()
            for v in (self.utm_source, self.utm_medium, self.utm_campaign, self.utm_content, self.utm_term)
        )


class PersonalizationCopy(_CamelModel):
    hero_title: str
    featured_title: str
    iwt_title: str
    iwt_body: str
    vibe_bar_text: str
    trust_items: List[str] = Field(min_length=3, max_length=3)


class PersonalizationConfig(_CamelModel):
    theme: int = Field(ge=1)
    product_order: List[str] = Field(default_factory=list)
    copy_: PersonalizationCopy = Field(alias="copy")
    vibe_icon: str
    trust_icons: List[str] = Field(min_length=3, max_length=3)
    intensity: Intensity = "none"
    boost_tags: List[str] = Field(default_factory=list)


class PersonalizeResponse(_CamelModel):
    success: bool
    cached: bool = False
    config: Optional[PersonalizationConfig] = None
    error: Optional[str] = None
    processing_time_ms: int = 0
