from __future__ import annotations

import hashlib
import json
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from pydantic import BaseModel

from storefront.models import PersonalizeRequest, RequestContext

ContextLike = Union[RequestContext, Mapping[str, Any]]
FieldSelector = Callable[[ContextLike], Dict[str, Any]]

NO_CONTEXT_KEY = "no-context"


def _as_dict(context: ContextLike) -> Dict[str, Any]:
    if isinstance(context, BaseModel):
        return context.model_dump()
    return dict(context)


def _weather_condition(weather: Any) -> str:
    if weather is None:
        return ""
    if isinstance(weather, BaseModel):
        weather = weather.model_dump()
    if isinstance(weather, Mapping):
        return str(weather.get("condition") or "")
    return str(weather)


def cacheable_fields(context: ContextLike) -> Dict[str, Any]:
    """Only the fields that change what the provider is asked to produce."""
    d = _as_dict(context)

    def pick(snake: str, camel: str) -> str:
        v = d.get(snake, d.get(camel))
        return "" if v is None else str(v)

    return {
        "campaign": pick("utm_campaign", "utmCampaign"),
        "season": pick("season", "season"),
        "source": pick("traffic_source", "trafficSource"),
        "time": pick("time_of_day", "timeOfDay"),
        "weather": _weather_condition(d.get("weather")),
    }


def _digest(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def fingerprint(
    subject_identity: str,
    subject_kind: str,
    context: ContextLike,
    selector: FieldSelector = cacheable_fields,
) -> str:
    payload = {"subject": subject_identity or "", "kind": subject_kind or ""}
    payload["context"] = selector(context)
    return _digest(payload)


def campaign_fingerprint(req: PersonalizeRequest, catalog_handles: Optional[Iterable[str]] = None) -> str:
    """Key for a personalization config: the UTM set plus the catalog it was computed against."""
    if not req.has_utm():
        return NO_CONTEXT_KEY
    handles = catalog_handles if catalog_handles is not None else (p.handle for p in req.products)
    return _digest(
        {
            "source": req.utm_source or "",
            "campaign": req.utm_campaign or "",
            "content": req.utm_content or "",
            "medium": req.utm_medium or "",
            "term": req.utm_term or "",
            "catalog": sorted(handles),
        }
    )
