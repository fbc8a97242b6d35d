"""Turn raw acquisition signals into a fully resolved ``RequestContext``.

This is the only place defaults are applied. Every branch has a definite value:
an unparseable client clock falls back to server time, a failed weather lookup
leaves ``weather`` unset, and unknown overrides are ignored.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from storefront.models import RawSignals, RequestContext, Weather
from storefront.platforms import detect_traffic_source

log = logging.getLogger(__name__)

WeatherLookup = Callable[[float, float], Awaitable[Optional[Weather]]]

_TRAFFIC_SOURCES = {"instagram", "tiktok", "facebook", "google", "direct", "other"}
_TIMES_OF_DAY = {"morning", "afternoon", "evening", "night"}
_SEASONS = {"spring", "summer", "autumn", "winter"}


def time_of_day_for_hour(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def season_for_month(month_index: int) -> str:
    """``month_index`` is 0-based (0 = January). Northern hemisphere boundaries."""
    if 2 <= month_index <= 4:
        return "spring"
    if 5 <= month_index <= 7:
        return "summer"
    if 8 <= month_index <= 10:
        return "autumn"
    return "winter"


def parse_client_time(value: Optional[str], timezone: Optional[str] = None) -> Optional[datetime]:
    """Parse an ISO-8601 client timestamp into the visitor's wall clock, or None."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        log.info("context.client_time: unparseable value=%r; using server time", value[:40])
        return None
    if timezone and parsed.tzinfo is not None:
        try:
            parsed = parsed.astimezone(ZoneInfo(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            log.info("context.client_time: unknown timezone=%r; keeping offset", timezone)
    return parsed


def _override(value: Optional[str], allowed: set) -> Optional[str]:
    if value and value in allowed:
        return value
    return None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


async def normalize(
    raw: RawSignals,
    *,
    subject_kind: str = "product",
    subject_identity: str = "",
    weather_lookup: Optional[WeatherLookup] = None,
    now: Optional[datetime] = None,
) -> RequestContext:
    resolved = parse_client_time(raw.client_time, raw.timezone) or now or datetime.now()

    traffic_source = _override(raw.traffic_source, _TRAFFIC_SOURCES) or detect_traffic_source(
        raw.utm_source, raw.referrer
    )
    time_of_day = _override(raw.time_of_day, _TIMES_OF_DAY) or time_of_day_for_hour(resolved.hour)
    season = _override(raw.season, _SEASONS) or season_for_month(resolved.month - 1)

    weather: Optional[Weather] = None
    if weather_lookup is not None and raw.latitude is not None and raw.longitude is not None:
        try:
            weather = await weather_lookup(raw.latitude, raw.longitude)
        except Exception as exc:
            log.warning("context.weather: lookup failed err=%r", exc)
            weather = None

    return RequestContext(
        traffic_source=traffic_source,
        time_of_day=time_of_day,
        season=season,
        weather=weather,
        utm_source=_clean(raw.utm_source),
        utm_medium=_clean(raw.utm_medium),
        utm_campaign=_clean(raw.utm_campaign),
        utm_content=_clean(raw.utm_content),
        utm_term=_clean(raw.utm_term),
        subject_kind=subject_kind,
        subject_identity=subject_identity,
    )


def default_context() -> RequestContext:
    """Context reported when nothing could be resolved (e.g. the request body was unreadable)."""
    return RequestContext(traffic_source="direct", time_of_day="afternoon", season="summer")
