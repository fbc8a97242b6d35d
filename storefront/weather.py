from __future__ import annotations

import logging
import os
import time
from typing import Callable, Dict, Optional, Tuple

import httpx

from storefront.models import Weather

log = logging.getLogger(__name__)

WEATHER_ENDPOINT = os.getenv("WEATHER_ENDPOINT", "https://api.open-meteo.com/v1/forecast").strip()
try:
    WEATHER_TTL_SECONDS = float(os.getenv("WEATHER_TTL_SECONDS", "1800"))
except ValueError:
    WEATHER_TTL_SECONDS = 1800.0
try:
    WEATHER_TIMEOUT_SECS = float(os.getenv("WEATHER_TIMEOUT_SECS", "3"))
except ValueError:
    WEATHER_TIMEOUT_SECS = 3.0

# WMO weather interpretation codes
WEATHER_CODE_MAP: Dict[int, str] = {
    0: "sunny", 1: "sunny",
    2: "cloudy", 3: "cloudy", 45: "cloudy", 48: "cloudy",
    51: "rainy", 53: "rainy", 55: "rainy",
    61: "rainy", 63: "rainy", 65: "rainy",
    71: "snowy", 73: "snowy", 75: "snowy",
    80: "rainy", 81: "rainy", 82: "stormy",
    85: "snowy", 86: "snowy",
    95: "stormy", 96: "stormy", 99: "stormy",
}


def temperature_bucket(celsius: float) -> str:
    if celsius >= 30:
        return "hot"
    if celsius >= 20:
        return "warm"
    if celsius >= 10:
        return "cool"
    return "cold"


def coordinate_key(latitude: float, longitude: float) -> str:
    # 0.1 degree is roughly 11km
    return f"{round(latitude, 1)},{round(longitude, 1)}"


class WeatherClient:
    """Open-Meteo lookup with a short-lived cache keyed by rounded coordinates.

    ``lookup`` returns None on any failure; it never raises.
    """

    def __init__(
        self,
        endpoint: str = WEATHER_ENDPOINT,
        ttl_seconds: float = WEATHER_TTL_SECONDS,
        timeout: float = WEATHER_TIMEOUT_SECS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.endpoint = endpoint
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._cache: Dict[str, Tuple[Weather, float]] = {}

    async def lookup(self, latitude: float, longitude: float) -> Optional[Weather]:
        key = coordinate_key(latitude, longitude)
        hit = self._cache.get(key)
        if hit and self._clock() - hit[1] < self.ttl_seconds:
            return hit[0]

        params = {
            "latitude": str(latitude),
            "longitude": str(longitude),
            "current": "temperature_2m,weather_code",
            "timezone": "auto",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.endpoint, params=params)
        except httpx.HTTPError as exc:
            log.warning("weather.lookup: request failed key=%s err=%r", key, exc)
            return None
        if resp.status_code != 200:
            log.warning("weather.lookup: HTTP %s key=%s", resp.status_code, key)
            return None
        try:
            current = resp.json().get("current") or {}
            code = int(current["weather_code"])
            celsius = float(current["temperature_2m"])
        except (ValueError, TypeError, KeyError, AttributeError):
            log.warning("weather.lookup: unusable payload key=%s", key)
            return None

        weather = Weather(
            condition=WEATHER_CODE_MAP.get(code, "cloudy"),
            temperature=temperature_bucket(celsius),
        )
        self._sweep()
        self._cache[key] = (weather, self._clock())
        return weather

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, (_, at) in self._cache.items() if now - at >= self.ttl_seconds]
        for k in expired:
            del self._cache[k]
        if expired:
            log.debug("weather.sweep: removed=%d", len(expired))

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()
