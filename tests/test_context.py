import asyncio
from datetime import datetime

import httpx

from storefront.context import (
    default_context,
    normalize,
    parse_client_time,
    season_for_month,
    time_of_day_for_hour,
)
from storefront.models import RawSignals, Weather
from storefront.platforms import detect_traffic_source, style_hint
from storefront.weather import WeatherClient, coordinate_key, temperature_bucket

NOON_JULY = datetime(2024, 7, 15, 12, 30)


def test_detect_traffic_source_prefers_utm_over_referrer():
    assert detect_traffic_source("ig", "https://www.tiktok.com/@shop") == "instagram"
    assert detect_traffic_source("Instagram_Stories", None) == "instagram"
    assert detect_traffic_source("tt", None) == "tiktok"
    assert detect_traffic_source("fb", None) == "facebook"
    assert detect_traffic_source(None, "https://l.facebook.com/x") == "facebook"
    assert detect_traffic_source(None, "https://www.google.co.uk/search?q=dog") == "google"


def test_detect_traffic_source_defaults_to_direct():
    assert detect_traffic_source(None, None) == "direct"
    assert detect_traffic_source("newsletter", "https://example.org") == "direct"


def test_style_hint_covers_every_source():
    for src in ("instagram", "tiktok", "facebook", "google", "direct", "other"):
        assert style_hint(src)


def test_time_and_season_buckets():
    assert time_of_day_for_hour(5) == "morning"
    assert time_of_day_for_hour(11) == "morning"
    assert time_of_day_for_hour(12) == "afternoon"
    assert time_of_day_for_hour(17) == "evening"
    assert time_of_day_for_hour(21) == "night"
    assert time_of_day_for_hour(3) == "night"
    assert season_for_month(0) == "winter"
    assert season_for_month(2) == "spring"
    assert season_for_month(6) == "summer"
    assert season_for_month(9) == "autumn"
    assert season_for_month(11) == "winter"


def test_parse_client_time_handles_z_and_garbage():
    parsed = parse_client_time("2024-01-10T08:00:00Z")
    assert parsed is not None and parsed.hour == 8
    assert parse_client_time("yesterday-ish") is None
    assert parse_client_time(None) is None


def test_normalize_resolves_everything_from_clock():
    ctx = asyncio.run(normalize(RawSignals(), now=NOON_JULY))
    assert ctx.traffic_source == "direct"
    assert ctx.time_of_day == "afternoon"
    assert ctx.season == "summer"
    assert ctx.weather is None


def test_normalize_overrides_win_and_unknown_overrides_are_ignored():
    raw = RawSignals.model_validate(
        {"utmSource": "ig", "trafficSource": "google", "timeOfDay": "night", "season": "monsoon"}
    )
    ctx = asyncio.run(normalize(raw, now=NOON_JULY))
    assert ctx.traffic_source == "google"
    assert ctx.time_of_day == "night"
    assert ctx.season == "summer"


def test_normalize_bad_client_time_falls_back_to_server_clock():
    raw = RawSignals.model_validate({"clientTime": "not a time"})
    ctx = asyncio.run(normalize(raw, now=datetime(2024, 1, 5, 7, 0)))
    assert ctx.time_of_day == "morning"
    assert ctx.season == "winter"


def test_normalize_weather_failure_leaves_weather_unset():
    async def broken(lat, lon):
        raise httpx.ConnectError("boom")

    raw = RawSignals(latitude=35.6, longitude=139.7)
    ctx = asyncio.run(normalize(raw, weather_lookup=broken, now=NOON_JULY))
    assert ctx.weather is None


def test_normalize_skips_weather_without_both_coordinates():
    seen = []

    async def lookup(lat, lon):
        seen.append((lat, lon))
        return Weather(condition="sunny", temperature="warm")

    asyncio.run(normalize(RawSignals(latitude=1.0), weather_lookup=lookup, now=NOON_JULY))
    assert seen == []
    ctx = asyncio.run(normalize(RawSignals(latitude=0.0, longitude=0.0), weather_lookup=lookup, now=NOON_JULY))
    assert seen == [(0.0, 0.0)]
    assert ctx.weather.condition == "sunny"


def test_default_context():
    ctx = default_context()
    assert (ctx.traffic_source, ctx.time_of_day, ctx.season) == ("direct", "afternoon", "summer")


def test_temperature_bucket_edges():
    assert temperature_bucket(30) == "hot"
    assert temperature_bucket(29.9) == "warm"
    assert temperature_bucket(20) == "warm"
    assert temperature_bucket(10) == "cool"
    assert temperature_bucket(-4) == "cold"


def test_coordinate_key_rounds_to_tenth():
    assert coordinate_key(35.6812, 139.7671) == coordinate_key(35.7049, 139.7549)


def test_weather_client_maps_codes_and_caches(clock):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"current": {"weather_code": 63, "temperature_2m": 12.5}})

    client = WeatherClient(endpoint="https://weather.test/v1", transport=httpx.MockTransport(handler), clock=clock)
    first = asyncio.run(client.lookup(35.68, 139.76))
    assert first == Weather(condition="rainy", temperature="cool")
    asyncio.run(client.lookup(35.71, 139.77))
    assert len(calls) == 1
    clock.advance(client.ttl_seconds + 1)
    asyncio.run(client.lookup(35.68, 139.76))
    assert len(calls) == 2


def test_weather_client_drops_expired_coordinates_on_insert(clock):
    transport = httpx.MockTransport(
        lambda r: httpx.Response(200, json={"current": {"weather_code": 0, "temperature_2m": 20}})
    )
    client = WeatherClient(endpoint="https://weather.test/v1", transport=transport, clock=clock)
    asyncio.run(client.lookup(10.0, 10.0))
    asyncio.run(client.lookup(20.0, 20.0))
    assert len(client) == 2
    clock.advance(client.ttl_seconds + 1)
    asyncio.run(client.lookup(30.0, 30.0))
    assert len(client) == 1


def test_weather_client_unknown_code_is_cloudy():
    transport = httpx.MockTransport(
        lambda r: httpx.Response(200, json={"current": {"weather_code": 42, "temperature_2m": 31}})
    )
    client = WeatherClient(endpoint="https://weather.test/v1", transport=transport)
    assert asyncio.run(client.lookup(1, 2)) == Weather(condition="cloudy", temperature="hot")


def test_weather_client_returns_none_on_network_error():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = WeatherClient(endpoint="https://weather.test/v1", transport=httpx.MockTransport(handler))
    assert asyncio.run(client.lookup(1, 2)) is None


def test_weather_client_returns_none_on_bad_payload():
    client = WeatherClient(
        endpoint="https://weather.test/v1",
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"current": {}})),
    )
    assert asyncio.run(client.lookup(1, 2)) is None
