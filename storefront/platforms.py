from __future__ import annotations

from typing import Dict, Optional, Tuple

# (platform, utm tokens matched by substring, utm tokens matched exactly)
_UTM_RULES: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("instagram", ("instagram",), ("ig",)),
    ("tiktok", ("tiktok",), ("tt",)),
    ("facebook", ("facebook",), ("fb",)),
    ("google", ("google",), ()),
)

_REFERRER_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("instagram", ("instagram.com",)),
    ("tiktok", ("tiktok.com",)),
    ("facebook", ("facebook.com", "fb.com")),
    ("google", ("google.com", "google.co")),
)

STYLE_HINTS: Dict[str, str] = {
    "instagram": "aesthetic pet lifestyle, curated cozy moments, warm emotional connection, shareable cuteness",
    "tiktok": "dynamic playful energy, trendy pet parent vibes, fun authentic moments, viral-worthy charm",
    "facebook": "relatable pet family moments, heartwarming connection, trustworthy pet care, community feeling",
    "google": "clean professional product focus, credible pet brand, informative clarity",
    "direct": "premium pet lifestyle brand, modern pet parent aesthetic, elegant yet approachable",
    "other": "premium pet lifestyle brand, modern pet parent aesthetic, elegant yet approachable",
}


def _match_utm(utm_source: str) -> Optional[str]:
    s = utm_source.strip().lower()
    if not s:
        return None
    for platform, contains, exact in _UTM_RULES:
        if s in exact or any(tok in s for tok in contains):
            return platform
    return None


def _match_referrer(referrer: str) -> Optional[str]:
    ref = referrer.strip().lower()
    if not ref:
        return None
    for platform, domains in _REFERRER_RULES:
        if any(d in ref for d in domains):
            return platform
    return None


def detect_traffic_source(utm_source: Optional[str] = None, referrer: Optional[str] = None) -> str:
    """UTM source first, then referrer host, then ``direct``."""
    return _match_utm(utm_source or "") or _match_referrer(referrer or "") or "direct"


def style_hint(source: str) -> str:
    return STYLE_HINTS.get(source) or STYLE_HINTS["direct"]
