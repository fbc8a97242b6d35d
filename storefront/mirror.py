"""Browser-session mirror of resolved artifacts.

The storefront script keeps a small (fingerprint -> artifact URL) map for the
lifetime of one browsing session so that repeat views of the same subject under
the same acquisition context never touch the network. The key carries the active
UTM context, so following a new campaign link mid-session misses instead of
serving the previous campaign's imagery.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import urlparse

log = logging.getLogger(__name__)

try:
    MIRROR_TTL_SECONDS = float(os.getenv("MIRROR_TTL_SECONDS", "1800"))
except ValueError:
    MIRROR_TTL_SECONDS = 1800.0

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")


def context_part(utm: Optional[Mapping[str, Optional[str]]]) -> str:
    utm = utm or {}
    parts = [
        (utm.get(name) or "").strip()
        for name in ("utm_source", "utm_campaign", "utm_content", "utm_term")
    ]
    return "_".join(p for p in parts if p) or "direct"


def mirror_key(subject_identity: str, utm: Optional[Mapping[str, Optional[str]]]) -> str:
    return f"{subject_identity}__{context_part(utm)}"


@dataclass(frozen=True)
class MirrorEntry:
    artifact_url: str
    stored_at: float


@dataclass(frozen=True)
class MirrorHit:
    key: str
    artifact_url: str
    # a hit is applied instantly, without the reveal animation
    animate: bool = False


class MirrorCache:
    def __init__(self, ttl_seconds: float = MIRROR_TTL_SECONDS, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, MirrorEntry] = {}

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at > self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        if expired:
            log.debug("mirror.sweep: removed=%d", len(expired))

    def get(self, subject_identity: str, utm: Optional[Mapping[str, Optional[str]]]) -> Optional[MirrorHit]:
        self._sweep()
        key = mirror_key(subject_identity, utm)
        entry = self._entries.get(key)
        if entry is None:
            return None
        return MirrorHit(key=key, artifact_url=entry.artifact_url)

    def set(self, subject_identity: str, utm: Optional[Mapping[str, Optional[str]]], artifact_url: str) -> str:
        self._sweep()
        key = mirror_key(subject_identity, utm)
        self._entries[key] = MirrorEntry(artifact_url=artifact_url, stored_at=self._clock())
        return key

    def end_session(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SessionUtm:
    """UTM parameters remembered for the session.

    A landing URL with UTM replaces what is stored. Internal navigation keeps it.
    Arriving without UTM from another site starts a fresh, context-free visit.
    """

    def __init__(self, shop_host: str) -> None:
        self.shop_host = (shop_host or "").lower()
        self._utm: Dict[str, str] = {}

    def _is_internal(self, referrer: Optional[str]) -> bool:
        if not referrer:
            return False
        host = (urlparse(referrer).hostname or "").lower()
        return bool(host) and host == self.shop_host

    def observe(self, url_utm: Optional[Mapping[str, Optional[str]]], referrer: Optional[str] = None) -> Dict[str, str]:
        fresh = {k: v.strip() for k, v in (url_utm or {}).items() if k in UTM_FIELDS and v and v.strip()}
        if fresh:
            self._utm = fresh
        elif not self._is_internal(referrer):
            self._utm = {}
        return dict(self._utm)

    @property
    def active(self) -> Dict[str, str]:
        return dict(self._utm)

    def clear(self) -> None:
        self._utm = {}
