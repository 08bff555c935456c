"""Profile enrichment for kill-feed events (RSI citizen pages)."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import aiohttp
from bs4 import BeautifulSoup

from killfeed.correlator import FinalizedEvent
from killfeed.entities import is_player_handle, resolve_entity

logger = logging.getLogger(__name__)

RSI_BASE_URL = "https://robertsspaceindustries.com"
DEFAULT_AVATAR = f"{RSI_BASE_URL}/static/images/account/avatar_default_big.jpg"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)

DEFAULT_TIMEOUT = 5.0  # seconds per lookup
DEFAULT_CACHE_TTL = 60.0  # seconds
DEFAULT_CACHE_SIZE = 256


@dataclass(frozen=True, slots=True)
class Profile:
    """Public citizen-page data for one handle."""

    handle: str
    enlisted: str = "-"
    record: str = "-"
    organization: str = "-"
    avatar_url: str = DEFAULT_AVATAR


class ProfileLookup(Protocol):
    async def fetch(self, handle: str) -> Profile | None: ...


def _labelled_value(soup: BeautifulSoup, label: str) -> str | None:
    span = soup.find("span", class_="label", string=label)
    if span is None:
        return None
    value = span.find_next("strong", class_="value")
    return value.get_text(strip=True) if value else None


def parse_profile(handle: str, html: str) -> Profile:
    """Extract enlisted date, citizen record, main org and avatar from a citizen page."""
    soup = BeautifulSoup(html, "html.parser")

    enlisted = _labelled_value(soup, "Enlisted")
    if enlisted:
        enlisted = enlisted.replace(",", "").strip()

    record = _labelled_value(soup, "UEE Citizen Record")
    if record:
        record = record.lstrip("#")
        record = f"#{record}" if record and record.lower() != "n/a" else None

    org_link = soup.select_one('.main-org a[href*="/orgs/"]') or soup.select_one(
        'a[href*="/orgs/"]'
    )
    organization = org_link.get_text(strip=True) if org_link else None

    avatar_url = None
    avatar = soup.select_one(".profile .thumb img")
    if avatar is not None and avatar.get("src"):
        src = str(avatar["src"])
        avatar_url = f"{RSI_BASE_URL}{src}" if src.startswith("/") else src

    return Profile(
        handle=handle,
        enlisted=enlisted or "-",
        record=record or "-",
        organization=organization or "-",
        avatar_url=avatar_url or DEFAULT_AVATAR,
    )


class RsiProfileClient:
    """Fetches citizen pages from the RSI website.

    Usage:
        client = RsiProfileClient()
        profile = await client.fetch("Alice")
        await client.close()
    """

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def fetch(self, handle: str) -> Profile | None:
        """Return the profile, or None if the handle has no citizen page."""
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
        url = f"{RSI_BASE_URL}/citizens/{handle}"
        logger.debug("Fetching RSI profile %s", url)
        async with self._session.get(url) as response:
            if response.status == 404:
                return None
            response.raise_for_status()
            html = await response.text()
        return parse_profile(handle, html)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


class Enricher:
    """Adds profile and display-name fields to finalized events.

    Lookups are bounded by a per-call timeout; a slow or failing lookup leaves
    that actor's fields out instead of failing the event. Results (including
    "no such citizen") are cached per handle for a short TTL.
    """

    def __init__(
        self,
        lookup: ProfileLookup | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        cache_size: int = DEFAULT_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lookup = lookup
        self._timeout = timeout
        self._cache_ttl = cache_ttl
        self._cache_size = cache_size
        self._clock = clock
        self._cache: OrderedDict[str, tuple[Profile | None, float]] = OrderedDict()
        self._inflight: dict[str, asyncio.Task[Profile | None]] = {}

    async def enrich(self, event: FinalizedEvent) -> FinalizedEvent:
        """Return *event* with enrichment fields filled in where available."""
        roles = {
            "victim": event.victims[0] if event.victims else None,
            "attacker": event.killer if event.killer != "Unknown" else None,
        }
        fields: dict[str, str] = {}
        for role, name in roles.items():
            if name:
                fields[f"{role}_display"] = resolve_entity(name).display_name

        handles = sorted({n for n in roles.values() if n and is_player_handle(n)})
        lookup = self._lookup
        if lookup is not None and handles:
            profiles = await asyncio.gather(*(self._profile(lookup, h) for h in handles))
            by_handle = dict(zip(handles, profiles))
            for role, name in roles.items():
                profile = by_handle.get(name) if name else None
                if profile is None:
                    continue
                fields[f"{role}_enlisted"] = profile.enlisted
                fields[f"{role}_record"] = profile.record
                fields[f"{role}_org"] = profile.organization
                fields[f"{role}_avatar"] = profile.avatar_url

        if not fields:
            return event
        return event.with_enrichment(fields)

    def cache_stats(self) -> dict[str, int]:
        return {"entries": len(self._cache), "max": self._cache_size}

    async def _profile(self, lookup: ProfileLookup, handle: str) -> Profile | None:
        hit, cached = self._cache_get(handle)
        if hit:
            return cached
        task = self._inflight.get(handle)
        if task is None:
            task = asyncio.ensure_future(self._fetch(lookup, handle))
            self._inflight[handle] = task
            task.add_done_callback(lambda _t: self._inflight.pop(handle, None))
        return await asyncio.shield(task)

    async def _fetch(self, lookup: ProfileLookup, handle: str) -> Profile | None:
        try:
            profile = await asyncio.wait_for(lookup.fetch(handle), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Profile lookup for %s timed out after %.1fs", handle, self._timeout)
            return None
        except Exception as e:
            logger.warning("Profile lookup for %s failed: %s", handle, e)
            return None
        self._cache_put(handle, profile)
        return profile

    def _cache_get(self, handle: str) -> tuple[bool, Profile | None]:
        entry = self._cache.get(handle)
        if entry is None:
            return False, None
        profile, stored_at = entry
        if self._clock() - stored_at > self._cache_ttl:
            del self._cache[handle]
            return False, None
        self._cache.move_to_end(handle)
        return True, profile

    def _cache_put(self, handle: str, profile: Profile | None) -> None:
        """Add to the LRU, evicting oldest if full."""
        if handle in self._cache:
            self._cache.move_to_end(handle)
        elif len(self._cache) >= self._cache_size:
            self._cache.popitem(last=False)
        self._cache[handle] = (profile, self._clock())
