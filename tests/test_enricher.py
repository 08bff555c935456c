"""Tests for profile enrichment."""

import asyncio
import logging

import loglines
import pytest
from killfeed.correlator import finalize
from killfeed.enricher import DEFAULT_AVATAR, Enricher, Profile, parse_profile
from killfeed.parser import GameContext, parse_line

PROFILE_HTML = """
<div class="profile left-col">
  <div class="inner clearfix">
    <div class="thumb"><img src="/media/abc123/heap_infobox/avatar.jpg"/></div>
    <div class="info"><p class="entry"><strong class="value">Alice</strong></p></div>
  </div>
</div>
<div class="main-org right-col visibility-V">
  <div class="info">
    <p class="entry"><a href="/orgs/TEST" class="value">Test Squadron</a></p>
  </div>
</div>
<div class="left-col">
  <p class="entry"><span class="label">Enlisted</span><strong class="value">Jan 1, 2020</strong></p>
</div>
<p class="entry citizen-record">
  <span class="label">UEE Citizen Record</span><strong class="value">#12345</strong>
</p>
"""


class FakeLookup:
    def __init__(self, delay=0.0, fail=(), missing=()):
        self.calls = []
        self.delay = delay
        self.fail = set(fail)
        self.missing = set(missing)

    async def fetch(self, handle):
        self.calls.append(handle)
        if self.delay:
            await asyncio.sleep(self.delay)
        if handle in self.fail:
            raise ConnectionError("lookup down")
        if handle in self.missing:
            return None
        return Profile(
            handle=handle,
            enlisted="Jan 1 2020",
            record=f"#{len(handle)}",
            organization=f"{handle} Org",
        )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def kill_event(victim="Alice", killer="Bob"):
    return finalize(parse_line(loglines.kill(victim=victim, killer=killer), GameContext()))


class TestParseProfile:
    """Test extraction of citizen-page fields."""

    def test_full_page(self):
        profile = parse_profile("Alice", PROFILE_HTML)
        assert profile.enlisted == "Jan 1 2020"
        assert profile.record == "#12345"
        assert profile.organization == "Test Squadron"
        assert profile.avatar_url == (
            "https://robertsspaceindustries.com/media/abc123/heap_infobox/avatar.jpg"
        )

    def test_empty_page_defaults(self):
        profile = parse_profile("Nobody", "<html><body></body></html>")
        assert profile.enlisted == "-"
        assert profile.record == "-"
        assert profile.organization == "-"
        assert profile.avatar_url == DEFAULT_AVATAR

    def test_record_not_available(self):
        html = '<p><span class="label">UEE Citizen Record</span><strong class="value">n/a</strong></p>'
        assert parse_profile("Alice", html).record == "-"


class TestEnrich:
    """Test enrichment of finalized events."""

    @pytest.mark.asyncio
    async def test_both_actors_enriched(self):
        enricher = Enricher(FakeLookup())
        event = await enricher.enrich(kill_event())
        assert event.enrichment["victim_org"] == "Alice Org"
        assert event.enrichment["victim_enlisted"] == "Jan 1 2020"
        assert event.enrichment["victim_avatar"] == DEFAULT_AVATAR
        assert event.enrichment["attacker_org"] == "Bob Org"
        assert event.enrichment["victim_display"] == "Alice"

    @pytest.mark.asyncio
    async def test_core_fields_unchanged(self):
        original = kill_event()
        event = await Enricher(FakeLookup()).enrich(original)
        assert event.event_id == original.event_id
        assert event.victims == original.victims
        assert event.description == original.description

    @pytest.mark.asyncio
    async def test_no_lookup_only_display_names(self):
        event = await Enricher(None).enrich(kill_event(killer="PU_Pilot_Human_123"))
        assert event.enrichment["victim_display"] == "Alice"
        assert event.enrichment["attacker_display"] == "PU Pilot Human"
        assert "victim_org" not in event.enrichment

    @pytest.mark.asyncio
    async def test_npc_and_environment_not_looked_up(self):
        lookup = FakeLookup()
        enricher = Enricher(lookup)
        await enricher.enrich(kill_event(killer="PU_Pilot_Human_123"))
        env = finalize(parse_line(loglines.environment_death("Carol"), GameContext()))
        await enricher.enrich(env)
        assert lookup.calls == ["Alice", "Carol"]

    @pytest.mark.asyncio
    async def test_timeout_degrades(self, caplog):
        enricher = Enricher(FakeLookup(delay=1.0), timeout=0.05)
        with caplog.at_level(logging.WARNING, logger="killfeed.enricher"):
            event = await enricher.enrich(kill_event())
        assert "victim_org" not in event.enrichment
        assert "attacker_org" not in event.enrichment
        assert "timed out" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_only_skips_that_actor(self):
        enricher = Enricher(FakeLookup(fail={"Bob"}))
        event = await enricher.enrich(kill_event())
        assert event.enrichment["victim_org"] == "Alice Org"
        assert "attacker_org" not in event.enrichment

    @pytest.mark.asyncio
    async def test_missing_profile(self):
        event = await Enricher(FakeLookup(missing={"Alice"})).enrich(kill_event())
        assert "victim_org" not in event.enrichment
        assert event.enrichment["attacker_org"] == "Bob Org"


class TestCache:
    """Test the per-handle profile cache."""

    @pytest.mark.asyncio
    async def test_repeat_lookups_cached(self):
        lookup = FakeLookup()
        enricher = Enricher(lookup)
        await enricher.enrich(kill_event())
        await enricher.enrich(kill_event())
        assert sorted(lookup.calls) == ["Alice", "Bob"]

    @pytest.mark.asyncio
    async def test_missing_profile_cached(self):
        lookup = FakeLookup(missing={"Alice"})
        enricher = Enricher(lookup)
        await enricher.enrich(kill_event())
        await enricher.enrich(kill_event())
        assert lookup.calls.count("Alice") == 1

    @pytest.mark.asyncio
    async def test_failures_not_cached(self):
        lookup = FakeLookup(fail={"Bob"})
        enricher = Enricher(lookup)
        await enricher.enrich(kill_event())
        await enricher.enrich(kill_event())
        assert lookup.calls.count("Bob") == 2

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock()
        lookup = FakeLookup()
        enricher = Enricher(lookup, cache_ttl=60.0, clock=clock)
        await enricher.enrich(kill_event())
        clock.now = 61.0
        await enricher.enrich(kill_event())
        assert lookup.calls.count("Alice") == 2

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        lookup = FakeLookup()
        enricher = Enricher(lookup, cache_size=2)
        await enricher.enrich(kill_event("Alice", "Bob"))
        await enricher.enrich(kill_event("Carol", "Dave"))
        assert enricher.cache_stats() == {"entries": 2, "max": 2}
        await enricher.enrich(kill_event("Alice", "Bob"))
        assert lookup.calls.count("Alice") == 2

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_fetch(self):
        lookup = FakeLookup(delay=0.01)
        enricher = Enricher(lookup)
        await asyncio.gather(
            enricher.enrich(kill_event("Alice", "Bob")),
            enricher.enrich(kill_event("Alice", "Carol")),
        )
        assert lookup.calls.count("Alice") == 1
