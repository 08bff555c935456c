"""Tests for destruction/corpse correlation and event descriptions."""

from types import MappingProxyType

import loglines
import pytest
from killfeed.correlator import CorrelationEngine, FinalizedEvent, describe, finalize
from killfeed.parser import EventKind, GameContext, parse_line


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return CorrelationEngine(window=5.0, clock=clock)


def parse(line):
    event = parse_line(line, GameContext())
    assert event is not None
    return event


def make_event(**overrides):
    fields = dict(
        event_id="id",
        kind=EventKind.COMBAT_KILL,
        timestamp=None,
        killers=(),
        victims=(),
        death_type="Unknown",
        attributes=MappingProxyType({}),
        description="",
    )
    fields.update(overrides)
    if isinstance(fields["attributes"], dict):
        fields["attributes"] = MappingProxyType(fields["attributes"])
    return FinalizedEvent(**fields)


class TestMerge:
    """Test pairing of vehicle destruction and corpse lines."""

    def test_destruction_then_corpse(self, engine, clock):
        assert engine.submit(parse(loglines.destruction())) == []
        clock.now += 1
        merged = engine.submit(parse(loglines.corpse()))
        assert len(merged) == 1
        event = merged[0]
        assert event.kind == EventKind.VEHICLE_DESTRUCTION
        assert event.victims == ("Alice",)
        assert event.killers == ("Bob",)
        assert event.attributes["vehicle_model"] == "ANVL_Arrow"
        assert event.attributes["weapon"] == "Combat"
        assert event.description == "Bob destroyed Alice's ANVL Arrow"
        assert engine.pending == 0

    def test_corpse_then_destruction(self, engine, clock):
        assert engine.submit(parse(loglines.corpse())) == []
        clock.now += 1
        merged = engine.submit(parse(loglines.destruction()))
        assert len(merged) == 1
        assert merged[0].victims == ("Alice",)
        assert merged[0].killers == ("Bob",)

    def test_order_does_not_change_id(self, clock):
        first = CorrelationEngine(clock=clock)
        first.submit(parse(loglines.destruction()))
        a = first.submit(parse(loglines.corpse()))[0]

        second = CorrelationEngine(clock=clock)
        second.submit(parse(loglines.corpse()))
        b = second.submit(parse(loglines.destruction()))[0]
        assert a.event_id == b.event_id

    def test_unknown_driver_matches_corpse(self, engine, clock):
        engine.submit(parse(loglines.destruction(driver="unknown")))
        clock.now += 0.5
        merged = engine.submit(parse(loglines.corpse("Alice")))
        assert len(merged) == 1
        assert merged[0].victims == ("Alice",)

    def test_different_victims_do_not_merge(self, engine, clock):
        engine.submit(parse(loglines.destruction(driver="Alice")))
        assert engine.submit(parse(loglines.corpse("Carol"))) == []
        assert engine.pending == 2

    def test_same_kind_never_merges(self, engine):
        engine.submit(parse(loglines.corpse()))
        assert engine.submit(parse(loglines.corpse())) == []
        assert engine.pending == 2


class TestTieBreak:
    """Test counterpart selection when several candidates fit."""

    def test_closest_arrival_wins(self, engine, clock):
        engine.submit(parse(loglines.destruction(vehicle="ANVL_Arrow_1")))
        clock.now += 3
        engine.submit(parse(loglines.destruction(vehicle="AEGS_Gladius_2")))
        clock.now += 1
        merged = engine.submit(parse(loglines.corpse()))
        assert merged[0].attributes["vehicle_model"] == "AEGS_Gladius"
        assert engine.pending == 1

    def test_exact_name_preferred_over_anonymous(self, engine, clock):
        engine.submit(parse(loglines.destruction(vehicle="ANVL_Arrow_1", driver="Alice")))
        clock.now += 2.5
        engine.submit(parse(loglines.destruction(vehicle="AEGS_Gladius_2", driver="unknown")))
        clock.now += 0.5
        merged = engine.submit(parse(loglines.corpse("Alice")))
        assert merged[0].attributes["vehicle_model"] == "ANVL_Arrow"


class TestExpiry:
    """Test the periodic sweep and shutdown drain."""

    def test_not_expired_within_window(self, engine, clock):
        engine.submit(parse(loglines.destruction()))
        clock.now += 4
        assert engine.expire() == []
        assert engine.pending == 1

    def test_expired_alone(self, engine, clock):
        engine.submit(parse(loglines.destruction()))
        clock.now += 5
        expired = engine.expire()
        assert len(expired) == 1
        assert expired[0].victims == ("Alice",)
        assert expired[0].killers == ("Bob",)
        assert engine.pending == 0

    def test_late_counterpart_is_not_merged(self, engine, clock):
        engine.submit(parse(loglines.destruction()))
        clock.now += 6
        assert engine.submit(parse(loglines.corpse())) == []
        expired = engine.expire()
        assert [e.kind for e in expired] == [EventKind.VEHICLE_DESTRUCTION]

    def test_expire_oldest_first(self, engine, clock):
        engine.submit(parse(loglines.corpse("Alice")))
        clock.now += 1
        engine.submit(parse(loglines.corpse("Carol")))
        clock.now += 10
        assert [e.victim for e in engine.expire()] == ["Alice", "Carol"]

    def test_drain(self, engine):
        engine.submit(parse(loglines.corpse()))
        drained = engine.drain()
        assert len(drained) == 1
        assert drained[0].kind == EventKind.PLAYER_CORPSE
        assert engine.pending == 0


class TestBypass:
    """Test events that never enter the window."""

    def test_combat_kill_immediate(self, engine):
        result = engine.submit(parse(loglines.kill()))
        assert len(result) == 1
        assert result[0].killers == ("Bob",)
        assert engine.pending == 0

    def test_environment_death_immediate(self, engine):
        result = engine.submit(parse(loglines.environment_death()))
        assert result[0].description == "Alice suffocated"

    def test_context_events_dropped(self, engine):
        assert engine.submit(parse(loglines.login())) == []
        assert engine.pending == 0


class TestReplay:
    """Test propagation of the replay flag."""

    def test_replayed_pair_stays_replayed(self, engine):
        engine.submit(parse(loglines.destruction()), replayed=True)
        assert engine.submit(parse(loglines.corpse()), replayed=True)[0].replayed

    def test_live_counterpart_makes_event_live(self, engine):
        engine.submit(parse(loglines.destruction()), replayed=True)
        assert not engine.submit(parse(loglines.corpse()))[0].replayed

    def test_replay_pairs_by_read_time_not_log_time(self, engine):
        engine.submit(parse(loglines.destruction(ts="2024-05-01T08:00:00.000Z")), replayed=True)
        merged = engine.submit(parse(loglines.corpse(ts="2024-05-01T11:30:00.000Z")), replayed=True)
        assert len(merged) == 1
        assert merged[0].victims == ("Alice",)


class TestFinalize:
    """Test merging and identity of finalized events."""

    def test_deterministic_id(self):
        a = finalize(parse(loglines.kill()))
        b = finalize(parse(loglines.kill()))
        assert a.event_id == b.event_id

    def test_different_lines_different_id(self):
        a = finalize(parse(loglines.kill(victim="Alice")))
        b = finalize(parse(loglines.kill(victim="Carol")))
        assert a.event_id != b.event_id

    def test_requires_a_part(self):
        with pytest.raises(ValueError):
            finalize()

    def test_enrichment_keeps_identity(self):
        event = finalize(parse(loglines.kill()))
        enriched = event.with_enrichment({"victim_org": "Test Squadron"})
        assert enriched.event_id == event.event_id
        assert enriched.enrichment["victim_org"] == "Test Squadron"
        assert event.enrichment == {}

    def test_wire_shape(self):
        event = finalize(parse(loglines.kill()))
        wire = event.to_wire("client-1")
        assert wire["clientId"] == "client-1"
        assert wire["id"] == event.event_id
        assert wire["kind"] == "combat-kill"
        assert wire["timestamp"] == "2024-05-01T10:00:01+00:00"
        assert wire["killers"] == ["Bob"]
        assert wire["deathType"] == "Combat"
        assert "category" not in wire
        assert FinalizedEvent.from_wire(wire).event_id == event.event_id


class TestDescribe:
    """Test human-readable descriptions."""

    def test_bleed_out(self):
        event = make_event(victims=("Alice",), death_type="BleedOut")
        assert describe(event) == "Alice bled out"

    def test_combat_without_vehicle(self):
        event = make_event(killers=("Bob",), victims=("Alice",), death_type="Combat")
        assert describe(event) == "Bob destroyed Alice"

    def test_crash(self):
        event = finalize(parse(loglines.destruction(caused_by="Alice", damage="Collision")))
        assert event.death_type == "Crash"
        assert describe(event) == "Alice (ANVL Arrow) crashed"

    def test_collision_without_killer(self):
        event = make_event(
            victims=("Alice",), death_type="Collision",
            attributes={"vehicle_model": "ANVL_Arrow"},
        )
        assert describe(event) == "A collision occurred involving Alice (ANVL Arrow)"

    def test_soft_death(self):
        event = make_event(
            killers=("Bob",), victims=("Alice",), death_type="Soft",
            attributes={"vehicle_model": "ANVL_Arrow"},
        )
        assert describe(event) == "Bob disabled Alice's ANVL Arrow"

    def test_placeholder_victim_from_vehicle_type(self):
        event = finalize(parse(loglines.destruction(driver="unknown")))
        assert event.victims == ()
        assert describe(event) == "Bob destroyed Arrow"

    def test_missing_everything(self):
        assert describe(make_event()) == "Unknown defeated Unknown"
