"""Correlation of vehicle destructions with the deaths of the people inside them.

The game logs a ship's destruction and its pilot's corpse as two unrelated
lines, in either order, a moment apart. The only join key is the victim's
name plus arrival time, so matching is a heuristic: when several candidates
fit the same victim the one that arrived closest in time wins. Under bursts
of simultaneous kills this can pair the wrong lines; that is accepted.

Arrival is measured when a line is read, not by its log timestamp. The
startup replay reads the whole history at once, so a destruction and a
corpse for the same name there can pair even if the log puts them hours
apart.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any

from killfeed.parser import CONTEXT_KINDS, EventKind, PartialEvent

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 5.0  # seconds of arrival time

_EVENT_NAMESPACE = uuid.UUID("8f0e6b8c-3c1e-4d5e-9a59-2f0d9c6a7b41")

# Kill/weapon fields taken from the corpse or kill side of a merge
_KILL_FIELDS = ("weapon", "weapon_class", "damage_type")


@dataclass(frozen=True, slots=True)
class FinalizedEvent:
    """Correlated kill-feed event, the unit delivered to every sink."""

    event_id: str
    kind: EventKind
    timestamp: datetime | None
    killers: tuple[str, ...]
    victims: tuple[str, ...]
    death_type: str
    attributes: Mapping[str, str]
    description: str
    enrichment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    category: Mapping[str, Any] | None = None
    replayed: bool = False

    @property
    def victim(self) -> str:
        return self.victims[0] if self.victims else "Unknown"

    @property
    def killer(self) -> str:
        real = [k for k in self.killers if k not in ("Environment", "unknown")]
        return real[0] if real else "Unknown"

    def involves(self, name: str | None) -> bool:
        return bool(name) and (name in self.killers or name in self.victims)

    def with_enrichment(self, fields: Mapping[str, str]) -> FinalizedEvent:
        """Same event with extra enrichment fields; identity and core fields unchanged."""
        merged = {**self.enrichment, **fields}
        return replace(self, enrichment=MappingProxyType(merged))

    def with_category(self, category: Mapping[str, Any]) -> FinalizedEvent:
        return replace(self, category=MappingProxyType(dict(category)))

    def to_wire(self, client_id: str) -> dict[str, Any]:
        """Outbound JSON-ready shape."""
        wire: dict[str, Any] = {
            "clientId": client_id,
            "id": self.event_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "killers": list(self.killers),
            "victims": list(self.victims),
            "deathType": self.death_type,
            "attributes": dict(self.attributes),
            "enrichment": dict(self.enrichment),
            "description": self.description,
        }
        if self.category is not None:
            wire["category"] = dict(self.category)
        return wire

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> FinalizedEvent:
        """Rebuild an event from to_wire() output (durable storage)."""
        timestamp = data.get("timestamp")
        category = data.get("category")
        return cls(
            event_id=data["id"],
            kind=EventKind(data["kind"]),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
            killers=tuple(data.get("killers", ())),
            victims=tuple(data.get("victims", ())),
            death_type=data.get("deathType", "Unknown"),
            attributes=MappingProxyType(dict(data.get("attributes", {}))),
            description=data.get("description", ""),
            enrichment=MappingProxyType(dict(data.get("enrichment", {}))),
            category=MappingProxyType(dict(category)) if category else None,
        )


def _event_id(
    kind: EventKind,
    timestamp: datetime | None,
    killers: tuple[str, ...],
    victims: tuple[str, ...],
    attrs: Mapping[str, str],
) -> str:
    """Deterministic id: the same log line(s) always produce the same id."""
    key = "|".join([
        kind.value,
        timestamp.isoformat() if timestamp else "",
        ",".join(killers),
        ",".join(victims),
        attrs.get("vehicle_id", ""),
        attrs.get("weapon", ""),
    ])
    return str(uuid.uuid5(_EVENT_NAMESPACE, key))


def finalize(*parts: PartialEvent, replayed: bool = False) -> FinalizedEvent:
    """Merge one or two partial events into a FinalizedEvent.

    Vehicle fields come from the destruction; victim and kill fields from the
    corpse or kill line, falling back to what the destruction knew.
    """
    destruction = next((p for p in parts if p.kind is EventKind.VEHICLE_DESTRUCTION), None)
    other = next((p for p in parts if p.kind is not EventKind.VEHICLE_DESTRUCTION), None)

    attrs: dict[str, str] = {}
    for part in (destruction, other):
        if part is not None:
            attrs.update(part.attributes)
    if destruction is not None and other is not None:
        # Destruction wins for vehicle/location; the death line wins for kill fields
        attrs.update({k: v for k, v in destruction.attributes.items() if k not in _KILL_FIELDS})
        attrs.update({k: v for k, v in other.attributes.items() if k in _KILL_FIELDS})

    primary = destruction if destruction is not None else other
    if primary is None:
        raise ValueError("finalize() needs at least one event")

    victims = (other.objects if other is not None and other.objects else ()) or (
        destruction.objects if destruction is not None else ()
    )
    killers = (other.subjects if other is not None and other.subjects else ()) or (
        destruction.subjects if destruction is not None else ()
    )

    kind = primary.kind
    death_type = attrs.get("death_type", "Unknown")
    timestamp = primary.timestamp or (other.timestamp if other is not None else None)

    attrs["death_type"] = death_type
    event = FinalizedEvent(
        event_id=_event_id(kind, timestamp, killers, victims, attrs),
        kind=kind,
        timestamp=timestamp,
        killers=tuple(killers),
        victims=tuple(victims),
        death_type=death_type,
        attributes=MappingProxyType(attrs),
        description="",
        replayed=replayed,
    )
    return replace(event, description=describe(event))


def describe(event: FinalizedEvent) -> str:
    """One human-readable sentence for the event; never fails on missing fields."""
    attrs = event.attributes
    vehicle_type = attrs.get("vehicle_type") or "Unknown"
    vehicle_model = attrs.get("vehicle_model") or ""
    placeholder = not event.victims
    victim = vehicle_type.replace("_", " ") if placeholder else " + ".join(event.victims)
    valid_killers = [k for k in event.killers if k and k not in ("unknown", "Environment")]
    if valid_killers:
        killer = " + ".join(valid_killers)
    elif "Environment" in event.killers:
        killer = "Environment"
    else:
        killer = "Unknown"
    craft = vehicle_model.replace("_", " ") if vehicle_model and vehicle_model != "Player" else ""

    death_type = event.death_type
    if death_type == "Suffocation":
        return f"{victim} suffocated"
    if death_type == "BleedOut":
        return f"{victim} bled out"
    if death_type == "Crash":
        return f"{victim} ({craft}) crashed" if craft else f"{victim} crashed"
    if death_type == "Collision":
        if not valid_killers:
            suffix = f" ({craft})" if craft else ""
            return f"A collision occurred involving {victim}{suffix}"
        if placeholder:
            return f"{killer}'s vessel collided with {victim}"
        return f"{killer} collided with {victim}" + (f" ({craft})" if craft else "")
    if death_type == "Soft":
        if placeholder or not craft:
            return f"{killer} disabled {victim}"
        return f"{killer} disabled {victim}'s {craft}"
    if death_type in ("Hard", "Combat"):
        if placeholder or not craft:
            return f"{killer} destroyed {victim}"
        return f"{killer} destroyed {victim}'s {craft}"
    if "Environment" in event.killers:
        return f"{victim} succumbed to environmental factors"
    return f"{killer} defeated {victim}"


@dataclass
class WindowEntry:
    """A partial event waiting for its counterpart."""

    event: PartialEvent
    arrival: float
    deadline: float
    replayed: bool = False


class CorrelationEngine:
    """Pairs vehicle-destruction and player-corpse events that arrive close together.

    Usage:
        engine = CorrelationEngine(window=5.0)
        for final in engine.submit(partial):
            ...
        for final in engine.expire():  # periodic sweep
            ...
    """

    _CORRELATED = frozenset({EventKind.VEHICLE_DESTRUCTION, EventKind.PLAYER_CORPSE})

    def __init__(
        self,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window
        self._clock = clock
        self._entries: list[WindowEntry] = []

    @property
    def window(self) -> float:
        return self._window

    @property
    def pending(self) -> int:
        return len(self._entries)

    def submit(self, event: PartialEvent, *, replayed: bool = False) -> list[FinalizedEvent]:
        """Feed one partial event; returns the events finalized because of it."""
        if event.kind in CONTEXT_KINDS:
            return []
        if event.kind not in self._CORRELATED:
            # Combat kills and environmental deaths are self-sufficient
            return [finalize(event, replayed=replayed)]

        now = self._clock()
        match = self._find_counterpart(event, now)
        if match is not None:
            self._entries.remove(match)
            merged = finalize(match.event, event, replayed=replayed and match.replayed)
            logger.info(
                "Correlated %s with %s for %s",
                match.event.kind.value, event.kind.value, merged.victim,
            )
            return [merged]

        self._entries.append(WindowEntry(
            event=event, arrival=now, deadline=now + self._window, replayed=replayed,
        ))
        logger.debug("Pending %s for %s", event.kind.value, event.victim or "<unknown>")
        return []

    def expire(self) -> list[FinalizedEvent]:
        """Finalize every entry whose deadline has passed, oldest first."""
        now = self._clock()
        expired = [e for e in self._entries if e.deadline <= now]
        if not expired:
            return []
        self._entries = [e for e in self._entries if e.deadline > now]
        for entry in expired:
            logger.debug("No counterpart for %s of %s", entry.event.kind.value, entry.event.victim)
        return [finalize(e.event, replayed=e.replayed) for e in expired]

    def drain(self) -> list[FinalizedEvent]:
        """Finalize everything still pending (shutdown)."""
        entries, self._entries = self._entries, []
        return [finalize(e.event, replayed=e.replayed) for e in entries]

    def _find_counterpart(self, event: PartialEvent, now: float) -> WindowEntry | None:
        """Closest-arrival unexpired counterpart for the same victim."""
        exact: list[WindowEntry] = []
        anonymous: list[WindowEntry] = []
        for entry in self._entries:
            other = entry.event
            if other.kind is event.kind or entry.deadline <= now:
                continue
            if abs(now - entry.arrival) > self._window:
                continue
            if event.victim and other.victim == event.victim:
                exact.append(entry)
            elif not event.victim or not other.victim:
                # Destruction with an unknown driver: the corpse names the victim
                anonymous.append(entry)
        candidates = exact or anonymous
        if not candidates:
            return None
        return min(candidates, key=lambda e: abs(now - e.arrival))
