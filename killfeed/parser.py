"""Parser for the Star Citizen Game.log format."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType

from killfeed.entities import (
    clean_entity_name,
    resolve_entity,
    strip_id_suffix,
    vehicle_type_for,
)

logger = logging.getLogger(__name__)


class EventKind(Enum):
    LOGIN = "login"
    SESSION_START = "session-start"
    MODE_CHANGE = "mode-change"
    VEHICLE_DESTRUCTION = "vehicle-destruction"
    PLAYER_CORPSE = "player-corpse"
    COMBAT_KILL = "combat-kill"
    ENVIRONMENTAL_DEATH = "environmental-death"


# Kinds that only update GameContext; never shown as kill-feed events
CONTEXT_KINDS = frozenset({EventKind.LOGIN, EventKind.SESSION_START, EventKind.MODE_CHANGE})


@dataclass(frozen=True, slots=True)
class PartialEvent:
    """One event extracted from exactly one log line."""

    kind: EventKind
    timestamp: datetime | None
    subjects: tuple[str, ...] = ()  # killers / causes
    objects: tuple[str, ...] = ()  # victims
    attributes: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    raw: str = ""

    @property
    def victim(self) -> str:
        return self.objects[0] if self.objects else ""


@dataclass
class GameContext:
    """Process-wide game state tracked from the log, threaded through extraction."""

    username: str | None = None
    game_mode: str = "Unknown"
    session_started: datetime | None = None
    game_version: str = ""
    player_ship: str = "Unknown"
    location: str = ""

    def is_player(self, name: str) -> bool:
        return bool(self.username) and name == self.username

    def reset(self) -> None:
        """Forget per-session state (the username survives, like the stored last login)."""
        self.game_mode = "Unknown"
        self.session_started = None
        self.game_version = ""
        self.player_ship = "Unknown"
        self.location = ""


# Game.log line examples:
# <2024-05-01T10:00:01.000Z> [Notice] <Vehicle Destruction> CVehicle::OnAdvanceDamageLevel:
#     Vehicle 'ANVL_Arrow_1234' [1234] in zone 'OOC_Stanton_1' [pos x: 1.5, y: -2, z: 0 vel ...]
#     driven by 'Alice' [201] advanced from destroy level 1 to 2 caused by 'Bob' [202] with 'Combat'
# <2024-05-01T10:00:02.000Z> [Notice] <[ActorState] Corpse> ... Player 'Alice' <remote client>: ...
# <2024-05-01T10:05:00.000Z> [Notice] <Actor Death> CActor::Kill: 'Alice' [201] in zone 'X'
#     killed by 'Bob' [202] using 'KLWE_LaserRepeater_S3_55' [Class KLWE_...] with damage type 'Combat'

_TS = r"<(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z)>"
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_RE_LOGIN = re.compile(r"<AccountLoginCharacterStatus_Character>.*?name\s+(?P<name>\S+)\s+-")
_RE_LEGACY_LOGIN = re.compile(r"<Legacy login response>.*?Handle\[(?P<name>[A-Za-z0-9_-]+)\]")
_RE_SESSION_START = re.compile(_TS + r".*?Starting new game session", re.IGNORECASE)
_RE_MODE_PU = re.compile(r"Loading GameModeRecord='SC_Default'")
_RE_MODE_AC = re.compile(r"Loading GameModeRecord='EA_.*?'")
_RE_MODE_FRONTEND = re.compile(
    r"Requesting game mode Frontend_Main/SC_Frontend"
    r"|Loading screen for Frontend_Main : SC_Frontend closed"
)
_RE_SYSTEM_QUIT = re.compile(r"<SystemQuit>|System Fast Shutdown", re.IGNORECASE)
_RE_VERSION = re.compile(r"--system-trace-env-id='pub-sc-alpha-(?P<version>\d{3,4}-\d{7})'")
_RE_LOADOUT = re.compile(
    r"\[InstancedInterior\] OnEntityLeaveZone - InstancedInterior \[[^\]]+\] \[\d+\]"
    r" -> Entity \[(?P<entity>[^\]]+)\] \[\d+\] --.*?m_ownerGEID\[(?P<owner>[^\]]+)\]"
)
_RE_VEHICLE_DESTRUCTION = re.compile(
    _TS + r" \[Notice\] <Vehicle Destruction>.*?"
    r"Vehicle '(?P<vehicle>[^']+)' \[\d+\] in zone '(?P<zone>[^']+)' "
    r"\[pos x: (?P<pos_x>[-\d\.]+), y: (?P<pos_y>[-\d\.]+), z: (?P<pos_z>[-\d\.]+) .*? "
    r"driven by '(?P<driver>[^']+)' \[\d+\] "
    r"advanced from destroy level (?P<level_from>\d+) to (?P<level_to>\d+) "
    r"caused by '(?P<caused_by>[^']+)' \[\d+\] with '(?P<damage_type>[^']+)'"
)
_RE_ENVIRONMENT_DEATH = re.compile(
    _TS + r".*?<Actor Death> CActor::Kill: '(?P<victim>[^']+)' .*? "
    r"damage type '(?P<damage_type>BleedOut|SuffocationDamage)'"
)
_RE_COMBAT_KILL = re.compile(
    _TS + r".*?<Actor Death> CActor::Kill: '(?P<victim>[^']+)' \[\d+\] "
    r"in zone '(?P<zone>[^']+)' killed by '(?P<killer>[^']+)' \[[^']+\] "
    r"using '(?P<weapon>[^']+)' \[Class (?P<weapon_class>[^\]]+)\] "
    r"with damage type '(?P<damage_type>[^']+)'"
)
_RE_CORPSE = re.compile(_TS + r".*?<\[ActorState\] Corpse>.*?Player '(?P<victim>[^']+)'")

_ENVIRONMENT_DEATH_TYPES = {"BleedOut": "BleedOut", "SuffocationDamage": "Suffocation"}


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse a Game.log timestamp into an aware UTC datetime, None if malformed."""
    if not raw:
        return None
    try:
        return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _number(raw: str | None) -> str | None:
    """Return *raw* if it parses as a float, else None (omitted, never defaulted to 0)."""
    if raw is None:
        return None
    try:
        float(raw)
    except ValueError:
        return None
    return raw


def determine_death_type(level: int, damage_type: str, caused_by: str, driver: str | None) -> str:
    """Classify a death from destroy level, damage type and who caused it."""
    self_inflicted = caused_by == "unknown" or (driver is not None and caused_by == driver)
    if damage_type in ("Collision", "Crash"):
        return "Crash" if self_inflicted else "Collision"
    if level == 1:
        return "Soft"
    if level >= 2:
        return "Hard"
    if caused_by == "Environment" or self_inflicted:
        return "Unknown"
    return "Combat"


def _resolve_location(zone: str | None, context: GameContext) -> tuple[str, str]:
    """Location for an event: its own zone, else the last known one."""
    if zone and zone.strip():
        location = strip_id_suffix(zone)
        if location != context.location:
            logger.debug("Location updated: %s", location)
            context.location = location
        return location, "event"
    if context.location:
        return context.location, "fallback"
    return "Unknown", "unknown"


def _attributes(context: GameContext, **values: str | None) -> Mapping[str, str]:
    """Build an attribute mapping, dropping absent values and stamping game context."""
    attrs = {k: v for k, v in values.items() if v is not None}
    attrs["game_mode"] = context.game_mode
    if context.game_version:
        attrs["game_version"] = context.game_version
    if context.player_ship and context.player_ship != "Unknown":
        attrs["player_ship"] = context.player_ship
    return MappingProxyType(attrs)


# --- Line handlers: (match, line, context) -> PartialEvent | None ---


def _on_login(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
    name = m.group("name")
    if name != context.username:
        logger.info("Login detected for %s", name)
        context.username = name
    ts = re.match(_TS, line)
    return PartialEvent(
        kind=EventKind.LOGIN,
        timestamp=parse_timestamp(ts.group("timestamp") if ts else None),
        subjects=(name,),
        attributes=_attributes(context, username=name),
        raw=line,
    )


def _on_session_start(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
    timestamp = parse_timestamp(m.group("timestamp"))
    logger.info("New game session at %s", m.group("timestamp"))
    context.session_started = timestamp
    return PartialEvent(
        kind=EventKind.SESSION_START,
        timestamp=timestamp,
        attributes=_attributes(context, session=m.group("timestamp")),
        raw=line,
    )


def _mode_handler(mode: str, *, quit_game: bool = False) -> Callable[..., PartialEvent | None]:
    def handler(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
        if quit_game:
            logger.info("Game quit/shutdown detected")
            context.location = "Unknown"
        if context.game_mode != mode:
            logger.info("Game mode: %s -> %s", context.game_mode, mode)
            context.game_mode = mode
        ts = re.match(_TS, line)
        return PartialEvent(
            kind=EventKind.MODE_CHANGE,
            timestamp=parse_timestamp(ts.group("timestamp") if ts else None),
            attributes=_attributes(context),
            raw=line,
        )

    return handler


def _on_version(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
    version = m.group("version")
    if version != context.game_version:
        logger.info("Game version detected: %s", version)
        context.game_version = version
    return None


def _on_loadout(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
    entity, owner = m.group("entity"), m.group("owner")
    if context.username and owner == context.username and resolve_entity(entity).category == "ship":
        ship = strip_id_suffix(entity)
        if ship != context.player_ship:
            logger.info("Player ship detected: %s", ship)
            context.player_ship = ship
    return None


def _on_vehicle_destruction(
    m: re.Match[str], line: str, context: GameContext
) -> PartialEvent | None:
    level = int(m.group("level_to"))
    if level < 1:
        return None

    vehicle = m.group("vehicle")
    model = strip_id_suffix(vehicle)
    driver = m.group("driver")
    caused_by = m.group("caused_by")
    damage_type = m.group("damage_type")
    location, source = _resolve_location(m.group("zone"), context)
    logger.info(
        "Vehicle destruction: %s in %s by %s (%s) lvl %s->%s",
        model, location, caused_by, damage_type, m.group("level_from"), level,
    )

    return PartialEvent(
        kind=EventKind.VEHICLE_DESTRUCTION,
        timestamp=parse_timestamp(m.group("timestamp")),
        subjects=(caused_by,) if caused_by != "unknown" else (),
        objects=(driver,) if driver != "unknown" else (),
        attributes=_attributes(
            context,
            vehicle_id=vehicle,
            vehicle_model=model,
            vehicle_type=vehicle_type_for(model, default=clean_entity_name(model)),
            zone=m.group("zone"),
            location=location,
            location_source=source,
            pos_x=_number(m.group("pos_x")),
            pos_y=_number(m.group("pos_y")),
            pos_z=_number(m.group("pos_z")),
            destroy_level_from=m.group("level_from"),
            destroy_level_to=str(level),
            caused_by=caused_by,
            damage_type=damage_type,
            weapon=damage_type,
            death_type=determine_death_type(level, damage_type, caused_by, driver),
        ),
        raw=line,
    )


def _on_environment_death(
    m: re.Match[str], line: str, context: GameContext
) -> PartialEvent | None:
    victim = m.group("victim")
    damage_type = m.group("damage_type")
    location, source = _resolve_location(None, context)
    logger.info("Environmental death: %s (%s)", victim, damage_type)
    return PartialEvent(
        kind=EventKind.ENVIRONMENTAL_DEATH,
        timestamp=parse_timestamp(m.group("timestamp")),
        subjects=("Environment",),
        objects=(victim,),
        attributes=_attributes(
            context,
            damage_type=damage_type,
            weapon=damage_type,
            location=location,
            location_source=source,
            vehicle_type=vehicle_type_for(victim),
            death_type=_ENVIRONMENT_DEATH_TYPES[damage_type],
        ),
        raw=line,
    )


def _on_combat_kill(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
    damage_type = m.group("damage_type")
    victim, killer = m.group("victim"), m.group("killer")
    if damage_type == "Crash":
        # Vehicle Destruction already reports crashes
        logger.debug("Skipping crash death of %s", victim)
        return None

    death_type = "Collision" if damage_type == "Collision" else "Combat"
    zone = strip_id_suffix(m.group("zone"))
    weapon = strip_id_suffix(m.group("weapon"))
    location, source = _resolve_location(zone, context)
    logger.info("Kill: %s -> %s in %s with %s (%s)", killer, victim, zone, weapon, damage_type)

    return PartialEvent(
        kind=EventKind.COMBAT_KILL,
        timestamp=parse_timestamp(m.group("timestamp")),
        subjects=(killer,),
        objects=(victim,),
        attributes=_attributes(
            context,
            zone=zone,
            location=location,
            location_source=source,
            weapon=weapon,
            weapon_class=m.group("weapon_class"),
            damage_type=damage_type,
            vehicle_id=m.group("zone"),
            vehicle_type=vehicle_type_for(victim),
            death_type=death_type,
        ),
        raw=line,
    )


def _on_corpse(m: re.Match[str], line: str, context: GameContext) -> PartialEvent | None:
    victim = m.group("victim")
    location, source = _resolve_location(None, context)
    logger.info("Player death: %s at %s", victim, m.group("timestamp"))
    return PartialEvent(
        kind=EventKind.PLAYER_CORPSE,
        timestamp=parse_timestamp(m.group("timestamp")),
        objects=(victim,),
        attributes=_attributes(context, location=location, location_source=source),
        raw=line,
    )


@dataclass(frozen=True, slots=True)
class LinePattern:
    """One entry of the dispatch table: a regex and what to do with its match."""

    name: str
    regex: re.Pattern[str]
    handler: Callable[[re.Match[str], str, GameContext], PartialEvent | None]


# Tried in order, first match wins. Most specific first: an environmental
# Actor Death also satisfies the generic kill pattern.
PATTERNS: list[LinePattern] = [
    LinePattern("login", _RE_LOGIN, _on_login),
    LinePattern("legacy-login", _RE_LEGACY_LOGIN, _on_login),
    LinePattern("session-start", _RE_SESSION_START, _on_session_start),
    LinePattern("mode-pu", _RE_MODE_PU, _mode_handler("PU")),
    LinePattern("mode-ac", _RE_MODE_AC, _mode_handler("AC")),
    LinePattern("mode-frontend", _RE_MODE_FRONTEND, _mode_handler("Unknown")),
    LinePattern("system-quit", _RE_SYSTEM_QUIT, _mode_handler("Unknown", quit_game=True)),
    LinePattern("game-version", _RE_VERSION, _on_version),
    LinePattern("loadout", _RE_LOADOUT, _on_loadout),
    LinePattern("vehicle-destruction", _RE_VEHICLE_DESTRUCTION, _on_vehicle_destruction),
    LinePattern("environment-death", _RE_ENVIRONMENT_DEATH, _on_environment_death),
    LinePattern("combat-kill", _RE_COMBAT_KILL, _on_combat_kill),
    LinePattern("corpse", _RE_CORPSE, _on_corpse),
]


def parse_line(line: str, context: GameContext) -> PartialEvent | None:
    """Parse a single Game.log line.

    Returns None for blank, unrecognized, or context-only lines.
    """
    line = line.strip()
    if not line:
        return None
    for pattern in PATTERNS:
        m = pattern.regex.search(line)
        if m:
            return pattern.handler(m, line, context)
    return None


class LogExtractor:
    """Turns raw log text into PartialEvents, buffering incomplete trailing lines.

    Usage:
        extractor = LogExtractor(GameContext())
        for event in extractor.extract(chunk.text, restart=chunk.post_truncation):
            ...
    """

    def __init__(self, context: GameContext | None = None) -> None:
        self.context = context if context is not None else GameContext()
        self._pending = ""

    @property
    def buffered(self) -> str:
        return self._pending

    def extract(self, text: str, *, restart: bool = False) -> Iterator[PartialEvent]:
        """Yield events for every complete line in *text* (lazy, in file order)."""
        if restart:
            if self._pending:
                logger.debug("Dropping %d buffered chars on stream restart", len(self._pending))
            self._pending = ""

        data = self._pending + text
        lines = data.split("\n")
        # Last element has no terminator yet (empty when text ends with \n)
        self._pending = lines.pop()

        for line in lines:
            event = self._parse(line)
            if event is not None:
                yield event

    def flush(self) -> Iterator[PartialEvent]:
        """Parse whatever is left in the line buffer (end of stream)."""
        line, self._pending = self._pending, ""
        event = self._parse(line)
        if event is not None:
            yield event

    def _parse(self, line: str) -> PartialEvent | None:
        try:
            return parse_line(line, self.context)
        except Exception:
            logger.exception("Error processing line: %r", line[:200])
            return None
