"""Entity-id resolution for Star Citizen log names (ships, NPCs, props)."""

from __future__ import annotations

import re
from dataclasses import dataclass

# Ship manufacturer prefixes used in vehicle entity ids
SHIP_MANUFACTURERS = (
    "ORIG", "CRUS", "RSI", "AEGS", "VNCL", "DRAK", "ANVL", "BANU",
    "MISC", "CNOU", "XIAN", "GAMA", "TMBL", "ESPR", "KRIG", "GRIN",
    "XNAA", "MRAI",
)

_RE_ID_SUFFIX = re.compile(r"^(.+?)_\d+$")
_RE_SHIP = re.compile(rf"^({'|'.join(SHIP_MANUFACTURERS)})_")

# AI-controlled actors: mission NPCs, security, creatures
_NPC_PATTERNS = [
    re.compile(r"^PU_"),
    re.compile(r"^NPC_"),
    re.compile(r"_NPC_"),
    re.compile(r"^AIModule"),
    re.compile(r"^Kopion", re.IGNORECASE),
    re.compile(r"^vlk_", re.IGNORECASE),
    re.compile(r"^Quasigrazer", re.IGNORECASE),
]


@dataclass(frozen=True, slots=True)
class ResolvedEntity:
    """Display information for a raw log entity id."""

    entity_id: str
    display_name: str
    category: str  # "ship" | "npc" | "unknown"

    @property
    def is_npc(self) -> bool:
        return self.category == "npc"


def strip_id_suffix(name: str) -> str:
    """Drop the trailing numeric instance id (``ANVL_Arrow_1234`` -> ``ANVL_Arrow``)."""
    m = _RE_ID_SUFFIX.match(name)
    return m.group(1) if m else name


def is_ship(entity_id: str) -> bool:
    return bool(_RE_SHIP.match(entity_id))


def is_npc(entity_id: str) -> bool:
    return any(p.search(entity_id) for p in _NPC_PATTERNS)


def clean_entity_name(entity_id: str) -> str:
    """Human-readable name: no id suffix, no manufacturer prefix, spaces for underscores."""
    if not entity_id:
        return "Unknown"
    cleaned = strip_id_suffix(entity_id)
    parts = cleaned.split("_")
    if len(parts) > 1 and parts[0] in SHIP_MANUFACTURERS:
        cleaned = "_".join(parts[1:])
    return cleaned.replace("_", " ")


def resolve_entity(entity_id: str) -> ResolvedEntity:
    if not entity_id:
        return ResolvedEntity(entity_id="", display_name="Unknown", category="unknown")
    if is_npc(entity_id):
        return ResolvedEntity(entity_id, clean_entity_name(entity_id), "npc")
    if is_ship(entity_id):
        return ResolvedEntity(entity_id, clean_entity_name(entity_id), "ship")
    return ResolvedEntity(entity_id, clean_entity_name(entity_id), "unknown")


def vehicle_type_for(entity_id: str, default: str = "Player") -> str:
    """Vehicle column value for an actor or vehicle id: ``NPC``, ship name, or *default*."""
    resolved = resolve_entity(entity_id)
    if resolved.category == "npc":
        return "NPC"
    if resolved.category == "ship":
        return resolved.display_name
    return default


def is_player_handle(name: str) -> bool:
    """True for names that look like a real player handle (profile-lookup candidates)."""
    if not name or name in ("Environment", "Unknown") or name.lower() == "unknown":
        return False
    return "_" not in name and not is_npc(name)
