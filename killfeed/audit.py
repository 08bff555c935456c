"""Append-only CSV audit log of finalized events."""

from __future__ import annotations

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path

from killfeed.correlator import FinalizedEvent

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "KillTime", "EnemyPilot", "EnemyShip", "Enlisted", "RecordNumber",
    "OrgAffiliation", "Player", "Weapon", "Ship", "Method", "Mode",
    "GameVersion", "TrackRver", "PFP",
]
TRACKR_VERSION = "2.06"

# e.g. "Sun, 31 Mar 2024 21:22:07 UTC"
KILL_TIME_FORMAT = "%a, %d %b %Y %H:%M:%S UTC"


def format_kill_time(timestamp: datetime | None) -> str:
    if timestamp is None:
        return ""
    return timestamp.astimezone(timezone.utc).strftime(KILL_TIME_FORMAT)


def audit_row(event: FinalizedEvent) -> dict[str, str]:
    """Column values for one event."""
    attrs = event.attributes
    enrichment = event.enrichment
    return {
        "KillTime": format_kill_time(event.timestamp),
        "EnemyPilot": event.victim,
        "EnemyShip": attrs.get("vehicle_type") or "Unknown",
        "Enlisted": enrichment.get("victim_enlisted", "-"),
        "RecordNumber": enrichment.get("victim_record", "-"),
        "OrgAffiliation": enrichment.get("victim_org", "-"),
        "Player": event.killer,
        "Weapon": attrs.get("weapon") or "Unknown",
        "Ship": attrs.get("player_ship") or "Unknown",
        "Method": attrs.get("damage_type") or "Unknown",
        "Mode": attrs.get("game_mode") or "Unknown",
        "GameVersion": attrs.get("game_version", ""),
        "TrackRver": TRACKR_VERSION,
        "PFP": enrichment.get("victim_avatar", ""),
    }


class AuditLog:
    """CSV file with one row per event and a single header row.

    Values are quoted by the csv module, so delimiters, quotes and line
    breaks inside a field never break the row structure.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, event: FinalizedEvent) -> None:
        """Append one row. Raises OSError on write failure."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        needs_header = not self._path.exists() or self._path.stat().st_size == 0
        with open(self._path, "a", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_HEADERS)
            if needs_header:
                writer.writeheader()
                logger.info("Created CSV log file %s", self._path)
            writer.writerow(audit_row(event))

    def monthly_tally(self, now: datetime | None = None) -> int:
        """Rows whose KillTime falls in the current UTC month."""
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        try:
            with open(self._path, encoding="utf-8", newline="") as f:
                rows = list(csv.DictReader(f))
        except FileNotFoundError:
            logger.info("CSV log file not found at %s, tally is 0", self._path)
            return 0

        tally = 0
        for row in rows:
            raw = row.get("KillTime") or ""
            if not raw:
                continue
            try:
                killed_at = datetime.strptime(raw, KILL_TIME_FORMAT)
            except ValueError:
                logger.warning("Could not parse KillTime %r from CSV", raw)
                continue
            if (killed_at.year, killed_at.month) == (now.year, now.month):
                tally += 1
        logger.info("Kill tally (current month): %d", tally)
        return tally
