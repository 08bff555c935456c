"""Fan-out of finalized events to the store, the audit log and the stream."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from killfeed.audit import AuditLog
from killfeed.correlator import FinalizedEvent
from killfeed.parser import GameContext
from killfeed.store import EventStore

logger = logging.getLogger(__name__)


class Outbound(Protocol):
    def enqueue(self, wire: dict[str, Any]) -> None: ...


class EventSink:
    """Delivers each event to every branch independently.

    A failing branch is logged and the remaining branches still run.
    Replayed events (startup history) only reach the store.
    """

    def __init__(
        self,
        store: EventStore | None,
        audit: AuditLog | None,
        outbound: Outbound | None,
        context: GameContext,
        client_id: str = "",
    ) -> None:
        self._store = store
        self._audit = audit
        self._outbound = outbound
        self._context = context
        self._client_id = client_id
        self.delivered = 0

    def deliver(self, event: FinalizedEvent) -> None:
        player_involved = event.involves(self._context.username)

        if self._store is not None:
            try:
                self._store.add(event, player_involved)
            except Exception:
                logger.exception("Store failed for event %s", event.event_id)

        if event.replayed:
            self.delivered += 1
            return

        if self._audit is not None:
            try:
                self._audit.write(event)
            except Exception:
                logger.exception("Audit log write failed for event %s", event.event_id)

        if self._outbound is not None:
            try:
                self._outbound.enqueue(event.to_wire(self._client_id))
            except Exception:
                logger.exception("Outbound enqueue failed for event %s", event.event_id)

        self.delivered += 1
        logger.debug("Delivered %s: %s", event.event_id, event.description)
