"""Kill-feed pipeline: watcher -> extractor -> correlator -> enricher -> sink -> stream.

Everything runs on one event loop. File chunks, sweep ticks and category
updates from the server are queued as messages and handled by a single
consumer task, so only that task touches the correlation window and
events reach the sinks in the order they were finalized.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from killfeed.audit import AuditLog
from killfeed.config import DEFAULT_SERVER_URL
from killfeed.correlator import DEFAULT_WINDOW, CorrelationEngine, FinalizedEvent
from killfeed.enricher import Enricher, ProfileLookup, RsiProfileClient
from killfeed.parser import EventKind, GameContext, LogExtractor
from killfeed.sink import EventSink
from killfeed.store import EventStore
from killfeed.stream import CredentialProvider, StreamClient
from killfeed.watcher import GameLogWatcher, RawChunk

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """Pipeline configuration."""

    log_path: Path = Path("Game.log")
    db_path: str = "events.db"
    csv_path: str | None = "kill_log.csv"
    server_url: str | None = DEFAULT_SERVER_URL
    client_id: str = ""
    correlation_window: float = DEFAULT_WINDOW
    sweep_interval: float = 1.0
    enrichment_timeout: float = 5.0
    fetch_profiles: bool = True
    max_events: int = 100
    poll_interval: float = 0.5


@dataclass(frozen=True, slots=True)
class _Chunk:
    chunk: RawChunk


@dataclass(frozen=True, slots=True)
class _Category:
    event_id: str
    category: dict[str, Any]


class _Sweep:
    pass


class _Stop:
    pass


_SWEEP = _Sweep()
_STOP = _Stop()


class KillFeedPipeline:
    """Wires the components together and runs them until stop().

    Usage:
        pipeline = KillFeedPipeline(PipelineConfig(log_path=path), credentials=provider)
        await pipeline.run()   # from another task: pipeline.stop()
    """

    def __init__(
        self,
        config: PipelineConfig,
        credentials: CredentialProvider | None = None,
        lookup: ProfileLookup | None = None,
        stream: StreamClient | None = None,
        on_event: Callable[[FinalizedEvent], None] | None = None,
        on_status: Callable[[str], None] | None = None,
        on_guest_token: Callable[[str], None] | None = None,
    ) -> None:
        self._config = config
        self._on_event = on_event
        self.context = GameContext()

        self._watcher = GameLogWatcher(
            config.log_path, poll_interval=config.poll_interval, on_status=on_status,
        )
        self._extractor = LogExtractor(self.context)
        self._correlator = CorrelationEngine(window=config.correlation_window)

        self._owned_lookup: RsiProfileClient | None = None
        if lookup is None and config.fetch_profiles:
            self._owned_lookup = lookup = RsiProfileClient()
        self._enricher = Enricher(lookup, timeout=config.enrichment_timeout)

        if stream is None and config.server_url and credentials is not None:
            stream = StreamClient(
                config.server_url,
                config.client_id,
                credentials,
                on_guest_token=on_guest_token,
                on_category=self._on_category,
            )
        self._stream = stream

        self.store = EventStore(db_path=config.db_path, max_events=config.max_events)
        audit = AuditLog(config.csv_path) if config.csv_path else None
        self._sink = EventSink(self.store, audit, stream, self.context, client_id=config.client_id)

        self._queue: asyncio.Queue[object] = asyncio.Queue()

    @property
    def watcher(self) -> GameLogWatcher:
        return self._watcher

    @property
    def stream(self) -> StreamClient | None:
        return self._stream

    async def run(self) -> None:
        """Run until stop(); pending correlations are drained before returning."""
        logger.info("Pipeline started for %s", self._config.log_path)
        background = [
            asyncio.create_task(self._pump(), name="watcher-pump"),
            asyncio.create_task(self._sweep_timer(), name="sweep-timer"),
        ]
        if self._stream is not None:
            background.append(asyncio.create_task(self._stream.run(), name="stream-client"))
        try:
            await self._consume()
            await self._shutdown()
        finally:
            if self._stream is not None:
                self._stream.stop()
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            if self._owned_lookup is not None:
                await self._owned_lookup.close()
            self.store.close()
            logger.info("Pipeline stopped")

    def stop(self) -> None:
        """Stop watching; run() finishes once queued chunks are processed."""
        self._watcher.stop()

    def rescan(self) -> None:
        self._watcher.rescan()

    async def _pump(self) -> None:
        try:
            async for chunk in self._watcher.observe():
                await self._queue.put(_Chunk(chunk))
        except Exception:
            logger.exception("Log watcher failed")
        finally:
            await self._queue.put(_STOP)

    async def _sweep_timer(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            await self._queue.put(_SWEEP)

    def _on_category(self, event_id: str, category: dict[str, Any]) -> None:
        self._queue.put_nowait(_Category(event_id, category))

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            if message is _STOP:
                return
            try:
                await self._dispatch(message)
            except Exception:
                logger.exception("Error handling %s", type(message).__name__)

    async def _dispatch(self, message: object) -> None:
        if isinstance(message, _Chunk):
            await self._process_chunk(message.chunk)
        elif message is _SWEEP:
            await self._emit(self._correlator.expire())
        elif isinstance(message, _Category):
            self.store.attach_category(message.event_id, message.category)

    async def _process_chunk(self, chunk: RawChunk) -> None:
        if chunk.post_truncation:
            logger.info("Log restarted, processing from the beginning")
        previous_user = self.context.username
        for partial in self._extractor.extract(chunk.text, restart=chunk.post_truncation):
            if partial.kind is EventKind.LOGIN and not chunk.replay:
                if self.context.username != previous_user and self._stream is not None:
                    self._stream.reconnect()
                previous_user = self.context.username
            await self._emit(self._correlator.submit(partial, replayed=chunk.replay))

    async def _emit(self, events: list[FinalizedEvent]) -> None:
        for event in events:
            if not event.replayed:
                event = await self._enricher.enrich(event)
            self._sink.deliver(event)
            if self._on_event is not None and not event.replayed:
                self._on_event(event)

    async def _shutdown(self) -> None:
        for partial in self._extractor.flush():
            await self._emit(self._correlator.submit(partial))
        pending = self._correlator.drain()
        if pending:
            logger.info("Draining %d pending correlations", len(pending))
        await self._emit(pending)
