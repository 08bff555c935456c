"""File watcher for the Star Citizen Game.log using polling.

The game buffers its log writes, so filesystem events are unreliable.
Instead we poll the file size every POLL_INTERVAL seconds.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5  # seconds
MISSING_BACKOFF_MAX = 30.0  # seconds, cap while the file is absent (rotation, game not started)
PERMISSION_RETRY_INTERVAL = 60.0  # seconds


class CursorInvariantError(RuntimeError):
    """The read offset went past the end of the file without a truncation."""


@dataclass(frozen=True, slots=True)
class RawChunk:
    """Decoded text read from the log in one go."""

    text: str
    replay: bool = False  # startup history, must not trigger live notifications
    post_truncation: bool = False  # stream restarted from offset 0


@dataclass
class ReadCursor:
    """Where we are in which file."""

    device: int = 0
    inode: int = 0
    size: int = 0
    mtime_ns: int = 0
    offset: int = 0

    def same_file(self, st: os.stat_result) -> bool:
        if not self.inode:
            return True
        return (self.device, self.inode) == (st.st_dev, st.st_ino)


class GameLogWatcher:
    """Tails Game.log by polling its size, yielding new text as RawChunks.

    Usage:
        watcher = GameLogWatcher(Path("Game.log"))
        async for chunk in watcher.observe():
            ...
        # ... elsewhere ...
        watcher.stop()
    """

    def __init__(
        self,
        file_path: Path,
        poll_interval: float = POLL_INTERVAL,
        missing_backoff_max: float = MISSING_BACKOFF_MAX,
        permission_retry_interval: float = PERMISSION_RETRY_INTERVAL,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        self._file_path = Path(file_path).resolve()
        self._poll_interval = poll_interval
        self._missing_backoff_max = max(missing_backoff_max, poll_interval)
        self._permission_retry_interval = permission_retry_interval
        self._on_status = on_status
        self._cursor = ReadCursor()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stop_event = asyncio.Event()
        self._restart_requested = False
        self._missing = False
        self._permission_denied = False

    @property
    def path(self) -> Path:
        return self._file_path

    @property
    def cursor(self) -> ReadCursor:
        return self._cursor

    def read_tail(self, max_lines: int = 50) -> list[str]:
        """Read last N lines from the file without moving the cursor."""
        try:
            with open(self._file_path, encoding="utf-8", errors="replace") as f:
                all_lines = f.readlines()
        except OSError:
            return []
        result = []
        for line in all_lines[-max_lines:]:
            stripped = line.strip()
            if stripped:
                result.append(stripped)
        return result

    async def observe(self) -> AsyncIterator[RawChunk]:
        """Yield the silent replay of the current file, then new content as it appears."""
        logger.info("Watching (poll) %s", self._file_path)

        replay = self._replay()
        if replay is not None:
            yield replay

        delay = self._poll_interval
        while not self._stop_event.is_set():
            chunk, delay = self._poll_once(delay)
            if chunk is not None:
                yield chunk
            await self._sleep(delay)
        logger.info("Stopped watching")

    def stop(self) -> None:
        """Stop polling; observe() returns after its current sleep."""
        self._stop_event.set()

    def rescan(self) -> None:
        """Re-read the whole file from the start on the next poll."""
        logger.info("Rescanning log file from beginning")
        self._restart_requested = True

    def poll(self) -> RawChunk | None:
        """Read whatever was appended since the last call.

        Raises FileNotFoundError / PermissionError for the caller to retry,
        and CursorInvariantError on a broken offset.
        """
        st = os.stat(self._file_path)
        cursor = self._cursor
        post_truncation = False

        if self._restart_requested or not cursor.same_file(st) or st.st_size < cursor.offset:
            if not self._restart_requested:
                logger.info("File truncated or replaced, resetting position")
            self._reset()
            cursor = self._cursor
            post_truncation = True

        cursor.device, cursor.inode = st.st_dev, st.st_ino
        cursor.size, cursor.mtime_ns = st.st_size, st.st_mtime_ns

        if st.st_size == cursor.offset:
            # Truncated to empty: the restart still has to reach the extractor
            return RawChunk(text="", post_truncation=True) if post_truncation else None

        data = self._read_range(cursor.offset, st.st_size)
        cursor.offset += len(data)
        if cursor.offset > st.st_size:
            raise CursorInvariantError(
                f"offset {cursor.offset} beyond size {st.st_size} of {self._file_path}"
            )

        text = self._decoder.decode(data)
        if not text and not post_truncation:
            return None
        return RawChunk(text=text, post_truncation=post_truncation)

    def _replay(self) -> RawChunk | None:
        """Startup pass: everything already in the file, flagged as replay."""
        self._reset()
        try:
            chunk = self.poll()
        except FileNotFoundError:
            logger.warning("Log file not found at %s, waiting for it", self._file_path)
            self._missing = True
            return None
        except PermissionError as e:
            self._report_permission_denied(e)
            return None
        except OSError as e:
            logger.warning("Cannot read game log: %s", e)
            return None
        if chunk is None:
            logger.info("Initial read complete (file empty)")
            return None
        logger.info("Initial read complete (%d bytes)", self._cursor.offset)
        return RawChunk(text=chunk.text, replay=True)

    def _poll_once(self, delay: float) -> tuple[RawChunk | None, float]:
        """One poll with error classification; returns the chunk and the next sleep."""
        try:
            chunk = self.poll()
        except FileNotFoundError:
            if not self._missing:
                logger.warning("Log file missing at %s, retrying", self._file_path)
                self._missing = True
            else:
                logger.debug("Log file still missing")
            return None, min(delay * 2, self._missing_backoff_max)
        except PermissionError as e:
            self._report_permission_denied(e)
            return None, self._permission_retry_interval
        except CursorInvariantError:
            logger.exception("Read cursor corrupted, restarting watcher state")
            self._reset()
            return None, self._poll_interval
        except OSError as e:
            logger.warning("Cannot read game log: %s", e)
            return None, self._poll_interval

        if self._missing:
            logger.info("Log file found: %s", self._file_path)
            self._missing = False
        if self._permission_denied:
            logger.info("Log file readable again")
            self._permission_denied = False
        return chunk, self._poll_interval

    def _report_permission_denied(self, error: PermissionError) -> None:
        """Surface the first denial to the operator; later ones only go to debug."""
        if self._permission_denied:
            logger.debug("Still no permission to read %s", self._file_path)
            return
        self._permission_denied = True
        logger.error("Permission denied reading %s: %s", self._file_path, error)
        if self._on_status is not None:
            self._on_status(f"Cannot read log file (permission denied): {self._file_path}")

    def _read_range(self, start: int, end: int) -> bytes:
        with open(self._file_path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    def _reset(self) -> None:
        self._cursor = ReadCursor()
        self._decoder.reset()
        self._restart_requested = False

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
