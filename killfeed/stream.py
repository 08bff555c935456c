"""WebSocket client that relays finalized events to the remote kill-feed service.

One logical connection, re-established with capped, jittered exponential
backoff. Events are buffered while the client is not authenticated and
flushed oldest-first once the server acknowledges authentication.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

FAILURE_ALERT_THRESHOLD = 5  # consecutive failed attempts before the operator is told


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED_UNAUTHENTICATED = "connected-unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True, slots=True)
class Credential:
    """Token presented at connect time."""

    token: str | None
    kind: str = "user"  # "user" | "guest"


CredentialProvider = Callable[[], Awaitable[Credential | None]]


class Backoff:
    """Reconnection delays: exponential, jittered, capped, never decreasing.

    The sequence restarts from *minimum* once a connection has been held
    for at least *stable_after* seconds.
    """

    def __init__(
        self,
        minimum: float = 1.0,
        maximum: float = 60.0,
        factor: float = 2.0,
        jitter: float = 0.1,
        stable_after: float = 30.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.minimum = minimum
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self.stable_after = stable_after
        self._rng = rng
        self._base = minimum
        self._last = 0.0
        self._connected_at: float | None = None

    def next_delay(self) -> float:
        delay = min(self.maximum, self._base * (1.0 + self.jitter * self._rng()))
        delay = max(delay, self._last)
        self._last = delay
        self._base = min(self.maximum, self._base * self.factor)
        return delay

    def reset(self) -> None:
        self._base = self.minimum
        self._last = 0.0

    def connected(self, now: float) -> None:
        self._connected_at = now

    def disconnected(self, now: float) -> None:
        if self._connected_at is not None and now - self._connected_at >= self.stable_after:
            logger.debug("Connection was stable for %.0fs, resetting backoff", now - self._connected_at)
            self.reset()
        self._connected_at = None


class StreamClient:
    """Relays events over a WebSocket, buffering while not authenticated.

    Usage:
        client = StreamClient(url, client_id, credentials)
        task = asyncio.create_task(client.run())
        client.enqueue(event.to_wire(client_id))
        ...
        client.stop()
    """

    def __init__(
        self,
        url: str,
        client_id: str,
        credentials: CredentialProvider,
        backoff: Backoff | None = None,
        connect: Callable[[str], Any] | None = None,
        on_state: Callable[[ConnectionState, bool], None] | None = None,
        on_guest_token: Callable[[str], None] | None = None,
        on_category: Callable[[str, dict[str, Any]], None] | None = None,
        failure_alert_threshold: int = FAILURE_ALERT_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._client_id = client_id
        self._credentials = credentials
        self._backoff = backoff or Backoff()
        self._connect = connect or websockets.connect
        self._on_state = on_state
        self._on_guest_token = on_guest_token
        self._on_category = on_category
        self._failure_alert_threshold = failure_alert_threshold
        self._clock = clock

        self._buffer: deque[dict[str, Any]] = deque()
        self._state = ConnectionState.DISCONNECTED
        self._flush_wanted = asyncio.Event()
        self._retry_now = asyncio.Event()
        self._attempt: asyncio.Future[bool] | None = None
        self._superseded = False
        self._stopping = False
        self._session_authenticated = False
        self._failures = 0
        self._alerted = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def enqueue(self, wire: dict[str, Any]) -> None:
        """Buffer an outbound event; it is sent once authenticated."""
        self._buffer.append(wire)
        self._flush_wanted.set()

    async def run(self) -> None:
        """Connect, reconnect with backoff, until stop()."""
        self._stopping = False
        while not self._stopping:
            self._attempt = asyncio.ensure_future(self._session())
            authenticated = False
            try:
                authenticated = await self._attempt
            except asyncio.CancelledError:
                if not (self._superseded or self._stopping):
                    raise
            except (OSError, WebSocketException) as e:
                logger.warning("Stream connection to %s failed: %s", self._url, e)
            finally:
                self._attempt = None
                self._set_state(ConnectionState.DISCONNECTED)
                self._backoff.disconnected(self._clock())

            if self._stopping:
                break
            if self._superseded:
                self._superseded = False
                logger.info("Reconnecting with fresh credentials")
                continue
            if not authenticated:
                self._record_failure()

            delay = self._backoff.next_delay()
            logger.info("Reconnecting in %.1fs", delay)
            await self._wait_retry(delay)
        logger.info("Stream client stopped")

    def stop(self) -> None:
        self._stopping = True
        self._retry_now.set()
        if self._attempt is not None:
            self._attempt.cancel()

    def reconnect(self) -> None:
        """Abandon the current attempt and connect again (e.g. after a new login)."""
        if self._attempt is not None:
            self._superseded = True
            self._attempt.cancel()
        self._retry_now.set()

    async def _session(self) -> bool:
        """One connection attempt; returns whether it reached authenticated."""
        credential = await self._credentials()
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s", self._url)
        self._session_authenticated = False
        async with self._connect(self._url) as ws:
            self._backoff.connected(self._clock())
            self._set_state(ConnectionState.CONNECTED_UNAUTHENTICATED)
            await self._authenticate(ws, credential)

            receiver = asyncio.ensure_future(self._receive(ws))
            sender = asyncio.ensure_future(self._send_loop(ws))
            try:
                done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (receiver, sender):
                    task.cancel()
                await asyncio.gather(receiver, sender, return_exceptions=True)
            for task in done:
                task.result()  # re-raise transport errors
        logger.info("Stream connection closed")
        return self._session_authenticated

    async def _authenticate(self, ws: Any, credential: Credential | None) -> None:
        if credential is None or not credential.token:
            logger.info("No credential available, authenticating as new guest")
            credential = Credential(token=None, kind="guest")
        await self._send(ws, "authenticate", {
            "token": credential.token,
            "tokenType": credential.kind,
            "clientId": self._client_id,
        })

    async def _receive(self, ws: Any) -> None:
        async for message in ws:
            try:
                frame = json.loads(message)
                name, data = frame["event"], frame.get("data") or {}
            except (ValueError, TypeError, KeyError):
                logger.debug("Ignoring malformed frame: %r", message)
                continue
            await self._handle(ws, name, data)

    async def _handle(self, ws: Any, name: str, data: dict[str, Any]) -> None:
        if name == "authenticated":
            logger.info("Authenticated with %s (%d buffered events)", self._url, len(self._buffer))
            self._failures = 0
            self._alerted = False
            self._session_authenticated = True
            self._set_state(ConnectionState.AUTHENTICATED)
            self._flush_wanted.set()
        elif name == "reauthenticate":
            logger.info("Server requested re-authentication")
            self._set_state(ConnectionState.CONNECTED_UNAUTHENTICATED)
            await self._authenticate(ws, await self._credentials())
        elif name == "guest_token_issued":
            token = data.get("token")
            if not token:
                logger.warning("Guest token frame without a token")
                return
            logger.info("Guest token issued")
            if self._on_guest_token is not None:
                self._on_guest_token(token)
            self._set_state(ConnectionState.CONNECTED_UNAUTHENTICATED)
            await self._authenticate(ws, Credential(token=token, kind="guest"))
        elif name == "event_category":
            if self._on_category is not None and data.get("eventId"):
                self._on_category(data["eventId"], data.get("category") or {})
        else:
            logger.debug("Unhandled frame %s", name)

    async def _send_loop(self, ws: Any) -> None:
        while True:
            await self._flush_wanted.wait()
            self._flush_wanted.clear()
            await self.flush(ws)

    async def flush(self, ws: Any) -> int:
        """Send buffered events oldest-first; stops at the first failure.

        An event leaves the buffer only after its send has returned, so a
        failure keeps it (and everything after it) at the front.
        """
        sent = 0
        while self._buffer and self._state is ConnectionState.AUTHENTICATED:
            wire = self._buffer[0]
            await self._send(ws, "submit_event", {"clientId": self._client_id, "event": wire})
            self._buffer.popleft()
            sent += 1
        if sent:
            logger.debug("Flushed %d events, %d still buffered", sent, len(self._buffer))
        return sent

    async def _send(self, ws: Any, name: str, data: dict[str, Any]) -> None:
        await ws.send(json.dumps({"event": name, "data": data}))

    def _record_failure(self) -> None:
        self._failures += 1
        logger.debug("Consecutive connection failures: %d", self._failures)
        if self._failures >= self._failure_alert_threshold and not self._alerted:
            self._alerted = True
            logger.error(
                "Unable to reach %s after %d attempts, events are being buffered (%d pending)",
                self._url, self._failures, len(self._buffer),
            )
            if self._on_state is not None:
                self._on_state(self._state, True)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Stream state: %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state is not None:
            self._on_state(state, False)

    async def _wait_retry(self, delay: float) -> None:
        self._retry_now.clear()
        try:
            await asyncio.wait_for(self._retry_now.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
