"""
Per-session progress broadcaster over server-sent events.

Process-local: connections registered on one worker are only reachable
from batches running in that same process. Every frame has the shape
`event: <name>\\ndata: <json>\\n\\n`.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from app.config import settings
from app.models.enums import ProgressEvent
from app.observability.metrics import sse_connections_active

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def format_event(event: str, payload) -> str:
    """Render one SSE frame."""
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


class ConnectionClosed(Exception):
    """Write attempted on a closed connection."""


class SSEConnection:
    """
    One client stream, backed by an asyncio queue.

    The broadcaster writes frames; the HTTP layer iterates `stream()` inside
    a StreamingResponse. The stream ends after `close()`.
    """

    def __init__(self):
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self.closed = False

    async def write(self, frame: str) -> None:
        if self.closed:
            raise ConnectionClosed("connection is closed")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class ProgressBroadcaster:
    """
    Registry of live progress connections keyed by session id.

    Each registered connection owns a heartbeat task that writes a `ping`
    frame every heartbeat interval. A failed heartbeat write stops that
    connection's heartbeat only; the connection itself is removed when the
    HTTP layer reports the disconnect through `unregister`.
    """

    def __init__(self, heartbeat_seconds: Optional[float] = None, sleep: SleepFn = asyncio.sleep):
        self.heartbeat_seconds = heartbeat_seconds or settings.SSE_HEARTBEAT_SECONDS
        self._sleep = sleep
        self._connections: dict[str, dict[SSEConnection, asyncio.Task]] = {}

    def connection_count(self, session_id: str) -> int:
        return len(self._connections.get(session_id, {}))

    async def register(self, session_id: str, connection: SSEConnection) -> None:
        """Add a connection, greet it with `connected`, start its heartbeat."""
        await connection.write(format_event(
            ProgressEvent.CONNECTED.value,
            {"session_id": session_id},
        ))

        heartbeat = asyncio.create_task(self._heartbeat(session_id, connection))
        self._connections.setdefault(session_id, {})[connection] = heartbeat
        sse_connections_active.inc()
        logger.info("sse_registered", session_id=session_id, connections=self.connection_count(session_id))

    def unregister(self, session_id: str, connection: SSEConnection) -> None:
        """Remove a connection and cancel its heartbeat. Unknown connections are ignored."""
        connections = self._connections.get(session_id)
        if not connections or connection not in connections:
            return

        connections.pop(connection).cancel()
        sse_connections_active.dec()
        if not connections:
            del self._connections[session_id]
        logger.info("sse_unregistered", session_id=session_id, connections=self.connection_count(session_id))

    async def emit(self, session_id: str, event: str, payload: dict) -> None:
        """Write one event to every connection of the session; no-op when none."""
        connections = self._connections.get(session_id)
        if not connections:
            return

        frame = format_event(event, payload)
        for connection in list(connections):
            try:
                await connection.write(frame)
            except ConnectionClosed:
                logger.debug("sse_write_skipped", session_id=session_id, event=event)

        if event == ProgressEvent.CLOSE.value:
            for connection in list(connections):
                connection.close()

    async def _heartbeat(self, session_id: str, connection: SSEConnection) -> None:
        while True:
            await self._sleep(self.heartbeat_seconds)
            try:
                await connection.write(format_event(
                    ProgressEvent.PING.value,
                    {"ts": datetime.now(timezone.utc).isoformat()},
                ))
            except ConnectionClosed:
                logger.debug("sse_heartbeat_stopped", session_id=session_id)
                return

    async def shutdown(self) -> None:
        """Close every connection and stop all heartbeats."""
        for session_id in list(self._connections):
            for connection in list(self._connections.get(session_id, {})):
                connection.close()
                self.unregister(session_id, connection)
