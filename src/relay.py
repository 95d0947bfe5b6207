"""
ResultRelay: fire-and-forget delivery of outbound messages to sessions.

Each registered session gets a FIFO outbox drained by one writer task, so
messages reach the client in the order they were produced no matter which
coroutine (job stream, heartbeat, dispatcher) produced them. Sending to a
session that is gone, or whose socket has closed, is a silent no-op.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

from starlette.websockets import WebSocketDisconnect, WebSocketState

from logging_utils import get_logger
from messages import OutboundMessage

logger = get_logger(__name__)


@dataclass
class _Outbox:
    connection: Any
    queue: asyncio.Queue
    writer: asyncio.Task
    closed: bool = False


def _is_open(connection: Any) -> bool:
    state = getattr(connection, "application_state", WebSocketState.CONNECTED)
    return state == WebSocketState.CONNECTED


class ResultRelay:
    """
    Usage:
        relay = ResultRelay()
        relay.register(session_id, websocket)   # inside the event loop
        relay.send(session_id, messages.banner("Welcome!"))
        ...
        await relay.unregister(session_id)
    """

    def __init__(self):
        self._outboxes: dict[str, _Outbox] = {}

    def register(self, session_id: str, connection: Any) -> None:
        """Start delivering messages for session_id over connection."""
        queue: asyncio.Queue = asyncio.Queue()
        outbox = _Outbox(connection=connection, queue=queue, writer=None)
        outbox.writer = asyncio.create_task(self._drain(session_id, outbox))
        self._outboxes[session_id] = outbox

    async def unregister(self, session_id: str) -> None:
        """Stop delivering to session_id; undelivered messages are dropped."""
        outbox = self._outboxes.pop(session_id, None)
        if outbox is None:
            return
        outbox.closed = True
        outbox.writer.cancel()
        try:
            await outbox.writer
        except asyncio.CancelledError:
            pass

    def send(self, session_id: str, message: OutboundMessage) -> None:
        """Queue message for session_id. Never raises, never blocks."""
        outbox = self._outboxes.get(session_id)
        if outbox is None or outbox.closed:
            logger.debug("Dropping %s for closed session %s", message.get("type"), session_id)
            return
        outbox.queue.put_nowait(message)

    async def flush(self, session_id: str) -> None:
        """Wait until everything queued so far for session_id was handled."""
        outbox = self._outboxes.get(session_id)
        if outbox is not None:
            await outbox.queue.join()

    async def _drain(self, session_id: str, outbox: _Outbox) -> None:
        while True:
            message = await outbox.queue.get()
            try:
                if outbox.closed or not _is_open(outbox.connection):
                    outbox.closed = True
                    continue
                await outbox.connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                # Half-closed socket; the dispatcher will unregister the session
                logger.debug("Send to session %s failed: %s", session_id, e)
                outbox.closed = True
            finally:
                outbox.queue.task_done()
