"""
Outbound message channel between the coordinator and one connection.

The coordinator never awaits a client: send() is non-blocking and a
connection that falls CHANNEL_MAX_PENDING messages behind is closed.
"""

from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

from blindjoin.constants import CHANNEL_MAX_PENDING
from blindjoin.protocol.messages import ServerMessage

logger = logging.getLogger(__name__)

_CLOSED = object()


class MessageChannel:
    """Bounded queue of server messages for a single connection."""

    def __init__(self, max_pending: int = CHANNEL_MAX_PENDING, label: str = ""):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending
        self.label = label
        self.closed = False
        self.sent_count = 0

    def send(self, message: ServerMessage) -> bool:
        """Queue a message. False if the channel is closed or overflowed."""
        if self.closed:
            return False
        if self._queue.qsize() >= self._max_pending:
            logger.warning(f"Channel {self.label} overflowed, closing")
            self.close()
            return False
        self._queue.put_nowait(message)
        self.sent_count += 1
        return True

    async def receive(self) -> Optional[ServerMessage]:
        """Next message, or None once closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> List[ServerMessage]:
        """Take everything queued right now without waiting."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                # Keep the close marker for receive()
                self._queue.put_nowait(_CLOSED)
                break
            items.append(item)
        return items

    def close(self):
        if self.closed:
            return
        self.closed = True
        # One slot is reserved for the marker
        self._queue.put_nowait(_CLOSED)

    def __repr__(self) -> str:
        return f"MessageChannel({self.label!r}, pending={self._queue.qsize()}, closed={self.closed})"
