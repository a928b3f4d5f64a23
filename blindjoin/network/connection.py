"""
BlindJoin Client Connection

One task per WebSocket. Inbound frames are handled strictly one after the
other; outbound messages flow through the connection's MessageChannel and
a separate writer task.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from aiohttp import WSMsgType, web

from blindjoin.coordinator.channel import MessageChannel
from blindjoin.coordinator.coordinator import Membership, SessionCoordinator
from blindjoin.errors import RateLimitError, ValidationError
from blindjoin.protocol.gate import AntiAbuseGate
from blindjoin.protocol.messages import ErrorMessage

logger = logging.getLogger(__name__)


@dataclass
class ClientConnection:
    """A participant's WebSocket, from accept to close."""
    ws: web.WebSocketResponse
    source: str
    gate: AntiAbuseGate
    coordinator: SessionCoordinator

    channel: MessageChannel = field(default_factory=MessageChannel)
    membership: Membership = field(default_factory=Membership)
    messages_received: int = 0

    _writer: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Serve the connection until either side closes it."""
        self.channel.label = self.source
        self._writer = asyncio.create_task(self._write_loop())
        try:
            await self._read_loop()
        finally:
            self.coordinator.disconnect(
                self.membership.session_id,
                self.membership.participant_id,
            )
            self.membership.clear()
            self.channel.close()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass

    async def _read_loop(self) -> None:
        async for frame in self.ws:
            if frame.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                self.messages_received += 1
                await self.handle_frame(frame.data)
            elif frame.type == WSMsgType.ERROR:
                logger.debug(f"Connection {self.source} error: {self.ws.exception()}")
                break

            if self.channel.closed:
                break

    async def handle_frame(self, data) -> None:
        try:
            message = self.gate.inspect(self.source, data)
        except (RateLimitError, ValidationError) as e:
            self.channel.send(ErrorMessage.from_error(e))
            return

        try:
            await self.coordinator.dispatch(self.membership, message, self.channel)
        except Exception as e:
            logger.error(f"Error handling {message.TYPE.value} from {self.source}: {e}")

    async def _write_loop(self) -> None:
        while True:
            message = await self.channel.receive()
            if message is None:
                break
            try:
                await self.ws.send_str(message.to_json())
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Send to {self.source} failed: {e}")
                break

        if not self.ws.closed:
            await self.ws.close()
