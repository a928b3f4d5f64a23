"""
BlindJoin WebSocket Server

aiohttp application:
- GET /ws      participant WebSocket
- GET /health  liveness
- GET /stats   coordinator and limiter statistics
- /threshold/keys/...  share holder routes for peer coordinators (optional)
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Set

from aiohttp import WSCloseCode, web

from blindjoin.constants import (
    CONNECTION_LIMIT_CLOSE_CODE,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAX_MESSAGE_BYTES,
    PROTOCOL_VERSION,
    WEBSOCKET_PATH,
)
from blindjoin.coordinator.coordinator import SessionCoordinator
from blindjoin.errors import ConnectionPolicyError
from blindjoin.network.connection import ClientConnection
from blindjoin.network.share_service import ShareHolderService
from blindjoin.protocol.gate import AntiAbuseGate

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorServer:
    """
    WebSocket front end for the coordinator.

    Refused connections (per-source cap, or a non-onion Host when Tor is
    required) are closed right after the upgrade with close code 1008,
    before any frame is read.
    """
    coordinator: SessionCoordinator
    gate: AntiAbuseGate
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_message_bytes: int = MAX_MESSAGE_BYTES
    share_service: Optional[ShareHolderService] = None

    _runner: Optional[web.AppRunner] = None
    _site: Any = None
    _sockets: Set[web.WebSocketResponse] = field(default_factory=set)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(WEBSOCKET_PATH, self._handle_ws)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/stats", self._handle_stats)
        if self.share_service is not None:
            self.share_service.register(app)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self) -> None:
        """Start listening."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Coordinator listening on ws://{self.host}:{self.port}{WEBSOCKET_PATH}")

    async def stop(self) -> None:
        """Close all sockets and stop listening."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Coordinator server stopped")

    @property
    def connection_count(self) -> int:
        return len(self._sockets)

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        source = self.gate.resolve_source(request.remote, request.headers)

        # Frames above the limit reach the gate and get a proper ERROR
        ws = web.WebSocketResponse(max_msg_size=self.max_message_bytes * 4)
        await ws.prepare(request)

        try:
            self.gate.admit(source, request.host)
        except ConnectionPolicyError as e:
            await ws.close(code=CONNECTION_LIMIT_CLOSE_CODE, message=e.message.encode())
            return ws

        self._sockets.add(ws)
        logger.debug(f"Connection from {source}")
        try:
            connection = ClientConnection(
                ws=ws,
                source=source,
                gate=self.gate,
                coordinator=self.coordinator,
            )
            await connection.run()
        finally:
            self._sockets.discard(ws)
            self.gate.release(source)
            logger.debug(f"Connection from {source} closed")

        return ws

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "version": PROTOCOL_VERSION,
            "sessions": len(self.coordinator.registry),
        })

    async def _handle_stats(self, request: web.Request) -> web.Response:
        stats = {
            "coordinator": self.coordinator.get_statistics(),
            "gate": self.gate.get_stats(),
            "websockets": self.connection_count,
        }
        if self.share_service is not None:
            stats["shares"] = self.share_service.get_stats()
        return web.json_response(stats)
