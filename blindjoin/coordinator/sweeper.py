"""
Background expiry sweep.
"""

from __future__ import annotations
import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from blindjoin.constants import SWEEP_INTERVAL_SEC
from blindjoin.coordinator.coordinator import SessionCoordinator
from blindjoin.protocol.gate import AntiAbuseGate

if TYPE_CHECKING:
    from blindjoin.network.share_service import ShareStore

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    Periodically expires sessions, prunes idle rate-limit entries and
    drops shares whose dealer never released them.

    Started and stopped with the node.
    """

    def __init__(
        self,
        coordinator: SessionCoordinator,
        gate: Optional[AntiAbuseGate] = None,
        interval: float = SWEEP_INTERVAL_SEC,
        share_store: Optional[ShareStore] = None
    ):
        self.coordinator = coordinator
        self.gate = gate
        self.share_store = share_store
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.debug(f"Expiry sweeper started (every {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def sweep(self) -> int:
        expired = self.coordinator.expire()
        if self.gate is not None:
            self.gate.prune()
        if self.share_store is not None:
            self.share_store.prune()
        return expired

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Sweep error: {e}")
