"""
Live session registry.

Owned by one SessionCoordinator; iteration order is creation order.
"""

from __future__ import annotations
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional

from blindjoin.core.types import Denomination, Session


class SessionRegistry:
    """In-memory map of live sessions."""

    def __init__(self):
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()

    def add(self, session: Session):
        if session.id in self._sessions:
            raise ValueError(f"Session {session.id} already registered")
        self._sessions[session.id] = session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def for_denomination(self, denomination: Denomination) -> List[Session]:
        return [s for s in self._sessions.values() if s.denomination == denomination]

    def count_by_state(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for session in self._sessions.values():
            counts[session.state.value] = counts.get(session.state.value, 0) + 1
        return counts

    def clear(self):
        self._sessions.clear()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        # Snapshot, callers may remove while iterating
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
