from __future__ import annotations

from typing import Dict, List, Protocol, Sequence

from advisor.models.chat import Turn


class SessionStore(Protocol):
    """Contract shared by every transcript backend."""

    def get(self, session_id: str) -> List[Turn]:
        """Return the stored transcript, or an empty list for unknown sessions."""

    def set(self, session_id: str, turns: Sequence[Turn]) -> None:
        """Replace the stored transcript wholesale."""


class InMemorySessionStore:
    """Ephemeral in-memory storage for session transcripts.

    Lives as long as the process does; there is no eviction.
    """

    def __init__(self) -> None:
        self._store: Dict[str, List[Turn]] = {}

    def get(self, session_id: str) -> List[Turn]:
        return list(self._store.get(session_id, []))

    def set(self, session_id: str, turns: Sequence[Turn]) -> None:
        self._store[session_id] = list(turns)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._store

    def __len__(self) -> int:
        return len(self._store)
