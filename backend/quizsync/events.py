from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List

from .db import InMemorySessionStore, Unsubscribe
from .utils import now_ms

if TYPE_CHECKING:
    from .player import Feedback


class EventStore:
    """Sequenced per-session messages so clients without a store subscription can poll."""

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._events: Dict[str, List[dict[str, Any]]] = {}
        self._counters: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def append(self, session_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a session and return its sequence number."""

        async with self._lock:
            seq = self._counters.get(session_id, 0) + 1
            self._counters[session_id] = seq
            self._events.setdefault(session_id, []).append(
                {
                    "seq": seq,
                    "timestamp": now_ms(),
                    "payload": payload,
                }
            )
            # keep the newest max_events, seq keeps counting
            del self._events[session_id][:-self.max_events]
        return seq

    async def list(self, session_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a session that occur after the given sequence."""

        async with self._lock:
            events = self._events.get(session_id, [])
            if after is not None:
                events = [e for e in events if e["seq"] > after]
            return [dict(e) for e in events[:limit]]

    async def reset(self, session_id: str) -> None:
        """Clear stored events for a session and emit a reset marker."""

        async with self._lock:
            self._events.pop(session_id, None)
        # sequence numbers keep increasing so pollers notice the reset
        await self.append(session_id, {"type": "session_reset"})

    async def drop(self, session_id: str) -> None:
        async with self._lock:
            self._events.pop(session_id, None)
            self._counters.pop(session_id, None)


class SessionEventFeed:
    """Relays store snapshots and per-player feedback into the event log.

    Mirrors what a store subscriber sees: one ``state`` message carrying the full
    session record per change, and one ``feedback`` message per player and question.
    """

    def __init__(self, store: InMemorySessionStore, events: EventStore):
        self.store = store
        self.events = events
        self._unsubscribes: Dict[str, Unsubscribe] = {}

    def attach(self, session_id: str) -> None:
        if session_id in self._unsubscribes:
            return

        async def relay(snapshot: Any) -> None:
            await self.events.append(session_id, {"type": "state", "session": snapshot})

        self._unsubscribes[session_id] = self.store.subscribe(f"sessions/{session_id}", relay)

    def detach(self, session_id: str) -> None:
        unsubscribe = self._unsubscribes.pop(session_id, None)
        if unsubscribe:
            unsubscribe()

    async def publish_feedback(self, session_id: str, player_id: str, feedback: "Feedback") -> int:
        return await self.events.append(
            session_id,
            {
                "type": "feedback",
                "playerId": player_id,
                "questionId": feedback.question_id,
                "isCorrect": feedback.is_correct,
                "xp": feedback.xp,
                "streak": feedback.streak,
                "rank": feedback.rank,
                "totalPlayers": feedback.total_players,
            },
        )
