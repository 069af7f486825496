from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .catalog import QuizCatalog
from .db import InMemorySessionStore, Settings
from .errors import NotFound
from .events import EventStore, SessionEventFeed
from .host import HostController
from .models import BadgeId
from .player import PlayerAgent


logger = logging.getLogger(__name__)


class SessionRuntime:
    """Keeps the host controller and player agents of every live session in one process."""

    def __init__(
        self,
        store: InMemorySessionStore,
        catalog: QuizCatalog,
        settings: Settings,
        events: Optional[EventStore] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.settings = settings
        self.events = events or EventStore(settings.EVENT_LOG_LIMIT)
        self.feed = SessionEventFeed(store, self.events)
        self.hosts: Dict[str, HostController] = {}
        self.players: Dict[str, Dict[str, PlayerAgent]] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, quiz_id: str, host_id: str) -> HostController:
        await self.prune_finished()
        session_id = await HostController.create_session(self.store, self.catalog, quiz_id, host_id)
        await self.events.reset(session_id)
        return await self.host(session_id)

    async def host(self, session_id: str) -> HostController:
        async with self._lock:
            host = self.hosts.get(session_id)
            if host is None:
                host = HostController(
                    self.store,
                    self.catalog,
                    session_id,
                    auto_leaderboard_delay=self.settings.AUTO_LEADERBOARD_DELAY,
                )
                await host.attach()
                self.hosts[session_id] = host
                self.feed.attach(session_id)
        return host

    async def join(self, session_id: str, nickname: str, badge: BadgeId = "rocket") -> PlayerAgent:
        host = await self.host(session_id)
        base_points = host.quiz.settings.points_per_question if host.quiz else self.settings.BASE_POINTS

        agent = PlayerAgent(
            self.store,
            session_id,
            base_points=base_points,
            max_nickname_length=self.settings.MAX_NICKNAME_LENGTH,
            top_n=self.settings.LEADERBOARD_TOP_N,
            feed=self.feed,
        )
        await agent.connect()
        try:
            await agent.join(nickname, badge)
        except Exception:
            agent.disconnect()
            raise

        self.players.setdefault(session_id, {})[agent.player_id] = agent
        await self.store.drain()
        return agent

    def player(self, session_id: str, player_id: str) -> PlayerAgent:
        agent = self.players.get(session_id, {}).get(player_id)
        if agent is None:
            raise NotFound(f"Player {player_id} is not in session {session_id}")
        return agent

    async def close(self, session_id: str) -> None:
        """Stop following a session and forget its host, players and event log."""

        async with self._lock:
            host = self.hosts.pop(session_id, None)
        if host is not None:
            host.detach()
        self.feed.detach(session_id)
        for agent in self.players.pop(session_id, {}).values():
            agent.disconnect()
        await self.events.drop(session_id)

    async def prune_finished(self) -> None:
        finished = [sid for sid, host in self.hosts.items() if host.session and host.session.status == "finished"]
        for session_id in finished:
            logger.info("Evicting finished session %s", session_id)
            await self.close(session_id)

    async def shutdown(self) -> None:
        for session_id in set(self.hosts) | set(self.players):
            await self.close(session_id)
