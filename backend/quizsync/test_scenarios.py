from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .catalog import InMemoryQuizCatalog
from .db import InMemorySessionStore
from .host import HostController
from .leaderboard import project_leaderboard
from .models import Quiz, Session
from .player import PlayerAgent


def _single_question_quiz() -> Quiz:
    return Quiz.model_validate(
        {
            "id": "one-shot",
            "title": "One question",
            "questions": [
                {
                    "id": "q1",
                    "label": "Which language did Brendan Eich create in 10 days?",
                    "options": [
                        {"id": "opt0", "text": "JavaScript", "isCorrect": True},
                        {"id": "opt1", "text": "Python", "isCorrect": False},
                        {"id": "opt2", "text": "Ruby", "isCorrect": False},
                        {"id": "opt3", "text": "PHP", "isCorrect": False},
                    ],
                    "timeLimit": 20,
                }
            ],
        }
    )


class LiveSessionScenarioTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.now = 1_700_000_000_000
        self.store = InMemorySessionStore()
        catalog = InMemoryQuizCatalog(_single_question_quiz())
        self.session_id = await HostController.create_session(self.store, catalog, "one-shot", "host-1")
        self.host = HostController(
            self.store, catalog, self.session_id, auto_leaderboard_delay=0.05, clock=lambda: self.now
        )
        await self.host.attach()
        self.player = PlayerAgent(self.store, self.session_id, "p1", clock=lambda: self.now)
        await self.player.connect()
        await self.store.drain()

    async def asyncTearDown(self) -> None:
        self.host.detach()
        self.player.disconnect()

    async def _session(self) -> Session:
        return Session.from_snapshot(self.session_id, await self.store.get(f"sessions/{self.session_id}"))

    async def _play_one_answer(self, option_id: str, latency_ms: int) -> Session:
        await self.host.start()
        await self.store.drain()
        session = await self._session()
        self.assertEqual(session.status, "question")
        self.assertEqual(session.current_question_index, 0)

        await self.player.join("Ada", "brain")
        await self.store.drain()
        self.assertEqual(self.player.phase, "question")

        self.now += latency_ms
        await self.player.submit_response(option_id)
        await self.store.drain()
        return await self._session()

    async def test_correct_answer_end_to_end(self):
        session = await self._play_one_answer("opt0", 4_000)

        self.assertEqual(session.status, "feedback")
        self.assertEqual(session.correct_option_id, "opt0")
        self.assertEqual(self.player.state.last_feedback.xp, 900)
        self.assertEqual(session.players["p1"].score, 900)
        self.assertEqual(session.players["p1"].streak, 1)

        await self.host.wait_idle()
        session = await self._session()
        self.assertEqual(session.status, "leaderboard")
        self.assertEqual(self.player.phase, "leaderboard")
        self.assertEqual(project_leaderboard(session.players, "p1").current_player_rank, 1)

        await self.host.advance()
        await self.store.drain()
        session = await self._session()
        self.assertEqual(session.status, "finished")
        self.assertEqual(self.player.phase, "finished")
        self.assertEqual(session.current_question.id, "q1")

    async def test_wrong_answer_end_to_end(self):
        session = await self._play_one_answer("opt1", 1_000)

        self.assertEqual(session.status, "feedback")
        self.assertFalse(self.player.state.last_feedback.is_correct)
        self.assertEqual(self.player.state.last_feedback.xp, 0)
        self.assertEqual(session.players["p1"].score, 0)
        self.assertEqual(session.players["p1"].streak, 0)

    async def test_three_players_reveal_exactly_once(self):
        self.host.auto_leaderboard_delay = 10
        await self.host.start()
        await self.store.drain()

        agents = [self.player]
        agents += [PlayerAgent(self.store, self.session_id, f"p{n}", clock=lambda: self.now) for n in (2, 3)]
        for agent in agents[1:]:
            await agent.connect()
        for n, agent in enumerate(agents):
            await agent.join(f"player{n}")
        await self.store.drain()

        reveals = []
        original = self.host.reveal_results

        async def counting_reveal():
            reveals.append(self.now)
            return await original()

        self.host.reveal_results = counting_reveal
        for n, agent in enumerate(agents):
            self.now += 1_000
            await agent.submit_response("opt0" if n != 1 else "opt2")
            await self.store.drain()

        # replaying the same snapshot re-evaluates the watchdog
        await self.host.handle_snapshot(await self.store.get(f"sessions/{self.session_id}"))
        await self.store.drain()

        self.assertEqual(len(reveals), 1)
        session = await self._session()
        self.assertEqual(session.status, "feedback")
        self.assertEqual([session.players[f"p{n}"].score for n in (1, 2, 3)], [975, 0, 925])

        for agent in agents[1:]:
            agent.disconnect()
