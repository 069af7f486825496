from __future__ import annotations

from dataclasses import replace
from unittest import IsolatedAsyncioTestCase, TestCase, mock

from .catalog import InMemoryQuizCatalog
from .db import InMemorySessionStore
from .errors import JoinRejected, NotFound, PreconditionFailed, SessionStoreError
from .events import EventStore, SessionEventFeed
from .host import HostController
from .models import Player, Quiz, Session
from .player import (
    PlayerAgent,
    PlayerLocalState,
    PublishFeedback,
    WriteScore,
    adjusted_time_limit,
    new_player_id,
    reduce_snapshot,
    validate_nickname,
)


def _quiz() -> Quiz:
    return Quiz.model_validate(
        {
            "id": "quiz-1",
            "questions": [
                {
                    "id": f"q{n}",
                    "label": f"Question {n}",
                    "options": [
                        {"id": f"q{n}a", "text": "A", "isCorrect": True},
                        {"id": f"q{n}b", "text": "B", "isCorrect": False},
                        {"id": f"q{n}c", "text": "C", "isCorrect": False},
                    ],
                    "timeLimit": 20,
                }
                for n in (1, 2)
            ],
        }
    )


def _feedback_session(option_id: str | None, timestamp: int = 4_000) -> Session:
    responses = {}
    if option_id is not None:
        responses = {"q1": {"me": {"optionId": option_id, "timestamp": timestamp}}}
    return Session.model_validate(
        {
            "id": "s1",
            "quizId": "quiz-1",
            "hostId": "host",
            "status": "feedback",
            "currentQuestionIndex": 0,
            "totalQuestions": 2,
            "currentQuestion": {
                "id": "q1",
                "label": "Question 1",
                "options": [{"id": "q1a", "text": "A"}, {"id": "q1b", "text": "B"}],
                "timeLimit": 20,
                "startedAt": 0,
            },
            "correctOptionId": "q1a",
            "players": {
                "rival": {"id": "rival", "nickname": "rival", "score": 950},
                "me": {"id": "me", "nickname": "me", "score": 100, "streak": 2},
            },
            "responses": responses,
        }
    )


def _joined_state() -> PlayerLocalState:
    return PlayerLocalState(
        phase="answered",
        player=Player(id="me", nickname="me", score=100, streak=2),
        answered_question_index=0,
    )


class NicknameAndTimerTests(TestCase):
    def test_nickname_is_trimmed(self):
        self.assertEqual(validate_nickname("  Ada  "), "Ada")
        self.assertEqual(validate_nickname("x" * 12), "x" * 12)

    def test_bad_nicknames(self):
        for nickname in ("", "   ", "x" * 13, None):
            with self.assertRaises(JoinRejected):
                validate_nickname(nickname)

    def test_player_ids(self):
        pid = new_player_id()
        self.assertTrue(pid.startswith("player-"))
        self.assertEqual(len(pid), len("player-") + 8)
        self.assertNotEqual(pid, new_player_id())

    def test_adjusted_time_limit_for_late_joiners(self):
        self.assertEqual(adjusted_time_limit(20, 0, 15_000), 5)
        self.assertEqual(adjusted_time_limit(20, 0, 14_600), 5)
        self.assertEqual(adjusted_time_limit(20, 0, 0), 20)
        self.assertEqual(adjusted_time_limit(20, 0, 25_000), 1)


class FeedbackDerivationTests(TestCase):
    def test_correct_answer_scores_and_extends_streak(self):
        state, effects = reduce_snapshot(_joined_state(), _feedback_session("q1a"), "me", now=10_000)

        self.assertEqual(state.phase, "feedback")
        self.assertEqual(state.player.score, 1000)
        self.assertEqual(state.player.streak, 3)
        self.assertEqual(state.last_feedback.xp, 900)
        self.assertTrue(state.last_feedback.is_correct)
        self.assertEqual(state.last_feedback.rank, 1)
        self.assertEqual(state.last_feedback.total_players, 2)
        self.assertEqual(effects[0], WriteScore(score=1000, streak=3))
        self.assertIsInstance(effects[1], PublishFeedback)

    def test_second_pass_with_same_question_is_a_no_op(self):
        session = _feedback_session("q1a")
        state, _ = reduce_snapshot(_joined_state(), session, "me", now=10_000)

        again, effects = reduce_snapshot(state, session, "me", now=11_000)

        self.assertEqual(effects, [])
        self.assertEqual(again.player.score, 1000)
        self.assertIs(again, state)

    def test_wrong_answer_resets_streak(self):
        state, effects = reduce_snapshot(_joined_state(), _feedback_session("q1b", timestamp=1_000), "me", now=10_000)

        self.assertFalse(state.last_feedback.is_correct)
        self.assertEqual(state.last_feedback.xp, 0)
        self.assertEqual(state.player.score, 100)
        self.assertEqual(state.player.streak, 0)
        self.assertEqual(state.last_feedback.rank, 2)
        self.assertEqual(effects[0], WriteScore(score=100, streak=0))

    def test_no_response_counts_as_wrong(self):
        state, _ = reduce_snapshot(_joined_state(), _feedback_session(None), "me", now=10_000)
        self.assertEqual(state.last_feedback.xp, 0)
        self.assertEqual(state.player.streak, 0)

    def test_reveal_without_correct_option_waits(self):
        session = _feedback_session("q1a").model_copy(update={"correct_option_id": None})
        state = _joined_state()
        self.assertEqual(reduce_snapshot(state, session, "me", now=0), (state, []))

    def test_snapshots_before_join_are_ignored(self):
        state = PlayerLocalState()
        self.assertEqual(reduce_snapshot(state, _feedback_session("q1a"), "me", now=0), (state, []))

    def test_missing_session_is_terminal(self):
        state, _ = reduce_snapshot(_joined_state(), None, "me", now=0)
        self.assertEqual(state.phase, "not_found")

    def test_question_snapshot_repeated_keeps_the_countdown(self):
        session = _feedback_session("q1a").model_copy(update={"status": "question", "correct_option_id": None})
        waiting = replace(_joined_state(), phase="waiting", answered_question_index=-1)

        state, _ = reduce_snapshot(waiting, session, "me", now=3_000)
        self.assertEqual((state.phase, state.adjusted_time_limit), ("question", 17))

        again, _ = reduce_snapshot(state, session, "me", now=9_000)
        self.assertIs(again, state)

    def test_question_status_without_question_is_not_ready(self):
        session = _feedback_session("q1a").model_copy(update={"status": "question", "current_question": None})
        state = replace(_joined_state(), phase="waiting")
        self.assertEqual(reduce_snapshot(state, session, "me", now=0), (state, []))


class PlayerAgentTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.now = 5_000_000
        self.store = InMemorySessionStore()
        catalog = InMemoryQuizCatalog(_quiz())
        self.session_id = await HostController.create_session(self.store, catalog, "quiz-1", "host-1")
        self.host = HostController(self.store, catalog, self.session_id, auto_leaderboard_delay=30, clock=lambda: self.now)
        await self.host.attach()
        self.events = EventStore()
        self.feed = SessionEventFeed(self.store, self.events)
        self.agents: list[PlayerAgent] = []

    async def asyncTearDown(self) -> None:
        self.host.detach()
        for agent in self.agents:
            agent.disconnect()

    async def _agent(self, player_id: str | None = None, **kwargs) -> PlayerAgent:
        agent = PlayerAgent(self.store, self.session_id, player_id, clock=lambda: self.now, feed=self.feed, **kwargs)
        await agent.connect()
        await self.store.drain()
        self.agents.append(agent)
        return agent

    async def test_connect_to_missing_session(self):
        agent = PlayerAgent(self.store, "nope")
        with self.assertRaises(NotFound):
            await agent.connect()
        self.assertEqual(agent.phase, "not_found")

    async def test_join_writes_player_record(self):
        agent = await self._agent("p1")
        player = await agent.join("  Ada ", "star")
        self.assertEqual(agent.phase, "waiting")
        await self.store.drain()

        stored = await self.store.get(f"sessions/{self.session_id}/players/p1")
        self.assertEqual(
            stored,
            {"id": "p1", "nickname": "Ada", "badge": "star", "score": 0, "streak": 0, "connected": True},
        )
        self.assertEqual(player.nickname, "Ada")
        self.assertEqual(agent.phase, "waiting")

    async def test_join_rejects_taken_nickname_and_second_join(self):
        first = await self._agent("p1")
        await first.join("Ada")
        await self.store.drain()

        second = await self._agent("p2")
        with self.assertRaises(JoinRejected):
            await second.join("ada")
        self.assertEqual(second.phase, "join")

        with self.assertRaises(JoinRejected):
            await first.join("Grace")

    async def test_join_respects_configured_nickname_length(self):
        agent = await self._agent("p1", max_nickname_length=4)
        with self.assertRaises(JoinRejected):
            await agent.join("Grace")

    async def test_failed_join_write_is_surfaced(self):
        agent = await self._agent("p1")
        with mock.patch.object(self.store, "set", side_effect=SessionStoreError("offline")):
            with self.assertLogs("player", level="ERROR"):
                with self.assertRaises(SessionStoreError):
                    await agent.join("Ada")
        self.assertEqual(agent.last_error, "Failed to join session")

    async def test_one_response_per_question(self):
        agent = await self._agent("p1")
        await agent.join("Ada")
        self.assertFalse(await agent.submit_response("q1a"))

        await self.host.start()
        await self.store.drain()
        self.assertEqual(agent.phase, "question")

        self.now += 2_000
        self.assertTrue(await agent.submit_response("q1b", device="phone"))
        self.assertEqual(agent.phase, "answered")
        self.assertFalse(await agent.submit_response("q1a"))
        await self.store.drain()

        responses = await self.store.get(f"sessions/{self.session_id}/responses/q1")
        self.assertEqual(responses, {"p1": {"optionId": "q1b", "timestamp": 5_002_000, "device": "phone"}})

    async def test_unknown_option_is_rejected(self):
        agent = await self._agent("p1")
        await agent.join("Ada")
        await self.host.start()
        await self.store.drain()
        with self.assertRaises(PreconditionFailed):
            await agent.submit_response("zzz")

    async def test_time_up_locks_without_writing(self):
        agent = await self._agent("p1")
        await agent.join("Ada")
        await self.host.start()
        await self.store.drain()

        self.assertTrue(agent.on_time_up())
        self.assertFalse(agent.on_time_up())
        self.assertFalse(await agent.submit_response("q1a"))
        self.assertEqual(agent.phase, "answered")
        self.assertIsNone(await self.store.get(f"sessions/{self.session_id}/responses"))

        await self.host.reveal_results()
        await self.store.drain()
        self.assertEqual(agent.phase, "feedback")
        self.assertEqual(agent.state.last_feedback.xp, 0)
        self.assertEqual(agent.state.player.streak, 0)

    async def test_mid_question_join_gets_remaining_time(self):
        await self.host.start()
        await self.store.drain()
        self.now += 15_000

        agent = await self._agent("late")
        await agent.join("Latecomer")
        await self.store.drain()

        self.assertEqual(agent.phase, "question")
        self.assertEqual(agent.state.adjusted_time_limit, 5)
        self.assertEqual(agent.seconds_remaining(), 5)

    async def test_mid_question_join_after_expiry_gets_one_second(self):
        await self.host.start()
        await self.store.drain()
        self.now += 60_000

        agent = await self._agent("late")
        await agent.join("Latecomer")
        await self.store.drain()

        self.assertEqual(agent.state.adjusted_time_limit, 1)
        self.assertEqual(agent.seconds_remaining(), 0)

    async def test_feedback_written_back_once(self):
        agent = await self._agent("p1")
        await agent.join("Ada")
        await self.host.start()
        await self.store.drain()
        self.now += 4_000
        await agent.submit_response("q1a")
        await self.store.drain()
        self.assertEqual((await self.store.get(f"sessions/{self.session_id}/status")), "feedback")

        player_path = f"sessions/{self.session_id}/players/p1"
        self.assertEqual((await self.store.get(player_path))["score"], 900)

        # unrelated writes re-deliver the same feedback snapshot
        await self.store.update(player_path, {"connected": True})
        await agent.handle_snapshot(await self.store.get(f"sessions/{self.session_id}"))
        await self.store.drain()

        stored = await self.store.get(player_path)
        self.assertEqual((stored["score"], stored["streak"]), (900, 1))
        self.assertEqual(agent.state.player.score, 900)

        feedback_events = [
            e["payload"] for e in await self.events.list(self.session_id) if e["payload"]["type"] == "feedback"
        ]
        self.assertEqual(len(feedback_events), 1)
        self.assertEqual(feedback_events[0]["xp"], 900)
        self.assertEqual(feedback_events[0]["playerId"], "p1")

    async def test_failed_score_write_keeps_local_score(self):
        agent = await self._agent("p1")
        await agent.join("Ada")
        await self.host.start()
        await self.store.drain()

        real_update = self.store.update

        async def offline_for_players(path, fields):
            if "/players/" in path:
                raise SessionStoreError("offline")
            await real_update(path, fields)

        with mock.patch.object(self.store, "update", side_effect=offline_for_players):
            with self.assertLogs("player", level="WARNING"):
                await agent.submit_response("q1a")
                await self.store.drain()

        self.assertEqual(agent.phase, "feedback")
        self.assertEqual(agent.state.player.score, 1000)
        self.assertEqual((await self.store.get(f"sessions/{self.session_id}/players/p1"))["score"], 0)
