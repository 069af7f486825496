from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Union

from .catalog import QuizCatalog
from .db import InMemorySessionStore, Unsubscribe
from .errors import NotFound, PreconditionFailed, QuizSyncError
from .models import Quiz, QuizQuestion, Session
from .sanitizer import sanitize_question
from .state_machine import ensure_transition, next_status
from .utils import now_ms, to_store


logger = logging.getLogger("host")

DEFAULT_AUTO_LEADERBOARD_DELAY = 2.0


@dataclass(frozen=True)
class WatchdogState:
    last_auto_advanced_question_id: Optional[str] = None


@dataclass(frozen=True)
class Reveal:
    question_id: str


@dataclass(frozen=True)
class ScheduleLeaderboard:
    question_id: str
    delay: float


WatchdogEffect = Union[Reveal, ScheduleLeaderboard]


def all_players_answered(session: Session) -> bool:
    question = session.current_question
    if question is None or session.player_count == 0:
        return False
    answered = session.responses_for(question.id)
    return all(pid in answered for pid in session.players)


def evaluate_watchdog(
    state: WatchdogState,
    session: Session,
    delay: float = DEFAULT_AUTO_LEADERBOARD_DELAY,
) -> Tuple[WatchdogState, List[WatchdogEffect]]:
    """Decide what the host should do on its own after seeing ``session``.

    Keyed by question id: a question is auto-revealed at most once, and only
    auto-revealed questions get the delayed move to the leaderboard.
    """
    question = session.current_question
    if question is None:
        return state, []

    if session.status == "question":
        if question.id != state.last_auto_advanced_question_id and all_players_answered(session):
            return WatchdogState(last_auto_advanced_question_id=question.id), [Reveal(question.id)]
        return state, []

    if session.status == "feedback" and question.id == state.last_auto_advanced_question_id:
        return state, [ScheduleLeaderboard(question.id, delay)]

    return state, []


class HostController:
    """The only writer of a session's status, question and answer reveal."""

    def __init__(
        self,
        store: InMemorySessionStore,
        catalog: QuizCatalog,
        session_id: str,
        *,
        auto_leaderboard_delay: float = DEFAULT_AUTO_LEADERBOARD_DELAY,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.catalog = catalog
        self.session_id = session_id
        self.auto_leaderboard_delay = auto_leaderboard_delay
        self.clock = clock

        self.session: Optional[Session] = None
        self.quiz: Optional[Quiz] = None
        self.not_found = False
        self.last_error: Optional[str] = None
        self.watchdog = WatchdogState()

        self._unsubscribe: Optional[Unsubscribe] = None
        self._leaderboard_timer: Optional[asyncio.Task] = None
        self._timer_question_id: Optional[str] = None

    @property
    def path(self) -> str:
        return f"sessions/{self.session_id}"

    @classmethod
    async def create_session(
        cls,
        store: InMemorySessionStore,
        catalog: QuizCatalog,
        quiz_id: str,
        host_id: str,
        clock: Callable[[], int] = now_ms,
    ) -> str:
        quiz = await catalog.get_quiz(quiz_id)
        if quiz is None:
            raise NotFound(f"Quiz {quiz_id} not found")

        session_id = await store.create(
            "sessions",
            {
                "quizId": quiz.id,
                "hostId": host_id,
                "status": "lobby",
                "currentQuestion": None,
                "currentQuestionIndex": -1,
                "totalQuestions": len(quiz.questions),
                "players": {},
                "responses": {},
                "createdAt": clock(),
            },
        )
        logger.info("Created session %s for quiz %s (%d questions)", session_id, quiz.id, len(quiz.questions))
        return session_id

    async def attach(self) -> None:
        """Load the session and its quiz, then start reacting to snapshots."""

        data = await self.store.get(self.path)
        if data is None:
            self._mark_not_found()
            raise NotFound(f"Session {self.session_id} not found")
        self.session = Session.from_snapshot(self.session_id, data)

        self.quiz = await self.catalog.get_quiz(self.session.quiz_id)
        if self.quiz is None:
            self.last_error = f"Quiz {self.session.quiz_id} could not be loaded"
            logger.error("Session %s: %s", self.session_id, self.last_error)
            raise NotFound(self.last_error)

        self._unsubscribe = self.store.subscribe(self.path, self.handle_snapshot)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_timer()

    async def wait_idle(self) -> None:
        """Wait for queued snapshots and any pending leaderboard timer."""

        while True:
            await self.store.drain()
            timer = self._leaderboard_timer
            if timer is None or timer.done():
                return
            await asyncio.gather(timer, return_exceptions=True)

    # Snapshot handling

    async def handle_snapshot(self, data: Any) -> None:
        if data is None:
            self._mark_not_found()
            return

        self.session = Session.from_snapshot(self.session_id, data)
        if self.quiz is None:
            return

        previous = self.watchdog
        self.watchdog, effects = evaluate_watchdog(previous, self.session, self.auto_leaderboard_delay)

        if not any(isinstance(e, ScheduleLeaderboard) for e in effects):
            self._cancel_timer()

        for effect in effects:
            if isinstance(effect, Reveal):
                await self._auto_reveal(effect, previous)
            else:
                self._schedule_leaderboard(effect)

    async def _auto_reveal(self, effect: Reveal, previous: WatchdogState) -> None:
        logger.info("Session %s: all players answered %s, revealing", self.session_id, effect.question_id)
        try:
            await self.reveal_results()
        except QuizSyncError as exc:
            # next snapshot retries since the marker goes back
            logger.error("Session %s: auto-reveal of %s failed: %s", self.session_id, effect.question_id, exc)
            self.watchdog = previous

    def _schedule_leaderboard(self, effect: ScheduleLeaderboard) -> None:
        timer = self._leaderboard_timer
        if timer is not None and not timer.done() and self._timer_question_id == effect.question_id:
            return
        self._cancel_timer()
        self._timer_question_id = effect.question_id
        self._leaderboard_timer = asyncio.create_task(self._delayed_leaderboard(effect))

    async def _delayed_leaderboard(self, effect: ScheduleLeaderboard) -> None:
        await asyncio.sleep(effect.delay)
        try:
            session = await self._load_session()
        except NotFound:
            return
        if (
            session.status != "feedback"
            or session.current_question is None
            or session.current_question.id != effect.question_id
        ):
            return
        try:
            await self.show_leaderboard()
        except QuizSyncError as exc:
            logger.error("Session %s: auto-leaderboard for %s failed: %s", self.session_id, effect.question_id, exc)

    def _cancel_timer(self) -> None:
        if self._leaderboard_timer is not None and not self._leaderboard_timer.done():
            self._leaderboard_timer.cancel()
        self._leaderboard_timer = None
        self._timer_question_id = None

    def _mark_not_found(self) -> None:
        self.session = None
        self.not_found = True
        self.last_error = "Session not found"
        self._cancel_timer()
        logger.warning("Session %s not found", self.session_id)

    # Host actions

    async def start(self) -> None:
        session = await self._load_session()
        quiz = self._require_quiz()
        if session.status != "lobby":
            self._fail(f"Cannot start: session is already {session.status}")
        if not quiz.questions:
            self._fail(f"Cannot start: quiz {quiz.id} has no questions")

        ensure_transition(session.status, "question")
        await self._publish(quiz.questions[0], 0)
        logger.info("Session %s: started with question 1/%d", self.session_id, session.total_questions)

    async def advance(self) -> None:
        session = await self._load_session()
        quiz = self._require_quiz()
        if session.status not in ("leaderboard", "feedback"):
            self._fail(f"Cannot advance from {session.status}")

        next_index = session.current_question_index + 1
        has_more = next_index < session.total_questions
        target = next_status("leaderboard", has_more)
        ensure_transition(session.status, target)

        if target == "finished":
            await self._set_status("finished")
            logger.info("Session %s: finished after %d questions", self.session_id, session.total_questions)
            return

        if next_index >= len(quiz.questions):
            self._fail(f"Quiz {quiz.id} has no question at position {next_index}")
        await self._publish(quiz.questions[next_index], next_index)
        logger.info("Session %s: question %d/%d", self.session_id, next_index + 1, session.total_questions)

    async def reveal_results(self) -> bool:
        """Write the correct option and move to feedback.

        Returns False without writing when the answer key cannot be resolved.
        """
        session = await self._load_session()
        self._require_quiz()
        if session.status != "question":
            self._fail(f"Cannot reveal results while {session.status}")
        published = session.current_question
        if published is None:
            self._fail("Cannot reveal results: no question has been published")

        ensure_transition(session.status, "feedback")

        source = self._source_question(published.id, session.current_question_index)
        correct = source.correct_option() if source else None
        if correct is None or correct.id not in published.option_ids():
            self.last_error = f"Correct option for question {published.id} could not be resolved"
            logger.warning("Session %s: %s, reveal skipped", self.session_id, self.last_error)
            return False

        await self.store.update(self.path, {"correctOptionId": correct.id, "status": "feedback"})
        logger.info("Session %s: revealed %s for question %s", self.session_id, correct.id, published.id)
        return True

    async def show_leaderboard(self) -> None:
        session = await self._load_session()
        if session.status not in ("question", "feedback"):
            self._fail(f"Cannot show leaderboard while {session.status}")
        ensure_transition(session.status, "leaderboard")
        await self._set_status("leaderboard")

    async def finish(self) -> None:
        session = await self._load_session()
        ensure_transition(session.status, "finished")
        await self._set_status("finished")
        logger.info("Session %s: ended by host", self.session_id)

    async def _publish(self, question: QuizQuestion, index: int) -> None:
        published = sanitize_question(question, now=self.clock())
        await self.store.update(
            self.path,
            {
                "currentQuestion": to_store(published),
                "currentQuestionIndex": index,
                "correctOptionId": None,
                "status": "question",
            },
        )

    async def _set_status(self, status: str) -> None:
        await self.store.update(self.path, {"status": status})

    def _source_question(self, question_id: str, index: int) -> Optional[QuizQuestion]:
        questions = self.quiz.questions if self.quiz else []
        if 0 <= index < len(questions) and questions[index].id == question_id:
            return questions[index]
        return next((q for q in questions if q.id == question_id), None)

    async def _load_session(self) -> Session:
        """Read the session as stored now; snapshots may still be queued behind our own writes."""

        data = await self.store.get(self.path)
        if data is None:
            self._mark_not_found()
            raise NotFound(f"Session {self.session_id} not found")
        self.session = Session.from_snapshot(self.session_id, data)
        return self.session

    def _require_quiz(self) -> Quiz:
        if self.quiz is None:
            self._fail("Quiz has not been loaded")
        return self.quiz

    def _fail(self, message: str) -> None:
        self.last_error = message
        logger.error("Session %s: %s", self.session_id, message)
        raise PreconditionFailed(message)
