from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Literal, Optional, Tuple, Union

from .db import InMemorySessionStore, Unsubscribe
from .errors import JoinRejected, NotFound, PreconditionFailed, SessionStoreError
from .events import SessionEventFeed
from .leaderboard import project_leaderboard
from .models import BadgeId, Player, Response, Session
from .scoring import DEFAULT_BASE_POINTS, calculate_score
from .utils import js_round, now_ms, to_store


logger = logging.getLogger("player")

MAX_NICKNAME_LENGTH = 12

PlayerPhase = Literal["join", "waiting", "question", "answered", "feedback", "leaderboard", "finished", "not_found"]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_player_id() -> str:
    return "player-" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))


def validate_nickname(nickname: str, max_length: int = MAX_NICKNAME_LENGTH) -> str:
    trimmed = (nickname or "").strip()
    if not trimmed:
        raise JoinRejected("Enter a nickname")
    if len(trimmed) > max_length:
        raise JoinRejected(f"{max_length} characters max")
    return trimmed


def adjusted_time_limit(time_limit: int, started_at: int, now: int) -> int:
    """Seconds left on the local countdown for someone arriving mid-question."""
    elapsed = (now - started_at) / 1000
    return max(1, js_round(time_limit - elapsed))


@dataclass(frozen=True)
class Feedback:
    question_id: str
    is_correct: bool
    xp: int
    streak: int
    rank: Optional[int]
    total_players: int


@dataclass(frozen=True)
class PlayerLocalState:
    phase: PlayerPhase = "join"
    player: Optional[Player] = None
    answered_question_index: int = -1
    seen_question_index: int = -1
    feedback_computed_for_question_id: Optional[str] = None
    last_feedback: Optional[Feedback] = None
    adjusted_time_limit: Optional[int] = None


@dataclass(frozen=True)
class WriteScore:
    score: int
    streak: int


@dataclass(frozen=True)
class PublishFeedback:
    feedback: Feedback


PlayerEffect = Union[WriteScore, PublishFeedback]


def derive_feedback(
    state: PlayerLocalState,
    session: Session,
    player_id: str,
    base_points: int = DEFAULT_BASE_POINTS,
    top_n: int = 5,
) -> Tuple[PlayerLocalState, List[PlayerEffect]]:
    """Score this player's answer to the revealed question, once per question id."""

    question = session.current_question
    correct_option_id = session.correct_option_id
    if question is None or correct_option_id is None or state.player is None:
        return state, []
    if state.feedback_computed_for_question_id == question.id:
        return state, []

    response = session.response_of(question.id, player_id)
    is_correct = response is not None and response.option_id == correct_option_id
    latency = response.timestamp - question.started_at if response else 0
    xp = calculate_score(is_correct, latency, question.time_limit * 1000, base_points)

    streak = state.player.streak + 1 if is_correct else 0
    updated = state.player.model_copy(update={"score": state.player.score + xp, "streak": streak})

    players = dict(session.players)
    players[player_id] = updated
    standings = project_leaderboard(players, player_id, top_n)

    feedback = Feedback(
        question_id=question.id,
        is_correct=is_correct,
        xp=xp,
        streak=streak,
        rank=standings.current_player_rank,
        total_players=standings.total_players,
    )
    next_state = replace(
        state,
        phase="feedback",
        player=updated,
        feedback_computed_for_question_id=question.id,
        last_feedback=feedback,
    )
    return next_state, [WriteScore(updated.score, updated.streak), PublishFeedback(feedback)]


def reduce_snapshot(
    state: PlayerLocalState,
    session: Optional[Session],
    player_id: str,
    now: int,
    base_points: int = DEFAULT_BASE_POINTS,
    top_n: int = 5,
) -> Tuple[PlayerLocalState, List[PlayerEffect]]:
    """Fold one session snapshot into the player's local state.

    Safe to call repeatedly with the same snapshot: nothing changes the second time.
    """
    if session is None:
        return replace(state, phase="not_found"), []
    if state.phase in ("join", "not_found"):
        return state, []

    status = session.status
    if status == "finished":
        return replace(state, phase="finished"), []
    if status == "leaderboard":
        return replace(state, phase="leaderboard"), []
    if status == "lobby":
        return replace(state, phase="waiting"), []

    if status == "question":
        question = session.current_question
        if question is None:
            # status landed before the question did
            return state, []
        index = session.current_question_index
        if state.answered_question_index == index:
            return replace(state, phase="answered"), []
        if state.phase == "question" and state.seen_question_index == index:
            return state, []
        return (
            replace(
                state,
                phase="question",
                seen_question_index=index,
                last_feedback=None,
                adjusted_time_limit=adjusted_time_limit(question.time_limit, question.started_at, now),
            ),
            [],
        )

    if status == "feedback" and session.correct_option_id:
        return derive_feedback(state, session, player_id, base_points, top_n)

    return state, []


class PlayerAgent:
    """One player's view of a live session: join, answer, and self-score."""

    def __init__(
        self,
        store: InMemorySessionStore,
        session_id: str,
        player_id: Optional[str] = None,
        *,
        base_points: int = DEFAULT_BASE_POINTS,
        max_nickname_length: int = MAX_NICKNAME_LENGTH,
        top_n: int = 5,
        clock: Callable[[], int] = now_ms,
        feed: Optional[SessionEventFeed] = None,
    ):
        self.store = store
        self.session_id = session_id
        self.player_id = player_id or new_player_id()
        self.base_points = base_points
        self.max_nickname_length = max_nickname_length
        self.top_n = top_n
        self.clock = clock
        self.feed = feed

        self.state = PlayerLocalState()
        self.session: Optional[Session] = None
        self.last_error: Optional[str] = None
        self._unsubscribe: Optional[Unsubscribe] = None

    @property
    def path(self) -> str:
        return f"sessions/{self.session_id}"

    @property
    def player_path(self) -> str:
        return f"{self.path}/players/{self.player_id}"

    @property
    def phase(self) -> PlayerPhase:
        return self.state.phase

    async def connect(self) -> None:
        data = await self.store.get(self.path)
        if data is None:
            self.state = replace(self.state, phase="not_found")
            self.last_error = "Session not found"
            raise NotFound(f"Session {self.session_id} not found")
        self.session = Session.from_snapshot(self.session_id, data)
        self._unsubscribe = self.store.subscribe(self.path, self.handle_snapshot)

    def disconnect(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def join(self, nickname: str, badge: BadgeId = "rocket") -> Player:
        if self.state.phase != "join":
            raise JoinRejected("Already joined this session")
        if self.session is None:
            raise NotFound(f"Session {self.session_id} not found")

        nickname = validate_nickname(nickname, self.max_nickname_length)
        taken = {p.nickname.casefold() for pid, p in self.session.players.items() if pid != self.player_id}
        if nickname.casefold() in taken:
            raise JoinRejected(f"Nickname {nickname!r} is already taken")

        player = Player(id=self.player_id, nickname=nickname, badge=badge)
        self.state = replace(self.state, phase="waiting", player=player)
        try:
            await self.store.set(self.player_path, to_store(player))
        except SessionStoreError as exc:
            self.last_error = "Failed to join session"
            logger.error("Session %s: join of %s failed: %s", self.session_id, self.player_id, exc)
            raise
        logger.info("Session %s: %s joined as %s", self.session_id, self.player_id, nickname)
        return player

    async def submit_response(self, option_id: str, device: Optional[str] = None) -> bool:
        """Lock in an answer for the current question; later calls are ignored."""

        session = self.session
        if self.state.phase == "join" or session is None or session.status != "question":
            return False
        question = session.current_question
        if question is None:
            return False
        index = session.current_question_index
        if self.state.answered_question_index == index:
            return False
        if option_id not in question.option_ids():
            raise PreconditionFailed(f"Option {option_id} is not part of question {question.id}")

        response = Response(option_id=option_id, timestamp=self.clock(), device=device)
        self.state = replace(self.state, phase="answered", answered_question_index=index)
        try:
            await self.store.set(f"{self.path}/responses/{question.id}/{self.player_id}", to_store(response))
        except SessionStoreError as exc:
            # the player still sees a locked answer
            logger.error("Session %s: response of %s to %s was not stored: %s", self.session_id, self.player_id, question.id, exc)
        return True

    def on_time_up(self) -> bool:
        session = self.session
        if session is None or session.status != "question" or session.current_question is None:
            return False
        if self.state.answered_question_index == session.current_question_index:
            return False
        self.state = replace(self.state, phase="answered", answered_question_index=session.current_question_index)
        return True

    def seconds_remaining(self, now: Optional[int] = None) -> Optional[int]:
        session = self.session
        if session is None or session.current_question is None or session.status != "question":
            return None
        question = session.current_question
        elapsed = ((now if now is not None else self.clock()) - question.started_at) / 1000
        return max(0, js_round(question.time_limit - elapsed))

    async def handle_snapshot(self, data: Any) -> None:
        session = Session.from_snapshot(self.session_id, data) if data is not None else None
        self.session = session
        self.state, effects = reduce_snapshot(
            self.state, session, self.player_id, self.clock(), self.base_points, self.top_n
        )
        for effect in effects:
            await self._apply(effect)

    async def _apply(self, effect: PlayerEffect) -> None:
        if isinstance(effect, PublishFeedback):
            if self.feed is not None:
                await self.feed.publish_feedback(self.session_id, self.player_id, effect.feedback)
            return

        if self.session is None or self.player_id not in self.session.players:
            logger.warning("Session %s: %s is not in the roster yet, score kept locally", self.session_id, self.player_id)
            return
        try:
            await self.store.update(self.player_path, {"score": effect.score, "streak": effect.streak})
        except SessionStoreError as exc:
            logger.warning("Session %s: score sync for %s failed, local score kept: %s", self.session_id, self.player_id, exc)
