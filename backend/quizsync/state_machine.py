from typing import Dict, Tuple

from .errors import IllegalTransition
from .models import SessionStatus


VALID_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "lobby": ("question", "finished"),
    "question": ("feedback", "leaderboard", "finished"),
    "feedback": ("leaderboard", "question", "finished"),
    "leaderboard": ("question", "finished"),
    "finished": (),
}

STATUSES: Tuple[str, ...] = tuple(VALID_TRANSITIONS)


def is_valid_transition(current: str, proposed: str) -> bool:
    return proposed in VALID_TRANSITIONS.get(current, ())


def ensure_transition(current: str, proposed: str) -> None:
    if not is_valid_transition(current, proposed):
        raise IllegalTransition(current, proposed)


def next_status(current: SessionStatus, has_more_questions: bool) -> SessionStatus:
    """Happy-path successor used when the game advances on its own."""
    if current == "lobby":
        return "question"
    if current == "question":
        return "feedback"
    if current == "feedback":
        return "leaderboard"
    if current == "leaderboard":
        return "question" if has_more_questions else "finished"
    return "finished"
