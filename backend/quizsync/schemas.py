from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from .models import BadgeId


class CreateSessionIn(BaseModel):
    quiz_id: str
    host_id: str


class JoinIn(BaseModel):
    nickname: str
    badge: BadgeId = "rocket"


class AnswerIn(BaseModel):
    player_id: str
    option_id: str
    device: Optional[str] = None


class TimeUpIn(BaseModel):
    player_id: str


class FeedbackOut(BaseModel):
    question_id: str
    is_correct: bool
    xp: int
    streak: int
    rank: Optional[int]
    total_players: int


class PlayerStateOut(BaseModel):
    player_id: str
    phase: str
    score: int
    streak: int
    adjusted_time_limit: Optional[int] = None
    seconds_remaining: Optional[int] = None
    feedback: Optional[FeedbackOut] = None


class HostStateOut(BaseModel):
    session_id: str
    status: str
    current_question_index: int
    total_questions: int
    player_count: int
    response_count: int
    is_last_question: bool
    last_error: Optional[str] = None


class EventsOut(BaseModel):
    events: List[Dict[str, Any]]
    latest_seq: Optional[int]
