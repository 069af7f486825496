from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


SessionStatus = Literal["lobby", "question", "feedback", "leaderboard", "finished"]
BadgeId = Literal["rocket", "star", "lightning", "fire", "brain", "heart"]
MediaType = Literal["image", "gif", "video"]


class WireModel(BaseModel):
    """Snake_case in Python, camelCase in the shared store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Quiz catalog records (carry the answer key, never published as-is)

class QuizOption(WireModel):
    id: str
    text: str
    is_correct: bool = False


class QuizMedia(WireModel):
    type: MediaType
    url: str
    alt: Optional[str] = None


class QuizQuestion(WireModel):
    id: str
    type: Literal["multiple-choice", "boolean", "code-snippet"] = "multiple-choice"
    label: str
    media: Optional[QuizMedia] = None
    code_snippet: Optional[str] = None
    options: List[QuizOption] = Field(default_factory=list)
    time_limit: int = 20  # seconds

    def correct_option(self) -> Optional[QuizOption]:
        return next((o for o in self.options if o.is_correct), None)


class QuizSettings(WireModel):
    points_per_question: int = 1000


class Quiz(WireModel):
    id: str
    title: str = ""
    settings: QuizSettings = Field(default_factory=QuizSettings)
    questions: List[QuizQuestion] = Field(default_factory=list)


# Session record, as written to and read from the shared store

class PublishedOption(WireModel):
    id: str
    text: str


class MediaRef(WireModel):
    type: MediaType
    url: str


class PublishedQuestion(WireModel):
    id: str
    label: str
    options: List[PublishedOption] = Field(default_factory=list)
    media: Optional[MediaRef] = None
    time_limit: int  # seconds
    started_at: int  # epoch millis, host clock

    def option_ids(self) -> List[str]:
        return [o.id for o in self.options]


class Player(WireModel):
    id: str
    nickname: str
    badge: BadgeId = "rocket"
    score: int = 0
    streak: int = 0
    connected: bool = True


class Response(WireModel):
    option_id: str
    timestamp: int  # epoch millis, client clock
    device: Optional[str] = None


# States: lobby -> question -> feedback -> leaderboard -> question ... -> finished
class Session(WireModel):
    id: str
    quiz_id: str
    host_id: str
    status: SessionStatus = "lobby"
    current_question: Optional[PublishedQuestion] = None
    current_question_index: int = -1
    total_questions: int = 0
    correct_option_id: Optional[str] = None
    players: Dict[str, Player] = Field(default_factory=dict)
    responses: Dict[str, Dict[str, Response]] = Field(default_factory=dict)
    created_at: int = 0

    @classmethod
    def from_snapshot(cls, session_id: str, data: Dict[str, Any]) -> "Session":
        return cls.model_validate({**data, "id": session_id})

    @property
    def player_count(self) -> int:
        return len(self.players)

    def responses_for(self, question_id: str) -> Dict[str, Response]:
        return self.responses.get(question_id, {})

    def response_of(self, question_id: str, player_id: str) -> Optional[Response]:
        return self.responses_for(question_id).get(player_id)
