from typing import Optional

from .models import MediaRef, PublishedOption, PublishedQuestion, QuizQuestion
from .utils import now_ms


def sanitize_question(question: QuizQuestion, now: Optional[int] = None) -> PublishedQuestion:
    """Project a catalog question into the answer-key-free form players receive.

    ``startedAt`` is stamped here, at publish time, and becomes the shared clock
    reference for every latency computed against this question.
    """
    media = None
    if question.media is not None:
        media = MediaRef(type=question.media.type, url=question.media.url)

    return PublishedQuestion(
        id=question.id,
        label=question.label,
        options=[PublishedOption(id=o.id, text=o.text) for o in question.options],
        media=media,
        time_limit=question.time_limit,
        started_at=now if now is not None else now_ms(),
    )
