from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError
from pymongo import AsyncMongoClient

from .db import Settings
from .models import Quiz


logger = logging.getLogger(__name__)


class QuizCatalog(Protocol):
    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]: ...


def _quiz_from_doc(doc: Dict[str, Any]) -> Optional[Quiz]:
    doc = {k: v for k, v in doc.items() if k != "_id"}
    try:
        return Quiz.model_validate(doc)
    except ValidationError as exc:
        logger.error("Quiz %s has an unreadable question bank: %s", doc.get("id"), exc)
        return None


class InMemoryQuizCatalog:
    """Read-only question banks held in process, for demos and tests."""

    def __init__(self, *quizzes: Quiz):
        self._quizzes: Dict[str, Quiz] = {q.id: q for q in quizzes}
        self._lock = asyncio.Lock()

    async def add(self, quiz: Quiz) -> None:
        async with self._lock:
            self._quizzes[quiz.id] = quiz

    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        async with self._lock:
            quiz = self._quizzes.get(quiz_id)
        return quiz.model_copy(deep=True) if quiz else None


class MongoQuizCatalog:
    """Question banks stored as camelCase documents in a ``quizzes`` collection."""

    def __init__(self, collection: Any):
        self.collection = collection

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoQuizCatalog":
        client = AsyncMongoClient(settings.MONGO_URL)
        return cls(client[settings.MONGO_DB].quizzes)

    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        doc = await self.collection.find_one({"id": quiz_id})
        return _quiz_from_doc(doc) if doc else None


def build_catalog(settings: Settings) -> QuizCatalog:
    if settings.MONGO_URL:
        logger.info("Using MongoDB quiz catalog (%s)", settings.MONGO_DB)
        return MongoQuizCatalog.from_settings(settings)
    return InMemoryQuizCatalog()
