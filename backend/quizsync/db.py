from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import SessionStoreError


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUIZSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None

    AUTO_LEADERBOARD_DELAY: float = 2.0
    BASE_POINTS: int = 1000
    LEADERBOARD_TOP_N: int = 5
    MAX_NICKNAME_LENGTH: int = 12
    EVENT_LOG_LIMIT: int = 500

    # Quiz catalog lives in MongoDB when configured, otherwise in memory
    MONGO_URL: Optional[str] = None
    MONGO_DB: str = "quizsync"

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SnapshotCallback = Callable[[Any], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]

_JSON_SCALARS = (str, int, float, bool)


def _split(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


def _overlaps(a: List[str], b: List[str]) -> bool:
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


class _Subscription:
    """One subscriber's ordered snapshot queue and its dispatcher task."""

    def __init__(self, segments: List[str], callback: SnapshotCallback):
        self.segments = segments
        self.callback = callback
        self.queue: asyncio.Queue = asyncio.Queue()
        self.pending = 0
        self.task = asyncio.create_task(self._run())

    def push(self, value: Any) -> None:
        self.pending += 1
        self.queue.put_nowait(value)

    async def _run(self):
        while True:
            value = await self.queue.get()
            try:
                result = self.callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Snapshot handler for %s failed", "/".join(self.segments))
            finally:
                self.pending -= 1
                self.queue.task_done()


class InMemorySessionStore:
    """Observable key-value tree addressed by slash-separated paths.

    Subscribers receive the full current value at their path whenever anything
    at, above or below that path changes. ``None`` deletes, and empty maps are
    dropped, so readers must treat missing maps as empty.
    """

    def __init__(self):
        self._root: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._subscriptions: List[_Subscription] = []

    async def get(self, path: str) -> Any:
        async with self._lock:
            return self._read(_split(path))

    async def create(self, path: str, value: Dict[str, Any]) -> str:
        """Store ``value`` under a freshly generated child key and return the key."""

        key = uuid.uuid4().hex[:12]
        await self.set(f"{path.rstrip('/')}/{key}", value)
        return key

    async def set(self, path: str, value: Any) -> None:
        segments = _split(path)
        self._check_value(value, path)
        async with self._lock:
            self._write(segments, value)
            self._notify([segments])

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        base = _split(path)
        written: List[List[str]] = []
        for key, value in fields.items():
            self._check_value(value, f"{path}/{key}")
        async with self._lock:
            for key, value in fields.items():
                segments = base + _split(key)
                self._write(segments, value)
                written.append(segments)
            self._notify(written)

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    def subscribe(self, path: str, callback: SnapshotCallback) -> Unsubscribe:
        """Deliver the current value now and again after every relevant change."""

        sub = _Subscription(_split(path), callback)
        self._subscriptions.append(sub)
        sub.push(self._read(sub.segments))

        def unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
                sub.task.cancel()

        return unsubscribe

    async def drain(self) -> None:
        """Wait until every queued snapshot has been handled."""

        while True:
            busy = [s for s in self._subscriptions if s.pending]
            if not busy:
                return
            await asyncio.gather(*(s.queue.join() for s in busy))

    def _read(self, segments: List[str]) -> Any:
        node: Any = self._root
        for part in segments:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _write(self, segments: List[str], value: Any) -> None:
        cleaned = self._clean(value)
        if not segments:
            self._root = cleaned if isinstance(cleaned, dict) else {}
            return

        if cleaned is None:
            self._delete(segments)
            return

        node = self._root
        for part in segments[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[segments[-1]] = cleaned

    def _delete(self, segments: List[str]) -> None:
        trail = [self._root]
        node: Any = self._root
        for part in segments[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            node = node[part]
            trail.append(node)
        if not isinstance(node, dict):
            return
        node.pop(segments[-1], None)

        # prune parents emptied by the delete
        for depth in range(len(trail) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(segments[depth - 1], None)

    def _clean(self, value: Any) -> Any:
        if isinstance(value, dict):
            cleaned = {}
            for key, item in value.items():
                item = self._clean(item)
                if item is not None:
                    cleaned[str(key)] = item
            return cleaned or None
        if isinstance(value, (list, tuple)):
            return [self._clean(item) for item in value]
        return value

    def _check_value(self, value: Any, path: str) -> None:
        if value is None or isinstance(value, _JSON_SCALARS):
            return
        if isinstance(value, dict):
            for key, item in value.items():
                if not isinstance(key, str):
                    raise SessionStoreError(f"Non-string key {key!r} at {path}")
                self._check_value(item, f"{path}/{key}")
            return
        if isinstance(value, (list, tuple)):
            for idx, item in enumerate(value):
                self._check_value(item, f"{path}/{idx}")
            return
        raise SessionStoreError(f"Unsupported value of type {type(value).__name__} at {path}")

    def _notify(self, written: List[List[str]]) -> None:
        for sub in list(self._subscriptions):
            if any(_overlaps(sub.segments, segments) for segments in written):
                sub.push(self._read(sub.segments))
