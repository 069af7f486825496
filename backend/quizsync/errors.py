from __future__ import annotations


class QuizSyncError(ValueError):
    """Base class for engine failures that leave the session unchanged."""


class PreconditionFailed(QuizSyncError):
    pass


class IllegalTransition(QuizSyncError):
    def __init__(self, current: str, proposed: str):
        super().__init__(f"Illegal status transition {current} -> {proposed}")
        self.current = current
        self.proposed = proposed


class NotFound(QuizSyncError):
    pass


class JoinRejected(QuizSyncError):
    pass


class SessionStoreError(QuizSyncError):
    """A write could not be applied by the shared session store."""
