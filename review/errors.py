"""Exception hierarchy for the game review core."""

from typing import Any


class ReviewError(Exception):
    """Base class for review errors.

    Attributes:
        user_message: Safe, user-facing message.
        context: Debug information (node ids, engine ids, status codes).
    """

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.user_message = user_message or message
        self.context = context or {}


class InvalidMove(ReviewError, ValueError):
    """Tree mutation with a move that is not legal from the parent position."""


class EngineNotReady(ReviewError):
    """Evaluation requested before the engine finished initializing."""


class EngineEvaluationFailed(ReviewError):
    """The engine failed while evaluating one position."""


class PersistFailed(ReviewError):
    """A save or delete round trip to the analysis store failed."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class SessionInvalidState(ReviewError):
    """Learn-from-mistakes transition requested from an incompatible state."""


class AnalysisStateError(ReviewError):
    """Deep analysis transition requested from an incompatible state."""
