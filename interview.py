"""Interview scripts, the lookup collaborator, and spoken phrases.

Both relay architectures draw their conversation content from here: the
realtime session turns it into model instructions, the webhook loop speaks
it line by line.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

# =============================================================================
# Spoken phrases
# =============================================================================

DEFAULT_QUESTION = "Tell me a little about yourself."
ACKNOWLEDGMENT = "Thank you for your answer."
CLOSING_LINE = "Thank you for all your answers! The interview is now complete. Goodbye."
NO_ANSWER_LINE = "I did not hear an answer. Ending the call now. Goodbye."
REPROMPT_LINE = "Sorry, I did not catch that."
LOST_TRACK_LINE = "Sorry, I lost track of where we were, so let us start again."
NOT_FOUND_LINE = "Sorry, I could not find an active interview. Goodbye."
ERROR_LINE = "Sorry, something went wrong. Please try again later. Goodbye."
SESSION_LOST_LINE = "Sorry, the interview connection was interrupted. Please call again later. Goodbye."


def greeting(title: str) -> str:
    """Line spoken before a call is handed to the realtime interviewer."""
    return f"Hello! Let's start the {title} interview. One moment while I connect you."


class InterviewNotFoundError(LookupError):
    """Raised when a requested interview does not exist."""


# =============================================================================
# Interview script
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class InterviewScript:
    """Title plus ordered questions, fetched by value at session start."""

    id: str
    title: str
    questions: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        cleaned = tuple(q.strip() for q in self.questions if q and q.strip())
        object.__setattr__(self, "questions", cleaned)

    @property
    def effective_questions(self) -> tuple[str, ...]:
        """Questions to ask; never empty."""
        return self.questions or (DEFAULT_QUESTION,)

    def question(self, index: int) -> str:
        return self.effective_questions[index]

    def __len__(self) -> int:
        return len(self.effective_questions)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InterviewScript:
        created = data.get("created_at")
        if isinstance(created, str):
            created_at = datetime.fromisoformat(created)
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
        else:
            created_at = _utcnow()
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or "interview"),
            questions=tuple(str(q) for q in data.get("questions") or ()),
            created_at=created_at,
        )


# =============================================================================
# Interview lookup
# =============================================================================


class InterviewRepository:
    """Thread-safe in-memory interview lookup."""

    def __init__(self) -> None:
        self._interviews: dict[str, InterviewScript] = {}
        self._lock = threading.Lock()

    def add(self, script: InterviewScript) -> InterviewScript:
        with self._lock:
            self._interviews[script.id] = script
        return script

    def get(self, interview_id: str) -> InterviewScript:
        with self._lock:
            script = self._interviews.get(interview_id)
        if script is None:
            raise InterviewNotFoundError(interview_id)
        return script

    def latest(self) -> InterviewScript:
        """Most recently created interview."""
        with self._lock:
            if not self._interviews:
                raise InterviewNotFoundError("no interviews available")
            return max(self._interviews.values(), key=lambda s: s.created_at)

    def resolve(self, interview_id: str | None = None) -> InterviewScript:
        """Explicit interview if an id is given, otherwise the most recent one."""
        if interview_id:
            return self.get(interview_id)
        return self.latest()

    def load_file(self, path: str | Path) -> int:
        """Seed interviews from a JSON list. Returns the number loaded."""
        entries = json.loads(Path(path).read_text())
        for entry in entries:
            self.add(InterviewScript.from_dict(entry))
        logger.info(f"Loaded {len(entries)} interview(s) from {path}")
        return len(entries)

    def reset(self) -> None:
        """Clear all interviews (useful for testing)."""
        with self._lock:
            self._interviews.clear()
