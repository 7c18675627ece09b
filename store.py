"""Conversation state persisted between webhook invocations.

Each call identifier maps to one ConversationState. Updates are
conditional on the version the caller read, so two concurrent
invocations for the same call cannot both advance the question index.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


class StoreUnavailableError(RuntimeError):
    """The backing store could not be reached."""


class ConcurrentUpdateError(RuntimeError):
    """The stored record changed since it was read."""


@dataclass(frozen=True)
class TranscriptEntry:
    role: str  # user|assistant
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ConversationState:
    """Progress of one call through its interview."""

    call_id: str
    interview_id: str
    question_index: int = 0
    transcript: list[TranscriptEntry] = field(default_factory=list)
    completed: bool = False
    version: int = 0

    def with_entry(self, role: str, text: str) -> ConversationState:
        return replace(self, transcript=[*self.transcript, TranscriptEntry(role=role, text=text)])


class ConversationStore(ABC):
    """Keyed get/create/update by call identifier."""

    @abstractmethod
    def get(self, call_id: str) -> ConversationState | None:
        """Return the stored state, or None for an unseen call."""

    @abstractmethod
    def create(self, state: ConversationState) -> ConversationState:
        """Insert a new record. Raises ConcurrentUpdateError if one exists."""

    @abstractmethod
    def update(self, state: ConversationState, expected_version: int) -> ConversationState:
        """Replace the record if its version still equals expected_version."""


class InMemoryConversationStore(ConversationStore):
    """Thread-safe in-process store. Records are copied in and out."""

    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}
        self._lock = threading.Lock()

    def get(self, call_id: str) -> ConversationState | None:
        with self._lock:
            state = self._states.get(call_id)
            return copy.deepcopy(state) if state is not None else None

    def create(self, state: ConversationState) -> ConversationState:
        with self._lock:
            if state.call_id in self._states:
                raise ConcurrentUpdateError(f"conversation {state.call_id} already exists")
            stored = replace(copy.deepcopy(state), version=1)
            self._states[state.call_id] = stored
            return copy.deepcopy(stored)

    def update(self, state: ConversationState, expected_version: int) -> ConversationState:
        with self._lock:
            current = self._states.get(state.call_id)
            if current is None or current.version != expected_version:
                found = current.version if current is not None else None
                raise ConcurrentUpdateError(
                    f"conversation {state.call_id}: expected version {expected_version}, found {found}"
                )
            stored = replace(copy.deepcopy(state), version=expected_version + 1)
            self._states[state.call_id] = stored
            return copy.deepcopy(stored)

    def reset(self) -> None:
        """Clear all records (useful for testing)."""
        with self._lock:
            self._states.clear()
