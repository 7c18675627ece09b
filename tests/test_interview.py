"""Tests for interview scripts and lookup."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from interview import DEFAULT_QUESTION, InterviewNotFoundError, InterviewRepository, InterviewScript


def test_blank_questions_are_dropped():
    script = InterviewScript(id="a", title="T", questions=(" One? ", "", "   ", "Two?"))

    assert script.questions == ("One?", "Two?")
    assert len(script) == 2
    assert script.question(1) == "Two?"


def test_no_questions_uses_default():
    script = InterviewScript(id="a", title="T")

    assert script.effective_questions == (DEFAULT_QUESTION,)
    assert len(script) == 1


def test_latest_is_most_recently_created():
    repo = InterviewRepository()
    now = datetime.now(timezone.utc)
    repo.add(InterviewScript(id="old", title="Old", created_at=now - timedelta(days=1)))
    repo.add(InterviewScript(id="new", title="New", created_at=now))

    assert repo.latest().id == "new"
    assert repo.resolve(None).id == "new"
    assert repo.resolve("old").id == "old"


def test_missing_interview():
    repo = InterviewRepository()

    with pytest.raises(InterviewNotFoundError):
        repo.latest()
    with pytest.raises(InterviewNotFoundError):
        repo.get("missing")


def test_load_file(tmp_path):
    path = tmp_path / "interviews.json"
    path.write_text(json.dumps([
        {"id": "1", "title": "Feedback", "questions": ["Q1", "Q2"], "created_at": "2024-05-01T10:00:00"},
        {"id": "2", "title": "Follow-up", "questions": [], "created_at": "2024-06-01T10:00:00+00:00"},
    ]))
    repo = InterviewRepository()

    assert repo.load_file(path) == 2
    assert repo.get("1").questions == ("Q1", "Q2")
    assert repo.latest().id == "2"
