"""Tests for the in-memory conversation store."""

from __future__ import annotations

import pytest

from store import ConcurrentUpdateError, ConversationState, InMemoryConversationStore


@pytest.fixture
def store():
    return InMemoryConversationStore()


def test_unseen_call_is_none(store):
    assert store.get("call-1") is None


def test_create_then_update_bumps_version(store):
    created = store.create(ConversationState(call_id="call-1", interview_id="iv"))
    assert created.version == 1

    advanced = store.update(created.with_entry("user", "hi"), expected_version=1)

    assert advanced.version == 2
    assert [e.text for e in store.get("call-1").transcript] == ["hi"]


def test_create_twice_conflicts(store):
    store.create(ConversationState(call_id="call-1", interview_id="iv"))
    with pytest.raises(ConcurrentUpdateError):
        store.create(ConversationState(call_id="call-1", interview_id="iv"))


def test_stale_update_is_rejected(store):
    first = store.create(ConversationState(call_id="call-1", interview_id="iv"))
    store.update(first, expected_version=1)

    with pytest.raises(ConcurrentUpdateError):
        store.update(first, expected_version=1)
    assert store.get("call-1").version == 2


def test_update_of_missing_record_is_rejected(store):
    with pytest.raises(ConcurrentUpdateError):
        store.update(ConversationState(call_id="ghost", interview_id="iv"), expected_version=0)


def test_records_are_copied(store):
    store.create(ConversationState(call_id="call-1", interview_id="iv"))
    loaded = store.get("call-1")
    loaded.transcript.append("mutated")
    loaded.question_index = 5

    fresh = store.get("call-1")
    assert fresh.transcript == []
    assert fresh.question_index == 0


def test_reset(store):
    store.create(ConversationState(call_id="call-1", interview_id="iv"))
    store.reset()
    assert store.get("call-1") is None
