from datetime import timedelta

import pytest

from showsync_rec.errors import InvalidArgument, InvalidTransition, NotFound
from showsync_rec.lifecycle import FeedbackManager, LifecycleEvent, next_state, state_of
from showsync_rec.models import (
    ActionTaken,
    Candidate,
    FeedbackType,
    ReasonCode,
    RecommendationKind,
    RecommendationState,
)
from showsync_rec.recommendation_store import RecommendationStore

EXPIRY = {RecommendationKind.CONTENT: 14, RecommendationKind.GROUP: 7}


@pytest.fixture
def store(fresh_db):
    return RecommendationStore(max_per_user=20)


@pytest.fixture
def manager(store):
    return FeedbackManager(store)


def _create(store, now, kind=RecommendationKind.CONTENT, candidate_id=1):
    candidate = Candidate(kind=kind, candidate_id=candidate_id, score=0.9, reason=ReasonCode.GENRE_MATCH,
                          explanation="Based on your love for Action")
    store.save_candidates(1, [candidate], EXPIRY, now=now)
    return store.list_active(1, kind, now=now)[0]


def test_fourteen_day_expiry_actionability(store, now):
    rec = _create(store, now)

    assert rec.expires_at == now + timedelta(days=14)
    assert rec.is_actionable(now)
    assert rec.is_actionable(now + timedelta(days=13, hours=23))
    assert not rec.is_actionable(now + timedelta(days=14, seconds=1))
    assert state_of(rec, now + timedelta(days=15)) is RecommendationState.EXPIRED
    assert not rec.viewed and not rec.dismissed and not rec.acted_upon


def test_expiring_soon_window(store, now):
    rec = _create(store, now)

    assert not rec.is_expiring_soon(now)
    assert rec.is_expiring_soon(now + timedelta(days=13))
    assert not rec.is_expiring_soon(now + timedelta(days=14))


def test_acting_implies_viewed(manager, store, now):
    rec = _create(store, now)

    updated = manager.record_positive_feedback(1, "content", rec.id, now=now)
    stored = store.get(1, RecommendationKind.CONTENT, rec.id)

    assert updated.acted_upon and updated.viewed
    assert stored.acted_upon and stored.viewed
    feedback = store.list_feedback(1, recommendation_id=rec.id)
    assert [(f.feedback_type, f.action_taken) for f in feedback] == [
        (FeedbackType.POSITIVE, ActionTaken.ADDED_TO_LIBRARY)
    ]


def test_group_acceptance_defaults_to_joined_group(manager, store, now):
    rec = _create(store, now, kind=RecommendationKind.GROUP, candidate_id=10)

    manager.record_positive_feedback(1, RecommendationKind.GROUP, rec.id, now=now)

    assert store.list_feedback(1)[0].action_taken is ActionTaken.JOINED_GROUP


def test_view_then_dismiss(manager, store, now):
    rec = _create(store, now)

    viewed = manager.mark_viewed(1, "content", rec.id, now=now)
    assert viewed.viewed and state_of(viewed, now) is RecommendationState.VIEWED

    dismissed = manager.dismiss(1, "content", rec.id, reason="seen it", now=now)
    assert dismissed.dismissed
    assert store.list_active(1, RecommendationKind.CONTENT, now=now) == []
    assert store.dismissed_candidates(1, RecommendationKind.CONTENT) == {1}
    record = store.list_feedback(1)[0]
    assert record.feedback_type is FeedbackType.NEGATIVE
    assert record.feedback_reason == "seen it"


def test_terminal_states(manager, store, now):
    rec = _create(store, now)
    manager.dismiss(1, "content", rec.id, now=now)

    # Repeating the terminal event and viewing are no-ops
    manager.dismiss(1, "content", rec.id, now=now)
    manager.mark_viewed(1, "content", rec.id, now=now)
    assert len(store.list_feedback(1)) == 1

    with pytest.raises(InvalidTransition):
        manager.record_positive_feedback(1, "content", rec.id, now=now)


def test_transition_table():
    assert next_state(RecommendationState.CREATED, LifecycleEvent.ACT) is RecommendationState.ACTED_UPON
    assert next_state(RecommendationState.ACTED_UPON, LifecycleEvent.ACT) is RecommendationState.ACTED_UPON
    with pytest.raises(InvalidTransition):
        next_state(RecommendationState.ACTED_UPON, LifecycleEvent.DISMISS)
    with pytest.raises(NotFound):
        next_state(RecommendationState.EXPIRED, LifecycleEvent.VIEW)


@pytest.mark.parametrize("rating", [0, 6, -1, 2.5, "4", True, None])
def test_out_of_range_ratings_rejected(manager, store, now, rating):
    rec = _create(store, now)
    with pytest.raises(InvalidArgument):
        manager.submit_feedback(1, "content", rec.id, rating, now=now)
    assert store.get(1, RecommendationKind.CONTENT, rec.id).user_feedback is None


@pytest.mark.parametrize("rating", [1, 2, 3, 4, 5])
def test_valid_ratings_stored_verbatim(manager, store, now, rating):
    rec = _create(store, now)

    record = manager.submit_feedback(1, "content", rec.id, rating, text="  loved it  ", now=now)

    assert store.get(1, RecommendationKind.CONTENT, rec.id).user_feedback == rating
    assert record.feedback_score == rating
    assert record.feedback_text == "loved it"
    assert record.feedback_type is FeedbackType.from_rating(rating)
    assert record.action_taken is ActionTaken.RATED


def test_latest_feedback_wins_and_log_is_append_only(manager, store, now):
    rec = _create(store, now)

    manager.submit_feedback(1, "content", rec.id, 2, now=now)
    manager.submit_feedback(1, "content", rec.id, 5, now=now + timedelta(hours=1))

    assert store.get(1, RecommendationKind.CONTENT, rec.id).user_feedback == 5
    assert [f.feedback_score for f in store.list_feedback(1)] == [2, 5]


def test_feedback_on_expired_or_unknown_is_not_found(manager, store, now):
    rec = _create(store, now)

    with pytest.raises(NotFound):
        manager.submit_feedback(1, "content", rec.id, 4, now=now + timedelta(days=15))
    with pytest.raises(NotFound):
        manager.submit_feedback(1, "content", 9999, 4, now=now)
    with pytest.raises(NotFound):
        manager.mark_viewed(2, "content", rec.id, now=now)
    with pytest.raises(InvalidArgument):
        manager.mark_viewed(1, "playlist", rec.id, now=now)
