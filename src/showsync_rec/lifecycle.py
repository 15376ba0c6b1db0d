"""
Recommendation lifecycle and feedback capture.

The stored boolean flags are only ever changed through the transition
table below:

    CREATED -> VIEWED -> DISMISSED | ACTED_UPON
    CREATED -> DISMISSED | ACTED_UPON            (acting also marks viewed)
    any non-terminal state -> EXPIRED            (clock driven, never written)

Repeating the event that produced a terminal state, or viewing a row that
is already terminal, is a no-op. Anything else out of a terminal state is
an InvalidTransition.
"""

import logging
from datetime import datetime
from enum import Enum

from .database import get_db
from .errors import InvalidArgument, InvalidTransition, NotFound
from .models import (
    ActionTaken,
    FeedbackRecord,
    FeedbackType,
    Recommendation,
    RecommendationKind,
    RecommendationState,
)
from .recommendation_store import RecommendationStore

logger = logging.getLogger(__name__)


class LifecycleEvent(Enum):
    VIEW = "view"
    DISMISS = "dismiss"
    ACT = "act"


_TRANSITIONS = {
    RecommendationState.CREATED: {
        LifecycleEvent.VIEW: RecommendationState.VIEWED,
        LifecycleEvent.DISMISS: RecommendationState.DISMISSED,
        LifecycleEvent.ACT: RecommendationState.ACTED_UPON,
    },
    RecommendationState.VIEWED: {
        LifecycleEvent.VIEW: RecommendationState.VIEWED,
        LifecycleEvent.DISMISS: RecommendationState.DISMISSED,
        LifecycleEvent.ACT: RecommendationState.ACTED_UPON,
    },
}

_NOOPS = {
    (RecommendationState.DISMISSED, LifecycleEvent.VIEW),
    (RecommendationState.DISMISSED, LifecycleEvent.DISMISS),
    (RecommendationState.ACTED_UPON, LifecycleEvent.VIEW),
    (RecommendationState.ACTED_UPON, LifecycleEvent.ACT),
}

_DEFAULT_ACTION = {
    RecommendationKind.CONTENT: ActionTaken.ADDED_TO_LIBRARY,
    RecommendationKind.GROUP: ActionTaken.JOINED_GROUP,
}


def state_of(rec: Recommendation, now: datetime | None = None) -> RecommendationState:
    if rec.dismissed:
        return RecommendationState.DISMISSED
    if rec.acted_upon:
        return RecommendationState.ACTED_UPON
    if rec.is_expired(now):
        return RecommendationState.EXPIRED
    if rec.viewed:
        return RecommendationState.VIEWED
    return RecommendationState.CREATED


def next_state(state: RecommendationState, event: LifecycleEvent) -> RecommendationState:
    if (state, event) in _NOOPS:
        return state
    if state is RecommendationState.EXPIRED:
        raise NotFound("recommendation has expired")
    try:
        return _TRANSITIONS[state][event]
    except KeyError:
        raise InvalidTransition(f"cannot {event.value} a recommendation in state {state.value}") from None


def _validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidArgument(f"rating must be an integer between 1 and 5, got {rating!r}")
    if not 1 <= rating <= 5:
        raise InvalidArgument(f"rating must be between 1 and 5, got {rating}")
    return rating


class FeedbackManager:
    """Applies user actions and explicit feedback to stored recommendations."""

    def __init__(self, store: RecommendationStore):
        self.store = store

    def _load(self, user_id: int, kind, rec_id: int) -> Recommendation:
        kind = RecommendationKind.parse(kind)
        rec = self.store.get(user_id, kind, rec_id)
        if rec is None:
            raise NotFound(f"{kind.value} recommendation {rec_id} not found for user {user_id}")
        return rec

    def _apply(self, rec: Recommendation, event: LifecycleEvent, now: datetime) -> tuple[Recommendation, bool]:
        """Returns the updated record and whether anything changed."""
        current = state_of(rec, now)
        target = next_state(current, event)
        if target is current and current is not RecommendationState.VIEWED:
            return rec, False
        if target is RecommendationState.VIEWED and rec.viewed:
            return rec, False

        viewed = True
        dismissed = target is RecommendationState.DISMISSED
        acted_upon = target is RecommendationState.ACTED_UPON
        if not self.store.update_flags(rec, viewed=viewed, dismissed=dismissed, acted_upon=acted_upon):
            raise InvalidTransition(f"recommendation {rec.id} changed state concurrently")
        rec.viewed, rec.dismissed, rec.acted_upon = viewed, dismissed, acted_upon
        return rec, True

    def mark_viewed(self, user_id: int, kind, rec_id: int, now: datetime | None = None) -> Recommendation:
        now = now or datetime.now()
        rec = self._load(user_id, kind, rec_id)
        rec, _ = self._apply(rec, LifecycleEvent.VIEW, now)
        return rec

    def dismiss(self, user_id: int, kind, rec_id: int, reason: str | None = None,
                now: datetime | None = None) -> Recommendation:
        now = now or datetime.now()
        with get_db():
            rec = self._load(user_id, kind, rec_id)
            rec, changed = self._apply(rec, LifecycleEvent.DISMISS, now)
            if changed:
                self.store.append_feedback(
                    rec, FeedbackType.NEGATIVE, ActionTaken.DISMISSED, now=now, reason=reason,
                )
                logger.info(f"User {user_id} dismissed {rec.kind.value} recommendation {rec.id}")
        return rec

    def record_positive_feedback(self, user_id: int, kind, rec_id: int, action: ActionTaken | str | None = None,
                                 now: datetime | None = None) -> Recommendation:
        """Mark as acted upon (which also marks viewed) and log a POSITIVE record."""
        now = now or datetime.now()
        with get_db():
            rec = self._load(user_id, kind, rec_id)
            action = ActionTaken.parse(action) if action is not None else _DEFAULT_ACTION[rec.kind]
            rec, changed = self._apply(rec, LifecycleEvent.ACT, now)
            if changed:
                self.store.append_feedback(rec, FeedbackType.POSITIVE, action, now=now)
                logger.info(f"User {user_id} acted on {rec.kind.value} recommendation {rec.id} ({action.value})")
        return rec

    def submit_feedback(self, user_id: int, kind, rec_id: int, rating: int, text: str | None = None,
                        now: datetime | None = None) -> FeedbackRecord:
        """
        Store an explicit 1-5 rating (and optional text) on the recommendation
        and append it to the feedback log. Expired recommendations no longer
        accept feedback and are reported as NotFound.
        """
        rating = _validate_rating(rating)
        now = now or datetime.now()
        with get_db():
            rec = self._load(user_id, kind, rec_id)
            if rec.is_expired(now):
                raise NotFound(f"{rec.kind.value} recommendation {rec_id} has expired")
            self.store.set_user_feedback(rec.id, rating)
            rec.user_feedback = rating
            record = self.store.append_feedback(
                rec, FeedbackType.from_rating(rating), ActionTaken.RATED,
                now=now, score=rating, text=(text.strip() or None) if text else None,
            )
        return record
