"""
Shared domain types for the recommendation engine.

Category maps (genre/platform/era -> weight) are plain dicts keyed by open
vocabulary labels coming from catalog metadata; nothing here enumerates
genres or platforms.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from .config import EXPIRING_SOON_HOURS, FEEDBACK_NEGATIVE_MAX, FEEDBACK_POSITIVE_MIN, PROFILE_SCHEMA_VERSION
from .errors import InvalidArgument


class _ParseableEnum(Enum):
    @classmethod
    def parse(cls, raw):
        """Accept an enum member, its value or its name (case-insensitive)."""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            key = raw.strip()
            for member in cls:
                if member.value == key.lower() or member.name == key.upper():
                    return member
        raise InvalidArgument(f"Unknown {cls.__name__}: {raw!r}")


class RecommendationKind(_ParseableEnum):
    """What the candidate id refers to."""

    CONTENT = "content"
    GROUP = "group"


class ReasonCode(_ParseableEnum):
    """Why a candidate was recommended."""

    GENRE_MATCH = "genre_match"
    SIMILAR_CONTENT = "similar_content"
    SAME_DIRECTOR = "same_director"
    SAME_ACTOR = "same_actor"
    GROUP_ACTIVITY = "group_activity"
    SIMILAR_USERS = "similar_users"
    FRIEND_ACTIVITY = "friend_activity"
    TRENDING_GLOBAL = "trending_global"
    TRENDING_GENRE = "trending_genre"
    HIGHLY_RATED = "highly_rated"
    ACTIVITY_LEVEL = "activity_level"
    GENRE_COMPATIBILITY = "genre_compatibility"
    SIZE_PREFERENCE = "size_preference"
    NEW_RELEASE = "new_release"
    ENDING_SOON = "ending_soon"
    AWARD_WINNER = "award_winner"
    COMPLETION_PATTERN = "completion_pattern"
    TIME_BASED = "time_based"
    BINGE_WORTHY = "binge_worthy"
    GENERAL = "general"

    @property
    def description(self) -> str:
        return _REASON_DESCRIPTIONS[self]


_REASON_DESCRIPTIONS = {
    ReasonCode.GENRE_MATCH: "Based on your genre preferences",
    ReasonCode.SIMILAR_CONTENT: "Similar to content you enjoyed",
    ReasonCode.SAME_DIRECTOR: "From a director you like",
    ReasonCode.SAME_ACTOR: "Features actors you enjoy",
    ReasonCode.GROUP_ACTIVITY: "Popular in your groups",
    ReasonCode.SIMILAR_USERS: "Users with similar taste enjoyed this",
    ReasonCode.FRIEND_ACTIVITY: "Your friends are watching this",
    ReasonCode.TRENDING_GLOBAL: "Trending now",
    ReasonCode.TRENDING_GENRE: "Trending in your favorite genres",
    ReasonCode.HIGHLY_RATED: "Highly rated by the community",
    ReasonCode.ACTIVITY_LEVEL: "Matches your activity level",
    ReasonCode.GENRE_COMPATIBILITY: "Members share your genre preferences",
    ReasonCode.SIZE_PREFERENCE: "Matches your preferred group size",
    ReasonCode.NEW_RELEASE: "New release",
    ReasonCode.ENDING_SOON: "Leaving soon",
    ReasonCode.AWARD_WINNER: "Award winner",
    ReasonCode.COMPLETION_PATTERN: "Fits how you usually watch",
    ReasonCode.TIME_BASED: "Fits your usual viewing time",
    ReasonCode.BINGE_WORTHY: "Great for binge-watching",
    ReasonCode.GENERAL: "Recommended for you",
}


class ViewingPersonality(_ParseableEnum):
    """Behavioral classification derived from interaction patterns."""

    CASUAL = "casual"
    CRITIC = "critic"
    BINGE_WATCHER = "binge_watcher"
    EXPLORER = "explorer"
    COMFORT_SEEKER = "comfort_seeker"
    SOCIAL = "social"
    TRENDY = "trendy"
    NICHE = "niche"
    COMPLETIONIST = "completionist"
    SAMPLER = "sampler"

    @property
    def display_name(self) -> str:
        return _PERSONALITY_INFO[self][0]

    @property
    def description(self) -> str:
        return _PERSONALITY_INFO[self][1]


_PERSONALITY_INFO = {
    ViewingPersonality.CASUAL: ("Casual Viewer", "Watches occasionally, open to popular picks"),
    ViewingPersonality.CRITIC: ("Critic", "Rates thoughtfully and has strong opinions"),
    ViewingPersonality.BINGE_WATCHER: ("Binge Watcher", "Finishes a lot of content in short bursts"),
    ViewingPersonality.EXPLORER: ("Explorer", "Samples widely across genres"),
    ViewingPersonality.COMFORT_SEEKER: ("Comfort Seeker", "Returns to familiar favorites"),
    ViewingPersonality.SOCIAL: ("Social Viewer", "Watches along with groups"),
    ViewingPersonality.TRENDY: ("Trend Follower", "Keeps up with what is popular"),
    ViewingPersonality.NICHE: ("Niche Enthusiast", "Goes deep on a narrow set of genres"),
    ViewingPersonality.COMPLETIONIST: ("Completionist", "Finishes nearly everything they start"),
    ViewingPersonality.SAMPLER: ("Sampler", "Tries many things, finishes few"),
}


class FeedbackType(_ParseableEnum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"

    @property
    def weight(self) -> float:
        return {FeedbackType.POSITIVE: 1.0, FeedbackType.NEGATIVE: -1.0}.get(self, 0.0)

    @classmethod
    def from_rating(cls, rating: int) -> FeedbackType:
        if rating >= FEEDBACK_POSITIVE_MIN:
            return cls.POSITIVE
        if rating <= FEEDBACK_NEGATIVE_MAX:
            return cls.NEGATIVE
        return cls.NEUTRAL


class ActionTaken(_ParseableEnum):
    JOINED_GROUP = "joined_group"
    ADDED_TO_LIBRARY = "added_to_library"
    DISMISSED = "dismissed"
    RATED = "rated"


class RecommendationState(Enum):
    CREATED = "created"
    VIEWED = "viewed"
    DISMISSED = "dismissed"
    ACTED_UPON = "acted_upon"
    EXPIRED = "expired"


# Collaborator data ------------------------------------------------------

@dataclass
class Interaction:
    """One user/media interaction as reported by the interaction history."""

    media_id: int
    rating: float | None
    completed: bool
    favorite: bool
    timestamp: datetime


@dataclass
class MediaMetadata:
    media_id: int
    title: str
    genres: list[str] = field(default_factory=list)
    platform: str | None = None
    release_year: int | None = None
    media_type: str = "movie"
    average_rating: float | None = None
    popularity: int = 0


@dataclass
class GroupInfo:
    group_id: int
    name: str
    is_public: bool
    member_ids: list[int] = field(default_factory=list)


@dataclass
class TrendingItem:
    media_id: int
    interaction_count: int
    average_rating: float | None
    last_interaction_at: datetime | None = None


# Engine records ---------------------------------------------------------

@dataclass
class PreferenceProfile:
    """Per-user taste summary. Weight maps hold values in [0, 1]."""

    user_id: int
    genre_weights: dict[str, float] = field(default_factory=dict)
    platform_weights: dict[str, float] = field(default_factory=dict)
    era_weights: dict[str, float] = field(default_factory=dict)
    average_rating: float | None = None
    rating_variance: float = 0.0
    total_interactions: int = 0
    total_completed: int = 0
    completion_rate: float = 0.0
    viewing_personality: ViewingPersonality = ViewingPersonality.CASUAL
    confidence_score: float = 0.0
    diversity_score: float = 0.0
    last_calculated_at: datetime | None = None
    schema_version: int = PROFILE_SCHEMA_VERSION

    @classmethod
    def empty(cls, user_id: int, now: datetime | None = None) -> PreferenceProfile:
        return cls(user_id=user_id, last_calculated_at=now)

    def top_genres(self, n: int = 3) -> list[str]:
        ranked = sorted(self.genre_weights.items(), key=lambda kv: (-kv[1], kv[0]))
        return [genre for genre, weight in ranked[:n] if weight > 0]

    def is_stale(self, refresh_interval_days: int, now: datetime | None = None) -> bool:
        if self.last_calculated_at is None:
            return True
        now = now or datetime.now()
        return now - self.last_calculated_at > timedelta(days=refresh_interval_days)


@dataclass
class Candidate:
    """A scored, not yet persisted recommendation."""

    kind: RecommendationKind
    candidate_id: int
    score: float
    reason: ReasonCode
    explanation: str = ""
    title: str | None = None
    group_id: int | None = None
    source_media_id: int | None = None
    source_group_id: int | None = None
    source_user_id: int | None = None
    signal_at: datetime | None = None
    genres: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple:
        return (self.kind, self.candidate_id, self.group_id)


@dataclass
class Recommendation:
    """A persisted recommendation: an immutable fact with a validity window."""

    id: int
    user_id: int
    kind: RecommendationKind
    candidate_id: int
    score: float
    reason: ReasonCode
    explanation: str
    created_at: datetime
    expires_at: datetime
    group_id: int | None = None
    source_media_id: int | None = None
    source_group_id: int | None = None
    viewed: bool = False
    dismissed: bool = False
    acted_upon: bool = False
    user_feedback: int | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now()) >= self.expires_at

    def is_actionable(self, now: datetime | None = None) -> bool:
        return not self.dismissed and not self.acted_upon and not self.is_expired(now)

    def is_expiring_soon(self, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        return not self.is_expired(now) and self.expires_at - now <= timedelta(hours=EXPIRING_SOON_HOURS)


@dataclass
class FeedbackRecord:
    """Append-only feedback log entry."""

    id: int
    user_id: int
    kind: RecommendationKind
    recommendation_id: int
    candidate_id: int
    reason: ReasonCode | None
    feedback_type: FeedbackType
    action_taken: ActionTaken | None
    created_at: datetime
    feedback_score: int | None = None
    feedback_text: str | None = None
    feedback_reason: str | None = None
