"""
Preference calculation: interaction history -> PreferenceProfile.

Each interaction contributes a signed signal to the genres, platform and
era of its media. The signal blends the absolute star rating with the
rating relative to the user's own mean, is discounted by age and boosted
when recent. Per-dimension totals are then normalized into [0, 1].
"""

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from statistics import mean, pstdev, pvariance

from scipy.stats import entropy

from .config import (
    BINGE_COMPLETION_RATE,
    BINGE_INTERACTIONS_PER_WEEK,
    COMFORT_FAVORITE_RATIO,
    COMFORT_MAX_DIVERSITY,
    COMPLETIONIST_RATE,
    CONFIDENCE_RECENCY_FLOOR,
    CRITIC_MIN_RATINGS,
    CRITIC_RATING_STD,
    EXPLORER_DIVERSITY,
    EXPLORER_MIN_GENRES,
    NICHE_MAX_DIVERSITY,
    RATING_MAX,
    RATING_MIDPOINT,
    RATING_MIN,
    RELATIVE_RATING_BLEND,
    RELATIVE_RATING_MIN_COUNT,
    SAMPLER_RATE,
    SIGNAL_COMPLETED_NO_RATING,
    SIGNAL_FAVORITE_BONUS,
    SIGNAL_FAVORITE_NO_RATING,
    SIGNAL_STARTED_ONLY,
)
from .database import (
    delete_inactive_profiles,
    load_profile,
    personality_distribution,
    profiles_needing_update,
    save_profile,
)
from .errors import UpstreamUnavailable
from .models import FeedbackType, Interaction, MediaMetadata, PreferenceProfile, ViewingPersonality
from .recommendation_config import RecommendationConfig
from .utils import call_with_timeout

logger = logging.getLogger(__name__)


def determine_era(release_year: int | None) -> str | None:
    if release_year is None:
        return None
    if release_year >= 1970:
        return f"{(release_year // 10) * 10}s"
    return "Classic"


def _compute_temporal_weight(
    timestamp: datetime | None,
    reference_time: datetime,
    cfg: RecommendationConfig,
) -> float:
    """
    Exponential decay: weight = decay_base ** (age / period), floored at
    temporal_min_weight, multiplied by recent_view_boost inside the recent window.
    """
    if timestamp is None:
        return 1.0
    age_days = (reference_time - timestamp).total_seconds() / 86400
    if age_days <= 0:
        return cfg.recent_view_boost

    decay = max(math.pow(cfg.time_decay_factor, age_days / cfg.decay_period_days), cfg.temporal_min_weight)
    if age_days <= cfg.recent_window_days:
        decay *= cfg.recent_view_boost
    return decay


def _absolute_signal(rating: float) -> float:
    """Map a star rating onto [-1, 1] around the scale midpoint."""
    half_range = (RATING_MAX - RATING_MIN) / 2
    return max(-1.0, min(1.0, (rating - RATING_MIDPOINT) / half_range))


def _interaction_signal(
    interaction: Interaction,
    user_mean: float | None,
    user_std: float,
    n_ratings: int,
) -> float:
    """
    Signed preference signal in [-1, 1] for a single interaction.

    With few ratings we trust the absolute scale; as the user rates more,
    the rating relative to their own mean takes up to RELATIVE_RATING_BLEND
    of the signal so harsh and generous raters end up comparable.
    """
    if interaction.rating is None:
        if interaction.favorite:
            return SIGNAL_FAVORITE_NO_RATING
        if interaction.completed:
            return SIGNAL_COMPLETED_NO_RATING
        return SIGNAL_STARTED_ONLY

    absolute = _absolute_signal(interaction.rating)
    if user_mean is not None and user_std > 0.2 and n_ratings >= 2:
        relative = max(-1.0, min(1.0, (interaction.rating - user_mean) / (2 * user_std)))
        blend = RELATIVE_RATING_BLEND * min(1.0, n_ratings / RELATIVE_RATING_MIN_COUNT)
        signal = (1 - blend) * absolute + blend * relative
    else:
        signal = absolute

    if interaction.favorite:
        signal += SIGNAL_FAVORITE_BONUS
    return max(-1.0, min(1.0, signal))


def _normalize_weights(raw: dict[str, float], counts: dict[str, int]) -> dict[str, float]:
    """
    Scale accumulated scores into [0, 1].

    Scores are first divided by sqrt(count) so a category is not favored
    merely for being frequent, then min-max scaled with zero pinned inside
    the range: the strongest positive category maps to 1.0 and negative
    categories land below the zero point. Categories that are all exactly
    neutral map to 0.5.
    """
    # Rounded so opposite signals that cancel out read as exactly neutral
    scaled = {k: round(v / math.sqrt(counts[k]), 9) + 0.0 for k, v in raw.items() if counts.get(k, 0) > 0}
    if not scaled:
        return {}
    lo = min(min(scaled.values()), 0.0)
    hi = max(max(scaled.values()), 0.0)
    if hi == lo:
        return {k: 0.5 for k in scaled}
    return {k: round((v - lo) / (hi - lo), 6) for k, v in scaled.items()}


def genre_diversity(genre_counts: dict[str, int]) -> float:
    """Shannon entropy of the genre distribution, normalized to [0, 1]."""
    counts = [c for c in genre_counts.values() if c > 0]
    if len(counts) < 2:
        return 0.0
    return float(entropy(counts, base=2) / math.log2(len(counts)))


def classify_personality(
    total: int,
    completion_rate: float,
    rating_std: float,
    n_ratings: int,
    per_week: float,
    diversity: float,
    distinct_genres: int,
    favorite_ratio: float,
    min_interactions: int,
) -> ViewingPersonality:
    """Fixed decision policy; the first matching rule wins."""
    if total < min_interactions:
        return ViewingPersonality.CASUAL
    if completion_rate > BINGE_COMPLETION_RATE and per_week >= BINGE_INTERACTIONS_PER_WEEK:
        return ViewingPersonality.BINGE_WATCHER
    if diversity >= EXPLORER_DIVERSITY and distinct_genres >= EXPLORER_MIN_GENRES:
        return ViewingPersonality.EXPLORER
    if n_ratings >= CRITIC_MIN_RATINGS and rating_std >= CRITIC_RATING_STD:
        return ViewingPersonality.CRITIC
    if favorite_ratio >= COMFORT_FAVORITE_RATIO and diversity < COMFORT_MAX_DIVERSITY:
        return ViewingPersonality.COMFORT_SEEKER
    if completion_rate >= COMPLETIONIST_RATE:
        return ViewingPersonality.COMPLETIONIST
    if completion_rate < SAMPLER_RATE:
        return ViewingPersonality.SAMPLER
    if diversity < NICHE_MAX_DIVERSITY:
        return ViewingPersonality.NICHE
    return ViewingPersonality.CASUAL


def confidence_score(total_interactions: int, newest_age_days: float, cfg: RecommendationConfig) -> float:
    """
    Capped square-root growth in interaction volume times a recency factor.

    Reaches full volume credit at min_interactions_for_high_confidence; the
    recency factor decays like interaction weights but never below
    CONFIDENCE_RECENCY_FLOOR. Zero interactions always yields 0.
    """
    if total_interactions <= 0:
        return 0.0
    volume = min(1.0, math.sqrt(total_interactions / cfg.min_interactions_for_high_confidence))
    recency = max(
        CONFIDENCE_RECENCY_FLOOR,
        math.pow(cfg.time_decay_factor, max(newest_age_days, 0.0) / cfg.decay_period_days),
    )
    return round(volume * recency, 6)


def effective_confidence(profile: PreferenceProfile, cfg: RecommendationConfig, now: datetime | None = None) -> float:
    """Stored confidence, discounted for every period the profile sat past its refresh interval."""
    if profile.total_interactions == 0 or profile.last_calculated_at is None:
        return 0.0
    now = now or datetime.now()
    overdue_days = (now - profile.last_calculated_at).total_seconds() / 86400 - cfg.preference_refresh_interval_days
    if overdue_days <= 0:
        return profile.confidence_score
    discount = max(CONFIDENCE_RECENCY_FLOOR, math.pow(cfg.time_decay_factor, overdue_days / cfg.decay_period_days))
    return profile.confidence_score * discount


def build_profile(
    user_id: int,
    interactions: list[Interaction],
    metadata: dict[int, MediaMetadata],
    cfg: RecommendationConfig,
    feedback: list[tuple[int, FeedbackType]] | None = None,
    reference_time: datetime | None = None,
) -> PreferenceProfile:
    """
    Build a profile from raw interactions and media metadata.

    Args:
        user_id: Owner of the interactions
        interactions: Full interaction history
        metadata: media_id -> MediaMetadata for the referenced media
        cfg: Tunables (decay, boosts, feedback learning rate, thresholds)
        feedback: (media_id, FeedbackType) pairs from past content recommendations
        reference_time: Clock for decay and recency (default: now)

    Interactions whose media is unknown to the catalog still count toward
    the activity statistics but contribute no category weight.
    """
    now = reference_time or datetime.now()
    if not interactions:
        return PreferenceProfile.empty(user_id, now)

    ratings = [i.rating for i in interactions if i.rating is not None]
    n_ratings = len(ratings)
    user_mean = mean(ratings) if ratings else None
    user_std = pstdev(ratings) if n_ratings > 1 else 0.0

    genre_raw: dict[str, float] = defaultdict(float)
    genre_counts: dict[str, int] = defaultdict(int)
    platform_raw: dict[str, float] = defaultdict(float)
    platform_counts: dict[str, int] = defaultdict(int)
    era_raw: dict[str, float] = defaultdict(float)
    era_counts: dict[str, int] = defaultdict(int)

    def _accumulate(media: MediaMetadata, weight: float) -> None:
        for genre in media.genres:
            genre_raw[genre] += weight
            genre_counts[genre] += 1
        if media.platform:
            platform_raw[media.platform] += weight * cfg.platform_priority(media.platform)
            platform_counts[media.platform] += 1
        era = determine_era(media.release_year)
        if era:
            era_raw[era] += weight
            era_counts[era] += 1

    for interaction in interactions:
        media = metadata.get(interaction.media_id)
        if media is None:
            continue
        signal = _interaction_signal(interaction, user_mean, user_std, n_ratings)
        _accumulate(media, signal * _compute_temporal_weight(interaction.timestamp, now, cfg))

    for media_id, feedback_type in feedback or []:
        media = metadata.get(media_id)
        if media is None:
            continue
        if feedback_type is FeedbackType.POSITIVE:
            weight = cfg.positive_feedback_weight
        elif feedback_type is FeedbackType.NEGATIVE:
            weight = cfg.negative_feedback_weight
        else:
            continue
        _accumulate(media, cfg.feedback_learning_rate * weight)

    total = len(interactions)
    completed = sum(1 for i in interactions if i.completed)
    favorites = sum(1 for i in interactions if i.favorite)
    completion_rate = completed / total

    first_seen = interactions[0].timestamp
    last_seen = max(i.timestamp for i in interactions)
    span_weeks = max(1.0, (last_seen - first_seen).total_seconds() / (7 * 86400))
    diversity = genre_diversity(genre_counts)

    personality = classify_personality(
        total=total,
        completion_rate=completion_rate,
        rating_std=user_std,
        n_ratings=n_ratings,
        per_week=total / span_weeks,
        diversity=diversity,
        distinct_genres=len(genre_counts),
        favorite_ratio=favorites / total,
        min_interactions=cfg.min_interactions_for_recommendations,
    )
    newest_age_days = (now - last_seen).total_seconds() / 86400

    return PreferenceProfile(
        user_id=user_id,
        genre_weights=_normalize_weights(genre_raw, genre_counts),
        platform_weights=_normalize_weights(platform_raw, platform_counts),
        era_weights=_normalize_weights(era_raw, era_counts),
        average_rating=round(user_mean, 4) if user_mean is not None else None,
        rating_variance=round(pvariance(ratings), 4) if n_ratings > 1 else 0.0,
        total_interactions=total,
        total_completed=completed,
        completion_rate=round(completion_rate, 4),
        viewing_personality=personality,
        confidence_score=confidence_score(total, newest_age_days, cfg),
        diversity_score=round(diversity, 4),
        last_calculated_at=now,
    )


class PreferenceCalculator:
    """Reads collaborators, builds profiles and keeps the profile store current."""

    def __init__(self, history, catalog, cfg: RecommendationConfig, store=None):
        self.history = history
        self.catalog = catalog
        self.cfg = cfg
        self.store = store

    def _fetch(self, func, *args):
        return call_with_timeout(func, *args, timeout=self.cfg.collaborator_timeout_seconds)

    def calculate(self, user_id: int, now: datetime | None = None) -> PreferenceProfile:
        """Recalculate and persist a user's profile."""
        now = now or datetime.now()
        interactions = self._fetch(self.history.history, user_id)
        feedback = self.store.feedback_signals(user_id) if self.store is not None else []

        media_ids = {i.media_id for i in interactions} | {media_id for media_id, _ in feedback}
        metadata = self._fetch(self.catalog.metadata, media_ids) if media_ids else {}

        profile = build_profile(user_id, interactions, metadata, self.cfg, feedback=feedback, reference_time=now)
        save_profile(profile)
        logger.debug(
            f"Profile for user {user_id}: {profile.total_interactions} interactions, "
            f"confidence {profile.confidence_score:.2f}, {profile.viewing_personality.value}"
        )
        return profile

    def get_profile(self, user_id: int) -> PreferenceProfile:
        """Stored profile, or the zero-confidence default when none exists."""
        profile = load_profile(user_id)
        if profile is None:
            return PreferenceProfile.empty(user_id)
        return profile

    def has_sufficient_data(self, user_id: int) -> bool:
        count = self._fetch(self.history.interaction_count, user_id)
        return count >= self.cfg.min_interactions_for_recommendations

    def is_reliable(self, profile: PreferenceProfile, now: datetime | None = None) -> bool:
        return (
            profile.total_interactions >= self.cfg.min_interactions_for_recommendations
            and effective_confidence(profile, self.cfg, now) >= self.cfg.min_confidence_threshold
        )

    def improvement_suggestions(self, profile: PreferenceProfile) -> list[str]:
        suggestions = []
        missing = self.cfg.min_interactions_for_recommendations - profile.total_interactions
        if missing > 0:
            suggestions.append(f"Add or rate {missing} more titles to unlock personalized recommendations")
        elif profile.total_interactions < self.cfg.min_interactions_for_high_confidence:
            suggestions.append("Keep rating what you watch to sharpen your recommendations")
        if profile.total_interactions and profile.average_rating is None:
            suggestions.append("Rate the titles you finish so we learn what you really enjoy")
        if profile.genre_weights and profile.diversity_score < NICHE_MAX_DIVERSITY:
            top = profile.top_genres(1)
            explore = self.cfg.similar_genres(top[0]) if top else []
            if explore:
                suggestions.append(f"Try something adjacent to {top[0]}, like {', '.join(explore[:2])}")
            else:
                suggestions.append("Try a genre you have not explored yet")
        if profile.total_interactions >= self.cfg.min_interactions_for_recommendations and profile.completion_rate < 0.5:
            suggestions.append("Finishing more of what you start helps us tell favorites from misses")
        return suggestions

    def recalculate_needing_update(self, threshold: float | None = None,
                                   now: datetime | None = None) -> dict[str, int]:
        """
        Recalculate every profile that is below the confidence threshold or
        older than the refresh interval.

        A user whose collaborators are unavailable is skipped and any other
        error is logged and counted; neither stops the pass.
        """
        now = now or datetime.now()
        threshold = self.cfg.min_confidence_threshold if threshold is None else threshold
        stale_before = now - timedelta(days=self.cfg.preference_refresh_interval_days)
        counts = {'refreshed': 0, 'skipped': 0, 'failed': 0}
        after = None
        while True:
            user_ids = profiles_needing_update(threshold, stale_before, self.cfg.default_batch_size, after)
            if not user_ids:
                break
            after = user_ids[-1]
            for user_id in user_ids:
                try:
                    self.calculate(user_id, now=now)
                    counts['refreshed'] += 1
                except UpstreamUnavailable as exc:
                    logger.warning(f"Skipping profile refresh for user {user_id}: {exc}")
                    counts['skipped'] += 1
                except Exception as exc:  # noqa: BLE001
                    logger.error(f"Error recalculating profile for user {user_id}: {exc}", exc_info=True)
                    counts['failed'] += 1
        return counts

    def cleanup_inactive(self, now: datetime | None = None) -> int:
        now = now or datetime.now()
        return delete_inactive_profiles(now - timedelta(days=self.cfg.inactive_profile_days))

    @staticmethod
    def personality_distribution() -> dict[ViewingPersonality, int]:
        return personality_distribution()
