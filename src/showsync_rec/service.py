"""
Service-level facade over the recommendation engine.

Online reads come from persisted rows written by batch sweeps; only
get_trending_recommendations and get_real_time_recommendations score on
the request path.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .collaborators import (
    Catalog,
    GroupDirectory,
    InteractionHistory,
    SqliteCatalog,
    SqliteGroupDirectory,
    SqliteInteractionHistory,
)
from .compatibility import CompatibilityEngine
from .database import recent_sweep_runs
from .errors import InvalidArgument, NotFound
from .lifecycle import FeedbackManager
from .models import (
    ActionTaken,
    Candidate,
    FeedbackRecord,
    Recommendation,
    RecommendationKind,
    ViewingPersonality,
)
from .profile import PreferenceCalculator, effective_confidence
from .recommendation_config import RecommendationConfig, load_config
from .recommendation_store import RecommendationStore, SaveResult
from .recommender import RecommendationGenerator
from .scheduler import BatchScheduler
from .utils import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class UserPreferences:
    user_id: int
    top_genres: list[str]
    top_platforms: list[str]
    top_eras: list[str]
    viewing_personality: ViewingPersonality
    personality_description: str
    confidence_score: float
    is_reliable: bool
    total_interactions: int
    average_rating: float | None
    completion_rate: float
    diversity_score: float
    last_calculated_at: datetime | None


def _top_keys(weights: dict[str, float], n: int = 3) -> list[str]:
    ranked = sorted(weights.items(), key=lambda kv: (-kv[1], kv[0]))
    return [key for key, weight in ranked[:n] if weight > 0]


class RecommendationService:
    def __init__(
        self,
        cfg: RecommendationConfig | None = None,
        history: InteractionHistory | None = None,
        catalog: Catalog | None = None,
        directory: GroupDirectory | None = None,
    ):
        self.cfg = cfg or load_config()
        self.history = history or SqliteInteractionHistory()
        self.catalog = catalog or SqliteCatalog()
        self.directory = directory or SqliteGroupDirectory()

        self.store = RecommendationStore(self.cfg.max_recommendations_per_user)
        self.calculator = PreferenceCalculator(self.history, self.catalog, self.cfg, store=self.store)
        self.compatibility = CompatibilityEngine(self.cfg)
        self.generator = RecommendationGenerator(
            self.history, self.catalog, self.directory, self.calculator,
            self.compatibility, self.store, self.cfg,
        )
        self.feedback = FeedbackManager(self.store)

    def _page(self, page: int) -> tuple[int, int]:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise InvalidArgument(f"page must be a positive integer, got {page!r}")
        return (page - 1) * self.cfg.page_size, self.cfg.page_size

    # Reads --------------------------------------------------------------
    def get_personal_recommendations(self, user_id: int, page: int = 1,
                                     now: datetime | None = None) -> list[Recommendation]:
        offset, limit = self._page(page)
        return self.store.list_active(user_id, RecommendationKind.CONTENT, now=now, offset=offset, limit=limit)

    def get_trending_recommendations(self, user_id: int, limit: int = 10,
                                     now: datetime | None = None) -> list[Candidate]:
        if limit < 1:
            raise InvalidArgument(f"limit must be positive, got {limit}")
        return self.generator.trending(limit, user_id=user_id, now=now)

    def get_group_recommendations(self, user_id: int, page: int = 1,
                                  now: datetime | None = None) -> list[Recommendation]:
        offset, limit = self._page(page)
        return self.store.list_active(user_id, RecommendationKind.GROUP, now=now, offset=offset, limit=limit)

    def get_group_content_recommendations(self, user_id: int, group_id: int, page: int = 1,
                                          now: datetime | None = None) -> list[Recommendation]:
        offset, limit = self._page(page)
        group = call_with_timeout(self.directory.group, group_id, timeout=self.cfg.collaborator_timeout_seconds)
        if group is None or user_id not in group.member_ids:
            raise NotFound(f"user {user_id} has no recommendations in group {group_id}")
        return self.store.list_active(
            user_id, RecommendationKind.CONTENT, now=now, group_id=group_id, offset=offset, limit=limit,
        )

    def get_real_time_recommendations(self, user_id: int, context_media_id: int | None = None,
                                      limit: int = 10, now: datetime | None = None) -> list[Candidate]:
        if not self.cfg.is_feature_enabled("real_time"):
            return self.generator.trending(limit, user_id=user_id, now=now)
        return self.generator.real_time(user_id, context_media_id, limit=limit, now=now)

    # Lifecycle ----------------------------------------------------------
    def mark_viewed(self, user_id: int, kind, recommendation_id: int,
                    now: datetime | None = None) -> Recommendation:
        return self.feedback.mark_viewed(user_id, kind, recommendation_id, now=now)

    def dismiss(self, user_id: int, kind, recommendation_id: int, reason: str | None = None,
                now: datetime | None = None) -> Recommendation:
        return self.feedback.dismiss(user_id, kind, recommendation_id, reason=reason, now=now)

    def record_positive_feedback(self, user_id: int, kind, recommendation_id: int,
                                 action: ActionTaken | str | None = None,
                                 now: datetime | None = None) -> Recommendation:
        return self.feedback.record_positive_feedback(user_id, kind, recommendation_id, action=action, now=now)

    def submit_feedback(self, user_id: int, kind, recommendation_id: int, rating: int,
                        text: str | None = None, now: datetime | None = None) -> FeedbackRecord:
        return self.feedback.submit_feedback(user_id, kind, recommendation_id, rating, text=text, now=now)

    # Profiles -----------------------------------------------------------
    def get_user_preferences(self, user_id: int, now: datetime | None = None) -> UserPreferences:
        """Summary of the stored profile; users without one get the zero-confidence default."""
        profile = self.calculator.get_profile(user_id)
        return UserPreferences(
            user_id=user_id,
            top_genres=profile.top_genres(3),
            top_platforms=_top_keys(profile.platform_weights),
            top_eras=_top_keys(profile.era_weights),
            viewing_personality=profile.viewing_personality,
            personality_description=profile.viewing_personality.description,
            confidence_score=effective_confidence(profile, self.cfg, now),
            is_reliable=self.calculator.is_reliable(profile, now),
            total_interactions=profile.total_interactions,
            average_rating=profile.average_rating,
            completion_rate=profile.completion_rate,
            diversity_score=profile.diversity_score,
            last_calculated_at=profile.last_calculated_at,
        )

    def calculate_compatibility(self, user_id_a: int, user_id_b: int) -> dict[str, float | str]:
        a = self.calculator.get_profile(user_id_a)
        b = self.calculator.get_profile(user_id_b)
        return self.compatibility.breakdown(a, b)

    def find_similar_users(self, user_id: int, limit: int | None = None) -> list[tuple[int, float]]:
        profile = self.calculator.get_profile(user_id)
        if profile.total_interactions == 0:
            return []
        return self.compatibility.find_similar_users(profile, limit=limit)

    def get_profile_improvement_suggestions(self, user_id: int) -> list[str]:
        return self.calculator.improvement_suggestions(self.calculator.get_profile(user_id))

    # Generation and reporting -------------------------------------------
    def generate_recommendations_for_user(self, user_id: int, now: datetime | None = None) -> SaveResult:
        """Recalculate the profile, then regenerate and persist the user's recommendations."""
        self.calculator.calculate(user_id, now=now)
        result = self.generator.generate_for_user(user_id, now=now)
        logger.info(f"User {user_id}: {result.created} new, {result.extended} extended recommendations")
        return result

    def get_recommendation_analytics(self, days: int = 30, now: datetime | None = None) -> dict:
        now = now or datetime.now()
        since = now - timedelta(days=days)
        summary = self.store.analytics(since)
        summary['conversion_by_reason'] = {
            reason.value: rate for reason, rate in self.store.conversion_rates(since).items()
        }
        summary['personalities'] = {
            personality.value: count for personality, count in self.calculator.personality_distribution().items()
        }
        summary['recent_sweeps'] = recent_sweep_runs(5)
        return summary

    def build_scheduler(self) -> BatchScheduler:
        return BatchScheduler(self.history, self.calculator, self.generator, self.store, self.cfg)

    def close(self) -> None:
        close = getattr(self.catalog, "close", None)
        if close is not None:
            close()
