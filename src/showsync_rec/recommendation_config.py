import hashlib
import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from . import config as defaults
from .models import RecommendationKind

logger = logging.getLogger(__name__)

_UNIT_INTERVAL_FIELDS = (
    "min_confidence_threshold",
    "min_similarity_score",
    "time_decay_factor",
    "temporal_min_weight",
    "personalization_balance",
    "diversity_factor",
    "exploration_factor",
    "feedback_learning_rate",
    "min_relevance_score",
)

_POSITIVE_INT_FIELDS = (
    "min_interactions_for_recommendations",
    "min_interactions_for_high_confidence",
    "content_expiry_days",
    "group_expiry_days",
    "preference_refresh_interval_days",
    "max_recommendations_per_user",
    "page_size",
    "default_batch_size",
    "collaborative_user_count",
    "decay_period_days",
    "recent_window_days",
    "max_same_type_recommendations",
    "active_users_hours_back",
    "expired_retention_days",
    "presence_stale_minutes",
    "inactive_profile_days",
)


@dataclass
class RecommendationConfig:
    """
    Tuning surface for profile calculation, scoring, lifecycle and scheduling.

    Built once at process start. Invariants are validated eagerly in
    __post_init__ so a bad deployment fails at startup instead of at the
    first scoring call.
    """

    # Scoring weights per dimension; shared by ranking and compatibility
    weights: dict[str, float] = field(default_factory=lambda: dict(defaults.WEIGHTS))

    # Thresholds
    min_confidence_threshold: float = defaults.MIN_CONFIDENCE_THRESHOLD
    min_interactions_for_recommendations: int = defaults.MIN_INTERACTIONS_FOR_RECOMMENDATIONS
    min_interactions_for_high_confidence: int = defaults.MIN_INTERACTIONS_FOR_HIGH_CONFIDENCE

    # Expiry per recommendation kind (days)
    content_expiry_days: int = defaults.CONTENT_RECOMMENDATION_EXPIRY_DAYS
    group_expiry_days: int = defaults.GROUP_RECOMMENDATION_EXPIRY_DAYS
    preference_refresh_interval_days: int = defaults.PREFERENCE_REFRESH_INTERVAL_DAYS

    # Volume
    max_recommendations_per_user: int = defaults.MAX_RECOMMENDATIONS_PER_USER
    page_size: int = defaults.PAGE_SIZE
    default_batch_size: int = defaults.DEFAULT_BATCH_SIZE

    # Collaborative filtering
    collaborative_user_count: int = defaults.COLLABORATIVE_USER_COUNT
    min_similarity_score: float = defaults.MIN_SIMILARITY_SCORE

    # Temporal weighting
    time_decay_factor: float = defaults.TIME_DECAY_FACTOR
    decay_period_days: int = defaults.DECAY_PERIOD_DAYS
    temporal_min_weight: float = defaults.TEMPORAL_MIN_WEIGHT
    recent_view_boost: float = defaults.RECENT_VIEW_BOOST
    recent_window_days: int = defaults.RECENT_WINDOW_DAYS

    # Balance factors
    personalization_balance: float = defaults.PERSONALIZATION_BALANCE
    diversity_factor: float = defaults.DIVERSITY_FACTOR
    exploration_factor: float = defaults.EXPLORATION_FACTOR

    # Feedback learning
    positive_feedback_weight: float = defaults.POSITIVE_FEEDBACK_WEIGHT
    negative_feedback_weight: float = defaults.NEGATIVE_FEEDBACK_WEIGHT
    feedback_learning_rate: float = defaults.FEEDBACK_LEARNING_RATE

    # Ranking
    min_relevance_score: float = defaults.MIN_RELEVANCE_SCORE
    max_same_type_recommendations: int = defaults.MAX_SAME_TYPE_RECOMMENDATIONS
    filter_seen_content: bool = defaults.FILTER_SEEN_CONTENT

    # Scheduler
    enable_schedulers: bool = defaults.ENABLE_SCHEDULERS
    daily_generation_cron: str = defaults.DAILY_GENERATION_CRON
    active_users_refresh_cron: str = defaults.ACTIVE_USERS_REFRESH_CRON
    cleanup_cron: str = defaults.CLEANUP_CRON
    active_users_hours_back: int = defaults.ACTIVE_USERS_HOURS_BACK
    collaborator_timeout_seconds: float = defaults.COLLABORATOR_TIMEOUT_SECONDS

    # Cleanup
    expired_retention_days: int = defaults.EXPIRED_RETENTION_DAYS
    presence_stale_minutes: int = defaults.PRESENCE_STALE_MINUTES
    inactive_profile_days: int = defaults.INACTIVE_PROFILE_DAYS

    genre_similarities: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in defaults.GENRE_SIMILARITIES.items()}
    )
    platform_priorities: dict[str, float] = field(default_factory=lambda: dict(defaults.PLATFORM_PRIORITIES))
    default_platform_priority: float = defaults.DEFAULT_PLATFORM_PRIORITY
    features: dict[str, bool] = field(default_factory=lambda: dict(defaults.FEATURE_FLAGS))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        self._validate_weights()
        for name in _UNIT_INTERVAL_FIELDS:
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        for name in _POSITIVE_INT_FIELDS:
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.min_interactions_for_high_confidence < self.min_interactions_for_recommendations:
            raise ValueError("min_interactions_for_high_confidence must be >= min_interactions_for_recommendations")
        if self.recent_view_boost < 1.0:
            raise ValueError("recent_view_boost must be >= 1.0")
        if self.positive_feedback_weight < 0:
            raise ValueError("positive_feedback_weight must be non-negative")
        if self.negative_feedback_weight > 0:
            raise ValueError("negative_feedback_weight must be non-positive")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("collaborator_timeout_seconds must be positive")
        if any(v < 0 for v in self.platform_priorities.values()) or self.default_platform_priority < 0:
            raise ValueError("platform priorities must be non-negative")
        for name in ("daily_generation_cron", "active_users_refresh_cron", "cleanup_cron"):
            expression = getattr(self, name)
            try:
                CronTrigger.from_crontab(expression)
            except ValueError as exc:
                raise ValueError(f"{name} is not a valid crontab expression: {expression!r}") from exc

    def _validate_weights(self) -> None:
        if not isinstance(self.weights, dict):
            raise ValueError("weights must be a dict of dimension weights")
        missing = {"genre", "rating", "platform", "era"} - set(self.weights)
        if missing:
            raise ValueError(f"weights missing dimensions: {sorted(missing)}")
        if any(v < 0 for v in self.weights.values()):
            raise ValueError("weights must be non-negative")
        total = sum(self.weights.values())
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"weights must sum to 1.0, got {total:.4f}")

    # Lookups -----------------------------------------------------------
    def expiry_days_for(self, kind: RecommendationKind) -> int:
        if kind is RecommendationKind.GROUP:
            return self.group_expiry_days
        return self.content_expiry_days

    def similar_genres(self, genre: str) -> list[str]:
        return list(self.genre_similarities.get(genre, []))

    def platform_priority(self, platform: str | None) -> float:
        if not platform:
            return self.default_platform_priority
        return self.platform_priorities.get(platform, self.default_platform_priority)

    def is_feature_enabled(self, name: str) -> bool:
        return bool(self.features.get(name, False))

    def fingerprint(self) -> str:
        blob = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha1(blob.encode("utf-8")).hexdigest()[:12]


def load_config(path: Path | str | None = None, **overrides: Any) -> RecommendationConfig:
    """
    Build the process-wide configuration.

    Values come from the dataclass defaults, then the optional JSON file
    (``SHOWSYNC_CONFIG`` when ``path`` is omitted), then keyword overrides.
    Unknown keys in the file are ignored with a warning.
    """
    path = Path(path) if path else defaults.CONFIG_PATH
    values: dict[str, Any] = {}
    if path:
        if not path.exists():
            raise ValueError(f"Config file not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        known = {f.name for f in fields(RecommendationConfig)}
        for key, value in data.items():
            if key in known:
                values[key] = value
            else:
                logger.warning(f"Ignoring unknown config key '{key}' in {path}")
    values.update(overrides)
    cfg = RecommendationConfig(**values)
    logger.debug(f"Loaded recommendation config {cfg.fingerprint()}")
    return cfg
