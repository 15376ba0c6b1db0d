"""
Configuration constants for the ShowSync recommendation engine.

This module centralizes paths, timeouts and the defaults that seed
RecommendationConfig. Values can be overridden via environment variables;
scoring tunables can additionally be overridden from a JSON file.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Database Configuration
DB_PATH = Path(os.environ.get("SHOWSYNC_DB", "data/showsync.db"))
PROFILE_SCHEMA_VERSION = 2
DB_CHUNK_SIZE = 500  # SQLite variable limit headroom for IN (...) queries
IMPORT_CHUNK_SIZE = 1000

# Optional JSON file overriding RecommendationConfig defaults
CONFIG_PATH = Path(os.environ["SHOWSYNC_CONFIG"]) if os.environ.get("SHOWSYNC_CONFIG") else None

# Logging
LOG_LEVEL = os.environ.get("SHOWSYNC_LOG_LEVEL", "INFO").upper()

# HTTP collaborators
HTTP_TIMEOUT = _get_float_env("SHOWSYNC_HTTP_TIMEOUT", 10.0, min_val=0.5)
CATALOG_API_URL = os.environ.get("SHOWSYNC_CATALOG_URL")
NOTIFICATION_WEBHOOK_URL = os.environ.get("SHOWSYNC_NOTIFY_WEBHOOK")
COLLABORATOR_TIMEOUT_SECONDS = _get_float_env("SHOWSYNC_COLLABORATOR_TIMEOUT", 10.0, min_val=0.1)
COLLABORATOR_MAX_WORKERS = _get_int_env("SHOWSYNC_COLLABORATOR_WORKERS", 4, min_val=1)

# Rating scale (stars, half steps allowed)
RATING_MIN = 1.0
RATING_MAX = 5.0
RATING_MIDPOINT = 3.0
FEEDBACK_POSITIVE_MIN = 4
FEEDBACK_NEGATIVE_MAX = 2

# Scoring weights per dimension (must sum to 1.0)
WEIGHTS = {
    'genre': 0.4,
    'rating': 0.3,
    'platform': 0.2,
    'era': 0.1,
}

# Thresholds
MIN_CONFIDENCE_THRESHOLD = 0.5
MIN_INTERACTIONS_FOR_RECOMMENDATIONS = 5
MIN_INTERACTIONS_FOR_HIGH_CONFIDENCE = 20

# Expiry and refresh (days)
CONTENT_RECOMMENDATION_EXPIRY_DAYS = 14
GROUP_RECOMMENDATION_EXPIRY_DAYS = 7
PREFERENCE_REFRESH_INTERVAL_DAYS = 7
EXPIRING_SOON_HOURS = 48

# Volume
MAX_RECOMMENDATIONS_PER_USER = 20
PAGE_SIZE = 20
DEFAULT_BATCH_SIZE = _get_int_env("SHOWSYNC_BATCH_SIZE", 100, min_val=1)

# Collaborative filtering
COLLABORATIVE_USER_COUNT = 50
MIN_SIMILARITY_SCORE = 0.3

# Temporal weighting
TIME_DECAY_FACTOR = 0.95        # Multiplier applied once per decay period
DECAY_PERIOD_DAYS = 30
TEMPORAL_MIN_WEIGHT = 0.1       # Floor so very old interactions still count a little
RECENT_VIEW_BOOST = 1.2
RECENT_WINDOW_DAYS = 7
CONFIDENCE_RECENCY_FLOOR = 0.5  # Stale data halves confidence at most

# Balance factors
PERSONALIZATION_BALANCE = 0.7
DIVERSITY_FACTOR = 0.3
EXPLORATION_FACTOR = 0.2

# Feedback learning
POSITIVE_FEEDBACK_WEIGHT = 1.0
NEGATIVE_FEEDBACK_WEIGHT = -0.8
FEEDBACK_LEARNING_RATE = 0.1

# Interaction signals (rating-less interactions)
SIGNAL_FAVORITE_NO_RATING = 0.75
SIGNAL_COMPLETED_NO_RATING = 0.4
SIGNAL_STARTED_ONLY = 0.1
SIGNAL_FAVORITE_BONUS = 0.25
RELATIVE_RATING_MIN_COUNT = 5   # Ratings needed before relative weighting fully applies
RELATIVE_RATING_BLEND = 0.5     # Share of relative (z-score) signal once fully applied

# Personality policy thresholds
BINGE_COMPLETION_RATE = 0.8
BINGE_INTERACTIONS_PER_WEEK = 5.0
EXPLORER_DIVERSITY = 0.8
EXPLORER_MIN_GENRES = 5
CRITIC_RATING_STD = 1.2
CRITIC_MIN_RATINGS = 5
COMFORT_FAVORITE_RATIO = 0.5
COMFORT_MAX_DIVERSITY = 0.5
COMPLETIONIST_RATE = 0.9
SAMPLER_RATE = 0.3
NICHE_MAX_DIVERSITY = 0.3

# Ranking
MIN_RELEVANCE_SCORE = 0.3
MAX_SAME_TYPE_RECOMMENDATIONS = 5
FILTER_SEEN_CONTENT = True
CANDIDATE_POOL_SIZE = 200
TRENDING_WINDOW_DAYS = 14
HIGHLY_RATED_THRESHOLD = 4.3
CONVERSION_LOOKBACK_DAYS = 30

# Scheduler (5-field crontab expressions)
ENABLE_SCHEDULERS = _get_bool_env("SHOWSYNC_ENABLE_SCHEDULERS", True)
DAILY_GENERATION_CRON = os.environ.get("SHOWSYNC_DAILY_CRON", "15 3 * * *")
ACTIVE_USERS_REFRESH_CRON = os.environ.get("SHOWSYNC_ACTIVE_CRON", "10 * * * *")
CLEANUP_CRON = os.environ.get("SHOWSYNC_CLEANUP_CRON", "30 4 * * *")
ACTIVE_USERS_HOURS_BACK = _get_int_env("SHOWSYNC_ACTIVE_HOURS_BACK", 24, min_val=1)
USER_LOCK_TIMEOUT_SECONDS = 30.0

# Cleanup
EXPIRED_RETENTION_DAYS = 7
PRESENCE_STALE_MINUTES = 30
INACTIVE_PROFILE_DAYS = 365

# Genre affinity map used for cross-genre exploration
GENRE_SIMILARITIES = {
    'Action': ['Adventure', 'Thriller', 'Crime'],
    'Drama': ['Romance', 'Biography', 'History'],
    'Comedy': ['Family', 'Animation', 'Musical'],
    'Horror': ['Thriller', 'Mystery', 'Supernatural'],
    'Sci-Fi': ['Fantasy', 'Adventure', 'Thriller'],
}

# Platform priorities
PLATFORM_PRIORITIES = {
    'Netflix': 1.0,
    'Disney+': 0.9,
    'HBO Max': 0.9,
    'Amazon Prime': 0.8,
    'Hulu': 0.7,
    'Apple TV+': 0.6,
}
DEFAULT_PLATFORM_PRIORITY = 0.5

# Feature flags
FEATURE_FLAGS = {
    'collaborative_filtering': True,
    'trending': True,
    'group_recommendations': True,
    'explanations': True,
    'real_time': True,
}
