"""
Compatibility scoring between preference profiles.

The score is a weighted blend of per-dimension cosine similarity
(genre, platform, era) and rating-pattern alignment, using the same
dimension weights as ranking. Every component is symmetric in its two
arguments, so compatibility(a, b) == compatibility(b, a).
"""

from __future__ import annotations

import logging
import math
from collections import Counter

import numpy as np

from .config import RATING_MAX, RATING_MIN
from .database import load_confident_profiles, load_profiles_batch
from .models import GroupInfo, PreferenceProfile, ViewingPersonality
from .recommendation_config import RecommendationConfig

logger = logging.getLogger(__name__)

_DIMENSIONS = ("genre", "platform", "era")

# How well a personality pairs with a different one; identical personalities score 1.0
_PERSONALITY_AFFINITY = {
    ViewingPersonality.BINGE_WATCHER: 0.6,
    ViewingPersonality.EXPLORER: 0.7,
    ViewingPersonality.CRITIC: 0.5,
    ViewingPersonality.CASUAL: 0.8,
    ViewingPersonality.SOCIAL: 0.8,
}
_DEFAULT_AFFINITY = 0.6


def _weights_for(profile: PreferenceProfile, dimension: str) -> dict[str, float]:
    return getattr(profile, f"{dimension}_weights")


def cosine_similarity(a: dict[str, float], b: dict[str, float]) -> float:
    """Cosine over the union of keys (missing = 0), clipped to [0, 1]."""
    keys = sorted(set(a) | set(b))
    if not keys:
        return 0.0
    va = np.array([a.get(k, 0.0) for k in keys], dtype=float)
    vb = np.array([b.get(k, 0.0) for k in keys], dtype=float)
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, 0.0, 1.0))


def rating_alignment(a: PreferenceProfile, b: PreferenceProfile) -> float:
    """
    Closeness of average rating and rating spread. 0.5 (neutral) when
    either user has never rated anything.
    """
    if a.average_rating is None or b.average_rating is None:
        return 0.5
    scale = RATING_MAX - RATING_MIN
    mean_part = 1.0 - abs(a.average_rating - b.average_rating) / scale
    spread_gap = abs(math.sqrt(max(a.rating_variance, 0.0)) - math.sqrt(max(b.rating_variance, 0.0)))
    spread_part = 1.0 - spread_gap / (scale / 2)
    return max(0.0, min(1.0, 0.7 * mean_part + 0.3 * max(0.0, spread_part)))


def personality_compatibility(a: ViewingPersonality, b: ViewingPersonality) -> float:
    if a is b:
        return 1.0
    return (_PERSONALITY_AFFINITY.get(a, _DEFAULT_AFFINITY) + _PERSONALITY_AFFINITY.get(b, _DEFAULT_AFFINITY)) / 2


def compatibility_label(score: float) -> str:
    if score >= 0.8:
        return "Excellent match"
    if score >= 0.6:
        return "Great match"
    if score >= 0.4:
        return "Good match"
    return "Some overlap"


def aggregate_profiles(profiles: list[PreferenceProfile], owner_id: int = 0) -> PreferenceProfile:
    """
    Synthesize one profile from several, weighting each member by its own
    confidence score. If every member has zero confidence they count equally.
    """
    if not profiles:
        return PreferenceProfile.empty(owner_id)

    confidences = np.array([p.confidence_score for p in profiles], dtype=float)
    member_weights = confidences if confidences.sum() > 0 else np.ones(len(profiles))
    member_weights = member_weights / member_weights.sum()

    merged: dict[str, dict[str, float]] = {}
    for dimension in _DIMENSIONS:
        keys = sorted({k for p in profiles for k in _weights_for(p, dimension)})
        if not keys:
            merged[dimension] = {}
            continue
        matrix = np.array([[_weights_for(p, dimension).get(k, 0.0) for k in keys] for p in profiles])
        combined = member_weights @ matrix
        merged[dimension] = {k: round(float(v), 6) for k, v in zip(keys, combined)}

    rated = [(p, w) for p, w in zip(profiles, member_weights) if p.average_rating is not None]
    if rated:
        total_w = sum(w for _, w in rated) or 1.0
        avg_rating = sum(p.average_rating * w for p, w in rated) / total_w
        variance = sum(p.rating_variance * w for p, w in rated) / total_w
    else:
        avg_rating, variance = None, 0.0

    total = sum(p.total_interactions for p in profiles)
    completed = sum(p.total_completed for p in profiles)
    personality = Counter(p.viewing_personality for p in profiles).most_common(1)[0][0]
    return PreferenceProfile(
        user_id=owner_id,
        genre_weights=merged["genre"],
        platform_weights=merged["platform"],
        era_weights=merged["era"],
        average_rating=avg_rating,
        rating_variance=variance,
        total_interactions=total,
        total_completed=completed,
        completion_rate=completed / total if total else 0.0,
        viewing_personality=personality,
        confidence_score=float(confidences.mean()),
        diversity_score=float(np.mean([p.diversity_score for p in profiles])),
        last_calculated_at=max((p.last_calculated_at for p in profiles if p.last_calculated_at), default=None),
    )


class CompatibilityEngine:
    def __init__(self, cfg: RecommendationConfig):
        self.cfg = cfg

    def breakdown(self, a: PreferenceProfile, b: PreferenceProfile) -> dict[str, float | str]:
        """Per-dimension similarities plus the weighted overall score and its label."""
        parts: dict[str, float] = {}
        active_weights: dict[str, float] = {}
        for dimension in _DIMENSIONS:
            wa, wb = _weights_for(a, dimension), _weights_for(b, dimension)
            if not wa and not wb:
                continue
            parts[dimension] = cosine_similarity(wa, wb)
            active_weights[dimension] = self.cfg.weights[dimension]
        parts["rating"] = rating_alignment(a, b)
        active_weights["rating"] = self.cfg.weights["rating"]

        # Dimensions neither profile has data for are left out and the rest re-weighted
        total_weight = sum(active_weights.values())
        if total_weight <= 0:
            overall = 0.0
        else:
            overall = sum(parts[d] * w for d, w in active_weights.items()) / total_weight
        overall = round(max(0.0, min(1.0, overall)), 6)

        result: dict[str, float | str] = dict(parts)
        result["personality"] = personality_compatibility(a.viewing_personality, b.viewing_personality)
        result["overall"] = overall
        result["label"] = compatibility_label(overall)
        return result

    def compatibility(self, a: PreferenceProfile, b: PreferenceProfile) -> float:
        return float(self.breakdown(a, b)["overall"])

    def group_profile(self, group: GroupInfo, exclude_user_id: int | None = None) -> PreferenceProfile:
        members = [uid for uid in group.member_ids if uid != exclude_user_id]
        profiles = list(load_profiles_batch(members).values())
        return aggregate_profiles(profiles, owner_id=-group.group_id)

    def group_compatibility(self, user_profile: PreferenceProfile, group: GroupInfo) -> float:
        """Compatibility with the confidence-weighted aggregate of the other active members."""
        aggregate = self.group_profile(group, exclude_user_id=user_profile.user_id)
        if aggregate.total_interactions == 0:
            return 0.0
        return self.compatibility(user_profile, aggregate)

    def find_similar_users(self, profile: PreferenceProfile, limit: int | None = None) -> list[tuple[int, float]]:
        """
        Most compatible confident users, best first, at or above min_similarity_score.
        """
        limit = limit or self.cfg.collaborative_user_count
        candidates = load_confident_profiles(
            self.cfg.min_confidence_threshold,
            exclude_user_id=profile.user_id,
            limit=self.cfg.collaborative_user_count * 4,
        )
        scored = []
        for other in candidates:
            score = self.compatibility(profile, other)
            if score >= self.cfg.min_similarity_score:
                scored.append((other.user_id, score))
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        logger.debug(f"User {profile.user_id}: {len(scored)} similar users out of {len(candidates)} candidates")
        return scored[:limit]
