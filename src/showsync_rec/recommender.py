"""
Recommendation generation: candidate sourcing, scoring, ranking and
explanation rendering.

Online callers read persisted rows (see service.py); this module computes
them during batch sweeps. real_time() is the only entry point that scores
ad hoc without persisting anything.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta

from .compatibility import CompatibilityEngine, aggregate_profiles
from .config import (
    CANDIDATE_POOL_SIZE,
    CONVERSION_LOOKBACK_DAYS,
    HIGHLY_RATED_THRESHOLD,
    RATING_MAX,
    RATING_MIN,
    TRENDING_WINDOW_DAYS,
)
from .database import load_profiles_batch
from .errors import NotFound
from .models import (
    Candidate,
    Interaction,
    MediaMetadata,
    PreferenceProfile,
    ReasonCode,
    RecommendationKind,
)
from .profile import PreferenceCalculator, determine_era
from .recommendation_config import RecommendationConfig
from .recommendation_store import RecommendationStore, SaveResult
from .utils import call_with_timeout

logger = logging.getLogger(__name__)

FALLBACK_EXPLANATION = "We think you might enjoy this"

_TEMPLATES = {
    ReasonCode.GENRE_MATCH: "Based on your love for {}",
    ReasonCode.SIMILAR_CONTENT: "Because you enjoyed {}",
    ReasonCode.GROUP_ACTIVITY: "Popular in {}",
    ReasonCode.SIMILAR_USERS: "Users who liked {} also enjoyed this",
    ReasonCode.TRENDING_GENRE: "Trending in {}",
    ReasonCode.GENRE_COMPATIBILITY: "Members of {} share your taste",
}

SIMILAR_CONTENT_SOURCES = 3
SIMILAR_CONTENT_MIN_OVERLAP = 0.5
COLLABORATIVE_NEIGHBORS = 10
COLLABORATIVE_MIN_SUPPORT = 3   # Neighbors needed before collaborative support counts fully


def render_explanation(reason: ReasonCode, context_name: str | None = None) -> str:
    """Deterministic text for a reason code, naming the source entity when known."""
    template = _TEMPLATES.get(reason)
    if template and context_name:
        return template.format(context_name)
    if reason is ReasonCode.GENERAL:
        return FALLBACK_EXPLANATION
    return reason.description


def _confidence_weight(count: int, min_for_full_confidence: int) -> float:
    """sqrt ramp from 0 to 1, reaching 1.0 at min_for_full_confidence observations."""
    if count >= min_for_full_confidence:
        return 1.0
    return (count / min_for_full_confidence) ** 0.5


def _is_liked(interaction: Interaction) -> bool:
    if interaction.rating is not None:
        return interaction.rating >= 4.0
    return interaction.favorite


def score_media(media: MediaMetadata, profile: PreferenceProfile, cfg: RecommendationConfig) -> tuple[float, dict[str, float]]:
    """
    Weighted match of one media item against a profile, in [0, 1].

    Dimensions the profile has no data for score a neutral 0.5 so a user
    without platform history is not penalized for it.
    """
    if media.genres and profile.genre_weights:
        matched = [profile.genre_weights.get(g, 0.0) for g in media.genres]
        genre = 0.6 * max(matched) + 0.4 * (sum(matched) / len(matched))
    elif media.genres:
        genre = 0.5
    else:
        genre = 0.0

    if not profile.platform_weights:
        platform = 0.5
    else:
        platform = profile.platform_weights.get(media.platform, 0.0) if media.platform else 0.0

    era_label = determine_era(media.release_year)
    if not profile.era_weights:
        era = 0.5
    else:
        era = profile.era_weights.get(era_label, 0.0) if era_label else 0.0

    scale = RATING_MAX - RATING_MIN
    if media.average_rating is None:
        rating = 0.5
    else:
        quality = max(0.0, min(1.0, (media.average_rating - RATING_MIN) / scale))
        if profile.average_rating is None:
            rating = quality
        else:
            closeness = 1.0 - abs(media.average_rating - profile.average_rating) / scale
            rating = 0.5 * quality + 0.5 * closeness

    components = {"genre": genre, "platform": platform, "era": era, "rating": rating}
    score = sum(cfg.weights[d] * v for d, v in components.items())
    return max(0.0, min(1.0, score)), components


def _best_genre(media: MediaMetadata, profile: PreferenceProfile) -> str | None:
    liked = [(profile.genre_weights.get(g, 0.0), g) for g in media.genres]
    liked = [pair for pair in liked if pair[0] > 0]
    if not liked:
        return None
    return max(liked, key=lambda pair: (pair[0], pair[1]))[1]


def rank_candidates(
    candidates: list[Candidate],
    limit: int,
    cfg: RecommendationConfig,
    conversion_rates: dict[ReasonCode, float] | None = None,
    seen: set[int] | None = None,
) -> list[Candidate]:
    """
    Apply the ranking policy:

    - keep the best-scoring candidate per (kind, candidate, group)
    - drop content the user already consumed when filter_seen_content is on
    - drop anything below min_relevance_score
    - order by score, then the reason code's historical conversion rate,
      then recency of the source signal
    - keep at most max_same_type_recommendations per reason code
    """
    conversion_rates = conversion_rates or {}
    best: dict[tuple, Candidate] = {}
    for candidate in candidates:
        current = best.get(candidate.key)
        if current is None or candidate.score > current.score:
            best[candidate.key] = candidate

    kept = []
    for candidate in best.values():
        if cfg.filter_seen_content and seen and candidate.kind is RecommendationKind.CONTENT \
                and candidate.candidate_id in seen:
            continue
        if candidate.score < cfg.min_relevance_score:
            continue
        kept.append(candidate)

    def _sort_key(c: Candidate):
        recency = c.signal_at.timestamp() if c.signal_at else -math.inf
        return (-round(c.score, 6), -conversion_rates.get(c.reason, 0.0), -recency, c.candidate_id)

    kept.sort(key=_sort_key)

    per_reason: dict[ReasonCode, int] = defaultdict(int)
    ranked = []
    for candidate in kept:
        if per_reason[candidate.reason] >= cfg.max_same_type_recommendations:
            continue
        per_reason[candidate.reason] += 1
        ranked.append(candidate)
        if len(ranked) >= limit:
            break
    return ranked


class RecommendationGenerator:
    def __init__(
        self,
        history,
        catalog,
        directory,
        calculator: PreferenceCalculator,
        compatibility: CompatibilityEngine,
        store: RecommendationStore,
        cfg: RecommendationConfig,
    ):
        self.history = history
        self.catalog = catalog
        self.directory = directory
        self.calculator = calculator
        self.compatibility = compatibility
        self.store = store
        self.cfg = cfg

    def _fetch(self, func, *args):
        return call_with_timeout(func, *args, timeout=self.cfg.collaborator_timeout_seconds)

    def _explain(self, reason: ReasonCode, context_name: str | None = None) -> str:
        if not self.cfg.is_feature_enabled("explanations"):
            return FALLBACK_EXPLANATION
        return render_explanation(reason, context_name)

    def _conversion_rates(self, now: datetime) -> dict[ReasonCode, float]:
        return self.store.conversion_rates(now - timedelta(days=CONVERSION_LOOKBACK_DAYS))

    def _content_candidate(self, media: MediaMetadata, score: float, reason: ReasonCode,
                           context_name: str | None = None, **extra) -> Candidate:
        return Candidate(
            kind=RecommendationKind.CONTENT,
            candidate_id=media.media_id,
            score=score,
            reason=reason,
            explanation=self._explain(reason, context_name),
            title=media.title,
            genres=list(media.genres),
            **extra,
        )

    # Candidate sources ----------------------------------------------------
    def _genre_candidates(self, profile: PreferenceProfile, limit: int) -> list[Candidate]:
        top = profile.top_genres(5)
        if not top:
            return []
        candidates = []
        for media in self._fetch(self.catalog.media_by_genres, top, CANDIDATE_POOL_SIZE):
            score, parts = score_media(media, profile, self.cfg)
            genre_name = _best_genre(media, profile)
            if genre_name and parts["genre"] * self.cfg.weights["genre"] >= parts["rating"] * self.cfg.weights["rating"]:
                candidates.append(self._content_candidate(media, score, ReasonCode.GENRE_MATCH, genre_name))
            elif media.average_rating is not None and media.average_rating >= HIGHLY_RATED_THRESHOLD:
                candidates.append(self._content_candidate(media, score, ReasonCode.HIGHLY_RATED))
            else:
                candidates.append(self._content_candidate(media, score, ReasonCode.GENERAL))

        # Cross-genre exploration through the adjacency map
        adjacent: dict[str, str] = {}
        for genre in top:
            for other in self.cfg.similar_genres(genre):
                if other not in profile.genre_weights and other not in adjacent:
                    adjacent[other] = genre
        explore_slots = math.ceil(limit * self.cfg.exploration_factor)
        if adjacent and explore_slots > 0:
            for media in self._fetch(self.catalog.media_by_genres, list(adjacent), explore_slots * 3):
                sources = [adjacent[g] for g in media.genres if g in adjacent]
                if not sources:
                    continue
                source = max(sources, key=lambda g: profile.genre_weights.get(g, 0.0))
                base, _ = score_media(media, profile, self.cfg)
                affinity = profile.genre_weights.get(source, 0.0) * 0.75
                score = base + self.cfg.weights["genre"] * affinity
                candidates.append(self._content_candidate(media, min(1.0, score), ReasonCode.GENRE_MATCH, source))
        return candidates

    def _similar_content_candidates(self, profile: PreferenceProfile, interactions: list[Interaction]) -> list[Candidate]:
        liked = [i for i in interactions if _is_liked(i)]
        sources = sorted(liked, key=lambda i: i.timestamp, reverse=True)[:SIMILAR_CONTENT_SOURCES]
        if not sources:
            return []
        source_meta = self._fetch(self.catalog.metadata, [i.media_id for i in sources])
        candidates = []
        for interaction in sources:
            source = source_meta.get(interaction.media_id)
            if source is None or not source.genres:
                continue
            source_genres = set(source.genres)
            for media in self._fetch(self.catalog.media_by_genres, source.genres, 30):
                if media.media_id == source.media_id:
                    continue
                union = source_genres | set(media.genres)
                overlap = len(source_genres & set(media.genres)) / len(union) if union else 0.0
                if overlap < SIMILAR_CONTENT_MIN_OVERLAP:
                    continue
                base, _ = score_media(media, profile, self.cfg)
                candidates.append(self._content_candidate(
                    media, base * (0.6 + 0.4 * overlap), ReasonCode.SIMILAR_CONTENT, source.title,
                    source_media_id=source.media_id, signal_at=interaction.timestamp,
                ))
        return candidates

    def _collaborative_candidates(self, profile: PreferenceProfile) -> list[Candidate]:
        neighbors = self.compatibility.find_similar_users(profile, limit=COLLABORATIVE_NEIGHBORS)
        if not neighbors:
            return []
        support: dict[int, float] = defaultdict(float)
        supporters: dict[int, int] = defaultdict(int)
        latest: dict[int, datetime] = {}
        for neighbor_id, similarity in neighbors:
            for interaction in self._fetch(self.history.history, neighbor_id):
                if not _is_liked(interaction):
                    continue
                support[interaction.media_id] += similarity
                supporters[interaction.media_id] += 1
                if interaction.media_id not in latest or interaction.timestamp > latest[interaction.media_id]:
                    latest[interaction.media_id] = interaction.timestamp
        if not support:
            return []

        total_similarity = sum(sim for _, sim in neighbors)
        metadata = self._fetch(self.catalog.metadata, list(support))
        candidates = []
        for media_id, mass in support.items():
            media = metadata.get(media_id)
            if media is None:
                continue
            base, _ = score_media(media, profile, self.cfg)
            agreement = mass / total_similarity
            backing = _confidence_weight(supporters[media_id], COLLABORATIVE_MIN_SUPPORT)
            score = 0.5 * base + 0.5 * (0.5 * agreement + 0.5 * backing)
            candidates.append(self._content_candidate(
                media, min(1.0, score), ReasonCode.SIMILAR_USERS, signal_at=latest.get(media_id),
            ))
        return candidates

    def _apply_diversity(self, candidates: list[Candidate]) -> list[Candidate]:
        """Penalize candidates whose primary genre already appeared higher up."""
        if self.cfg.diversity_factor <= 0:
            return candidates
        best: dict[tuple, Candidate] = {}
        for c in candidates:
            if c.key not in best or c.score > best[c.key].score:
                best[c.key] = c
        ordered = sorted(best.values(), key=lambda c: (-c.score, c.candidate_id))
        repeats: dict[str, int] = defaultdict(int)
        for c in ordered:
            primary = c.genres[0] if c.genres else None
            if primary is None:
                continue
            c.score *= 1.0 - self.cfg.diversity_factor * (1.0 - 1.0 / (1 + repeats[primary]))
            repeats[primary] += 1
        return ordered

    # Entry points ---------------------------------------------------------
    def personal(self, user_id: int, limit: int | None = None, now: datetime | None = None) -> list[Candidate]:
        """Ranked content candidates for one user; trending when the profile is too thin."""
        limit = limit or self.cfg.max_recommendations_per_user
        now = now or datetime.now()
        profile = self.calculator.get_profile(user_id)
        if profile.total_interactions < self.cfg.min_interactions_for_recommendations:
            logger.debug(f"User {user_id} has {profile.total_interactions} interactions; using trending")
            return self.trending(limit, user_id=user_id, now=now)

        interactions = self._fetch(self.history.history, user_id)
        seen = {i.media_id for i in interactions}
        dismissed = self.store.dismissed_candidates(user_id, RecommendationKind.CONTENT)

        candidates = self._genre_candidates(profile, limit)
        candidates += self._similar_content_candidates(profile, interactions)
        if self.cfg.is_feature_enabled("collaborative_filtering"):
            candidates += self._collaborative_candidates(profile)
        candidates = [c for c in candidates if c.candidate_id not in dismissed]
        candidates = self._apply_diversity(candidates)
        return rank_candidates(candidates, limit, self.cfg, self._conversion_rates(now), seen)

    def trending(self, limit: int, user_id: int | None = None, now: datetime | None = None,
                 profile: PreferenceProfile | None = None) -> list[Candidate]:
        """
        Population-wide popularity, blended with the user's profile by
        personalization_balance when a profile with data is available.
        """
        if not self.cfg.is_feature_enabled("trending"):
            return []
        now = now or datetime.now()
        if profile is None and user_id is not None:
            profile = self.calculator.get_profile(user_id)
        personalize = profile is not None and profile.total_interactions > 0
        balance = self.cfg.personalization_balance if personalize else 0.0

        items = self._fetch(self.catalog.trending, now - timedelta(days=TRENDING_WINDOW_DAYS), limit * 3)
        if not items:
            return []
        metadata = self._fetch(self.catalog.metadata, [item.media_id for item in items])
        peak = max(item.interaction_count for item in items) or 1

        candidates = []
        for item in items:
            media = metadata.get(item.media_id)
            if media is None:
                continue
            popularity = item.interaction_count / peak
            reason, context = ReasonCode.TRENDING_GLOBAL, None
            score = popularity
            if personalize:
                personal, parts = score_media(media, profile, self.cfg)
                score = (1 - balance) * popularity + balance * personal
                genre_name = _best_genre(media, profile)
                if genre_name and parts["genre"] >= 0.5:
                    reason, context = ReasonCode.TRENDING_GENRE, genre_name
            candidates.append(self._content_candidate(
                media, score, reason, context, signal_at=item.last_interaction_at,
            ))

        seen: set[int] = set()
        if user_id is not None:
            seen = self._fetch(self.history.seen_media_ids, user_id)
            dismissed = self.store.dismissed_candidates(user_id, RecommendationKind.CONTENT)
            candidates = [c for c in candidates if c.candidate_id not in dismissed]
        return rank_candidates(candidates, limit, self.cfg, self._conversion_rates(now), seen)

    def for_group(self, user_id: int, group_id: int, limit: int | None = None,
                  now: datetime | None = None) -> list[Candidate]:
        """Content for a user within one of their groups, scored against the group and the user."""
        limit = limit or self.cfg.max_same_type_recommendations * 2
        now = now or datetime.now()
        group = self._fetch(self.directory.group, group_id)
        if group is None:
            raise NotFound(f"group {group_id} not found")
        if user_id not in group.member_ids:
            raise NotFound(f"user {user_id} is not an active member of group {group_id}")

        member_profiles = load_profiles_batch(group.member_ids)
        group_profile = aggregate_profiles(list(member_profiles.values()), owner_id=-group_id)
        user_profile = member_profiles.get(user_id) or self.calculator.get_profile(user_id)

        others = [uid for uid in group.member_ids if uid != user_id]
        liked_by: dict[int, int] = defaultdict(int)
        latest: dict[int, datetime] = {}
        for member_id in others:
            for interaction in self._fetch(self.history.history, member_id):
                if _is_liked(interaction) or interaction.completed:
                    liked_by[interaction.media_id] += 1
                    if interaction.media_id not in latest or interaction.timestamp > latest[interaction.media_id]:
                        latest[interaction.media_id] = interaction.timestamp

        candidates = []
        if liked_by:
            metadata = self._fetch(self.catalog.metadata, list(liked_by))
            for media_id, count in liked_by.items():
                media = metadata.get(media_id)
                if media is None:
                    continue
                group_score, _ = score_media(media, group_profile, self.cfg)
                share = count / len(others)
                candidates.append(self._content_candidate(
                    media, 0.5 * share + 0.5 * group_score, ReasonCode.GROUP_ACTIVITY, group.name,
                    group_id=group_id, source_group_id=group_id, signal_at=latest.get(media_id),
                ))

        for media in self._fetch(self.catalog.media_by_genres, group_profile.top_genres(3), CANDIDATE_POOL_SIZE // 2):
            group_score, _ = score_media(media, group_profile, self.cfg)
            user_score, _ = score_media(media, user_profile, self.cfg)
            candidates.append(self._content_candidate(
                media, 0.5 * group_score + 0.5 * user_score, ReasonCode.GENRE_MATCH, _best_genre(media, group_profile),
                group_id=group_id,
            ))

        seen = self._fetch(self.history.seen_media_ids, user_id)
        return rank_candidates(candidates, limit, self.cfg, self._conversion_rates(now), seen)

    def group_suggestions(self, user_id: int, limit: int | None = None, now: datetime | None = None) -> list[Candidate]:
        """Public groups the user has not joined, ranked by compatibility with their members."""
        if not self.cfg.is_feature_enabled("group_recommendations"):
            return []
        limit = limit or self.cfg.max_same_type_recommendations
        now = now or datetime.now()
        profile = self.calculator.get_profile(user_id)
        if profile.total_interactions == 0:
            return []
        dismissed = self.store.dismissed_candidates(user_id, RecommendationKind.GROUP)

        candidates = []
        for group in self._fetch(self.directory.discoverable_groups, user_id, limit * 3):
            if group.group_id in dismissed or not group.member_ids:
                continue
            aggregate = self.compatibility.group_profile(group, exclude_user_id=user_id)
            if aggregate.total_interactions == 0:
                continue
            parts = self.compatibility.breakdown(profile, aggregate)
            if parts.get("genre", 0.0) >= 0.5:
                reason, context = ReasonCode.GENRE_COMPATIBILITY, group.name
            else:
                reason, context = ReasonCode.ACTIVITY_LEVEL, None
            candidates.append(Candidate(
                kind=RecommendationKind.GROUP,
                candidate_id=group.group_id,
                score=float(parts["overall"]),
                reason=reason,
                explanation=self._explain(reason, context),
                title=group.name,
            ))
        return rank_candidates(candidates, limit, self.cfg, self._conversion_rates(now))

    def real_time(self, user_id: int, context_media_id: int | None = None, limit: int = 10,
                  now: datetime | None = None) -> list[Candidate]:
        """Ad hoc scoring around what the user is looking at now. Nothing is persisted."""
        now = now or datetime.now()
        if not self.calculator.has_sufficient_data(user_id):
            return self.trending(limit, user_id=user_id, now=now)

        profile = self.calculator.get_profile(user_id)
        interactions = self._fetch(self.history.history, user_id)
        seen = {i.media_id for i in interactions}

        candidates: list[Candidate] = []
        if context_media_id is not None:
            context = Interaction(media_id=context_media_id, rating=None, completed=False, favorite=True, timestamp=now)
            candidates += self._similar_content_candidates(profile, [context])
        if self.cfg.is_feature_enabled("collaborative_filtering"):
            candidates += self._collaborative_candidates(profile)
        candidates += self.trending(limit, user_id=user_id, now=now, profile=profile)
        if len(candidates) < limit:
            candidates += self._genre_candidates(profile, limit)
        return rank_candidates(candidates, limit, self.cfg, self._conversion_rates(now), seen)

    def generate_for_user(self, user_id: int, now: datetime | None = None) -> SaveResult:
        """Compute and persist personal, group and in-group content recommendations."""
        now = now or datetime.now()
        candidates = self.personal(user_id, now=now)
        candidates += self.group_suggestions(user_id, now=now)
        if self.cfg.is_feature_enabled("group_recommendations"):
            for group in self._fetch(self.directory.groups_for_user, user_id):
                candidates += self.for_group(user_id, group.group_id, now=now)

        expiry = {kind: self.cfg.expiry_days_for(kind) for kind in RecommendationKind}
        result = self.store.save_candidates(user_id, candidates, expiry, now=now)
        logger.debug(
            f"User {user_id}: {result.created} created, {result.extended} extended, "
            f"{result.unchanged} unchanged, {result.skipped} over limit"
        )
        return result
