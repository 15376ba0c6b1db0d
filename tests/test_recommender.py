from datetime import datetime, timedelta

import pytest

from showsync_rec.errors import NotFound
from showsync_rec.models import Candidate, MediaMetadata, PreferenceProfile, ReasonCode, RecommendationKind
from showsync_rec.recommendation_config import RecommendationConfig
from showsync_rec.recommender import FALLBACK_EXPLANATION, rank_candidates, render_explanation, score_media


def _content(candidate_id, score, reason=ReasonCode.GENRE_MATCH, signal_at=None, group_id=None):
    return Candidate(kind=RecommendationKind.CONTENT, candidate_id=candidate_id, score=score, reason=reason,
                     signal_at=signal_at, group_id=group_id)


def test_render_explanation():
    assert render_explanation(ReasonCode.GENRE_MATCH, "Action") == "Based on your love for Action"
    assert render_explanation(ReasonCode.GROUP_ACTIVITY, "Movie Night") == "Popular in Movie Night"
    assert render_explanation(ReasonCode.GENRE_MATCH) == ReasonCode.GENRE_MATCH.description
    assert render_explanation(ReasonCode.GENERAL) == FALLBACK_EXPLANATION
    assert render_explanation(ReasonCode.HIGHLY_RATED, "ignored") == "Highly rated by the community"


def test_score_media_neutral_without_profile_data():
    cfg = RecommendationConfig()
    media = MediaMetadata(media_id=1, title="X", genres=["Action"], platform="Netflix", release_year=2015,
                          average_rating=3.0)

    score, parts = score_media(media, PreferenceProfile.empty(1), cfg)

    assert parts["genre"] == parts["platform"] == parts["era"] == 0.5
    assert parts["rating"] == pytest.approx(0.5)
    assert score == pytest.approx(0.5)


def test_score_media_prefers_liked_genres():
    cfg = RecommendationConfig()
    profile = PreferenceProfile(user_id=1, genre_weights={"Action": 1.0, "Romance": 0.0}, average_rating=4.0)
    action = MediaMetadata(media_id=1, title="A", genres=["Action"], average_rating=4.0)
    romance = MediaMetadata(media_id=2, title="R", genres=["Romance"], average_rating=4.0)

    assert score_media(action, profile, cfg)[0] > score_media(romance, profile, cfg)[0]
    assert 0.0 <= score_media(romance, profile, cfg)[0] <= 1.0


def test_rank_candidates_policy():
    cfg = RecommendationConfig(max_same_type_recommendations=2)
    older = datetime(2024, 1, 1)
    newer = datetime(2024, 5, 1)
    candidates = [
        _content(1, 0.9),
        _content(1, 0.95),                              # duplicate key, better score wins
        _content(2, 0.8, signal_at=older),
        _content(3, 0.8, signal_at=newer),
        _content(4, 0.7),                               # over the per-reason cap
        _content(5, 0.2, reason=ReasonCode.TRENDING_GLOBAL),  # below relevance
        _content(6, 0.99, reason=ReasonCode.SIMILAR_USERS),   # already seen
        _content(7, 0.6, reason=ReasonCode.SIMILAR_USERS),
        _content(1, 0.5, reason=ReasonCode.HIGHLY_RATED, group_id=10),  # different scope, kept separately
    ]

    ranked = rank_candidates(candidates, limit=10, cfg=cfg, seen={6})

    assert [(c.candidate_id, c.group_id) for c in ranked] == [(1, None), (3, None), (7, None), (1, 10)]
    assert ranked[0].score == 0.95


def test_rank_candidates_uses_conversion_to_break_ties():
    cfg = RecommendationConfig()
    candidates = [_content(1, 0.8, ReasonCode.GENRE_MATCH), _content(2, 0.8, ReasonCode.SIMILAR_USERS)]

    ranked = rank_candidates(candidates, 10, cfg, conversion_rates={ReasonCode.SIMILAR_USERS: 0.4})

    assert [c.candidate_id for c in ranked] == [2, 1]


def test_personal_recommendations_exclude_seen_content(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)

    candidates = service.generator.personal(1, now=now)
    ids = {c.candidate_id for c in candidates}

    assert ids == {6, 7, 8}
    assert all(c.explanation for c in candidates)
    assert [c.score for c in candidates] == sorted((c.score for c in candidates), reverse=True)


def test_cold_user_falls_back_to_trending(service, now):
    candidates = service.generator.personal(3, now=now)

    assert candidates
    assert {c.reason for c in candidates} == {ReasonCode.TRENDING_GLOBAL}
    assert [c.candidate_id for c in candidates] == [1, 2, 3, 4, 5]


def test_trending_is_personalized_when_profile_exists(service, now):
    service.calculator.calculate(1, now=now)
    profile = service.calculator.get_profile(1)

    plain = service.generator.trending(10, now=now)
    personal = service.generator.trending(10, user_id=1, now=now, profile=profile)

    assert {c.reason for c in plain} == {ReasonCode.TRENDING_GLOBAL}
    # User 1 has seen media 1-5, so only the unseen trending titles remain
    assert {c.candidate_id for c in personal} == {6, 7}
    assert all(c.reason is ReasonCode.TRENDING_GENRE for c in personal)


def test_group_content_requires_membership(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)

    candidates = service.generator.for_group(1, 10, now=now)

    assert candidates
    assert all(c.group_id == 10 for c in candidates)
    assert {6, 7} <= {c.candidate_id for c in candidates}
    assert not {1, 2, 3, 4, 5} & {c.candidate_id for c in candidates}

    with pytest.raises(NotFound):
        service.generator.for_group(1, 20, now=now)
    with pytest.raises(NotFound):
        service.generator.for_group(1, 999, now=now)


def test_group_suggestions_rank_public_groups_user_is_not_in(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)

    suggestions = service.generator.group_suggestions(1, now=now)

    assert [c.candidate_id for c in suggestions] == [20]
    assert suggestions[0].kind is RecommendationKind.GROUP
    assert suggestions[0].reason is ReasonCode.GENRE_COMPATIBILITY
    assert suggestions[0].explanation == "Members of Movie Night share your taste"


def test_real_time_scores_without_persisting(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)

    candidates = service.generator.real_time(1, context_media_id=7, limit=5, now=now)

    assert candidates
    assert not {1, 2, 3, 4, 5} & {c.candidate_id for c in candidates}
    assert service.store.count_active(1, now=now) == 0


def test_generate_for_user_is_idempotent(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)

    first = service.generator.generate_for_user(1, now=now)
    second = service.generator.generate_for_user(1, now=now + timedelta(hours=1))

    assert first.created > 0
    assert second.created == 0
    assert second.extended == first.created
    personal = service.store.list_active(1, RecommendationKind.CONTENT, now=now)
    assert {r.candidate_id for r in personal} == {6, 7, 8}
    group_row = service.store.list_active(1, RecommendationKind.GROUP, now=now)[0]
    assert group_row.expires_at == now + timedelta(hours=1, days=7)


def test_dismissed_candidates_are_not_regenerated(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)
    service.generator.generate_for_user(1, now=now)
    row = next(r for r in service.store.list_active(1, RecommendationKind.CONTENT, now=now) if r.candidate_id == 8)

    service.dismiss(1, "content", row.id, now=now)
    result = service.generator.generate_for_user(1, now=now + timedelta(hours=1))

    ids = {r.candidate_id for r in service.store.list_active(1, RecommendationKind.CONTENT, now=now)}
    assert 8 not in ids
    assert result.created == 0
