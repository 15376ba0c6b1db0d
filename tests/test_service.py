import pytest

from showsync_rec.errors import InvalidArgument, NotFound
from showsync_rec.models import ReasonCode, RecommendationKind, ViewingPersonality
from showsync_rec.recommendation_config import RecommendationConfig
from showsync_rec.service import RecommendationService, _top_keys


@pytest.fixture
def small_pages(seeded_db):
    return RecommendationService(RecommendationConfig(page_size=2))


def test_personal_recommendations_are_paged(small_pages, now):
    small_pages.generate_recommendations_for_user(2, now=now)
    small_pages.generate_recommendations_for_user(1, now=now)

    pages = [small_pages.get_personal_recommendations(1, page=p, now=now) for p in (1, 2, 3)]

    assert [len(p) for p in pages] == [2, 1, 0]
    ids = [r.candidate_id for p in pages for r in p]
    assert sorted(ids) == [6, 7, 8]
    scores = [r.score for p in pages for r in p]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.parametrize("page", [0, -1, "1", 1.5, True])
def test_invalid_page_rejected(service, page):
    with pytest.raises(InvalidArgument):
        service.get_personal_recommendations(1, page=page)


def test_trending_limit_must_be_positive(service, now):
    with pytest.raises(InvalidArgument):
        service.get_trending_recommendations(1, limit=0, now=now)
    assert len(service.get_trending_recommendations(3, limit=2, now=now)) == 2


def test_preferences_for_user_without_history(service, now):
    prefs = service.get_user_preferences(3, now=now)

    assert prefs.total_interactions == 0
    assert prefs.confidence_score == 0.0
    assert not prefs.is_reliable
    assert prefs.top_genres == []
    assert prefs.viewing_personality is ViewingPersonality.CASUAL
    assert prefs.personality_description
    assert prefs.last_calculated_at is None
    assert service.find_similar_users(3) == []
    assert service.get_profile_improvement_suggestions(3)


def test_preferences_after_calculation(service, now):
    service.calculator.calculate(1, now=now)

    prefs = service.get_user_preferences(1, now=now)

    assert prefs.total_interactions == 5
    assert prefs.top_genres[0] == "Action"
    assert "Romance" not in prefs.top_genres
    assert prefs.top_platforms == ["Netflix"]
    assert prefs.average_rating == pytest.approx(3.8)
    assert prefs.last_calculated_at == now


def test_compatibility_between_users(service, now):
    for user_id in (1, 2):
        service.calculator.calculate(user_id, now=now)

    result = service.calculate_compatibility(1, 2)

    assert result == service.calculate_compatibility(2, 1)
    assert 0.0 <= result["overall"] <= 1.0
    assert result["genre"] > 0.8
    assert isinstance(result["label"], str)


def test_group_content_requires_active_membership(service, now):
    service.generate_recommendations_for_user(2, now=now)
    service.generate_recommendations_for_user(1, now=now)

    in_group = service.get_group_content_recommendations(1, 10, now=now)

    assert in_group
    assert all(r.group_id == 10 for r in in_group)
    with pytest.raises(NotFound):
        service.get_group_content_recommendations(1, 20, now=now)
    with pytest.raises(NotFound):
        service.get_group_content_recommendations(1, 404, now=now)


def test_group_recommendations_list_suggested_groups(service, now):
    service.generate_recommendations_for_user(2, now=now)
    service.generate_recommendations_for_user(1, now=now)

    groups = service.get_group_recommendations(1, now=now)

    assert [r.candidate_id for r in groups] == [20]
    assert groups[0].kind is RecommendationKind.GROUP


def test_real_time_falls_back_to_trending_when_disabled(seeded_db, now):
    flags = dict(RecommendationConfig().features, real_time=False)
    service = RecommendationService(RecommendationConfig(features=flags))

    candidates = service.get_real_time_recommendations(1, context_media_id=7, limit=3, now=now)

    assert candidates
    assert {c.reason for c in candidates} <= {ReasonCode.TRENDING_GLOBAL, ReasonCode.TRENDING_GENRE}


def test_analytics_summarize_engagement(service, now):
    service.generate_recommendations_for_user(2, now=now)
    service.generate_recommendations_for_user(1, now=now)
    rec = service.get_personal_recommendations(1, now=now)[0]
    service.record_positive_feedback(1, "content", rec.id, now=now)

    stats = service.get_recommendation_analytics(days=7, now=now)

    assert stats["total"] > 0
    assert stats["acted_upon"] == 1
    assert stats["viewed"] >= 1
    assert stats["conversion_by_reason"][rec.reason.value] == 1.0
    assert sum(stats["personalities"].values()) == 2
    assert stats["recent_sweeps"] == []


def test_top_keys_ignores_zero_weights():
    assert _top_keys({"a": 0.2, "b": 0.9, "c": 0.0, "d": 0.5}) == ["b", "d", "a"]
    assert _top_keys({"x": 0.0}) == []
