import pytest

from showsync_rec.errors import InvalidArgument
from showsync_rec.models import FeedbackType, ReasonCode, RecommendationKind


def test_enums_parse_values_and_names():
    assert RecommendationKind.parse("content") is RecommendationKind.CONTENT
    assert RecommendationKind.parse(" GROUP ") is RecommendationKind.GROUP
    assert ReasonCode.parse("genre_match") is ReasonCode.GENRE_MATCH
    assert ReasonCode.parse(ReasonCode.SIMILAR_USERS) is ReasonCode.SIMILAR_USERS


@pytest.mark.parametrize("raw", ["director_match", "", None, 3])
def test_unknown_reason_code_rejected(raw):
    with pytest.raises(InvalidArgument):
        ReasonCode.parse(raw)


@pytest.mark.parametrize("rating,expected", [
    (1, FeedbackType.NEGATIVE),
    (2, FeedbackType.NEGATIVE),
    (3, FeedbackType.NEUTRAL),
    (4, FeedbackType.POSITIVE),
    (5, FeedbackType.POSITIVE),
])
def test_feedback_type_from_rating(rating, expected):
    assert FeedbackType.from_rating(rating) is expected


def test_every_reason_has_a_description():
    assert all(reason.description for reason in ReasonCode)
