import importlib
import json

import pytest

from showsync_rec import config
from showsync_rec.models import RecommendationKind
from showsync_rec.recommendation_config import RecommendationConfig, load_config


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("SHOWSYNC_HTTP_TIMEOUT", "2.5")
    monkeypatch.setenv("SHOWSYNC_COLLABORATOR_TIMEOUT", "-1")  # should clamp to min
    monkeypatch.setenv("SHOWSYNC_COLLABORATOR_WORKERS", "0")  # min clamp
    monkeypatch.setenv("SHOWSYNC_ENABLE_SCHEDULERS", "off")

    cfg = importlib.reload(config)

    assert cfg.HTTP_TIMEOUT == 2.5
    assert cfg.COLLABORATOR_TIMEOUT_SECONDS == 0.1
    assert cfg.COLLABORATOR_MAX_WORKERS == 1
    assert cfg.ENABLE_SCHEDULERS is False


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("SHOWSYNC_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SHOWSYNC_HTTP_TIMEOUT", "not-a-float")
    monkeypatch.setenv("SHOWSYNC_COLLABORATOR_WORKERS", "bad-int")

    cfg = importlib.reload(config)

    assert cfg.HTTP_TIMEOUT == 10.0
    assert cfg.COLLABORATOR_MAX_WORKERS == 4


def test_defaults_are_valid():
    cfg = RecommendationConfig()

    assert sum(cfg.weights.values()) == pytest.approx(1.0)
    assert cfg.expiry_days_for(RecommendationKind.CONTENT) == 14
    assert cfg.expiry_days_for(RecommendationKind.GROUP) == 7
    assert cfg.platform_priority("Netflix") == 1.0
    assert cfg.platform_priority("Some Indie Service") == cfg.default_platform_priority
    assert "Thriller" in cfg.similar_genres("Action")
    assert cfg.similar_genres("Documentary") == []
    assert cfg.is_feature_enabled("trending")
    assert not cfg.is_feature_enabled("no_such_feature")


@pytest.mark.parametrize("overrides", [
    {"weights": {"genre": 0.5, "rating": 0.3, "platform": 0.2, "era": 0.1}},
    {"weights": {"genre": 0.7, "rating": 0.3}},
    {"weights": {"genre": 1.2, "rating": -0.2, "platform": 0.0, "era": 0.0}},
    {"personalization_balance": 1.5},
    {"min_confidence_threshold": -0.1},
    {"page_size": 0},
    {"min_interactions_for_high_confidence": 2},
    {"negative_feedback_weight": 0.5},
    {"daily_generation_cron": "every day at three"},
    {"collaborator_timeout_seconds": 0},
])
def test_invalid_config_fails_fast(overrides):
    with pytest.raises(ValueError):
        RecommendationConfig(**overrides)


def test_weights_tolerate_float_rounding():
    cfg = RecommendationConfig(weights={"genre": 0.1 + 0.2, "rating": 0.3, "platform": 0.3, "era": 0.1})
    assert cfg.weights["genre"] == pytest.approx(0.3)


def test_load_config_from_file_and_overrides(tmp_path, caplog):
    path = tmp_path / "tunables.json"
    path.write_text(json.dumps({"page_size": 5, "diversity_factor": 0.1, "mystery_knob": 3}))

    cfg = load_config(path, content_expiry_days=30)

    assert cfg.page_size == 5
    assert cfg.diversity_factor == 0.1
    assert cfg.content_expiry_days == 30
    assert "mystery_knob" in caplog.text


def test_load_config_errors(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_config(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError, match="not valid JSON"):
        load_config(bad)

    listy = tmp_path / "list.json"
    listy.write_text("[1, 2]")
    with pytest.raises(ValueError, match="JSON object"):
        load_config(listy)


def test_fingerprint_changes_with_values():
    assert RecommendationConfig().fingerprint() == RecommendationConfig().fingerprint()
    assert RecommendationConfig().fingerprint() != RecommendationConfig(page_size=7).fingerprint()
