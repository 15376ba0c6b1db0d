import importlib
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SHOWSYNC_DB", str(db_path))
    monkeypatch.delenv("SHOWSYNC_CONFIG", raising=False)
    import showsync_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("SHOWSYNC_DB", str(db_path))
    monkeypatch.delenv("SHOWSYNC_CONFIG", raising=False)

    import showsync_rec.config as config
    import showsync_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def now():
    return NOW


def make_media(media_id, genres, platform="Netflix", year=2015, average_rating=3.5, popularity=10, title=None):
    return {
        "id": media_id,
        "title": title or f"Title {media_id}",
        "genres": list(genres),
        "platform": platform,
        "release_year": year,
        "average_rating": average_rating,
        "popularity": popularity,
    }


def make_interaction(user_id, media_id, rating=None, when=NOW - timedelta(days=1), completed=True, favorite=False):
    return {
        "user_id": user_id,
        "media_id": media_id,
        "rating": rating,
        "completed": completed,
        "favorite": favorite,
        "timestamp": when.isoformat(),
    }


def seed_dataset(when=NOW - timedelta(days=1)):
    """
    A small catalog and three users:

    - user 1 loves action (three 5-star action titles) and dislikes romance
    - user 2 has the same taste as user 1
    - user 3 has no history at all
    - group 10 (public) contains users 1 and 2; group 20 (public) contains user 2 only
    """
    from showsync_rec.collaborators import import_dataset

    media = [
        make_media(1, ["Action"], title="Action One"),
        make_media(2, ["Action"], title="Action Two"),
        make_media(3, ["Action", "Adventure"], title="Action Three"),
        make_media(4, ["Romance"], title="Romance One"),
        make_media(5, ["Comedy"], title="Comedy One"),
        make_media(6, ["Action", "Thriller"], title="Action Four", average_rating=4.5, popularity=50),
        make_media(7, ["Action"], title="Action Five", popularity=40),
        make_media(8, ["Adventure"], title="Adventure One", popularity=30),
        make_media(9, ["Romance", "Drama"], title="Romance Two", popularity=60),
    ]
    interactions = []
    for user_id in (1, 2):
        interactions += [
            make_interaction(user_id, 1, rating=5, when=when),
            make_interaction(user_id, 2, rating=5, when=when),
            make_interaction(user_id, 3, rating=5, when=when),
            make_interaction(user_id, 4, rating=1, when=when),
            make_interaction(user_id, 5, rating=3, when=when),
        ]
    interactions.append(make_interaction(2, 6, rating=5, when=when))
    interactions.append(make_interaction(2, 7, rating=4, when=when))
    groups = [
        {"id": 10, "name": "Action Fans", "is_public": True, "members": [1, 2]},
        {"id": 20, "name": "Movie Night", "is_public": True, "members": [2]},
    ]
    import_dataset({"media": media, "interactions": interactions, "groups": groups})


@pytest.fixture
def seeded_db(fresh_db):
    seed_dataset()
    return fresh_db


@pytest.fixture
def service(seeded_db):
    from showsync_rec.recommendation_config import RecommendationConfig
    from showsync_rec.service import RecommendationService

    return RecommendationService(RecommendationConfig())
