"""
Narrow read-only interfaces to the systems this engine consumes, plus the
SQLite-backed implementations used by the CLI and the tests.

The engine only ever talks to the Protocols; deployments that keep
interaction history, catalog or group membership elsewhere provide their
own implementations (see catalog_client.HttpCatalog).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Protocol

from .config import DB_CHUNK_SIZE, IMPORT_CHUNK_SIZE
from .database import get_db, parse_timestamp_naive, to_db_timestamp
from .models import GroupInfo, Interaction, MediaMetadata, TrendingItem
from .utils import chunked

logger = logging.getLogger(__name__)


class InteractionHistory(Protocol):
    def history(self, user_id: int) -> list[Interaction]:
        """All interactions of a user, oldest first."""

    def interaction_count(self, user_id: int) -> int: ...

    def seen_media_ids(self, user_id: int) -> set[int]: ...

    def user_ids(self, offset: int, limit: int) -> list[int]:
        """A stable page of the whole user population."""

    def active_user_ids(self, since: datetime, offset: int, limit: int) -> list[int]: ...


class Catalog(Protocol):
    def metadata(self, media_ids: Iterable[int]) -> dict[int, MediaMetadata]: ...

    def media_by_genres(self, genres: Iterable[str], limit: int) -> list[MediaMetadata]: ...

    def trending(self, since: datetime, limit: int) -> list[TrendingItem]: ...


class GroupDirectory(Protocol):
    def group(self, group_id: int) -> GroupInfo | None: ...

    def active_members(self, group_id: int) -> list[int]: ...

    def groups_for_user(self, user_id: int) -> list[GroupInfo]: ...

    def discoverable_groups(self, user_id: int, limit: int) -> list[GroupInfo]:
        """Public, active groups the user is not a member of."""


# SQLite implementations -------------------------------------------------------

class SqliteInteractionHistory:
    def history(self, user_id: int) -> list[Interaction]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT media_id, rating, completed, favorite, interacted_at
                FROM user_interactions
                WHERE user_id = ?
                ORDER BY interacted_at, media_id
            """, (user_id,)).fetchall()
        return [
            Interaction(
                media_id=row['media_id'],
                rating=row['rating'],
                completed=bool(row['completed']),
                favorite=bool(row['favorite']),
                timestamp=parse_timestamp_naive(row['interacted_at']),
            )
            for row in rows
        ]

    def interaction_count(self, user_id: int) -> int:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM user_interactions WHERE user_id = ?", (user_id,)).fetchone()
        return row['n']

    def seen_media_ids(self, user_id: int) -> set[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("SELECT media_id FROM user_interactions WHERE user_id = ?", (user_id,)).fetchall()
        return {row['media_id'] for row in rows}

    def user_ids(self, offset: int, limit: int) -> list[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT user_id FROM (
                    SELECT user_id FROM user_interactions
                    UNION
                    SELECT user_id FROM preference_profiles
                )
                ORDER BY user_id LIMIT ? OFFSET ?
            """, (limit, offset)).fetchall()
        return [row['user_id'] for row in rows]

    def active_user_ids(self, since: datetime, offset: int, limit: int) -> list[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT DISTINCT user_id FROM user_interactions
                WHERE interacted_at >= ?
                ORDER BY user_id LIMIT ? OFFSET ?
            """, (to_db_timestamp(since), limit, offset)).fetchall()
        return [row['user_id'] for row in rows]


class SqliteCatalog:
    def metadata(self, media_ids: Iterable[int]) -> dict[int, MediaMetadata]:
        ids = list(dict.fromkeys(media_ids))
        result: dict[int, MediaMetadata] = {}
        if not ids:
            return result
        with get_db(read_only=True) as conn:
            for chunk in chunked(ids, DB_CHUNK_SIZE):
                placeholders = ','.join('?' * len(chunk))
                rows = conn.execute(f"SELECT * FROM media WHERE id IN ({placeholders})", chunk).fetchall()
                genre_rows = conn.execute(f"""
                    SELECT media_id, genre FROM media_genres
                    WHERE media_id IN ({placeholders}) ORDER BY media_id, genre
                """, chunk).fetchall()
                genres: dict[int, list[str]] = {}
                for g in genre_rows:
                    genres.setdefault(g['media_id'], []).append(g['genre'])
                for row in rows:
                    result[row['id']] = self._row_to_media(row, genres.get(row['id'], []))
        return result

    def media_by_genres(self, genres: Iterable[str], limit: int) -> list[MediaMetadata]:
        wanted = list(dict.fromkeys(genres))
        if not wanted:
            return []
        placeholders = ','.join('?' * len(wanted))
        with get_db(read_only=True) as conn:
            rows = conn.execute(f"""
                SELECT DISTINCT m.id FROM media m
                JOIN media_genres mg ON mg.media_id = m.id
                WHERE mg.genre IN ({placeholders})
                ORDER BY m.popularity DESC, m.average_rating DESC, m.id
                LIMIT ?
            """, [*wanted, limit]).fetchall()
        ids = [row['id'] for row in rows]
        found = self.metadata(ids)
        return [found[i] for i in ids if i in found]

    def trending(self, since: datetime, limit: int) -> list[TrendingItem]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT media_id, COUNT(*) AS n, AVG(rating) AS avg_rating, MAX(interacted_at) AS last_at
                FROM user_interactions
                WHERE interacted_at >= ?
                GROUP BY media_id
                ORDER BY n DESC, avg_rating DESC, media_id
                LIMIT ?
            """, (to_db_timestamp(since), limit)).fetchall()
        return [
            TrendingItem(
                media_id=row['media_id'],
                interaction_count=row['n'],
                average_rating=row['avg_rating'],
                last_interaction_at=parse_timestamp_naive(row['last_at']) if row['last_at'] else None,
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_media(row, genres: list[str]) -> MediaMetadata:
        return MediaMetadata(
            media_id=row['id'],
            title=row['title'],
            genres=genres,
            platform=row['platform'],
            release_year=row['release_year'],
            media_type=row['media_type'],
            average_rating=row['average_rating'],
            popularity=row['popularity'] or 0,
        )


class SqliteGroupDirectory:
    def group(self, group_id: int) -> GroupInfo | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("SELECT * FROM user_groups WHERE id = ? AND is_active = 1", (group_id,)).fetchone()
        if row is None:
            return None
        return GroupInfo(
            group_id=row['id'],
            name=row['name'],
            is_public=bool(row['is_public']),
            member_ids=self.active_members(group_id),
        )

    def active_members(self, group_id: int) -> list[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT user_id FROM group_memberships
                WHERE group_id = ? AND status = 'active'
                ORDER BY user_id
            """, (group_id,)).fetchall()
        return [row['user_id'] for row in rows]

    def groups_for_user(self, user_id: int) -> list[GroupInfo]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT g.id FROM user_groups g
                JOIN group_memberships gm ON gm.group_id = g.id
                WHERE gm.user_id = ? AND gm.status = 'active' AND g.is_active = 1
                ORDER BY g.id
            """, (user_id,)).fetchall()
        return [info for info in (self.group(row['id']) for row in rows) if info is not None]

    def discoverable_groups(self, user_id: int, limit: int) -> list[GroupInfo]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT g.id FROM user_groups g
                WHERE g.is_public = 1 AND g.is_active = 1
                  AND g.id NOT IN (
                      SELECT group_id FROM group_memberships WHERE user_id = ? AND status = 'active'
                  )
                ORDER BY g.id LIMIT ?
            """, (user_id, limit)).fetchall()
        return [info for info in (self.group(row['id']) for row in rows) if info is not None]


def import_dataset(data: dict) -> dict[str, int]:
    """
    Load collaborator data from a dict shaped like the JSON import file:
    ``media``, ``interactions``, ``groups`` (with ``members``) and ``presence``.
    Existing rows with the same keys are replaced.
    """
    counts = {'media': 0, 'interactions': 0, 'groups': 0, 'presence': 0}
    with get_db() as conn:
        for chunk in chunked(data.get('media', []), IMPORT_CHUNK_SIZE):
            conn.executemany("""
                INSERT OR REPLACE INTO media (id, title, media_type, platform, release_year, average_rating, popularity)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [(
                m['id'], m['title'], m.get('media_type', 'movie'), m.get('platform'),
                m.get('release_year'), m.get('average_rating'), m.get('popularity', 0),
            ) for m in chunk])
            conn.executemany(
                "DELETE FROM media_genres WHERE media_id = ?", [(m['id'],) for m in chunk]
            )
            conn.executemany(
                "INSERT OR IGNORE INTO media_genres (media_id, genre) VALUES (?, ?)",
                [(m['id'], g) for m in chunk for g in m.get('genres', [])],
            )
            counts['media'] += len(chunk)

        for chunk in chunked(data.get('interactions', []), IMPORT_CHUNK_SIZE):
            conn.executemany("""
                INSERT OR REPLACE INTO user_interactions (user_id, media_id, rating, completed, favorite, interacted_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [(
                i['user_id'], i['media_id'], i.get('rating'), int(bool(i.get('completed'))),
                int(bool(i.get('favorite'))), to_db_timestamp(parse_timestamp_naive(i['timestamp'])),
            ) for i in chunk])
            counts['interactions'] += len(chunk)

        for group in data.get('groups', []):
            conn.execute("""
                INSERT OR REPLACE INTO user_groups (id, name, is_public, is_active)
                VALUES (?, ?, ?, ?)
            """, (group['id'], group['name'], int(group.get('is_public', True)), int(group.get('is_active', True))))
            conn.executemany("""
                INSERT OR REPLACE INTO group_memberships (group_id, user_id, status, joined_at)
                VALUES (?, ?, 'active', ?)
            """, [(group['id'], uid, group.get('created_at')) for uid in group.get('members', [])])
            counts['groups'] += 1

        for chunk in chunked(data.get('presence', []), IMPORT_CHUNK_SIZE):
            conn.executemany("""
                INSERT OR REPLACE INTO group_user_presence (group_id, user_id, is_online, last_seen_at)
                VALUES (?, ?, ?, ?)
            """, [(
                p['group_id'], p['user_id'], int(bool(p.get('is_online'))),
                to_db_timestamp(parse_timestamp_naive(p['last_seen_at'])),
            ) for p in chunk])
            counts['presence'] += len(chunk)

    logger.info(
        f"Imported {counts['media']} media, {counts['interactions']} interactions, "
        f"{counts['groups']} groups, {counts['presence']} presence rows"
    )
    return counts
