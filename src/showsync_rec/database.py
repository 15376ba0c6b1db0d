import sqlite3
import json
import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta

from .config import DB_CHUNK_SIZE, DB_PATH, PROFILE_SCHEMA_VERSION
from .models import PreferenceProfile, ViewingPersonality

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Stored timestamps are compared as strings inside SQL, so everything is
    kept naive and written through to_db_timestamp().
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def to_db_timestamp(dt: datetime) -> str:
    """Fixed-width ISO string so lexical order matches chronological order."""
    if dt.tzinfo:
        dt = dt.replace(tzinfo=None)
    return dt.isoformat(timespec="microseconds")


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    One connection per thread (SQLite threading requirement), periodic
    health checks, cleanup of connections owned by dead threads, and
    nesting depth tracking so only the outermost get_db() commits.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")  # Scheduler threads write while online reads run
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop(self, thread_id: int) -> None:
        conn = self._connections.pop(thread_id, None)
        self._last_health_check.pop(thread_id, None)
        self._transaction_depth.pop(thread_id, None)
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _maybe_cleanup(self, force: bool = False) -> None:
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections) - alive_threads
        for thread_id in dead_threads:
            self._drop(thread_id)
        if dead_threads:
            logger.info(f"Connection pool cleanup: removed {len(dead_threads)} dead connections, {len(self._connections)} remaining")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    self._drop(thread_id)
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = max(0, self._transaction_depth.get(thread_id, 1) - 1)

    def close_all(self) -> None:
        with self._lock:
            for thread_id in list(self._connections):
                self._drop(thread_id)
            logger.info("Connection pool closed")

    def stats(self) -> dict:
        with self._lock:
            return {
                'active_connections': len(self._connections),
                'max_size': self._max_size,
            }


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts on
    the same thread join the enclosing transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS preference_profiles (
                user_id INTEGER PRIMARY KEY,
                genre_weights TEXT NOT NULL,      -- JSON {label: weight}
                platform_weights TEXT NOT NULL,
                era_weights TEXT NOT NULL,
                average_rating REAL,
                rating_variance REAL NOT NULL DEFAULT 0,
                total_interactions INTEGER NOT NULL DEFAULT 0,
                total_completed INTEGER NOT NULL DEFAULT 0,
                completion_rate REAL NOT NULL DEFAULT 0,
                viewing_personality TEXT NOT NULL,
                confidence_score REAL NOT NULL DEFAULT 0,
                diversity_score REAL NOT NULL DEFAULT 0,
                last_calculated_at TEXT,
                schema_version INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_profiles_confidence ON preference_profiles(confidence_score);

            CREATE TABLE IF NOT EXISTS recommendations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                candidate_id INTEGER NOT NULL,
                group_id INTEGER,
                scope_id INTEGER NOT NULL DEFAULT 0,   -- group_id, or 0 for personal scope
                score REAL NOT NULL,
                reason_code TEXT NOT NULL,
                explanation TEXT NOT NULL,
                source_media_id INTEGER,
                source_group_id INTEGER,
                viewed INTEGER NOT NULL DEFAULT 0,
                dismissed INTEGER NOT NULL DEFAULT 0,
                acted_upon INTEGER NOT NULL DEFAULT 0,
                user_feedback INTEGER,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                active INTEGER,                        -- 1 while holding the per-candidate slot, else NULL
                CHECK (NOT (dismissed = 1 AND acted_upon = 1)),
                CHECK (acted_upon = 0 OR viewed = 1),
                CHECK (user_feedback IS NULL OR user_feedback BETWEEN 1 AND 5)
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_recommendations_active_slot
                ON recommendations(user_id, kind, candidate_id, scope_id) WHERE active = 1;
            CREATE INDEX IF NOT EXISTS idx_recommendations_user ON recommendations(user_id, kind, expires_at);
            CREATE INDEX IF NOT EXISTS idx_recommendations_expires ON recommendations(expires_at);

            CREATE TABLE IF NOT EXISTS feedback_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                recommendation_id INTEGER NOT NULL,
                candidate_id INTEGER NOT NULL,
                reason_code TEXT,
                feedback_type TEXT NOT NULL,
                feedback_score INTEGER,
                feedback_text TEXT,
                feedback_reason TEXT,
                action_taken TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_feedback_user ON feedback_records(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_feedback_reason ON feedback_records(reason_code, created_at);

            CREATE TABLE IF NOT EXISTS sweep_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                processed INTEGER DEFAULT 0,
                succeeded INTEGER DEFAULT 0,
                skipped INTEGER DEFAULT 0,
                failed INTEGER DEFAULT 0,
                created INTEGER DEFAULT 0,
                extended INTEGER DEFAULT 0,
                cancelled INTEGER DEFAULT 0,
                error_counts TEXT
            );

            -- Collaborator data served by the bundled SQLite collaborators
            CREATE TABLE IF NOT EXISTS media (
                id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                media_type TEXT NOT NULL DEFAULT 'movie',
                platform TEXT,
                release_year INTEGER,
                average_rating REAL,
                popularity INTEGER DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS media_genres (
                media_id INTEGER NOT NULL,
                genre TEXT NOT NULL,
                PRIMARY KEY (media_id, genre)
            );
            CREATE INDEX IF NOT EXISTS idx_media_genres_genre ON media_genres(genre);

            CREATE TABLE IF NOT EXISTS user_interactions (
                user_id INTEGER NOT NULL,
                media_id INTEGER NOT NULL,
                rating REAL,
                completed INTEGER NOT NULL DEFAULT 0,
                favorite INTEGER NOT NULL DEFAULT 0,
                interacted_at TEXT NOT NULL,
                PRIMARY KEY (user_id, media_id)
            );
            CREATE INDEX IF NOT EXISTS idx_interactions_time ON user_interactions(interacted_at);
            CREATE INDEX IF NOT EXISTS idx_interactions_media ON user_interactions(media_id);

            CREATE TABLE IF NOT EXISTS user_groups (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                is_public INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER NOT NULL DEFAULT 1
            );
            CREATE TABLE IF NOT EXISTS group_memberships (
                group_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                joined_at TEXT,
                PRIMARY KEY (group_id, user_id)
            );
            CREATE INDEX IF NOT EXISTS idx_memberships_user ON group_memberships(user_id);

            CREATE TABLE IF NOT EXISTS group_user_presence (
                group_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                is_online INTEGER NOT NULL DEFAULT 0,
                last_seen_at TEXT NOT NULL,
                PRIMARY KEY (group_id, user_id)
            );
        """)


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = {}
    if not val:
        return default
    if isinstance(val, (dict, list)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default


# Preference profiles ------------------------------------------------------

def save_profile(profile: PreferenceProfile) -> None:
    """Upsert a user's profile row."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO preference_profiles (
                user_id, genre_weights, platform_weights, era_weights,
                average_rating, rating_variance, total_interactions, total_completed,
                completion_rate, viewing_personality, confidence_score, diversity_score,
                last_calculated_at, schema_version
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                genre_weights = excluded.genre_weights,
                platform_weights = excluded.platform_weights,
                era_weights = excluded.era_weights,
                average_rating = excluded.average_rating,
                rating_variance = excluded.rating_variance,
                total_interactions = excluded.total_interactions,
                total_completed = excluded.total_completed,
                completion_rate = excluded.completion_rate,
                viewing_personality = excluded.viewing_personality,
                confidence_score = excluded.confidence_score,
                diversity_score = excluded.diversity_score,
                last_calculated_at = excluded.last_calculated_at,
                schema_version = excluded.schema_version
        """, (
            profile.user_id,
            json.dumps(profile.genre_weights, sort_keys=True),
            json.dumps(profile.platform_weights, sort_keys=True),
            json.dumps(profile.era_weights, sort_keys=True),
            profile.average_rating,
            profile.rating_variance,
            profile.total_interactions,
            profile.total_completed,
            profile.completion_rate,
            profile.viewing_personality.value,
            profile.confidence_score,
            profile.diversity_score,
            to_db_timestamp(profile.last_calculated_at) if profile.last_calculated_at else None,
            PROFILE_SCHEMA_VERSION,
        ))


def _row_to_profile(row: sqlite3.Row) -> PreferenceProfile:
    return PreferenceProfile(
        user_id=row['user_id'],
        genre_weights=load_json(row['genre_weights']),
        platform_weights=load_json(row['platform_weights']),
        era_weights=load_json(row['era_weights']),
        average_rating=row['average_rating'],
        rating_variance=row['rating_variance'] or 0.0,
        total_interactions=row['total_interactions'],
        total_completed=row['total_completed'],
        completion_rate=row['completion_rate'],
        viewing_personality=ViewingPersonality.parse(row['viewing_personality']),
        confidence_score=row['confidence_score'],
        diversity_score=row['diversity_score'],
        last_calculated_at=parse_timestamp_naive(row['last_calculated_at']) if row['last_calculated_at'] else None,
        schema_version=row['schema_version'],
    )


def load_profile(user_id: int) -> PreferenceProfile | None:
    """Load a stored profile; None if the user was never calculated or the schema moved on."""
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM preference_profiles WHERE user_id = ?", (user_id,)).fetchone()
    if row is None:
        return None
    if row['schema_version'] != PROFILE_SCHEMA_VERSION:
        logger.debug(f"Profile for user {user_id} has schema {row['schema_version']}, expected {PROFILE_SCHEMA_VERSION}")
        return None
    return _row_to_profile(row)


def load_profiles_batch(user_ids: list[int]) -> dict[int, PreferenceProfile]:
    if not user_ids:
        return {}
    result: dict[int, PreferenceProfile] = {}
    with get_db(read_only=True) as conn:
        for i in range(0, len(user_ids), DB_CHUNK_SIZE):
            chunk = user_ids[i:i + DB_CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            rows = conn.execute(f"""
                SELECT * FROM preference_profiles
                WHERE user_id IN ({placeholders}) AND schema_version = ?
            """, [*chunk, PROFILE_SCHEMA_VERSION]).fetchall()
            for row in rows:
                result[row['user_id']] = _row_to_profile(row)
    return result


def load_confident_profiles(min_confidence: float, exclude_user_id: int | None = None,
                            limit: int | None = None) -> list[PreferenceProfile]:
    """Profiles reliable enough for collaborative matching, most confident first."""
    query = """
        SELECT * FROM preference_profiles
        WHERE confidence_score >= ? AND schema_version = ? AND user_id != ?
        ORDER BY confidence_score DESC, user_id
    """
    params: list = [min_confidence, PROFILE_SCHEMA_VERSION, exclude_user_id if exclude_user_id is not None else -1]
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_profile(row) for row in rows]


def profiles_needing_update(threshold: float, stale_before: datetime, limit: int,
                            after_user_id: int | None = None) -> list[int]:
    """Users whose profile is below the confidence threshold or was last calculated before stale_before.

    Keyset-paginated so recalculating a page does not shift the next one.
    """
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id FROM preference_profiles
            WHERE (confidence_score < ? OR last_calculated_at IS NULL OR last_calculated_at < ?)
              AND user_id > ?
            ORDER BY user_id LIMIT ?
        """, (
            threshold,
            to_db_timestamp(stale_before),
            after_user_id if after_user_id is not None else -1,
            limit,
        )).fetchall()
    return [row['user_id'] for row in rows]


def delete_inactive_profiles(cutoff: datetime) -> int:
    """Drop profiles not recalculated since cutoff whose owners have no newer interactions."""
    ts = to_db_timestamp(cutoff)
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM preference_profiles
            WHERE (last_calculated_at IS NULL OR last_calculated_at < ?)
              AND user_id NOT IN (
                  SELECT user_id FROM user_interactions WHERE interacted_at >= ?
              )
        """, (ts, ts))
        deleted = cursor.rowcount
    if deleted:
        logger.info(f"Deleted {deleted} inactive profiles (not calculated since {cutoff:%Y-%m-%d})")
    return deleted


def personality_distribution() -> dict[ViewingPersonality, int]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT viewing_personality, COUNT(*) AS n
            FROM preference_profiles GROUP BY viewing_personality
        """).fetchall()
    counts: Counter = Counter()
    for row in rows:
        counts[ViewingPersonality.parse(row['viewing_personality'])] += row['n']
    return dict(counts)


# Sweep bookkeeping ---------------------------------------------------------

def create_sweep_run(name: str, started_at: datetime) -> int:
    with get_db() as conn:
        cursor = conn.execute(
            "INSERT INTO sweep_runs (name, started_at) VALUES (?, ?)",
            (name, to_db_timestamp(started_at)),
        )
        return cursor.lastrowid


def complete_sweep_run(run_id: int, finished_at: datetime, processed: int, succeeded: int, skipped: int,
                       failed: int, created: int, extended: int, cancelled: bool,
                       error_counts: dict[str, int]) -> None:
    with get_db() as conn:
        conn.execute("""
            UPDATE sweep_runs SET
                finished_at = ?, processed = ?, succeeded = ?, skipped = ?, failed = ?,
                created = ?, extended = ?, cancelled = ?, error_counts = ?
            WHERE id = ?
        """, (
            to_db_timestamp(finished_at), processed, succeeded, skipped, failed,
            created, extended, int(cancelled), json.dumps(error_counts, sort_keys=True), run_id,
        ))


def recent_sweep_runs(limit: int = 10) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT * FROM sweep_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    runs = []
    for row in rows:
        run = dict(row)
        run['error_counts'] = load_json(run['error_counts'])
        runs.append(run)
    return runs


# Presence -------------------------------------------------------------------

def purge_stale_presence(now: datetime, stale_minutes: int) -> int:
    """Delete presence rows whose last heartbeat is older than the stale window."""
    cutoff = to_db_timestamp(now - timedelta(minutes=stale_minutes))
    with get_db() as conn:
        cursor = conn.execute("""
            DELETE FROM group_user_presence
            WHERE last_seen_at < ?
        """, (cutoff,))
        deleted = cursor.rowcount
    if deleted:
        logger.info(f"Removed {deleted} stale presence rows")
    return deleted


def run_maintenance(vacuum: bool = True, analyze: bool = True) -> None:
    """
    Run optional VACUUM/ANALYZE after bulk loads.
    Uses a dedicated connection to avoid interfering with pooled transactions.
    """
    if not vacuum and not analyze:
        return
    conn = sqlite3.connect(DB_PATH)
    try:
        if vacuum:
            conn.execute("VACUUM")
        if analyze:
            conn.execute("ANALYZE")
        conn.commit()
    finally:
        conn.close()
