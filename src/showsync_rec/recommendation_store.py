"""
Persistence for recommendations and the append-only feedback log.

Each (user, kind, candidate, scope) may hold at most one active slot. A row
holds the slot while ``active = 1``; dismissal and expiry release it by
setting ``active`` to NULL, which the partial unique index ignores. Writers
try the INSERT and fall back to extending the current holder when the index
reports a conflict, so concurrent sweeps cannot create duplicates.
"""

import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from .database import get_db, parse_timestamp_naive, to_db_timestamp
from .errors import ConstraintViolation
from .models import (
    ActionTaken,
    Candidate,
    FeedbackRecord,
    FeedbackType,
    ReasonCode,
    Recommendation,
    RecommendationKind,
)

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    created: int = 0
    extended: int = 0
    unchanged: int = 0
    skipped: int = 0


def _row_to_recommendation(row: sqlite3.Row) -> Recommendation:
    return Recommendation(
        id=row['id'],
        user_id=row['user_id'],
        kind=RecommendationKind.parse(row['kind']),
        candidate_id=row['candidate_id'],
        score=row['score'],
        reason=ReasonCode.parse(row['reason_code']),
        explanation=row['explanation'],
        created_at=parse_timestamp_naive(row['created_at']),
        expires_at=parse_timestamp_naive(row['expires_at']),
        group_id=row['group_id'],
        source_media_id=row['source_media_id'],
        source_group_id=row['source_group_id'],
        viewed=bool(row['viewed']),
        dismissed=bool(row['dismissed']),
        acted_upon=bool(row['acted_upon']),
        user_feedback=row['user_feedback'],
    )


def _row_to_feedback(row: sqlite3.Row) -> FeedbackRecord:
    return FeedbackRecord(
        id=row['id'],
        user_id=row['user_id'],
        kind=RecommendationKind.parse(row['kind']),
        recommendation_id=row['recommendation_id'],
        candidate_id=row['candidate_id'],
        reason=ReasonCode.parse(row['reason_code']) if row['reason_code'] else None,
        feedback_type=FeedbackType.parse(row['feedback_type']),
        action_taken=ActionTaken.parse(row['action_taken']) if row['action_taken'] else None,
        created_at=parse_timestamp_naive(row['created_at']),
        feedback_score=row['feedback_score'],
        feedback_text=row['feedback_text'],
        feedback_reason=row['feedback_reason'],
    )


class RecommendationStore:
    def __init__(self, max_per_user: int):
        self.max_per_user = max_per_user

    # Writes -------------------------------------------------------------
    def save_candidates(
        self,
        user_id: int,
        candidates: list[Candidate],
        expiry_days: dict[RecommendationKind, int],
        now: datetime | None = None,
    ) -> SaveResult:
        """
        Persist ranked candidates for one user in a single transaction.

        Existing actionable holders get their expiry pushed out; rows the user
        already acted on are left untouched. New rows stop being created once
        the user holds max_per_user active recommendations.
        """
        now = now or datetime.now()
        result = SaveResult()
        now_ts = to_db_timestamp(now)

        with get_db() as conn:
            self._retire_expired(conn, now_ts, user_id=user_id)
            active_count = conn.execute(
                "SELECT COUNT(*) AS n FROM recommendations WHERE user_id = ? AND active = 1",
                (user_id,),
            ).fetchone()['n']

            for candidate in candidates:
                expires_at = to_db_timestamp(now + timedelta(days=expiry_days[candidate.kind]))
                scope_id = candidate.group_id or 0
                existing = conn.execute("""
                    SELECT id, acted_upon FROM recommendations
                    WHERE user_id = ? AND kind = ? AND candidate_id = ? AND scope_id = ? AND active = 1
                """, (user_id, candidate.kind.value, candidate.candidate_id, scope_id)).fetchone()

                if existing is not None:
                    if self._extend(conn, existing, expires_at):
                        result.extended += 1
                    else:
                        result.unchanged += 1
                    continue

                if active_count >= self.max_per_user:
                    result.skipped += 1
                    continue

                try:
                    self._insert(conn, user_id, candidate, scope_id, now_ts, expires_at)
                except ConstraintViolation as e:
                    # Another writer took the slot between our SELECT and INSERT
                    logger.debug(f"{e}; extending instead")
                    holder = conn.execute("""
                        SELECT id, acted_upon FROM recommendations
                        WHERE user_id = ? AND kind = ? AND candidate_id = ? AND scope_id = ? AND active = 1
                    """, (user_id, candidate.kind.value, candidate.candidate_id, scope_id)).fetchone()
                    if holder is not None and self._extend(conn, holder, expires_at):
                        result.extended += 1
                    else:
                        result.unchanged += 1
                    continue

                active_count += 1
                result.created += 1

        return result

    @staticmethod
    def _insert(conn: sqlite3.Connection, user_id: int, candidate: Candidate, scope_id: int,
                now_ts: str, expires_at: str) -> None:
        try:
            conn.execute("""
                INSERT INTO recommendations (
                    user_id, kind, candidate_id, group_id, scope_id, score, reason_code,
                    explanation, source_media_id, source_group_id, created_at, expires_at, active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """, (
                user_id, candidate.kind.value, candidate.candidate_id, candidate.group_id, scope_id,
                round(candidate.score, 6), candidate.reason.value, candidate.explanation,
                candidate.source_media_id, candidate.source_group_id, now_ts, expires_at,
            ))
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            raise ConstraintViolation(
                f"duplicate active recommendation for user {user_id}, "
                f"{candidate.kind.value} {candidate.candidate_id}"
            ) from e

    @staticmethod
    def _extend(conn: sqlite3.Connection, row: sqlite3.Row, expires_at: str) -> bool:
        if row['acted_upon']:
            return False
        cursor = conn.execute("""
            UPDATE recommendations SET expires_at = ?
            WHERE id = ? AND expires_at < ?
        """, (expires_at, row['id'], expires_at))
        return cursor.rowcount > 0

    @staticmethod
    def _retire_expired(conn: sqlite3.Connection, now_ts: str, user_id: int | None = None) -> int:
        query = "UPDATE recommendations SET active = NULL WHERE active = 1 AND expires_at <= ?"
        params: list = [now_ts]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        return conn.execute(query, params).rowcount

    def retire_expired(self, now: datetime | None = None) -> int:
        """Release the active slot of every expired row."""
        with get_db() as conn:
            return self._retire_expired(conn, to_db_timestamp(now or datetime.now()))

    def purge_expired(self, cutoff: datetime) -> int:
        """Delete rows whose expiry is older than cutoff. Feedback records are kept."""
        with get_db() as conn:
            deleted = conn.execute(
                "DELETE FROM recommendations WHERE expires_at < ?", (to_db_timestamp(cutoff),)
            ).rowcount
        if deleted:
            logger.info(f"Purged {deleted} recommendations expired before {cutoff:%Y-%m-%d %H:%M}")
        return deleted

    def update_flags(self, rec: Recommendation, viewed: bool, dismissed: bool, acted_upon: bool) -> bool:
        """
        Persist a status transition. The WHERE clause only matches while the
        row is still in neither terminal state, so a concurrent terminal
        transition makes this return False instead of combining both.
        """
        with get_db() as conn:
            cursor = conn.execute("""
                UPDATE recommendations SET
                    viewed = ?, dismissed = ?, acted_upon = ?,
                    active = CASE WHEN ? = 1 THEN NULL ELSE active END
                WHERE id = ? AND dismissed = 0 AND acted_upon = 0
            """, (int(viewed), int(dismissed), int(acted_upon), int(dismissed), rec.id))
            return cursor.rowcount > 0

    def set_user_feedback(self, rec_id: int, rating: int) -> None:
        with get_db() as conn:
            conn.execute("UPDATE recommendations SET user_feedback = ? WHERE id = ?", (rating, rec_id))

    def append_feedback(
        self,
        rec: Recommendation,
        feedback_type: FeedbackType,
        action: ActionTaken | None,
        now: datetime | None = None,
        score: int | None = None,
        text: str | None = None,
        reason: str | None = None,
    ) -> FeedbackRecord:
        now = now or datetime.now()
        with get_db() as conn:
            cursor = conn.execute("""
                INSERT INTO feedback_records (
                    user_id, kind, recommendation_id, candidate_id, reason_code, feedback_type,
                    feedback_score, feedback_text, feedback_reason, action_taken, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                rec.user_id, rec.kind.value, rec.id, rec.candidate_id, rec.reason.value, feedback_type.value,
                score, text, reason, action.value if action else None, to_db_timestamp(now),
            ))
            record_id = cursor.lastrowid
        return FeedbackRecord(
            id=record_id,
            user_id=rec.user_id,
            kind=rec.kind,
            recommendation_id=rec.id,
            candidate_id=rec.candidate_id,
            reason=rec.reason,
            feedback_type=feedback_type,
            action_taken=action,
            created_at=now,
            feedback_score=score,
            feedback_text=text,
            feedback_reason=reason,
        )

    # Reads --------------------------------------------------------------
    def get(self, user_id: int, kind: RecommendationKind, rec_id: int) -> Recommendation | None:
        with get_db(read_only=True) as conn:
            row = conn.execute(
                "SELECT * FROM recommendations WHERE id = ? AND user_id = ? AND kind = ?",
                (rec_id, user_id, kind.value),
            ).fetchone()
        return _row_to_recommendation(row) if row else None

    def list_active(
        self,
        user_id: int,
        kind: RecommendationKind,
        now: datetime | None = None,
        group_id: int | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[Recommendation]:
        """
        Non-dismissed, non-expired rows, best score first. Content rows are
        filtered to the personal scope unless group_id is given.
        """
        now_ts = to_db_timestamp(now or datetime.now())
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT * FROM recommendations
                WHERE user_id = ? AND kind = ? AND scope_id = ?
                  AND dismissed = 0 AND expires_at > ?
                ORDER BY score DESC, created_at DESC, id
                LIMIT ? OFFSET ?
            """, (user_id, kind.value, group_id or 0, now_ts, limit, offset)).fetchall()
        return [_row_to_recommendation(row) for row in rows]

    def count_active(self, user_id: int, now: datetime | None = None) -> int:
        now_ts = to_db_timestamp(now or datetime.now())
        with get_db(read_only=True) as conn:
            return conn.execute("""
                SELECT COUNT(*) AS n FROM recommendations
                WHERE user_id = ? AND dismissed = 0 AND expires_at > ?
            """, (user_id, now_ts)).fetchone()['n']

    def dismissed_candidates(self, user_id: int, kind: RecommendationKind) -> set[int]:
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT DISTINCT candidate_id FROM recommendations
                WHERE user_id = ? AND kind = ? AND dismissed = 1
            """, (user_id, kind.value)).fetchall()
        return {row['candidate_id'] for row in rows}

    def list_feedback(self, user_id: int, kind: RecommendationKind | None = None,
                      recommendation_id: int | None = None) -> list[FeedbackRecord]:
        query = "SELECT * FROM feedback_records WHERE user_id = ?"
        params: list = [user_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        if recommendation_id is not None:
            query += " AND recommendation_id = ?"
            params.append(recommendation_id)
        query += " ORDER BY created_at, id"
        with get_db(read_only=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_feedback(row) for row in rows]

    def feedback_signals(self, user_id: int) -> list[tuple[int, FeedbackType]]:
        """(media_id, feedback type) pairs from feedback on content recommendations."""
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT candidate_id, feedback_type FROM feedback_records
                WHERE user_id = ? AND kind = ?
                ORDER BY created_at, id
            """, (user_id, RecommendationKind.CONTENT.value)).fetchall()
        return [(row['candidate_id'], FeedbackType.parse(row['feedback_type'])) for row in rows]

    def conversion_rates(self, since: datetime) -> dict[ReasonCode, float]:
        """Share of POSITIVE feedback per reason code since the given time."""
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT reason_code,
                       SUM(CASE WHEN feedback_type = ? THEN 1 ELSE 0 END) AS positive,
                       COUNT(*) AS total
                FROM feedback_records
                WHERE created_at >= ? AND reason_code IS NOT NULL
                GROUP BY reason_code
            """, (FeedbackType.POSITIVE.value, to_db_timestamp(since))).fetchall()
        return {ReasonCode.parse(row['reason_code']): row['positive'] / row['total'] for row in rows if row['total']}

    def analytics(self, since: datetime) -> dict:
        """Aggregate engagement since a point in time, overall and per reason code."""
        since_ts = to_db_timestamp(since)
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT kind, reason_code, COUNT(*) AS total,
                       SUM(viewed) AS viewed, SUM(dismissed) AS dismissed, SUM(acted_upon) AS acted_upon,
                       AVG(user_feedback) AS avg_feedback
                FROM recommendations
                WHERE created_at >= ?
                GROUP BY kind, reason_code
            """, (since_ts,)).fetchall()

        by_reason: dict[str, dict] = {}
        totals: dict[str, float] = defaultdict(float)
        for row in rows:
            by_reason[f"{row['kind']}:{row['reason_code']}"] = {
                'total': row['total'],
                'viewed': row['viewed'] or 0,
                'dismissed': row['dismissed'] or 0,
                'acted_upon': row['acted_upon'] or 0,
                'avg_feedback': row['avg_feedback'],
            }
            for key in ('total', 'viewed', 'dismissed', 'acted_upon'):
                totals[key] += row[key] or 0

        total = totals['total']
        return {
            'total': int(total),
            'viewed': int(totals['viewed']),
            'dismissed': int(totals['dismissed']),
            'acted_upon': int(totals['acted_upon']),
            'view_rate': totals['viewed'] / total if total else 0.0,
            'conversion_rate': totals['acted_upon'] / total if total else 0.0,
            'by_reason': by_reason,
        }
