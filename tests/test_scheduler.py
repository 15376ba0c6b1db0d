import sqlite3
import threading
from datetime import timedelta

import pytest

from showsync_rec import scheduler as scheduler_mod
from showsync_rec.errors import UpstreamUnavailable
from showsync_rec.models import PreferenceProfile
from showsync_rec.profile import PreferenceCalculator
from showsync_rec.recommendation_config import RecommendationConfig
from showsync_rec.recommendation_store import SaveResult
from showsync_rec.scheduler import BatchScheduler, SweepSummary, UserLockRegistry


class StubHistory:
    def __init__(self, user_ids, fail_listing=False):
        self.ids = list(user_ids)
        self.fail_listing = fail_listing
        self.active_since = None

    def user_ids(self, offset, limit):
        if self.fail_listing:
            raise OSError("history service down")
        return self.ids[offset:offset + limit]

    def active_user_ids(self, since, offset, limit):
        self.active_since = since
        return self.ids[offset:offset + limit]


class StubCalculator:
    def __init__(self, errors=None, empty=(), on_calculate=None):
        self.errors = errors or {}
        self.empty = set(empty)
        self.on_calculate = on_calculate
        self.calculated = []
        self.refresh_counts = {"refreshed": 2, "skipped": 0, "failed": 0}

    def calculate(self, user_id, now=None):
        self.calculated.append(user_id)
        if self.on_calculate:
            self.on_calculate(user_id)
        if user_id in self.errors:
            raise self.errors[user_id]
        total = 0 if user_id in self.empty else 12
        return PreferenceProfile(user_id=user_id, total_interactions=total)

    def cleanup_inactive(self, now=None):
        return 4

    def recalculate_needing_update(self, threshold=None, now=None):
        return dict(self.refresh_counts)


class StubGenerator:
    def __init__(self):
        self.generated = []

    def generate_for_user(self, user_id, now=None):
        self.generated.append(user_id)
        return SaveResult(created=2, extended=1)


class StubStore:
    def retire_expired(self, now=None):
        return 3

    def purge_expired(self, cutoff):
        self.purge_cutoff = cutoff
        return 1


@pytest.fixture
def notifications(monkeypatch):
    sent = []
    monkeypatch.setattr(scheduler_mod, "send_notification", sent.append)
    return sent


def _scheduler(history, calculator=None, generator=None, store=None, **cfg_overrides):
    cfg = RecommendationConfig(default_batch_size=2, **cfg_overrides)
    return BatchScheduler(history, calculator or StubCalculator(), generator or StubGenerator(),
                          store or StubStore(), cfg)


def test_full_sweep_pages_through_everyone(fresh_db, now, notifications):
    generator = StubGenerator()
    calculator = StubCalculator()
    batch = _scheduler(StubHistory([1, 2, 3, 4, 5]), calculator=calculator, generator=generator)

    summary = batch.run_full_sweep(now=now)

    assert calculator.calculated == [1, 2, 3, 4, 5]
    assert generator.generated == [1, 2, 3, 4, 5]
    assert (summary.processed, summary.succeeded, summary.skipped, summary.failed) == (5, 5, 0, 0)
    assert summary.created == 10 and summary.extended == 5
    assert summary.success_rate == 1.0
    assert not summary.cancelled
    assert notifications == []


def test_per_user_failures_are_isolated(fresh_db, now, notifications):
    calculator = StubCalculator(errors={
        2: ValueError("corrupt profile"),
        4: UpstreamUnavailable("catalog timed out"),
    }, empty={5})
    generator = StubGenerator()
    batch = _scheduler(StubHistory([1, 2, 3, 4, 5, 6]), calculator=calculator, generator=generator)

    summary = batch.run_full_sweep(now=now)

    assert summary.processed == 6
    assert summary.failed == 1
    assert summary.skipped == 1
    assert summary.succeeded == 4
    # Users without history are refreshed but get no new recommendations
    assert generator.generated == [1, 3, 6]
    assert dict(summary.error_counts) == {"ValueError": 1, "UpstreamUnavailable": 1}
    assert len(notifications) == 1
    assert "1 failed" in notifications[0]


def test_sweep_run_is_recorded(fresh_db, now, notifications):
    calculator = StubCalculator(errors={2: RuntimeError("boom")})
    batch = _scheduler(StubHistory([1, 2]), calculator=calculator)

    batch.run_full_sweep(now=now)
    runs = fresh_db.recent_sweep_runs()

    assert len(runs) == 1
    run = runs[0]
    assert run["name"] == "daily"
    assert (run["processed"], run["succeeded"], run["failed"]) == (2, 1, 1)
    assert run["error_counts"] == {"RuntimeError": 1}
    assert run["finished_at"] is not None
    assert not run["cancelled"]


def test_stop_request_is_honored_between_users(fresh_db, now, notifications):
    calculator = StubCalculator()
    batch = _scheduler(StubHistory([1, 2, 3, 4]), calculator=calculator)
    calculator.on_calculate = lambda user_id: batch.request_stop()

    summary = batch.run_full_sweep(now=now)

    assert calculator.calculated == [1]
    assert summary.processed == summary.succeeded == 1
    assert summary.cancelled
    assert batch.stop_requested
    assert "(cancelled)" in notifications[0]

    batch.reset()
    calculator.on_calculate = None
    assert batch.run_full_sweep(now=now).processed == 4


def test_listing_failure_ends_the_sweep(fresh_db, now, notifications):
    calculator = StubCalculator()
    batch = _scheduler(StubHistory([1, 2], fail_listing=True), calculator=calculator)

    summary = batch.run_full_sweep(now=now)

    assert summary.processed == 0
    assert calculator.calculated == []
    assert summary.error_counts["UpstreamUnavailable"] == 1


def test_active_sweep_uses_lookback_window(fresh_db, now, notifications):
    history = StubHistory([7, 8])
    batch = _scheduler(history, active_users_hours_back=6)

    summary = batch.run_active_sweep(now=now)
    assert summary.name == "active"
    assert summary.processed == 2
    assert history.active_since == now - timedelta(hours=6)

    batch.run_active_sweep(hours_back=48, now=now)
    assert history.active_since == now - timedelta(hours=48)


def test_busy_user_is_skipped(fresh_db, now, monkeypatch):
    monkeypatch.setattr(scheduler_mod, "USER_LOCK_TIMEOUT_SECONDS", 0.01)
    calculator = StubCalculator()
    batch = _scheduler(StubHistory([1]), calculator=calculator)
    summary = SweepSummary(name="test", started_at=now)

    with batch._locks.hold(1, timeout=1) as acquired:
        assert acquired
        batch._process_user(1, summary, now)

    assert summary.skipped == 1
    assert calculator.calculated == []


def test_lock_registry_forgets_released_users():
    registry = UserLockRegistry()

    with registry.hold(5, timeout=1) as acquired:
        assert acquired
        assert 5 in registry._locks

    assert registry._locks == {}


def test_cleanup_reports_counts(fresh_db, now):
    store = StubStore()
    batch = _scheduler(StubHistory([]), store=store, expired_retention_days=30)

    counts = batch.cleanup(now=now)

    assert counts == {"retired": 3, "purged": 1, "presence": 0, "profiles": 4, "refreshed": 2}
    assert store.purge_cutoff == now - timedelta(days=30)


def test_cleanup_removes_stale_presence(seeded_db, now):
    from showsync_rec.collaborators import import_dataset

    import_dataset({"presence": [
        {"group_id": 10, "user_id": 1, "is_online": True, "last_seen_at": (now - timedelta(hours=2)).isoformat()},
        {"group_id": 10, "user_id": 2, "is_online": True, "last_seen_at": (now - timedelta(minutes=1)).isoformat()},
    ]})
    batch = _scheduler(StubHistory([]), presence_stale_minutes=30)

    assert batch.cleanup(now=now)["presence"] == 1


def test_start_respects_disabled_schedulers(fresh_db):
    batch = _scheduler(StubHistory([]), enable_schedulers=False)

    assert batch.start() is False
    assert batch.jobs() == []


def test_start_registers_cron_jobs(fresh_db):
    batch = _scheduler(StubHistory([]), enable_schedulers=True)
    try:
        assert batch.start() is True
        assert {job["id"] for job in batch.jobs()} == {"daily_generation", "active_users_refresh", "cleanup"}
        assert all(job["next_run_time"] is not None for job in batch.jobs())
    finally:
        batch.shutdown(wait=False)
    assert batch.jobs() == []


def test_scheduled_job_errors_are_logged(fresh_db, caplog):
    batch = _scheduler(StubHistory([]))

    def broken():
        raise RuntimeError("nope")

    batch._run_job("cleanup", broken)

    assert "Scheduled job cleanup failed" in caplog.text


def test_send_notification_posts_to_webhook(monkeypatch):
    payload = {}

    def fake_post(url, json, timeout):
        payload.update({"url": url, "json": json, "timeout": timeout})

    monkeypatch.setattr(scheduler_mod.httpx, "post", fake_post)
    monkeypatch.setattr(scheduler_mod, "NOTIFICATION_WEBHOOK_URL", "https://hook.test")

    scheduler_mod.send_notification("sweep failed")

    assert payload == {"url": "https://hook.test", "json": {"content": "sweep failed"}, "timeout": 10}


class BlockingHistory(StubHistory):
    """History whose per-user lookups hang until released, or raise a configured error."""

    def __init__(self, user_ids, error=None):
        super().__init__(user_ids)
        self.release = threading.Event()
        self.error = error

    def history(self, user_id):
        if self.error is not None:
            raise self.error
        self.release.wait(5)
        return []


def _real_calculator_scheduler(history, **cfg_overrides):
    cfg = RecommendationConfig(default_batch_size=2, **cfg_overrides)
    calculator = PreferenceCalculator(history, None, cfg)
    return BatchScheduler(history, calculator, StubGenerator(), StubStore(), cfg)


def test_slow_collaborator_skips_user_after_timeout(fresh_db, now, notifications, caplog):
    history = BlockingHistory([1, 2])
    batch = _real_calculator_scheduler(history, collaborator_timeout_seconds=0.05)

    try:
        summary = batch.run_full_sweep(now=now)
    finally:
        history.release.set()

    assert (summary.processed, summary.skipped, summary.failed) == (2, 2, 0)
    assert dict(summary.error_counts) == {"UpstreamUnavailable": 2}
    assert "timed out after" in caplog.text
    assert notifications == []


def test_storage_errors_in_collaborators_skip_the_user(fresh_db, now, notifications):
    history = BlockingHistory([1], error=sqlite3.OperationalError("database is locked"))
    batch = _real_calculator_scheduler(history)

    summary = batch.run_full_sweep(now=now)

    assert (summary.skipped, summary.failed) == (1, 0)
    assert dict(summary.error_counts) == {"UpstreamUnavailable": 1}


def test_programming_errors_in_collaborators_count_as_failures(fresh_db, now, notifications):
    history = BlockingHistory([1], error=KeyError("rating"))
    batch = _real_calculator_scheduler(history)

    summary = batch.run_full_sweep(now=now)

    assert (summary.skipped, summary.failed) == (0, 1)
    assert dict(summary.error_counts) == {"KeyError": 1}
    assert "1 failed" in notifications[0]


def test_refresh_profiles_reports_failures(fresh_db, now, notifications):
    calculator = StubCalculator()
    calculator.refresh_counts = {"refreshed": 5, "skipped": 1, "failed": 2}
    batch = _scheduler(StubHistory([]), calculator=calculator)

    counts = batch.refresh_profiles(now=now)

    assert counts == {"refreshed": 5, "skipped": 1, "failed": 2}
    assert notifications == ["profile refresh: 2 users failed"]


def test_scheduler_can_restart_after_shutdown(fresh_db, now):
    batch = _scheduler(StubHistory([1, 2]), enable_schedulers=True)
    batch.start()
    batch.shutdown(wait=False)
    assert batch.stop_requested

    try:
        assert batch.start() is True
        assert not batch.stop_requested
        summary = batch.run_full_sweep(now=now)
    finally:
        batch.shutdown(wait=False)

    assert summary.processed == 2
    assert not summary.cancelled
