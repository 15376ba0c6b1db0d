"""
Batch refresh of profiles and recommendations.

Three independent cron-driven jobs run on an APScheduler BackgroundScheduler:

- daily full-population sweep (recalculate + regenerate every user)
- hourly sweep over users active within the lookback window
- cleanup of expired recommendations and stale presence, followed by a
  recalculation of low-confidence or outdated profiles

Sweeps walk the population page by page, isolate per-user failures and
check a stop event between users, so an interrupted sweep leaves every
processed user consistent.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import httpx
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from tqdm import tqdm

from .config import NOTIFICATION_WEBHOOK_URL, USER_LOCK_TIMEOUT_SECONDS
from .database import complete_sweep_run, create_sweep_run, purge_stale_presence
from .errors import UpstreamUnavailable
from .profile import PreferenceCalculator
from .recommendation_config import RecommendationConfig
from .recommendation_store import RecommendationStore
from .recommender import RecommendationGenerator
from .utils import call_with_timeout

logger = logging.getLogger(__name__)


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return
    try:
        httpx.post(NOTIFICATION_WEBHOOK_URL, json={"content": message}, timeout=10)
    except httpx.HTTPError as exc:
        logger.warning(f"Failed to send notification: {exc}")


@dataclass
class SweepSummary:
    name: str
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    created: int = 0
    extended: int = 0
    cancelled: bool = False
    error_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_error(self, exc: BaseException) -> None:
        self.error_counts[type(exc).__name__] += 1

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.processed if self.processed else 0.0

    def describe(self) -> str:
        text = (
            f"{self.name} sweep: {self.processed} users, {self.succeeded} ok, {self.skipped} skipped, "
            f"{self.failed} failed; {self.created} recommendations created, {self.extended} extended"
        )
        if self.cancelled:
            text += " (cancelled)"
        return text


class UserLockRegistry:
    """One lock per user id, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, list] = {}

    @contextmanager
    def hold(self, user_id: int, timeout: float):
        with self._guard:
            entry = self._locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        acquired = entry[0].acquire(timeout=timeout)
        try:
            yield acquired
        finally:
            if acquired:
                entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(user_id, None)


class BatchScheduler:
    def __init__(
        self,
        history,
        calculator: PreferenceCalculator,
        generator: RecommendationGenerator,
        store: RecommendationStore,
        cfg: RecommendationConfig,
    ):
        self.history = history
        self.calculator = calculator
        self.generator = generator
        self.store = store
        self.cfg = cfg
        self._stop = threading.Event()
        self._locks = UserLockRegistry()
        self._scheduler: BackgroundScheduler | None = None

    # Sweeps -------------------------------------------------------------
    def run_full_sweep(self, now: datetime | None = None, show_progress: bool = False) -> SweepSummary:
        def _page(offset: int, limit: int) -> list[int]:
            return call_with_timeout(self.history.user_ids, offset, limit,
                                     timeout=self.cfg.collaborator_timeout_seconds)
        return self._sweep("daily", _page, now, show_progress)

    def run_active_sweep(self, hours_back: int | None = None, now: datetime | None = None,
                         show_progress: bool = False) -> SweepSummary:
        hours_back = hours_back or self.cfg.active_users_hours_back
        since = (now or datetime.now()) - timedelta(hours=hours_back)

        def _page(offset: int, limit: int) -> list[int]:
            return call_with_timeout(self.history.active_user_ids, since, offset, limit,
                                     timeout=self.cfg.collaborator_timeout_seconds)
        return self._sweep("active", _page, now, show_progress)

    def _sweep(self, name: str, fetch_page: Callable[[int, int], list[int]], now: datetime | None,
               show_progress: bool) -> SweepSummary:
        started = datetime.now()
        summary = SweepSummary(name=name, started_at=started)
        run_id = create_sweep_run(name, started)
        logger.info(f"Starting {name} sweep (batch size {self.cfg.default_batch_size})")

        offset = 0
        with tqdm(desc=f"{name} sweep", unit="user", disable=not show_progress) as bar:
            while not self._stop.is_set():
                try:
                    page = fetch_page(offset, self.cfg.default_batch_size)
                except UpstreamUnavailable as exc:
                    logger.error(f"{name} sweep stopped: could not list users at offset {offset}: {exc}")
                    summary.record_error(exc)
                    break
                if not page:
                    break
                offset += len(page)
                for user_id in page:
                    if self._stop.is_set():
                        break
                    self._process_user(user_id, summary, now)
                    bar.update(1)

        summary.cancelled = self._stop.is_set()
        summary.finished_at = datetime.now()
        complete_sweep_run(
            run_id, summary.finished_at, summary.processed, summary.succeeded, summary.skipped,
            summary.failed, summary.created, summary.extended, summary.cancelled, dict(summary.error_counts),
        )
        logger.info(summary.describe())
        if summary.failed or summary.cancelled:
            send_notification(summary.describe())
        return summary

    def _process_user(self, user_id: int, summary: SweepSummary, now: datetime | None) -> None:
        summary.processed += 1
        with self._locks.hold(user_id, USER_LOCK_TIMEOUT_SECONDS) as acquired:
            if not acquired:
                logger.warning(f"User {user_id} is being refreshed by another sweep; skipping")
                summary.skipped += 1
                return
            try:
                profile = self.calculator.calculate(user_id, now=now)
                if profile.total_interactions == 0:
                    summary.succeeded += 1
                    return
                result = self.generator.generate_for_user(user_id, now=now)
                summary.created += result.created
                summary.extended += result.extended
                summary.succeeded += 1
            except UpstreamUnavailable as exc:
                logger.warning(f"Skipping user {user_id} this cycle: {exc}")
                summary.skipped += 1
                summary.record_error(exc)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error refreshing user {user_id}: {exc}", exc_info=True)
                summary.failed += 1
                summary.record_error(exc)

    def refresh_profiles(self, now: datetime | None = None) -> dict[str, int]:
        """Recalculate low-confidence and stale profiles without regenerating recommendations."""
        counts = self.calculator.recalculate_needing_update(now=now)
        logger.info(
            f"Profile refresh: {counts['refreshed']} recalculated, {counts['skipped']} skipped, "
            f"{counts['failed']} failed"
        )
        if counts['failed']:
            send_notification(f"profile refresh: {counts['failed']} users failed")
        return counts

    def cleanup(self, now: datetime | None = None) -> dict[str, int]:
        now = now or datetime.now()
        counts = {
            'retired': self.store.retire_expired(now),
            'purged': self.store.purge_expired(now - timedelta(days=self.cfg.expired_retention_days)),
            'presence': purge_stale_presence(now, self.cfg.presence_stale_minutes),
            'profiles': self.calculator.cleanup_inactive(now),
        }
        logger.info(
            f"Cleanup: {counts['retired']} expired released, {counts['purged']} purged, "
            f"{counts['presence']} stale presence rows, {counts['profiles']} inactive profiles"
        )
        counts['refreshed'] = self.refresh_profiles(now)['refreshed']
        return counts

    # Cooperative cancellation --------------------------------------------
    def request_stop(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        self._stop.clear()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # Timer wiring ---------------------------------------------------------
    def _run_job(self, name: str, func: Callable[[], object]) -> None:
        try:
            func()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Scheduled job {name} failed: {exc}", exc_info=True)

    def start(self) -> bool:
        """Register the cron jobs and start the background scheduler. False when disabled."""
        if not self.cfg.enable_schedulers:
            logger.info("Schedulers disabled by configuration")
            return False
        self._stop.clear()
        scheduler = BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 600},
        )
        jobs = [
            ("daily_generation", self.cfg.daily_generation_cron, self.run_full_sweep),
            ("active_users_refresh", self.cfg.active_users_refresh_cron, self.run_active_sweep),
            ("cleanup", self.cfg.cleanup_cron, self.cleanup),
        ]
        for job_id, expression, func in jobs:
            scheduler.add_job(
                self._run_job,
                trigger=CronTrigger.from_crontab(expression),
                args=[job_id, func],
                id=job_id,
                name=job_id,
                replace_existing=True,
            )
            logger.info(f"Scheduled {job_id} with cron '{expression}'")
        scheduler.start()
        self._scheduler = scheduler
        return True

    def shutdown(self, wait: bool = True) -> None:
        self.request_stop()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Scheduler stopped")

    def jobs(self) -> list[dict]:
        if self._scheduler is None:
            return []
        return [
            {"id": job.id, "next_run_time": job.next_run_time}
            for job in self._scheduler.get_jobs()
        ]
