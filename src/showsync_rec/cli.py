import argparse
import atexit
import json
import logging
import signal
import sys
import threading
from datetime import datetime

from .catalog_client import HttpCatalog
from .collaborators import import_dataset
from .config import CATALOG_API_URL, LOG_LEVEL
from .database import close_pool, init_db, run_maintenance
from .errors import InvalidArgument, RecommendationError
from .models import Candidate, Recommendation
from .recommendation_config import load_config
from .service import RecommendationService
from .utils import shutdown_executor

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)
atexit.register(shutdown_executor)


def _build_service(args: argparse.Namespace) -> RecommendationService:
    try:
        cfg = load_config(getattr(args, "config", None))
    except ValueError as exc:
        raise InvalidArgument(f"invalid configuration: {exc}") from exc
    catalog_url = getattr(args, "catalog_url", None) or CATALOG_API_URL
    catalog = HttpCatalog(catalog_url) if catalog_url else None
    return RecommendationService(cfg, catalog=catalog)


def _log_recommendations(rows: list[Recommendation]) -> None:
    if not rows:
        logger.info("No active recommendations")
        return
    for rec in rows:
        flags = "".join(flag for flag, on in (("V", rec.viewed), ("A", rec.acted_upon)) if on) or "-"
        logger.info(
            f"  #{rec.id:<6} {rec.kind.value:<7} {rec.candidate_id:<8} {rec.score:.3f}  [{flags}] "
            f"{rec.explanation} (expires {rec.expires_at:%Y-%m-%d})"
        )


def _log_candidates(candidates: list[Candidate]) -> None:
    if not candidates:
        logger.info("No candidates")
        return
    for i, c in enumerate(candidates, 1):
        title = c.title or f"{c.kind.value} {c.candidate_id}"
        logger.info(f"{i:2}. {title} ({c.score:.3f}) - {c.explanation}")


def cmd_init_db(args: argparse.Namespace) -> None:
    init_db()
    logger.info("Database initialized")


def cmd_import(args: argparse.Namespace) -> None:
    """Import collaborator data (media, interactions, groups, presence) from JSON."""
    with open(args.file, 'r') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise InvalidArgument(f"{args.file} must contain a JSON object")
    import_dataset(data)
    if args.maintenance:
        run_maintenance(vacuum=True, analyze=True)
    logger.info(f"Import completed from {args.file}")


def cmd_profile(args: argparse.Namespace) -> None:
    """Show a user's preference profile, recalculating it first with --refresh."""
    service = _build_service(args)
    if args.refresh:
        service.calculator.calculate(args.user_id)
    prefs = service.get_user_preferences(args.user_id)

    logger.info(f"\nProfile for user {args.user_id}")
    logger.info(f"  Interactions: {prefs.total_interactions} (completion {prefs.completion_rate:.0%})")
    if prefs.average_rating is not None:
        logger.info(f"  Average rating: {prefs.average_rating:.2f}")
    logger.info(f"  Personality: {prefs.viewing_personality.display_name} - {prefs.personality_description}")
    logger.info(f"  Confidence: {prefs.confidence_score:.2f} ({'reliable' if prefs.is_reliable else 'still learning'})")
    logger.info(f"  Diversity: {prefs.diversity_score:.2f}")
    for label, values in (("genres", prefs.top_genres), ("platforms", prefs.top_platforms), ("eras", prefs.top_eras)):
        if values:
            logger.info(f"  Top {label}: {', '.join(values)}")
    for suggestion in service.get_profile_improvement_suggestions(args.user_id):
        logger.info(f"  Tip: {suggestion}")


def cmd_recommend(args: argparse.Namespace) -> None:
    service = _build_service(args)
    _log_recommendations(service.get_personal_recommendations(args.user_id, page=args.page))


def cmd_trending(args: argparse.Namespace) -> None:
    service = _build_service(args)
    _log_candidates(service.get_trending_recommendations(args.user_id, limit=args.limit))


def cmd_group_recs(args: argparse.Namespace) -> None:
    service = _build_service(args)
    if args.group is not None:
        rows = service.get_group_content_recommendations(args.user_id, args.group, page=args.page)
    else:
        rows = service.get_group_recommendations(args.user_id, page=args.page)
    _log_recommendations(rows)


def cmd_compat(args: argparse.Namespace) -> None:
    service = _build_service(args)
    result = service.calculate_compatibility(args.user_a, args.user_b)
    logger.info(f"Compatibility {args.user_a} <-> {args.user_b}: {result['overall']:.3f} ({result['label']})")
    for key in ("genre", "platform", "era", "rating", "personality"):
        if key in result:
            logger.info(f"  {key:<12} {result[key]:.3f}")


def cmd_similar_users(args: argparse.Namespace) -> None:
    service = _build_service(args)
    matches = service.find_similar_users(args.user_id, limit=args.limit)
    if not matches:
        logger.info("No similar users yet")
        return
    for user_id, score in matches:
        logger.info(f"  user {user_id:<8} {score:.3f}")


def cmd_realtime(args: argparse.Namespace) -> None:
    service = _build_service(args)
    _log_candidates(service.get_real_time_recommendations(args.user_id, args.media_id, limit=args.limit))


def cmd_view(args: argparse.Namespace) -> None:
    service = _build_service(args)
    rec = service.mark_viewed(args.user_id, args.kind, args.recommendation_id)
    logger.info(f"Recommendation {rec.id} marked viewed")


def cmd_act(args: argparse.Namespace) -> None:
    service = _build_service(args)
    rec = service.record_positive_feedback(args.user_id, args.kind, args.recommendation_id, action=args.action)
    logger.info(f"Recommendation {rec.id} marked acted upon")


def cmd_dismiss(args: argparse.Namespace) -> None:
    service = _build_service(args)
    rec = service.dismiss(args.user_id, args.kind, args.recommendation_id, reason=args.reason)
    logger.info(f"Recommendation {rec.id} dismissed")


def cmd_feedback(args: argparse.Namespace) -> None:
    service = _build_service(args)
    record = service.submit_feedback(args.user_id, args.kind, args.recommendation_id, args.rating, text=args.text)
    logger.info(f"Recorded {record.feedback_type.value} feedback ({record.feedback_score}) on recommendation {record.recommendation_id}")


def cmd_generate(args: argparse.Namespace) -> None:
    service = _build_service(args)
    result = service.generate_recommendations_for_user(args.user_id)
    logger.info(
        f"User {args.user_id}: {result.created} created, {result.extended} extended, "
        f"{result.unchanged} unchanged, {result.skipped} over limit"
    )


def cmd_sweep(args: argparse.Namespace) -> None:
    """Run one sweep in the foreground."""
    service = _build_service(args)
    scheduler = service.build_scheduler()
    if args.kind == "cleanup":
        scheduler.cleanup()
        return
    if args.kind == "refresh":
        scheduler.refresh_profiles()
        return
    if args.kind == "daily":
        summary = scheduler.run_full_sweep(show_progress=args.progress)
    else:
        summary = scheduler.run_active_sweep(hours_back=args.hours_back, show_progress=args.progress)
    if summary.error_counts:
        logger.info(f"Errors: {dict(summary.error_counts)}")


def cmd_scheduler(args: argparse.Namespace) -> None:
    """Run the cron jobs until interrupted."""
    service = _build_service(args)
    scheduler = service.build_scheduler()
    if not scheduler.start():
        return

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down scheduler")
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    for job in scheduler.jobs():
        logger.info(f"  {job['id']}: next run {job['next_run_time']}")
    try:
        while not stop.wait(timeout=1.0):
            pass
    finally:
        scheduler.shutdown(wait=True)


def cmd_analytics(args: argparse.Namespace) -> None:
    service = _build_service(args)
    stats = service.get_recommendation_analytics(days=args.days)
    logger.info(f"\nRecommendations in the last {args.days} days: {stats['total']}")
    logger.info(f"  View rate: {stats['view_rate']:.1%}  Conversion rate: {stats['conversion_rate']:.1%}")
    for key, row in sorted(stats['by_reason'].items()):
        logger.info(f"  {key:<32} {row['total']:>5} shown, {row['acted_upon']:>4} acted, {row['dismissed']:>4} dismissed")
    if stats['personalities']:
        logger.info("\nPersonalities:")
        for name, count in sorted(stats['personalities'].items(), key=lambda kv: -kv[1]):
            logger.info(f"  {name:<16} {count}")
    for run in stats['recent_sweeps']:
        logger.info(
            f"  sweep {run['name']:<7} {run['started_at']}: {run['processed']} users, "
            f"{run['failed']} failed{' (cancelled)' if run['cancelled'] else ''}"
        )


def _add_rec_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("user_id", type=int, help="User id")
    parser.add_argument("kind", choices=["content", "group"], help="Recommendation kind")
    parser.add_argument("recommendation_id", type=int, help="Recommendation id")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ShowSync recommendation engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--config", help="JSON file overriding recommendation tunables")
    parser.add_argument("--catalog-url", help="Use the HTTP catalog service at this URL instead of the local tables")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import", help="Import media, interactions and groups from JSON")
    import_parser.add_argument("file", help="JSON file")
    import_parser.add_argument("--maintenance", action="store_true", help="Run VACUUM/ANALYZE after import")
    import_parser.set_defaults(func=cmd_import)

    profile_parser = subparsers.add_parser("profile", help="Show a user's preference profile")
    profile_parser.add_argument("user_id", type=int, help="User id")
    profile_parser.add_argument("--refresh", action="store_true", help="Recalculate before showing")
    profile_parser.set_defaults(func=cmd_profile)

    rec_parser = subparsers.add_parser("recommend", help="List stored personal recommendations")
    rec_parser.add_argument("user_id", type=int, help="User id")
    rec_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    rec_parser.set_defaults(func=cmd_recommend)

    trending_parser = subparsers.add_parser("trending", help="Trending titles, personalized when possible")
    trending_parser.add_argument("user_id", type=int, help="User id")
    trending_parser.add_argument("--limit", type=int, default=10, help="Number of titles")
    trending_parser.set_defaults(func=cmd_trending)

    group_parser = subparsers.add_parser("group-recs", help="Group suggestions, or content within one group")
    group_parser.add_argument("user_id", type=int, help="User id")
    group_parser.add_argument("--group", type=int, help="Show content recommendations within this group")
    group_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    group_parser.set_defaults(func=cmd_group_recs)

    compat_parser = subparsers.add_parser("compat", help="Compatibility between two users")
    compat_parser.add_argument("user_a", type=int, help="First user id")
    compat_parser.add_argument("user_b", type=int, help="Second user id")
    compat_parser.set_defaults(func=cmd_compat)

    similar_parser = subparsers.add_parser("similar-users", help="Most compatible users")
    similar_parser.add_argument("user_id", type=int, help="User id")
    similar_parser.add_argument("--limit", type=int, default=10, help="Number of users")
    similar_parser.set_defaults(func=cmd_similar_users)

    realtime_parser = subparsers.add_parser("realtime", help="Ad hoc recommendations around a title")
    realtime_parser.add_argument("user_id", type=int, help="User id")
    realtime_parser.add_argument("media_id", type=int, help="Title the user is looking at")
    realtime_parser.add_argument("--limit", type=int, default=10, help="Number of titles")
    realtime_parser.set_defaults(func=cmd_realtime)

    view_parser = subparsers.add_parser("view", help="Mark a recommendation viewed")
    _add_rec_target(view_parser)
    view_parser.set_defaults(func=cmd_view)

    act_parser = subparsers.add_parser("act", help="Record that the user acted on a recommendation")
    _add_rec_target(act_parser)
    act_parser.add_argument("--action", choices=["joined_group", "added_to_library"], help="Action taken")
    act_parser.set_defaults(func=cmd_act)

    dismiss_parser = subparsers.add_parser("dismiss", help="Dismiss a recommendation")
    _add_rec_target(dismiss_parser)
    dismiss_parser.add_argument("--reason", help="Why it was dismissed")
    dismiss_parser.set_defaults(func=cmd_dismiss)

    feedback_parser = subparsers.add_parser("feedback", help="Rate a recommendation 1-5")
    _add_rec_target(feedback_parser)
    feedback_parser.add_argument("rating", type=int, help="Rating from 1 to 5")
    feedback_parser.add_argument("--text", help="Optional comment")
    feedback_parser.set_defaults(func=cmd_feedback)

    generate_parser = subparsers.add_parser("generate", help="Recalculate and regenerate one user's recommendations")
    generate_parser.add_argument("user_id", type=int, help="User id")
    generate_parser.set_defaults(func=cmd_generate)

    sweep_parser = subparsers.add_parser("sweep", help="Run a batch sweep now")
    sweep_parser.add_argument("kind", choices=["daily", "active", "cleanup", "refresh"], help="Which sweep")
    sweep_parser.add_argument("--hours-back", type=int, help="Activity lookback for the active sweep")
    sweep_parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    sweep_parser.set_defaults(func=cmd_sweep)

    scheduler_parser = subparsers.add_parser("scheduler", help="Run the scheduled jobs until interrupted")
    scheduler_parser.set_defaults(func=cmd_scheduler)

    analytics_parser = subparsers.add_parser("analytics", help="Engagement and conversion summary")
    analytics_parser.add_argument("--days", type=int, default=30, help="Lookback window in days")
    analytics_parser.set_defaults(func=cmd_analytics)

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    started = datetime.now()
    try:
        init_db()
        args.func(args)
    except RecommendationError as exc:
        logger.error(f"{exc.code}: {exc}")
        sys.exit(1)
    logger.debug(f"{args.command} finished in {(datetime.now() - started).total_seconds():.1f}s")
