from __future__ import annotations

import argparse
import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator

from .analysis import LLMAnalyzer
from .config import Config, load_config, load_sources_file
from .db import Store
from .errors import ConfigError
from .jobs import (
    enqueue_job,
    list_jobs,
    pause_lane,
    purge_jobs,
    queue_stats,
    resume_lane,
)
from .models import ArticleStatus, JobStatus, Lane, SourceStatus, SourceType
from .pipelines.analyze import analyze_batch
from .pipelines.trends import handle_trend_detection
from .storage import (
    list_active_trends,
    list_trends_in_range,
    list_articles,
    list_sources,
    requeue_article,
    set_source_status,
    upsert_source,
)
from .utils import configure_logging, log_event, parse_iso, to_iso, utc_now
from .worker import Services, default_worker_id, run_workers


def _setup_logging() -> logging.Logger:
    return configure_logging("mediaintel")


def build_store(config: Config) -> Store:
    return Store(path=config.paths.state_db)


@contextmanager
def _session(args: argparse.Namespace) -> Iterator[tuple[Config, object]]:
    config = load_config(args.config)
    store = build_store(config)
    with store.session() as conn:
        yield config, conn


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = load_config(args.config)
    lanes = _parse_lanes(args.lanes)
    store = build_store(config)
    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        log_event(logger, logging.INFO, "shutdown_requested", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    processed = run_workers(
        store,
        config,
        lanes,
        args.worker_id,
        Services.from_config(config),
        stop_event,
        once=args.once,
        logger=logger,
    )
    log_event(logger, logging.INFO, "worker_exit", processed=processed)
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        try:
            sources = load_sources_file(args.path)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
            return 1
        for source in sources:
            try:
                upsert_source(conn, source)
            except ValueError as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "sources_import_error",
                    source_id=source.get("id"),
                    error=str(exc),
                )
                return 1
    log_event(logger, logging.INFO, "sources_imported", count=len(sources))
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        sources = list_sources(conn, status=args.status)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `mediaintel sources import sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            type=source.type,
            status=source.status,
            url=source.url,
            last_scraped_at=source.last_scraped_at,
            last_error=source.last_error,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    source_dict = {
        "id": args.id,
        "name": args.name,
        "url": args.url,
        "type": args.type,
        "language": args.language,
        "category": args.category,
        "scrape_interval_seconds": args.interval,
    }
    if args.base_url:
        source_dict["config"] = {"base_url": args.base_url}
    with _session(args) as (_config, conn):
        try:
            upsert_source(conn, source_dict)
        except ValueError as exc:
            log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
            return 1
    log_event(logger, logging.INFO, "source_added", source_id=args.id)
    return 0


def _cmd_sources_set_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        if not set_source_status(conn, args.source_id, args.status):
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
    log_event(logger, logging.INFO, "source_status_set", source_id=args.source_id, status=args.status)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    payload: dict[str, object] = {}
    if args.lane == Lane.SCRAPE.value:
        if not args.source_id:
            log_event(logger, logging.ERROR, "job_enqueue_error", error="--source-id is required")
            return 1
        payload["source_id"] = args.source_id
    elif args.lane == Lane.ANALYZE.value:
        if args.article_id is None:
            log_event(logger, logging.ERROR, "job_enqueue_error", error="--article-id is required")
            return 1
        payload["article_id"] = args.article_id
    with _session(args) as (config, conn):
        job_id = enqueue_job(
            conn,
            args.lane,
            payload,
            priority=args.priority,
            retry_policy=config.queue.lane(args.lane).retry_policy,
        )
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, lane=args.lane)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        jobs = list_jobs(conn, lane=args.lane, status=args.status, limit=args.limit)
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            lane=job.lane,
            status=job.status,
            priority=job.priority,
            attempts=f"{job.attempts}/{job.max_attempts}",
            enqueued_at=job.enqueued_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        stats = queue_stats(conn)
    for lane, counts in stats.items():
        log_event(logger, logging.INFO, "queue_stats", lane=lane, **counts)
    return 0


def _cmd_jobs_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    older_than = args.older_than_hours * 3600
    with _session(args) as (_config, conn):
        removed = purge_jobs(conn, args.status, older_than)
    log_event(logger, logging.INFO, "jobs_purged", status=args.status, removed=removed)
    return 0


def _cmd_jobs_pause(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        pause_lane(conn, args.lane)
    log_event(logger, logging.INFO, "lane_paused", lane=args.lane)
    return 0


def _cmd_jobs_resume(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        resume_lane(conn, args.lane)
    log_event(logger, logging.INFO, "lane_resumed", lane=args.lane)
    return 0


def _cmd_analyze_pending(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (config, conn):
        articles = list_articles(conn, status=ArticleStatus.PENDING.value, limit=args.limit)
        if not articles:
            log_event(logger, logging.INFO, "no_pending_articles")
            return 0
        result = analyze_batch(conn, config, articles, LLMAnalyzer(config.analyzer, logger=logger), logger)
    return 1 if result.failed and not result.analyzed else 0


def _cmd_articles_requeue(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (config, conn):
        if not requeue_article(conn, args.article_id):
            log_event(
                logger,
                logging.ERROR,
                "article_requeue_refused",
                article_id=args.article_id,
                reason="article must be failed and unanalyzed",
            )
            return 1
        job_id = enqueue_job(
            conn,
            Lane.ANALYZE.value,
            {"article_id": args.article_id},
            retry_policy=config.queue.lane(Lane.ANALYZE.value).retry_policy,
        )
    log_event(logger, logging.INFO, "article_requeued", article_id=args.article_id, job_id=job_id)
    return 0


def _cmd_trends_detect(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (config, conn):
        outcome = handle_trend_detection(conn, config, None, logger)
    log_event(logger, logging.INFO, "trends_detected", status=outcome.status, **outcome.result)
    return 0


def _cmd_trends_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (_config, conn):
        if args.since:
            until = parse_iso(args.until) if args.until else utc_now()
            trends = list_trends_in_range(conn, to_iso(parse_iso(args.since)), to_iso(until))
        else:
            trends = list_active_trends(conn, limit=args.limit)
    for trend in trends:
        log_event(
            logger,
            logging.INFO,
            "trend",
            topic=trend.topic,
            weight=trend.weight,
            score=trend.score,
            velocity=trend.velocity,
            acceleration=trend.acceleration,
            sources=trend.source_diversity,
            window_start=trend.window_start,
            active=trend.is_active,
        )
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    with _session(args) as (config, _conn):
        log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _parse_lanes(value: str | None) -> list[str]:
    if not value:
        return [lane.value for lane in Lane]
    lanes = [item.strip() for item in value.split(",") if item.strip()]
    unknown = [lane for lane in lanes if lane not in {item.value for item in Lane}]
    if unknown:
        raise ConfigError(f"unknown lanes: {', '.join(unknown)}")
    return lanes


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediaintel", description="media-intel pipeline CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to MI_CONFIG_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    lane_choices = [lane.value for lane in Lane]

    worker_parser = subparsers.add_parser("worker", help="Run lane worker pools and the scheduler")
    worker_parser.add_argument("--lanes", default=None, help="Comma separated lanes (default: all)")
    worker_parser.add_argument("--once", action="store_true", help="Tick once and run one job per lane")
    worker_parser.add_argument("--worker-id", default=default_worker_id())
    worker_parser.set_defaults(func=_cmd_worker)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.add_argument("--status", choices=[item.value for item in SourceStatus], default=None)
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_add = sources_subparsers.add_parser("add", help="Add or update a source")
    sources_add.add_argument("--id", required=True)
    sources_add.add_argument("--name", required=True)
    sources_add.add_argument("--url", required=True)
    sources_add.add_argument(
        "--type",
        choices=[item.value for item in SourceType],
        default=SourceType.RSS.value,
    )
    sources_add.add_argument("--language", default="fa")
    sources_add.add_argument("--category", default=None)
    sources_add.add_argument("--interval", type=int, default=300, help="Scrape interval in seconds")
    sources_add.add_argument("--base-url", default=None)
    sources_add.set_defaults(func=_cmd_sources_add)

    sources_status = sources_subparsers.add_parser("set-status", help="Activate or deactivate a source")
    sources_status.add_argument("source_id")
    sources_status.add_argument("status", choices=[item.value for item in SourceStatus])
    sources_status.set_defaults(func=_cmd_sources_set_status)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("lane", choices=lane_choices)
    jobs_enqueue.add_argument("--source-id", default=None)
    jobs_enqueue.add_argument("--article-id", type=int, default=None)
    jobs_enqueue.add_argument("--priority", type=int, default=1)
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--lane", choices=lane_choices, default=None)
    jobs_list.add_argument("--status", choices=[item.value for item in JobStatus], default=None)
    jobs_list.add_argument("--limit", type=int, default=50)
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_stats = jobs_subparsers.add_parser("stats", help="Job counts per lane and status")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    jobs_purge = jobs_subparsers.add_parser("purge", help="Delete old finished jobs")
    jobs_purge.add_argument(
        "--status",
        choices=[JobStatus.COMPLETED.value, JobStatus.FAILED.value],
        default=JobStatus.COMPLETED.value,
    )
    jobs_purge.add_argument("--older-than-hours", type=float, default=24)
    jobs_purge.set_defaults(func=_cmd_jobs_purge)

    jobs_pause = jobs_subparsers.add_parser("pause", help="Stop leasing jobs from a lane")
    jobs_pause.add_argument("lane", choices=lane_choices)
    jobs_pause.set_defaults(func=_cmd_jobs_pause)

    jobs_resume = jobs_subparsers.add_parser("resume", help="Resume a paused lane")
    jobs_resume.add_argument("lane", choices=lane_choices)
    jobs_resume.set_defaults(func=_cmd_jobs_resume)

    analyze_parser = subparsers.add_parser("analyze", help="Analysis commands")
    analyze_subparsers = analyze_parser.add_subparsers(dest="analyze_command", required=True)
    analyze_pending = analyze_subparsers.add_parser("pending", help="Analyze pending articles in batches")
    analyze_pending.add_argument("--limit", type=int, default=100)
    analyze_pending.set_defaults(func=_cmd_analyze_pending)

    articles_parser = subparsers.add_parser("articles", help="Article commands")
    articles_subparsers = articles_parser.add_subparsers(dest="articles_command", required=True)
    articles_requeue = articles_subparsers.add_parser(
        "requeue", help="Send a failed, unanalyzed article back for analysis"
    )
    articles_requeue.add_argument("article_id", type=int)
    articles_requeue.set_defaults(func=_cmd_articles_requeue)

    trends_parser = subparsers.add_parser("trends", help="Trend commands")
    trends_subparsers = trends_parser.add_subparsers(dest="trends_command", required=True)
    trends_detect = trends_subparsers.add_parser("detect", help="Run trend detection now")
    trends_detect.set_defaults(func=_cmd_trends_detect)
    trends_list = trends_subparsers.add_parser("list", help="List active trends, or every trend window in a time range")
    trends_list.add_argument("--limit", type=int, default=20)
    trends_list.add_argument("--since", default=None, help="ISO timestamp; lists all windows from here")
    trends_list.add_argument("--until", default=None, help="ISO timestamp; defaults to now")
    trends_list.set_defaults(func=_cmd_trends_list)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    try:
        return args.func(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
