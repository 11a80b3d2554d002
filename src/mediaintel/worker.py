from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .analysis import Analyzer, LLMAnalyzer
from .config import Config
from .db import Store
from .errors import InvalidPayloadError, PipelineError
from .fetchers import get_fetcher
from .jobs import (
    ack_job,
    enqueue_job,
    enqueue_jobs,
    expire_stale_leases,
    fail_job,
    has_pending_job,
    lease_job,
)
from .models import Job, JobOutcome, Lane
from .pipelines.analyze import handle_analyze, on_analyze_exhausted
from .pipelines.scrape import FetcherFactory, handle_scrape, on_scrape_exhausted
from .pipelines.trends import handle_trend_detection
from .storage import get_setting, list_due_sources, set_setting
from .utils import configure_logging, log_event, parse_iso, to_iso, utc_now

TREND_LAST_ENQUEUED_KEY = "scheduler.trend_last_enqueued_at"

ExhaustionHook = Callable[[Any, Job, str, logging.Logger], None]

EXHAUSTION_HOOKS: dict[str, ExhaustionHook] = {
    Lane.SCRAPE.value: on_scrape_exhausted,
    Lane.ANALYZE.value: on_analyze_exhausted,
}


@dataclass
class Services:
    """External collaborators handed to job handlers."""

    fetcher_factory: FetcherFactory = get_fetcher
    analyzer: Analyzer | None = None

    @classmethod
    def from_config(cls, config: Config) -> "Services":
        return cls(fetcher_factory=get_fetcher, analyzer=LLMAnalyzer(config.analyzer))


def _setup_logging() -> logging.Logger:
    return configure_logging("mediaintel.worker")


def default_worker_id() -> str:
    return os.environ.get("HOSTNAME", "worker")


def process_one(
    conn: Any,
    config: Config,
    job: Job,
    services: Services,
    logger: logging.Logger,
) -> JobOutcome:
    """Run the handler for ``job``; handler errors come back as a failed outcome."""
    try:
        if job.lane == Lane.SCRAPE.value:
            return handle_scrape(conn, config, job, logger, services.fetcher_factory)
        if job.lane == Lane.ANALYZE.value:
            analyzer = services.analyzer or LLMAnalyzer(config.analyzer, logger=logger)
            return handle_analyze(conn, config, job, logger, analyzer)
        if job.lane == Lane.TREND.value:
            return handle_trend_detection(conn, config, job, logger)
        raise InvalidPayloadError(f"unknown lane {job.lane}")
    except PipelineError as exc:
        return JobOutcome(
            "failed",
            {},
            error=f"{type(exc).__name__}: {exc}",
            retryable=exc.retryable,
        )
    except Exception as exc:  # noqa: BLE001
        return JobOutcome("failed", {}, error=f"{type(exc).__name__}: {exc}", retryable=True)


def settle_job(
    conn: Any,
    job: Job,
    outcome: JobOutcome,
    logger: logging.Logger,
) -> str:
    if outcome.ok:
        result = {"status": outcome.status, **outcome.result}
        if not ack_job(conn, job.id, result, worker_id=job.locked_by):
            log_event(logger, logging.WARNING, "job_lease_lost", job_id=job.id, lane=job.lane)
            return "stale"
        log_event(
            logger,
            logging.INFO,
            "job_completed",
            job_id=job.id,
            lane=job.lane,
            status=outcome.status,
        )
        return outcome.status

    error = outcome.error or "unknown_error"
    decision = fail_job(
        conn, job.id, error, retryable=outcome.retryable, worker_id=job.locked_by
    )
    if decision == "retried":
        log_event(
            logger,
            logging.WARNING,
            "job_retry_scheduled",
            job_id=job.id,
            lane=job.lane,
            attempt=job.attempts,
            error=error,
        )
    elif decision == "exhausted":
        log_event(
            logger,
            logging.ERROR,
            "job_exhausted",
            job_id=job.id,
            lane=job.lane,
            attempts=job.attempts,
            error=error,
        )
        _run_exhaustion_hook(conn, job, error, logger)
    else:
        log_event(logger, logging.WARNING, "job_lease_lost", job_id=job.id, lane=job.lane)
    return decision


def _run_exhaustion_hook(conn: Any, job: Job, error: str, logger: logging.Logger) -> None:
    hook = EXHAUSTION_HOOKS.get(job.lane)
    if hook is not None:
        hook(conn, job, error, logger)


def release_expired_leases(
    conn: Any, config: Config, lane: str, logger: logging.Logger
) -> int:
    expired = expire_stale_leases(conn, lane, config.queue.lease_timeout_seconds)
    for job in expired:
        log_event(logger, logging.ERROR, "job_exhausted", job_id=job.id, lane=lane, error="lease_expired")
        _run_exhaustion_hook(conn, job, "lease_expired", logger)
    return len(expired)


def wait_for_job(
    conn: Any,
    config: Config,
    lane: str,
    worker_id: str,
    stop_event: threading.Event,
    logger: logging.Logger,
) -> Job | None:
    """Poll ``lane`` until a job is leased or ``stop_event`` is set."""
    while not stop_event.is_set():
        release_expired_leases(conn, config, lane, logger)
        job = lease_job(conn, lane, worker_id, config.queue.lease_timeout_seconds)
        if job is not None:
            return job
        stop_event.wait(config.queue.poll_seconds)
    return None


def run_job(
    conn: Any,
    config: Config,
    job: Job,
    services: Services,
    logger: logging.Logger,
) -> str:
    log_event(
        logger,
        logging.INFO,
        "job_leased",
        job_id=job.id,
        lane=job.lane,
        attempt=job.attempts,
        worker=job.locked_by,
    )
    outcome = process_one(conn, config, job, services, logger)
    return settle_job(conn, job, outcome, logger)


def run_once(
    store: Store,
    config: Config,
    lane: str,
    worker_id: str,
    services: Services,
    logger: logging.Logger | None = None,
) -> str | None:
    logger = logger or _setup_logging()
    with store.session() as conn:
        release_expired_leases(conn, config, lane, logger)
        job = lease_job(conn, lane, worker_id, config.queue.lease_timeout_seconds)
        if job is None:
            return None
        return run_job(conn, config, job, services, logger)


def _lane_loop(
    store: Store,
    config: Config,
    lane: str,
    worker_id: str,
    services: Services,
    stop_event: threading.Event,
    logger: logging.Logger,
) -> int:
    processed = 0
    with store.session() as conn:
        while not stop_event.is_set():
            job = wait_for_job(conn, config, lane, worker_id, stop_event, logger)
            if job is None:
                break
            run_job(conn, config, job, services, logger)
            processed += 1
    return processed


def tick_scheduler(
    conn: Any,
    config: Config,
    logger: logging.Logger,
    now: datetime | None = None,
) -> dict[str, int]:
    """Enqueue scrape jobs for due sources and the periodic trend job."""
    now = now or utc_now()
    scrape_policy = config.queue.lane(Lane.SCRAPE.value).retry_policy
    payloads = [
        {"source_id": source.id}
        for source in list_due_sources(conn, to_iso(now))
        if not has_pending_job(conn, Lane.SCRAPE.value, {"source_id": source.id})
    ]
    scrape_enqueued = len(
        enqueue_jobs(conn, Lane.SCRAPE.value, payloads, retry_policy=scrape_policy, now=now)
    )

    trend_enqueued = 0
    last = get_setting(conn, TREND_LAST_ENQUEUED_KEY, None)
    interval = timedelta(seconds=config.trends.interval_seconds)
    trend_due = not isinstance(last, str) or parse_iso(last) + interval <= now
    if trend_due and not has_pending_job(conn, Lane.TREND.value):
        enqueue_job(
            conn,
            Lane.TREND.value,
            {},
            retry_policy=config.queue.lane(Lane.TREND.value).retry_policy,
            now=now,
        )
        set_setting(conn, TREND_LAST_ENQUEUED_KEY, to_iso(now))
        trend_enqueued = 1

    if scrape_enqueued or trend_enqueued:
        log_event(
            logger,
            logging.INFO,
            "scheduler_tick",
            scrape_enqueued=scrape_enqueued,
            trend_enqueued=trend_enqueued,
        )
    return {"scrape": scrape_enqueued, "trend": trend_enqueued}


def _scheduler_loop(
    store: Store,
    config: Config,
    stop_event: threading.Event,
    logger: logging.Logger,
) -> int:
    ticks = 0
    with store.session() as conn:
        while not stop_event.is_set():
            tick_scheduler(conn, config, logger)
            ticks += 1
            stop_event.wait(config.scheduler.tick_seconds)
    return ticks


def run_workers(
    store: Store,
    config: Config,
    lanes: list[str],
    worker_id: str,
    services: Services,
    stop_event: threading.Event,
    once: bool = False,
    logger: logging.Logger | None = None,
) -> int:
    """Run one thread pool per lane plus the scheduler until ``stop_event`` is set.

    With ``once`` the scheduler ticks a single time and each lane handles at
    most one job. Errors outside job handlers (the store going away, for
    instance) stop every thread and propagate.
    """
    logger = logger or _setup_logging()
    if once:
        processed = 0
        if config.scheduler.enabled:
            with store.session() as conn:
                tick_scheduler(conn, config, logger)
        for lane in lanes:
            if run_once(store, config, lane, worker_id, services, logger) is not None:
                processed += 1
        return processed

    slots = sum(config.queue.lane(lane).concurrency for lane in lanes) + 1
    with ThreadPoolExecutor(max_workers=slots, thread_name_prefix="mediaintel") as executor:
        futures = []
        lane_futures = []
        if config.scheduler.enabled:
            futures.append(executor.submit(_scheduler_loop, store, config, stop_event, logger))
        for lane in lanes:
            for slot in range(config.queue.lane(lane).concurrency):
                lane_futures.append(
                    executor.submit(
                        _lane_loop,
                        store,
                        config,
                        lane,
                        f"{worker_id}:{lane}:{slot}",
                        services,
                        stop_event,
                        logger,
                    )
                )
        futures.extend(lane_futures)
        log_event(logger, logging.INFO, "workers_started", lanes=",".join(lanes), threads=len(futures))
        wait(futures, return_when=FIRST_EXCEPTION)
        stop_event.set()
        for future in futures:
            future.result()
        processed = sum(future.result() for future in lane_futures)
    log_event(logger, logging.INFO, "workers_stopped", processed=processed)
    return processed
