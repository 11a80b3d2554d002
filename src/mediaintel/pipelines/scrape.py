from __future__ import annotations

import logging
from typing import Any, Callable

from ..config import Config
from ..errors import FetchError, InvalidPayloadError
from ..fetchers import Fetcher, get_fetcher
from ..jobs import enqueue_job
from ..models import Job, JobOutcome, Lane, SourceStatus
from ..normalize import normalize_items
from ..storage import (
    create_article,
    find_article_by_url,
    get_source,
    record_source_run,
    set_source_status,
    update_source,
)
from ..utils import log_event, utc_now_iso

FetcherFactory = Callable[..., Fetcher]


def handle_scrape(
    conn: Any,
    config: Config,
    job: Job,
    logger: logging.Logger,
    fetcher_factory: FetcherFactory = get_fetcher,
) -> JobOutcome:
    """Fetch one source, store its new articles and queue them for analysis."""
    source_id = job.payload.get("source_id")
    if not isinstance(source_id, str) or not source_id:
        raise InvalidPayloadError("scrape job requires source_id")

    source = get_source(conn, source_id)
    if source is None:
        log_event(logger, logging.WARNING, "scrape_source_missing", source_id=source_id)
        return JobOutcome("skipped", {"reason": "source_not_found", "source_id": source_id})
    if source.status != SourceStatus.ACTIVE.value:
        log_event(
            logger,
            logging.INFO,
            "scrape_source_inactive",
            source_id=source_id,
            status=source.status,
        )
        return JobOutcome("skipped", {"reason": "source_not_active", "source_id": source_id})

    started_at = utc_now_iso()
    fetcher = fetcher_factory(source.type, config.fetch, logger=logger)
    try:
        fetched = fetcher.fetch(source)
    except FetchError as exc:
        record_source_run(
            conn,
            source_id=source.id,
            started_at=started_at,
            finished_at=utc_now_iso(),
            status="error",
            http_status=None,
            items_found=0,
            items_stored=0,
            skipped_duplicates=0,
            items_rejected=0,
            error=str(exc),
            job_id=job.id,
        )
        update_source(conn, source.id, last_error=str(exc))
        raise

    candidates, rejected = normalize_items(
        fetched.items, source, config.fetch, fetched_at=started_at
    )
    for rejection in rejected:
        log_event(
            logger,
            logging.INFO,
            "article_rejected",
            source_id=source.id,
            url=rejection.url,
            reasons=",".join(rejection.reasons),
        )

    analyze_policy = config.queue.lane(Lane.ANALYZE.value).retry_policy
    stored_ids: list[int] = []
    duplicates = 0
    for candidate in candidates:
        if find_article_by_url(conn, candidate.url) is not None:
            duplicates += 1
            continue
        with conn.transaction():
            article = create_article(conn, candidate)
            if article is None:
                duplicates += 1
                continue
            enqueue_job(
                conn,
                Lane.ANALYZE.value,
                {"article_id": article.id},
                retry_policy=analyze_policy,
            )
        stored_ids.append(article.id)

    finished_at = utc_now_iso()
    update_source(conn, source.id, last_scraped_at=finished_at, last_error=None)
    record_source_run(
        conn,
        source_id=source.id,
        started_at=started_at,
        finished_at=finished_at,
        status="ok",
        http_status=fetched.http_status,
        items_found=len(fetched.items),
        items_stored=len(stored_ids),
        skipped_duplicates=duplicates,
        items_rejected=len(rejected),
        error=None,
        job_id=job.id,
    )
    log_event(
        logger,
        logging.INFO,
        "scrape_counts",
        source_id=source.id,
        found=len(fetched.items),
        stored=len(stored_ids),
        duplicates=duplicates,
        rejected=len(rejected),
    )
    return JobOutcome(
        "completed",
        {
            "source_id": source.id,
            "found": len(fetched.items),
            "stored": len(stored_ids),
            "duplicates": duplicates,
            "rejected": len(rejected),
            "article_ids": stored_ids,
            "feed_errors": list(fetched.errors),
        },
    )


def on_scrape_exhausted(conn: Any, job: Job, error: str, logger: logging.Logger) -> None:
    source_id = job.payload.get("source_id")
    if not isinstance(source_id, str) or get_source(conn, source_id) is None:
        return
    set_source_status(conn, source_id, SourceStatus.ERROR.value, error=error)
    log_event(logger, logging.WARNING, "source_marked_error", source_id=source_id, error=error)
