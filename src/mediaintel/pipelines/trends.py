from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from ..config import Config
from ..enrichment.trends import TrendDocument, detect_trends, trend_weight
from ..models import Job, JobOutcome
from ..storage import (
    deactivate_superseded_trends,
    delete_window_trends,
    earliest_article_time,
    get_latest_trend_for_topic,
    get_setting,
    list_articles_between,
    retire_stale_trends,
    set_setting,
    upsert_trend,
)
from ..utils import log_event, parse_iso, to_iso, utc_now

WATERMARK_KEY = "trends.watermark"


def handle_trend_detection(
    conn: Any,
    config: Config,
    job: Job | None,
    logger: logging.Logger,
    now: datetime | None = None,
) -> JobOutcome:
    """Recompute trend windows from the watermark up to now and persist them.

    The last computed window may still be filling, so the watermark is left at
    its start and the next run scores it again.
    """
    now = now or utc_now()
    window = timedelta(hours=config.trends.window_hours)

    watermark = get_setting(conn, WATERMARK_KEY, None)
    if isinstance(watermark, str) and watermark:
        anchor = parse_iso(watermark)
    else:
        earliest = earliest_article_time(conn)
        if earliest is None:
            return JobOutcome("skipped", {"reason": "no_articles"})
        anchor = parse_iso(earliest)

    articles = list_articles_between(conn, to_iso(anchor - window), to_iso(now))
    documents = [
        TrendDocument(
            id=article.id,
            source_id=article.source_id,
            published_at=parse_iso(article.published_at),
            text=f"{article.title} {article.content}",
        )
        for article in articles
    ]
    windows = detect_trends(
        documents,
        window,
        anchor=anchor,
        end=now,
        top_k=config.trends.top_k,
        min_score=config.trends.min_score,
        languages=config.trends.languages,
    )
    if not windows:
        return JobOutcome("skipped", {"reason": "no_new_articles", "anchor": to_iso(anchor)})

    retire_after = window * config.trends.retire_after_windows
    persisted = 0
    retired = 0
    with conn.transaction():
        for scored in windows:
            window_start = to_iso(scored.window_start)
            window_end = to_iso(scored.window_end)
            topics = [trend.topic for trend in scored.trends]
            delete_window_trends(conn, window_start, topics)
            for trend in scored.trends:
                previous = get_latest_trend_for_topic(conn, trend.topic, window_start)
                if previous is not None and previous.window_end == window_start:
                    start_time = previous.start_time
                else:
                    start_time = window_start
                upsert_trend(
                    conn,
                    topic=trend.topic,
                    window_start=window_start,
                    window_end=window_end,
                    article_count=trend.article_count,
                    frequency=trend.frequency,
                    velocity=trend.velocity,
                    acceleration=trend.acceleration,
                    source_diversity=trend.source_diversity,
                    source_ids=trend.source_ids,
                    score=trend.score,
                    weight=trend_weight(
                        trend.velocity,
                        trend.acceleration,
                        trend.article_count,
                        trend.source_diversity,
                        parse_iso(start_time),
                        now,
                    ),
                    start_time=start_time,
                )
                deactivate_superseded_trends(conn, trend.topic, window_start)
                persisted += 1
            retired += retire_stale_trends(
                conn, to_iso(scored.window_start - retire_after), topics
            )
            log_event(
                logger,
                logging.INFO,
                "trend_window_scored",
                window_start=window_start,
                articles=scored.article_count,
                topics=",".join(topics) or "-",
            )
        new_watermark = to_iso(windows[-1].window_start)
        set_setting(conn, WATERMARK_KEY, new_watermark)

    return JobOutcome(
        "completed",
        {
            "windows": len(windows),
            "trends": persisted,
            "retired": retired,
            "watermark": new_watermark,
        },
    )
