from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Iterable

from .models import (
    AnalysisOutput,
    AnalysisResult,
    Article,
    ArticleCandidate,
    ArticleStatus,
    Entity,
    Sentiment,
    Source,
    SourceStatus,
    SourceType,
    Trend,
)
from .utils import json_dumps, json_loads, parse_iso, utc_now_iso

_SOURCE_COLUMNS = """
    id, name, url, type, status, scrape_interval_seconds, last_scraped_at,
    language, category, config_json, last_error
"""

_ARTICLE_COLUMNS = """
    id, source_id, url, title, content, published_at, status, author,
    categories_json, created_at, updated_at
"""

_ANALYSIS_COLUMNS = """
    id, article_id, sentiment_label, sentiment_score, sentiment_confidence,
    topics_json, entities_json, keywords_json, summary, language, model,
    processing_time_ms, created_at
"""

_TREND_COLUMNS = """
    id, topic, window_start, window_end, article_count, frequency, velocity,
    acceleration, source_diversity, source_ids_json, score, weight, start_time,
    is_active, updated_at
"""

_UPDATABLE_SOURCE_FIELDS = {
    "name",
    "url",
    "type",
    "status",
    "scrape_interval_seconds",
    "last_scraped_at",
    "language",
    "category",
    "config",
    "last_error",
}


def upsert_source(conn: Any, source_dict: dict[str, object]) -> Source:
    source = _source_from_dict(source_dict)
    cursor = conn.execute("SELECT created_at FROM sources WHERE id = ?", (source.id,))
    row = cursor.fetchone()
    created_at = row[0] if row else utc_now_iso()
    updated_at = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, url, type, status, scrape_interval_seconds, language,
             category, config_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name=excluded.name,
            url=excluded.url,
            type=excluded.type,
            status=excluded.status,
            scrape_interval_seconds=excluded.scrape_interval_seconds,
            language=excluded.language,
            category=excluded.category,
            config_json=excluded.config_json,
            updated_at=excluded.updated_at
        """,
        (
            source.id,
            source.name,
            source.url,
            source.type,
            source.status,
            source.scrape_interval_seconds,
            source.language,
            source.category,
            json_dumps(source.config),
            created_at,
            updated_at,
        ),
    )
    conn.commit()
    return source


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?",
        (source_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(conn: Any, status: str | None = None) -> list[Source]:
    if status:
        cursor = conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE status = ? ORDER BY id",
            (status,),
        )
    else:
        cursor = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM sources ORDER BY id")
    return [_row_to_source(row) for row in cursor.fetchall()]


def list_due_sources(conn: Any, now_iso: str) -> list[Source]:
    now_dt = parse_iso(now_iso)
    due: list[Source] = []
    for source in list_sources(conn, status=SourceStatus.ACTIVE.value):
        if not source.last_scraped_at:
            due.append(source)
            continue
        last_dt = parse_iso(source.last_scraped_at)
        if last_dt + timedelta(seconds=source.scrape_interval_seconds) <= now_dt:
            due.append(source)
    return due


def update_source(conn: Any, source_id: str, **fields: object) -> bool:
    unknown = set(fields) - _UPDATABLE_SOURCE_FIELDS
    if unknown:
        raise ValueError(f"unknown source fields: {', '.join(sorted(unknown))}")
    if not fields:
        return False
    assignments = []
    params: list[object] = []
    for key, value in fields.items():
        if key == "config":
            assignments.append("config_json = ?")
            params.append(json_dumps(value or {}))
        else:
            assignments.append(f"{key} = ?")
            params.append(value)
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(source_id)
    cursor = conn.execute(
        f"UPDATE sources SET {', '.join(assignments)} WHERE id = ?",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_source_status(
    conn: Any, source_id: str, status: str, error: str | None = None
) -> bool:
    if status not in {item.value for item in SourceStatus}:
        raise ValueError(f"invalid source status: {status}")
    return update_source(conn, source_id, status=status, last_error=error)


def find_article_by_url(conn: Any, url: str) -> Article | None:
    cursor = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE url = ?",
        (url,),
    )
    row = cursor.fetchone()
    return _row_to_article(row) if row else None


def get_article(conn: Any, article_id: int) -> Article | None:
    cursor = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?",
        (article_id,),
    )
    row = cursor.fetchone()
    return _row_to_article(row) if row else None


def create_article(conn: Any, candidate: ArticleCandidate) -> Article | None:
    """Insert a normalized article; ``None`` when the URL is already stored."""
    now = utc_now_iso()
    cursor = conn.execute(
        f"""
        INSERT INTO articles
            (source_id, url, title, content, published_at, published_at_source,
             author, categories_json, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(url) DO NOTHING
        RETURNING {_ARTICLE_COLUMNS}
        """,
        (
            candidate.source_id,
            candidate.url,
            candidate.title,
            candidate.content,
            candidate.published_at,
            candidate.published_at_source,
            candidate.author,
            json_dumps(candidate.categories),
            ArticleStatus.PENDING.value,
            now,
            now,
        ),
    )
    row = cursor.fetchone()
    conn.commit()
    return _row_to_article(row) if row else None


def update_article_status(conn: Any, article_id: int, status: str) -> bool:
    if status not in {item.value for item in ArticleStatus}:
        raise ValueError(f"invalid article status: {status}")
    # processed is terminal; pending is only reachable through requeue_article
    cursor = conn.execute(
        """
        UPDATE articles
        SET status = ?, updated_at = ?
        WHERE id = ? AND status != 'processed' AND ? != 'pending'
        """,
        (status, utc_now_iso(), article_id, status),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_article(conn: Any, article_id: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE articles
        SET status = 'pending', updated_at = ?
        WHERE id = ? AND status = 'failed'
          AND NOT EXISTS (SELECT 1 FROM analysis_results WHERE article_id = articles.id)
        """,
        (utc_now_iso(), article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_articles(
    conn: Any, status: str | None = None, limit: int = 100
) -> list[Article]:
    if status:
        cursor = conn.execute(
            f"""
            SELECT {_ARTICLE_COLUMNS} FROM articles
            WHERE status = ?
            ORDER BY id ASC
            LIMIT ?
            """,
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_ARTICLE_COLUMNS} FROM articles ORDER BY id ASC LIMIT ?",
            (limit,),
        )
    return [_row_to_article(row) for row in cursor.fetchall()]


def list_articles_between(conn: Any, start_iso: str, end_iso: str) -> list[Article]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS} FROM articles
        WHERE published_at >= ? AND published_at < ?
        ORDER BY published_at ASC, id ASC
        """,
        (start_iso, end_iso),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def earliest_article_time(conn: Any, since_iso: str | None = None) -> str | None:
    if since_iso:
        cursor = conn.execute(
            "SELECT MIN(published_at) FROM articles WHERE published_at >= ?",
            (since_iso,),
        )
    else:
        cursor = conn.execute("SELECT MIN(published_at) FROM articles")
    row = cursor.fetchone()
    return row[0] if row and row[0] else None


def count_articles(conn: Any, status: str | None = None) -> int:
    if status:
        cursor = conn.execute("SELECT COUNT(*) FROM articles WHERE status = ?", (status,))
    else:
        cursor = conn.execute("SELECT COUNT(*) FROM articles")
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def find_analysis_by_article(conn: Any, article_id: int) -> AnalysisResult | None:
    cursor = conn.execute(
        f"SELECT {_ANALYSIS_COLUMNS} FROM analysis_results WHERE article_id = ?",
        (article_id,),
    )
    row = cursor.fetchone()
    return _row_to_analysis(row) if row else None


def create_analysis(
    conn: Any,
    article_id: int,
    output: AnalysisOutput,
    processing_time_ms: int,
) -> AnalysisResult | None:
    """Store the analysis for an article; ``None`` when one already exists."""
    cursor = conn.execute(
        f"""
        INSERT INTO analysis_results
            (article_id, sentiment_label, sentiment_score, sentiment_confidence,
             topics_json, entities_json, keywords_json, summary, language, model,
             processing_time_ms, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(article_id) DO NOTHING
        RETURNING {_ANALYSIS_COLUMNS}
        """,
        (
            article_id,
            output.sentiment.label,
            output.sentiment.score,
            output.sentiment.confidence,
            json_dumps(output.topics),
            json_dumps(output.entities),
            json_dumps(output.keywords),
            output.summary,
            output.language,
            output.model,
            int(processing_time_ms),
            utc_now_iso(),
        ),
    )
    row = cursor.fetchone()
    conn.commit()
    return _row_to_analysis(row) if row else None


def upsert_trend(
    conn: Any,
    *,
    topic: str,
    window_start: str,
    window_end: str,
    article_count: int,
    frequency: int,
    velocity: float,
    acceleration: float,
    source_diversity: int,
    source_ids: Iterable[str],
    score: float,
    weight: float,
    start_time: str,
) -> Trend:
    now = utc_now_iso()
    cursor = conn.execute(
        f"""
        INSERT INTO trends
            (topic, window_start, window_end, article_count, frequency, velocity,
             acceleration, source_diversity, source_ids_json, score, weight,
             start_time, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
        ON CONFLICT(topic, window_start) DO UPDATE SET
            window_end=excluded.window_end,
            article_count=excluded.article_count,
            frequency=excluded.frequency,
            velocity=excluded.velocity,
            acceleration=excluded.acceleration,
            source_diversity=excluded.source_diversity,
            source_ids_json=excluded.source_ids_json,
            score=excluded.score,
            weight=excluded.weight,
            start_time=excluded.start_time,
            is_active=1,
            updated_at=excluded.updated_at
        RETURNING {_TREND_COLUMNS}
        """,
        (
            topic,
            window_start,
            window_end,
            article_count,
            frequency,
            velocity,
            acceleration,
            source_diversity,
            json_dumps(sorted(source_ids)),
            score,
            weight,
            start_time,
            now,
            now,
        ),
    )
    row = cursor.fetchone()
    conn.commit()
    return _row_to_trend(row)


def get_latest_trend_for_topic(
    conn: Any, topic: str, before_window_start: str
) -> Trend | None:
    cursor = conn.execute(
        f"""
        SELECT {_TREND_COLUMNS} FROM trends
        WHERE topic = ? AND window_start < ?
        ORDER BY window_start DESC
        LIMIT 1
        """,
        (topic, before_window_start),
    )
    row = cursor.fetchone()
    return _row_to_trend(row) if row else None


def deactivate_superseded_trends(conn: Any, topic: str, window_start: str) -> int:
    cursor = conn.execute(
        """
        UPDATE trends SET is_active = 0, updated_at = ?
        WHERE topic = ? AND window_start < ? AND is_active = 1
        """,
        (utc_now_iso(), topic, window_start),
    )
    conn.commit()
    return cursor.rowcount


def retire_stale_trends(
    conn: Any, cutoff_window_start: str, keep_topics: Iterable[str]
) -> int:
    """Deactivate active trends last seen at or before the cutoff window."""
    keep = list(keep_topics)
    params: list[object] = [utc_now_iso(), cutoff_window_start]
    clause = ""
    if keep:
        clause = f" AND topic NOT IN ({','.join(['?'] * len(keep))})"
        params.extend(keep)
    cursor = conn.execute(
        f"""
        UPDATE trends SET is_active = 0, updated_at = ?
        WHERE is_active = 1 AND window_start <= ?{clause}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount


def delete_window_trends(conn: Any, window_start: str, keep_topics: Iterable[str]) -> int:
    keep = list(keep_topics)
    params: list[object] = [window_start]
    clause = ""
    if keep:
        clause = f" AND topic NOT IN ({','.join(['?'] * len(keep))})"
        params.extend(keep)
    cursor = conn.execute(
        f"DELETE FROM trends WHERE window_start = ?{clause}",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount


def list_active_trends(conn: Any, limit: int = 20) -> list[Trend]:
    cursor = conn.execute(
        f"""
        SELECT {_TREND_COLUMNS} FROM trends
        WHERE is_active = 1
        ORDER BY weight DESC, velocity DESC, topic ASC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_trend(row) for row in cursor.fetchall()]


def list_trends_in_range(conn: Any, start_iso: str, end_iso: str) -> list[Trend]:
    cursor = conn.execute(
        f"""
        SELECT {_TREND_COLUMNS} FROM trends
        WHERE window_start >= ? AND window_end <= ?
        ORDER BY window_start ASC, score DESC, topic ASC
        """,
        (start_iso, end_iso),
    )
    return [_row_to_trend(row) for row in cursor.fetchall()]


def record_source_run(
    conn: Any,
    source_id: str,
    started_at: str,
    finished_at: str | None,
    status: str,
    http_status: int | None,
    items_found: int,
    items_stored: int,
    skipped_duplicates: int,
    items_rejected: int,
    error: str | None,
    job_id: int | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO source_runs
            (source_id, job_id, started_at, finished_at, status, http_status,
             items_found, items_stored, skipped_duplicates, items_rejected,
             error, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            source_id,
            job_id,
            started_at,
            finished_at,
            status,
            http_status,
            items_found,
            items_stored,
            skipped_duplicates,
            items_rejected,
            error,
            started_at,
        ),
    )
    conn.commit()


def list_source_runs(conn: Any, source_id: str, limit: int = 20) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT started_at, finished_at, status, http_status, items_found,
               items_stored, skipped_duplicates, items_rejected, error
        FROM source_runs
        WHERE source_id = ?
        ORDER BY started_at DESC, id DESC
        LIMIT ?
        """,
        (source_id, limit),
    )
    keys = (
        "started_at",
        "finished_at",
        "status",
        "http_status",
        "items_found",
        "items_stored",
        "skipped_duplicates",
        "items_rejected",
        "error",
    )
    return [dict(zip(keys, row)) for row in cursor.fetchall()]


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value_json, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json,
            updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


def _source_from_dict(data: dict[str, object]) -> Source:
    source_id = str(data.get("id") or "").strip()
    if not source_id:
        raise ValueError("source id is required")
    url = str(data.get("url") or "").strip()
    if not url:
        raise ValueError(f"source {source_id} url is required")
    source_type = str(data.get("type") or SourceType.RSS.value)
    if source_type not in {item.value for item in SourceType}:
        raise ValueError(f"source {source_id} has unknown type {source_type}")
    status = str(data.get("status") or SourceStatus.ACTIVE.value)
    if status not in {item.value for item in SourceStatus}:
        raise ValueError(f"source {source_id} has unknown status {status}")
    config = data.get("config") or {}
    if not isinstance(config, dict):
        raise ValueError(f"source {source_id} config must be a mapping")
    return Source(
        id=source_id,
        name=str(data.get("name") or source_id),
        url=url,
        type=source_type,
        status=status,
        scrape_interval_seconds=int(data.get("scrape_interval_seconds") or 300),
        last_scraped_at=None,
        language=str(data.get("language") or "fa"),
        category=data.get("category"),  # type: ignore[arg-type]
        config=dict(config),
    )


def _row_to_source(row: tuple) -> Source:
    (
        source_id,
        name,
        url,
        source_type,
        status,
        interval,
        last_scraped_at,
        language,
        category,
        config_json,
        last_error,
    ) = row
    return Source(
        id=source_id,
        name=name,
        url=url,
        type=source_type,
        status=status,
        scrape_interval_seconds=int(interval),
        last_scraped_at=last_scraped_at,
        language=language,
        category=category,
        config=json_loads(config_json, {}),
        last_error=last_error,
    )


def _row_to_article(row: tuple) -> Article:
    (
        article_id,
        source_id,
        url,
        title,
        content,
        published_at,
        status,
        author,
        categories_json,
        created_at,
        updated_at,
    ) = row
    return Article(
        id=int(article_id),
        source_id=source_id,
        url=url,
        title=title,
        content=content,
        published_at=published_at,
        status=status,
        author=author,
        categories=json_loads(categories_json, []),
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_analysis(row: tuple) -> AnalysisResult:
    (
        analysis_id,
        article_id,
        label,
        score,
        confidence,
        topics_json,
        entities_json,
        keywords_json,
        summary,
        language,
        model,
        processing_time_ms,
        created_at,
    ) = row
    entities = [
        Entity(
            text=str(item.get("text", "")),
            type=str(item.get("type", "OTHER")),
            relevance=float(item.get("relevance", 0.0)),
        )
        for item in json_loads(entities_json, [])
        if isinstance(item, dict)
    ]
    return AnalysisResult(
        id=int(analysis_id),
        article_id=int(article_id),
        sentiment=Sentiment(label=label, score=float(score), confidence=float(confidence)),
        topics=json_loads(topics_json, []),
        entities=entities,
        keywords=json_loads(keywords_json, []),
        summary=summary,
        language=language,
        model=model,
        processing_time_ms=int(processing_time_ms),
        created_at=created_at,
    )


def _row_to_trend(row: tuple) -> Trend:
    (
        trend_id,
        topic,
        window_start,
        window_end,
        article_count,
        frequency,
        velocity,
        acceleration,
        source_diversity,
        source_ids_json,
        score,
        weight,
        start_time,
        is_active,
        updated_at,
    ) = row
    return Trend(
        id=int(trend_id),
        topic=topic,
        window_start=window_start,
        window_end=window_end,
        article_count=int(article_count),
        frequency=int(frequency),
        velocity=float(velocity),
        acceleration=float(acceleration),
        source_diversity=int(source_diversity),
        source_ids=json_loads(source_ids_json, []),
        score=float(score),
        weight=float(weight),
        start_time=start_time,
        is_active=bool(is_active),
        updated_at=updated_at,
    )
