from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    logger = logging.getLogger("mediaintel.migrations")
    with conn.transaction():
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)


def _serial_pk(conn: Any) -> str:
    if getattr(conn, "backend", "sqlite") == "postgres":
        return "BIGSERIAL PRIMARY KEY"
    return "INTEGER PRIMARY KEY AUTOINCREMENT"


def _migration_initial_schema(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            scrape_interval_seconds INTEGER NOT NULL DEFAULT 300,
            last_scraped_at TEXT NULL,
            language TEXT NOT NULL DEFAULT 'fa',
            category TEXT NULL,
            config_json TEXT NULL,
            last_error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS articles (
            id {_serial_pk(conn)},
            source_id TEXT NOT NULL REFERENCES sources(id),
            url TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            published_at TEXT NOT NULL,
            published_at_source TEXT NULL,
            author TEXT NULL,
            categories_json TEXT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at, id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_status ON articles(status)"
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS analysis_results (
            id {_serial_pk(conn)},
            article_id INTEGER NOT NULL UNIQUE REFERENCES articles(id),
            sentiment_label TEXT NOT NULL,
            sentiment_score REAL NOT NULL,
            sentiment_confidence REAL NOT NULL,
            topics_json TEXT NOT NULL,
            entities_json TEXT NOT NULL,
            keywords_json TEXT NOT NULL,
            summary TEXT NULL,
            language TEXT NOT NULL,
            model TEXT NULL,
            processing_time_ms INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_jobs_table(conn: Any) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS jobs (
            id {_serial_pk(conn)},
            lane TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            priority INTEGER NOT NULL DEFAULT 1,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            backoff_seconds REAL NOT NULL DEFAULT 0,
            available_at TEXT NOT NULL,
            enqueued_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL,
            result_json TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_lane_status ON jobs(lane, status, priority, id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_locked ON jobs(locked_by, locked_at)"
    )


def _migration_trends_table(conn: Any) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS trends (
            id {_serial_pk(conn)},
            topic TEXT NOT NULL,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            article_count INTEGER NOT NULL,
            frequency INTEGER NOT NULL,
            velocity REAL NOT NULL,
            acceleration REAL NOT NULL,
            source_diversity INTEGER NOT NULL,
            source_ids_json TEXT NOT NULL,
            score REAL NOT NULL,
            weight REAL NOT NULL,
            start_time TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(topic, window_start)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_trends_active ON trends(is_active, weight)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_trends_window ON trends(window_start)"
    )


def _migration_source_runs(conn: Any) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS source_runs (
            id {_serial_pk(conn)},
            source_id TEXT NOT NULL REFERENCES sources(id),
            job_id INTEGER NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NULL,
            status TEXT NOT NULL,
            http_status INTEGER NULL,
            items_found INTEGER NOT NULL DEFAULT 0,
            items_stored INTEGER NOT NULL DEFAULT 0,
            skipped_duplicates INTEGER NOT NULL DEFAULT 0,
            items_rejected INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_source_runs_source ON source_runs(source_id, started_at)"
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_table", _migration_jobs_table),
        ("003_trends_table", _migration_trends_table),
        ("004_source_runs", _migration_source_runs),
    ]
