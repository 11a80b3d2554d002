from datetime import datetime, timedelta, timezone

import pytest

from mediaintel.pipelines.trends import WATERMARK_KEY, handle_trend_detection
from mediaintel.storage import (
    get_setting,
    list_active_trends,
    list_trends_in_range,
    set_setting,
    upsert_source,
)
from mediaintel.utils import to_iso

from helpers import add_article, source_dict

T0 = datetime(2025, 3, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def seeded(conn):
    for source_id in ("a", "b", "c"):
        upsert_source(conn, source_dict(source_id))
    set_setting(conn, WATERMARK_KEY, to_iso(T0))
    return conn


def _publish(conn, count, start, text, prefix):
    sources = ["a", "b", "c"]
    for index in range(count):
        add_article(
            conn,
            f"https://news.example/{prefix}/{index}",
            source_id=sources[index % 3],
            title=text,
            content="",
            published_at=to_iso(start + timedelta(minutes=10 * index)),
        )


def _all_trends(conn):
    return conn.execute("SELECT topic, window_start, is_active FROM trends ORDER BY window_start, topic").fetchall()


def test_trend_job_persists_scored_window(seeded, config, logger):
    _publish(seeded, 4, T0 - timedelta(hours=5), "اقتصاد", "old")
    _publish(seeded, 10, T0, "اقتصاد", "new")

    outcome = handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=4))

    assert outcome.status == "completed"
    assert outcome.result["windows"] == 1
    assert outcome.result["trends"] == 1
    trends = list_active_trends(seeded)
    assert len(trends) == 1
    trend = trends[0]
    assert trend.topic == "اقتصاد"
    assert trend.score == 20.0
    assert trend.acceleration == 6.0
    assert trend.source_diversity == 3
    assert trend.source_ids == ["a", "b", "c"]
    assert trend.window_start == to_iso(T0)
    assert trend.start_time == to_iso(T0)
    assert trend.weight == 109.98
    assert get_setting(seeded, WATERMARK_KEY, None) == to_iso(T0)


def test_rerun_updates_open_window_in_place(seeded, config, logger):
    _publish(seeded, 10, T0, "اقتصاد", "new")
    handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=2))
    _publish(seeded, 3, T0 + timedelta(hours=2), "اقتصاد", "late")

    handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=5))

    rows = _all_trends(seeded)
    assert len(rows) == 1
    assert list_active_trends(seeded)[0].frequency == 13


def test_continuing_trend_keeps_start_time(seeded, config, logger):
    _publish(seeded, 10, T0, "اقتصاد", "first")
    handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=4))
    _publish(seeded, 12, T0 + timedelta(hours=6), "اقتصاد", "second")

    outcome = handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=10))

    assert outcome.result["windows"] == 2
    active = list_active_trends(seeded)
    assert len(active) == 1
    assert active[0].window_start == to_iso(T0 + timedelta(hours=6))
    assert active[0].acceleration == 2.0
    assert active[0].start_time == to_iso(T0)
    assert _all_trends(seeded) == [
        ("اقتصاد", to_iso(T0), 0),
        ("اقتصاد", to_iso(T0 + timedelta(hours=6)), 1),
    ]


def test_range_query_returns_superseded_windows(seeded, config, logger):
    _publish(seeded, 10, T0, "اقتصاد", "first")
    _publish(seeded, 12, T0 + timedelta(hours=6), "اقتصاد", "second")
    handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=10))

    history = list_trends_in_range(seeded, to_iso(T0), to_iso(T0 + timedelta(hours=12)))

    assert [(trend.window_start, trend.frequency, trend.is_active) for trend in history] == [
        (to_iso(T0), 10, False),
        (to_iso(T0 + timedelta(hours=6)), 12, True),
    ]
    later = list_trends_in_range(
        seeded, to_iso(T0 + timedelta(hours=6)), to_iso(T0 + timedelta(hours=12))
    )
    assert [trend.frequency for trend in later] == [12]
    assert list_trends_in_range(seeded, to_iso(T0), to_iso(T0 + timedelta(hours=3))) == []
    assert get_setting(seeded, WATERMARK_KEY, None) == to_iso(T0 + timedelta(hours=6))


def test_absent_topic_is_retired(seeded, config, logger):
    _publish(seeded, 10, T0, "اقتصاد", "first")
    _publish(seeded, 6, T0 + timedelta(hours=6), "نفت", "second")

    outcome = handle_trend_detection(seeded, config, None, logger, now=T0 + timedelta(hours=10))

    assert outcome.result["retired"] == 1
    assert [trend.topic for trend in list_active_trends(seeded)] == ["نفت"]


def test_no_articles_skips(conn, config, logger):
    outcome = handle_trend_detection(conn, config, None, logger)

    assert outcome.status == "skipped"
    assert outcome.result["reason"] == "no_articles"


def test_anchor_defaults_to_earliest_article(conn, config, logger):
    upsert_source(conn, source_dict("a"))
    add_article(
        conn,
        "https://news.example/1",
        source_id="a",
        title="انتخابات",
        content="",
        published_at=to_iso(T0 + timedelta(minutes=30)),
    )

    outcome = handle_trend_detection(conn, config, None, logger, now=T0 + timedelta(hours=1))

    assert outcome.result["watermark"] == to_iso(T0 + timedelta(minutes=30))
    assert list_active_trends(conn)[0].topic == "انتخابات"
