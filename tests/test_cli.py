import logging

import pytest

from mediaintel.cli import build_parser, main
from mediaintel.jobs import list_jobs
from mediaintel.storage import (
    get_source,
    list_sources,
    update_article_status,
    upsert_source,
    upsert_trend,
)

from helpers import add_article, source_dict


@pytest.fixture
def config_path(config, tmp_path):
    return str(tmp_path / "config.yml")


def test_sources_import_and_list(config_path, store, tmp_path):
    sources_file = tmp_path / "sources.yml"
    sources_file.write_text(
        "sources:\n"
        "  - id: irna\n    name: IRNA\n    url: https://www.irna.ir/rss\n"
        "  - id: isna\n    name: ISNA\n    url: https://www.isna.ir/rss\n    status: inactive\n",
        encoding="utf-8",
    )

    assert main(["--config", config_path, "sources", "import", str(sources_file)]) == 0
    assert main(["--config", config_path, "sources", "list"]) == 0

    with store.session() as conn:
        assert [source.id for source in list_sources(conn)] == ["irna", "isna"]


def test_sources_list_empty_returns_error(config_path):
    assert main(["--config", config_path, "sources", "list"]) == 1


def test_sources_set_status(config_path, store):
    with store.session() as conn:
        upsert_source(conn, source_dict())

    assert main(["--config", config_path, "sources", "set-status", "irna", "inactive"]) == 0
    assert main(["--config", config_path, "sources", "set-status", "ghost", "inactive"]) == 1

    with store.session() as conn:
        assert get_source(conn, "irna").status == "inactive"


def test_jobs_enqueue_requires_target(config_path, store):
    assert main(["--config", config_path, "jobs", "enqueue", "scrape"]) == 1
    assert main(["--config", config_path, "jobs", "enqueue", "scrape", "--source-id", "irna"]) == 0
    assert main(["--config", config_path, "jobs", "enqueue", "trend"]) == 0

    with store.session() as conn:
        assert [job.payload for job in list_jobs(conn, lane="scrape")] == [{"source_id": "irna"}]
        assert len(list_jobs(conn, lane="trend")) == 1


def test_articles_requeue(config_path, store):
    with store.session() as conn:
        upsert_source(conn, source_dict())
        article = add_article(conn, "https://irna.example/news/1")

    assert main(["--config", config_path, "articles", "requeue", str(article.id)]) == 1

    with store.session() as conn:
        update_article_status(conn, article.id, "failed")
    assert main(["--config", config_path, "articles", "requeue", str(article.id)]) == 0

    with store.session() as conn:
        assert [job.payload for job in list_jobs(conn, lane="analyze")] == [{"article_id": article.id}]


def test_trends_list_by_range(config_path, store, caplog):
    with store.session() as conn:
        for day, topic in ((1, "نفت"), (3, "ارز")):
            start = f"2025-03-0{day}T00:00:00+00:00"
            upsert_trend(
                conn,
                topic=topic,
                window_start=start,
                window_end=f"2025-03-0{day}T06:00:00+00:00",
                article_count=4,
                frequency=4,
                velocity=4.0,
                acceleration=4.0,
                source_diversity=2,
                source_ids=["irna", "isna"],
                score=12.0,
                weight=40.0,
                start_time=start,
            )

    args = ["--since", "2025-03-01T00:00:00Z", "--until", "2025-03-02T00:00:00Z"]
    with caplog.at_level(logging.INFO):
        assert main(["--config", config_path, "trends", "list", *args]) == 0

    assert "topic=نفت" in caplog.text
    assert "topic=ارز" not in caplog.text


def test_missing_config_file_is_reported(tmp_path):
    assert main(["--config", str(tmp_path / "nope.yml"), "db", "migrate"]) == 1


def test_worker_rejects_unknown_lane(config_path):
    assert main(["--config", config_path, "worker", "--lanes", "scrape,publish", "--once"]) == 1


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
