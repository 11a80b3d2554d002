import threading
from datetime import timedelta

from mediaintel.errors import AnalyzerError, FetchError
from mediaintel.jobs import enqueue_job, get_job, lease_job, list_jobs
from mediaintel.models import FetchResult, RawItem, RetryPolicy
from mediaintel.storage import count_articles, get_article, get_source, upsert_source
from mediaintel.worker import (
    Services,
    process_one,
    release_expired_leases,
    run_workers,
    settle_job,
    tick_scheduler,
)
from mediaintel.utils import utc_now

from helpers import (
    PERSIAN_BODY,
    StaticFetcher,
    StubAnalyzer,
    add_article,
    fetcher_factory,
    lease,
    source_dict,
)


def _feed():
    return FetchResult(
        items=[
            RawItem(
                title="اقتصاد",
                url="https://irna.example/news/1",
                content=PERSIAN_BODY,
                published=None,
            )
        ],
        errors=[],
        http_status=200,
    )


def test_successful_job_is_acked(conn, config, logger):
    upsert_source(conn, source_dict())
    job = lease(conn, "scrape", {"source_id": "irna"})
    services = Services(fetcher_factory=fetcher_factory(StaticFetcher(_feed())))

    outcome = process_one(conn, config, job, services, logger)
    decision = settle_job(conn, job, outcome, logger)

    assert decision == "completed"
    stored = get_job(conn, job.id)
    assert stored.status == "completed"
    assert stored.result["stored"] == 1


def test_transient_failure_is_retried(conn, config, logger):
    upsert_source(conn, source_dict())
    job = lease(conn, "scrape", {"source_id": "irna"})
    services = Services(fetcher_factory=fetcher_factory(StaticFetcher(error=FetchError("down"))))

    outcome = process_one(conn, config, job, services, logger)

    assert outcome.status == "failed"
    assert outcome.retryable is True
    assert settle_job(conn, job, outcome, logger) == "retried"
    assert get_job(conn, job.id).status == "delayed"
    assert get_source(conn, "irna").status == "active"


def test_exhausted_scrape_marks_source_error(conn, config, logger):
    upsert_source(conn, source_dict())
    job = lease(
        conn, "scrape", {"source_id": "irna"}, retry_policy=RetryPolicy(max_attempts=1, backoff_seconds=0)
    )
    services = Services(fetcher_factory=fetcher_factory(StaticFetcher(error=FetchError("down"))))

    outcome = process_one(conn, config, job, services, logger)

    assert settle_job(conn, job, outcome, logger) == "exhausted"
    assert get_job(conn, job.id).status == "failed"
    source = get_source(conn, "irna")
    assert source.status == "error"
    assert "down" in source.last_error


def test_permanent_failure_is_not_retried(conn, config, logger):
    job = lease(conn, "analyze", {"article_id": 404})

    outcome = process_one(conn, config, job, Services(analyzer=StubAnalyzer()), logger)

    assert outcome.retryable is False
    assert "ArticleNotFoundError" in outcome.error
    assert settle_job(conn, job, outcome, logger) == "exhausted"


def test_unexpected_errors_become_retryable_failures(conn, config, logger):
    upsert_source(conn, source_dict())
    job = lease(conn, "scrape", {"source_id": "irna"})
    services = Services(fetcher_factory=fetcher_factory(StaticFetcher(error=RuntimeError("bug"))))

    outcome = process_one(conn, config, job, services, logger)

    assert outcome.status == "failed"
    assert outcome.retryable is True
    assert outcome.error == "RuntimeError: bug"


def test_expired_lease_runs_exhaustion_hook(conn, config, logger):
    upsert_source(conn, source_dict())
    past = utc_now() - timedelta(hours=1)
    enqueue_job(
        conn,
        "scrape",
        {"source_id": "irna"},
        retry_policy=RetryPolicy(max_attempts=1, backoff_seconds=0),
        now=past,
    )
    assert lease_job(conn, "scrape", "crashed-worker", 600, now=past) is not None

    assert release_expired_leases(conn, config, "scrape", logger) == 1
    assert get_source(conn, "irna").status == "error"


def test_expired_lease_seen_by_another_lease_still_runs_hook(conn, config, logger):
    upsert_source(conn, source_dict())
    past = utc_now() - timedelta(hours=1)
    enqueue_job(
        conn,
        "scrape",
        {"source_id": "irna"},
        retry_policy=RetryPolicy(max_attempts=1, backoff_seconds=0),
        now=past,
    )
    lease_job(conn, "scrape", "crashed-worker", 600, now=past)

    assert lease_job(conn, "scrape", "w2", 600) is None
    assert release_expired_leases(conn, config, "scrape", logger) == 1
    assert get_source(conn, "irna").status == "error"


def test_settle_after_lease_taken_over_is_stale(conn, config, logger):
    upsert_source(conn, source_dict())
    past = utc_now() - timedelta(hours=1)
    enqueue_job(conn, "scrape", {"source_id": "irna"}, now=past)
    slow = lease_job(conn, "scrape", "slow-worker", 600, now=past)
    other = lease_job(conn, "scrape", "w2", 600)
    assert other.id == slow.id
    services = Services(fetcher_factory=fetcher_factory(StaticFetcher(_feed())))

    outcome = process_one(conn, config, slow, services, logger)

    assert settle_job(conn, slow, outcome, logger) == "stale"
    broken = Services(fetcher_factory=fetcher_factory(StaticFetcher(error=FetchError("down"))))
    failed = process_one(conn, config, slow, broken, logger)
    assert settle_job(conn, slow, failed, logger) == "stale"
    job = get_job(conn, slow.id)
    assert job.status == "active"
    assert job.locked_by == "w2"


def test_analyze_timeouts_exhaust_retries_and_fail_article(conn, config, logger):
    upsert_source(conn, source_dict())
    article = add_article(conn, "https://irna.example/news/1")
    job_id = enqueue_job(
        conn,
        "analyze",
        {"article_id": article.id},
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0),
    )
    analyzer = StubAnalyzer(failures={"عنوان خبر": AnalyzerError("timeout")})
    services = Services(analyzer=analyzer)

    decisions = []
    for _ in range(3):
        job = lease_job(conn, "analyze", "w1", 600)
        assert job is not None
        decisions.append(settle_job(conn, job, process_one(conn, config, job, services, logger), logger))

    assert decisions == ["retried", "retried", "exhausted"]
    assert len(analyzer.calls) == 3
    assert get_article(conn, article.id).status == "failed"
    stored = get_job(conn, job_id)
    assert stored.status == "failed"
    assert stored.attempts == 3
    assert lease_job(conn, "analyze", "w1", 600) is None


def test_scheduler_enqueues_due_sources_once(conn, config, logger):
    upsert_source(conn, source_dict("irna"))
    upsert_source(conn, source_dict("isna"))
    upsert_source(conn, source_dict("off", status="inactive"))
    now = utc_now()

    first = tick_scheduler(conn, config, logger, now=now)
    second = tick_scheduler(conn, config, logger, now=now + timedelta(seconds=5))

    assert first == {"scrape": 2, "trend": 1}
    assert second == {"scrape": 0, "trend": 0}
    scrape_jobs = list_jobs(conn, lane="scrape")
    assert sorted(job.payload["source_id"] for job in scrape_jobs) == ["irna", "isna"]


def test_scheduler_waits_for_trend_interval(conn, config, logger):
    now = utc_now()
    tick_scheduler(conn, config, logger, now=now)
    trend_job = lease_job(conn, "trend", "w1", 600, now=now)
    settle_job(conn, trend_job, process_one(conn, config, trend_job, Services(), logger), logger)

    early = tick_scheduler(conn, config, logger, now=now + timedelta(seconds=60))
    due = tick_scheduler(
        conn, config, logger, now=now + timedelta(seconds=config.trends.interval_seconds)
    )

    assert early["trend"] == 0
    assert due["trend"] == 1


def test_run_workers_once_drives_all_lanes(store, config, logger):
    with store.session() as conn:
        upsert_source(conn, source_dict())
    services = Services(
        fetcher_factory=fetcher_factory(StaticFetcher(_feed())),
        analyzer=StubAnalyzer(),
    )

    processed = run_workers(
        store,
        config,
        ["scrape", "analyze", "trend"],
        "test",
        services,
        threading.Event(),
        once=True,
        logger=logger,
    )

    assert processed == 3
    with store.session() as conn:
        assert count_articles(conn, status="processed") == 1
        assert [job.status for job in list_jobs(conn, lane="analyze")] == ["completed"]
        assert [job.status for job in list_jobs(conn, lane="trend")] == ["completed"]
