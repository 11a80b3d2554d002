from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from ..analysis import Analyzer
from ..config import Config
from ..errors import AnalyzerError, ArticleNotFoundError, InvalidPayloadError, PipelineError
from ..models import AnalysisOutput, Article, ArticleStatus, Job, JobOutcome
from ..storage import (
    create_analysis,
    find_analysis_by_article,
    get_article,
    update_article_status,
)
from ..utils import chunked, log_event


@dataclass
class BatchResult:
    analyzed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.analyzed) + len(self.skipped) + len(self.failed)


def handle_analyze(
    conn: Any,
    config: Config,
    job: Job,
    logger: logging.Logger,
    analyzer: Analyzer,
) -> JobOutcome:
    article_id = _article_id_from(job.payload)
    article = get_article(conn, article_id)
    if article is None:
        raise ArticleNotFoundError(f"article {article_id} not found")

    if find_analysis_by_article(conn, article_id) is not None:
        update_article_status(conn, article_id, ArticleStatus.PROCESSED.value)
        return JobOutcome("skipped", {"reason": "already_analyzed", "article_id": article_id})

    output, elapsed_ms = _run_analyzer(conn, config, article, analyzer, logger)
    return _store_analysis(conn, article_id, output, elapsed_ms, logger)


def analyze_batch(
    conn: Any,
    config: Config,
    articles: list[Article],
    analyzer: Analyzer,
    logger: logging.Logger,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchResult:
    """Analyze articles chunk by chunk, collecting failures instead of raising.

    Analyzer calls inside a chunk run concurrently; database writes stay on
    the calling thread's connection.
    """
    result = BatchResult()
    batches = chunked(articles, config.analyzer.batch_size)
    workers = max(1, config.analyzer.batch_concurrency)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        for index, batch in enumerate(batches):
            log_event(
                logger,
                logging.INFO,
                "analysis_batch_started",
                batch=index + 1,
                batches=len(batches),
                size=len(batch),
            )
            pending = []
            for article in batch:
                if find_analysis_by_article(conn, article.id) is not None:
                    result.skipped.append(article.id)
                    continue
                pending.append(
                    (article, executor.submit(_timed_analyze, analyzer, config, article))
                )
            for article, future in pending:
                try:
                    output, elapsed_ms = future.result()
                except Exception as exc:  # noqa: BLE001
                    update_article_status(conn, article.id, ArticleStatus.FAILED.value)
                    result.failed[article.id] = str(exc)
                    log_event(
                        logger,
                        logging.ERROR,
                        "analysis_failed",
                        article_id=article.id,
                        error=str(exc),
                    )
                    continue
                outcome = _store_analysis(conn, article.id, output, elapsed_ms, logger)
                if outcome.status == "completed":
                    result.analyzed.append(article.id)
                else:
                    result.skipped.append(article.id)
            if index < len(batches) - 1:
                sleep(config.analyzer.batch_delay_seconds)
    log_event(
        logger,
        logging.INFO,
        "analysis_batch_finished",
        total=result.total,
        analyzed=len(result.analyzed),
        skipped=len(result.skipped),
        failed=len(result.failed),
    )
    return result


def on_analyze_exhausted(conn: Any, job: Job, error: str, logger: logging.Logger) -> None:
    try:
        article_id = _article_id_from(job.payload)
    except InvalidPayloadError:
        return
    if get_article(conn, article_id) is None:
        return
    update_article_status(conn, article_id, ArticleStatus.FAILED.value)
    log_event(logger, logging.WARNING, "article_marked_failed", article_id=article_id, error=error)


def _run_analyzer(
    conn: Any,
    config: Config,
    article: Article,
    analyzer: Analyzer,
    logger: logging.Logger,
) -> tuple[AnalysisOutput, int]:
    try:
        return _timed_analyze(analyzer, config, article)
    except PipelineError as exc:
        update_article_status(conn, article.id, ArticleStatus.FAILED.value)
        log_event(logger, logging.WARNING, "analysis_failed", article_id=article.id, error=str(exc))
        raise
    except Exception as exc:  # noqa: BLE001
        update_article_status(conn, article.id, ArticleStatus.FAILED.value)
        log_event(logger, logging.WARNING, "analysis_failed", article_id=article.id, error=str(exc))
        raise AnalyzerError(str(exc)) from exc


def _timed_analyze(
    analyzer: Analyzer, config: Config, article: Article
) -> tuple[AnalysisOutput, int]:
    started = time.monotonic()
    output = analyzer.analyze(article.title, article.content[: config.analyzer.max_input_chars])
    return output, int((time.monotonic() - started) * 1000)


def _store_analysis(
    conn: Any,
    article_id: int,
    output: AnalysisOutput,
    elapsed_ms: int,
    logger: logging.Logger,
) -> JobOutcome:
    with conn.transaction():
        stored = create_analysis(conn, article_id, output, elapsed_ms)
        update_article_status(conn, article_id, ArticleStatus.PROCESSED.value)
    if stored is None:
        return JobOutcome("skipped", {"reason": "already_analyzed", "article_id": article_id})
    log_event(
        logger,
        logging.INFO,
        "article_analyzed",
        article_id=article_id,
        sentiment=stored.sentiment.label,
        processing_time_ms=elapsed_ms,
    )
    return JobOutcome(
        "completed",
        {
            "article_id": article_id,
            "analysis_id": stored.id,
            "processing_time_ms": elapsed_ms,
        },
    )


def _article_id_from(payload: dict[str, object]) -> int:
    value = payload.get("article_id")
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise InvalidPayloadError("analyze job requires article_id")
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidPayloadError(f"invalid article_id {value!r}") from exc
