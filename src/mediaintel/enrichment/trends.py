from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from .keywords import extract_keywords, stop_words_for

FREQUENCY_WEIGHT = 0.5
ACCELERATION_WEIGHT = 1.5
DIVERSITY_WEIGHT = 2.0


@dataclass(frozen=True)
class TrendDocument:
    id: int
    source_id: str
    published_at: datetime
    text: str


@dataclass(frozen=True)
class KeywordTrend:
    topic: str
    frequency: int
    velocity: float
    acceleration: float
    source_diversity: int
    source_ids: tuple[str, ...]
    article_count: int
    score: float


@dataclass(frozen=True)
class TrendWindow:
    window_start: datetime
    window_end: datetime
    article_count: int
    trends: list[KeywordTrend] = field(default_factory=list)


def trend_score(frequency: float, acceleration: float, source_diversity: int) -> float:
    return (
        FREQUENCY_WEIGHT * frequency
        + ACCELERATION_WEIGHT * acceleration
        + DIVERSITY_WEIGHT * source_diversity
    )


def trend_weight(
    velocity: float,
    acceleration: float,
    article_count: int,
    source_diversity: int,
    start_time: datetime,
    now: datetime,
) -> float:
    """Composite weight of a persisted trend.

    Volume grows logarithmically; the recency bonus starts at 50 and loses two
    points per hour since the trend first appeared, never going below zero.
    """
    age_hours = max(0.0, (now - start_time).total_seconds() / 3600)
    recency = max(0.0, 50 - age_hours * 2)
    weight = (
        velocity * 2
        + acceleration * 1.5
        + math.log(article_count + 1) * 10
        + source_diversity * 5
        + recency
    )
    return round(weight, 2)


def detect_trends(
    documents: Iterable[TrendDocument],
    window: timedelta,
    anchor: datetime | None = None,
    end: datetime | None = None,
    top_k: int = 5,
    min_score: float = 2.0,
    languages: Iterable[str] = ("fa", "en"),
) -> list[TrendWindow]:
    """Score keywords over contiguous windows of width ``window``.

    Windows start at ``anchor`` (the earliest document when omitted) and run
    until the one containing the last document, or up to ``end``. Documents
    in the window right before the anchor only serve as the acceleration
    baseline. Every window is returned, including empty ones; an empty window
    resets the baseline for the window after it.
    """
    if window.total_seconds() <= 0:
        raise ValueError("window must be positive")
    ordered = sorted(documents, key=lambda doc: (doc.published_at, doc.id))
    if not ordered:
        return []
    start = anchor or ordered[0].published_at
    last = max(doc.published_at for doc in ordered)
    if end is not None:
        last = min(last, end - timedelta(microseconds=1))
    stop_words = stop_words_for(languages)

    tokens_by_doc = {
        doc.id: extract_keywords(doc.text, stop_words=stop_words) for doc in ordered
    }
    baseline_docs = [doc for doc in ordered if start - window <= doc.published_at < start]
    previous = _frequencies(baseline_docs, tokens_by_doc)

    windows: list[TrendWindow] = []
    window_start = start
    while window_start <= last:
        window_end = window_start + window
        in_window = [doc for doc in ordered if window_start <= doc.published_at < window_end]
        current = _frequencies(in_window, tokens_by_doc)
        trends = _score_window(in_window, tokens_by_doc, current, previous, top_k, min_score)
        windows.append(
            TrendWindow(
                window_start=window_start,
                window_end=window_end,
                article_count=len(in_window),
                trends=trends,
            )
        )
        previous = current
        window_start = window_end
    return windows


def _frequencies(
    docs: list[TrendDocument], tokens_by_doc: dict[int, list[str]]
) -> Counter[str]:
    counts: Counter[str] = Counter()
    for doc in docs:
        counts.update(tokens_by_doc[doc.id])
    return counts


def _score_window(
    docs: list[TrendDocument],
    tokens_by_doc: dict[int, list[str]],
    current: Counter[str],
    previous: Counter[str],
    top_k: int,
    min_score: float,
) -> list[KeywordTrend]:
    sources: dict[str, set[str]] = {}
    articles: Counter[str] = Counter()
    for doc in docs:
        for token in set(tokens_by_doc[doc.id]):
            sources.setdefault(token, set()).add(doc.source_id)
            articles[token] += 1

    scored: list[tuple[float, KeywordTrend]] = []
    for topic, frequency in current.items():
        acceleration = frequency - previous.get(topic, 0)
        diversity = len(sources.get(topic, ()))
        raw_score = trend_score(frequency, acceleration, diversity)
        if raw_score <= min_score:
            continue
        scored.append(
            (
                raw_score,
                KeywordTrend(
                    topic=topic,
                    frequency=frequency,
                    velocity=float(frequency),
                    acceleration=float(acceleration),
                    source_diversity=diversity,
                    source_ids=tuple(sorted(sources.get(topic, ()))),
                    article_count=articles[topic],
                    score=round(raw_score, 2),
                ),
            )
        )
    scored.sort(key=lambda item: (-item[0], item[1].topic))
    return [trend for _, trend in scored[:top_k]]
