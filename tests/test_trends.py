import random
from datetime import datetime, timedelta, timezone

import pytest

from mediaintel.enrichment.keywords import extract_keywords, normalize_token
from mediaintel.enrichment.trends import TrendDocument, detect_trends, trend_score, trend_weight

T0 = datetime(2025, 3, 1, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=6)


def _doc(doc_id, source_id, offset_minutes, text="اقتصاد"):
    return TrendDocument(
        id=doc_id,
        source_id=source_id,
        published_at=T0 + timedelta(minutes=offset_minutes),
        text=text,
    )


def _economy_corpus():
    previous = [_doc(index, "a", -300 + index * 30) for index in range(4)]
    sources = ["a", "b", "c"]
    current = [_doc(100 + index, sources[index % 3], index * 20) for index in range(10)]
    return previous + current


def test_accelerating_keyword_scores():
    windows = detect_trends(_economy_corpus(), WINDOW, anchor=T0)

    assert len(windows) == 1
    window = windows[0]
    assert window.window_start == T0
    assert window.window_end == T0 + WINDOW
    assert window.article_count == 10
    trend = window.trends[0]
    assert trend.topic == "اقتصاد"
    assert trend.frequency == 10
    assert trend.velocity == 10.0
    assert trend.acceleration == 6.0
    assert trend.source_diversity == 3
    assert trend.source_ids == ("a", "b", "c")
    assert trend.score == 20.0


def test_detection_is_deterministic():
    corpus = _economy_corpus() + [_doc(200, "b", 40, "بورس تهران بورس")]
    shuffled = list(corpus)
    random.Random(7).shuffle(shuffled)

    assert detect_trends(corpus, WINDOW, anchor=T0) == detect_trends(shuffled, WINDOW, anchor=T0)


def test_without_anchor_windows_start_at_first_document():
    windows = detect_trends(_economy_corpus(), WINDOW)

    assert windows[0].window_start == T0 - timedelta(minutes=300)
    assert [window.article_count for window in windows] == [7, 7]


def test_low_scores_are_dropped():
    docs = [
        _doc(1, "a", -60, "سیاست سیاست"),
        _doc(2, "a", 10, "سیاست"),
    ]
    windows = detect_trends(docs, WINDOW, anchor=T0)

    assert windows[0].trends == []


def test_top_k_breaks_ties_by_topic():
    docs = [_doc(1, "a", 10, "delta alpha charlie bravo")]
    windows = detect_trends(docs, WINDOW, anchor=T0, top_k=3)

    assert [trend.topic for trend in windows[0].trends] == ["alpha", "bravo", "charlie"]


def test_empty_window_resets_baseline():
    docs = [
        _doc(1, "a", 10, "انتخابات"),
        _doc(2, "a", 20, "انتخابات"),
        _doc(3, "b", 12 * 60 + 10, "انتخابات"),
    ]
    windows = detect_trends(docs, WINDOW, anchor=T0)

    assert [window.article_count for window in windows] == [2, 0, 1]
    assert windows[1].trends == []
    assert windows[2].trends[0].acceleration == 1.0


def test_end_caps_windows():
    docs = _economy_corpus() + [_doc(300, "a", 13 * 60)]
    windows = detect_trends(docs, WINDOW, anchor=T0, end=T0 + timedelta(hours=7))

    assert len(windows) == 2


def test_no_documents():
    assert detect_trends([], WINDOW) == []


def test_invalid_window():
    with pytest.raises(ValueError):
        detect_trends(_economy_corpus(), timedelta(0))


def test_trend_score_formula():
    assert trend_score(10, 6, 3) == 20.0
    assert trend_score(1, -1, 1) == 1.0


def test_trend_weight_recency_decays():
    fresh = trend_weight(10.0, 6.0, 10, 3, T0, T0)
    old = trend_weight(10.0, 6.0, 10, 3, T0, T0 + timedelta(hours=30))

    assert fresh == 117.98
    assert old == 67.98
    assert trend_weight(10.0, 6.0, 10, 3, T0, T0 + timedelta(hours=5)) == 107.98


def test_extract_keywords_filters_stop_words():
    assert extract_keywords("The Economy and اقتصادي of EU") == ["economy", "اقتصادی"]


def test_extract_keywords_keeps_repeats():
    assert extract_keywords("نفت نفت گاز") == ["نفت", "نفت", "گاز"]


def test_normalize_token_folds_variants():
    assert normalize_token("Café") == "cafe"
    assert normalize_token("كتاب") == "کتاب"
    assert normalize_token("اقتصاد\u0640ی") == "اقتصادی"
