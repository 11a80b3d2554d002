from __future__ import annotations

from mediaintel.models import Source

PERSIAN_BODY = (
    "بانک مرکزی امروز از سیاست تازه اقتصاد کشور برای مهار تورم خبر داد و "
    "کارشناسان آن را گامی مهم برای ثبات بازار ارز دانستند."
)


def make_source(source_id: str = "irna", **overrides) -> Source:
    values = {
        "id": source_id,
        "name": source_id.upper(),
        "url": f"https://{source_id}.example/rss",
        "type": "rss",
        "status": "active",
        "scrape_interval_seconds": 300,
        "last_scraped_at": None,
        "language": "fa",
        "category": "news",
        "config": {},
        "last_error": None,
    }
    values.update(overrides)
    return Source(**values)


def source_dict(source_id: str = "irna", **overrides) -> dict[str, object]:
    values: dict[str, object] = {
        "id": source_id,
        "name": source_id.upper(),
        "url": f"https://{source_id}.example/rss",
        "type": "rss",
        "language": "fa",
    }
    values.update(overrides)
    return values


def rss_feed(items: list[dict[str, str]]) -> bytes:
    entries = []
    for item in items:
        parts = [f"<title>{item['title']}</title>", f"<link>{item['link']}</link>"]
        if "description" in item:
            parts.append(f"<description><![CDATA[{item['description']}]]></description>")
        if "pubDate" in item:
            parts.append(f"<pubDate>{item['pubDate']}</pubDate>")
        if "category" in item:
            parts.append(f"<category>{item['category']}</category>")
        entries.append("<item>" + "".join(parts) + "</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Feed</title>'
        "<link>https://irna.example/</link><description>d</description>"
        + "".join(entries)
        + "</channel></rss>"
    ).encode("utf-8")


class StaticFetcher:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    def fetch(self, source):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def fetcher_factory(fetcher):
    def factory(source_type, fetch_config, logger=None):
        return fetcher

    return factory


def lease(conn, lane, payload, **enqueue_kwargs):
    from mediaintel.jobs import enqueue_job, lease_job

    enqueue_job(conn, lane, payload, **enqueue_kwargs)
    return lease_job(conn, lane, "test-worker", 600)


def add_article(conn, url, source_id="irna", title="عنوان خبر", content=PERSIAN_BODY, published_at="2025-03-01T08:00:00+00:00"):
    from mediaintel.models import ArticleCandidate
    from mediaintel.storage import create_article

    return create_article(
        conn,
        ArticleCandidate(
            source_id=source_id,
            url=url,
            title=title,
            content=content,
            published_at=published_at,
            published_at_source="published",
            author=None,
            categories=[],
        ),
    )


def analysis_output(label="negative", score=-0.6):
    from mediaintel.models import AnalysisOutput, Entity, Sentiment

    return AnalysisOutput(
        sentiment=Sentiment(label=label, score=score, confidence=0.8),
        topics=["اقتصاد", "ارز"],
        entities=[Entity(text="بانک مرکزی", type="ORGANIZATION", relevance=0.9)],
        keywords=["تورم", "ارز"],
        summary="خلاصه خبر",
        model="test-model",
    )


class StubAnalyzer:
    def __init__(self, output=None, failures=None):
        self.output = output or analysis_output()
        self.failures = failures or {}
        self.calls = []

    def analyze(self, title, content):
        self.calls.append(title)
        error = self.failures.get(title)
        if error is not None:
            raise error
        return self.output
