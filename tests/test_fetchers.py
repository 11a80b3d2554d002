import dataclasses

import pytest

from mediaintel import fetchers
from mediaintel.errors import FetchError, UnsupportedSourceError
from mediaintel.fetchers import RSSFetcher, get_fetcher

from helpers import PERSIAN_BODY, make_source, rss_feed


def test_rss_fetcher_parses_entries(config, monkeypatch):
    feed = rss_feed(
        [
            {
                "title": "نرخ ارز",
                "link": "https://irna.example/news/1",
                "description": f"<p>{PERSIAN_BODY}</p>",
                "pubDate": "Sat, 01 Mar 2025 08:00:00 GMT",
                "category": "اقتصاد",
            }
        ]
    )
    seen = {}

    def fake_fetch(url, headers, timeout):
        seen["url"] = url
        seen["headers"] = headers
        return 200, feed

    monkeypatch.setattr(fetchers, "fetch_url", fake_fetch)
    source = make_source(config={"http_headers": {"Accept-Language": "fa"}})

    result = RSSFetcher(config.fetch).fetch(source)

    assert result.http_status == 200
    assert result.errors == []
    assert len(result.items) == 1
    item = result.items[0]
    assert item.title == "نرخ ارز"
    assert item.url == "https://irna.example/news/1"
    assert PERSIAN_BODY in item.content
    assert item.published.tm_year == 2025
    assert item.categories == ["اقتصاد"]
    assert seen["url"] == source.url
    assert seen["headers"]["Accept-Language"] == "fa"
    assert seen["headers"]["User-Agent"] == config.fetch.user_agent


def test_rss_fetcher_retries_network_errors(config, monkeypatch):
    attempts = []
    delays = []

    def flaky_fetch(url, headers, timeout):
        attempts.append(url)
        if len(attempts) < 3:
            raise FetchError("network_error")
        return 200, rss_feed([])

    monkeypatch.setattr(fetchers, "fetch_url", flaky_fetch)
    fetch_cfg = dataclasses.replace(config.fetch, max_retries=2, backoff_seconds=1.0)

    result = RSSFetcher(fetch_cfg, sleep=delays.append).fetch(make_source())

    assert len(attempts) == 3
    assert delays == [1.0, 2.0]
    assert result.items == []


def test_rss_fetcher_raises_after_retries(config, monkeypatch):
    def down(url, headers, timeout):
        raise FetchError("http_error status=503")

    monkeypatch.setattr(fetchers, "fetch_url", down)
    fetch_cfg = dataclasses.replace(config.fetch, max_retries=1, backoff_seconds=0.0)

    with pytest.raises(FetchError, match="503"):
        RSSFetcher(fetch_cfg, sleep=lambda _: None).fetch(make_source())


def test_unparseable_feed_raises(config, monkeypatch):
    monkeypatch.setattr(fetchers, "fetch_url", lambda url, headers, timeout: (200, b"<html><oops"))

    with pytest.raises(FetchError, match="feed_parse_error"):
        RSSFetcher(config.fetch).fetch(make_source())


def test_get_fetcher_rejects_unsupported_type(config):
    assert isinstance(get_fetcher("rss", config.fetch), RSSFetcher)
    with pytest.raises(UnsupportedSourceError):
        get_fetcher("telegram", config.fetch)
