from __future__ import annotations

import logging
import socket
import time
from typing import Any, Callable, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser

from .config import FetchConfig
from .errors import FetchError, UnsupportedSourceError
from .models import FetchResult, RawItem, Source, SourceType
from .utils import log_event, retry_call


class Fetcher(Protocol):
    def fetch(self, source: Source) -> FetchResult:
        ...


def fetch_url(url: str, headers: dict[str, str], timeout: int) -> tuple[int, bytes]:
    try:
        request = Request(url, headers=headers)
        with urlopen(request, timeout=timeout) as response:
            return response.getcode(), response.read()
    except HTTPError as exc:
        raise FetchError(f"http_error status={exc.code} url={url}") from exc
    except (URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise FetchError(f"network_error url={url} error={exc}") from exc


class RSSFetcher:
    """Fetches RSS/Atom feeds and turns entries into raw items."""

    def __init__(
        self,
        config: FetchConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("mediaintel.fetchers")
        self._sleep = sleep

    def fetch(self, source: Source) -> FetchResult:
        headers = {"User-Agent": self.config.user_agent}
        extra_headers = source.config.get("http_headers") or {}
        if isinstance(extra_headers, dict):
            headers.update({str(k): str(v) for k, v in extra_headers.items()})

        http_status, content = retry_call(
            lambda: fetch_url(source.url, headers, self.config.timeout_seconds),
            max_retries=self.config.max_retries,
            backoff_seconds=self.config.backoff_seconds,
            retry_on=(FetchError,),
            logger=self.logger,
            sleep=self._sleep,
        )
        if not content:
            raise FetchError(f"empty_response url={source.url}")

        parsed = feedparser.parse(content)
        entries = parsed.entries or []
        errors: list[str] = []
        if parsed.bozo:
            if not entries:
                raise FetchError(f"feed_parse_error url={source.url} error={parsed.bozo_exception}")
            errors.append(f"feed_parse_warning: {parsed.bozo_exception}")
            log_event(
                self.logger,
                logging.WARNING,
                "feed_parse_warning",
                source_id=source.id,
                error=str(parsed.bozo_exception),
            )
        items = [_entry_to_item(entry) for entry in entries]
        return FetchResult(items=items, errors=errors, http_status=http_status)


def _entry_to_item(entry: Any) -> RawItem:
    categories = []
    for tag in entry.get("tags") or []:
        term = tag.get("term") if hasattr(tag, "get") else None
        if term:
            categories.append(str(term))
    published = (
        entry.get("published_parsed")
        or entry.get("updated_parsed")
        or entry.get("published")
        or entry.get("updated")
    )
    return RawItem(
        title=entry.get("title"),
        url=entry.get("link"),
        content=_entry_content(entry),
        published=published,
        author=entry.get("author"),
        categories=categories,
    )


def _entry_content(entry: Any) -> str | None:
    blocks = entry.get("content") or []
    for block in blocks:
        value = block.get("value") if hasattr(block, "get") else None
        if value:
            return value
    return entry.get("summary") or entry.get("description")


FETCHERS: dict[str, type] = {
    SourceType.RSS.value: RSSFetcher,
}


def get_fetcher(
    source_type: str,
    config: FetchConfig,
    logger: logging.Logger | None = None,
) -> Fetcher:
    fetcher_cls = FETCHERS.get(source_type)
    if fetcher_cls is None:
        raise UnsupportedSourceError(f"source type {source_type} is not supported")
    return fetcher_cls(config, logger=logger)
