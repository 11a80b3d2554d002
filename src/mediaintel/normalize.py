from __future__ import annotations

from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from .config import FetchConfig
from .models import ArticleCandidate, RawItem, Rejection, Source
from .utils import (
    is_absolute_http_url,
    normalize_persian_text,
    normalize_text,
    normalize_url,
    parse_date_value,
    to_iso,
    utc_now_iso,
)


def html_to_text(html: str | None) -> str:
    if not html:
        return ""
    if "<" not in html:
        return normalize_text(html)
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "iframe"]):
        tag.decompose()
    return normalize_text(soup.get_text(" ", strip=True))


def base_url_for(source: Source) -> str:
    configured = source.config.get("base_url")
    if isinstance(configured, str) and configured.strip():
        return configured.strip()
    split = urlsplit(source.url)
    return f"{split.scheme}://{split.netloc}/"


def resolve_url(link: str | None, base_url: str) -> str | None:
    if not link:
        return None
    link = link.strip()
    if not link:
        return None
    if is_absolute_http_url(link):
        return link
    return urljoin(base_url, link)


def normalize_item(
    item: RawItem,
    source: Source,
    config: FetchConfig,
    fetched_at: str | None = None,
) -> ArticleCandidate | Rejection:
    """Clean one fetched item and check it is storable.

    Returns the candidate, or a :class:`Rejection` listing every failed check.
    """
    fetched_at = fetched_at or utc_now_iso()
    reasons: list[str] = []

    title = html_to_text(item.title)
    content = html_to_text(item.content)
    if source.language == "fa":
        title = normalize_persian_text(title)
        content = normalize_persian_text(content)

    if not title:
        reasons.append("missing_title")
    if len(content) < config.min_content_length:
        reasons.append("content_too_short")

    resolved = resolve_url(item.url, base_url_for(source))
    url = None
    if not is_absolute_http_url(resolved):
        reasons.append("invalid_url")
    else:
        url_cfg = config.url_normalization
        url = normalize_url(
            str(resolved),
            url_cfg.strip_tracking_params,
            url_cfg.tracking_params,
        )

    # unparseable or missing dates (Jalali strings, for one) fall back to the fetch time
    parsed = parse_date_value(item.published) if item.published else None
    if parsed is None:
        published_at, published_at_source = fetched_at, "fetched"
    else:
        published_at, published_at_source = to_iso(parsed), "published"

    if reasons:
        return Rejection(url=url or item.url, title=title or item.title, reasons=reasons)

    return ArticleCandidate(
        source_id=source.id,
        url=str(url),
        title=title,
        content=content,
        published_at=published_at,
        published_at_source=published_at_source,
        author=normalize_text(item.author) or None,
        categories=[normalize_text(category) for category in item.categories if category],
    )


def normalize_items(
    items: list[RawItem],
    source: Source,
    config: FetchConfig,
    fetched_at: str | None = None,
) -> tuple[list[ArticleCandidate], list[Rejection]]:
    fetched_at = fetched_at or utc_now_iso()
    accepted: list[ArticleCandidate] = []
    rejected: list[Rejection] = []
    seen: set[str] = set()
    for item in items:
        result = normalize_item(item, source, config, fetched_at)
        if isinstance(result, Rejection):
            rejected.append(result)
            continue
        # feeds occasionally repeat an entry; the first occurrence wins
        if result.url in seen:
            continue
        seen.add(result.url)
        accepted.append(result)
    return accepted, rejected
