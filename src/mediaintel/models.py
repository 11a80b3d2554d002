from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class SourceType(str, Enum):
    RSS = "rss"
    TELEGRAM = "telegram"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    HTML_SCRAPER = "html_scraper"


class SourceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class ArticleStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Lane(str, Enum):
    SCRAPE = "scrape"
    ANALYZE = "analyze"
    TREND = "trend"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


SENTIMENT_LABELS = ("positive", "negative", "neutral", "mixed")
ENTITY_TYPES = ("PERSON", "ORGANIZATION", "LOCATION", "DATE", "EVENT", "OTHER")


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    url: str
    type: str
    status: str
    scrape_interval_seconds: int
    last_scraped_at: str | None
    language: str
    category: str | None
    config: dict[str, object]
    last_error: str | None = None


@dataclass(frozen=True)
class RawItem:
    title: str | None
    url: str | None
    content: str | None
    published: object | None
    author: str | None = None
    categories: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FetchResult:
    items: list[RawItem]
    errors: list[str]
    http_status: int | None = None


@dataclass(frozen=True)
class ArticleCandidate:
    source_id: str
    url: str
    title: str
    content: str
    published_at: str
    published_at_source: str
    author: str | None
    categories: list[str]


@dataclass(frozen=True)
class Rejection:
    url: str | None
    title: str | None
    reasons: list[str]


@dataclass(frozen=True)
class Article:
    id: int
    source_id: str
    url: str
    title: str
    content: str
    published_at: str
    status: str
    author: str | None
    categories: list[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Sentiment:
    label: str
    score: float
    confidence: float


@dataclass(frozen=True)
class Entity:
    text: str
    type: str
    relevance: float


@dataclass(frozen=True)
class AnalysisOutput:
    sentiment: Sentiment
    topics: list[str]
    entities: list[Entity]
    keywords: list[str]
    summary: str | None
    language: str = "fa"
    model: str | None = None


@dataclass(frozen=True)
class AnalysisResult:
    id: int
    article_id: int
    sentiment: Sentiment
    topics: list[str]
    entities: list[Entity]
    keywords: list[str]
    summary: str | None
    language: str
    model: str | None
    processing_time_ms: int
    created_at: str


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_seconds: float

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** max(0, attempt - 1))


@dataclass(frozen=True)
class Job:
    id: int
    lane: str
    status: str
    payload: dict[str, object]
    priority: int
    attempts: int
    max_attempts: int
    backoff_seconds: float
    available_at: str
    enqueued_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
    result: dict[str, object] | None


@dataclass(frozen=True)
class JobOutcome:
    status: str
    result: dict[str, object]
    error: str | None = None
    retryable: bool = True

    @property
    def ok(self) -> bool:
        return self.status in {"completed", "skipped"}


@dataclass(frozen=True)
class Trend:
    id: int
    topic: str
    window_start: str
    window_end: str
    article_count: int
    frequency: int
    velocity: float
    acceleration: float
    source_diversity: int
    source_ids: list[str]
    score: float
    weight: float
    start_time: str
    is_active: bool
    updated_at: str
