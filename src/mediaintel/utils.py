from __future__ import annotations

import calendar
import dataclasses
import json
import logging
import os
import re
import sys
import time
from datetime import date, datetime, timezone
from enum import Enum
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Callable, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

T = TypeVar("T")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
_WHITESPACE = re.compile(r"\s+")
_ZERO_WIDTH = re.compile(r"[\u200b\u200d\ufeff]")
_MULTI_ZWNJ = re.compile(r"\u200c+")


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    level_name = os.environ.get("MI_LOG_LEVEL", default_level).upper()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level_name, logging.INFO),
            format=_LOG_FORMAT,
            stream=sys.stdout,
        )
    _ensure_stdout_handler(level_name)
    _maybe_add_file_handler(level_name)
    _apply_log_overrides()
    return logging.getLogger(logger_name)


def _apply_log_overrides() -> None:
    overrides = os.environ.get("MI_LOG_LEVELS", "")
    if not overrides:
        return
    for item in overrides.split(","):
        if not item.strip() or "=" not in item:
            continue
        name, level = item.split("=", 1)
        logger = logging.getLogger(name.strip())
        logger.setLevel(getattr(logging, level.strip().upper(), logging.INFO))


def _maybe_add_file_handler(level_name: str) -> None:
    log_path = os.environ.get("MI_LOG_FILE")
    if not log_path:
        return
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return
    directory = os.path.dirname(log_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)


def _ensure_stdout_handler(level_name: str) -> None:
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout:
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True, ensure_ascii=False)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def json_loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def normalize_url(url: str, strip_tracking_params: bool, tracking_params: list[str]) -> str:
    if not url:
        return url
    split = urlsplit(url.strip())
    scheme = split.scheme.lower() if split.scheme else "http"
    netloc = split.netloc.lower()
    path = split.path or "/"
    query_params = parse_qsl(split.query, keep_blank_values=True)
    if strip_tracking_params:
        tracking_set = {param.lower() for param in tracking_params}
        query_params = [
            (key, value)
            for key, value in query_params
            if key.lower() not in tracking_set
        ]
    query = urlencode(sorted(query_params)) if query_params else ""
    return urlunsplit((scheme, netloc, path, query, ""))


def is_absolute_http_url(url: str | None) -> bool:
    if not url:
        return False
    split = urlsplit(url)
    return split.scheme in {"http", "https"} and bool(split.netloc)


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    text = _ZERO_WIDTH.sub("", text)
    text = _MULTI_ZWNJ.sub("\u200c", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_persian_text(text: str) -> str:
    return (
        text.replace("ي", "ی")
        .replace("ك", "ک")
        .replace("ى", "ی")
    )


def chunked(items: list[T], size: int) -> list[list[T]]:
    size = max(1, size)
    return [items[idx : idx + size] for idx in range(0, len(items), size)]


def retry_call(
    func: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    logger: logging.Logger | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as exc:
            if attempt >= max_retries:
                raise
            delay = backoff_seconds * (2**attempt)
            if logger:
                log_event(
                    logger,
                    logging.WARNING,
                    "retry_scheduled",
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(exc),
                )
            sleep(delay)
            attempt += 1


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_value(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if hasattr(value, "tm_year"):
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    if isinstance(value, datetime):
        return _normalize_datetime(value)
    if isinstance(value, str):
        try:
            parsed = parsedate_to_datetime(value)
            return _normalize_datetime(parsed)
        except (TypeError, ValueError, IndexError):
            try:
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
                return _normalize_datetime(parsed)
            except ValueError:
                return None
    return None


def parse_iso(value: str) -> datetime:
    return _normalize_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))


def to_iso(value: datetime) -> str:
    return _normalize_datetime(value).isoformat()


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()
