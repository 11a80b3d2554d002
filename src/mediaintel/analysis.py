from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

import jsonschema

from .config import AnalyzerConfig
from .errors import AnalysisParseError
from .llm.router import complete
from .models import ENTITY_TYPES, SENTIMENT_LABELS, AnalysisOutput, Entity, Sentiment
from .utils import log_event

MAX_TOPICS = 5
MAX_KEYWORDS = 10
POSITIVE_THRESHOLD = 0.2
NEGATIVE_THRESHOLD = -0.2

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["sentiment"],
    "properties": {
        "sentiment": {
            "type": "object",
            "required": ["score"],
            "properties": {
                "sentiment": {"type": ["string", "null"]},
                "label": {"type": ["string", "null"]},
                "score": {"type": "number"},
                "confidence": {"type": ["number", "null"]},
            },
        },
        "topics": {"type": ["array", "null"], "items": {"type": "string"}},
        "entities": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "required": ["text"],
                "properties": {
                    "text": {"type": "string"},
                    "type": {"type": ["string", "null"]},
                    "relevance": {"type": ["number", "null"]},
                },
            },
        },
        "keywords": {"type": ["array", "null"], "items": {"type": "string"}},
        "summary": {"type": ["string", "null"]},
    },
}

SYSTEM_PROMPT = (
    "You analyze news articles, most of them in Persian. "
    "Answer with a single JSON object and nothing else."
)

USER_TEMPLATE = """Analyze the news article below.

Title: {title}
Text: {content}

Return JSON with exactly these fields:
{{
  "sentiment": {{"sentiment": "positive" | "negative" | "neutral" | "mixed", "score": -1..1, "confidence": 0..1}},
  "topics": [at most 5 main topics, in the article's language],
  "entities": [{{"text": "...", "type": "PERSON" | "ORGANIZATION" | "LOCATION" | "DATE" | "EVENT" | "OTHER", "relevance": 0..1}}],
  "keywords": [at most 10 keywords],
  "summary": "two or three sentences"
}}"""


class Analyzer(Protocol):
    def analyze(self, title: str, content: str) -> AnalysisOutput:
        ...


class LLMAnalyzer:
    """Analyzer backed by a chat-completion style model endpoint."""

    def __init__(self, config: AnalyzerConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("mediaintel.analysis")

    def analyze(self, title: str, content: str) -> AnalysisOutput:
        user = USER_TEMPLATE.format(
            title=title,
            content=content[: self.config.max_input_chars],
        )
        raw = complete(self.config.llm, SYSTEM_PROMPT, user)
        try:
            return parse_analysis_response(raw, model=self.config.llm.model)
        except AnalysisParseError:
            log_event(
                self.logger,
                logging.WARNING,
                "analysis_parse_failed",
                model=self.config.llm.model,
                response_chars=len(raw),
            )
            raise


def parse_analysis_response(text: str, model: str | None = None, language: str = "fa") -> AnalysisOutput:
    payload = extract_json_object(text)
    if payload is None:
        raise AnalysisParseError("Invalid analysis response format: no JSON object found")
    try:
        jsonschema.validate(payload, ANALYSIS_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise AnalysisParseError(f"Invalid analysis response format: {exc.message}") from exc

    sentiment_raw = payload["sentiment"]
    score = _clamp(float(sentiment_raw["score"]), -1.0, 1.0)
    confidence_raw = sentiment_raw.get("confidence")
    confidence = _clamp(float(confidence_raw), 0.0, 1.0) if confidence_raw is not None else 0.5
    label = str(sentiment_raw.get("sentiment") or sentiment_raw.get("label") or "").strip().lower()
    if label not in SENTIMENT_LABELS:
        label = label_for_score(score)

    entities = []
    for item in payload.get("entities") or []:
        text_value = item["text"].strip()
        if not text_value:
            continue
        entity_type = str(item.get("type") or "OTHER").upper()
        if entity_type not in ENTITY_TYPES:
            entity_type = "OTHER"
        relevance = item.get("relevance")
        entities.append(
            Entity(
                text=text_value,
                type=entity_type,
                relevance=_clamp(float(relevance), 0.0, 1.0) if relevance is not None else 0.0,
            )
        )

    summary = payload.get("summary")
    return AnalysisOutput(
        sentiment=Sentiment(label=label, score=score, confidence=confidence),
        topics=_clean_strings(payload.get("topics"))[:MAX_TOPICS],
        entities=entities,
        keywords=_clean_strings(payload.get("keywords"))[:MAX_KEYWORDS],
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else None,
        language=language,
        model=model,
    )


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first well-formed JSON object embedded in ``text``."""
    if not text:
        return None
    cleaned = _FENCE.sub("", text).strip()
    decoder = json.JSONDecoder()
    index = cleaned.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(cleaned, index)
        except json.JSONDecodeError:
            index = cleaned.find("{", index + 1)
            continue
        if isinstance(value, dict):
            return value
        index = cleaned.find("{", index + 1)
    return None


def label_for_score(score: float) -> str:
    if score > POSITIVE_THRESHOLD:
        return "positive"
    if score < NEGATIVE_THRESHOLD:
        return "negative"
    return "neutral"


def _clean_strings(values: Any) -> list[str]:
    cleaned: list[str] = []
    for value in values or []:
        value = value.strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
