from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from ..config import LLMConfig
from ..errors import AnalyzerError

PROVIDER_TYPES = ("openai_compatible", "anthropic", "google")


def complete(
    llm: LLMConfig,
    system: str,
    user: str,
) -> str:
    """Send one system/user exchange to the configured provider and return its text."""
    base_url = llm.base_url or default_base_url(llm.provider)
    if llm.provider == "openai_compatible":
        payload = {
            "model": llm.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": llm.temperature,
            "max_tokens": llm.max_tokens,
        }
        headers = _auth_headers(llm.provider, llm.api_key)
        response = _http_request(_join_url(base_url, "/chat/completions"), headers, payload, llm.timeout_seconds)
        return _read_openai(response)
    if llm.provider == "anthropic":
        payload = {
            "model": llm.model,
            "max_tokens": llm.max_tokens,
            "temperature": llm.temperature,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }
        headers = _auth_headers(llm.provider, llm.api_key)
        response = _http_request(_join_url(base_url, "/messages"), headers, payload, llm.timeout_seconds)
        return _read_anthropic(response)
    if llm.provider == "google":
        url = _join_url(
            base_url,
            f"/models/{urllib.parse.quote(llm.model)}:generateContent",
        )
        payload = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "generationConfig": {
                "temperature": llm.temperature,
                "maxOutputTokens": llm.max_tokens,
            },
        }
        response = _http_request(_append_key(url, llm.api_key), {}, payload, llm.timeout_seconds)
        return _read_google(response)
    raise AnalyzerError(f"unsupported_provider_type: {llm.provider}")


def default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    if provider_type == "google":
        return "https://generativelanguage.googleapis.com/v1beta"
    return ""


def _http_request(
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    request = urllib.request.Request(url, data=data, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        if exc.code == 429:
            raise AnalyzerError(f"quota_exceeded: {body[:500]}") from exc
        raise AnalyzerError(f"http_error {exc.code}: {body[:500]}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise AnalyzerError(f"timeout after {timeout}s") from exc
    except urllib.error.URLError as exc:
        raise AnalyzerError(f"network_error: {exc}") from exc
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AnalyzerError(f"provider_returned_non_json: {raw[:200]}") from exc
    if not isinstance(decoded, dict):
        raise AnalyzerError("provider_returned_unexpected_payload")
    return decoded


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise AnalyzerError("openai_missing_choices")
    return (choices[0].get("message") or {}).get("content") or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    blocks = response.get("content") or []
    texts = [block.get("text") or "" for block in blocks if block.get("type", "text") == "text"]
    if not texts:
        raise AnalyzerError("anthropic_missing_content")
    return "".join(texts)


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        raise AnalyzerError("google_missing_candidates")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    if not parts:
        raise AnalyzerError("google_missing_parts")
    return "".join(part.get("text") or "" for part in parts)


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    if provider_type == "openai_compatible":
        return {"Authorization": f"Bearer {api_key}"}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {}


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
