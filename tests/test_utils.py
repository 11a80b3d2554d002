from datetime import datetime, timezone

from mediaintel.utils import (
    chunked,
    json_dumps,
    normalize_persian_text,
    normalize_text,
    normalize_url,
    parse_date_value,
    retry_call,
)


def test_normalize_url_strips_tracking_and_sorts_query():
    url = "HTTPS://Example.COM/news?utm_source=x&b=2&a=1#frag"
    assert normalize_url(url, True, ["utm_source"]) == "https://example.com/news?a=1&b=2"


def test_normalize_url_keeps_params_when_disabled():
    url = "https://example.com/?utm_source=x"
    assert normalize_url(url, False, ["utm_source"]) == "https://example.com/?utm_source=x"


def test_normalize_text_collapses_whitespace_and_zero_width():
    assert normalize_text("  a\u200b b \n\t c ") == "a b c"


def test_normalize_persian_text_maps_arabic_letters():
    assert normalize_persian_text("كتاب علي") == "کتاب علی"


def test_parse_date_value_variants():
    expected = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_date_value("Sat, 01 Mar 2025 10:00:00 GMT") == expected
    assert parse_date_value("2025-03-01T13:30:00+03:30") == expected
    assert parse_date_value(expected.timetuple()) == expected
    assert parse_date_value("not a date") is None
    assert parse_date_value(None) is None


def test_retry_call_backs_off_then_succeeds():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("down")
        return "ok"

    result = retry_call(
        flaky,
        max_retries=3,
        backoff_seconds=2.0,
        retry_on=(ConnectionError,),
        sleep=delays.append,
    )

    assert result == "ok"
    assert delays == [2.0, 4.0]


def test_retry_call_gives_up():
    delays = []

    def broken():
        raise ConnectionError("down")

    try:
        retry_call(broken, max_retries=1, backoff_seconds=1.0, retry_on=(ConnectionError,), sleep=delays.append)
    except ConnectionError:
        pass
    else:
        raise AssertionError("Expected ConnectionError")
    assert delays == [1.0]


def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]


def test_json_dumps_keeps_unicode():
    assert json_dumps({"topic": "اقتصاد"}) == '{"topic": "اقتصاد"}'
