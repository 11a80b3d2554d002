import logging
import os
import sys

from mediaintel.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch, capsys):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("MI_LOG_LEVEL", "INFO")
    monkeypatch.setenv("MI_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("mediaintel.worker")
        configure_logging("mediaintel.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )

        logging.getLogger("mediaintel.worker").info("event=console_once")
        assert capsys.readouterr().out.count("event=console_once") == 1
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("MI_LOG_LEVELS", "mediaintel.fetchers=ERROR")
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    target = logging.getLogger("mediaintel.fetchers")
    original_level = target.level
    try:
        configure_logging("mediaintel")
        assert target.level == logging.ERROR
    finally:
        root.handlers = original_handlers
        target.setLevel(original_level)


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("mediaintel.tests")
    with caplog.at_level(logging.INFO, logger="mediaintel.tests"):
        log_event(logger, logging.INFO, "job_completed", job_id=3, lane="scrape")

    assert "event=job_completed job_id=3 lane=scrape" in caplog.text
