from __future__ import annotations

import logging

import pytest

from mediaintel.config import load_config
from mediaintel.db import Store


_ENV_VARS = (
    "MI_DB_URL",
    "MI_CONFIG_PATH",
    "MI_DATA_DIR",
    "MI_LLM_PROVIDER",
    "MI_LLM_BASE_URL",
    "MI_LLM_API_KEY",
    "MI_LLM_MODEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config(tmp_path):
    config_path = tmp_path / "config.yml"
    config_path.write_text(
        "\n".join(
            [
                "paths:",
                f"  data_dir: {tmp_path}",
                "fetch:",
                "  max_retries: 0",
                "  backoff_seconds: 0.0",
                "  min_content_length: 20",
                "analyzer:",
                "  batch_delay_seconds: 0.0",
            ]
        ),
        encoding="utf-8",
    )
    return load_config(str(config_path))


@pytest.fixture
def store(config):
    return Store(path=config.paths.state_db)


@pytest.fixture
def conn(store):
    with store.session() as connection:
        yield connection


@pytest.fixture
def logger():
    return logging.getLogger("mediaintel.tests")
