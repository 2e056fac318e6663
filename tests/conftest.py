from __future__ import annotations

import os
from typing import Iterator

import pytest

import safebackup.db.session as db_session_module
from safebackup.core.config import get_settings
from safebackup.worker.pipeline import reset_workers

ENV_PREFIX = "SAFEBACKUP_"


def _clear_env() -> None:
    for key in [key for key in os.environ if key.startswith(ENV_PREFIX)]:
        del os.environ[key]


@pytest.fixture(autouse=True)
def isolated_environment() -> Iterator[None]:
    saved = {key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)}
    _clear_env()
    yield
    reset_workers()
    db_session_module.reset_engines()
    get_settings.cache_clear()
    _clear_env()
    os.environ.update(saved)
