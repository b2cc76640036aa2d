from __future__ import annotations

import logging

import pytest
import structlog

from soil_telemetry.repos.file_repo import FileRepo

from .utils import RecordingSink


@pytest.fixture(autouse=True)
def _restore_logging():
    # the app lifespan reconfigures logging against the captured stdout
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def repo(tmp_path) -> FileRepo:
    return FileRepo(tmp_path / "data")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
