"""Tests for logging setup and context adapters."""

import json
import logging

import pytest

from releasewatch.logging_config import get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_log_carries_bound_context(tmp_path, restore_root_logger):
    setup_logging(tmp_path)

    logger = get_logger("releasewatch.test", queue_id=12)
    logger.warning("Sent weekly_digest", extra={"user_id": 7})
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = (tmp_path / "app.log").read_text().strip().splitlines()
    record = json.loads(lines[-1])
    assert record["message"] == "Sent weekly_digest"
    assert record["level"] == "WARNING"
    assert record["queue_id"] == 12
    assert record["user_id"] == 7
    assert record["service"] == "releasewatch"
    assert not (tmp_path / "error.log").read_text().strip()


def test_call_extra_overrides_bound_context():
    adapter = get_logger("releasewatch.test", user_id=1)
    _, kwargs = adapter.process("msg", {"extra": {"user_id": 2}})
    assert kwargs["extra"] == {"user_id": 2}
