"""Tests for JSONL event logging."""

import json
import tempfile
from pathlib import Path

import pytest

from jarvis.logging import JSONLLogger, LogEntry, configure_logger, get_logger


@pytest.fixture
def temp_log_dir():
    """Create a temporary directory for logs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def logger(temp_log_dir: Path) -> JSONLLogger:
    return JSONLLogger(log_dir=temp_log_dir)


def read_entries(logger: JSONLLogger) -> list[dict]:
    with open(logger.log_path) as f:
        return [json.loads(line) for line in f]


def test_log_entry_to_dict():
    """Test LogEntry excludes None values."""
    entry = LogEntry(timestamp="2024-01-01T00:00:00Z", event="test")
    data = entry.to_dict()

    assert "timestamp" in data
    assert "event" in data
    assert "user_id" not in data  # None excluded
    assert "extra" not in data  # Empty dict excluded


def test_log_creates_file(logger: JSONLLogger):
    logger.log("test_event")
    assert logger.log_path.exists()


def test_log_writes_jsonl(logger: JSONLLogger):
    """Test that logs are written in JSONL format."""
    logger.log("event1", user_id="telegram:1")
    logger.log("event2", user_id="sms:2")

    entries = read_entries(logger)

    assert len(entries) == 2
    assert entries[0]["event"] == "event1"
    assert entries[0]["user_id"] == "telegram:1"
    assert entries[1]["event"] == "event2"


def test_log_message(logger: JSONLLogger):
    logger.log_message("telegram:1", "telegram", 12)

    entry = read_entries(logger)[0]
    assert entry["event"] == "message_received"
    assert entry["platform"] == "telegram"
    assert entry["extra"]["length"] == 12


def test_log_reply(logger: JSONLLogger):
    logger.log_reply("sms:2", "sms", 40, duration_ms=812.5)

    entry = read_entries(logger)[0]
    assert entry["event"] == "reply_sent"
    assert entry["duration_ms"] == 812.5
    assert entry["extra"]["length"] == 40


def test_log_extraction_completed(logger: JSONLLogger):
    logger.log_extraction("telegram:1", added=2, duration_ms=100.0)

    entry = read_entries(logger)[0]
    assert entry["event"] == "extraction_completed"
    assert entry["extra"]["facts_added"] == 2


def test_log_extraction_failed(logger: JSONLLogger):
    logger.log_extraction("telegram:1", error="Response is not valid JSON")

    entry = read_entries(logger)[0]
    assert entry["event"] == "extraction_failed"
    assert entry["error"] == "Response is not valid JSON"
    assert "extra" not in entry


def test_rotation(temp_log_dir: Path):
    """Test log rotation when max size is exceeded."""
    logger = JSONLLogger(log_dir=temp_log_dir, max_size_mb=0.001)  # ~1KB

    for i in range(100):
        logger.log(f"event_{i}", data="x" * 100)

    log_files = list(temp_log_dir.glob("events*.jsonl"))
    assert len(log_files) >= 2


def test_extra_fields(logger: JSONLLogger):
    """Test that extra fields are included."""
    logger.log("custom", custom_field="value", another=123)

    entry = read_entries(logger)[0]
    assert entry["extra"]["custom_field"] == "value"
    assert entry["extra"]["another"] == 123


def test_configure_logger_replaces_global(temp_log_dir: Path):
    configured = configure_logger(temp_log_dir)
    assert get_logger() is configured
    assert configured.log_dir == temp_log_dir
