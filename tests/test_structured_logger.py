"""Tests for the JSON-lines structured logger."""

import json
import logging

from termtune.utils.structured_logger import StructuredLogger, create_structured_logger


def read_records(log_dir):
    (path,) = list(log_dir.glob("termtune_*.jsonl"))
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_json_records_carry_session_context(tmp_path):
    base, pipeline, playback = create_structured_logger(log_dir=tmp_path, enable_json=True)
    base.set_session_context(workers=4)

    pipeline.job_succeeded("t1", 2 * 1024 * 1024, 1.234, cached=True)
    playback.track_failed("t2", "cannot decode")
    base.close()

    first, second = read_records(tmp_path)
    assert first["event"] == "job_succeeded"
    assert first["level"] == "INFO"
    assert first["size_mb"] == 2.0
    assert first["workers"] == 4
    assert first["component"] == "pipeline"
    assert second["event"] == "track_failed"
    assert second["level"] == "ERROR"
    assert second["component"] == "playback"
    assert second["session_id"] == first["session_id"]


def test_json_disabled_without_log_dir(tmp_path):
    logger = StructuredLogger("termtune", log_dir=None, enable_json=True)

    logger.info("job_started", track_id="t1")

    assert not logger.enable_json
    assert list(tmp_path.iterdir()) == []


def test_console_lines_go_to_standard_logging(caplog):
    logger = StructuredLogger("termtune.test", enable_json=False)

    with caplog.at_level(logging.WARNING, logger="termtune.test"):
        logger.warning("job_retry", track_id="t1", attempt=2)

    assert "[job_retry] track_id=t1 attempt=2" in caplog.text


def test_writes_after_close_are_dropped(tmp_path):
    with StructuredLogger("termtune", log_dir=tmp_path) as logger:
        logger.info("first")
    logger.info("second")

    assert [r["event"] for r in read_records(tmp_path)] == ["first"]
