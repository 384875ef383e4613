"""Tests for centralized logging configuration."""

import json
import logging
from pathlib import Path

from ..logging_utils import (
    BurstSampler,
    LogMode,
    _TickTraceFilter,
    get_log_mode,
    is_perf_logging_enabled,
    is_quiet_logging_enabled,
    set_log_mode,
    setup_logging,
)
from .conftest import FakeClock


def test_setup_logging_file_and_console_handlers(tmp_path: Path):
    log_file = tmp_path / "test.log"
    logger = setup_logging(
        level="DEBUG",
        log_file=str(log_file),
        json_format=False,
        add_console=True,
        logger_name="test_logging_utils.file_console",
    )
    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()
    assert log_file.exists()
    assert "hello" in log_file.read_text(encoding="utf-8")


def test_setup_logging_idempotent(tmp_path: Path):
    log_file = tmp_path / "test2.log"
    name = "test_logging_utils.idempotent"
    logger1 = setup_logging(level="INFO", log_file=str(log_file), logger_name=name)
    count = len(logger1.handlers)
    logger2 = setup_logging(level="DEBUG", log_file=str(log_file), logger_name=name)
    assert logger1 is logger2
    assert len(logger2.handlers) == count
    assert logger2.level == logging.DEBUG


def test_log_mode_helpers_roundtrip():
    set_log_mode(LogMode.PERF)
    assert get_log_mode() is LogMode.PERF
    assert is_perf_logging_enabled() is True
    set_log_mode("quiet")
    assert get_log_mode() is LogMode.QUIET
    assert is_quiet_logging_enabled() is True
    assert set_log_mode("nonsense") is LogMode.NORMAL


def test_setup_logging_perf_forces_debug(tmp_path: Path):
    log_file = tmp_path / "perf.log"
    logger = setup_logging(
        level="INFO",
        log_file=str(log_file),
        log_mode=LogMode.PERF,
        logger_name="test_logging_utils.perf",
    )
    assert logger.level == logging.DEBUG
    set_log_mode(LogMode.NORMAL)


def test_quiet_mode_raises_console_level(tmp_path: Path):
    logger = setup_logging(
        level="DEBUG",
        log_file=str(tmp_path / "quiet.log"),
        log_mode="quiet",
        logger_name="test_logging_utils.quiet",
    )
    consoles = [
        h for h in logger.handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    ]
    assert consoles and all(h.level == logging.WARNING for h in consoles)
    set_log_mode(LogMode.NORMAL)


def _record(msg: str) -> logging.LogRecord:
    return logging.LogRecord("ptcadence.session.sequencer", logging.DEBUG, __file__, 1, msg, None, None)


def test_tick_trace_filtered_unless_enabled(monkeypatch):
    set_log_mode(LogMode.NORMAL)
    monkeypatch.delenv("PTCADENCE_TICK_TRACE", raising=False)
    f = _TickTraceFilter()
    assert f.filter(_record("[tick.trace] phase=1")) is False
    assert f.filter(_record("[sequencer] Paused")) is True

    monkeypatch.setenv("PTCADENCE_TICK_TRACE", "1")
    assert f.filter(_record("[tick.trace] phase=1")) is True


def test_tick_trace_from_child_logger_kept_out_of_log_file(tmp_path: Path, monkeypatch):
    set_log_mode(LogMode.NORMAL)
    monkeypatch.delenv("PTCADENCE_TICK_TRACE", raising=False)
    log_file = tmp_path / "trace.log"
    logger = setup_logging(
        level="DEBUG",
        log_file=str(log_file),
        add_console=False,
        logger_name="test_logging_utils.trace",
    )
    child = logging.getLogger("test_logging_utils.trace.session.sequencer")
    child.debug("[tick.trace] phase=1 elapsed=0.1")
    child.debug("[sequencer] Paused")
    for handler in logger.handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "[tick.trace]" not in text
    assert "[sequencer] Paused" in text


def test_json_format_writes_one_object_per_line(tmp_path: Path):
    log_file = tmp_path / "json.log"
    logger = setup_logging(
        level="INFO",
        log_file=str(log_file),
        json_format=True,
        add_console=False,
        logger_name="test_logging_utils.json",
    )
    logger.info("session %s started", "s1")
    logger.warning("disk low")
    for handler in logger.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    assert [e["message"] for e in entries] == ["session s1 started", "disk low"]
    assert entries[1]["level"] == "WARNING"
    assert entries[0]["logger"] == "test_logging_utils.json"


def test_burst_sampler_summarizes_window():
    clock = FakeClock()
    sampler = BurstSampler(10.0, time_provider=clock)
    assert [sampler.record() for _ in range(5)] == [None] * 5

    clock.advance(10.0)
    assert sampler.record() == 6
    assert sampler.record() is None
    assert sampler.flush() == 1
    assert sampler.flush() == 0
