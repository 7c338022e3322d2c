"""Tests for monitor.logger -- console/file/JSON logging setup."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

from monitor.logger import ConsoleFormatter, JSONFormatter, setup_logging


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _record(msg: str = "hello %s", args: tuple = ("world",), name: str = "ingest.cycle", level: int = logging.INFO):
    return logging.LogRecord(name, level, __file__, 1, msg, args, None)


class TestFormatters:
    def test_console_plain(self):
        line = ConsoleFormatter(use_color=False).format(_record())
        assert "INF" in line
        assert "ingest" in line
        assert line.endswith("hello world")

    def test_console_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("run", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        line = ConsoleFormatter(use_color=False).format(record)
        assert "ValueError: bad" in line

    def test_json(self):
        entry = json.loads(JSONFormatter().format(_record(level=logging.WARNING)))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "ingest.cycle"
        assert entry["msg"] == "hello world"
        assert entry["ts"].endswith("Z")


class TestSetupLogging:
    def test_console_only(self, tmp_path: Path):
        assert setup_logging("INFO", log_dir=None) is None
        assert len(logging.getLogger().handlers) == 1

    def test_verbose_file(self, tmp_path: Path):
        log_dir = tmp_path / "logs"
        path = setup_logging("WARNING", log_dir=str(log_dir), stage="ingest")
        assert path is not None
        assert Path(path).parent == log_dir
        assert Path(path).name.startswith("ingest_")

        logging.getLogger("scanner.engine").debug("detail line")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "detail line" in Path(path).read_text()

    def test_json_file(self, tmp_path: Path):
        json_path = tmp_path / "out.ndjson"
        setup_logging("INFO", json_log_file=str(json_path), log_dir=None)
        logging.getLogger("executor.autopilot").info("opened %s", "p1")
        for handler in logging.getLogger().handlers:
            handler.flush()
        lines = json_path.read_text().strip().splitlines()
        assert json.loads(lines[-1])["msg"] == "opened p1"

    def test_quiet_third_party(self):
        setup_logging("DEBUG", log_dir=None)
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("ccxt").level == logging.WARNING
