"""
Unit tests for run.py -- argument parsing, stage isolation and admin commands.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import run
from config import ConfigError
from executor.control import load_control
from state.checkpoint import CheckpointManager


class TestParseArgs:
    def test_cycle_loop(self):
        args = run.parse_args(["cycle", "--loop", "60", "--serve"])
        assert args.command == "cycle"
        assert args.loop == 60.0
        assert args.serve is True

    def test_single_stage_defaults(self):
        args = run.parse_args(["ingest"])
        assert args.loop == 0.0
        assert args.log_dir == "logs"

    def test_global_flags(self):
        args = run.parse_args(["--log-level", "DEBUG", "--json-log", "out.ndjson", "score"])
        assert args.log_level == "DEBUG"
        assert args.json_log == "out.ndjson"

    def test_mode_choices(self):
        assert run.parse_args(["mode", "live"]).mode == "live"
        with pytest.raises(SystemExit):
            run.parse_args(["mode", "yolo"])

    def test_close_needs_id(self):
        assert run.parse_args(["close", "abc"]).position_id == "abc"
        with pytest.raises(SystemExit):
            run.parse_args(["close"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            run.parse_args([])


class TestRunPass:
    def test_failing_stage_does_not_stop_the_next(self):
        pipeline = MagicMock()
        with patch("run.run_stage", side_effect=[RuntimeError("exchange down"), {"signals": 0}, {}]) as stage:
            ok = run.run_pass(pipeline, run.PIPELINE_STAGES)
        assert ok is False
        assert [c.args[1] for c in stage.call_args_list] == ["ingest", "score", "execute"]

    def test_all_ok(self):
        with patch("run.run_stage", return_value={}):
            assert run.run_pass(MagicMock(), ("score",)) is True

    def test_unknown_stage(self):
        with pytest.raises(ValueError):
            run.run_stage(MagicMock(), "bogus")

    def test_single_pass_without_loop(self):
        with patch("run.run_pass", return_value=True) as run_pass:
            assert run.run_loop(MagicMock(), ("ingest",), 0) is True
        run_pass.assert_called_once()


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("EXCHANGES", raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path / "cli.db"))
    with patch("run.setup_logging", return_value=None), patch("run.install_shutdown_handlers"):
        yield tmp_path


class TestMain:
    def test_config_error_exits_nonzero(self, isolated_env):
        with patch("run.load_config", side_effect=ConfigError("No exchanges configured")):
            assert run.main(["cycle"]) == 1

    def test_mode_command(self, isolated_env):
        assert run.main(["mode", "live"]) == 0
        checkpoint = CheckpointManager(isolated_env / "cli.db")
        assert load_control(checkpoint, "paper").mode == "live"
        checkpoint.close()

    def test_stop_command(self, isolated_env):
        assert run.main(["stop"]) == 0
        checkpoint = CheckpointManager(isolated_env / "cli.db")
        assert load_control(checkpoint, "paper").running is False
        checkpoint.close()

    def test_close_unknown_position(self, isolated_env):
        assert run.main(["close", "nope"]) == 1

    def test_reset_kill_switch(self, isolated_env):
        assert run.main(["reset-kill-switch"]) == 0

    def test_stage_runs_and_closes_pipeline(self, isolated_env):
        with patch("run.run_stage", return_value={}) as stage:
            assert run.main(["score"]) == 0
        assert stage.call_args.args[1] == "score"
