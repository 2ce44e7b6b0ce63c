from __future__ import annotations

import json

import pytest

from script_runner.log import setup_logging


def test_json_logs_go_to_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    logger = setup_logging("INFO", json=True)
    logger.info("run_finished", outcome="ExitCode")

    captured = capsys.readouterr()
    assert captured.out == ""
    record = json.loads(captured.err.strip().splitlines()[-1])
    assert record["event"] == "run_finished"
    assert record["outcome"] == "ExitCode"
    assert record["level"] == "info"
    assert "timestamp" in record


def test_level_filters_records(capsys: pytest.CaptureFixture[str]) -> None:
    logger = setup_logging("warning", json=True)
    logger.info("hidden")
    logger.warning("shown")

    err = capsys.readouterr().err
    assert "hidden" not in err
    assert "shown" in err


def test_unknown_level_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown log level"):
        setup_logging("LOUD")
