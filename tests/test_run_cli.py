import csv
import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from marker_anchor import run
from marker_anchor.capture import SyntheticCapture
from marker_anchor.config import PipelineConfig
from marker_anchor.logging_utils import LEVEL_ENV, add_file_handler, resolve_level, setup_logger
from marker_anchor.output import CsvPoseOutput


def test_session_on_synthetic_source(tmp_path: Path):
    csv_path = tmp_path / "poses.csv"
    session = run.MarkerSession(
        PipelineConfig(pipeline_name="synthsession"),
        SyntheticCapture(),
        outputs=[CsvPoseOutput(csv_path)],
        max_frames=9,
        content_ref="models/cube.glb",
        csv_path=str(csv_path),
    )

    summary = session.run()

    # frames 1, 4 and 7 are sampled with sample_every=3
    assert summary.frames_submitted == 9
    assert summary.frames_processed == 3
    assert summary.frames_failed == 0
    assert summary.poses_written == 3
    assert summary.active_anchors == 1
    assert summary.efficiency == pytest.approx(3 / 9)
    assert len(session.host.content) == 1


def test_session_stop_before_start_runs_no_frames(tmp_path: Path):
    session = run.MarkerSession(PipelineConfig(pipeline_name="stopped"), SyntheticCapture(), max_frames=5)
    session.stop()
    summary = session.run()
    assert summary.frames_submitted == 0
    assert summary.frames_processed == 0


@pytest.mark.system
def test_main_synthetic_writes_csv_and_log(tmp_path: Path, capsys):
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(json.dumps({"pipeline_name": "clitest", "sample_every": 2}), encoding="utf-8")
    out = tmp_path / "poses.csv"
    log = tmp_path / "run.log"

    with patch("marker_anchor.run.signal.signal") as mock_signal:
        rc = run.main([
            "--config", str(cfg_path),
            "--synthetic",
            "--max-frames", "6",
            "--max-in-flight", "3",
            "--out", str(out),
            "--log-file", str(log),
        ])

    assert rc == 0
    assert mock_signal.called
    with out.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.reader(fh))
    assert len(rows) == 4
    assert {r[2] for r in rows[1:]} == {"5"}
    assert "summary submitted=6 processed=3" in log.read_text(encoding="utf-8")
    assert "RunSummary" in capsys.readouterr().out


def test_apply_args_overrides_config():
    args = run._build_parser().parse_args(["--sample-every", "5", "--marker-length-m", "0.04"])
    cfg = run._apply_args(PipelineConfig(), args)
    assert cfg.sample_every == 5
    assert cfg.marker_length_m == 0.04
    assert cfg.max_in_flight == 3


def test_logger_injects_pipeline_name(tmp_path: Path):
    logger = setup_logger("logname", level=logging.DEBUG)
    log_path = tmp_path / "x.log"
    handler = add_file_handler(logger, "logname", str(log_path))
    try:
        logger.info("hello %d", 3)
    finally:
        handler.close()
        logger.removeHandler(handler)

    text = log_path.read_text(encoding="utf-8")
    assert "[logname] hello 3" in text
    assert setup_logger("logname") is logger
    assert len(logger.handlers) == 1


def test_resolve_level(monkeypatch):
    monkeypatch.delenv(LEVEL_ENV, raising=False)
    assert resolve_level() == logging.INFO
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.WARNING) == logging.WARNING

    monkeypatch.setenv(LEVEL_ENV, "ERROR")
    assert resolve_level() == logging.ERROR
    assert setup_logger("envlevel").level == logging.ERROR

    with pytest.raises(ValueError):
        resolve_level("chatty")


def test_session_routes_library_logs_to_file(tmp_path: Path):
    log = tmp_path / "debug.log"
    session = run.MarkerSession(
        PipelineConfig(pipeline_name="libroute", sample_every=1),
        SyntheticCapture(),
        max_frames=2,
        log_path=str(log),
        log_level="DEBUG",
    )
    try:
        session.run()
    finally:
        for handler in list(session.logger.handlers):
            if isinstance(handler, logging.FileHandler):
                handler.close()
                session.logger.removeHandler(handler)

    text = log.read_text(encoding="utf-8")
    assert "[libroute] ArUco detector ready" in text
    assert logging.getLogger("marker_pipeline").handlers == []


def test_log_level_flag_parsed():
    args = run._build_parser().parse_args(["--log-level", "WARNING"])
    assert args.log_level == "WARNING"
