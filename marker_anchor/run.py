from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional

from marker_pipeline.mp_types import Pose

from .anchors import ContentSpec, InMemoryAnchorHost
from .capture import BaseCapture, SyntheticCapture, USBOpenCVCapture
from .config import PipelineConfig, load_config
from .logging_utils import add_file_handler, route_library_logs, setup_logger, unroute_library_logs
from .output import CsvPoseOutput, MqttPoseOutput, OutputSink
from .pipeline import MarkerPipeline

MAX_READ_FAILURES = 30


@dataclass
class RunSummary:
    frames_submitted: int
    frames_processed: int
    frames_failed: int
    poses_written: int
    active_anchors: int
    avg_fps: float
    efficiency: float
    csv_path: Optional[str]
    log_path: Optional[str]


class MarkerSession:
    """Pulls frames from a capture source through a MarkerPipeline until stopped."""

    def __init__(
        self,
        config: PipelineConfig,
        capture: BaseCapture,
        outputs: Optional[list[OutputSink]] = None,
        max_frames: Optional[int] = None,
        content_ref: Optional[str] = None,
        logger=None,
        log_path: Optional[str] = None,
        csv_path: Optional[str] = None,
        log_level: Optional[str] = None,
    ):
        self.config = config
        self.capture = capture
        self.outputs = outputs or []
        self.max_frames = max_frames
        self.logger = logger or setup_logger(config.pipeline_name, log_level)
        self.log_path = log_path
        self.csv_path = csv_path
        self.host = InMemoryAnchorHost()
        content = ContentSpec(content_ref) if content_ref else None
        self.pipeline = MarkerPipeline(
            config, anchor_host=self.host, default_content=content, logger=self.logger
        )
        self._stop_event = threading.Event()
        self.processed = 0
        self.failed = 0
        self.poses_written = 0

    def stop(self) -> None:
        self._stop_event.set()

    def _write_poses(self, seq: int, poses: dict[int, Pose]) -> None:
        now = time.time()
        for marker_id, pose in sorted(poses.items()):
            for out in self.outputs:
                out.write_pose(now, seq, marker_id, pose)
            self.poses_written += 1

    def _count(self, result) -> None:
        if result.ok:
            self.processed += 1
        else:
            self.failed += 1

    def run(self) -> RunSummary:
        if self.log_path:
            add_file_handler(self.logger, self.config.pipeline_name, self.log_path)
        routed = route_library_logs(self.logger)

        for out in self.outputs:
            out.open()
        self.pipeline.on_poses(self._write_poses)
        self.pipeline.on_result(self._count)

        t0 = time.time()
        submitted = 0
        read_failures = 0

        try:
            self.capture.start()
            self.pipeline.start()
            while not self._stop_event.is_set():
                if self.max_frames and submitted >= self.max_frames:
                    break
                if self.pipeline.is_fatal:
                    self.logger.error("pipeline is fatal, stopping")
                    break

                f = self.capture.next_frame()
                if f is None:
                    read_failures += 1
                    if read_failures >= MAX_READ_FAILURES:
                        self.logger.error("capture returned no frame %d times in a row", read_failures)
                        break
                    continue
                read_failures = 0

                self.pipeline.submit(f)
                submitted += 1
                self.pipeline.drain()

            self.pipeline.wait_idle(5.0)
        finally:
            self.pipeline.shutdown()
            unroute_library_logs(routed)
            self.capture.stop()
            for out in self.outputs:
                out.close()

        elapsed = max(1e-6, time.time() - t0)
        perf = self.pipeline.performance()
        summary = RunSummary(
            frames_submitted=submitted,
            frames_processed=self.processed,
            frames_failed=self.failed,
            poses_written=self.poses_written,
            active_anchors=len(self.pipeline.anchors.active_ids),
            avg_fps=self.processed / elapsed,
            efficiency=perf.efficiency,
            csv_path=self.csv_path,
            log_path=self.log_path,
        )
        self.logger.info(
            "summary submitted=%d processed=%d failed=%d poses=%d anchors=%d",
            submitted, self.processed, self.failed, self.poses_written, summary.active_anchors,
        )
        return summary


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Track ArUco markers and keep an anchor per marker")
    ap.add_argument("--config", help="Path to JSON/YAML config")

    ap.add_argument("--pipeline-name")
    ap.add_argument("--device", default="0")
    ap.add_argument("--synthetic", action="store_true", help="Use a rendered marker scene instead of a camera")
    ap.add_argument("--fps", type=int, default=30)
    ap.add_argument("--width", type=int, default=640)
    ap.add_argument("--height", type=int, default=480)
    ap.add_argument("--calib")
    ap.add_argument("--max-frames", type=int)
    ap.add_argument("--sample-every", type=int)
    ap.add_argument("--max-in-flight", type=int)
    ap.add_argument("--marker-length-m", type=float)
    ap.add_argument("--content", help="Content reference attached to every new anchor")
    ap.add_argument("--out", help="CSV file for marker poses")
    ap.add_argument("--mqtt-host")
    ap.add_argument("--mqtt-topic", default="markers/poses")
    ap.add_argument("--log-file")
    ap.add_argument("--log-level", help="DEBUG, INFO, WARNING... (default: $MARKER_ANCHOR_LOG_LEVEL or INFO)")

    return ap


def _apply_args(cfg: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    cfg.apply_overrides(
        pipeline_name=args.pipeline_name,
        calibration_path=args.calib,
        sample_every=args.sample_every,
        max_in_flight=args.max_in_flight,
        marker_length_m=args.marker_length_m,
    )
    return cfg.validate()


def _build_capture(args: argparse.Namespace) -> BaseCapture:
    if args.synthetic:
        return SyntheticCapture(fps=0, width=args.width, height=args.height)
    device = args.device
    if isinstance(device, str) and device.isdigit():
        device = int(device)
    return USBOpenCVCapture(device, args.fps, args.width, args.height)


def main(argv: Optional[list[str]] = None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config) if args.config else PipelineConfig()
    cfg = _apply_args(cfg, args)

    outputs: list[OutputSink] = []
    if args.out:
        outputs.append(CsvPoseOutput(args.out))
    if args.mqtt_host:
        outputs.append(MqttPoseOutput(args.mqtt_host, args.mqtt_topic))

    session = MarkerSession(
        cfg,
        _build_capture(args),
        outputs=outputs,
        max_frames=args.max_frames,
        content_ref=args.content,
        log_path=args.log_file,
        log_level=args.log_level,
        csv_path=args.out,
    )

    def _handle_signal(_sig, _frame):
        session.stop()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _handle_signal)
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, _handle_signal)

    summary = session.run()
    print(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
