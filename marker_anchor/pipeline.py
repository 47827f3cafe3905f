from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Optional

from marker_pipeline.mp_types import Frame, Pose
from marker_pipeline.services.calib import CalibrationProfile
from marker_pipeline.strategies.detect_aruco import MarkerDetectionAdapter

from .anchors import AnchorHost, AnchorLifecycleManager, ContentSpec, InMemoryAnchorHost
from .config import PipelineConfig
from .performance import PerformanceMonitor, PerformanceSample
from .throttle import Admission, FrameThrottler
from .worker import FrameResult, MarkerWorker, ProcessingRequest

PosesCallback = Callable[[int, dict[int, Pose]], None]
ResultCallback = Callable[[FrameResult], None]
PerformanceCallback = Callable[[PerformanceSample], None]


class MarkerPipeline:
    """
    Facade: throttler -> worker thread -> result queue -> anchors/monitor.
    submit() is called from the producer thread and never blocks; drain() is
    called from the consumer thread and is where subscribers run.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        calibration: Optional[CalibrationProfile] = None,
        anchor_host: Optional[AnchorHost] = None,
        detector_factory: Optional[Callable[[], Any]] = None,
        default_content: Optional[ContentSpec] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = (config or PipelineConfig()).validate()
        self.logger = logger or logging.getLogger(__name__)
        self.detector_factory = detector_factory or self._default_detector
        self.throttler = FrameThrottler(
            self.config.sample_every, self.config.max_in_flight, self.config.sample_phase
        )
        self.monitor = PerformanceMonitor(self.config.perf_emit_every, self.config.perf_emit_interval_s)
        self.anchors = AnchorLifecycleManager(
            anchor_host or InMemoryAnchorHost(),
            grace_results=self.config.anchor_grace_results,
            default_content=default_content,
            logger=self.logger,
        )

        self._explicit_calibration = calibration is not None
        self._calibration = calibration
        self._calibration_size: Optional[tuple[int, int]] = None
        self._recalibrate = False
        self._calib_lock = threading.Lock()

        self._on_poses: list[PosesCallback] = []
        self._on_result: list[ResultCallback] = []
        self._on_performance: list[PerformanceCallback] = []

        self._results: queue.Queue = queue.Queue()
        self._requests: Optional[queue.Queue] = None
        self._worker: Optional[MarkerWorker] = None
        self._started = False
        self._paused = threading.Event()

    def _default_detector(self) -> MarkerDetectionAdapter:
        return MarkerDetectionAdapter(self.config.detector.settings())

    # subscriptions
    def on_poses(self, callback: PosesCallback) -> None:
        self._on_poses.append(callback)

    def on_result(self, callback: ResultCallback) -> None:
        self._on_result.append(callback)

    def on_performance(self, callback: PerformanceCallback) -> None:
        self._on_performance.append(callback)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def is_fatal(self) -> bool:
        return self._worker is not None and self._worker.is_fatal

    def start(self) -> "MarkerPipeline":
        if self._started:
            return self
        self._requests = queue.Queue(maxsize=self.config.max_in_flight + 1)
        self._worker = MarkerWorker(
            self._requests,
            self._results,
            self.detector_factory,
            max_init_attempts=self.config.max_init_attempts,
            slow_frame_warn_ms=self.config.slow_frame_warn_ms,
            on_complete=self.throttler.complete,
            logger=self.logger,
            name=f"{self.config.pipeline_name}-worker",
        )
        self._worker.start()
        self._started = True
        self.logger.info("pipeline started: %s", self.config.as_dict())
        return self

    def _calibration_for(self, frame: Frame) -> tuple[CalibrationProfile, bool]:
        with self._calib_lock:
            size = (frame.width, frame.height)
            if self._calibration is None or (
                not self._explicit_calibration and size != self._calibration_size
            ):
                self._calibration = self.config.calibration_for(*size)
                self._calibration_size = size
                self._recalibrate = True
            flag, self._recalibrate = self._recalibrate, False
            return self._calibration, flag

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def pause(self) -> None:
        """Skip every submitted frame until resume(); the worker keeps running."""
        self._paused.set()
        self.logger.info("processing paused")

    def resume(self) -> None:
        self._paused.clear()
        self.logger.info("processing resumed")

    def _skip(self, frame: Frame) -> Admission:
        self.monitor.record_skipped()
        frame.release()
        return Admission.SKIPPED

    def submit(self, frame: Frame) -> Admission:
        if not self._started:
            raise RuntimeError("pipeline not started")
        if self._paused.is_set():
            return self._skip(frame)
        admission = self.throttler.submit(frame)
        if admission is Admission.SKIPPED:
            return self._skip(frame)

        try:
            calibration, recalibrate = self._calibration_for(frame)
        except Exception:
            self.throttler.cancel()
            frame.release()
            raise
        req = ProcessingRequest(frame, calibration, self.config.marker_length_m, recalibrate)
        try:
            self._requests.put_nowait(req)
        except queue.Full:
            self.throttler.cancel()
            return self._skip(frame)
        return admission

    def should_throttle(self) -> bool:
        """Advisory for producers that can lower their capture rate; admission ignores it."""
        return self.monitor.should_throttle(self.throttler.in_flight, self.config.max_in_flight)

    def update_calibration(self, profile: CalibrationProfile) -> None:
        """Use `profile` for every frame submitted from now on."""
        with self._calib_lock:
            self._calibration = profile
            self._explicit_calibration = True
            self._calibration_size = None
            self._recalibrate = True
        self.logger.info("calibration updated: fx=%.1f fy=%.1f cx=%.1f cy=%.1f",
                         profile.fx, profile.fy, profile.cx, profile.cy)

    def drain(self, timeout: float = 0.0) -> list[FrameResult]:
        """Deliver finished results in sequence order. Waits up to `timeout` for the first."""
        out: list[FrameResult] = []
        try:
            if timeout > 0:
                out.append(self._results.get(timeout=timeout))
            while True:
                out.append(self._results.get_nowait())
        except queue.Empty:
            pass

        for result in out:
            self._deliver(result)
        return out

    def _deliver(self, result: FrameResult) -> None:
        self.monitor.record_processed(result.processing_ms, ok=result.ok)
        if result.ok:
            self.anchors.reconcile(result)
            for cb in self._on_poses:
                cb(result.seq, result.poses)
        else:
            self.logger.warning("frame=%d dropped: %s", result.seq, result.reason)
        for cb in self._on_result:
            cb(result)
        if self.monitor.should_emit():
            sample = self.performance()
            self.logger.info(
                "perf processed=%d failed=%d skipped=%d avg=%.1fms fps=%.1f eff=%.0f%% load=%.2f depth=%d",
                sample.processed, sample.failed, sample.skipped, sample.avg_processing_ms, sample.fps,
                sample.efficiency * 100.0, sample.load, sample.queue_depth,
            )
            for cb in self._on_performance:
                cb(sample)

    def performance(self) -> PerformanceSample:
        return self.monitor.sample(self.throttler.in_flight)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.throttler.wait_idle(timeout)

    def shutdown(self, timeout: Optional[float] = 5.0) -> bool:
        """Finish queued frames, stop the worker and deliver what is left."""
        if not self._started:
            return True
        stopped = self._worker.stop(timeout)
        if not stopped:
            self.logger.warning("worker did not stop within %.1fs", timeout or 0.0)
        self._started = False
        self.drain()
        self.logger.info("pipeline stopped: %s", self.throttler.stats())
        return stopped

    def reinitialize(self, timeout: Optional[float] = 5.0) -> "MarkerPipeline":
        """Replace the worker (clears a fatal state) and reset the counters."""
        self.shutdown(timeout)
        self._results = queue.Queue()
        self.throttler.reset()
        self.monitor.reset()
        return self.start()
