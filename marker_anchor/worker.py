from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from marker_pipeline.errors import (
    DetectionError,
    DetectorInitError,
    PipelineFatalError,
    ProcessingError,
)
from marker_pipeline.mp_types import Detection, Frame, Pose
from marker_pipeline.services.calib import CalibrationProfile
from marker_pipeline.strategies.color_convert import ColorConverter
from marker_pipeline.strategies.localize_pnp import PoseEstimator

_STOP = object()


@dataclass
class ProcessingRequest:
    frame: Frame
    calibration: CalibrationProfile
    marker_length: float
    recalibrate: bool = False


@dataclass
class FrameResult:
    seq: int
    timestamp: float
    poses: dict[int, Pose] = field(default_factory=dict)
    detections: list[Detection] = field(default_factory=list)
    error: Optional[ProcessingError] = None
    processing_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> str:
        return "" if self.error is None else str(self.error)


class MarkerWorker:
    """
    Single background thread: conversion -> detection -> pose.
    Requests are handled strictly in queue order and every request yields
    exactly one FrameResult. The detector and pose estimator exist only
    inside this thread.
    """

    def __init__(
        self,
        requests: queue.Queue,
        results: queue.Queue,
        detector_factory: Callable[[], Any],
        converter: Optional[ColorConverter] = None,
        max_init_attempts: int = 5,
        slow_frame_warn_ms: float = 250.0,
        on_complete: Optional[Callable[[], None]] = None,
        logger: Optional[logging.Logger] = None,
        name: str = "marker-worker",
    ):
        self.requests = requests
        self.results = results
        self.detector_factory = detector_factory
        self.converter = converter or ColorConverter()
        self.max_init_attempts = max_init_attempts
        self.slow_frame_warn_ms = slow_frame_warn_ms
        self.on_complete = on_complete
        self.logger = logger or logging.getLogger(__name__)
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._detector = None
        self._estimator: Optional[PoseEstimator] = None
        self._init_failures = 0
        self._fatal = threading.Event()
        self.processed = 0

    @property
    def is_fatal(self) -> bool:
        return self._fatal.is_set()

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Queue the shutdown sentinel behind pending requests and join."""
        if self._thread.is_alive():
            self.requests.put(_STOP, timeout=timeout)
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        try:
            while True:
                item = self.requests.get()
                if item is _STOP:
                    break
                result = self._process(item)
                self.results.put(result)
                self.processed += 1
                if self.on_complete is not None:
                    self.on_complete()
        finally:
            self._close_detector()
            self.logger.debug("worker exited after %d frames", self.processed)

    def _process(self, req: ProcessingRequest) -> FrameResult:
        frame = req.frame
        seq, ts = frame.seq, frame.timestamp
        t0 = time.perf_counter()
        try:
            poses, dets = self._handle(req)
            error = None
        except ProcessingError as exc:
            poses, dets, error = {}, [], exc
        except Exception as exc:
            self.logger.exception("unexpected error on frame %d", seq)
            poses, dets, error = {}, [], ProcessingError(f"unexpected {type(exc).__name__}: {exc}")
        finally:
            frame.release()
        ms = (time.perf_counter() - t0) * 1000.0

        if error is not None:
            self.logger.debug("frame=%d failed: %s", seq, error)
        if ms > self.slow_frame_warn_ms:
            self.logger.warning("slow frame=%d took %.1f ms", seq, ms)
        return FrameResult(seq, ts, poses, dets, error, ms)

    def _handle(self, req: ProcessingRequest):
        if self._fatal.is_set():
            raise PipelineFatalError(
                f"detector failed to initialise {self._init_failures} times; re-initialise the pipeline"
            )
        detector = self._ensure_detector()
        image = self.converter.convert_frame(req.frame)

        detection = detector.detect(image)
        if not detection.success:
            raise detection.error or DetectionError("detection failed")

        poses = self._estimator_for(req).estimate(detection.detections, req.marker_length)
        return poses, list(detection.detections)

    def _estimator_for(self, req: ProcessingRequest) -> PoseEstimator:
        # rebuild whenever the snapshot differs from the cached one
        if self._estimator is None:
            self._estimator = PoseEstimator(req.calibration)
        elif req.recalibrate or req.calibration != self._estimator.calibration:
            self._estimator.recalibrate(req.calibration)
        return self._estimator

    def _ensure_detector(self):
        if self._detector is not None:
            return self._detector
        try:
            detector = self.detector_factory()
            init = getattr(detector, "initialize", None)
            if callable(init):
                init()
        except Exception as exc:
            self._init_failures += 1
            if self._init_failures >= self.max_init_attempts:
                self._fatal.set()
                self.logger.error(
                    "detector init failed %d times, pipeline is now fatal: %s",
                    self._init_failures, exc,
                )
            else:
                self.logger.warning(
                    "detector init failed (attempt %d/%d): %s",
                    self._init_failures, self.max_init_attempts, exc,
                )
            if isinstance(exc, DetectorInitError):
                raise
            raise DetectorInitError(str(exc)) from exc
        self._init_failures = 0
        self._detector = detector
        self.logger.info("detector initialised")
        return detector

    def _close_detector(self) -> None:
        if self._detector is None:
            return
        close = getattr(self._detector, "close", None)
        if callable(close):
            close()
        self._detector = None
        self._estimator = None
