from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Callable, Optional

TARGET_FRAME_MS = 33.0  # ~30 fps budget
HISTORY_SIZE = 50
THROTTLE_LOAD = 0.8
THROTTLE_QUEUE_FULLNESS = 0.6


@dataclass
class PerformanceSample:
    processed: int
    skipped: int
    failed: int
    avg_processing_ms: float
    queue_depth: int
    fps: float
    efficiency: float
    load: float

    def as_dict(self) -> dict:
        return asdict(self)


class PerformanceMonitor:
    def __init__(
        self,
        emit_every: int = 30,
        emit_interval_s: float = 5.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.emit_every = emit_every
        self.emit_interval_s = emit_interval_s
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.processed = 0
            self.skipped = 0
            self.failed = 0
            self.avg_processing_ms = 0.0
            self._history: deque[float] = deque(maxlen=HISTORY_SIZE)
            self._since_emit = 0
            self._last_emit = self._clock()

    def record_processed(self, processing_ms: float, ok: bool = True) -> None:
        """Every delivered result counts, failed ones included."""
        with self._lock:
            self.processed += 1
            if not ok:
                self.failed += 1
            self._since_emit += 1
            if self.processed == 1:
                self.avg_processing_ms = processing_ms
            else:
                self.avg_processing_ms = self.avg_processing_ms * 0.9 + processing_ms * 0.1
            self._history.append(processing_ms)

    def record_skipped(self, count: int = 1) -> None:
        with self._lock:
            self.skipped += count

    @property
    def fps(self) -> float:
        with self._lock:
            if not self._history:
                return 0.0
            avg = sum(self._history) / len(self._history)
        return 1000.0 / avg if avg > 0 else 0.0

    @property
    def efficiency(self) -> float:
        with self._lock:
            total = self.processed + self.skipped
            return self.processed / total if total else 1.0

    @property
    def load(self) -> float:
        """EMA processing time as a fraction of the per-frame budget, clamped to [0, 1]."""
        with self._lock:
            return min(1.0, max(0.0, self.avg_processing_ms / TARGET_FRAME_MS))

    def should_throttle(self, queue_depth: int, capacity: int) -> bool:
        fullness = queue_depth / capacity if capacity > 0 else 0.0
        return self.load > THROTTLE_LOAD or fullness > THROTTLE_QUEUE_FULLNESS

    def should_emit(self) -> bool:
        with self._lock:
            if self._since_emit == 0:
                return False
            due = (
                self._since_emit >= self.emit_every
                or self._clock() - self._last_emit >= self.emit_interval_s
            )
            if due:
                self._since_emit = 0
                self._last_emit = self._clock()
            return due

    def sample(self, queue_depth: int = 0) -> PerformanceSample:
        fps, efficiency, load = self.fps, self.efficiency, self.load
        with self._lock:
            return PerformanceSample(
                processed=self.processed,
                skipped=self.skipped,
                failed=self.failed,
                avg_processing_ms=self.avg_processing_ms,
                queue_depth=queue_depth,
                fps=fps,
                efficiency=efficiency,
                load=load,
            )
