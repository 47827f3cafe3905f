from __future__ import annotations

import threading
from enum import Enum

from marker_pipeline.mp_types import Frame


class Admission(str, Enum):
    ADMITTED = "admitted"
    SKIPPED = "skipped"


class FrameThrottler:
    """
    Admission control in front of the worker queue.
    A frame is admitted when it is the sampled frame of its group of
    `sample_every` and fewer than `max_in_flight` frames are awaiting a result.
    submit() never blocks; skipped frames are only counted.
    """

    def __init__(self, sample_every: int = 3, max_in_flight: int = 3, sample_phase: int = 0):
        if sample_every < 1:
            raise ValueError("sample_every must be >= 1")
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if not 0 <= sample_phase < sample_every:
            raise ValueError("sample_phase must be in [0, sample_every)")
        self.sample_every = sample_every
        self.max_in_flight = max_in_flight
        self.sample_phase = sample_phase
        self._cond = threading.Condition()
        self._in_flight = 0
        self.submitted = 0
        self.admitted = 0
        self.skipped_sampling = 0
        self.skipped_backpressure = 0

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def skipped(self) -> int:
        return self.skipped_sampling + self.skipped_backpressure

    def submit(self, frame: Frame) -> Admission:
        with self._cond:
            index = self.submitted
            self.submitted += 1
            if (index - self.sample_phase) % self.sample_every != 0:
                self.skipped_sampling += 1
                return Admission.SKIPPED
            if self._in_flight >= self.max_in_flight:
                self.skipped_backpressure += 1
                return Admission.SKIPPED
            self._in_flight += 1
            self.admitted += 1
            return Admission.ADMITTED

    def cancel(self) -> None:
        """Undo the last admission when the frame could not be enqueued."""
        with self._cond:
            self.admitted -= 1
            self._release_slot()

    def complete(self) -> None:
        with self._cond:
            self._release_slot()

    def _release_slot(self) -> None:
        # a worker replaced by reinitialize() may still report after reset()
        self._in_flight = max(0, self._in_flight - 1)
        if self._in_flight == 0:
            self._cond.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._in_flight == 0, timeout)

    def reset(self) -> None:
        with self._cond:
            self._in_flight = 0
            self.submitted = 0
            self.admitted = 0
            self.skipped_sampling = 0
            self.skipped_backpressure = 0
            self._cond.notify_all()

    def stats(self) -> dict:
        with self._cond:
            return {
                "submitted": self.submitted,
                "admitted": self.admitted,
                "skipped_sampling": self.skipped_sampling,
                "skipped_backpressure": self.skipped_backpressure,
                "in_flight": self._in_flight,
            }
