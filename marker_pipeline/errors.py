"""Error taxonomy for the marker pipeline.

Per-frame errors are carried as values inside worker results; they are only
raised inside a single call stack and converted before they cross a thread
boundary.
"""

from __future__ import annotations


class ProcessingError(Exception):
    kind = "processing"

    def __str__(self) -> str:
        msg = super().__str__()
        return f"{self.kind}: {msg}" if msg else self.kind


class FrameConversionError(ProcessingError):
    """Unsupported or corrupt input buffer; the frame is dropped."""

    kind = "frame_conversion"


class DetectorInitError(ProcessingError):
    """The detection primitive could not be constructed."""

    kind = "detector_init"


class DetectionError(ProcessingError):
    kind = "detection"


class PoseEstimationError(ProcessingError):
    kind = "pose_estimation"


class AnchorHostError(ProcessingError):
    """An anchor host call failed; retried on the next reconciliation."""

    kind = "anchor_host"


class PipelineFatalError(ProcessingError):
    """The worker gave up constructing the detector; re-initialise the pipeline."""

    kind = "pipeline_fatal"


class AnchorStateError(ValueError):
    """Logic error in anchor bookkeeping (e.g. create for an active marker)."""
