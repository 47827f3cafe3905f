"""ArUco marker pose pipeline with anchor tracking."""

from .config import PipelineConfig
from .pipeline import MarkerPipeline
from .throttle import Admission

__all__ = ["Admission", "MarkerPipeline", "PipelineConfig"]
