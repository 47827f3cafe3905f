from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Optional

from marker_pipeline.services.calib import CalibrationProfile, load_calib
from marker_pipeline.strategies.detect_aruco import DetectorSettings


@dataclass
class DetectorConfig:
    dictionary: str = "4x4_50"
    min_marker_perimeter_rate: float = 0.03  # Allow smaller markers
    max_marker_perimeter_rate: float = 4.0
    adaptive_thresh_win_size_min: int = 3
    adaptive_thresh_win_size_max: int = 23
    corner_refinement: bool = True
    # Geometry checks applied to every returned marker
    min_marker_area_px: float = 100.0
    max_marker_area_px: float = 1_000_000.0
    min_corner_distance_px: float = 5.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def settings(self) -> DetectorSettings:
        return DetectorSettings(**self.as_dict())


@dataclass
class CalibrationConfig:
    """Inline intrinsics; the calibration file in PipelineConfig wins if set."""

    fx: Optional[float] = None
    fy: Optional[float] = None
    cx: Optional[float] = None
    cy: Optional[float] = None
    distortion: list[float] = field(default_factory=lambda: [0.0] * 5)
    reference_width: int = 640  # resolution the intrinsics were measured at
    reference_height: int = 480

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def has_intrinsics(self) -> bool:
        return None not in (self.fx, self.fy, self.cx, self.cy)

    def resolve(self, width: int, height: int) -> CalibrationProfile:
        if not self.has_intrinsics:
            return CalibrationProfile.for_resolution(width, height)
        profile = CalibrationProfile.from_arrays(
            [self.fx, 0.0, self.cx, 0.0, self.fy, self.cy, 0.0, 0.0, 1.0],
            self.distortion,
        )
        if (width, height) != (self.reference_width, self.reference_height):
            profile = profile.scaled(self.reference_width, self.reference_height, width, height)
        return profile


@dataclass
class PipelineConfig:
    pipeline_name: str = "markers"
    sample_every: int = 3
    sample_phase: int = 0
    max_in_flight: int = 3
    marker_length_m: float = 0.1
    max_init_attempts: int = 5
    slow_frame_warn_ms: float = 250.0
    anchor_grace_results: int = 0  # 0 = prune the moment a marker is missing
    perf_emit_every: int = 30
    perf_emit_interval_s: float = 5.0
    calibration_path: Optional[str] = None
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "PipelineConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self

    def validate(self) -> "PipelineConfig":
        if self.sample_every < 1:
            raise ValueError("sample_every must be >= 1")
        if not 0 <= self.sample_phase < self.sample_every:
            raise ValueError("sample_phase must be in [0, sample_every)")
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if self.marker_length_m <= 0:
            raise ValueError("marker_length_m must be positive")
        if self.max_init_attempts < 1:
            raise ValueError("max_init_attempts must be >= 1")
        if self.anchor_grace_results < 0:
            raise ValueError("anchor_grace_results must be >= 0")
        return self

    def calibration_for(self, width: int, height: int) -> CalibrationProfile:
        if self.calibration_path:
            profile, (w, h) = load_calib(self.calibration_path)
            if (w, h) != (width, height) and w > 0 and h > 0:
                profile = profile.scaled(w, h, width, height)
            return profile
        return self.calibration.resolve(width, height)


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _load_detector(raw: dict[str, Any]) -> DetectorConfig:
    det = DetectorConfig()
    det.dictionary = str(raw.get("dictionary", det.dictionary))
    det.min_marker_perimeter_rate = float(raw.get("min_marker_perimeter_rate", det.min_marker_perimeter_rate))
    det.max_marker_perimeter_rate = float(raw.get("max_marker_perimeter_rate", det.max_marker_perimeter_rate))
    det.adaptive_thresh_win_size_min = int(raw.get("adaptive_thresh_win_size_min", det.adaptive_thresh_win_size_min))
    det.adaptive_thresh_win_size_max = int(raw.get("adaptive_thresh_win_size_max", det.adaptive_thresh_win_size_max))
    det.corner_refinement = bool(raw.get("corner_refinement", det.corner_refinement))
    det.min_marker_area_px = float(raw.get("min_marker_area_px", det.min_marker_area_px))
    det.max_marker_area_px = float(raw.get("max_marker_area_px", det.max_marker_area_px))
    det.min_corner_distance_px = float(raw.get("min_corner_distance_px", det.min_corner_distance_px))
    return det


def _load_calibration(raw: dict[str, Any]) -> CalibrationConfig:
    cal = CalibrationConfig()
    intrinsic = raw.get("intrinsic")
    if intrinsic is not None:
        # 9-element row-major form
        profile = CalibrationProfile.from_arrays(intrinsic, raw.get("distortion", []))
        cal.fx, cal.fy, cal.cx, cal.cy = profile.fx, profile.fy, profile.cx, profile.cy
        cal.distortion = profile.distortion
    else:
        for key in ("fx", "fy", "cx", "cy"):
            if raw.get(key) is not None:
                setattr(cal, key, float(raw[key]))
        if raw.get("distortion") is not None:
            cal.distortion = [float(v) for v in raw["distortion"]]
    cal.reference_width = int(raw.get("reference_width", cal.reference_width))
    cal.reference_height = int(raw.get("reference_height", cal.reference_height))
    return cal


def load_config(path: str | Path) -> PipelineConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = PipelineConfig()
    cfg.pipeline_name = str(raw.get("pipeline_name", cfg.pipeline_name))
    cfg.sample_every = int(raw.get("sample_every", cfg.sample_every))
    cfg.sample_phase = int(raw.get("sample_phase", cfg.sample_phase))
    cfg.max_in_flight = int(raw.get("max_in_flight", cfg.max_in_flight))
    cfg.marker_length_m = float(raw.get("marker_length_m", cfg.marker_length_m))
    cfg.max_init_attempts = int(raw.get("max_init_attempts", cfg.max_init_attempts))
    cfg.slow_frame_warn_ms = float(raw.get("slow_frame_warn_ms", cfg.slow_frame_warn_ms))
    cfg.anchor_grace_results = int(raw.get("anchor_grace_results", cfg.anchor_grace_results))
    cfg.perf_emit_every = int(raw.get("perf_emit_every", cfg.perf_emit_every))
    cfg.perf_emit_interval_s = float(raw.get("perf_emit_interval_s", cfg.perf_emit_interval_s))
    cfg.calibration_path = raw.get("calibration_path", cfg.calibration_path)

    det_raw = raw.get("detector")
    if det_raw is not None:
        if not isinstance(det_raw, dict):
            raise ValueError("detector must be a mapping")
        cfg.detector = _load_detector(det_raw)

    cal_raw = raw.get("calibration")
    if cal_raw is not None:
        if not isinstance(cal_raw, dict):
            raise ValueError("calibration must be a mapping")
        cfg.calibration = _load_calibration(cal_raw)

    return cfg.validate()
