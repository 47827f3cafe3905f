import logging
import time
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from ..errors import DetectionError, DetectorInitError
from ..mp_types import Detection, DetectionResult
from .color_convert import to_gray

logger = logging.getLogger(__name__)


def get_dict(name: str):
    """
    ArUco-only dictionary resolver (no AprilTag).
    Accepts "4x4_50" or "DICT_4X4_50"; unknown names raise DetectorInitError.
    Works on OpenCV >= 4.7 (getPredefinedDictionary) and older (Dictionary_get).
    """
    key = (name or "").strip().lower()
    if key.startswith("dict_"):
        key = key[5:]
    table = {
        "4x4_50":   cv2.aruco.DICT_4X4_50,
        "4x4_100":  cv2.aruco.DICT_4X4_100,
        "4x4_250":  cv2.aruco.DICT_4X4_250,
        "5x5_50":   cv2.aruco.DICT_5X5_50,
        "5x5_100":  cv2.aruco.DICT_5X5_100,
        "6x6_50":   cv2.aruco.DICT_6X6_50,
        "6x6_100":  cv2.aruco.DICT_6X6_100,
        "6x6_250":  cv2.aruco.DICT_6X6_250,
        "7x7_50":   cv2.aruco.DICT_7X7_50,
        "7x7_100":  cv2.aruco.DICT_7X7_100,
    }
    if key not in table:
        raise DetectorInitError(f"unknown ArUco dictionary {name!r}")
    code = table[key]

    if hasattr(cv2.aruco, "getPredefinedDictionary"):           # OpenCV >= 4.7
        return cv2.aruco.getPredefinedDictionary(code)
    return cv2.aruco.Dictionary_get(code)                       # Older OpenCV


@dataclass
class DetectorSettings:
    dictionary: str = "4x4_50"
    min_marker_perimeter_rate: float = 0.03
    max_marker_perimeter_rate: float = 4.0
    adaptive_thresh_win_size_min: int = 3
    adaptive_thresh_win_size_max: int = 23
    corner_refinement: bool = True
    min_marker_area_px: float = 100.0
    max_marker_area_px: float = 1_000_000.0
    min_corner_distance_px: float = 5.0


def _make_params(settings: DetectorSettings):
    """Create detector parameters across OpenCV versions."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        params = cv2.aruco.DetectorParameters_create()
    else:
        params = cv2.aruco.DetectorParameters()
    params.minMarkerPerimeterRate = settings.min_marker_perimeter_rate
    params.maxMarkerPerimeterRate = settings.max_marker_perimeter_rate
    params.adaptiveThreshWinSizeMin = settings.adaptive_thresh_win_size_min
    params.adaptiveThreshWinSizeMax = settings.adaptive_thresh_win_size_max
    if settings.corner_refinement:
        params.cornerRefinementMethod = cv2.aruco.CORNER_REFINE_SUBPIX
    return params


def quad_area(corners: np.ndarray) -> float:
    """Shoelace area of a 4-point polygon."""
    x = corners[:, 0]
    y = corners[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y)) / 2.0)


def validate_corners(corners: np.ndarray, settings: DetectorSettings) -> Optional[str]:
    """Return the reason a marker quad is implausible, or None if it is fine."""
    if corners.shape != (4, 2):
        return f"expected 4 corners, got shape {corners.shape}"
    if not np.all(np.isfinite(corners)):
        return "non-finite corner"
    if np.any(corners < 0):
        return "negative corner coordinate"
    area = quad_area(corners)
    if area < settings.min_marker_area_px or area > settings.max_marker_area_px:
        return f"area {area:.1f}px outside [{settings.min_marker_area_px}, {settings.max_marker_area_px}]"
    for i in range(4):
        for j in range(i + 1, 4):
            if np.linalg.norm(corners[i] - corners[j]) < settings.min_corner_distance_px:
                return f"corners {i} and {j} closer than {settings.min_corner_distance_px}px"
    return None


class MarkerDetectionAdapter:
    """
    Strategy: detect ArUco markers in a canonical image.
    Returns a DetectionResult; pose is estimated later by PoseEstimator.
    Input errors give a failed result, which is distinct from a successful
    result with zero markers.
    """

    def __init__(self, settings: Optional[DetectorSettings] = None):
        self.settings = settings or DetectorSettings()
        self.dictionary = None
        self.params = None
        self._detector = None
        self._initialized = False
        self.total_detections = 0
        self.successful_detections = 0
        self.average_processing_ms = 0.0

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> "MarkerDetectionAdapter":
        if self._initialized:
            return self
        try:
            self.dictionary = get_dict(self.settings.dictionary)
            self.params = _make_params(self.settings)
            # Prefer the newer ArucoDetector API if present
            if hasattr(cv2.aruco, "ArucoDetector"):
                self._detector = cv2.aruco.ArucoDetector(self.dictionary, self.params)
        except (cv2.error, AttributeError) as exc:
            raise DetectorInitError(f"failed to build ArUco detector: {exc}") from exc
        self._initialized = True
        logger.debug("ArUco detector ready (dict=%s)", self.settings.dictionary)
        return self

    def close(self) -> None:
        self._detector = None
        self.dictionary = None
        self.params = None
        self._initialized = False

    def _check_image(self, image) -> Optional[str]:
        if image is None:
            return "image is None"
        if not isinstance(image, np.ndarray):
            return f"image must be an ndarray, got {type(image).__name__}"
        if image.size == 0:
            return "image is empty"
        if image.dtype != np.uint8:
            return f"image must be uint8, got {image.dtype}"
        if image.ndim == 2:
            return None
        if image.ndim == 3 and image.shape[2] in (1, 3, 4):
            return None
        return f"non-canonical image shape {image.shape}"

    def detect(self, image) -> DetectionResult:
        if not self._initialized:
            return DetectionResult.failed(DetectionError("detector not initialized"))
        problem = self._check_image(image)
        if problem is not None:
            return DetectionResult.failed(DetectionError(problem))

        t0 = time.perf_counter()
        self.total_detections += 1
        try:
            gray = to_gray(image)
            if self._detector is not None:
                corners, ids, _rej = self._detector.detectMarkers(gray)
            else:
                corners, ids, _rej = cv2.aruco.detectMarkers(
                    gray, self.dictionary, parameters=self.params
                )
        except cv2.error as exc:
            self._update_stats(t0)
            return DetectionResult.failed(DetectionError(str(exc)))

        dets: list[Detection] = []
        if ids is not None and len(ids) > 0:
            if len(ids) != len(corners):
                self._update_stats(t0)
                return DetectionResult.failed(
                    DetectionError(f"{len(ids)} ids but {len(corners)} corner sets")
                )
            seen: set[int] = set()
            for i, mid in enumerate(ids.flatten()):
                mid = int(mid)
                quad = np.asarray(corners[i], dtype=np.float64).reshape(-1, 2)
                reason = validate_corners(quad, self.settings)
                if reason is not None:
                    logger.debug("dropping marker %d: %s", mid, reason)
                    continue
                if mid in seen:
                    logger.debug("dropping duplicate marker %d", mid)
                    continue
                seen.add(mid)
                dets.append(Detection(mid, quad))

        self.successful_detections += 1
        self._update_stats(t0)
        return DetectionResult(dets)

    def _update_stats(self, t0: float) -> None:
        ms = (time.perf_counter() - t0) * 1000.0
        if self.average_processing_ms == 0.0:
            self.average_processing_ms = ms
        else:
            self.average_processing_ms = self.average_processing_ms * 0.9 + ms * 0.1

    def statistics(self) -> dict:
        rate = self.successful_detections / self.total_detections if self.total_detections else 0.0
        return {
            "total_detections": self.total_detections,
            "successful_detections": self.successful_detections,
            "success_rate": rate,
            "average_processing_ms": self.average_processing_ms,
            "initialized": self._initialized,
        }
