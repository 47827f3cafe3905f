"""Synthetic marker images for tests, demos and printable templates."""

from __future__ import annotations

from typing import Sequence, Tuple

import cv2
import numpy as np

from .strategies.detect_aruco import get_dict


def create_marker_image(
    marker_id: int, dict_name: str = "4x4_50", size_px: int = 240, border_bits: int = 1
) -> np.ndarray:
    """Grayscale marker image of size_px x size_px."""
    dictionary = get_dict(dict_name)
    if hasattr(cv2.aruco, "generateImageMarker"):
        return cv2.aruco.generateImageMarker(dictionary, marker_id, size_px, borderBits=border_bits)
    return cv2.aruco.drawMarker(dictionary, marker_id, size_px, borderBits=border_bits)


def expected_corners(x: int, y: int, size_px: int) -> np.ndarray:
    """Outer corners of a marker pasted at (x, y), TL, TR, BR, BL.

    Coordinates sit on the pixel edges (pixel centres are integers), which is
    where sub-pixel refinement places them.
    """
    lo_x, lo_y = x - 0.5, y - 0.5
    hi_x, hi_y = x + size_px - 0.5, y + size_px - 0.5
    return np.array([[lo_x, lo_y], [hi_x, lo_y], [hi_x, hi_y], [lo_x, hi_y]], dtype=np.float64)


def render_marker_scene(
    placements: Sequence[Tuple[int, int, int]],
    width: int = 640,
    height: int = 480,
    size_px: int = 240,
    dict_name: str = "4x4_50",
) -> Tuple[np.ndarray, dict[int, np.ndarray]]:
    """Paste markers (marker_id, x, y) onto a white BGR canvas.

    Returns the canvas and the expected corners per marker id.
    """
    canvas = np.full((height, width), 255, dtype=np.uint8)
    corners: dict[int, np.ndarray] = {}
    for marker_id, x, y in placements:
        if x < 0 or y < 0 or x + size_px > width or y + size_px > height:
            raise ValueError(f"marker {marker_id} at ({x}, {y}) does not fit {width}x{height}")
        canvas[y:y + size_px, x:x + size_px] = create_marker_image(marker_id, dict_name, size_px)
        corners[marker_id] = expected_corners(x, y, size_px)
    return cv2.cvtColor(canvas, cv2.COLOR_GRAY2BGR), corners


def bgr_to_i420(image: np.ndarray) -> bytes:
    """Planar I420 bytes for a BGR image with even dimensions."""
    return cv2.cvtColor(image, cv2.COLOR_BGR2YUV_I420).tobytes()
