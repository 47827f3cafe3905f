from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Sequence, Tuple

import cv2
import numpy as np


@dataclass(frozen=True)
class CalibrationProfile:
    """Camera intrinsics and (k1, k2, p1, p2, k3) lens distortion.

    Profiles are immutable; resolution changes produce a scaled copy.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @property
    def intrinsic(self) -> list[float]:
        """Row-major [fx, 0, cx, 0, fy, cy, 0, 0, 1]."""
        return [self.fx, 0.0, self.cx, 0.0, self.fy, self.cy, 0.0, 0.0, 1.0]

    @property
    def distortion(self) -> list[float]:
        return [self.k1, self.k2, self.p1, self.p2, self.k3]

    @property
    def camera_matrix(self) -> np.ndarray:
        return np.array(self.intrinsic, dtype=np.float64).reshape(3, 3)

    @property
    def dist_coeffs(self) -> np.ndarray:
        return np.array(self.distortion, dtype=np.float64).reshape(5, 1)

    def scaled(
        self, original_width: int, original_height: int, new_width: int, new_height: int
    ) -> "CalibrationProfile":
        """Linear rescale of the intrinsics; distortion is left unchanged.

        This is an approximation: distortion coefficients are defined on
        normalised coordinates, so they are resolution independent only as
        long as the aspect ratio and sensor crop do not change.
        """
        if min(original_width, original_height, new_width, new_height) <= 0:
            raise ValueError("resolutions must be positive")
        sx = new_width / original_width
        sy = new_height / original_height
        return replace(
            self,
            fx=self.fx * sx,
            fy=self.fy * sy,
            cx=self.cx * sx,
            cy=self.cy * sy,
        )

    @classmethod
    def from_arrays(
        cls, intrinsic: Sequence[float], distortion: Sequence[float] = ()
    ) -> "CalibrationProfile":
        """Build from a 9-element row-major intrinsic and up to 5 distortion values."""
        k = np.asarray(intrinsic, dtype=np.float64).reshape(-1)
        if k.size != 9:
            raise ValueError(f"intrinsic must have 9 elements, got {k.size}")
        K = k.reshape(3, 3)
        if K[0, 1] != 0.0 or K[1, 0] != 0.0 or not np.allclose(K[2], [0.0, 0.0, 1.0]):
            raise ValueError("intrinsic must be [[fx,0,cx],[0,fy,cy],[0,0,1]]")
        d = [float(v) for v in np.asarray(distortion, dtype=np.float64).reshape(-1)]
        if len(d) > 5:
            raise ValueError(f"at most 5 distortion coefficients, got {len(d)}")
        d += [0.0] * (5 - len(d))
        return cls(float(K[0, 0]), float(K[1, 1]), float(K[0, 2]), float(K[1, 2]), *d)

    @classmethod
    def default_webcam_640x480(cls) -> "CalibrationProfile":
        return cls(fx=800.0, fy=800.0, cx=320.0, cy=240.0)

    @classmethod
    def default_full_hd(cls) -> "CalibrationProfile":
        return cls(fx=1500.0, fy=1500.0, cx=960.0, cy=540.0)

    @classmethod
    def from_measurements(
        cls,
        focal_length_mm: float,
        sensor_width_mm: float,
        sensor_height_mm: float,
        image_width: int,
        image_height: int,
        distortion: Sequence[float] = (),
    ) -> "CalibrationProfile":
        """Pinhole estimate from lens focal length and physical sensor size."""
        fx = focal_length_mm * image_width / sensor_width_mm
        fy = focal_length_mm * image_height / sensor_height_mm
        d = list(distortion) + [0.0] * (5 - len(distortion))
        return cls(fx, fy, image_width / 2.0, image_height / 2.0, *d[:5])

    @classmethod
    def for_resolution(cls, width: int, height: int) -> "CalibrationProfile":
        """Default profile for a frame size, scaled from 640x480 when no preset fits."""
        if width >= 1920:
            base = cls.default_full_hd()
            if (width, height) == (1920, 1080):
                return base
            return base.scaled(1920, 1080, width, height)
        base = cls.default_webcam_640x480()
        if (width, height) == (640, 480):
            return base
        return base.scaled(640, 480, width, height)


def load_calib(path: str) -> Tuple[CalibrationProfile, tuple[int, int]]:
    fs = cv2.FileStorage(path, cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise FileNotFoundError(f"Calibration not found: {path}")
    K = fs.getNode("camera_matrix").mat()
    dist = fs.getNode("dist_coeffs").mat()
    w = int(fs.getNode("image_width").real()); h = int(fs.getNode("image_height").real())
    fs.release()
    if K is None:
        raise ValueError(f"camera_matrix missing in {path}")
    dist_values = [] if dist is None else np.asarray(dist).reshape(-1)[:5]
    return CalibrationProfile.from_arrays(np.asarray(K).reshape(-1), dist_values), (w, h)
