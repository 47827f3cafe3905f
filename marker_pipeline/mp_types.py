from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

from .errors import ProcessingError
from .transforms import pose_to_transform, quaternion_to_matrix, rvec_to_quaternion


class PixelFormat(str, Enum):
    LUMA_CHROMA_420 = "luma_chroma_420"  # planar I420: Y, U, V
    LUMA_CHROMA_NV21 = "luma_chroma_nv21"  # Y plane + interleaved VU
    PACKED_BGRA = "packed_bgra"
    PACKED_RGBA = "packed_rgba"
    PACKED_ARGB = "packed_argb"
    BGR8 = "bgr8"
    GRAY8 = "gray8"


@dataclass
class Frame:
    seq: int
    timestamp: float
    buffer: Any  # bytes-like or numpy array; dropped by release()
    width: int
    height: int
    pixel_format: str = PixelFormat.BGR8.value

    @property
    def released(self) -> bool:
        return self.buffer is None

    def release(self) -> None:
        self.buffer = None


@dataclass
class Detection:
    marker_id: int
    corners: Any  # (4,2) ndarray, TL, TR, BR, BL


@dataclass
class DetectionResult:
    detections: list[Detection] = field(default_factory=list)
    success: bool = True
    error: Optional[ProcessingError] = None

    def __post_init__(self):
        ids = [d.marker_id for d in self.detections]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate marker ids in detection result: {ids}")

    @classmethod
    def failed(cls, error: ProcessingError) -> "DetectionResult":
        return cls([], False, error)

    @classmethod
    def empty(cls) -> "DetectionResult":
        return cls([], True, None)

    @property
    def marker_ids(self) -> list[int]:
        return [d.marker_id for d in self.detections]

    def __len__(self) -> int:
        return len(self.detections)


@dataclass(frozen=True)
class Quaternion:
    x: float
    y: float
    z: float
    w: float

    @classmethod
    def identity(cls) -> "Quaternion":
        return cls(0.0, 0.0, 0.0, 1.0)

    @property
    def angle(self) -> float:
        return 2.0 * math.atan2(math.sqrt(self.x ** 2 + self.y ** 2 + self.z ** 2), self.w)

    @property
    def axis(self) -> np.ndarray:
        v = np.array([self.x, self.y, self.z], dtype=np.float64)
        n = np.linalg.norm(v)
        if n == 0.0:
            return np.array([1.0, 0.0, 0.0])
        return v / n

    def as_tuple(self) -> tuple[float, float, float, float]:
        return self.x, self.y, self.z, self.w

    def as_rotation_matrix(self) -> np.ndarray:
        return quaternion_to_matrix(*self.as_tuple())


@dataclass
class Pose:
    rvec: Any  # Rodrigues vector, radians
    tvec: Any  # in the unit of the marker length used at estimation time

    def __post_init__(self):
        self.rvec = np.asarray(self.rvec, dtype=np.float64).reshape(3)
        self.tvec = np.asarray(self.tvec, dtype=np.float64).reshape(3)

    def to_quaternion(self) -> Quaternion:
        return Quaternion(*rvec_to_quaternion(self.rvec))

    def as_matrix(self) -> np.ndarray:
        return pose_to_transform(rvec_to_quaternion(self.rvec), self.tvec)

    def as_list(self) -> list[float]:
        return [*self.rvec.tolist(), *self.tvec.tolist()]
