"""SE(3) and rotation helpers for marker poses."""

import math
from typing import Tuple

import cv2
import numpy as np


def rvec_tvec_to_matrix(rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    Convert rotation vector and translation vector to 4x4 transformation matrix.

    Args:
        rvec: Rotation vector (3,) or (3,1)
        tvec: Translation vector (3,) or (3,1)

    Returns:
        4x4 homogeneous transformation matrix
    """
    rvec = np.array(rvec, dtype=np.float64).reshape(3)
    tvec = np.array(tvec, dtype=np.float64).reshape(3)

    R, _ = cv2.Rodrigues(rvec)

    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = tvec

    return T


def rvec_to_quaternion(rvec: np.ndarray) -> Tuple[float, float, float, float]:
    """
    Convert a Rodrigues vector to an (x, y, z, w) quaternion.

    axis = rvec / |rvec|, angle = |rvec|. A zero vector maps to the identity
    quaternion instead of dividing by zero.
    """
    rvec = np.array(rvec, dtype=np.float64).reshape(3)
    angle = float(np.linalg.norm(rvec))
    if angle == 0.0:
        return 0.0, 0.0, 0.0, 1.0
    axis = rvec / angle
    s = math.sin(angle / 2.0)
    return float(axis[0] * s), float(axis[1] * s), float(axis[2] * s), math.cos(angle / 2.0)


def quaternion_to_matrix(x: float, y: float, z: float, w: float) -> np.ndarray:
    """Rotation matrix (3x3) of a unit quaternion."""
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def pose_to_transform(
    quaternion: Tuple[float, float, float, float], tvec: np.ndarray
) -> np.ndarray:
    """
    Build the 4x4 anchor transform from a quaternion and a translation.

    This is the form handed to anchor hosts; it matches
    rvec_tvec_to_matrix for the same rotation.
    """
    T = np.eye(4)
    T[:3, :3] = quaternion_to_matrix(*quaternion)
    T[:3, 3] = np.array(tvec, dtype=np.float64).reshape(3)
    return T
