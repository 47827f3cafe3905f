import cv2, numpy as np

from ..errors import PoseEstimationError
from ..mp_types import Detection, Pose
from ..services.calib import CalibrationProfile


def square_object_points(marker_length: float) -> np.ndarray:
    """Marker corners in the marker frame, in the order IPPE_SQUARE expects (TL, TR, BR, BL)."""
    h = marker_length / 2.0
    return np.array(
        [[-h, h, 0.0], [h, h, 0.0], [h, -h, 0.0], [-h, -h, 0.0]], dtype=np.float64
    )


class PoseEstimator:
    """Per-marker PnP on validated corners.

    The camera matrix and distortion arrays are derived once from the profile
    and reused until recalibrate() is called.
    """

    def __init__(self, calibration: CalibrationProfile):
        self.recalibrate(calibration)

    def recalibrate(self, calibration: CalibrationProfile) -> None:
        self.calibration = calibration
        self.K = calibration.camera_matrix
        self.dist = calibration.dist_coeffs

    def estimate(self, detections: list[Detection], marker_length: float) -> dict[int, Pose]:
        if marker_length <= 0:
            raise PoseEstimationError(f"marker length must be positive, got {marker_length}")
        poses: dict[int, Pose] = {}
        if not detections:
            return poses
        obj = square_object_points(marker_length)
        for det in detections:
            img = np.asarray(det.corners, dtype=np.float64).reshape(4, 2)
            try:
                ok, rvec, tvec = cv2.solvePnP(
                    obj, img, self.K, self.dist, flags=cv2.SOLVEPNP_IPPE_SQUARE
                )
            except cv2.error as exc:
                raise PoseEstimationError(f"marker {det.marker_id}: {exc}") from exc
            if not ok:
                raise PoseEstimationError(f"marker {det.marker_id}: solvePnP did not converge")
            poses[det.marker_id] = Pose(rvec, tvec)
        return poses

    def project_axes(self, pose: Pose, axis_length: float) -> np.ndarray:
        """Image positions of the pose origin and the X, Y, Z axis tips, shape (4, 2)."""
        pts = np.array(
            [[0.0, 0.0, 0.0], [axis_length, 0.0, 0.0], [0.0, axis_length, 0.0], [0.0, 0.0, axis_length]],
            dtype=np.float64,
        )
        projected, _ = cv2.projectPoints(pts, pose.rvec, pose.tvec, self.K, self.dist)
        return projected.reshape(-1, 2)
