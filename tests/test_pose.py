import math

import cv2
import numpy as np
import pytest

from marker_pipeline.errors import PoseEstimationError
from marker_pipeline.mp_types import Detection, Pose, Quaternion
from marker_pipeline.strategies.detect_aruco import MarkerDetectionAdapter
from marker_pipeline.strategies.localize_pnp import PoseEstimator, square_object_points
from marker_pipeline.synthetic import expected_corners


def test_square_object_points_order():
    pts = square_object_points(0.2)
    assert pts.shape == (4, 3)
    assert pts[0].tolist() == [-0.1, 0.1, 0.0]
    assert pts[2].tolist() == [0.1, -0.1, 0.0]


def test_pose_in_front_of_camera(calibration):
    est = PoseEstimator(calibration)
    det = Detection(5, expected_corners(100, 100, 240))

    poses = est.estimate([det], 0.1)

    assert list(poses) == [5]
    tvec = poses[5].tvec
    assert tvec[2] > 0
    # pinhole: z = f * L / side
    assert tvec[2] == pytest.approx(800.0 * 0.1 / 240.0, rel=0.05)


def test_pose_from_detected_marker(calibration, marker_scene):
    image, _ = marker_scene
    detector = MarkerDetectionAdapter().initialize()
    result = detector.detect(image)

    poses = PoseEstimator(calibration).estimate(result.detections, 0.1)

    assert poses[5].tvec[2] > 0


def test_no_detections_gives_empty_map(calibration):
    assert PoseEstimator(calibration).estimate([], 0.1) == {}


def test_non_positive_marker_length(calibration):
    det = Detection(5, expected_corners(100, 100, 240))
    with pytest.raises(PoseEstimationError):
        PoseEstimator(calibration).estimate([det], 0.0)


def test_recalibrate_changes_depth(calibration):
    det = Detection(5, expected_corners(100, 100, 240))
    est = PoseEstimator(calibration)
    z1 = est.estimate([det], 0.1)[5].tvec[2]

    est.recalibrate(calibration.scaled(640, 480, 1280, 960))
    # same pixels, doubled focal length -> twice as far
    z2 = est.estimate([det], 0.1)[5].tvec[2]

    assert z2 > z1 * 1.5


def test_project_axes_origin_near_marker_centre(calibration):
    det = Detection(5, expected_corners(100, 100, 240))
    est = PoseEstimator(calibration)
    pose = est.estimate([det], 0.1)[5]

    pts = est.project_axes(pose, 0.05)

    assert pts.shape == (4, 2)
    assert pts[0] == pytest.approx([219.5, 219.5], abs=1.0)


def test_zero_rotation_is_identity_quaternion():
    q = Pose(np.zeros(3), [0.0, 0.0, 1.0]).to_quaternion()
    assert q == Quaternion.identity()
    assert q.angle == 0.0


def test_quarter_turn_about_x():
    q = Pose([math.pi / 2, 0.0, 0.0], [0.0, 0.0, 1.0]).to_quaternion()
    assert q.x == pytest.approx(math.sin(math.pi / 4))
    assert q.y == pytest.approx(0.0)
    assert q.z == pytest.approx(0.0)
    assert q.w == pytest.approx(math.cos(math.pi / 4))
    assert q.angle == pytest.approx(math.pi / 2)
    assert q.axis == pytest.approx([1.0, 0.0, 0.0])


def test_quaternion_matrix_matches_rodrigues():
    rvec = np.array([0.3, -0.2, 0.5])
    pose = Pose(rvec, [0.1, 0.2, 0.3])

    R, _ = cv2.Rodrigues(rvec)

    assert np.allclose(pose.to_quaternion().as_rotation_matrix(), R, atol=1e-9)
    T = pose.as_matrix()
    assert np.allclose(T[:3, :3], R, atol=1e-9)
    assert np.allclose(T[:3, 3], [0.1, 0.2, 0.3])
    assert pose.as_list() == pytest.approx([0.3, -0.2, 0.5, 0.1, 0.2, 0.3])
