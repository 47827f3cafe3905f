import numpy as np
import pytest

from marker_pipeline.errors import DetectionError, DetectorInitError
from marker_pipeline.mp_types import Detection, DetectionResult
from marker_pipeline.strategies.detect_aruco import (
    DetectorSettings,
    MarkerDetectionAdapter,
    get_dict,
    quad_area,
    validate_corners,
)


@pytest.fixture
def detector():
    adapter = MarkerDetectionAdapter().initialize()
    yield adapter
    adapter.close()


def test_detects_synthetic_marker(detector, marker_scene):
    image, expected = marker_scene

    result = detector.detect(image)

    assert result.success
    assert result.marker_ids == [5]
    corners = result.detections[0].corners
    assert corners.shape == (4, 2)
    assert np.max(np.abs(corners - expected[5])) <= 1.0


def test_blank_image_is_success_with_no_markers(detector):
    result = detector.detect(np.full((480, 640, 3), 255, dtype=np.uint8))
    assert result.success
    assert len(result) == 0


@pytest.mark.parametrize(
    "image",
    [
        None,
        np.zeros((0, 0, 3), dtype=np.uint8),
        np.zeros((10, 10, 3), dtype=np.float32),
        np.zeros((10, 10, 2), dtype=np.uint8),
    ],
)
def test_bad_images_fail(detector, image):
    result = detector.detect(image)
    assert not result.success
    assert isinstance(result.error, DetectionError)


def test_detect_before_initialize_fails():
    result = MarkerDetectionAdapter().detect(np.zeros((10, 10), dtype=np.uint8))
    assert not result.success
    assert isinstance(result.error, DetectionError)


def test_unknown_dictionary():
    with pytest.raises(DetectorInitError):
        get_dict("9x9_1")
    with pytest.raises(DetectorInitError):
        MarkerDetectionAdapter(DetectorSettings(dictionary="bogus")).initialize()


def test_dictionary_accepts_opencv_names():
    assert get_dict("DICT_4X4_50") is not None


def test_statistics_track_calls(detector, marker_scene):
    detector.detect(marker_scene[0])
    detector.detect(marker_scene[0])
    stats = detector.statistics()
    assert stats["total_detections"] == 2
    assert stats["successful_detections"] == 2
    assert stats["average_processing_ms"] > 0.0


def test_quad_area():
    square = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=np.float64)
    assert quad_area(square) == pytest.approx(100.0)


def test_validate_corners():
    s = DetectorSettings()
    good = np.array([[10, 10], [60, 10], [60, 60], [10, 60]], dtype=np.float64)
    assert validate_corners(good, s) is None

    tiny = np.array([[10, 10], [15, 10], [15, 15], [10, 15]], dtype=np.float64)
    assert "area" in validate_corners(tiny, s)

    negative = good - 20.0
    assert validate_corners(negative, s) == "negative corner coordinate"

    nan = good.copy()
    nan[2, 0] = np.nan
    assert validate_corners(nan, s) == "non-finite corner"

    # big enough area but two corners nearly coincide
    pinched = np.array([[10, 10], [110, 10], [110, 110], [110, 112]], dtype=np.float64)
    assert "closer than" in validate_corners(pinched, s)


def test_detection_result_rejects_duplicate_ids():
    quad = np.zeros((4, 2))
    with pytest.raises(ValueError):
        DetectionResult([Detection(1, quad), Detection(1, quad)])
