import numpy as np
import pytest

from marker_pipeline.mp_types import Frame
from marker_pipeline.services.calib import CalibrationProfile
from marker_pipeline.synthetic import render_marker_scene


@pytest.fixture
def marker_scene():
    """640x480 BGR image with marker 5 (240 px) pasted at (100, 100)."""
    return render_marker_scene([(5, 100, 100)])


@pytest.fixture
def calibration():
    return CalibrationProfile.default_webcam_640x480()


@pytest.fixture
def make_frame():
    def _make(seq, image=None, pixel_format="bgr8"):
        if image is None:
            image = np.zeros((8, 8, 3), dtype=np.uint8)
        h, w = image.shape[:2]
        return Frame(seq, float(seq), image, w, h, pixel_format)

    return _make
