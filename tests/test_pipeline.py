import numpy as np
import pytest

from marker_anchor.anchors import InMemoryAnchorHost
from marker_anchor.config import PipelineConfig
from marker_anchor.pipeline import MarkerPipeline
from marker_anchor.throttle import Admission
from marker_pipeline.errors import DetectionError, DetectorInitError, FrameConversionError
from marker_pipeline.services.calib import CalibrationProfile


@pytest.fixture
def pipeline():
    p = MarkerPipeline(PipelineConfig(sample_every=1), anchor_host=InMemoryAnchorHost())
    p.start()
    yield p
    p.shutdown()


def _scene_frame(make_frame, marker_scene, seq):
    return make_frame(seq, marker_scene[0].copy())


def test_submit_requires_start(make_frame):
    with pytest.raises(RuntimeError):
        MarkerPipeline().submit(make_frame(0))


def test_pose_delivered_and_anchor_created(pipeline, make_frame, marker_scene):
    seen = []
    pipeline.on_poses(lambda seq, poses: seen.append((seq, sorted(poses))))

    assert pipeline.submit(_scene_frame(make_frame, marker_scene, 1)) is Admission.ADMITTED
    assert pipeline.wait_idle(10.0)
    results = pipeline.drain()

    assert [r.seq for r in results] == [1]
    assert results[0].ok
    assert seen == [(1, [5])]
    assert pipeline.anchors.active_ids == {5}
    assert results[0].poses[5].tvec[2] > 0


def test_marker_leaving_view_removes_anchor(pipeline, make_frame, marker_scene):
    pipeline.submit(_scene_frame(make_frame, marker_scene, 1))
    pipeline.wait_idle(10.0)
    pipeline.drain()

    pipeline.submit(make_frame(2, np.full_like(marker_scene[0], 255)))
    pipeline.wait_idle(10.0)
    pipeline.drain()

    assert pipeline.anchors.active_ids == set()


def test_update_calibration_applies_to_later_frames(pipeline, make_frame, marker_scene, calibration):
    pipeline.submit(_scene_frame(make_frame, marker_scene, 1))
    pipeline.wait_idle(10.0)
    z1 = pipeline.drain()[0].poses[5].tvec[2]

    pipeline.update_calibration(calibration.scaled(640, 480, 1280, 960))
    pipeline.submit(_scene_frame(make_frame, marker_scene, 2))
    pipeline.wait_idle(10.0)
    z2 = pipeline.drain()[0].poses[5].tvec[2]

    assert z2 > z1 * 1.5


def test_performance_subscriber(make_frame, marker_scene):
    cfg = PipelineConfig(sample_every=1, perf_emit_every=2)
    p = MarkerPipeline(cfg).start()
    samples = []
    p.on_performance(samples.append)

    for seq in range(2):
        p.submit(_scene_frame(make_frame, marker_scene, seq))
        p.wait_idle(10.0)
    p.drain()
    p.shutdown()

    assert len(samples) == 1
    assert samples[0].processed == 2


def test_fatal_pipeline_recovers_after_reinitialize(make_frame, marker_scene):
    def broken():
        raise DetectorInitError("no camera permission")

    cfg = PipelineConfig(sample_every=1, max_init_attempts=1)
    p = MarkerPipeline(cfg, detector_factory=broken).start()
    p.submit(make_frame(1))
    p.wait_idle(10.0)
    failed = p.drain()

    assert not failed[0].ok
    assert p.is_fatal

    p.detector_factory = p._default_detector
    p.reinitialize()
    assert not p.is_fatal
    p.submit(_scene_frame(make_frame, marker_scene, 2))
    p.wait_idle(10.0)
    results = p.drain()
    p.shutdown()

    assert results[0].ok
    assert 5 in results[0].poses
    assert p.throttler.admitted == 1


def test_shutdown_delivers_pending_results(make_frame):
    p = MarkerPipeline(PipelineConfig(sample_every=1)).start()
    got = []
    p.on_result(got.append)
    p.submit(make_frame(1, np.zeros((120, 160, 3), dtype=np.uint8)))
    p.submit(make_frame(2, np.zeros((120, 160, 3), dtype=np.uint8)))

    assert p.shutdown(10.0)
    assert [r.seq for r in got] == [1, 2]
    assert not p.started


def test_calibration_change_survives_failed_frame(make_frame, marker_scene, calibration):
    p = MarkerPipeline(PipelineConfig(sample_every=1), calibration=calibration).start()
    p.submit(_scene_frame(make_frame, marker_scene, 1))
    p.wait_idle(10.0)
    z1 = p.drain()[0].poses[5].tvec[2]

    p.update_calibration(CalibrationProfile(fx=2000.0, fy=2000.0, cx=320.0, cy=240.0))
    # the frame carrying the recalibration fails before pose estimation
    p.submit(make_frame(2, marker_scene[0].copy(), pixel_format="bogus_format"))
    p.wait_idle(10.0)
    failed = p.drain()
    assert isinstance(failed[0].error, FrameConversionError)

    p.submit(_scene_frame(make_frame, marker_scene, 3))
    p.wait_idle(10.0)
    z3 = p.drain()[0].poses[5].tvec[2]
    p.shutdown()

    assert z3 / z1 == pytest.approx(2000.0 / 800.0, rel=0.05)


def test_calibration_error_releases_slot_and_frame(make_frame, monkeypatch):
    p = MarkerPipeline(PipelineConfig(sample_every=1, calibration_path="missing.yaml")).start()

    def missing(width, height):
        raise FileNotFoundError("Calibration not found: missing.yaml")

    monkeypatch.setattr(p.config, "calibration_for", missing)
    frames = [make_frame(seq) for seq in range(3)]
    for f in frames:
        with pytest.raises(FileNotFoundError):
            p.submit(f)

    assert p.throttler.in_flight == 0
    assert p.throttler.admitted == 0
    assert p.wait_idle(0.1)
    assert all(f.released for f in frames)
    p.shutdown()


def test_failed_frames_count_as_processed(make_frame):
    class FailingDetector:
        def detect(self, image):
            raise DetectionError("detector crashed")

    p = MarkerPipeline(PipelineConfig(sample_every=1), detector_factory=FailingDetector).start()
    for seq in range(3):
        p.submit(make_frame(seq))
        p.wait_idle(10.0)
    results = p.drain()
    perf = p.performance()
    p.shutdown()

    assert [r.ok for r in results] == [False, False, False]
    assert perf.processed == 3
    assert perf.failed == 3
    assert perf.avg_processing_ms > 0
    assert perf.fps > 0
    assert p.anchors.active_ids == set()


def test_pause_skips_frames_until_resume(pipeline, make_frame, marker_scene):
    pipeline.pause()
    assert pipeline.paused
    f = _scene_frame(make_frame, marker_scene, 1)

    assert pipeline.submit(f) is Admission.SKIPPED
    assert f.released
    assert pipeline.throttler.submitted == 0
    assert pipeline.performance().skipped == 1

    pipeline.resume()
    assert not pipeline.paused
    assert pipeline.submit(_scene_frame(make_frame, marker_scene, 2)) is Admission.ADMITTED
    assert pipeline.wait_idle(10.0)
    assert [r.seq for r in pipeline.drain()] == [2]


def test_should_throttle_is_advisory(pipeline, make_frame, marker_scene):
    assert not pipeline.should_throttle()

    # a single slow result pushes the load over the limit
    pipeline.monitor.record_processed(100.0)
    assert pipeline.should_throttle()
    assert pipeline.submit(_scene_frame(make_frame, marker_scene, 1)) is Admission.ADMITTED
    assert pipeline.wait_idle(10.0)
