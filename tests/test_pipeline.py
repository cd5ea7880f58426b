"""
End-to-end tests for the stacking pipeline.

Tests cover:
- Drift registration on synthetic SER captures
- Rejection of under-illuminated frames and frame selection
- Drizzle upsampling and limb-darkening stages
- Fail-fast configuration and input checks
- Cancellation
- Output image and provenance reports

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import json

import numpy as np
import pytest

from solstack.align import find_centroid
from solstack.config import RejectionReason, StackConfig
from solstack.errors import (
    ConfigurationError,
    GeometryMismatch,
    MissingLightFrames,
    NoFramesSurviveAlignment,
    NoFramesSurviveQuality,
    RunCancelled,
)
from solstack.io import ColorId
from solstack.pipeline import CancelToken, run_stack


def _config(light, **kwargs):
    defaults = dict(
        light=light,
        mount="equatorial",
        reference="first",
        min_quality=0.0,
        workers=2,
    )
    defaults.update(kwargs)
    return StackConfig(**defaults)


@pytest.fixture
def drift_capture(disk_frame, ser_writer):
    """Ten frames of a disk drifting one pixel per frame along x."""
    frames = [disk_frame(cx=50.0 + i, cy=50.0) for i in range(10)]
    return ser_writer(frames)


class _CancelAfter(CancelToken):
    """Token that cancels itself after a number of checks."""

    def __init__(self, checks):
        super().__init__()
        self.remaining = checks

    def check(self):
        self.remaining -= 1
        if self.remaining < 0:
            self.cancel()
        super().check()


class TestDriftRegistration:
    """A drifting disk is registered onto the reference frame."""

    def test_stack_is_registered(self, drift_capture):
        """The stacked disk sits at the reference centroid."""
        result = run_stack(_config(drift_capture), write_outputs=False)

        assert result.total_frames == 10
        assert result.kept == list(range(10))
        assert result.rejected == []
        assert result.reference_frame == 0
        assert result.reference_centroid == (pytest.approx(50.0), pytest.approx(50.0))

        c = find_centroid(result.image)
        assert abs(c.x - 50.0) < 1.0
        assert abs(c.y - 50.0) < 1.0

    def test_weights_follow_the_disk(self, drift_capture, disk_frame):
        """Disk pixels receive weight from every frame; the sky keeps zero weight."""
        result = run_stack(_config(drift_capture), write_outputs=False)
        disk = disk_frame(cx=50.0, cy=50.0) > 0

        assert np.all(result.weights[disk] == 10.0)
        assert np.all(result.weights[~disk] == 0.0)
        assert np.all(result.image[~disk] == 0.0)
        np.testing.assert_allclose(result.image[disk], 1000.0, rtol=1e-6)
        assert result.stats["coverage_fraction"] == pytest.approx(disk.mean())

    def test_best_reference(self, drift_capture):
        """The 'best' reference is the top-scoring frame."""
        result = run_stack(_config(drift_capture, reference="best"), write_outputs=False)
        assert result.reference_frame == result.scores[0].index
        c = find_centroid(result.image)
        assert abs(c.x - result.reference_centroid[0]) < 1.0

    def test_equatorial_angles_are_zero(self, drift_capture):
        """Without initial rotation an equatorial run does not rotate."""
        result = run_stack(_config(drift_capture), write_outputs=False)
        assert set(result.rotation_angles.values()) == {0.0}

    def test_altaz_angles_relative_to_reference(self, drift_capture):
        """Alt-az angles are measured from the reference frame."""
        result = run_stack(_config(drift_capture, mount="altaz", target="sun"),
                           write_outputs=False)
        angles = result.rotation_angles
        assert angles[0] == 0.0
        # 90 ms of field rotation is tiny but monotonic
        assert all(abs(a) < 1e-3 for a in angles.values())
        assert angles[9] != 0.0

    def test_thread_count_does_not_change_result(self, drift_capture):
        """One worker and four workers give the same stack."""
        a = run_stack(_config(drift_capture, workers=1), write_outputs=False)
        b = run_stack(_config(drift_capture, workers=4), write_outputs=False)
        np.testing.assert_allclose(a.image, b.image, rtol=1e-5)
        np.testing.assert_array_equal(a.weights, b.weights)

    def test_dark_feature_is_averaged(self, disk_frame, ser_writer):
        """A dark spot inside the disk of one frame is averaged, not dropped."""
        frames = [disk_frame(cx=50.0 + i, cy=50.0) for i in range(10)]
        frames[0][49:52, 49:52] = 0.0
        result = run_stack(_config(ser_writer(frames)), write_outputs=False)

        assert result.reference_frame == 0
        np.testing.assert_array_equal(result.weights[49:52, 49:52], 10.0)
        np.testing.assert_allclose(result.image[49:52, 49:52], 900.0, rtol=1e-6)


class TestFrameRejection:
    """Tests for rejected frames."""

    def test_dim_frame_rejected(self, disk_frame, ser_writer):
        """An under-illuminated frame is excluded with a reason."""
        frames = [disk_frame(cx=50.0 + i, cy=50.0) for i in range(6)]
        frames[3] = disk_frame(radius=1.5)
        result = run_stack(_config(ser_writer(frames)), write_outputs=False)

        assert 3 not in result.kept
        assert len(result.kept) == 5
        assert [r.index for r in result.rejected] == [3]
        assert result.rejected[0].reason is RejectionReason.CENTROID_NOT_FOUND
        assert result.rejection_tally() == {"centroid_not_found": 1}

    def test_top_percentage(self, drift_capture):
        """Only the best half is stacked."""
        result = run_stack(_config(drift_capture, top_percentage=50), write_outputs=False)
        assert len(result.kept) == 5
        assert result.rejection_tally() == {"outside_top_percentage": 5}
        assert result.quality_threshold == min(
            s.composite for s in result.scores if s.index in result.kept
        )

    def test_no_frame_survives_quality(self, drift_capture):
        """An impossible quality threshold exhausts the run."""
        with pytest.raises(NoFramesSurviveQuality) as excinfo:
            run_stack(_config(drift_capture, min_quality=1e30), write_outputs=False)
        assert excinfo.value.total == 10
        assert excinfo.value.tally == {"low_quality_score": 10}

    def test_no_object_anywhere(self, ser_writer):
        """Frames without a detectable object exhaust the run."""
        frames = [np.zeros((40, 40)) for _ in range(3)]
        with pytest.raises(NoFramesSurviveAlignment) as excinfo:
            run_stack(_config(ser_writer(frames)), write_outputs=False)
        assert excinfo.value.tally == {"centroid_not_found": 3}

    def test_pre_stack_limb_failure(self, drift_capture):
        """Frames whose limb fit fails are rejected, here all of them."""
        with pytest.raises(NoFramesSurviveAlignment) as excinfo:
            run_stack(_config(drift_capture, limb_stage="pre-stack", limb_radius=2.0),
                      write_outputs=False)
        assert excinfo.value.tally == {"limb_fit_failed": 10}


class TestDrizzleAndLimb:
    """Drizzle upsampling and limb-darkening stages."""

    def test_drizzle_scale_two(self, drift_capture):
        """The canvas doubles and the disk center maps accordingly."""
        result = run_stack(_config(drift_capture, drizzle_scale=2.0), write_outputs=False)
        assert result.image.shape == (200, 200)
        c = find_centroid(result.image)
        assert abs(c.x - 100.5) < 1.0
        assert abs(c.y - 100.5) < 1.0

    def test_crop(self, drift_capture):
        """The output is cropped around the canvas center."""
        result = run_stack(_config(drift_capture, crop_width=40, crop_height=30),
                           write_outputs=False)
        assert result.image.shape == (30, 40)
        assert result.weights.shape == (30, 40)

    def test_post_stack_limb_correction(self, limb_darkened_disk, ser_writer):
        """Post-stack correction flattens the stacked disk."""
        frames = [
            limb_darkened_disk(height=100, width=100, cx=50.0 + i, cy=50.0, radius=35.0)
            for i in range(5)
        ]
        result = run_stack(_config(ser_writer(frames), limb_stage="post-stack"),
                           write_outputs=False)

        yy, xx = np.mgrid[0:100, 0:100]
        inner = np.hypot(xx - 50.0, yy - 50.0) < 30.0
        values = result.image[inner]
        assert values.std() / values.mean() < 0.03
        assert result.warnings == []

    def test_post_stack_limb_failure_is_a_warning(self, drift_capture):
        """A failed post-stack fit keeps the stack and records a warning."""
        result = run_stack(_config(drift_capture, limb_stage="post-stack", limb_radius=2.0),
                           write_outputs=False)
        assert len(result.kept) == 10
        assert len(result.warnings) == 1
        assert "limb" in result.warnings[0].lower()

    def test_mosaic_is_debayered(self, disk_frame, ser_writer):
        """Bayer captures are stacked in color."""
        frames = [disk_frame(cx=50.0 + i, cy=50.0) for i in range(4)]
        path = ser_writer(frames, color=ColorId.BAYER_RGGB)
        result = run_stack(_config(path), write_outputs=False)
        assert result.image.shape == (100, 100, 3)


class TestFailFast:
    """Configuration and input errors surface before any frame work."""

    def test_missing_light(self):
        """A run without light frames is an input error."""
        with pytest.raises(MissingLightFrames):
            run_stack(StackConfig(light=None, mount="equatorial"))

    def test_bad_latitude(self, tmp_path):
        """An invalid latitude fails before the light file is opened."""
        with pytest.raises(ConfigurationError, match="latitude"):
            run_stack(_config(tmp_path / "does_not_exist.ser", latitude=123.0))

    def test_altaz_without_target(self, drift_capture):
        """Alt-az derotation without a target is rejected."""
        with pytest.raises(ConfigurationError):
            run_stack(_config(drift_capture, mount="altaz", target=None))

    def test_altaz_without_timestamps(self, disk_frame, ser_writer):
        """Alt-az derotation needs frame timestamps."""
        path = ser_writer([disk_frame() for _ in range(3)], timestamps=None)
        with pytest.raises(ConfigurationError, match="timestamps"):
            run_stack(_config(path, mount="altaz", target="sun"))

    def test_calibration_geometry_mismatch(self, drift_capture, ser_writer):
        """A dark of another sensor size is rejected."""
        dark = ser_writer([np.zeros((20, 20))], name="dark.ser")
        with pytest.raises(GeometryMismatch):
            run_stack(_config(drift_capture, dark=dark))


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_before_start(self, drift_capture):
        """A cancelled token stops the run."""
        token = CancelToken()
        token.cancel()
        with pytest.raises(RunCancelled):
            run_stack(_config(drift_capture), cancel=token)

    def test_cancel_during_run(self, drift_capture):
        """Cancelling mid-run stops at a frame boundary."""
        with pytest.raises(RunCancelled):
            run_stack(_config(drift_capture), cancel=_CancelAfter(5))
        assert not list(drift_capture.parent.glob("*_provenance.json"))


class TestOutputs:
    """Tests for the written image and reports."""

    def test_outputs_written(self, drift_capture):
        """The image and both reports are written next to the capture."""
        result = run_stack(_config(drift_capture, freetext="test run"))

        image = drift_capture.parent / "capture_Sun_test_run.tif"
        assert result.outputs["image"] == str(image)
        assert image.exists()
        assert (drift_capture.parent / "capture_Sun_test_run_provenance.json").exists()
        assert (drift_capture.parent / "capture_Sun_test_run_report.md").exists()

    def test_provenance_contents(self, disk_frame, ser_writer, tmp_path):
        """The provenance record lists kept and rejected frames."""
        frames = [disk_frame(cx=50.0 + i, cy=50.0) for i in range(6)]
        frames[2] = disk_frame(radius=1.5)
        output = tmp_path / "out" / "stack.fits"
        output.parent.mkdir()
        run_stack(_config(ser_writer(frames), output=output))

        record = json.loads((output.parent / "stack_provenance.json").read_text())
        assert record["frames"] == {"total": 6, "used": 5, "rejected": 1}
        assert record["kept"] == [0, 1, 3, 4, 5]
        assert record["rejected"][0]["index"] == 2
        assert record["rejected"][0]["reason"] == "centroid_not_found"
        assert record["rejection_reasons"] == {"centroid_not_found": 1}
        assert record["config"]["mount"] == "equatorial"
        assert record["reference_frame"] == 0
        assert record["outputs"]["image"] == str(output)

        report = (output.parent / "stack_report.md").read_text()
        assert "# Stacking Report: capture.ser" in report
        assert "| Frames used | 5 |" in report
        assert "centroid_not_found" in report
