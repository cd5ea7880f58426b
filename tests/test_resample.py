"""
Tests for the resample module.

Tests cover:
- Composition of translation and rotation
- Exact integer shifts and resampling footprint
- Relative angles
- Color frames

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import math

import numpy as np
import pytest

from solstack.align import find_centroid
from solstack.resample import build_frame_transform, relative_angles, resample_frame


class TestBuildFrameTransform:
    """Tests for the source-to-reference transform."""

    def test_pure_translation(self):
        """A zero angle gives an exact translation matrix."""
        tf = build_frame_transform((3.0, -2.0), 0.0, (50.0, 50.0))
        np.testing.assert_array_equal(
            tf.params, [[1.0, 0.0, 3.0], [0.0, 1.0, -2.0], [0.0, 0.0, 1.0]]
        )

    def test_rotation_keeps_center(self):
        """The rotation center is a fixed point after the shift."""
        tf = build_frame_transform((2.0, 1.0), 0.7, (40.0, 30.0))
        # (38, 29) is shifted onto the center, then stays there
        np.testing.assert_allclose(tf([[38.0, 29.0]]), [[40.0, 30.0]], atol=1e-12)

    def test_quarter_turn(self):
        """A point right of the center moves above it for a +90 degree field rotation."""
        tf = build_frame_transform((0.0, 0.0), math.pi / 2, (0.0, 0.0))
        np.testing.assert_allclose(tf([[1.0, 0.0]]), [[0.0, -1.0]], atol=1e-12)


class TestRelativeAngles:
    """Tests for angles relative to the reference frame."""

    def test_reference_gets_offset(self):
        """The reference frame gets exactly the offset."""
        rel = relative_angles({0: 0.1, 1: 0.3, 2: 0.6}, reference_index=1, offset=0.25)
        assert rel[1] == 0.25
        assert rel[0] == pytest.approx(0.05)
        assert rel[2] == pytest.approx(0.55)

    def test_no_offset(self):
        """Without offset the reference is not rotated."""
        rel = relative_angles({3: 1.0, 4: 1.5}, reference_index=3)
        assert rel == {3: 0.0, 4: 0.5}


class TestResampleFrame:
    """Tests for bilinear resampling."""

    def test_integer_shift_is_exact(self, disk_frame):
        """An integer translation moves the disk without interpolation error."""
        frame = disk_frame(cx=53, cy=48)
        expected = disk_frame(cx=50, cy=50)
        out, footprint = resample_frame(frame, build_frame_transform((-3.0, 2.0), 0.0, (50.0, 50.0)))
        assert out.dtype == np.float32
        np.testing.assert_array_equal(out, expected)
        assert footprint.dtype == bool

    def test_footprint_marks_source_support(self, uniform_frame):
        """Pixels shifted in from outside the frame are not in the footprint."""
        frame = uniform_frame(height=20, width=30, value=7.0)
        _, footprint = resample_frame(frame, build_frame_transform((3.0, 0.0), 0.0, (15.0, 10.0)))
        assert not footprint[:, :3].any()
        assert footprint[:, 3:].all()

    def test_valid_mask_moves_with_the_frame(self, disk_frame):
        """A source mask is carried through the transform into the footprint."""
        frame = disk_frame(cx=53, cy=48)
        out, footprint = resample_frame(
            frame, build_frame_transform((-3.0, 2.0), 0.0, (50.0, 50.0)), valid=frame > 0
        )
        np.testing.assert_array_equal(footprint, disk_frame(cx=50, cy=50) > 0)
        np.testing.assert_array_equal(out[footprint], 1000.0)

    def test_valid_mask_shape_mismatch(self, uniform_frame):
        """A mask of another size is rejected."""
        with pytest.raises(ValueError, match="Mask shape"):
            resample_frame(uniform_frame(height=20, width=30),
                           build_frame_transform((0, 0), 0.0, (0, 0)),
                           valid=np.ones((10, 10), dtype=bool))

    def test_rotation_preserves_centroid(self, disk_frame):
        """Rotating about the disk center keeps the disk in place."""
        frame = disk_frame(cx=50, cy=50, radius=25)
        out, footprint = resample_frame(frame, build_frame_transform((0.0, 0.0), 0.4, (50.0, 50.0)))
        c = find_centroid(out, threshold=500.0)
        assert (c.x, c.y) == (pytest.approx(50.0, abs=0.05), pytest.approx(50.0, abs=0.05))
        assert footprint[50, 50]
        assert not footprint[0, 0]

    def test_values_not_clipped(self):
        """Negative and large values pass through unchanged."""
        frame = np.array([[-5.0, 1e6], [3.0, 4.0]], dtype=np.float32)
        out, _ = resample_frame(frame, build_frame_transform((0.0, 0.0), 0.0, (0.5, 0.5)))
        np.testing.assert_array_equal(out, frame)

    def test_color_frame(self, disk_frame):
        """Each color plane is resampled with the same transform."""
        mono = disk_frame(cx=52, cy=50)
        rgb = np.stack([mono, 2 * mono, 3 * mono], axis=-1)
        out, _ = resample_frame(rgb, build_frame_transform((-2.0, 0.0), 0.0, (50.0, 50.0)))
        assert out.shape == rgb.shape
        expected = disk_frame(cx=50, cy=50)
        for c in range(3):
            np.testing.assert_array_equal(out[:, :, c], (c + 1) * expected)

    def test_output_shape(self, uniform_frame):
        """The output grid can differ from the input size."""
        out, footprint = resample_frame(uniform_frame(), build_frame_transform((0, 0), 0.0, (0, 0)),
                                        output_shape=(40, 50))
        assert out.shape == (40, 50)
        assert footprint.shape == (40, 50)
        assert not footprint[35:, :].any()

    def test_bad_shape(self):
        """Arrays that are not images are rejected."""
        with pytest.raises(ValueError):
            resample_frame(np.zeros((2, 2, 2, 2)), build_frame_transform((0, 0), 0.0, (0, 0)))
