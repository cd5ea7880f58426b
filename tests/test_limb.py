"""
Tests for the limb module.

Tests cover:
- Disk estimation and radial profile
- Quadratic and fixed-coefficient limb laws
- Flattening of a limb-darkened disk
- Fit failures

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from solstack.errors import LimbModelFitFailed
from solstack.limb import (
    LimbModel,
    correct_limb_darkening,
    estimate_disk,
    fit_limb_model,
    radial_profile,
)


def _inner_disk(shape, center=(64.0, 64.0), radius=50.0, fraction=0.9):
    yy, xx = np.mgrid[0:shape[0], 0:shape[1]]
    return np.hypot(xx - center[0], yy - center[1]) < fraction * radius


class TestDiskGeometry:
    """Tests for disk estimation and the radial profile."""

    def test_estimate_disk(self, limb_darkened_disk):
        """Center and radius are recovered from the illuminated area."""
        (x, y), radius = estimate_disk(limb_darkened_disk())
        assert (x, y) == (pytest.approx(64.0, abs=0.01), pytest.approx(64.0, abs=0.01))
        assert radius == pytest.approx(50.0, rel=0.02)

    def test_radial_profile_decreases(self, limb_darkened_disk):
        """The mean profile of a limb-darkened disk decreases outward."""
        r, mean, counts = radial_profile(limb_darkened_disk(), (64.0, 64.0), 50.0, n_bins=16)
        assert r.shape == mean.shape == counts.shape == (16,)
        assert np.all(counts > 0)
        assert np.all(np.diff(mean) < 0)

    def test_empty_bins_are_nan(self, limb_darkened_disk):
        """Bins without pixels have a NaN mean and zero count."""
        _, mean, counts = radial_profile(limb_darkened_disk(), (64.0, 64.0), 50.0, n_bins=500)
        assert np.any(counts == 0)
        assert np.all(np.isnan(mean[counts == 0]))


class TestFitLimbModel:
    """Tests for the limb-darkening fit."""

    def test_quadratic_fit_recovers_linear_law(self, limb_darkened_disk):
        """A linear-law disk with u=0.6 is fitted with c1/c0 close to -0.6."""
        model = fit_limb_model(limb_darkened_disk(u=0.6), center=(64.0, 64.0), radius=50.0)
        c0, c1, c2 = model.coefficients
        assert model.law == "quadratic"
        assert c0 == pytest.approx(4000.0, rel=0.01)
        assert c1 / c0 == pytest.approx(-0.6, abs=0.05)
        assert abs(c2 / c0) < 0.1
        assert model.samples > 8

    def test_fixed_coefficient(self, limb_darkened_disk):
        """A fixed coefficient fits the linear law's central intensity only."""
        model = fit_limb_model(limb_darkened_disk(u=0.6), center=(64.0, 64.0), radius=50.0,
                               coefficient=0.6)
        c0, c1, c2 = model.coefficients
        assert model.law == "linear"
        assert c0 == pytest.approx(4000.0, rel=0.01)
        assert c1 == pytest.approx(-0.6 * c0)
        assert c2 == 0.0

    def test_normalized_is_one_at_center(self):
        """The normalized model equals 1 at mu=1."""
        model = LimbModel(center=(0.0, 0.0), radius=10.0, coefficients=(2.0, -1.0, 0.2))
        assert model.normalized(1.0) == pytest.approx(1.0)
        assert model.normalized(0.0) == pytest.approx((2.0 - 1.0 + 0.2) / 2.0)

    def test_index_reported(self):
        """A frame without disk reports its index."""
        with pytest.raises(LimbModelFitFailed) as excinfo:
            fit_limb_model(np.zeros((64, 64), dtype=np.float32), index=3)
        assert excinfo.value.index == 3

    def test_disk_too_small(self, limb_darkened_disk):
        """A tiny disk cannot be fitted."""
        with pytest.raises(LimbModelFitFailed, match="too small"):
            fit_limb_model(limb_darkened_disk(), center=(64.0, 64.0), radius=3.0)

    def test_too_few_samples(self, limb_darkened_disk):
        """Fewer populated bins than required is a failure."""
        with pytest.raises(LimbModelFitFailed, match="radial samples"):
            fit_limb_model(limb_darkened_disk(), center=(64.0, 64.0), radius=50.0,
                           min_samples=100)

    def test_negative_model(self, limb_darkened_disk):
        """A profile that would reach negative intensity is rejected."""
        frame = limb_darkened_disk(u=1.5)
        with pytest.raises(LimbModelFitFailed, match="negative"):
            fit_limb_model(frame, center=(64.0, 64.0), radius=50.0)


class TestCorrectLimbDarkening:
    """Tests for the correction itself."""

    def test_flattens_disk(self, limb_darkened_disk):
        """After correction the disk interior is flat."""
        frame = limb_darkened_disk(u=0.6)
        corrected = correct_limb_darkening(frame, center=(64.0, 64.0), radius=50.0)
        inner = corrected[_inner_disk(frame.shape)]
        assert corrected.dtype == np.float32
        assert inner.std() / inner.mean() < 0.02
        assert inner.mean() == pytest.approx(4000.0, rel=0.02)

    def test_outside_disk_unchanged(self, limb_darkened_disk):
        """Pixels beyond the limb keep their value."""
        frame = limb_darkened_disk()
        frame[frame == 0] = 50.0
        corrected = correct_limb_darkening(frame, center=(64.0, 64.0), radius=50.0)
        assert corrected[0, 0] == 50.0
        assert corrected[127, 5] == 50.0

    def test_prefitted_model(self, limb_darkened_disk):
        """A model fitted on one image can correct another."""
        frame = limb_darkened_disk()
        model = fit_limb_model(frame, center=(64.0, 64.0), radius=50.0)
        a = correct_limb_darkening(frame, model)
        b = correct_limb_darkening(frame, center=(64.0, 64.0), radius=50.0)
        np.testing.assert_array_equal(a, b)

    def test_color_image(self, limb_darkened_disk):
        """Each channel is divided by the same model."""
        mono = limb_darkened_disk()
        rgb = np.stack([mono, 0.5 * mono, 0.25 * mono], axis=-1)
        corrected = correct_limb_darkening(rgb, center=(64.0, 64.0), radius=50.0)
        assert corrected.shape == rgb.shape
        mask = _inner_disk(mono.shape)
        np.testing.assert_allclose(corrected[..., 1][mask], 0.5 * corrected[..., 0][mask],
                                   rtol=1e-5)
