"""
Limb-darkening correction for solar (and lunar) disks.

The disk brightness falls off toward the limb as a function of

    mu = cos(theta) = sqrt(1 - (r / R)**2)

for a pixel at distance r from the disk center of radius R. The
correction fits the mean radial profile with

    quadratic law:  I(mu) = c0 + c1 (1 - mu) + c2 (1 - mu)**2
    linear law:     I(mu) = I0 (1 - u (1 - mu))    (u fixed)

and divides the disk by the model normalized to 1 at the disk center.
Pixels outside the disk are left unchanged.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .align import find_centroid
from .debayer import luminance
from .errors import CentroidNotFound, LimbModelFitFailed

logger = logging.getLogger(__name__)

# Typical visible-light linear coefficient of the Sun
SOLAR_LINEAR_COEFFICIENT = 0.56

# Profile bins beyond this fraction of R are ignored (limb blur, seeing)
_MAX_FIT_RADIUS = 0.97

# Smallest disk (pixels) for which a radial fit is meaningful
_MIN_RADIUS = 4.0

# Model values are floored at this fraction of the center intensity
_MODEL_FLOOR = 0.05


@dataclass(frozen=True)
class LimbModel:
    """Fitted limb-darkening model of one disk."""

    center: tuple[float, float]  # (x, y)
    radius: float
    coefficients: tuple[float, float, float]  # c0, c1, c2 of the quadratic law
    law: str = "quadratic"
    samples: int = 0  # Radial bins used by the fit

    def intensity(self, mu: np.ndarray) -> np.ndarray:
        """Model intensity for mu in [0, 1]."""
        c0, c1, c2 = self.coefficients
        t = 1.0 - np.asarray(mu, dtype=np.float64)
        return c0 + c1 * t + c2 * t * t

    def normalized(self, mu: np.ndarray) -> np.ndarray:
        """Model divided by its value at the disk center (mu = 1)."""
        return self.intensity(mu) / self.coefficients[0]

    def correction_map(self, shape: tuple[int, ...]) -> np.ndarray:
        """
        Divisor map: normalized model inside the disk, 1 outside.

        Parameters
        ----------
        shape : tuple
            Image shape (H, W) or (H, W, C); only (H, W) is used.
        """
        h, w = shape[:2]
        yy, xx = np.mgrid[0:h, 0:w]
        r = np.hypot(xx - self.center[0], yy - self.center[1]) / self.radius
        inside = r < 1.0
        mu = np.sqrt(np.clip(1.0 - r * r, 0.0, 1.0))
        divisor = np.ones((h, w), dtype=np.float64)
        divisor[inside] = np.maximum(self.normalized(mu[inside]), _MODEL_FLOOR)
        return divisor


def estimate_disk(image: np.ndarray, threshold: float | None = None) -> tuple[tuple[float, float], float]:
    """
    Disk center and radius from the illuminated area.

    Returns
    -------
    tuple
        ((x, y), radius) with radius = sqrt(area / pi).
    """
    centroid = find_centroid(image, threshold=threshold)
    return (centroid.x, centroid.y), float(np.sqrt(centroid.pixels / np.pi))


def radial_profile(
    image: np.ndarray,
    center: tuple[float, float],
    radius: float,
    n_bins: int = 64,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Mean intensity in annuli of the disk.

    Parameters
    ----------
    image : np.ndarray
        Mono or RGB image (RGB is reduced to luminance).
    center : (x, y)
        Disk center.
    radius : float
        Disk radius in pixels.
    n_bins : int, default 64
        Number of annuli over [0, R).

    Returns
    -------
    tuple[np.ndarray, np.ndarray, np.ndarray]
        (bin center r/R, mean intensity, pixel count) per bin. Empty
        bins have a NaN mean and a zero count.
    """
    lum = luminance(image).astype(np.float64)
    h, w = lum.shape
    yy, xx = np.mgrid[0:h, 0:w]
    r = np.hypot(xx - center[0], yy - center[1]) / radius

    inside = (r < 1.0) & np.isfinite(lum)
    bins = np.minimum((r[inside] * n_bins).astype(np.int64), n_bins - 1)
    counts = np.bincount(bins, minlength=n_bins)
    sums = np.bincount(bins, weights=lum[inside], minlength=n_bins)

    mean = np.full(n_bins, np.nan)
    nonzero = counts > 0
    mean[nonzero] = sums[nonzero] / counts[nonzero]
    r_centers = (np.arange(n_bins) + 0.5) / n_bins
    return r_centers, mean, counts


def fit_limb_model(
    image: np.ndarray,
    center: tuple[float, float] | None = None,
    radius: float | None = None,
    coefficient: float | None = None,
    threshold: float | None = None,
    n_bins: int = 64,
    min_samples: int = 8,
    index: int | None = None,
) -> LimbModel:
    """
    Fit a limb-darkening law to the disk's radial profile.

    Parameters
    ----------
    image : np.ndarray
        Mono or RGB image containing the disk.
    center : (x, y), optional
        Disk center; estimated from the image when None.
    radius : float, optional
        Disk radius in pixels; estimated from the illuminated area when None.
    coefficient : float, optional
        Fixed linear-law coefficient u. When None a quadratic law is fitted.
    threshold : float, optional
        Object threshold used for disk estimation (Otsu when None).
    n_bins : int, default 64
        Radial bins.
    min_samples : int, default 8
        Minimum number of populated bins.
    index : int, optional
        Frame index, reported in errors.

    Returns
    -------
    LimbModel
        Fitted model.

    Raises
    ------
    LimbModelFitFailed
        Disk not found, too small, too few radial samples, or a
        non-physical fit (non-positive center intensity or a model that
        turns negative on the disk).
    """
    if center is None or radius is None:
        try:
            est_center, est_radius = estimate_disk(image, threshold)
        except CentroidNotFound as e:
            raise LimbModelFitFailed("Disk not found for limb fit", index=index,
                                     details=e.details) from e
        center = center if center is not None else est_center
        radius = radius if radius is not None else est_radius

    if radius < _MIN_RADIUS:
        raise LimbModelFitFailed(
            "Disk too small for a limb fit", index=index, details={"radius": round(radius, 2)}
        )

    r, mean, counts = radial_profile(image, center, radius, n_bins)
    usable = (counts > 0) & (r < _MAX_FIT_RADIUS) & np.isfinite(mean)
    n_usable = int(np.count_nonzero(usable))
    if n_usable < min_samples:
        raise LimbModelFitFailed(
            "Too few radial samples",
            index=index,
            details={"samples": n_usable, "min_samples": min_samples},
        )

    t = 1.0 - np.sqrt(1.0 - r[usable] ** 2)
    y = mean[usable]
    sw = np.sqrt(counts[usable].astype(np.float64))

    if coefficient is not None:
        g = 1.0 - coefficient * t
        i0 = float(np.sum(sw**2 * g * y) / np.sum(sw**2 * g * g))
        coeffs = (i0, -coefficient * i0, 0.0)
        law = "linear"
    else:
        design = np.column_stack([np.ones_like(t), t, t * t])
        solution, _, rank, _ = np.linalg.lstsq(design * sw[:, None], y * sw, rcond=None)
        if rank < 3:
            raise LimbModelFitFailed("Degenerate radial profile", index=index,
                                     details={"rank": int(rank)})
        coeffs = tuple(float(c) for c in solution)
        law = "quadratic"

    model = LimbModel(
        center=(float(center[0]), float(center[1])),
        radius=float(radius),
        coefficients=coeffs,
        law=law,
        samples=n_usable,
    )

    if not coeffs[0] > 0:
        raise LimbModelFitFailed("Non-positive disk-center intensity", index=index,
                                 details={"c0": coeffs[0]})
    if np.min(model.normalized(np.linspace(0.0, 1.0, 33))) <= 0:
        raise LimbModelFitFailed("Limb model turns negative on the disk", index=index)

    logger.debug(
        "Limb fit (%s): R=%.1f, coeffs=%s, samples=%d",
        law, radius, ", ".join(f"{c:.4g}" for c in coeffs), n_usable,
    )
    return model


def correct_limb_darkening(
    image: np.ndarray,
    model: LimbModel | None = None,
    **fit_kwargs,
) -> np.ndarray:
    """
    Divide the disk by the normalized limb-darkening model.

    Parameters
    ----------
    image : np.ndarray
        Mono or RGB image.
    model : LimbModel, optional
        Pre-fitted model; fitted on `image` when None.
    **fit_kwargs
        Passed to fit_limb_model.

    Returns
    -------
    np.ndarray
        Corrected float32 image.

    Raises
    ------
    LimbModelFitFailed
        When `model` is None and the fit fails.
    """
    if model is None:
        model = fit_limb_model(image, **fit_kwargs)

    divisor = model.correction_map(image.shape)
    if image.ndim == 3:
        divisor = divisor[:, :, None]
    return (image / divisor).astype(np.float32)
