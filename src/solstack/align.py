"""
Object-centroid registration for solar and lunar frames.

Registration uses the intensity-weighted center of mass of the
illuminated disk instead of feature matching: the disk of the Sun or
the Moon has no stars to match, but its centroid is stable and cheap to
measure to sub-pixel precision.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import binary_fill_holes
from skimage.filters import threshold_otsu

from .config import FrameScore
from .debayer import luminance
from .errors import CentroidNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Centroid:
    """Sub-pixel object position in a frame."""

    x: float
    y: float
    pixels: int  # Number of pixels above threshold
    threshold: float


def object_threshold(image: np.ndarray, threshold: float | None = None) -> float:
    """
    Threshold separating the disk from the sky background.

    Parameters
    ----------
    image : np.ndarray
        Mono or RGB frame.
    threshold : float, optional
        Fixed threshold. When None, Otsu's method picks the histogram
        split that maximizes between-class variance.

    Returns
    -------
    float
        Threshold value.
    """
    if threshold is not None:
        return float(threshold)

    lum = luminance(image)
    finite = lum[np.isfinite(lum)]
    if finite.size == 0 or finite.min() == finite.max():
        return float(finite.max()) if finite.size else 0.0
    return float(threshold_otsu(finite))


def check_disk_coverage(
    centroid: Centroid,
    expected_pixels: int | None,
    min_fraction: float = 0.5,
    index: int | None = None,
) -> None:
    """
    Reject a centroid measured on a partially visible disk.

    Raises
    ------
    CentroidNotFound
        Fewer than ``min_fraction * expected_pixels`` pixels are illuminated.
    """
    if expected_pixels is None or expected_pixels <= 0:
        return
    if centroid.pixels < min_fraction * expected_pixels:
        raise CentroidNotFound(
            "Object partially out of frame or too dim",
            index=index,
            details={
                "pixels": centroid.pixels,
                "expected": expected_pixels,
                "min_fraction": min_fraction,
            },
        )


def find_centroid(
    image: np.ndarray,
    threshold: float | None = None,
    expected_pixels: int | None = None,
    min_fraction: float = 0.5,
    min_pixels: int = 16,
    index: int | None = None,
) -> Centroid:
    """
    Intensity-weighted center of mass of the pixels above threshold.

    Parameters
    ----------
    image : np.ndarray
        Calibrated frame, mono (H, W) or RGB (H, W, 3).
    threshold : float, optional
        Background threshold; adaptive (Otsu) when None.
    expected_pixels : int, optional
        Illuminated pixel count of a fully visible disk (usually from the
        reference frame).
    min_fraction : float, default 0.5
        Minimum fraction of `expected_pixels` that must be illuminated.
    min_pixels : int, default 16
        Absolute minimum number of illuminated pixels.
    index : int, optional
        Frame index, reported in errors.

    Returns
    -------
    Centroid
        (x, y) in pixel coordinates, x along columns.

    Raises
    ------
    CentroidNotFound
        Not enough illuminated pixels.

    Notes
    -----
    Weights are ``value - threshold`` so that pixels barely above the
    threshold (limb, noise) contribute little. Sums are accumulated in
    float64.
    """
    lum = luminance(image).astype(np.float64)
    thr = object_threshold(lum, threshold)
    mask = lum > thr
    n_pixels = int(np.count_nonzero(mask))

    if n_pixels < min_pixels:
        raise CentroidNotFound(
            "Too few illuminated pixels",
            index=index,
            details={"pixels": n_pixels, "min_pixels": min_pixels, "threshold": round(thr, 3)},
        )

    ys, xs = np.nonzero(mask)
    weights = lum[ys, xs] - thr
    total = float(np.sum(weights))
    if not np.isfinite(total) or total <= 0:
        raise CentroidNotFound("Object has no flux above threshold", index=index)

    centroid = Centroid(
        x=float(np.sum(weights * xs) / total),
        y=float(np.sum(weights * ys) / total),
        pixels=n_pixels,
        threshold=thr,
    )
    check_disk_coverage(centroid, expected_pixels, min_fraction, index)
    return centroid


def select_reference(
    candidates: Sequence[FrameScore],
    method: str = "best",
) -> FrameScore:
    """
    Select the alignment reference among candidate frames.

    Parameters
    ----------
    candidates : sequence of FrameScore
        Scores of the frames that can serve as reference.
    method : {"best", "first"}, default "best"
        "best": highest composite score (lowest index on ties);
        "first": lowest frame index.

    Returns
    -------
    FrameScore
        Score of the reference frame.
    """
    if not candidates:
        raise ValueError("No frames provided for reference selection")

    if method == "first":
        ref = min(candidates, key=lambda s: s.index)
        logger.info("Selected first frame as reference: %d", ref.index)
    elif method == "best":
        ref = min(candidates, key=lambda s: (-s.composite, s.index))
        logger.info(
            "Selected best-scoring frame as reference: %d (score=%.4g)",
            ref.index, ref.composite,
        )
    else:
        raise ValueError(f"Unknown reference selection method: {method}")

    return ref


def compute_translation(reference: Centroid, centroid: Centroid) -> tuple[float, float]:
    """Shift (dx, dy) that moves `centroid` onto `reference`."""
    return reference.x - centroid.x, reference.y - centroid.y


def threshold_preview(image: np.ndarray, threshold: float | None = None) -> tuple[np.ndarray, float]:
    """
    Binary preview of the object detection threshold.

    Returns
    -------
    tuple[np.ndarray, float]
        (uint8 mask with 255 above threshold, threshold used)
    """
    lum = luminance(image)
    thr = object_threshold(lum, threshold)
    preview = np.where(lum > thr, 255, 0).astype(np.uint8)
    return preview, thr


def object_mask(image: np.ndarray, threshold: float) -> np.ndarray:
    """
    Pixels that belong to the object.

    Luminance above `threshold`, with enclosed holes filled so that dark
    features inside the disk (sunspot umbrae, shadowed craters) keep
    their data. Sky and the unlit side of the Moon stay outside.

    Parameters
    ----------
    image : np.ndarray
        Calibrated frame, mono (H, W) or RGB (H, W, 3).
    threshold : float
        Object threshold, usually ``Centroid.threshold`` of the frame.

    Returns
    -------
    np.ndarray
        Boolean (H, W) mask.
    """
    return binary_fill_holes(luminance(image) > threshold)
