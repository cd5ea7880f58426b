"""
Per-pixel frame combination for master calibration frames.

Implements sigma-clipped mean stacking with configurable parameters.
Designed for memory efficiency with long calibration captures.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging

import numpy as np
from astropy.stats import sigma_clip

logger = logging.getLogger(__name__)


# Size of the float64 working cube of one row band
DEFAULT_CHUNK_BYTES = 1024**2


def sigma_clip_mean(
    frames: list[np.ndarray] | np.ndarray,
    sigma: float | None = 3.0,
    maxiters: int = 5,
    chunk_rows: int | None = None,
    max_chunk_bytes: int = DEFAULT_CHUNK_BYTES,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Compute sigma-clipped mean of image stack using chunked processing.

    Parameters
    ----------
    frames : list[np.ndarray] or np.ndarray
        List of images (H, W) or (H, W, C), or an array with the frame
        axis first. A read-only ``np.memmap`` (see
        ``FrameSource.frame_stack``) is read one row band at a time.
    sigma : float or None, default 3.0
        Number of standard deviations for clipping threshold. None gives
        a plain mean.
    maxiters : int, default 5
        Maximum number of clipping iterations.
    chunk_rows : int, optional
        Number of rows to process at a time. Derived from
        `max_chunk_bytes` when None.
    max_chunk_bytes : int, default 1 MiB
        Upper bound of the float64 band cube
        (n_frames × chunk_rows × width × channels × 8 bytes); at least
        one row is always processed.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (stacked_image, mask_count)
        stacked_image: The sigma-clipped mean (float32).
        mask_count: Number of frames contributing to each pixel.

    Notes
    -----
    Sigma clipping iteratively rejects outliers (cosmic rays, hot pixels
    that flicker, transient artifacts) that deviate more than `sigma`
    standard deviations from the mean at each pixel position. Clipping
    is done in float64 so that identical inputs reproduce the plain mean
    exactly.

    Memory is O(n_frames × chunk_rows × width): neither the list nor the
    array path ever builds the full float cube.
    """
    if len(frames) == 0:
        raise ValueError("Empty frame list")

    n_frames = len(frames)
    shape = tuple(frames[0].shape)
    height = shape[0]
    if chunk_rows is None:
        row_bytes = n_frames * int(np.prod(shape[1:], dtype=np.int64)) * 8
        chunk_rows = max(1, min(height, max_chunk_bytes // max(row_bytes, 1)))

    logger.info(
        "Combining %d frames (%s) with sigma=%s, maxiters=%d, chunk_rows=%d",
        n_frames, "x".join(str(s) for s in shape), sigma, maxiters, chunk_rows
    )

    stacked = np.zeros(shape, dtype=np.float32)
    mask_count = np.zeros(shape, dtype=np.int32)

    n_chunks = (height + chunk_rows - 1) // chunk_rows
    for chunk_idx in range(n_chunks):
        row_start = chunk_idx * chunk_rows
        row_end = min(row_start + chunk_rows, height)

        # Build chunk cube: (n_frames, chunk_rows, ...)
        if isinstance(frames, np.ndarray):
            band = frames[:, row_start:row_end]
        else:
            band = np.stack([f[row_start:row_end] for f in frames])
        mean, count = _combine(band.astype(np.float64), sigma, maxiters)
        stacked[row_start:row_end] = mean
        mask_count[row_start:row_end] = count

    logger.debug(
        "Combine complete. Mean contributing frames: %.1f, min: %d, max: %d",
        np.mean(mask_count),
        np.min(mask_count),
        np.max(mask_count),
    )

    return stacked, mask_count


def _combine(cube: np.ndarray, sigma: float | None, maxiters: int) -> tuple[np.ndarray, np.ndarray]:
    """Clip and average along axis 0."""
    n_frames = cube.shape[0]
    if sigma is None or n_frames < 3:
        return cube.mean(axis=0), np.full(cube.shape[1:], n_frames, dtype=np.int32)

    clipped = sigma_clip(
        cube,
        sigma=sigma,
        maxiters=maxiters,
        axis=0,
        masked=True,
        copy=False,
    )
    count = n_frames - np.sum(clipped.mask, axis=0)
    mean = np.ma.mean(clipped, axis=0).filled(np.nan)

    # Every sample clipped (pathological): fall back to the plain mean
    empty = count == 0
    if np.any(empty):
        mean = np.where(empty, cube.mean(axis=0), mean)
        count = np.where(empty, n_frames, count)

    return mean, count
