"""
Debayering operations for one-shot-color solar and lunar cameras.

Supports the four 2x2 Bayer layouts a SER file can declare. The pattern
string lists the colors of the top-left 2x2 block in row-major order:

    RGGB        GRBG        GBRG        BGGR
    R  G        G  R        G  B        B  G
    G  B        B  G        R  G        G  R

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from typing import Literal

import numpy as np
from scipy.ndimage import convolve

logger = logging.getLogger(__name__)

BAYER_PATTERNS = ("RGGB", "GRBG", "GBRG", "BGGR")
_CHANNEL = {"R": 0, "G": 1, "B": 2}

# Interpolation kernels (unnormalized - we normalize by actual counts)
_KERNEL_CROSS = np.array([
    [0, 1, 0],
    [1, 0, 1],
    [0, 1, 0],
], dtype=np.float32)

_KERNEL_DIAG = np.array([
    [1, 0, 1],
    [0, 0, 0],
    [1, 0, 1],
], dtype=np.float32)


def _check_pattern(pattern: str) -> str:
    pattern = pattern.upper()
    if pattern not in BAYER_PATTERNS:
        raise ValueError(f"Unknown Bayer pattern: {pattern}")
    return pattern


def cfa_channel_map(shape: tuple[int, int], pattern: str = "RGGB") -> np.ndarray:
    """
    Channel index (0=R, 1=G, 2=B) of every pixel of a Bayer mosaic.

    Parameters
    ----------
    shape : tuple[int, int]
        Mosaic shape (H, W).
    pattern : str, default "RGGB"
        Bayer pattern.

    Returns
    -------
    np.ndarray
        int8 array of shape (H, W).
    """
    pattern = _check_pattern(pattern)
    h, w = shape
    channels = np.empty((h, w), dtype=np.int8)
    for k, color in enumerate(pattern):
        dy, dx = divmod(k, 2)
        channels[dy::2, dx::2] = _CHANNEL[color]
    return channels


def debayer(
    data: np.ndarray,
    pattern: str = "RGGB",
    mode: Literal["superpixel", "bilinear"] = "bilinear",
) -> np.ndarray:
    """
    Convert a Bayer mosaic to RGB.

    Parameters
    ----------
    data : np.ndarray
        2D Bayer mosaic image (H, W).
    pattern : str, default "RGGB"
        Bayer pattern of the top-left 2x2 block.
    mode : {"superpixel", "bilinear"}, default "bilinear"
        Debayer algorithm:
        - "superpixel": 2x2 binning (half resolution, robust, fast)
        - "bilinear": Bilinear interpolation (full resolution)

    Returns
    -------
    np.ndarray
        3D RGB image:
        - superpixel: shape (H/2, W/2, 3)
        - bilinear: shape (H, W, 3)
    """
    if data.ndim != 2:
        raise ValueError(f"Expected 2D array, got shape {data.shape}")

    if mode == "superpixel":
        return _debayer_superpixel(data, pattern)
    elif mode == "bilinear":
        return _debayer_bilinear(data, pattern)
    else:
        raise ValueError(f"Unknown debayer mode: {mode}")


def _debayer_superpixel(data: np.ndarray, pattern: str) -> np.ndarray:
    """
    2x2 superpixel debayer.

    Each 2x2 Bayer block produces one RGB pixel; the two green samples
    are averaged.
    """
    pattern = _check_pattern(pattern)
    h, w = data.shape
    h2, w2 = h // 2, w // 2
    data_f = data[: h2 * 2, : w2 * 2].astype(np.float32)

    rgb = np.zeros((h2, w2, 3), dtype=np.float32)
    for k, color in enumerate(pattern):
        dy, dx = divmod(k, 2)
        weight = 0.5 if color == "G" else 1.0
        rgb[:, :, _CHANNEL[color]] += weight * data_f[dy::2, dx::2]

    logger.debug("Superpixel debayer (%s): %s -> %s", pattern, data.shape, rgb.shape)
    return rgb


def _interp_normalized(data_plane: np.ndarray, count_mask: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    """Convolve and normalize by actual contributing pixel count."""
    sum_vals = convolve(data_plane, kernel, mode="nearest")
    sum_counts = convolve(count_mask, kernel, mode="nearest")
    return np.divide(sum_vals, sum_counts, out=np.zeros_like(sum_vals),
                     where=sum_counts > 0)


def _debayer_bilinear(data: np.ndarray, pattern: str) -> np.ndarray:
    """
    Bilinear interpolation debayer.

    Full resolution output. Missing green samples come from the cross
    neighbors; missing red/blue samples come from the cross neighbors at
    green sites and from the diagonal neighbors at the opposite chroma
    site. Convolutions are normalized by the number of contributing
    pixels, which also handles image borders.
    """
    channels = cfa_channel_map(data.shape, pattern)
    data_f = data.astype(np.float32)
    rgb = np.zeros(data.shape + (3,), dtype=np.float32)

    masks = [channels == c for c in range(3)]
    for c in range(3):
        mask = masks[c]
        raw = np.where(mask, data_f, 0).astype(np.float32)
        count = mask.astype(np.float32)
        plane = rgb[:, :, c]
        plane[mask] = data_f[mask]

        cross = _interp_normalized(raw, count, _KERNEL_CROSS)
        if c == 1:
            plane[~mask] = cross[~mask]
        else:
            diag = _interp_normalized(raw, count, _KERNEL_DIAG)
            opposite = masks[2 - c]
            plane[masks[1]] = cross[masks[1]]
            plane[opposite] = diag[opposite]

    logger.debug("Bilinear debayer (%s): %s -> %s", pattern, data.shape, rgb.shape)
    return rgb


def luminance_from_rgb(
    rgb: np.ndarray,
    method: Literal["average", "weighted"] = "weighted",
) -> np.ndarray:
    """
    Convert RGB image to luminance.

    Parameters
    ----------
    rgb : np.ndarray
        RGB image with shape (H, W, 3).
    method : {"average", "weighted"}, default "weighted"
        - "average": Simple mean of R, G, B
        - "weighted": ITU-R BT.601 weighted sum

    Returns
    -------
    np.ndarray
        Luminance image with shape (H, W), dtype float32.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected (H, W, 3) array, got shape {rgb.shape}")

    if method == "average":
        return np.mean(rgb, axis=2).astype(np.float32)
    elif method == "weighted":
        # ITU-R BT.601
        return (0.299 * rgb[:, :, 0] +
                0.587 * rgb[:, :, 1] +
                0.114 * rgb[:, :, 2]).astype(np.float32)
    else:
        raise ValueError(f"Unknown method: {method}")


def luminance(image: np.ndarray) -> np.ndarray:
    """Luminance of a mono (returned as float32) or RGB image."""
    if image.ndim == 3:
        return luminance_from_rgb(image)
    return image.astype(np.float32, copy=False)
