"""
Utility functions for solstack pipeline.

Includes:
- Version info
- Intensity normalization for 16-bit output
- Output naming helpers

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

__version__ = "0.4.0"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-18",
}


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"solstack v{__version__} | Solar & Lunar Stacking Pipeline"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    return f"{platform.system()} {platform.release()} / Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def get_timestamp_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def default_workers() -> int:
    """Number of worker threads: all CPUs but one."""
    return max(1, os.cpu_count() - 1) if os.cpu_count() else 4


def normalize_unit(data: np.ndarray, decorrelated: bool = False) -> np.ndarray:
    """
    Rescale an image to the [0, 1] range.

    Parameters
    ----------
    data : np.ndarray
        Image, shape (H, W) or (H, W, 3).
    decorrelated : bool, default False
        For color images, rescale each channel with its own min/max
        instead of the global min/max (breaks color balance, maximizes
        per-channel dynamic range).

    Returns
    -------
    np.ndarray
        float32 image in [0, 1]. Constant images map to zeros.
    """
    data = np.nan_to_num(np.asarray(data, dtype=np.float64))

    if decorrelated and data.ndim == 3:
        out = np.empty(data.shape, dtype=np.float32)
        for c in range(data.shape[2]):
            out[:, :, c] = normalize_unit(data[:, :, c])
        return out

    vmin = data.min()
    vmax = data.max()
    if vmax - vmin < 1e-10:
        return np.zeros(data.shape, dtype=np.float32)

    return ((data - vmin) / (vmax - vmin)).astype(np.float32)


def to_uint16(data: np.ndarray) -> np.ndarray:
    """
    Convert normalized [0,1] float array to uint16 [0,65535].

    Parameters
    ----------
    data : np.ndarray
        Input array with values in [0, 1] range.

    Returns
    -------
    np.ndarray
        Output array with dtype uint16.
    """
    return (np.clip(data, 0, 1) * 65535).astype(np.uint16)


def sanitize_filename(name: str) -> str:
    """
    Sanitize a string for use as a filename.

    Replaces problematic characters with underscores.
    """
    bad_chars = '<>:"/\\|?* '
    result = name
    for char in bad_chars:
        result = result.replace(char, "_")
    return result


def assemble_output_filename(
    light_path: str | Path,
    output_dir: str | Path | None = None,
    target: str | None = None,
    drizzle_scale: float = 1.0,
    freetext: str = "",
    suffix: str = ".tif",
) -> Path:
    """
    Build the default output path for a stacked image.

    The name is ``<stem>_<Target>[_drizzle<scale>][_<freetext>]<suffix>``,
    placed in `output_dir` (default: next to the light file).

    Examples
    --------
    >>> assemble_output_filename("/data/sun_0930.ser", target="sun", drizzle_scale=1.5).name
    'sun_0930_Sun_drizzle1.5.tif'
    """
    light_path = Path(light_path)
    parts = [light_path.stem]
    if target:
        parts.append(str(getattr(target, "value", target)).capitalize())
    if drizzle_scale != 1.0:
        parts.append(f"drizzle{drizzle_scale:g}")
    if freetext:
        parts.append(sanitize_filename(freetext))

    directory = Path(output_dir) if output_dir is not None else light_path.parent
    return directory / ("_".join(parts) + suffix)


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Parameters
    ----------
    seconds : float
        Duration in seconds.

    Returns
    -------
    str
        Formatted string like "2h 15m 30s" or "45.2s".
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.0f}s"
