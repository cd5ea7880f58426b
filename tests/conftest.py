"""
Pytest configuration and fixtures.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from solstack.io import ColorId, write_ser


@pytest.fixture
def disk_frame():
    """Create a synthetic uniform disk on a dark background."""
    def _create(height=100, width=100, cx=50.0, cy=50.0, radius=30.0,
                value=1000.0, background=0.0, dtype=np.float32):
        yy, xx = np.mgrid[0:height, 0:width]
        inside = (xx - cx) ** 2 + (yy - cy) ** 2 <= radius ** 2
        frame = np.full((height, width), background, dtype=np.float64)
        frame[inside] = value
        return frame.astype(dtype)

    return _create


@pytest.fixture
def limb_darkened_disk():
    """Create a synthetic solar disk with linear limb darkening."""
    def _create(height=128, width=128, cx=64.0, cy=64.0, radius=50.0,
                center_value=4000.0, u=0.6):
        yy, xx = np.mgrid[0:height, 0:width]
        r = np.hypot(xx - cx, yy - cy) / radius
        mu = np.sqrt(np.clip(1.0 - r * r, 0.0, 1.0))
        frame = np.where(r < 1.0, center_value * (1.0 - u * (1.0 - mu)), 0.0)
        return frame.astype(np.float32)

    return _create


@pytest.fixture
def textured_frame():
    """Create a reproducible frame with fine detail (granulation-like)."""
    def _create(size=128, seed=0):
        rng = np.random.default_rng(seed)
        base = rng.uniform(0.0, 1.0, (size, size))
        return (2000.0 + 1000.0 * base).astype(np.float64)

    return _create


@pytest.fixture
def uniform_frame():
    """Create a constant frame."""
    def _create(height=32, width=32, value=500.0):
        return np.full((height, width), value, dtype=np.float32)

    return _create


@pytest.fixture
def capture_start():
    """UTC start time of synthetic captures."""
    return datetime(2024, 3, 20, 18, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def ser_writer(tmp_path, capture_start):
    """Write frames to a SER file under tmp_path, with 10 ms timestamps."""
    def _write(frames, name="capture.ser", color=ColorId.MONO, bit_depth=16,
               timestamps=True, step=timedelta(milliseconds=10)):
        frames = [np.asarray(f) for f in frames]
        dtype = np.uint8 if bit_depth == 8 else np.uint16
        frames = [np.clip(np.rint(f), 0, np.iinfo(dtype).max).astype(dtype) for f in frames]
        stamps = None
        if timestamps is True:
            stamps = [capture_start + i * step for i in range(len(frames))]
        elif timestamps:
            stamps = list(timestamps)
        return write_ser(tmp_path / name, frames, color=color, bit_depth=bit_depth,
                         timestamps=stamps)

    return _write
