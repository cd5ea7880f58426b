"""
Photometric calibration: master frames, dark/flat correction and hot-pixel repair.

Light, dark, flat, dark-flat and bias captures share one frame
representation (RawFrame). The calibration role only selects how a
master is built (MasterPolicy), so there is no per-role class hierarchy.

Calibration order for a light frame:

1. subtract the master dark, or the master bias when no dark is given
2. divide by the flat response: (flat - dark_flat) or (flat - bias),
   normalized to a mean of 1.0; pixels with a response below
   `min_flat_response` are not divided and are repaired instead
3. repair hot pixels (explicit map, rejected flat pixels and optional
   statistical outliers) by front propagation from valid neighbors

Every master is optional; a missing one is an identity stage.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import numpy as np
from scipy.ndimage import median_filter

from .errors import EmptyCalibrationSet, FormatError, GeometryMismatch, InputError
from .io import FrameSource, RawFrame, SensorGeometry
from .stack import sigma_clip_mean

logger = logging.getLogger(__name__)

_DEFAULT = object()

# 8-neighborhood offsets with inverse-distance weights
_NEIGHBORS = [
    (dy, dx, 1.0 / np.hypot(dy, dx))
    for dy in (-1, 0, 1)
    for dx in (-1, 0, 1)
    if (dy, dx) != (0, 0)
]


class CalibrationRole(Enum):
    """Calibration capture types."""

    BIAS = "bias"
    DARK = "dark"
    FLAT = "flat"
    DARK_FLAT = "dark_flat"


@dataclass(frozen=True)
class MasterPolicy:
    """How a master is combined for one calibration role."""

    sigma: float | None = 3.0
    maxiters: int = 5
    repair_hot_pixels: bool = True


ROLE_POLICIES: dict[CalibrationRole, MasterPolicy] = {
    CalibrationRole.BIAS: MasterPolicy(repair_hot_pixels=False),
    CalibrationRole.DARK: MasterPolicy(),
    CalibrationRole.FLAT: MasterPolicy(),
    CalibrationRole.DARK_FLAT: MasterPolicy(),
}


# ---------------------------------------------------------------------------
# Hot-pixel map
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HotPixelMap:
    """Defective sensor pixels, as (x, y) coordinates."""

    width: int
    height: int
    coordinates: frozenset[tuple[int, int]] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        for x, y in self.coordinates:
            if not (0 <= x < self.width and 0 <= y < self.height):
                raise FormatError(
                    "Hot pixel outside the sensor",
                    {"x": x, "y": y, "width": self.width, "height": self.height},
                )

    def __len__(self) -> int:
        return len(self.coordinates)

    def require_geometry(self, geometry: SensorGeometry) -> None:
        """Raise GeometryMismatch unless the map was made for this sensor."""
        if (self.width, self.height) != (geometry.width, geometry.height):
            raise GeometryMismatch(
                "Hot pixel map does not match sensor geometry",
                {
                    "map": f"{self.width}x{self.height}",
                    "sensor": f"{geometry.width}x{geometry.height}",
                },
            )

    def mask(self) -> np.ndarray:
        """Boolean (H, W) mask of flagged pixels."""
        mask = np.zeros((self.height, self.width), dtype=bool)
        if self.coordinates:
            xs, ys = zip(*self.coordinates)
            mask[np.asarray(ys), np.asarray(xs)] = True
        return mask


def load_hot_pixel_map(path: str | Path) -> HotPixelMap:
    """
    Load a hot-pixel map from a TOML or JSON document.

    Expected keys::

        sensor_width = 1920
        sensor_height = 1080
        hotpixels = [[12, 40], [803, 511]]   # (x, y) pairs

    Parameters
    ----------
    path : str or Path
        ``.json`` files are read as JSON, anything else as TOML.

    Returns
    -------
    HotPixelMap
        Parsed map.
    """
    path = Path(path)
    if not path.is_file():
        raise InputError(f"Hot pixel map not found: {path}")

    try:
        if path.suffix.lower() == ".json":
            with open(path, "r") as f:
                doc = json.load(f)
        else:
            with open(path, "rb") as f:
                doc = tomllib.load(f)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise FormatError(f"Cannot parse hot pixel map {path.name}: {e}") from e

    try:
        width = int(doc["sensor_width"])
        height = int(doc["sensor_height"])
        coords = frozenset((int(x), int(y)) for x, y in doc.get("hotpixels", []))
    except (KeyError, TypeError, ValueError) as e:
        raise FormatError(f"Malformed hot pixel map {path.name}: {e}") from e

    hot = HotPixelMap(width=width, height=height, coordinates=coords)
    logger.info("Loaded %d hot pixels from %s", len(hot), path.name)
    return hot


# ---------------------------------------------------------------------------
# Masters
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class MasterCalibrationFrame:
    """Combined calibration frame for one role. Data is read-only float32."""

    role: CalibrationRole
    data: np.ndarray
    geometry: SensorGeometry
    frame_count: int

    def __post_init__(self) -> None:
        data = np.asarray(self.data, dtype=np.float32)
        if data.flags.writeable:
            data = data.copy()
            data.flags.writeable = False
        object.__setattr__(self, "data", data)


def build_master(
    frames: Iterable[RawFrame],
    role: CalibrationRole,
    sigma: float | None = _DEFAULT,
    maxiters: int | None = None,
    hot_pixels: HotPixelMap | None = None,
) -> MasterCalibrationFrame:
    """
    Combine a calibration sequence into a master frame.

    Parameters
    ----------
    frames : iterable of RawFrame
        Calibration frames of one role, all with the same geometry.
    role : CalibrationRole
        Role of the sequence; selects the MasterPolicy.
    sigma : float or None, optional
        Clipping threshold; overrides the role policy. None = plain mean.
    maxiters : int, optional
        Clipping iterations; overrides the role policy.
    hot_pixels : HotPixelMap, optional
        Repaired on the master when the role policy asks for it.

    Returns
    -------
    MasterCalibrationFrame
        Per-pixel sigma-clipped mean.

    Raises
    ------
    EmptyCalibrationSet
        No frames were given.
    GeometryMismatch
        Frames (or the hot-pixel map) do not share one geometry.
    """
    frames = list(frames)
    if not frames:
        raise EmptyCalibrationSet(f"No frames to build a {role.value} master")

    geometry = frames[0].geometry
    for frame in frames[1:]:
        geometry.require_match(frame.geometry, what=f"{role.value} frame {frame.index}")

    return _finish_master(
        [f.data for f in frames], geometry, role, sigma, maxiters, hot_pixels
    )


def _finish_master(
    frames: list[np.ndarray] | np.ndarray,
    geometry: SensorGeometry,
    role: CalibrationRole,
    sigma: float | None,
    maxiters: int | None,
    hot_pixels: HotPixelMap | None,
) -> MasterCalibrationFrame:
    policy = ROLE_POLICIES[role]
    sigma = policy.sigma if sigma is _DEFAULT else sigma
    maxiters = policy.maxiters if maxiters is None else maxiters
    repair = hot_pixels is not None and policy.repair_hot_pixels and len(hot_pixels) > 0
    if repair:
        hot_pixels.require_geometry(geometry)

    stacked, _ = sigma_clip_mean(frames, sigma=sigma, maxiters=maxiters)

    if repair:
        stacked = inpaint_pixels(stacked, hot_pixels.mask(), geometry.bayer_pattern)

    logger.info(
        "Built %s master from %d frames (mean=%.1f)",
        role.value, len(frames), float(np.mean(stacked)),
    )
    return MasterCalibrationFrame(
        role=role, data=stacked, geometry=geometry, frame_count=len(frames)
    )


def build_master_from_file(
    path: str | Path,
    role: CalibrationRole,
    expected_geometry: SensorGeometry | None = None,
    sigma: float | None = _DEFAULT,
    maxiters: int | None = None,
    hot_pixels: HotPixelMap | None = None,
) -> MasterCalibrationFrame:
    """
    Build a master from every frame of a SER capture.

    The geometry comes from the header and the pixel data is combined
    from a memory map one row band at a time, so a long flat or dark
    capture is never loaded in full. See build_master for the
    remaining parameters.
    """
    source = FrameSource(path, expected_geometry=expected_geometry)
    if len(source) == 0:
        raise EmptyCalibrationSet(f"{Path(path).name} holds no {role.value} frames")
    return _finish_master(
        source.frame_stack(), source.geometry, role, sigma, maxiters, hot_pixels
    )


# ---------------------------------------------------------------------------
# Hot-pixel detection and repair
# ---------------------------------------------------------------------------


def _cfa_planes(pattern: str | None) -> list[tuple[slice, ...]]:
    """Index slices of same-color sub-planes."""
    if pattern is None:
        return [(slice(None), slice(None))]
    return [
        (slice(dy, None, 2), slice(dx, None, 2))
        for dy in (0, 1)
        for dx in (0, 1)
    ]


def detect_hot_pixels(
    image: np.ndarray,
    sigma: float = 6.0,
    pattern: str | None = None,
) -> np.ndarray:
    """
    Flag statistical outliers against their 3x3 same-color median.

    A pixel is flagged when ``|pixel - median3x3| > sigma * noise``,
    where ``noise = 1.4826 * MAD`` of the residual over the plane. On
    Bayer mosaics the test runs on each same-color sub-plane.

    Parameters
    ----------
    image : np.ndarray
        Calibrated image, (H, W) or (H, W, 3).
    sigma : float, default 6.0
        Detection threshold in robust standard deviations.
    pattern : str, optional
        Bayer pattern of a mosaic image.

    Returns
    -------
    np.ndarray
        Boolean (H, W) mask.
    """
    if image.ndim == 3:
        mask = np.zeros(image.shape[:2], dtype=bool)
        for c in range(image.shape[2]):
            mask |= detect_hot_pixels(image[:, :, c], sigma)
        return mask

    mask = np.zeros(image.shape, dtype=bool)
    for index in _cfa_planes(pattern):
        plane = image[index].astype(np.float64)
        resid = plane - median_filter(plane, size=3, mode="nearest")
        noise = 1.4826 * np.median(np.abs(resid - np.median(resid)))
        floor = np.finfo(np.float32).eps * max(1.0, float(np.abs(plane).max()))
        mask[index] = np.abs(resid) > sigma * max(noise, floor)

    return mask


def _inpaint_plane(plane: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Fill masked pixels layer by layer, from the valid border inward.

    Each front pixel receives the inverse-distance weighted mean of its
    already-known 8-neighbors, then joins the known set.
    """
    out = plane.astype(np.float64)
    unknown = mask.copy()
    if not unknown.any():
        return out
    if unknown.all():
        logger.warning("Cannot repair pixels: no valid neighbors in plane")
        return out

    h, w = out.shape
    while unknown.any():
        known = ~unknown
        values = np.pad(np.where(known, out, 0.0), 1)
        known_pad = np.pad(known, 1).astype(np.float64)

        total = np.zeros((h, w))
        weight = np.zeros((h, w))
        for dy, dx, wgt in _NEIGHBORS:
            ys = slice(1 + dy, 1 + dy + h)
            xs = slice(1 + dx, 1 + dx + w)
            total += wgt * values[ys, xs]
            weight += wgt * known_pad[ys, xs]

        front = unknown & (weight > 0)
        if not front.any():
            break
        out[front] = total[front] / weight[front]
        unknown &= ~front

    return out


def inpaint_pixels(
    image: np.ndarray,
    mask: np.ndarray,
    pattern: str | None = None,
) -> np.ndarray:
    """
    Repair masked pixels from their valid neighbors.

    Parameters
    ----------
    image : np.ndarray
        Image, (H, W) or (H, W, C).
    mask : np.ndarray
        Boolean (H, W) mask of pixels to repair.
    pattern : str, optional
        Bayer pattern; when given, only same-color neighbors are used.

    Returns
    -------
    np.ndarray
        Repaired float32 copy of `image`.
    """
    out = np.array(image, dtype=np.float32)
    if not np.any(mask):
        return out

    if out.ndim == 3:
        for c in range(out.shape[2]):
            out[:, :, c] = _inpaint_plane(out[:, :, c], mask)
        return out

    for index in _cfa_planes(pattern):
        out[index] = _inpaint_plane(out[index], mask[index])
    return out


# ---------------------------------------------------------------------------
# Applying calibration
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class CalibratedFrame:
    """A light frame after dark/flat correction and hot-pixel repair."""

    index: int
    timestamp: datetime | None
    data: np.ndarray
    geometry: SensorGeometry
    repaired_pixels: int = 0


@dataclass(frozen=True, eq=False)
class CalibrationSet:
    """
    Read-only calibration context shared by every frame of a run.

    Parameters
    ----------
    geometry : SensorGeometry
        Session geometry; all masters, the map and every light must match.
    bias, dark, flat, dark_flat : MasterCalibrationFrame, optional
        Masters; a missing one is an identity stage.
    hot_pixels : HotPixelMap, optional
        Explicit defect map.
    hot_pixel_sigma : float, optional
        Enables statistical hot-pixel detection on each light.
    min_flat_response : float, default 0.05
        Normalized flat response below which pixels are repaired
        instead of divided.
    """

    geometry: SensorGeometry
    bias: MasterCalibrationFrame | None = None
    dark: MasterCalibrationFrame | None = None
    flat: MasterCalibrationFrame | None = None
    dark_flat: MasterCalibrationFrame | None = None
    hot_pixels: HotPixelMap | None = None
    hot_pixel_sigma: float | None = None
    min_flat_response: float = 0.05

    def __post_init__(self) -> None:
        for name in ("bias", "dark", "flat", "dark_flat"):
            master = getattr(self, name)
            if master is not None:
                self.geometry.require_match(master.geometry, what=f"{name} master")
        if self.hot_pixels is not None:
            self.hot_pixels.require_geometry(self.geometry)

        response = self._flat_response()
        static_mask = np.zeros((self.geometry.height, self.geometry.width), dtype=bool)
        if self.hot_pixels is not None:
            static_mask |= self.hot_pixels.mask()
        if response is not None:
            low = response < self.min_flat_response
            static_mask |= low.any(axis=2) if low.ndim == 3 else low
            response.flags.writeable = False
        static_mask.flags.writeable = False

        object.__setattr__(self, "_response", response)
        object.__setattr__(self, "_static_mask", static_mask)

    def _flat_response(self) -> np.ndarray | None:
        if self.flat is None:
            return None
        offset = self.dark_flat if self.dark_flat is not None else self.bias
        response = self.flat.data.astype(np.float64)
        if offset is not None:
            response = response - offset.data
        mean = float(np.mean(response))
        if not np.isfinite(mean) or mean <= 0:
            raise InputError("Flat response has a non-positive mean", {"mean": mean})
        return response / mean

    @property
    def is_identity(self) -> bool:
        """True when no calibration stage is active."""
        return (
            self.bias is None and self.dark is None and self.flat is None
            and not self._static_mask.any() and self.hot_pixel_sigma is None
        )

    @property
    def static_mask(self) -> np.ndarray:
        """Pixels repaired on every frame (map and dead flat pixels)."""
        return self._static_mask

    def apply(self, light: RawFrame) -> CalibratedFrame:
        """
        Calibrate one light frame.

        Raises
        ------
        GeometryMismatch
            The light does not match the session geometry.
        """
        self.geometry.require_match(light.geometry, what=f"light frame {light.index}")
        data = light.as_float()

        if self.dark is not None:
            data -= self.dark.data
        elif self.bias is not None:
            data -= self.bias.data

        response = self._response
        if response is not None:
            usable = response >= self.min_flat_response
            data = np.divide(data, response, out=data.astype(np.float64), where=usable)
            data = data.astype(np.float32)

        mask = self._static_mask
        if self.hot_pixel_sigma is not None:
            mask = mask | detect_hot_pixels(data, self.hot_pixel_sigma, self.geometry.bayer_pattern)

        n_repaired = int(np.count_nonzero(mask))
        if n_repaired:
            data = inpaint_pixels(data, mask, self.geometry.bayer_pattern)

        return CalibratedFrame(
            index=light.index,
            timestamp=light.timestamp,
            data=data,
            geometry=light.geometry,
            repaired_pixels=n_repaired,
        )


def apply_calibration(
    light: RawFrame,
    bias: MasterCalibrationFrame | None = None,
    dark: MasterCalibrationFrame | None = None,
    flat: MasterCalibrationFrame | None = None,
    dark_flat: MasterCalibrationFrame | None = None,
    hot_pixel_map: HotPixelMap | None = None,
    hot_pixel_sigma: float | None = None,
    min_flat_response: float = 0.05,
) -> CalibratedFrame:
    """
    Calibrate a single light frame (convenience wrapper over CalibrationSet).

    For runs over many frames, build one CalibrationSet and reuse it.
    """
    calibration = CalibrationSet(
        geometry=light.geometry,
        bias=bias,
        dark=dark,
        flat=flat,
        dark_flat=dark_flat,
        hot_pixels=hot_pixel_map,
        hot_pixel_sigma=hot_pixel_sigma,
        min_flat_response=min_flat_response,
    )
    return calibration.apply(light)
