"""
Configuration dataclasses for the solstack pipeline.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

import numpy as np

from .errors import ConfigurationError

# Drizzle output scales offered by the CLI; any positive factor is accepted.
DRIZZLE_SCALES = (1.0, 1.5, 2.0, 3.0)


class _Choice(str, Enum):
    """String-valued enumeration with a forgiving parser."""

    @classmethod
    def parse(cls, value):
        """Return the member matching `value` (member, value or name)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace("_", "-")
        for member in cls:
            if text in (member.value, member.name.lower().replace("_", "-")):
                return member
        choices = ", ".join(m.value for m in cls)
        raise ConfigurationError(
            f"Unknown {cls.__name__} '{value}' (expected one of: {choices})"
        )


class MountKind(_Choice):
    """Telescope mount geometry."""

    ALTAZ = "altaz"  # Field rotates with the parallactic angle
    EQUATORIAL = "equatorial"  # Field orientation fixed


class Target(_Choice):
    """Supported ephemeris targets."""

    SUN = "sun"
    MOON = "moon"


class LimbStage(_Choice):
    """Where limb-darkening correction is applied."""

    OFF = "off"
    PRE_STACK = "pre-stack"
    POST_STACK = "post-stack"


class DropKernel(_Choice):
    """Drizzle drop footprint."""

    POINT = "point"  # Bilinear splat of the pixel center
    SQUARE = "square"  # Square drop of side pixfrac, exact area overlap


class RejectionReason(Enum):
    """Reason codes for frame rejection."""

    LOW_QUALITY_SCORE = "low_quality_score"  # Below min_quality
    OUTSIDE_TOP_PERCENTAGE = "outside_top_percentage"  # Not in the best N%
    FRAME_LIMIT = "frame_limit"  # Beyond max_frames
    CENTROID_NOT_FOUND = "centroid_not_found"  # Object not detected
    LIMB_FIT_FAILED = "limb_fit_failed"  # Pre-stack limb model failed


@dataclass
class RejectedFrame:
    """Record of a rejected frame with reason."""

    index: int
    reason: RejectionReason
    detail: str = ""  # Optional additional info (e.g., score value)


@dataclass
class FrameScore:
    """Quality metrics for a single frame."""

    index: int
    sharpness: float  # Variance of the Laplacian of the smoothed ROI
    noise: float  # MAD-based noise estimate of the ROI
    illuminated_fraction: float  # Fraction of ROI pixels above the object threshold
    composite: float  # Ranking score (higher = better)


@dataclass
class StackConfig:
    """
    Configuration for the stacking pipeline.

    All parameters are explicitly documented and have sensible defaults.
    Enumerated options accept either the enum member or its string value.
    """

    # --- Inputs ---
    light: str | Path | None = None
    """SER file holding the light frames."""

    dark: str | Path | None = None
    """SER file of dark frames (optional)."""

    flat: str | Path | None = None
    """SER file of flat frames (optional)."""

    dark_flat: str | Path | None = None
    """SER file of dark-flat frames (optional)."""

    bias: str | Path | None = None
    """SER file of bias frames (optional)."""

    hot_pixel_map: str | Path | None = None
    """TOML/JSON hot-pixel map (optional)."""

    output: str | Path | None = None
    """Output image path. None = assembled name next to the light file."""

    # --- Master calibration ---
    master_sigma: float | None = 3.0
    """Sigma for sigma-clipped master building. None = plain mean."""

    master_maxiters: int = 5
    """Maximum iterations for master sigma clipping."""

    min_flat_response: float = 0.05
    """Normalized flat pixels below this are treated as hot pixels."""

    hot_pixel_sigma: float | None = None
    """Statistical hot-pixel detection threshold (MAD sigmas). None = map only."""

    # --- Frame selection ---
    min_quality: float = 0.0
    """Frames with composite score below this are rejected."""

    top_percentage: float = 100.0
    """Keep only the best N percent of frames (1-100)."""

    max_frames: int | None = 5000
    """Hard cap on the number of stacked frames. None = no cap."""

    analysis_window: int = 128
    """Side of the quality-analysis window centered on the object (pixels)."""

    # --- Object detection / alignment ---
    object_threshold: float | None = None
    """Object detection threshold (ADU). None = adaptive (Otsu)."""

    min_disk_fraction: float = 0.5
    """Frames with fewer illuminated pixels than this fraction of the reference are rejected."""

    min_object_pixels: int = 16
    """Absolute minimum number of illuminated pixels for a centroid."""

    reference: Literal["best", "first"] = "best"
    """Reference frame selection: 'best' (highest score) or 'first'."""

    # --- Rotation ---
    mount: MountKind | str = MountKind.ALTAZ
    """Mount geometry: 'altaz' (derotate) or 'equatorial' (no field rotation)."""

    latitude: float = 34.0
    """Observer latitude in degrees (north positive)."""

    longitude: float = -118.0
    """Observer longitude in degrees (east positive)."""

    target: Target | str | None = Target.SUN
    """Ephemeris target. Required for alt-az mounts."""

    initial_rotation: float = 0.0
    """Constant rotation offset added to every frame (degrees)."""

    # --- Drizzle ---
    drizzle_scale: float = 1.0
    """Output upsample factor (1.0, 1.5, 2.0, 3.0 are typical)."""

    drop_kernel: DropKernel | str = DropKernel.SQUARE
    """Drizzle drop footprint: 'square' or 'point'."""

    pixfrac: float = 1.0
    """Drop side as a fraction of the input pixel (0, 1]."""

    # --- Limb darkening ---
    limb_stage: LimbStage | str = LimbStage.OFF
    """Limb-darkening correction stage: 'off', 'pre-stack' or 'post-stack'."""

    limb_coefficient: float | None = None
    """Fixed linear limb-darkening coefficient. None = fit a quadratic law."""

    limb_radius: float | None = None
    """Disk radius in output pixels. None = estimate from the image."""

    # --- Color / output ---
    debayer: bool = True
    """Debayer mosaiced sensors after calibration."""

    decorrelated_colors: bool = False
    """Normalize RGB channels independently when writing 16-bit images."""

    crop_width: int | None = None
    """Crop width around the output center (output pixels)."""

    crop_height: int | None = None
    """Crop height around the output center (output pixels)."""

    horiz_offset: int = 0
    """Horizontal offset of the crop window (output pixels)."""

    vert_offset: int = 0
    """Vertical offset of the crop window (output pixels)."""

    freetext: str = ""
    """Free text appended to assembled output names."""

    # --- Parallelism ---
    workers: int | None = None
    """Number of worker threads. None = auto-detect (CPU count - 1)."""

    def __post_init__(self) -> None:
        self.mount = MountKind.parse(self.mount)
        self.drop_kernel = DropKernel.parse(self.drop_kernel)
        self.limb_stage = LimbStage.parse(self.limb_stage)
        if self.target is not None:
            self.target = Target.parse(self.target)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not -90.0 <= self.latitude <= 90.0:
            raise ConfigurationError(f"latitude must be in [-90, 90], got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ConfigurationError(f"longitude must be in [-180, 180], got {self.longitude}")
        if self.mount is MountKind.ALTAZ and self.target is None:
            raise ConfigurationError("An alt-az mount requires a target for derotation")
        if not 0.0 < self.top_percentage <= 100.0:
            raise ConfigurationError(
                f"top_percentage must be in (0, 100], got {self.top_percentage}"
            )
        if self.max_frames is not None and self.max_frames < 1:
            raise ConfigurationError(f"max_frames must be >= 1, got {self.max_frames}")
        if self.min_quality < 0:
            raise ConfigurationError(f"min_quality must be >= 0, got {self.min_quality}")
        if self.analysis_window < 8:
            raise ConfigurationError(f"analysis_window must be >= 8, got {self.analysis_window}")
        if not 0.0 <= self.min_disk_fraction <= 1.0:
            raise ConfigurationError(
                f"min_disk_fraction must be in [0, 1], got {self.min_disk_fraction}"
            )
        if self.min_object_pixels < 1:
            raise ConfigurationError(
                f"min_object_pixels must be >= 1, got {self.min_object_pixels}"
            )
        if self.reference not in ("best", "first"):
            raise ConfigurationError(f"Unknown reference selection method: {self.reference}")
        if self.drizzle_scale <= 0 or self.drizzle_scale > 4:
            raise ConfigurationError(f"drizzle_scale must be in (0, 4], got {self.drizzle_scale}")
        if not 0.0 < self.pixfrac <= 1.0:
            raise ConfigurationError(f"pixfrac must be in (0, 1], got {self.pixfrac}")
        if self.master_sigma is not None and self.master_sigma <= 0:
            raise ConfigurationError(f"master_sigma must be positive, got {self.master_sigma}")
        if self.master_maxiters < 1:
            raise ConfigurationError(f"master_maxiters must be >= 1, got {self.master_maxiters}")
        if self.hot_pixel_sigma is not None and self.hot_pixel_sigma <= 0:
            raise ConfigurationError(
                f"hot_pixel_sigma must be positive, got {self.hot_pixel_sigma}"
            )
        if not 0.0 <= self.min_flat_response < 1.0:
            raise ConfigurationError(
                f"min_flat_response must be in [0, 1), got {self.min_flat_response}"
            )
        if self.limb_coefficient is not None and not 0.0 <= self.limb_coefficient <= 1.0:
            raise ConfigurationError(
                f"limb_coefficient must be in [0, 1], got {self.limb_coefficient}"
            )
        if self.limb_radius is not None and self.limb_radius <= 0:
            raise ConfigurationError(f"limb_radius must be positive, got {self.limb_radius}")
        for name in ("crop_width", "crop_height"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {value}")
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {self.workers}")


@dataclass
class StackResult:
    """
    Result of a stacking run.

    Contains all information needed to understand and reproduce the result.
    """

    # --- Run identification ---
    source: str
    """Path to the light-frame container."""

    # --- Frame accounting ---
    total_frames: int = 0
    """Number of frames in the light container."""

    kept: list[int] = field(default_factory=list)
    """Indices of frames integrated into the stack."""

    rejected: list[RejectedFrame] = field(default_factory=list)
    """Frames rejected with reasons."""

    # --- Quality / geometry data ---
    scores: list[FrameScore] = field(default_factory=list)
    """Quality scores of all scored frames, best first."""

    quality_threshold: float | None = None
    """Lowest composite score that was kept."""

    reference_frame: int | None = None
    """Index of the alignment reference frame."""

    reference_centroid: tuple[float, float] | None = None
    """(x, y) object centroid of the reference frame."""

    object_threshold: float | None = None
    """Object detection threshold used on the reference frame."""

    rotation_angles: dict[int, float] = field(default_factory=dict)
    """Per-frame derotation angle in radians, keyed by frame index."""

    # --- Outputs ---
    outputs: dict[str, str] = field(default_factory=dict)
    """Map of output type to path (e.g., 'image' -> '/path/to/stack.tif')."""

    stats: dict[str, float] = field(default_factory=dict)
    """Computed statistics (e.g., 'coverage_fraction')."""

    warnings: list[str] = field(default_factory=list)
    """Non-fatal conditions met during the run."""

    elapsed_s: float = 0.0
    """Wall time of the run in seconds."""

    # --- Configuration ---
    config: StackConfig | None = None
    """Configuration used for this run."""

    # --- Metadata ---
    version: str = ""
    """Library version."""

    timestamp: str = ""
    """ISO format timestamp of run completion."""

    platform: str = ""
    """Platform information."""

    # --- Arrays ---
    image: np.ndarray | None = field(default=None, repr=False)
    """Final stacked image (float32)."""

    weights: np.ndarray | None = field(default=None, repr=False)
    """Accumulated drizzle weights (float64)."""

    def rejection_tally(self) -> dict[str, int]:
        """Count rejected frames by reason."""
        counts: dict[str, int] = {}
        for r in self.rejected:
            counts[r.reason.value] = counts.get(r.reason.value, 0) + 1
        return counts
