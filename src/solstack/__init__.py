"""
solstack - Stacking pipeline for solar and lunar SER video captures.

Calibrates, scores, aligns, derotates and drizzles the frames of a
solar or lunar video into one image, with a full provenance record.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com

Example
-------
>>> from solstack import StackConfig, run_stack
>>> config = StackConfig(light="sun_0930.ser", mount="altaz", latitude=43.6,
...                      longitude=1.4, target="sun", top_percentage=20)
>>> result = run_stack(config)
>>> print(result.outputs["image"])

Example (drizzle, lunar, equatorial)
------------------------------------
>>> config = StackConfig(light="moon.ser", mount="equatorial", target="moon",
...                      drizzle_scale=1.5, pixfrac=0.7)
>>> result = run_stack(config)
"""

from .config import (
    DropKernel,
    FrameScore,
    LimbStage,
    MountKind,
    RejectedFrame,
    RejectionReason,
    StackConfig,
    StackResult,
    Target,
)
from .errors import (
    CentroidNotFound,
    ConfigurationError,
    EmptyCalibrationSet,
    ExhaustionError,
    FormatError,
    FrameError,
    GeometryMismatch,
    InputError,
    LimbModelFitFailed,
    MissingLightFrames,
    NoFramesSurviveAlignment,
    NoFramesSurviveQuality,
    RunCancelled,
    SolstackError,
    TruncatedDataError,
)
from .utils import __version__, __version_info__, assemble_output_filename, get_version_banner

# Primary entry point
from .pipeline import CancelToken, load_calibration, run_stack

# Frame source
from .io import ColorId, FrameSource, RawFrame, SensorGeometry, read_header, write_image, write_ser

# Calibration
from .calibrate import (
    CalibrationRole,
    CalibrationSet,
    HotPixelMap,
    MasterCalibrationFrame,
    apply_calibration,
    build_master,
    build_master_from_file,
    detect_hot_pixels,
    inpaint_pixels,
    load_hot_pixel_map,
)
from .stack import sigma_clip_mean

# Quality
from .quality import QualitySeries, rank_frames, score_frame, select_frames

# Alignment
from .align import Centroid, find_centroid, object_mask, object_threshold, select_reference, threshold_preview

# Rotation
from .rotation import ObserverLocation, RotationModel, parallactic_angle, rotation_angle

# Resampling and drizzle
from .resample import build_frame_transform, resample_frame
from .drizzle import DrizzleIntegrator

# Limb darkening
from .limb import LimbModel, correct_limb_darkening, fit_limb_model, radial_profile

# Debayer
from .debayer import debayer, luminance_from_rgb

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Pipeline
    "run_stack",
    "load_calibration",
    "CancelToken",
    "assemble_output_filename",
    # Config
    "StackConfig",
    "StackResult",
    "FrameScore",
    "RejectedFrame",
    "RejectionReason",
    "MountKind",
    "Target",
    "LimbStage",
    "DropKernel",
    # Errors
    "SolstackError",
    "InputError",
    "FormatError",
    "GeometryMismatch",
    "TruncatedDataError",
    "EmptyCalibrationSet",
    "MissingLightFrames",
    "ConfigurationError",
    "FrameError",
    "CentroidNotFound",
    "LimbModelFitFailed",
    "ExhaustionError",
    "NoFramesSurviveQuality",
    "NoFramesSurviveAlignment",
    "RunCancelled",
    # I/O
    "ColorId",
    "SensorGeometry",
    "RawFrame",
    "FrameSource",
    "read_header",
    "write_ser",
    "write_image",
    # Calibration
    "CalibrationRole",
    "CalibrationSet",
    "HotPixelMap",
    "MasterCalibrationFrame",
    "apply_calibration",
    "build_master",
    "build_master_from_file",
    "detect_hot_pixels",
    "inpaint_pixels",
    "load_hot_pixel_map",
    "sigma_clip_mean",
    # Quality
    "QualitySeries",
    "rank_frames",
    "score_frame",
    "select_frames",
    # Alignment
    "Centroid",
    "find_centroid",
    "object_mask",
    "object_threshold",
    "select_reference",
    "threshold_preview",
    # Rotation
    "ObserverLocation",
    "RotationModel",
    "parallactic_angle",
    "rotation_angle",
    # Resampling / drizzle
    "build_frame_transform",
    "resample_frame",
    "DrizzleIntegrator",
    # Limb darkening
    "LimbModel",
    "correct_limb_darkening",
    "fit_limb_model",
    "radial_profile",
    # Debayer
    "debayer",
    "luminance_from_rgb",
]
