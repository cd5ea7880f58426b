"""
Stacking pipeline for solar and lunar SER captures.

Stages:
1. Open the light sequence and build the calibration masters
2. Pass 1 (parallel): calibrate, locate the object, score every frame
3. Select frames and the alignment reference, compute rotation angles
4. Pass 2 (parallel): calibrate, optional limb correction, resample, drizzle
5. Finalize, optional post-stack limb correction, crop, write outputs

Frames are read twice instead of being kept in memory: a solar video
holds thousands of frames, and calibration is cheap compared to the
resampling.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path

import numpy as np
from astropy.io import fits

from .align import (
    Centroid,
    check_disk_coverage,
    compute_translation,
    find_centroid,
    object_mask,
    select_reference,
)
from .calibrate import (
    CalibrationRole,
    CalibrationSet,
    build_master_from_file,
    load_hot_pixel_map,
)
from .cli_output import create_progress_bar
from .config import (
    FrameScore,
    LimbStage,
    RejectedFrame,
    RejectionReason,
    StackConfig,
    StackResult,
)
from .debayer import debayer
from .drizzle import DrizzleIntegrator
from .errors import (
    CentroidNotFound,
    LimbModelFitFailed,
    MissingLightFrames,
    NoFramesSurviveAlignment,
    NoFramesSurviveQuality,
    RunCancelled,
)
from .io import FrameSource, SensorGeometry, write_image
from .limb import correct_limb_darkening
from .quality import score_frame, select_frames
from .report import write_all_reports
from .resample import build_frame_transform, relative_angles, resample_frame
from .rotation import RotationModel
from .utils import (
    assemble_output_filename,
    default_workers,
    get_platform_info,
    get_timestamp_iso,
    get_version,
)

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cooperative cancellation flag shared with a running pipeline.

    The pipeline checks the token at every frame boundary and between
    stages; once set, the run stops with RunCancelled.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request the run to stop."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise RunCancelled when cancellation was requested."""
        if self._event.is_set():
            raise RunCancelled("Run cancelled")


def load_calibration(config: StackConfig, geometry: SensorGeometry) -> CalibrationSet:
    """
    Build the read-only calibration context of a run.

    Each configured calibration sequence is combined into a master; all
    masters and the hot-pixel map must match the light geometry.
    """
    hot_pixels = load_hot_pixel_map(config.hot_pixel_map) if config.hot_pixel_map else None
    if hot_pixels is not None:
        hot_pixels.require_geometry(geometry)

    masters = {}
    for role, path in (
        (CalibrationRole.BIAS, config.bias),
        (CalibrationRole.DARK, config.dark),
        (CalibrationRole.FLAT, config.flat),
        (CalibrationRole.DARK_FLAT, config.dark_flat),
    ):
        if path is None:
            continue
        masters[role.value] = build_master_from_file(
            path,
            role,
            expected_geometry=geometry,
            sigma=config.master_sigma,
            maxiters=config.master_maxiters,
            hot_pixels=hot_pixels,
        )

    return CalibrationSet(
        geometry=geometry,
        hot_pixels=hot_pixels,
        hot_pixel_sigma=config.hot_pixel_sigma,
        min_flat_response=config.min_flat_response,
        **masters,
    )


def _run_frames(
    fn: Callable[[int], object],
    indices: Iterable[int],
    handle: Callable[[int, Future], None],
    workers: int,
    cancel: CancelToken,
    desc: str,
    show_progress: bool,
) -> None:
    """
    Run `fn(index)` on a thread pool and pass each finished future to `handle`.

    Futures still pending when an exception (or cancellation) leaves the
    loop are cancelled.
    """
    indices = list(indices)
    pbar = create_progress_bar(
        total=len(indices),
        desc=f"{desc} ({workers} workers)",
        unit="frame",
        disable=not show_progress,
    )

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(fn, i): i for i in indices}
        try:
            with pbar:
                for future in as_completed(futures):
                    cancel.check()
                    handle(futures[future], future)
                    pbar.update(1)
        finally:
            for future in futures:
                future.cancel()


def _crop(
    image: np.ndarray,
    width: int | None,
    height: int | None,
    horiz_offset: int = 0,
    vert_offset: int = 0,
) -> tuple[slice, slice]:
    """Row/column slices of the crop window around the image center."""
    h, w = image.shape[:2]

    def _span(size: int | None, n: int, offset: int) -> slice:
        if size is None or size >= n:
            return slice(0, n)
        start = n // 2 + offset - size // 2
        start = min(max(start, 0), n - size)
        return slice(start, start + size)

    return _span(height, h, vert_offset), _span(width, w, horiz_offset)


def _fits_header(result: StackResult, config: StackConfig) -> fits.Header:
    header = fits.Header()
    header["SOFTWARE"] = (f"solstack {result.version}", "Stacking software")
    header["SOURCE"] = (Path(result.source).name, "Light frames")
    header["NCOMBINE"] = (len(result.kept), "Number of frames integrated")
    header["REFFRAME"] = (result.reference_frame, "Alignment reference frame")
    header["MOUNT"] = config.mount.value
    if config.target is not None:
        header["OBJECT"] = config.target.value.capitalize()
    header["DRIZZLE"] = (config.drizzle_scale, "Output upsample factor")
    header["PIXFRAC"] = config.pixfrac
    header["LIMB"] = config.limb_stage.value
    return header


def run_stack(
    config: StackConfig,
    cancel: CancelToken | None = None,
    show_progress: bool = False,
    write_outputs: bool = True,
) -> StackResult:
    """
    Execute the full stacking pipeline.

    Parameters
    ----------
    config : StackConfig
        Run configuration; validated before any frame is read.
    cancel : CancelToken, optional
        Token checked at every frame boundary.
    show_progress : bool, default False
        Show tqdm progress bars for the two frame passes.
    write_outputs : bool, default True
        Write the stacked image and the provenance reports.

    Returns
    -------
    StackResult
        Stacked image, weights and complete provenance.

    Raises
    ------
    ConfigurationError
        Invalid configuration (before any frame work).
    InputError
        Missing, malformed or inconsistent inputs (before any frame work).
    NoFramesSurviveQuality, NoFramesSurviveAlignment
        Every frame was rejected.
    RunCancelled
        The cancel token was set.
    """
    start_time = time.time()
    cancel = cancel or CancelToken()

    # --- Configuration and inputs (fail fast) ---
    config.validate()
    rotation = RotationModel.from_config(config)

    if config.light is None:
        raise MissingLightFrames("No light sequence configured")
    source = FrameSource(config.light)
    n_total = len(source)
    if n_total == 0:
        raise MissingLightFrames(f"{source.path.name} holds no frames")
    geometry = source.geometry
    timestamps = source.timestamps
    rotation.require_timestamps(timestamps)

    calibration = load_calibration(config, geometry)
    workers = config.workers or default_workers()
    to_rgb = geometry.is_mosaic and config.debayer
    channels = 3 if (geometry.planes == 3 or to_rgb) else None

    logger.info(
        "Stacking %s: %d frames, %dx%d, %s mount, %d workers",
        source.path.name, n_total, geometry.width, geometry.height,
        rotation.mount.value, workers,
    )

    result = StackResult(
        source=str(source.path),
        total_frames=n_total,
        config=config,
        version=get_version(),
        platform=get_platform_info(),
    )

    def load_calibrated(index: int) -> np.ndarray:
        frame = calibration.apply(source.read_frame(index))
        if to_rgb:
            return debayer(frame.data, geometry.bayer_pattern)
        return frame.data

    # --- Pass 1: centroid and score ---
    cancel.check()
    centroids: dict[int, Centroid] = {}
    scores: dict[int, FrameScore] = {}
    rejected: list[RejectedFrame] = []

    def measure(index: int) -> tuple[Centroid, FrameScore]:
        cancel.check()
        image = load_calibrated(index)
        centroid = find_centroid(
            image,
            threshold=config.object_threshold,
            min_pixels=config.min_object_pixels,
            index=index,
        )
        score = score_frame(
            image,
            index=index,
            centroid=centroid,
            window=config.analysis_window,
            threshold=centroid.threshold,
        )
        return centroid, score

    def collect_measure(index: int, future: Future) -> None:
        try:
            centroids[index], scores[index] = future.result()
        except CentroidNotFound as e:
            logger.debug("Frame %d rejected: %s", index, e)
            rejected.append(RejectedFrame(index, RejectionReason.CENTROID_NOT_FOUND, str(e)))

    _run_frames(measure, range(n_total), collect_measure, workers, cancel,
                "Scoring", show_progress)

    result.scores = sorted(scores.values(), key=lambda s: (-s.composite, s.index))
    if not scores:
        raise NoFramesSurviveAlignment(
            "No frame has a detectable object", total=n_total, tally=_tally(rejected)
        )

    # --- Selection and reference ---
    cancel.check()
    try:
        kept_scores, quality_rejected = select_frames(
            list(scores.values()),
            min_quality=config.min_quality,
            top_percentage=config.top_percentage,
            max_frames=config.max_frames,
        )
    except NoFramesSurviveQuality as e:
        tally = _tally(rejected)
        for reason, count in e.tally.items():
            tally[reason] = tally.get(reason, 0) + count
        raise NoFramesSurviveQuality(e.message, total=n_total, tally=tally) from e
    rejected.extend(quality_rejected)
    result.quality_threshold = min(s.composite for s in kept_scores)

    ref_score = select_reference(kept_scores, config.reference)
    ref_index = ref_score.index
    ref_centroid = centroids[ref_index]
    result.reference_frame = ref_index
    result.reference_centroid = (ref_centroid.x, ref_centroid.y)
    result.object_threshold = ref_centroid.threshold

    survivors = []
    for s in kept_scores:
        try:
            check_disk_coverage(
                centroids[s.index], ref_centroid.pixels, config.min_disk_fraction, s.index
            )
        except CentroidNotFound as e:
            rejected.append(RejectedFrame(s.index, RejectionReason.CENTROID_NOT_FOUND, str(e)))
            continue
        survivors.append(s.index)

    # --- Rotation angles (pure function of the timestamps) ---
    absolute = {i: rotation.angle(timestamps[i]) for i in survivors}
    angles = relative_angles(absolute, ref_index, offset=rotation.initial_rotation)

    # --- Pass 2: resample and drizzle ---
    cancel.check()
    drizzle = DrizzleIntegrator(
        (geometry.height, geometry.width),
        scale=config.drizzle_scale,
        pixfrac=config.pixfrac,
        kernel=config.drop_kernel,
        channels=channels,
    )
    limb_radius = config.limb_radius / config.drizzle_scale if config.limb_radius else None
    integrated: list[int] = []

    def integrate(index: int) -> int:
        cancel.check()
        image = load_calibrated(index)
        centroid = centroids[index]
        mask = object_mask(image, centroid.threshold)
        if config.limb_stage is LimbStage.PRE_STACK:
            image = correct_limb_darkening(
                image,
                center=(centroid.x, centroid.y),
                radius=limb_radius,
                coefficient=config.limb_coefficient,
                threshold=config.object_threshold,
                index=index,
            )
        transform = build_frame_transform(
            compute_translation(ref_centroid, centroid),
            angles[index],
            (ref_centroid.x, ref_centroid.y),
        )
        warped, footprint = resample_frame(image, transform, valid=mask)
        drizzle.deposit(warped, footprint)
        return index

    def collect_integrate(index: int, future: Future) -> None:
        try:
            integrated.append(future.result())
        except LimbModelFitFailed as e:
            logger.debug("Frame %d rejected: %s", index, e)
            rejected.append(RejectedFrame(index, RejectionReason.LIMB_FIT_FAILED, str(e)))

    _run_frames(integrate, survivors, collect_integrate, workers, cancel,
                "Drizzle", show_progress)

    if not integrated:
        raise NoFramesSurviveAlignment(
            "No frames survive alignment", total=n_total, tally=_tally(rejected)
        )

    # --- Finalize ---
    cancel.check()
    image, weights = drizzle.finalize()

    if config.limb_stage is LimbStage.POST_STACK:
        s = config.drizzle_scale
        try:
            image = correct_limb_darkening(
                image,
                center=((ref_centroid.x + 0.5) * s - 0.5, (ref_centroid.y + 0.5) * s - 0.5),
                radius=config.limb_radius,
                coefficient=config.limb_coefficient,
            )
        except LimbModelFitFailed as e:
            message = f"Post-stack limb correction skipped: {e}"
            logger.warning(message)
            result.warnings.append(message)

    rows, cols = _crop(
        image, config.crop_width, config.crop_height, config.horiz_offset, config.vert_offset
    )
    image = image[rows, cols]
    weights = weights[rows, cols]

    covered = weights > 0
    result.kept = sorted(integrated)
    result.rejected = sorted(rejected, key=lambda r: r.index)
    result.rotation_angles = {i: angles[i] for i in result.kept}
    result.image = image
    result.weights = weights
    result.stats = {
        "frames_integrated": float(len(result.kept)),
        "coverage_fraction": float(covered.mean()),
        "mean_weight": float(weights[covered].mean()) if covered.any() else 0.0,
        "max_weight": float(weights.max()),
        "drizzle_scale": float(config.drizzle_scale),
    }
    result.timestamp = get_timestamp_iso()
    result.elapsed_s = time.time() - start_time

    if write_outputs:
        output = Path(config.output) if config.output else assemble_output_filename(
            source.path,
            target=config.target,
            drizzle_scale=config.drizzle_scale,
            freetext=config.freetext,
        )
        write_image(
            output, image,
            decorrelated=config.decorrelated_colors,
            header=_fits_header(result, config),
        )
        result.outputs["image"] = str(output)
        reports = write_all_reports(result, output.parent, output.stem)
        result.outputs.update({k: str(v) for k, v in reports.items()})

    logger.info(
        "Stacked %d/%d frames (reference %d) in %.1fs",
        len(result.kept), n_total, ref_index, result.elapsed_s,
    )
    return result


def _tally(rejected: list[RejectedFrame]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for r in rejected:
        counts[r.reason.value] = counts.get(r.reason.value, 0) + 1
    return counts
