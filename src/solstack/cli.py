"""
Command-line interface for the solstack pipeline.

Usage:
    solstack stack <light.ser> [options]
    solstack analyze <light.ser> [options]
    solstack thresh-test <light.ser> [--threshold ADU] [--out mask.png]
    solstack inspect <file.ser>
    python -m solstack ...

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import imageio.v3 as iio

from .align import find_centroid, threshold_preview
from .cli_output import (
    create_progress_bar,
    print_banner,
    print_error,
    print_header,
    print_info,
    print_metric,
    print_outputs,
    print_path,
    print_rejections,
    print_success,
    print_warning,
    setup_terminal,
)
from .config import DRIZZLE_SCALES, FrameScore, StackConfig
from .debayer import debayer
from .errors import CentroidNotFound, RunCancelled, SolstackError
from .io import FrameSource, read_header, ticks_to_datetime
from .pipeline import CancelToken, run_stack
from .quality import QualitySeries, score_frame
from .utils import format_duration, get_version

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def config_from_args(args: argparse.Namespace) -> StackConfig:
    """Build a StackConfig from parsed `stack` arguments."""
    return StackConfig(
        light=args.light,
        dark=args.dark,
        flat=args.flat,
        dark_flat=args.dark_flat,
        bias=args.bias,
        hot_pixel_map=args.hot_pixels,
        output=args.out,
        master_sigma=args.sigma,
        hot_pixel_sigma=args.hot_sigma,
        min_quality=args.min_quality,
        top_percentage=args.top,
        max_frames=args.max_frames,
        analysis_window=args.window,
        object_threshold=args.threshold,
        reference=args.reference,
        mount=args.mount,
        latitude=args.lat,
        longitude=args.lon,
        target=args.target,
        initial_rotation=args.rotation,
        drizzle_scale=args.drizzle,
        drop_kernel=args.kernel,
        pixfrac=args.pixfrac,
        limb_stage=args.limb,
        limb_coefficient=args.limb_coefficient,
        limb_radius=args.limb_radius,
        debayer=not args.no_debayer,
        decorrelated_colors=args.decorrelated,
        crop_width=args.crop_width,
        crop_height=args.crop_height,
        horiz_offset=args.offset_x,
        vert_offset=args.offset_y,
        freetext=args.freetext,
        workers=args.workers,
    )


def cmd_stack(args: argparse.Namespace) -> int:
    """Run the stacking pipeline."""
    config = config_from_args(args)
    if not args.quiet:
        print_banner(get_version())
        print_header(f"Light frames: {Path(args.light).name}")
        print_metric("Mount", config.mount.value)
        print_metric("Target", config.target.value if config.target else "none")
        print_metric("Drizzle", f"{config.drizzle_scale:g}x ({config.drop_kernel.value})")

    result = run_stack(config, cancel=CancelToken(), show_progress=not args.quiet)

    if not args.quiet:
        print_success(f"Stacked {len(result.kept)}/{result.total_frames} frames "
                      f"in {format_duration(result.elapsed_s)}")
        print_metric("Reference frame", result.reference_frame)
        print_metric("Quality threshold", f"{result.quality_threshold:.4g}")
        print_rejections(result.rejection_tally(), result.total_frames)
        for warning in result.warnings:
            print_warning(warning)
        print_outputs(result.outputs)
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    """Score every frame and summarize the quality series."""
    source = FrameSource(args.light)
    geometry = source.geometry
    scores: list[FrameScore] = []
    n_failed = 0

    with create_progress_bar(len(source), "Scoring", disable=args.quiet) as pbar:
        for frame in source:
            image = frame.as_float()
            if geometry.is_mosaic:
                image = debayer(image, geometry.bayer_pattern)
            try:
                centroid = find_centroid(image, threshold=args.threshold, index=frame.index)
            except CentroidNotFound as e:
                logger.debug("%s", e)
                n_failed += 1
                pbar.update(1)
                continue
            scores.append(score_frame(image, frame.index, centroid, window=args.window,
                                      threshold=centroid.threshold))
            pbar.update(1)

    if not scores:
        print_error("No frame has a detectable object")
        return 1

    series = QualitySeries.from_scores(scores)
    summary = series.summary()
    print_header(f"Quality: {source.path.name}")
    print_metric("Frames scored", len(series))
    print_metric("Centroid not found", n_failed)
    for key in ("min", "max", "mean", "median"):
        print_metric(key.capitalize(), f"{summary[key]:.4g}")
    sma = series.sma(args.sma)
    if sma.size:
        print_metric(f"SMA({args.sma}) range", f"{sma.min():.4g} .. {sma.max():.4g}")
    best = sorted(scores, key=lambda s: (-s.composite, s.index))[:5]
    print_info("Best frames: " + ", ".join(f"{s.index} ({s.composite:.4g})" for s in best))
    return 0


def cmd_thresh_test(args: argparse.Namespace) -> int:
    """Write the object-detection mask of the first frame."""
    source = FrameSource(args.light)
    if len(source) == 0:
        print_error(f"{source.path.name} holds no frames")
        return 1
    image = source[0].as_float()
    if source.geometry.is_mosaic:
        image = debayer(image, source.geometry.bayer_pattern)

    mask, thr = threshold_preview(image, args.threshold)
    out = Path(args.out) if args.out else source.path.with_name(f"{source.path.stem}_threshold.png")
    iio.imwrite(out, mask)

    print_metric("Threshold", f"{thr:.2f}" + (" (Otsu)" if args.threshold is None else ""))
    print_metric("Illuminated pixels", int((mask > 0).sum()))
    print_path("Mask", str(out))
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """Print the SER header."""
    header = read_header(args.file)
    g = header.geometry
    print_header(f"SER: {Path(args.file).name}")
    print_metric("Frames", header.frame_count)
    print_metric("Size", f"{g.width}x{g.height}")
    print_metric("Bit depth", g.bit_depth)
    print_metric("Color", g.color.name)
    print_metric("Little endian flag", header.little_endian)
    for label, value in (
        ("Observer", header.observer),
        ("Instrument", header.instrument),
        ("Telescope", header.telescope),
    ):
        if value:
            print_metric(label, value)
    start = ticks_to_datetime(header.date_time_utc)
    print_metric("Start (UTC)", start.isoformat() if start else "unknown")

    source = FrameSource(args.file)
    stamps = [t for t in source.timestamps if t is not None]
    if len(stamps) > 1:
        span = (max(stamps) - min(stamps)).total_seconds()
        print_metric("Capture span", format_duration(span))
        print_metric("Frame rate", f"{(len(stamps) - 1) / span:.2f}" if span > 0 else "n/a", "fps")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="solstack",
        description="Stacking pipeline for solar and lunar SER video captures",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"solstack {get_version()}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Stack command
    stack_parser = subparsers.add_parser("stack", help="Stack a SER capture")
    stack_parser.add_argument("light", type=str, help="SER file of light frames")
    stack_parser.add_argument("--out", type=str, default=None,
                              help="Output image (.tif/.png/.fits; default: assembled name)")
    stack_parser.add_argument("--freetext", type=str, default="",
                              help="Text appended to the assembled output name")

    calib = stack_parser.add_argument_group("calibration")
    calib.add_argument("--dark", type=str, default=None, help="SER file of dark frames")
    calib.add_argument("--flat", type=str, default=None, help="SER file of flat frames")
    calib.add_argument("--dark-flat", type=str, default=None, help="SER file of dark-flat frames")
    calib.add_argument("--bias", type=str, default=None, help="SER file of bias frames")
    calib.add_argument("--hot-pixels", type=str, default=None, help="Hot-pixel map (TOML or JSON)")
    calib.add_argument("--sigma", type=float, default=3.0,
                       help="Sigma for sigma-clipped masters (default: 3.0)")
    calib.add_argument("--hot-sigma", type=float, default=None,
                       help="Detect hot pixels statistically at this sigma (default: off)")

    select = stack_parser.add_argument_group("frame selection")
    select.add_argument("--top", type=float, default=100.0,
                        help="Keep the best N percent of frames (default: 100)")
    select.add_argument("--min-quality", type=float, default=0.0,
                        help="Minimum composite quality score (default: 0)")
    select.add_argument("--max-frames", type=int, default=5000,
                        help="Maximum number of stacked frames (default: 5000)")
    select.add_argument("--window", type=int, default=128,
                        help="Quality analysis window in pixels (default: 128)")

    align = stack_parser.add_argument_group("alignment and rotation")
    align.add_argument("--threshold", type=float, default=None,
                       help="Object detection threshold in ADU (default: Otsu)")
    align.add_argument("--reference", choices=["best", "first"], default="best",
                       help="Reference frame selection method (default: best)")
    align.add_argument("--mount", choices=["altaz", "equatorial"], default="altaz",
                       help="Mount geometry (default: altaz)")
    align.add_argument("--lat", type=float, default=34.0, help="Observer latitude (deg, N+)")
    align.add_argument("--lon", type=float, default=-118.0, help="Observer longitude (deg, E+)")
    align.add_argument("--target", choices=["sun", "moon"], default="sun",
                       help="Ephemeris target (default: sun)")
    align.add_argument("--rotation", type=float, default=0.0,
                       help="Initial rotation in degrees (default: 0)")

    driz = stack_parser.add_argument_group("drizzle")
    driz.add_argument("--drizzle", type=float, default=1.0,
                      help=f"Output scale, e.g. {', '.join(f'{s:g}' for s in DRIZZLE_SCALES)}")
    driz.add_argument("--kernel", choices=["square", "point"], default="square",
                      help="Drop kernel (default: square)")
    driz.add_argument("--pixfrac", type=float, default=1.0,
                      help="Drop size as a fraction of the input pixel (default: 1.0)")

    limb = stack_parser.add_argument_group("limb darkening")
    limb.add_argument("--limb", choices=["off", "pre-stack", "post-stack"], default="off",
                      help="Limb-darkening correction stage (default: off)")
    limb.add_argument("--limb-coefficient", type=float, default=None,
                      help="Fixed linear limb-darkening coefficient (default: fit)")
    limb.add_argument("--limb-radius", type=float, default=None,
                      help="Disk radius in output pixels (default: estimate)")

    out = stack_parser.add_argument_group("output")
    out.add_argument("--no-debayer", action="store_true", help="Keep Bayer mosaics as mono")
    out.add_argument("--decorrelated", action="store_true",
                     help="Normalize color channels independently")
    out.add_argument("--crop-width", type=int, default=None, help="Crop width (output pixels)")
    out.add_argument("--crop-height", type=int, default=None, help="Crop height (output pixels)")
    out.add_argument("--offset-x", type=int, default=0, help="Horizontal crop offset")
    out.add_argument("--offset-y", type=int, default=0, help="Vertical crop offset")
    out.add_argument("--workers", type=int, default=None,
                     help="Number of worker threads (default: auto = CPU count - 1)")
    out.add_argument("-q", "--quiet", action="store_true",
                     help="Suppress colored output (use logging only)")

    # Analyze command
    analyze_parser = subparsers.add_parser("analyze", help="Summarize frame quality")
    analyze_parser.add_argument("light", type=str, help="SER file of light frames")
    analyze_parser.add_argument("--threshold", type=float, default=None,
                                help="Object detection threshold in ADU (default: Otsu)")
    analyze_parser.add_argument("--window", type=int, default=128,
                                help="Quality analysis window in pixels (default: 128)")
    analyze_parser.add_argument("--sma", type=int, default=10,
                                help="Moving-average window in frames (default: 10)")
    analyze_parser.add_argument("-q", "--quiet", action="store_true", help="No progress bar")

    # Threshold test command
    thresh_parser = subparsers.add_parser("thresh-test",
                                          help="Preview the object-detection threshold")
    thresh_parser.add_argument("light", type=str, help="SER file of light frames")
    thresh_parser.add_argument("--threshold", type=float, default=None,
                               help="Threshold in ADU (default: Otsu)")
    thresh_parser.add_argument("--out", type=str, default=None, help="Mask image path")

    # Inspect command
    inspect_parser = subparsers.add_parser("inspect", help="Print a SER header")
    inspect_parser.add_argument("file", type=str, help="SER file")

    return parser


_COMMANDS = {
    "stack": cmd_stack,
    "analyze": cmd_analyze,
    "thresh-test": cmd_thresh_test,
    "inspect": cmd_inspect,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    setup_terminal()

    try:
        return _COMMANDS[args.command](args)
    except (RunCancelled, KeyboardInterrupt):
        print_warning("Cancelled")
        return 130
    except SolstackError as e:
        print_error(f"{args.command} failed: {e}")
        logger.debug("%s failed", args.command, exc_info=True)
        return 1
