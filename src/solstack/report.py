"""
Provenance reports for solstack runs.

Produces, next to the stacked image:
- <stem>_provenance.json: machine-readable complete record
- <stem>_report.md: human-readable Markdown report

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
import math
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np

from .config import RejectedFrame, StackConfig, StackResult
from .utils import format_duration, get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)


def _to_native(obj: Any) -> Any:
    """Convert numpy, enum and path types to JSON-compatible values."""
    if isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {str(_to_native(k)): _to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def _serialize_config(config: StackConfig) -> dict[str, Any]:
    """Serialize StackConfig to JSON-compatible dict."""
    return {
        "light": config.light,
        "dark": config.dark,
        "flat": config.flat,
        "dark_flat": config.dark_flat,
        "bias": config.bias,
        "hot_pixel_map": config.hot_pixel_map,
        "master_sigma": config.master_sigma,
        "master_maxiters": config.master_maxiters,
        "min_flat_response": config.min_flat_response,
        "hot_pixel_sigma": config.hot_pixel_sigma,
        "min_quality": config.min_quality,
        "top_percentage": config.top_percentage,
        "max_frames": config.max_frames,
        "analysis_window": config.analysis_window,
        "object_threshold": config.object_threshold,
        "min_disk_fraction": config.min_disk_fraction,
        "reference": config.reference,
        "mount": config.mount,
        "latitude": config.latitude,
        "longitude": config.longitude,
        "target": config.target,
        "initial_rotation_deg": config.initial_rotation,
        "drizzle_scale": config.drizzle_scale,
        "drop_kernel": config.drop_kernel,
        "pixfrac": config.pixfrac,
        "limb_stage": config.limb_stage,
        "limb_coefficient": config.limb_coefficient,
        "limb_radius": config.limb_radius,
        "debayer": config.debayer,
        "decorrelated_colors": config.decorrelated_colors,
        "crop": [config.crop_width, config.crop_height, config.horiz_offset, config.vert_offset],
        "workers": config.workers,
    }


def _serialize_rejected(rejected: list[RejectedFrame]) -> list[dict[str, Any]]:
    """Serialize rejected frames list."""
    return [
        {
            "index": r.index,
            "reason": r.reason.value,
            "detail": r.detail,
        }
        for r in sorted(rejected, key=lambda r: r.index)
    ]


def build_provenance(result: StackResult) -> dict[str, Any]:
    """Complete JSON-compatible record of a run."""
    provenance = {
        "solstack_version": result.version or get_version(),
        "timestamp": result.timestamp or get_timestamp_iso(),
        "platform": result.platform or get_platform_info(),
        "source": result.source,
        "config": _serialize_config(result.config) if result.config else {},
        "frames": {
            "total": result.total_frames,
            "used": len(result.kept),
            "rejected": len(result.rejected),
        },
        "rejection_reasons": result.rejection_tally(),
        "quality_threshold": result.quality_threshold,
        "elapsed_s": round(result.elapsed_s, 3),
        "reference_frame": result.reference_frame,
        "reference_centroid": result.reference_centroid,
        "object_threshold": result.object_threshold,
        "kept": sorted(result.kept),
        "rejected": _serialize_rejected(result.rejected),
        "rotation_angles_deg": {
            i: math.degrees(a) for i, a in sorted(result.rotation_angles.items())
        },
        "outputs": result.outputs,
        "statistics": result.stats,
        "warnings": result.warnings,
        "scores": [
            {
                "index": s.index,
                "sharpness": s.sharpness,
                "noise": s.noise,
                "illuminated_fraction": s.illuminated_fraction,
                "composite": s.composite,
            }
            for s in result.scores
        ],
    }
    return _to_native(provenance)


def write_provenance(result: StackResult, output_dir: Path, stem: str) -> Path:
    """
    Write the complete run record as JSON.

    Parameters
    ----------
    result : StackResult
        Complete stacking result.
    output_dir : Path
        Output directory.
    stem : str
        Output image stem; the file is ``<stem>_provenance.json``.

    Returns
    -------
    Path
        Path to written provenance file.
    """
    path = output_dir / f"{stem}_provenance.json"
    with open(path, "w") as f:
        json.dump(build_provenance(result), f, indent=2)

    logger.info("Wrote provenance: %s", path)
    return path


def write_report_markdown(result: StackResult, output_dir: Path, stem: str) -> Path:
    """
    Write human-readable Markdown report.

    Parameters
    ----------
    result : StackResult
        Stacking result.
    output_dir : Path
        Output directory.
    stem : str
        Output image stem; the file is ``<stem>_report.md``.

    Returns
    -------
    Path
        Path to written report file.
    """
    threshold = (
        f"{result.quality_threshold:.4g}" if result.quality_threshold is not None else "N/A"
    )
    reference = result.reference_frame if result.reference_frame is not None else "N/A"
    lines = [
        f"# Stacking Report: {Path(result.source).name}",
        "",
        f"**Generated:** {result.timestamp or get_timestamp_iso()}",
        f"**solstack version:** {result.version or get_version()}",
        f"**Platform:** {result.platform or get_platform_info()}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Frames total | {result.total_frames} |",
        f"| Frames used | {len(result.kept)} |",
        f"| Frames rejected | {len(result.rejected)} |",
        f"| Quality threshold | {threshold} |",
        f"| Reference frame | {reference} |",
        f"| Elapsed | {format_duration(result.elapsed_s)} |",
        "",
    ]

    # Configuration
    if result.config:
        cfg = result.config
        lines.extend([
            "## Configuration",
            "",
            "| Parameter | Value |",
            "|-----------|-------|",
            f"| mount | {cfg.mount.value} |",
            f"| target | {cfg.target.value if cfg.target else 'none'} |",
            f"| latitude / longitude | {cfg.latitude} / {cfg.longitude} |",
            f"| top_percentage | {cfg.top_percentage} |",
            f"| min_quality | {cfg.min_quality} |",
            f"| drizzle | {cfg.drizzle_scale:g}x, {cfg.drop_kernel.value}, pixfrac {cfg.pixfrac} |",
            f"| limb | {cfg.limb_stage.value} |",
            f"| reference | {cfg.reference} |",
            "",
        ])

    # Rejection breakdown
    rejection_counts = result.rejection_tally()
    if rejection_counts:
        lines.extend([
            "## Rejection Breakdown",
            "",
            "| Reason | Count |",
            "|--------|-------|",
        ])
        for reason, count in sorted(rejection_counts.items()):
            lines.append(f"| {reason} | {count} |")
        lines.append("")

    # Rotation
    if result.rotation_angles:
        angles = [math.degrees(a) for a in result.rotation_angles.values()]
        lines.extend([
            "## Field Rotation",
            "",
            f"- Frames derotated: {len(angles)}",
            f"- Angle range: {min(angles):.3f} deg to {max(angles):.3f} deg",
            "",
        ])

    # Statistics
    if result.stats:
        lines.extend([
            "## Statistics",
            "",
            "| Metric | Value |",
            "|--------|-------|",
        ])
        for key, value in result.stats.items():
            if isinstance(value, float):
                lines.append(f"| {key} | {value:.4f} |")
            else:
                lines.append(f"| {key} | {value} |")
        lines.append("")

    if result.warnings:
        lines.extend(["## Warnings", ""])
        lines.extend(f"- {w}" for w in result.warnings)
        lines.append("")

    # Outputs
    if result.outputs:
        lines.extend([
            "## Outputs",
            "",
        ])
        for name, path in result.outputs.items():
            lines.append(f"- **{name}:** `{path}`")
        lines.append("")

    # Best frames
    if result.scores:
        lines.extend([
            "## Quality Scores (Top 5)",
            "",
            "| Rank | Frame | Score |",
            "|------|-------|-------|",
        ])
        for i, score in enumerate(result.scores[:5], 1):
            lines.append(f"| {i} | {score.index} | {score.composite:.4g} |")
        lines.append("")

    path = output_dir / f"{stem}_report.md"
    with open(path, "w") as f:
        f.write("\n".join(lines))

    logger.info("Wrote Markdown report: %s", path)
    return path


def write_all_reports(result: StackResult, output_dir: Path, stem: str) -> dict[str, Path]:
    """
    Write all report files.

    Returns
    -------
    dict[str, Path]
        Map of report type to path.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    return {
        "provenance": write_provenance(result, output_dir, stem),
        "report": write_report_markdown(result, output_dir, stem),
    }
