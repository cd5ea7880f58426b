"""
Exception taxonomy for the solstack pipeline.

Four families, each with a different propagation rule:

- InputError: malformed or inconsistent inputs. Fatal, raised before
  any frame is processed.
- ConfigurationError: invalid or incomplete run configuration. Fatal,
  raised before any frame work.
- FrameError: a single frame cannot be used. Collected by the pipeline
  into the provenance record, never propagated out of a run.
- ExhaustionError: no frame survived a filtering stage. Fatal, carries
  the rejection tally.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

from typing import Any


class SolstackError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.details:
            return self.message
        extra = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({extra})"


# --- Input errors ---


class InputError(SolstackError):
    """Malformed or inconsistent input data."""


class FormatError(InputError):
    """Container or side-file cannot be decoded."""


class GeometryMismatch(InputError):
    """Frame, master or map geometry disagrees with the session geometry."""


class TruncatedDataError(InputError):
    """Fewer bytes are present than the container header declares."""


class EmptyCalibrationSet(InputError):
    """A master calibration frame was requested from zero frames."""


class MissingLightFrames(InputError):
    """The light sequence is missing or holds no frames."""


# --- Configuration errors ---


class ConfigurationError(SolstackError):
    """Run configuration is invalid or incomplete."""


# --- Per-frame recoverable errors ---


class FrameError(SolstackError):
    """A single frame could not be processed; the run continues without it."""

    def __init__(self, message: str, index: int | None = None, details: dict[str, Any] | None = None):
        self.index = index
        details = dict(details or {})
        if index is not None:
            details.setdefault("frame", index)
        super().__init__(message, details)


class CentroidNotFound(FrameError):
    """Too few illuminated pixels to locate the object."""


class LimbModelFitFailed(FrameError):
    """Radial limb-darkening model could not be fitted."""


# --- Global exhaustion ---


class ExhaustionError(SolstackError):
    """No frames survived a pipeline stage."""

    def __init__(self, message: str, total: int, tally: dict[str, int] | None = None):
        self.total = total
        self.tally = dict(tally or {})
        super().__init__(message, {"total": total, **self.tally})


class NoFramesSurviveQuality(ExhaustionError):
    """Quality filtering rejected every frame."""


class NoFramesSurviveAlignment(ExhaustionError):
    """Centroid detection or limb fitting rejected every frame."""


# --- Cancellation ---


class RunCancelled(SolstackError):
    """The run was stopped through its cancel token."""
