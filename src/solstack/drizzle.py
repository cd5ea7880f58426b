"""
Drizzle integration of resampled frames onto an (optionally upsampled) canvas.

Each input pixel is shrunk to a "drop" and dropped onto the output
grid. Every output pixel the drop overlaps receives

    value  += pixel * overlap * weight
    weight += overlap * weight

and the final image is value / weight, computed only where weight > 0.
Pixels with no contribution stay at 0.

Validity is explicit: a pixel is deposited when it is finite and lies
in the mask passed with the frame (resampling footprint, object mask).
A value of 0 is data like any other. The sky around the disk, masked
out by the caller, keeps zero weight instead of diluting the edge.

Concurrency: contributions of a frame are computed without any lock;
only the accumulation into the shared buffers is serialized. Sums are
float64, so the result is independent of the frame order up to
rounding.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
import threading

import numpy as np

from .config import DropKernel

logger = logging.getLogger(__name__)


class DrizzleIntegrator:
    """
    Accumulation buffer for drizzle stacking.

    Parameters
    ----------
    shape : tuple[int, int]
        (H, W) of the resampled input frames.
    scale : float, default 1.0
        Output upsample factor; the canvas is round(H*scale) x round(W*scale).
    pixfrac : float, default 1.0
        Drop side as a fraction of the input pixel, in (0, 1].
    kernel : DropKernel, default SQUARE
        SQUARE: exact area overlap of a square drop.
        POINT: bilinear splat of the drop center onto 4 output pixels.
    channels : int, optional
        Number of color channels (None for mono frames).

    Example
    -------
    >>> driz = DrizzleIntegrator((100, 100), scale=2.0, pixfrac=0.7)
    >>> for frame, footprint in resampled:
    ...     driz.deposit(frame, footprint)
    >>> image, weights = driz.finalize()
    """

    def __init__(
        self,
        shape: tuple[int, int],
        scale: float = 1.0,
        pixfrac: float = 1.0,
        kernel: DropKernel | str = DropKernel.SQUARE,
        channels: int | None = None,
    ):
        if scale <= 0:
            raise ValueError(f"scale must be positive, got {scale}")
        if not 0.0 < pixfrac <= 1.0:
            raise ValueError(f"pixfrac must be in (0, 1], got {pixfrac}")

        self.input_shape = (int(shape[0]), int(shape[1]))
        self.scale = float(scale)
        self.pixfrac = float(pixfrac)
        self.kernel = DropKernel.parse(kernel)
        self.channels = channels
        self.output_shape = (
            max(1, int(round(self.input_shape[0] * self.scale))),
            max(1, int(round(self.input_shape[1] * self.scale))),
        )

        oh, ow = self.output_shape
        value_shape = (oh, ow) if channels is None else (oh, ow, channels)
        self._value = np.zeros(value_shape, dtype=np.float64)
        self._weight = np.zeros((oh, ow), dtype=np.float64)
        self._lock = threading.Lock()
        self._finalized = False
        self.frames_added = 0

        logger.debug(
            "Drizzle canvas %dx%d (scale=%.2f, pixfrac=%.2f, kernel=%s)",
            ow, oh, self.scale, self.pixfrac, self.kernel.value,
        )

    # --- contributions (lock-free) ---

    def _drop_centers(self, xs: np.ndarray, ys: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Input pixel centers in output pixel coordinates."""
        s = self.scale
        return (xs + 0.5) * s - 0.5, (ys + 0.5) * s - 0.5

    def _square_overlaps(self, cx: np.ndarray, cy: np.ndarray):
        """Yield (row, col, area, source) for square drops."""
        half = 0.5 * self.pixfrac * self.scale
        n_span = int(math.ceil(2 * half)) + 1
        oh, ow = self.output_shape

        x_lo, x_hi = cx - half, cx + half
        y_lo, y_hi = cy - half, cy + half
        col0 = np.floor(x_lo + 0.5).astype(np.int64)
        row0 = np.floor(y_lo + 0.5).astype(np.int64)
        source = np.arange(cx.size)

        x_spans = []
        for a in range(n_span):
            col = col0 + a
            ox = np.minimum(x_hi, col + 0.5) - np.maximum(x_lo, col - 0.5)
            x_spans.append((col, ox))

        for b in range(n_span):
            row = row0 + b
            oy = np.minimum(y_hi, row + 0.5) - np.maximum(y_lo, row - 0.5)
            row_ok = (oy > 0) & (row >= 0) & (row < oh)
            if not row_ok.any():
                continue
            for col, ox in x_spans:
                keep = row_ok & (ox > 0) & (col >= 0) & (col < ow)
                if keep.any():
                    yield row[keep], col[keep], (ox * oy)[keep], source[keep]

    def _point_overlaps(self, cx: np.ndarray, cy: np.ndarray):
        """Yield (row, col, weight, source) for bilinear point drops."""
        oh, ow = self.output_shape
        col0 = np.floor(cx).astype(np.int64)
        row0 = np.floor(cy).astype(np.int64)
        fx = cx - col0
        fy = cy - row0
        source = np.arange(cx.size)

        for dy, wy in ((0, 1.0 - fy), (1, fy)):
            for dx, wx in ((0, 1.0 - fx), (1, fx)):
                row = row0 + dy
                col = col0 + dx
                w = wx * wy
                keep = (w > 0) & (row >= 0) & (row < oh) & (col >= 0) & (col < ow)
                if keep.any():
                    yield row[keep], col[keep], w[keep], source[keep]

    def _contributions(
        self,
        data: np.ndarray,
        footprint: np.ndarray | None,
        weight: float,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, int]:
        """Flat output indices, deposited weights, deposited values and source count."""
        finite = np.isfinite(data)
        valid = np.all(finite, axis=2) if data.ndim == 3 else finite
        if footprint is not None:
            valid &= footprint.astype(bool)

        ys, xs = np.nonzero(valid)
        values = data[ys, xs].astype(np.float64)
        if ys.size == 0:
            empty = np.zeros(0)
            return empty.astype(np.int64), empty, values, 0

        cx, cy = self._drop_centers(xs.astype(np.float64), ys.astype(np.float64))
        if self.kernel is DropKernel.POINT:
            parts = list(self._point_overlaps(cx, cy))
        else:
            parts = list(self._square_overlaps(cx, cy))

        if not parts:
            empty = np.zeros(0)
            return empty.astype(np.int64), empty, values[:0], 0

        ow = self.output_shape[1]
        flat = np.concatenate([r * ow + c for r, c, _, _ in parts])
        wts = np.concatenate([w for _, _, w, _ in parts]) * weight
        src = np.concatenate([s for _, _, _, s in parts])
        return flat, wts, values[src], int(ys.size)

    # --- accumulation (locked) ---

    def deposit(
        self,
        data: np.ndarray,
        footprint: np.ndarray | None = None,
        weight: float = 1.0,
    ) -> int:
        """
        Drizzle one resampled frame into the canvas.

        Parameters
        ----------
        data : np.ndarray
            Resampled frame, (H, W) or (H, W, C) on the input grid.
        footprint : np.ndarray, optional
            Boolean mask of pixels with valid source data. Defaults to
            every finite pixel.
        weight : float, default 1.0
            Frame weight.

        Returns
        -------
        int
            Number of source pixels deposited.

        Raises
        ------
        RuntimeError
            The integrator was already finalized.
        ValueError
            The frame does not match the integrator input shape.
        """
        if data.shape[:2] != self.input_shape:
            raise ValueError(f"Frame shape {data.shape[:2]} != drizzle input {self.input_shape}")
        if (data.ndim == 3) != (self.channels is not None):
            raise ValueError(f"Frame shape {data.shape} does not match channels={self.channels}")

        flat, wts, values, n_src = self._contributions(data, footprint, weight)
        n_out = self._weight.size

        weight_sum = np.bincount(flat, weights=wts, minlength=n_out)
        if values.ndim == 2:
            value_sum = np.stack(
                [np.bincount(flat, weights=wts * values[:, c], minlength=n_out)
                 for c in range(values.shape[1])],
                axis=-1,
            )
        else:
            value_sum = np.bincount(flat, weights=wts * values, minlength=n_out)

        with self._lock:
            if self._finalized:
                raise RuntimeError("Cannot deposit into a finalized drizzle integrator")
            self._weight += weight_sum.reshape(self._weight.shape)
            self._value += value_sum.reshape(self._value.shape)
            self.frames_added += 1

        return n_src

    @property
    def weights(self) -> np.ndarray:
        """Copy of the accumulated weight buffer."""
        with self._lock:
            return self._weight.copy()

    def finalize(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Divide value by weight where weight > 0.

        Returns
        -------
        tuple[np.ndarray, np.ndarray]
            (float32 image, float64 weight buffer). Pixels with zero
            weight are 0.

        Raises
        ------
        RuntimeError
            Called more than once.
        """
        with self._lock:
            if self._finalized:
                raise RuntimeError("Drizzle integrator already finalized")
            self._finalized = True

            covered = self._weight > 0
            image = np.zeros(self._value.shape, dtype=np.float64)
            if self._value.ndim == 3:
                image[covered] = self._value[covered] / self._weight[covered][:, None]
            else:
                image[covered] = self._value[covered] / self._weight[covered]

            logger.info(
                "Drizzle finalized: %d frames, coverage %.1f%%",
                self.frames_added,
                100.0 * covered.mean(),
            )
            return image.astype(np.float32), self._weight.copy()
