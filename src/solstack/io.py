"""
I/O operations for SER video captures and stacked outputs.

Handles:
- SER ("LUCAM-RECORDER") header decoding and validation
- Lazy, restartable, random-access frame reading with UTC timestamps
- SER writing (test fixtures, re-export of calibration sequences)
- FITS and 16-bit TIFF/PNG output

SER layout (all integers little-endian)::

    offset  size  field
    0       14    FileID "LUCAM-RECORDER"
    14      4     LuID
    18      4     ColorID
    22      4     LittleEndian
    26      4     ImageWidth
    30      4     ImageHeight
    34      4     PixelDepthPerPlane
    38      4     FrameCount
    42      40    Observer
    82      40    Instrument
    122     40    Telescope
    162     8     DateTime      (.NET ticks, local)
    170     8     DateTime_UTC  (.NET ticks)
    178     ...   FrameCount frames
    ...     8*N   optional trailer of per-frame UTC ticks

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from pathlib import Path

import imageio.v3 as iio
import numpy as np
from astropy.io import fits

from .errors import FormatError, GeometryMismatch, InputError, TruncatedDataError
from .utils import normalize_unit, to_uint16

logger = logging.getLogger(__name__)

SER_FILE_ID = b"LUCAM-RECORDER"
SER_HEADER_SIZE = 178
_SER_HEADER = struct.Struct("<14s7i40s40s40sqq")

# Origin of .NET ticks (100 ns units)
_DOTNET_EPOCH = datetime(1, 1, 1, tzinfo=timezone.utc)


class ColorId(IntEnum):
    """SER ColorID values supported by the reader."""

    MONO = 0
    BAYER_RGGB = 8
    BAYER_GRBG = 9
    BAYER_GBRG = 10
    BAYER_BGGR = 11
    RGB = 100
    BGR = 101


@dataclass(frozen=True)
class SensorGeometry:
    """Sensor layout shared by every frame of a capture."""

    width: int
    height: int
    bit_depth: int
    color: ColorId = ColorId.MONO
    pixel_pitch: float | None = None  # micrometers, when known

    @property
    def planes(self) -> int:
        return 3 if self.color in (ColorId.RGB, ColorId.BGR) else 1

    @property
    def bytes_per_sample(self) -> int:
        return 1 if self.bit_depth <= 8 else 2

    @property
    def frame_bytes(self) -> int:
        return self.width * self.height * self.planes * self.bytes_per_sample

    @property
    def shape(self) -> tuple[int, ...]:
        if self.planes == 3:
            return (self.height, self.width, 3)
        return (self.height, self.width)

    @property
    def bayer_pattern(self) -> str | None:
        """Bayer pattern name ('RGGB', ...) or None for non-mosaiced sensors."""
        if self.color.name.startswith("BAYER_"):
            return self.color.name.split("_", 1)[1]
        return None

    @property
    def is_mosaic(self) -> bool:
        return self.bayer_pattern is not None

    def require_match(self, other: SensorGeometry, what: str = "frame") -> None:
        """Raise GeometryMismatch unless `other` has the same layout."""
        if (self.width, self.height, self.color) != (other.width, other.height, other.color):
            raise GeometryMismatch(
                f"{what} geometry does not match session geometry",
                {
                    "expected": f"{self.width}x{self.height} {self.color.name}",
                    "got": f"{other.width}x{other.height} {other.color.name}",
                },
            )


@dataclass(frozen=True, eq=False)
class RawFrame:
    """One decoded frame. The pixel buffer is read-only."""

    index: int
    timestamp: datetime | None
    data: np.ndarray
    geometry: SensorGeometry

    def __post_init__(self) -> None:
        if self.data.flags.writeable:
            view = self.data.view()
            view.flags.writeable = False
            object.__setattr__(self, "data", view)

    def as_float(self) -> np.ndarray:
        """Return a writable float32 copy of the pixel data."""
        return self.data.astype(np.float32)


@dataclass(frozen=True)
class SerHeader:
    """Decoded SER file header."""

    geometry: SensorGeometry
    frame_count: int
    lu_id: int = 0
    little_endian: int = 0
    observer: str = ""
    instrument: str = ""
    telescope: str = ""
    date_time: int = 0
    date_time_utc: int = 0


def ticks_to_datetime(ticks: int) -> datetime | None:
    """Convert .NET ticks (100 ns since 0001-01-01 UTC) to an aware datetime."""
    if ticks <= 0:
        return None
    try:
        return _DOTNET_EPOCH + timedelta(microseconds=int(ticks) // 10)
    except OverflowError:
        return None


def datetime_to_ticks(value: datetime) -> int:
    """Convert a datetime (naive = UTC) to .NET ticks."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _DOTNET_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def _decode_text(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("latin-1").strip()


def _sample_dtype(geometry: SensorGeometry) -> np.dtype:
    # 16-bit samples are little-endian whatever the header flag says
    return np.dtype(np.uint8) if geometry.bytes_per_sample == 1 else np.dtype("<u2")


def parse_ser_header(raw: bytes) -> SerHeader:
    """
    Decode the fixed 178-byte SER header.

    Raises
    ------
    FormatError
        Wrong magic, unsupported ColorID or non-positive dimensions.
    """
    if len(raw) < SER_HEADER_SIZE:
        raise FormatError(
            "SER header is shorter than 178 bytes", {"size": len(raw)}
        )

    (
        file_id, lu_id, color_id, little_endian, width, height, depth, frame_count,
        observer, instrument, telescope, date_time, date_time_utc,
    ) = _SER_HEADER.unpack(raw[:SER_HEADER_SIZE])

    if file_id != SER_FILE_ID:
        raise FormatError("Not a SER file (bad FileID)", {"file_id": file_id[:14]})
    try:
        color = ColorId(color_id)
    except ValueError:
        raise FormatError("Unsupported SER ColorID", {"color_id": color_id}) from None
    if width <= 0 or height <= 0:
        raise FormatError("Invalid frame dimensions", {"width": width, "height": height})
    if not 1 <= depth <= 16:
        raise FormatError("Invalid PixelDepthPerPlane", {"depth": depth})
    if frame_count < 0:
        raise FormatError("Negative FrameCount", {"frame_count": frame_count})

    return SerHeader(
        geometry=SensorGeometry(width=width, height=height, bit_depth=depth, color=color),
        frame_count=frame_count,
        lu_id=lu_id,
        little_endian=little_endian,
        observer=_decode_text(observer),
        instrument=_decode_text(instrument),
        telescope=_decode_text(telescope),
        date_time=date_time,
        date_time_utc=date_time_utc,
    )


def read_header(path: str | Path) -> SerHeader:
    """
    Read the SER header without loading frame data.

    Parameters
    ----------
    path : str or Path
        Path to the SER file.

    Returns
    -------
    SerHeader
        Decoded header.
    """
    path = Path(path)
    if not path.is_file():
        raise InputError(f"File not found: {path}")
    with open(path, "rb") as f:
        raw = f.read(SER_HEADER_SIZE)
    return parse_ser_header(raw)


class FrameSource:
    """
    Lazy, restartable, random-access view over a SER capture.

    Parameters
    ----------
    path : str or Path
        SER file.
    expected_geometry : SensorGeometry, optional
        When given, the declared geometry must match it (GeometryMismatch).

    Notes
    -----
    Each frame read opens the file, seeks and closes it again, so a
    source can be shared by worker threads and never holds a handle
    between reads. 16-bit samples are always decoded little-endian; the
    header LittleEndian flag is recorded but not trusted, since capture
    programs disagree on its meaning.
    """

    def __init__(self, path: str | Path, expected_geometry: SensorGeometry | None = None):
        self.path = Path(path)
        self.header = read_header(self.path)
        self.geometry = self.header.geometry

        if expected_geometry is not None:
            expected_geometry.require_match(self.geometry, what=self.path.name)

        n = self.header.frame_count
        data_end = SER_HEADER_SIZE + n * self.geometry.frame_bytes
        file_size = self.path.stat().st_size
        if file_size < data_end:
            raise TruncatedDataError(
                "SER file holds fewer pixel bytes than declared",
                {"file": self.path.name, "expected": data_end, "actual": file_size},
            )

        self._timestamps = self._read_timestamps(data_end, file_size - data_end)
        logger.debug(
            "Opened %s: %d frames, %dx%d, %d-bit %s",
            self.path.name, n, self.geometry.width, self.geometry.height,
            self.geometry.bit_depth, self.geometry.color.name,
        )

    def _read_timestamps(self, offset: int, trailer_size: int) -> list[datetime | None]:
        n = self.header.frame_count
        if n == 0:
            return []

        if trailer_size >= 8 * n:
            with open(self.path, "rb") as f:
                f.seek(offset)
                ticks = np.frombuffer(f.read(8 * n), dtype="<i8")
            return [ticks_to_datetime(int(t)) for t in ticks]

        if trailer_size > 0:
            raise TruncatedDataError(
                "SER timestamp trailer is incomplete",
                {"file": self.path.name, "expected": 8 * n, "actual": trailer_size},
            )

        fallback = ticks_to_datetime(self.header.date_time_utc)
        if fallback is not None:
            logger.warning(
                "%s has no timestamp trailer; using header DateTime_UTC for all frames",
                self.path.name,
            )
        else:
            logger.warning("%s has no timestamps", self.path.name)
        return [fallback] * n

    def __len__(self) -> int:
        return self.header.frame_count

    @property
    def timestamps(self) -> list[datetime | None]:
        """Per-frame UTC capture times (None when unknown)."""
        return list(self._timestamps)

    def read_frame(self, index: int) -> RawFrame:
        """
        Read one frame by index (negative indices count from the end).

        Raises
        ------
        IndexError
            Index outside the sequence.
        TruncatedDataError
            The frame cannot be read in full.
        """
        n = len(self)
        if index < 0:
            index += n
        if not 0 <= index < n:
            raise IndexError(f"Frame index {index} out of range for {n} frames")

        geometry = self.geometry
        offset = SER_HEADER_SIZE + index * geometry.frame_bytes
        with open(self.path, "rb") as f:
            f.seek(offset)
            buf = f.read(geometry.frame_bytes)

        if len(buf) < geometry.frame_bytes:
            raise TruncatedDataError(
                "Frame data is truncated",
                {"frame": index, "expected": geometry.frame_bytes, "actual": len(buf)},
            )

        samples = np.frombuffer(buf, dtype=_sample_dtype(geometry))
        try:
            data = samples.reshape(geometry.shape)
        except ValueError:
            raise GeometryMismatch(
                "Frame buffer does not decode to the declared geometry",
                {"frame": index, "samples": samples.size, "shape": geometry.shape},
            ) from None

        if geometry.color is ColorId.BGR:
            data = data[:, :, ::-1]

        return RawFrame(
            index=index,
            timestamp=self._timestamps[index],
            data=data,
            geometry=geometry,
        )

    def frame_stack(self) -> np.ndarray:
        """
        Read-only memory map of the pixel data, frame axis first.

        Shape is (N, H, W) or (N, H, W, 3) in RGB order. Pages are read
        on access, so a row band of every frame can be combined without
        loading the capture; the map holds its own handle until it is
        released.
        """
        geometry = self.geometry
        dtype = _sample_dtype(geometry)
        shape = (len(self),) + tuple(geometry.shape)
        if len(self) == 0:
            return np.zeros(shape, dtype=dtype)

        stack = np.memmap(self.path, dtype=dtype, mode="r", offset=SER_HEADER_SIZE, shape=shape)
        if geometry.color is ColorId.BGR:
            stack = stack[..., ::-1]
        return stack

    def __getitem__(self, index: int) -> RawFrame:
        return self.read_frame(index)

    def __iter__(self) -> Iterator[RawFrame]:
        for i in range(len(self)):
            yield self.read_frame(i)

    def __repr__(self) -> str:
        return f"FrameSource({str(self.path)!r}, frames={len(self)})"


def write_ser(
    path: str | Path,
    frames: Sequence[np.ndarray],
    color: ColorId = ColorId.MONO,
    bit_depth: int | None = None,
    timestamps: Iterable[datetime] | None = None,
    observer: str = "",
    instrument: str = "",
    telescope: str = "",
) -> Path:
    """
    Write frames to a SER file.

    Parameters
    ----------
    path : str or Path
        Output path.
    frames : sequence of np.ndarray
        Frames of identical shape, (H, W) or (H, W, 3) in RGB order.
    color : ColorId, default MONO
        ColorID stored in the header.
    bit_depth : int, optional
        PixelDepthPerPlane. Default: 8 for uint8 frames, 16 otherwise.
    timestamps : iterable of datetime, optional
        Per-frame UTC capture times written to the trailer. The trailer
        is omitted when None.
    observer, instrument, telescope : str
        Free-text header fields (truncated to 40 bytes).

    Returns
    -------
    Path
        The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frames = [np.asarray(f) for f in frames]
    if not frames:
        raise ValueError("Cannot write a SER file without frames")

    shape = frames[0].shape
    if bit_depth is None:
        bit_depth = 8 if frames[0].dtype == np.uint8 else 16
    dtype = np.uint8 if bit_depth <= 8 else np.dtype("<u2")

    ticks = [datetime_to_ticks(t) for t in timestamps] if timestamps is not None else None
    if ticks is not None and len(ticks) != len(frames):
        raise ValueError(f"Got {len(ticks)} timestamps for {len(frames)} frames")

    header = _SER_HEADER.pack(
        SER_FILE_ID,
        0,
        int(color),
        0,
        shape[1],
        shape[0],
        bit_depth,
        len(frames),
        observer.encode("latin-1")[:40],
        instrument.encode("latin-1")[:40],
        telescope.encode("latin-1")[:40],
        ticks[0] if ticks else 0,
        ticks[0] if ticks else 0,
    )

    with open(path, "wb") as f:
        f.write(header)
        for frame in frames:
            if frame.shape != shape:
                raise ValueError(f"Frame shape {frame.shape} differs from {shape}")
            if color is ColorId.BGR:
                frame = frame[:, :, ::-1]
            f.write(np.ascontiguousarray(frame, dtype=dtype).tobytes())
        if ticks is not None:
            f.write(np.asarray(ticks, dtype="<i8").tobytes())

    logger.debug("Wrote SER: %s (%d frames)", path, len(frames))
    return path


def write_fits(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    overwrite: bool = False,
) -> None:
    """
    Write a FITS file with proper header.

    Parameters
    ----------
    path : str or Path
        Output path.
    data : np.ndarray
        Image data to write. Color images (H, W, 3) are stored as a
        (3, H, W) cube.
    header : fits.Header, optional
        Header to include. A minimal header is created if not provided.
    overwrite : bool, default False
        Whether to overwrite existing file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if header is None:
        header = fits.Header()

    if data.ndim == 3:
        data = np.moveaxis(data, -1, 0)

    hdu = fits.PrimaryHDU(data=data, header=header)
    hdu.writeto(path, overwrite=overwrite)
    logger.info("Wrote FITS: %s", path)


def write_image(
    path: str | Path,
    data: np.ndarray,
    decorrelated: bool = False,
    header: fits.Header | None = None,
) -> Path:
    """
    Write a stacked image, choosing the format from the suffix.

    ``.fits``/``.fit`` keep linear float32 values; any other suffix
    (``.tif``, ``.png``) receives a min/max normalized 16-bit image.

    Parameters
    ----------
    path : str or Path
        Output path.
    data : np.ndarray
        Linear image, (H, W) or (H, W, 3).
    decorrelated : bool, default False
        Normalize color channels independently (16-bit outputs only).
    header : fits.Header, optional
        FITS header (FITS outputs only).

    Returns
    -------
    Path
        The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() in (".fits", ".fit"):
        write_fits(path, data.astype(np.float32), header=header, overwrite=True)
        return path

    img16 = to_uint16(normalize_unit(data, decorrelated=decorrelated))
    iio.imwrite(path, img16)
    logger.info("Wrote image: %s", path)
    return path
