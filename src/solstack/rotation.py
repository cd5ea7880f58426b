"""
Field rotation of alt-az captures.

An alt-az mount keeps the camera aligned with the local vertical, so
the image of the Sun or the Moon turns by the parallactic angle

    q = atan2(sin H, tan(phi) cos(dec) - sin(dec) cos(H))

where H is the local hour angle of the target, dec its declination and
phi the observer latitude. On an equatorial mount the field does not
rotate and the angle is the constant initial rotation.

Positions use low-precision series from Meeus, "Astronomical
Algorithms" (Sun better than 0.01 deg, Moon about 0.3 deg, geocentric),
which is well below what the derotation of a solar or lunar disk can
resolve. Everything is plain float math: the angle of a frame is a pure
function of its timestamp and the configuration, reproducible bit for
bit and independent of pixel data.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np

from .config import MountKind, StackConfig, Target
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

J2000 = 2451545.0


@dataclass(frozen=True)
class ObserverLocation:
    """Observer's location on Earth."""

    latitude: float  # Degrees North (positive) / South (negative)
    longitude: float  # Degrees East (positive) / West (negative)
    elevation: float = 0.0  # Meters above sea level

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ConfigurationError(f"latitude must be in [-90, 90], got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ConfigurationError(f"longitude must be in [-180, 180], got {self.longitude}")


@dataclass(frozen=True)
class EquatorialPosition:
    """Apparent geocentric position, degrees."""

    ra: float  # Right ascension (0-360)
    dec: float  # Declination (-90 to +90)


def julian_date(dt: datetime) -> float:
    """
    Julian Date of a datetime (naive datetimes are taken as UTC).

    Microseconds are kept: frames of a solar video are a few
    milliseconds apart.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    year = dt.year
    month = dt.month
    day = dt.day + (
        dt.hour * 3600 + dt.minute * 60 + dt.second + dt.microsecond * 1e-6
    ) / 86400.0

    if month <= 2:
        year -= 1
        month += 12

    a = year // 100
    b = 2 - a + a // 4

    return int(365.25 * (year + 4716)) + int(30.6001 * (month + 1)) + day + b - 1524.5


def greenwich_sidereal_time(jd: float) -> float:
    """Greenwich mean sidereal time in degrees (0-360)."""
    t = (jd - J2000) / 36525.0
    gmst = 280.46061837 + 360.98564736629 * (jd - J2000) + \
        0.000387933 * t**2 - t**3 / 38710000.0
    return gmst % 360.0


def local_sidereal_time(jd: float, longitude: float) -> float:
    """Local mean sidereal time in degrees (0-360), east longitude positive."""
    return (greenwich_sidereal_time(jd) + longitude) % 360.0


def _obliquity(t: float) -> float:
    """Mean obliquity of the ecliptic (degrees), T in Julian centuries."""
    return 23.439291 - 0.0130042 * t


def _ecliptic_to_equatorial(lon: float, lat: float, eps: float) -> EquatorialPosition:
    lam, beta, e = math.radians(lon), math.radians(lat), math.radians(eps)
    ra = math.atan2(math.sin(lam) * math.cos(e) - math.tan(beta) * math.sin(e), math.cos(lam))
    dec = math.asin(
        math.sin(beta) * math.cos(e) + math.cos(beta) * math.sin(e) * math.sin(lam)
    )
    return EquatorialPosition(ra=math.degrees(ra) % 360.0, dec=math.degrees(dec))


def sun_position(jd: float) -> EquatorialPosition:
    """Apparent right ascension and declination of the Sun."""
    t = (jd - J2000) / 36525.0

    l0 = 280.46646 + 36000.76983 * t + 0.0003032 * t**2
    m = math.radians(357.52911 + 35999.05029 * t - 0.0001537 * t**2)
    center = (
        (1.914602 - 0.004817 * t - 0.000014 * t**2) * math.sin(m)
        + (0.019993 - 0.000101 * t) * math.sin(2 * m)
        + 0.000289 * math.sin(3 * m)
    )
    omega = math.radians(125.04 - 1934.136 * t)
    apparent_lon = l0 + center - 0.00569 - 0.00478 * math.sin(omega)
    eps = _obliquity(t) + 0.00256 * math.cos(omega)

    return _ecliptic_to_equatorial(apparent_lon, 0.0, eps)


def moon_position(jd: float) -> EquatorialPosition:
    """Geocentric right ascension and declination of the Moon (main terms)."""
    d = jd - J2000
    t = d / 36525.0

    mean_lon = 218.316 + 13.176396 * d
    m = math.radians(134.963 + 13.064993 * d)  # Moon mean anomaly
    f = math.radians(93.272 + 13.229350 * d)  # Argument of latitude
    elong = math.radians(297.850 + 12.190749 * d)  # Mean elongation

    lon = (
        mean_lon
        + 6.289 * math.sin(m)
        - 1.274 * math.sin(2 * elong - m)
        + 0.658 * math.sin(2 * elong)
        - 0.214 * math.sin(2 * m)
    )
    lat = 5.128 * math.sin(f)

    return _ecliptic_to_equatorial(lon % 360.0, lat, _obliquity(t))


_EPHEMERIS = {
    Target.SUN: sun_position,
    Target.MOON: moon_position,
}


def target_position(target: Target | str, jd: float) -> EquatorialPosition:
    """Ephemeris lookup for a supported target."""
    target = Target.parse(target)
    return _EPHEMERIS[target](jd)


def parallactic_angle(hour_angle: float, declination: float, latitude: float) -> float:
    """
    Parallactic angle (radians) from hour angle, declination and latitude (radians).

    Zero on the meridian, negative east of it, positive west of it (for
    targets transiting between the pole and the horizon).
    """
    return math.atan2(
        math.sin(hour_angle),
        math.tan(latitude) * math.cos(declination) - math.sin(declination) * math.cos(hour_angle),
    )


def rotation_angle(
    timestamp: datetime | None,
    location: ObserverLocation,
    target: Target | str | None,
    mount: MountKind | str,
    initial_rotation: float = 0.0,
) -> float:
    """
    Field rotation angle of a frame, in radians.

    Parameters
    ----------
    timestamp : datetime
        UTC capture time of the frame.
    location : ObserverLocation
        Observer position.
    target : Target or str
        Ephemeris target ('sun' or 'moon'); required for alt-az mounts.
    mount : MountKind or str
        'altaz' or 'equatorial'.
    initial_rotation : float, default 0.0
        Constant offset (radians) added to every frame.

    Returns
    -------
    float
        Rotation angle in radians.

    Raises
    ------
    ConfigurationError
        Unknown mount or target, or an alt-az mount without a target or
        timestamp.
    """
    mount = MountKind.parse(mount)
    if mount is MountKind.EQUATORIAL:
        return float(initial_rotation)

    if target is None:
        raise ConfigurationError("Alt-az derotation requires a target ephemeris")
    if timestamp is None:
        raise ConfigurationError("Alt-az derotation requires frame timestamps")

    jd = julian_date(timestamp)
    pos = target_position(target, jd)
    hour_angle = math.radians(local_sidereal_time(jd, location.longitude) - pos.ra)
    q = parallactic_angle(hour_angle, math.radians(pos.dec), math.radians(location.latitude))
    return q + float(initial_rotation)


class RotationModel:
    """
    Validated rotation settings of a run.

    Built before any frame is processed so that configuration problems
    surface immediately.

    Parameters
    ----------
    mount : MountKind or str
        Mount geometry.
    location : ObserverLocation
        Observer position.
    target : Target or str, optional
        Ephemeris target, required for alt-az mounts.
    initial_rotation_deg : float, default 0.0
        Constant rotation offset in degrees.
    """

    def __init__(
        self,
        mount: MountKind | str,
        location: ObserverLocation,
        target: Target | str | None = None,
        initial_rotation_deg: float = 0.0,
    ):
        self.mount = MountKind.parse(mount)
        self.location = location
        self.target = Target.parse(target) if target is not None else None
        self.initial_rotation = math.radians(initial_rotation_deg)

        if self.mount is MountKind.ALTAZ and self.target is None:
            raise ConfigurationError("Alt-az derotation requires a target ephemeris")

    @classmethod
    def from_config(cls, config: StackConfig) -> RotationModel:
        """Build the model from a run configuration."""
        return cls(
            mount=config.mount,
            location=ObserverLocation(config.latitude, config.longitude),
            target=config.target,
            initial_rotation_deg=config.initial_rotation,
        )

    @property
    def derotates(self) -> bool:
        """True when the angle depends on time."""
        return self.mount is MountKind.ALTAZ

    def require_timestamps(self, timestamps: Sequence[datetime | None]) -> None:
        """Fail fast when an alt-az run lacks capture times."""
        if not self.derotates:
            return
        missing = sum(1 for t in timestamps if t is None)
        if missing:
            raise ConfigurationError(
                "Alt-az derotation requires frame timestamps",
                {"frames_without_timestamp": missing},
            )

    def angle(self, timestamp: datetime | None) -> float:
        """Rotation angle of one frame (radians)."""
        return rotation_angle(
            timestamp, self.location, self.target, self.mount, self.initial_rotation
        )

    def angles(self, timestamps: Sequence[datetime | None]) -> np.ndarray:
        """Rotation angles of many frames (radians)."""
        return np.array([self.angle(t) for t in timestamps], dtype=np.float64)

    def __repr__(self) -> str:
        target = self.target.value if self.target is not None else None
        return (
            f"RotationModel(mount={self.mount.value}, target={target}, "
            f"lat={self.location.latitude}, lon={self.location.longitude})"
        )
