from __future__ import annotations

import math
from datetime import datetime, timezone

# Julian date of the Unix epoch 1970-01-01T00:00:00Z.
UNIX_EPOCH_JD = 2440587.5
J2000_JD = 2451545.0
US_PER_DAY = 86_400_000_000.0
SECONDS_PER_DAY = 86_400.0


def datetime_to_epoch_us(dt: datetime) -> int:
    """Microseconds after 1970-01-01T00:00:00Z; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def epoch_to_jd(epoch_us: int) -> float:
    """Julian date for a Unix epoch time in microseconds (leap seconds ignored)."""
    return UNIX_EPOCH_JD + epoch_us / US_PER_DAY


def epoch_to_gmst(epoch_us: int) -> float:
    """
    Greenwich Mean Sidereal Time [decimal hours, 0-24) for a Unix epoch time in microseconds.

    Follows example 3-5 of Vallado, "Fundamentals of Astrodynamics and Applications".
    """
    # Julian centuries since 2000 Jan. 1 12h UT1
    t = (epoch_to_jd(epoch_us) - J2000_JD) / 36525.0
    gmst_s = 67310.54841 + (876600.0 * 3600.0 + 8640184.812866) * t + 0.093104 * t * t - 6.2e-6 * t * t * t
    gmst_s = math.fmod(gmst_s, SECONDS_PER_DAY)
    if gmst_s < 0.0:
        gmst_s += SECONDS_PER_DAY
    return 24.0 * gmst_s / SECONDS_PER_DAY


def gmst_to_lst(gmst_hours: float, longitude_deg: float) -> float:
    """Local Sidereal Time [decimal hours, 0-24]; longitude positive east."""
    return (gmst_hours + longitude_deg / 15.0) % 24.0


def hours_to_rad(hours: float) -> float:
    return float(hours) * math.pi / 12.0


def decimal_hours_to_hms(hours: float) -> tuple[int, int, float]:
    hours = float(hours)
    h = int(math.floor(hours))
    rem_min = (hours - h) * 60.0
    m = int(math.floor(rem_min))
    s = (rem_min - m) * 60.0
    return h, m, s
