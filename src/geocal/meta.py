from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from geocal.core.camera import CAMERA_MODELS, PinholeCamera
from geocal.core.coordinates import normalize_quaternion, quaternion_from_pointing
from geocal.core.stars import Correspondence, ReferenceStar, Source
from geocal.core.timeutil import datetime_to_epoch_us, epoch_to_gmst, hours_to_rad

INPUT_SCHEMA = "geocal.calibration_input.v0"


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class StationMeta:
    longitude_deg: float
    latitude_deg: float
    altitude_m: float = 0.0


@dataclass(frozen=True)
class TimeMeta:
    gmst_hours: float
    epoch_us: int | None = None

    @property
    def gmst_rad(self) -> float:
        return hours_to_rad(self.gmst_hours)


@dataclass(frozen=True)
class CameraMeta:
    model: str
    width_px: int
    height_px: int
    fi: float
    fj: float
    pi: float
    pj: float
    k1: float = 0.0
    k2: float = 0.0

    def to_camera(self) -> PinholeCamera:
        cls = CAMERA_MODELS[self.model]
        kwargs = {name: float(getattr(self, name)) for name in cls.parameter_names}
        return cls(width_px=self.width_px, height_px=self.height_px, **kwargs)


@dataclass(frozen=True)
class PointingMeta:
    q_sez_cam: tuple[float, float, float, float]

    def quaternion(self) -> np.ndarray:
        return np.asarray(self.q_sez_cam, dtype=np.float64)


@dataclass(frozen=True)
class SolverMeta:
    max_iterations: int = 500
    exit_tolerance: float = 1e-32
    max_damping: float = 1e32
    boost_shrink_factor: float = 10.0
    analytic_jacobian: bool = True
    faint_mag_limit: float | None = None
    sigma_px: float = 1.0


@dataclass(frozen=True)
class CalibrationInput:
    schema_version: str
    station: StationMeta
    time: TimeMeta
    camera: CameraMeta
    pointing: PointingMeta
    solver: SolverMeta
    correspondences: tuple[Correspondence, ...]


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _float(d: dict[str, Any], key: str, where: str) -> float:
    raw = d.get(key)
    _require(raw is not None, f"{where}.{key} is required")
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"{where}.{key} must be a number") from e
    _require(math.isfinite(value), f"{where}.{key} must be finite")
    return value


def _float_or(d: dict[str, Any], key: str, where: str, default: float) -> float:
    if d.get(key) is None:
        return float(default)
    return _float(d, key, where)


def _int(d: dict[str, Any], key: str, where: str, default: int | None = None) -> int:
    raw = d.get(key, default)
    _require(raw is not None, f"{where}.{key} is required")
    _require(not isinstance(raw, bool), f"{where}.{key} must be an integer")
    if isinstance(raw, float):
        _require(math.isfinite(raw) and raw.is_integer(), f"{where}.{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"{where}.{key} must be an integer") from e


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    section = data.get(key, {})
    _require(isinstance(section, dict), f"{key} must be an object")
    return section


def load_calibration_input(path: Path) -> CalibrationInput:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"{path} is not valid JSON: {e}") from e
    return parse_calibration_input(data)


def parse_calibration_input(data: dict[str, Any]) -> CalibrationInput:
    _require(isinstance(data, dict), "calibration input must be a JSON object")
    schema_version = data.get("schema_version")
    _require(schema_version == INPUT_SCHEMA, f"schema_version must be {INPUT_SCHEMA}")

    camera = parse_camera_meta(_section(data, "camera"))
    entries = data.get("correspondences", [])
    _require(isinstance(entries, list), "correspondences must be a list")
    correspondences = tuple(parse_correspondence(c, k) for k, c in enumerate(entries))
    _require(len(correspondences) > 0, "correspondences must not be empty")

    return CalibrationInput(
        schema_version=schema_version,
        station=parse_station_meta(_section(data, "station")),
        time=parse_time_meta(_section(data, "time")),
        camera=camera,
        pointing=parse_pointing_meta(_section(data, "pointing")),
        solver=parse_solver_meta(_section(data, "solver")),
        correspondences=correspondences,
    )


def parse_station_meta(station: dict[str, Any]) -> StationMeta:
    lon = _float(station, "longitude_deg", "station")
    lat = _float(station, "latitude_deg", "station")
    alt = _float_or(station, "altitude_m", "station", 0.0)
    _require(-180.0 <= lon <= 360.0, "station.longitude_deg must be within [-180, 360]")
    _require(-90.0 <= lat <= 90.0, "station.latitude_deg must be within [-90, 90]")
    _require(-100.0 <= alt <= 5000.0, "station.altitude_m must be within [-100, 5000]")
    return StationMeta(longitude_deg=lon, latitude_deg=lat, altitude_m=alt)


def parse_time_meta(time: dict[str, Any]) -> TimeMeta:
    # Exactly one of gmst_hours / epoch_us / utc.
    keys = [k for k in ("gmst_hours", "epoch_us", "utc") if k in time]
    _require(len(keys) == 1, "time must specify exactly one of gmst_hours, epoch_us, utc")
    key = keys[0]
    if key == "gmst_hours":
        gmst = _float(time, "gmst_hours", "time")
        _require(0.0 <= gmst < 24.0, "time.gmst_hours must be within [0, 24)")
        return TimeMeta(gmst_hours=gmst)
    if key == "epoch_us":
        epoch_us = _int(time, "epoch_us", "time")
    else:
        try:
            epoch_us = datetime_to_epoch_us(datetime.fromisoformat(str(time["utc"]).replace("Z", "+00:00")))
        except ValueError as e:
            raise ConfigValidationError(f"time.utc is not an ISO 8601 timestamp: {time['utc']}") from e
    return TimeMeta(gmst_hours=epoch_to_gmst(epoch_us), epoch_us=epoch_us)


def parse_camera_meta(camera: dict[str, Any]) -> CameraMeta:
    model = str(camera.get("model", "pinhole"))
    _require(model in CAMERA_MODELS, f"camera.model must be one of {sorted(CAMERA_MODELS)}")

    w = _int(camera, "width_px", "camera")
    h = _int(camera, "height_px", "camera")
    _require(w > 0 and h > 0, "camera.width_px and camera.height_px must be > 0")

    if "focal_length_mm" in camera:
        # Physical description; principal point defaults to the image centre.
        f_mm = _float(camera, "focal_length_mm", "camera")
        pw_um = _float(camera, "pixel_width_um", "camera")
        ph_um = _float_or(camera, "pixel_height_um", "camera", pw_um)
        _require(f_mm > 0.0 and pw_um > 0.0 and ph_um > 0.0, "camera focal length and pixel sizes must be > 0")
        fi = f_mm * 1000.0 / pw_um
        fj = f_mm * 1000.0 / ph_um
        pi = _float_or(camera, "pi", "camera", w / 2.0)
        pj = _float_or(camera, "pj", "camera", h / 2.0)
    else:
        fi = _float(camera, "fi", "camera")
        fj = _float(camera, "fj", "camera")
        pi = _float(camera, "pi", "camera")
        pj = _float(camera, "pj", "camera")
        _require(fi > 0.0 and fj > 0.0, "camera.fi and camera.fj must be > 0")

    return CameraMeta(
        model=model,
        width_px=w,
        height_px=h,
        fi=fi,
        fj=fj,
        pi=pi,
        pj=pj,
        k1=_float_or(camera, "k1", "camera", 0.0),
        k2=_float_or(camera, "k2", "camera", 0.0),
    )


def parse_pointing_meta(pointing: dict[str, Any]) -> PointingMeta:
    if "quaternion" in pointing:
        q = pointing["quaternion"]
        _require(isinstance(q, (list, tuple)) and len(q) == 4, "pointing.quaternion must be [x,y,z,w]")
        try:
            qn = normalize_quaternion(np.asarray([float(v) for v in q], dtype=np.float64))
        except ValueError as e:
            raise ConfigValidationError(f"pointing.quaternion invalid: {e}") from e
    else:
        az = _float(pointing, "az_deg", "pointing")
        el = _float(pointing, "el_deg", "pointing")
        roll = _float_or(pointing, "roll_deg", "pointing", 0.0)
        _require(-90.0 <= el <= 90.0, "pointing.el_deg must be within [-90, 90]")
        qn = quaternion_from_pointing(math.radians(az), math.radians(el), math.radians(roll))
    return PointingMeta(q_sez_cam=tuple(float(v) for v in qn))


def parse_solver_meta(solver: dict[str, Any]) -> SolverMeta:
    defaults = SolverMeta()
    max_iterations = _int(solver, "max_iterations", "solver", defaults.max_iterations)
    exit_tolerance = _float_or(solver, "exit_tolerance", "solver", defaults.exit_tolerance)
    max_damping = _float_or(solver, "max_damping", "solver", defaults.max_damping)
    boost_shrink_factor = _float_or(solver, "boost_shrink_factor", "solver", defaults.boost_shrink_factor)
    sigma_px = _float_or(solver, "sigma_px", "solver", defaults.sigma_px)
    faint_mag_limit = None if solver.get("faint_mag_limit") is None else _float(solver, "faint_mag_limit", "solver")
    _require(max_iterations >= 1, "solver.max_iterations must be >= 1")
    _require(exit_tolerance >= 0.0, "solver.exit_tolerance must be >= 0")
    _require(max_damping > 1.0, "solver.max_damping must be > 1")
    _require(boost_shrink_factor > 1.0, "solver.boost_shrink_factor must be > 1")
    _require(sigma_px > 0.0, "solver.sigma_px must be > 0")
    return SolverMeta(
        max_iterations=max_iterations,
        exit_tolerance=exit_tolerance,
        max_damping=max_damping,
        boost_shrink_factor=boost_shrink_factor,
        analytic_jacobian=bool(solver.get("analytic_jacobian", defaults.analytic_jacobian)),
        faint_mag_limit=faint_mag_limit,
        sigma_px=sigma_px,
    )


def parse_correspondence(entry: dict[str, Any], index: int = 0) -> Correspondence:
    where = f"correspondences[{index}]"
    _require(isinstance(entry, dict), f"{where} must be an object")
    src = entry.get("source")
    star = entry.get("star")
    _require(isinstance(src, dict) and isinstance(star, dict), f"{where} needs source and star objects")
    dec_deg = _float(star, "dec_deg", f"{where}.star")
    _require(-90.0 <= dec_deg <= 90.0, f"{where}.star.dec_deg must be within [-90, 90]")
    return Correspondence(
        source=Source(
            i=_float(src, "i", f"{where}.source"),
            j=_float(src, "j", f"{where}.source"),
            brightness=_float_or(src, "brightness", f"{where}.source", 0.0),
        ),
        star=ReferenceStar(
            ra=math.radians(_float(star, "ra_deg", f"{where}.star")),
            dec=math.radians(dec_deg),
            mag=_float(star, "mag", f"{where}.star"),
            name=str(star.get("name", "")),
        ),
    )


def correspondence_to_dict(xm: Correspondence) -> dict[str, Any]:
    return {
        "source": {"i": float(xm.source.i), "j": float(xm.source.j), "brightness": float(xm.source.brightness)},
        "star": {
            "ra_deg": math.degrees(xm.star.ra),
            "dec_deg": math.degrees(xm.star.dec),
            "mag": float(xm.star.mag),
            "name": xm.star.name,
        },
    }
