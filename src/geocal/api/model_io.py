from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from geocal.api.calibration import CalibrationResult
from geocal.core.camera import PinholeCamera, camera_from_dict, camera_to_dict
from geocal.core.stars import Correspondence
from geocal.meta import INPUT_SCHEMA, correspondence_to_dict

RESULT_SCHEMA = "geocal.calibration.v0"


def _to_float_matrix(x: Any, shape: tuple[int, ...]) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    x = x.reshape(shape)
    return x


def _json_float(x: float) -> float | None:
    # JSON has no NaN; reduced chi2 is undefined with zero degrees of freedom.
    x = float(x)
    return x if math.isfinite(x) else None


def calibration_to_dict(result: CalibrationResult) -> dict[str, Any]:
    az, el, roll = result.pointing_deg()
    return {
        "schema_version": RESULT_SCHEMA,
        "camera": camera_to_dict(result.camera),
        "orientation": {
            "q_sez_cam": np.asarray(result.q_sez_cam, dtype=np.float64).reshape(4).tolist(),
            "az_deg": az,
            "el_deg": el,
            "roll_deg": roll,
        },
        "site": {
            "gmst_rad": float(result.gmst),
            "longitude_deg": math.degrees(result.longitude),
            "latitude_deg": math.degrees(result.latitude),
        },
        "fit": {
            "converged": bool(result.converged),
            "exit_reason": result.exit_reason,
            "n_iterations": int(result.n_iterations),
            "chi2": _json_float(result.chi2),
            "reduced_chi2": _json_float(result.reduced_chi2),
            "dof": int(result.dof),
            "rms_residual_px": _json_float(result.rms_residual_px),
            "n_used": int(result.n_used),
            "n_excluded": int(result.n_excluded),
        },
        "parameters": {
            "names": list(result.parameter_names),
            "values": np.asarray(result.parameters, dtype=np.float64).tolist(),
            "covariance": [[_json_float(v) for v in row] for row in np.asarray(result.covariance, dtype=np.float64)],
        },
        "residuals_px": np.asarray(result.residuals_px, dtype=np.float64).reshape(-1, 2).tolist(),
    }


def calibration_from_dict(data: dict[str, Any]) -> CalibrationResult:
    if str(data.get("schema_version")) != RESULT_SCHEMA:
        raise ValueError("unsupported calibration schema")

    camera: PinholeCamera = camera_from_dict(data["camera"])
    orientation = data["orientation"]
    site = data["site"]
    fit = data["fit"]
    params = data["parameters"]
    names = tuple(str(n) for n in params["names"])
    m = len(names)

    def _nan(x: Any) -> float:
        return float("nan") if x is None else float(x)

    cov = [[_nan(v) for v in row] for row in params["covariance"]]
    return CalibrationResult(
        camera=camera,
        q_sez_cam=_to_float_matrix(orientation["q_sez_cam"], (4,)),
        gmst=float(site["gmst_rad"]),
        longitude=math.radians(float(site["longitude_deg"])),
        latitude=math.radians(float(site["latitude_deg"])),
        converged=bool(fit["converged"]),
        exit_reason=str(fit["exit_reason"]),
        n_iterations=int(fit["n_iterations"]),
        chi2=_nan(fit["chi2"]),
        reduced_chi2=_nan(fit["reduced_chi2"]),
        dof=int(fit["dof"]),
        rms_residual_px=_nan(fit["rms_residual_px"]),
        parameter_names=names,
        parameters=_to_float_matrix(params["values"], (m,)),
        covariance=_to_float_matrix(cov, (m, m)),
        residuals_px=_to_float_matrix(data.get("residuals_px", []), (-1, 2)),
        n_used=int(fit["n_used"]),
        n_excluded=int(fit["n_excluded"]),
    )


def save_calibration(path: Path, result: CalibrationResult) -> Path:
    """Write a calibration result as a single JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(calibration_to_dict(result), indent=2, sort_keys=True), encoding="utf-8")
    return path


def load_calibration(path: Path) -> CalibrationResult:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return calibration_from_dict(data)


def save_calibration_input(
    path: Path,
    *,
    camera: PinholeCamera,
    q_sez_cam: np.ndarray,
    correspondences: Sequence[Correspondence],
    longitude_deg: float,
    latitude_deg: float,
    gmst_hours: float | None = None,
    epoch_us: int | None = None,
    altitude_m: float = 0.0,
    solver: dict[str, Any] | None = None,
) -> Path:
    """
    Write a calibration input file readable by `geocal.meta.load_calibration_input`.

    Exactly one of `gmst_hours` / `epoch_us` must be given.
    """
    if (gmst_hours is None) == (epoch_us is None):
        raise ValueError("exactly one of gmst_hours / epoch_us is required")
    time: dict[str, Any] = {"gmst_hours": float(gmst_hours)} if gmst_hours is not None else {"epoch_us": int(epoch_us)}

    data: dict[str, Any] = {
        "schema_version": INPUT_SCHEMA,
        "station": {"longitude_deg": float(longitude_deg), "latitude_deg": float(latitude_deg), "altitude_m": float(altitude_m)},
        "time": time,
        "camera": camera_to_dict(camera),
        "pointing": {"quaternion": np.asarray(q_sez_cam, dtype=np.float64).reshape(4).tolist()},
        "solver": dict(solver or {}),
        "correspondences": [correspondence_to_dict(xm) for xm in correspondences],
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    return path
