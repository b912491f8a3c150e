from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from geocal.core.camera import PinholeCamera
from geocal.core.coordinates import (
    cartesian_to_spherical,
    pointing_from_rotation,
    quaternion_to_rotation_matrix,
    rotation_bcrf_to_sez,
    spherical_to_cartesian,
)
from geocal.core.geocal_fitter import GeoCalFitter
from geocal.core.stars import Correspondence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationResult:
    """Fitted camera intrinsics and orientation, with fit statistics."""

    camera: PinholeCamera
    q_sez_cam: np.ndarray  # (4,) scalar-last
    gmst: float  # [rad]
    longitude: float  # [rad]
    latitude: float  # [rad]
    converged: bool
    exit_reason: str
    n_iterations: int
    chi2: float
    reduced_chi2: float
    dof: int
    rms_residual_px: float
    parameter_names: tuple[str, ...]
    parameters: np.ndarray  # (M,)
    covariance: np.ndarray  # (M,M)
    residuals_px: np.ndarray  # (K,2) observed - predicted
    n_used: int
    n_excluded: int

    @property
    def standard_errors(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    def r_sez_cam(self) -> np.ndarray:
        return quaternion_to_rotation_matrix(self.q_sez_cam)

    def r_bcrf_cam(self) -> np.ndarray:
        return self.r_sez_cam() @ rotation_bcrf_to_sez(self.gmst, self.longitude, self.latitude)

    def pointing_deg(self) -> tuple[float, float, float]:
        """Boresight azimuth (east of north), elevation and roll [deg]."""
        az, el, roll = pointing_from_rotation(self.r_sez_cam())
        return math.degrees(az), math.degrees(el), math.degrees(roll)

    def summary(self) -> str:
        az, el, roll = self.pointing_deg()
        lines = [
            f"Converged:        {self.converged} ({self.exit_reason}, {self.n_iterations} iterations)",
            f"Stars used:       {self.n_used} ({self.n_excluded} excluded)",
            f"Chi2 / DOF:       {self.chi2:.4g} / {self.dof} (reduced {self.reduced_chi2:.4g})",
            f"RMS residual:     {self.rms_residual_px:.3f} px",
            f"Pointing:         az={az:.3f}° el={el:.3f}° roll={roll:.3f}°",
        ]
        for name, value, err in zip(self.parameter_names, self.parameters, self.standard_errors):
            lines.append(f"  {name:<4s} = {value:+.8g} ± {err:.3g}")
        return "\n".join(lines)


def calibrate(
    *,
    camera: PinholeCamera,
    q_sez_cam: np.ndarray,
    correspondences: Sequence[Correspondence],
    gmst: float,
    lon: float,
    lat: float,
    faint_mag_limit: float | None = None,
    sigma_px: float = 1.0,
    max_iterations: int = 500,
    analytic_jacobian: bool = True,
    exit_tolerance: float = 1e-32,
    max_damping: float = 1e32,
    boost_shrink_factor: float = 10.0,
    verbose: bool = False,
) -> CalibrationResult:
    """
    Fit camera intrinsics and SEZ -> CAM orientation to cross-matched stars.

    Angles in radians. `sigma_px` is the per-axis position uncertainty of the sources.
    Raises ConfigurationError when fewer coordinates than parameters survive the
    visibility screening.
    """
    if sigma_px <= 0:
        raise ValueError("sigma_px must be > 0")
    fitter = GeoCalFitter(
        camera,
        q_sez_cam,
        correspondences,
        gmst,
        lon,
        lat,
        faint_mag_limit=faint_mag_limit,
        variance_px2=float(sigma_px) ** 2,
        analytic_jacobian=analytic_jacobian,
    )
    fitter.exit_tolerance = float(exit_tolerance)
    fitter.max_damping = float(max_damping)
    fitter.boost_shrink_factor = float(boost_shrink_factor)

    converged = fitter.fit(max_iterations, verbose=verbose)
    result = result_from_fitter(fitter, converged=converged)
    logger.info("calibration finished: rms=%.3f px, reduced chi2=%.4g", result.rms_residual_px, result.reduced_chi2)
    return result


def result_from_fitter(fitter: GeoCalFitter, *, converged: bool) -> CalibrationResult:
    camera = fitter.camera_model()
    return CalibrationResult(
        camera=camera,
        q_sez_cam=fitter.orientation(),
        gmst=fitter.gmst,
        longitude=fitter.lon,
        latitude=fitter.lat,
        converged=bool(converged),
        exit_reason=str(fitter.exit_reason),
        n_iterations=int(fitter.n_iterations),
        chi2=fitter.get_chi2(),
        reduced_chi2=fitter.get_reduced_chi2(),
        dof=fitter.get_dof(),
        rms_residual_px=fitter.rms_residual_px(),
        parameter_names=tuple(camera.parameter_names) + ("qx", "qy", "qz", "qw"),
        parameters=fitter.get_parameters(),
        covariance=fitter.get_parameter_covariance(),
        residuals_px=fitter.residuals_px(),
        n_used=len(fitter.correspondences),
        n_excluded=len(fitter.excluded),
    )


def project_radec(result: CalibrationResult, ra: np.ndarray, dec: np.ndarray) -> np.ndarray:
    """Image coordinates (K,2) of sky directions [rad]; NaN for directions behind the camera."""
    ra = np.atleast_1d(np.asarray(ra, dtype=np.float64))
    dec = np.atleast_1d(np.asarray(dec, dtype=np.float64))
    r_cam = spherical_to_cartesian(np.ones_like(ra), ra, dec) @ result.r_bcrf_cam().T
    ij = result.camera.project(r_cam)
    ij[r_cam[:, 2] < 0.0] = np.nan
    return ij


def pixel_to_radec(result: CalibrationResult, ij: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Right ascension and declination [rad] of image coordinates (K,2)."""
    r_cam = result.camera.unproject(ij)
    r_bcrf = r_cam @ result.r_bcrf_cam()
    _r, ra, dec = cartesian_to_spherical(r_bcrf)
    return ra, dec
