from __future__ import annotations

import logging
from typing import Literal, Sequence

import numpy as np

from geocal.core.camera import MIN_DEPTH, PinholeCamera
from geocal.core.coordinates import (
    quaternion_rotation_derivatives,
    quaternion_to_rotation_matrix,
    rotation_bcrf_to_sez,
)
from geocal.core.levenberg_marquardt import LevenbergMarquardtSolver
from geocal.core.stars import Correspondence, split_by_magnitude, star_unit_vectors

logger = logging.getLogger(__name__)

ExclusionReason = Literal["faint", "behind_camera"]

# ~2e-4 degrees of rotation.
QUATERNION_FD_STEP = 1e-6


class GeoCalFitter(LevenbergMarquardtSolver):
    """
    Geometric calibration of a camera from reference star / source cross-matches.

    Parameters are the camera intrinsics followed by the quaternion (x, y, z, w) of the
    SEZ -> CAM rotation. The data are the observed (i, j) of the included sources, packed as
    [i0, j0, i1, j1, ...].

    The Greenwich mean sidereal time and the site longitude/latitude [rad] complete the
    transformation of reference stars into the camera frame and are not fitted.

    Correspondences are screened once at construction: stars fainter than
    `faint_mag_limit` and stars behind (or on the image plane of) the camera for the
    initial orientation are excluded and never re-evaluated during the fit.
    """

    def __init__(
        self,
        camera: PinholeCamera,
        q_sez_cam: np.ndarray,
        correspondences: Sequence[Correspondence],
        gmst: float,
        lon: float,
        lat: float,
        *,
        faint_mag_limit: float | None = None,
        variance_px2: float = 1.0,
        analytic_jacobian: bool = True,
    ):
        q0 = np.asarray(q_sez_cam, dtype=np.float64).reshape(4)
        self.gmst = float(gmst)
        self.lon = float(lon)
        self.lat = float(lat)
        self.r_bcrf_sez = rotation_bcrf_to_sez(self.gmst, self.lon, self.lat)

        r_sez_cam = quaternion_to_rotation_matrix(q0)
        bright, faint = split_by_magnitude(correspondences, faint_mag_limit)
        included: list[Correspondence] = []
        excluded: list[tuple[Correspondence, ExclusionReason]] = [(xm, "faint") for xm in faint]
        for xm in bright:
            r_cam = r_sez_cam @ (self.r_bcrf_sez @ xm.star.unit_vector_bcrf())
            # Stars on the image plane do not project either.
            if not r_cam[2] > MIN_DEPTH:
                logger.debug("excluding %s: behind the camera", xm.star.name or xm.star)
                excluded.append((xm, "behind_camera"))
                continue
            included.append(xm)

        self.correspondences: tuple[Correspondence, ...] = tuple(included)
        self.excluded: tuple[tuple[Correspondence, ExclusionReason], ...] = tuple(excluded)
        if excluded:
            logger.info("%d of %d correspondences excluded", len(excluded), len(excluded) + len(included))

        super().__init__(n_params=camera.n_params + 4, n_data=2 * len(included))

        self.analytic_jacobian = bool(analytic_jacobian)
        self._camera = camera
        self._n_cam = camera.n_params
        # Star directions in the SEZ frame are fixed for the whole fit.
        self._r_sez = star_unit_vectors([xm.star for xm in included]) @ self.r_bcrf_sez.T

        observed = np.array([[xm.source.i, xm.source.j] for xm in included], dtype=np.float64).reshape(-1)
        self.set_data(observed)
        self.set_variance(np.full((self.N,), float(variance_px2), dtype=np.float64))
        self.set_parameters(np.concatenate([camera.get_parameters(), q0]))

    # Fitted state -------------------------------------------------------

    def camera_model(self) -> PinholeCamera:
        return self._camera.with_parameters(self.params[: self._n_cam])

    def orientation(self) -> np.ndarray:
        return self.params[self._n_cam :].copy()

    def rotation_sez_cam(self) -> np.ndarray:
        return quaternion_to_rotation_matrix(self.params[self._n_cam :])

    def predicted_positions(self) -> np.ndarray:
        return self.get_model().reshape(-1, 2)

    def observed_positions(self) -> np.ndarray:
        return self.data.reshape(-1, 2)

    def residuals_px(self) -> np.ndarray:
        """Observed minus predicted (K,2) image positions."""
        return self.get_residuals().reshape(-1, 2)

    def rms_residual_px(self) -> float:
        """RMS of the 2D residual distances [px]."""
        res = self.residuals_px()
        if res.size == 0:
            return float("nan")
        return float(np.sqrt(np.mean(np.sum(res * res, axis=1))))

    # Solver hooks -------------------------------------------------------

    def get_model(self) -> np.ndarray:
        r_cam = self._r_sez @ self.rotation_sez_cam().T
        return self.camera_model().project(r_cam).reshape(-1)

    def post_parameter_update_callback(self) -> None:
        q = self.params[self._n_cam :]
        n = float(np.linalg.norm(q))
        if not np.isfinite(n) or n == 0.0:
            return
        q = q / n
        if q[3] < 0.0:
            q = -q
        self.params[self._n_cam :] = q

    def get_jacobian(self) -> np.ndarray:
        if not self.analytic_jacobian:
            return super().get_jacobian()
        q = self.params[self._n_cam :]
        r_cam = self._r_sez @ quaternion_to_rotation_matrix(q).T
        d_dr, d_dp = self.camera_model().projection_jacobian(r_cam)
        # d r_cam / d q_k = (dR/dq_k) r_sez, shape (K,4,3)
        dr_dq = np.einsum("qab,nb->nqa", quaternion_rotation_derivatives(q), self._r_sez)
        d_dq = np.einsum("nia,nqa->niq", d_dr, dr_dq)
        return np.concatenate([d_dp, d_dq], axis=2).reshape(self.N, self.M)

    def finite_differences_step_size_per_param(self) -> np.ndarray:
        return np.concatenate(
            [self._camera.finite_difference_steps(), np.full((4,), QUATERNION_FD_STEP, dtype=np.float64)]
        )
