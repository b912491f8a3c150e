from __future__ import annotations

from dataclasses import dataclass, replace
from typing import ClassVar

import numpy as np

from geocal.core.coordinates import camera_intrinsic_matrix
from geocal.core.distortion import RadialDistortion

# Smallest camera-frame depth that still projects.
MIN_DEPTH = 1e-12


@dataclass(frozen=True)
class PinholeCamera:
    """
    Pinhole camera; intrinsic parameters are the focal lengths in pixel units (fi, fj)
    and the principal point (pi, pj) in image coordinates.

    Camera frame: x along increasing column i, y along increasing row j, z along the boresight.
    """

    width_px: int
    height_px: int
    fi: float
    fj: float
    pi: float
    pj: float

    model_name: ClassVar[str] = "pinhole"
    parameter_names: ClassVar[tuple[str, ...]] = ("fi", "fj", "pi", "pj")

    @classmethod
    def from_physical(
        cls,
        *,
        focal_length: float,
        pixel_width: float,
        pixel_height: float,
        width_px: int,
        height_px: int,
        **extra: float,
    ) -> "PinholeCamera":
        K = camera_intrinsic_matrix(focal_length, pixel_width, pixel_height, width_px, height_px)
        return cls(
            width_px=int(width_px),
            height_px=int(height_px),
            fi=float(K[0, 0]),
            fj=float(K[1, 1]),
            pi=float(K[0, 2]),
            pj=float(K[1, 2]),
            **extra,
        )

    @property
    def n_params(self) -> int:
        return len(self.parameter_names)

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fi), 0.0, float(self.pi)], [0.0, float(self.fj), float(self.pj)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def distortion(self) -> RadialDistortion:
        return RadialDistortion()

    def get_parameters(self) -> np.ndarray:
        return np.array([float(getattr(self, name)) for name in self.parameter_names], dtype=np.float64)

    def with_parameters(self, params: np.ndarray) -> "PinholeCamera":
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.n_params:
            raise ValueError(f"expected {self.n_params} parameters, got {params.size}")
        return replace(self, **{name: float(v) for name, v in zip(self.parameter_names, params.tolist())})

    def finite_difference_steps(self) -> np.ndarray:
        # Sub-pixel steps for focal lengths and principal point.
        return np.full((4,), 1e-3, dtype=np.float64)

    def project(self, r_cam: np.ndarray) -> np.ndarray:
        """
        Project camera-frame vectors (K,3) to image coordinates (K,2) by perspective division.
        Vectors with a vanishing depth component map to NaN.
        """
        r_cam = np.asarray(r_cam, dtype=np.float64).reshape(-1, 3)
        Z = r_cam[:, 2]
        ij = np.full((r_cam.shape[0], 2), np.nan, dtype=np.float64)
        good = np.isfinite(Z) & (np.abs(Z) > MIN_DEPTH)
        if not np.any(good):
            return ij
        x = r_cam[good, 0] / Z[good]
        y = r_cam[good, 1] / Z[good]
        xd, yd = self.distortion().distort(x, y)
        ij[good, 0] = self.fi * xd + self.pi
        ij[good, 1] = self.fj * yd + self.pj
        return ij

    def projection_jacobian(self, r_cam: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """
        Derivatives of the projected (i, j) with respect to the camera-frame vector and to
        the intrinsic parameters: shapes (K,2,3) and (K,2,n_params).
        """
        r_cam = np.asarray(r_cam, dtype=np.float64).reshape(-1, 3)
        n = r_cam.shape[0]
        with np.errstate(divide="ignore", invalid="ignore"):
            iz = 1.0 / r_cam[:, 2]
        x = r_cam[:, 0] * iz
        y = r_cam[:, 1] * iz

        dist = self.distortion()
        xd, yd = dist.distort(x, y)

        dn_dr = np.zeros((n, 2, 3), dtype=np.float64)
        dn_dr[:, 0, 0] = iz
        dn_dr[:, 0, 2] = -x * iz
        dn_dr[:, 1, 1] = iz
        dn_dr[:, 1, 2] = -y * iz

        f = np.array([self.fi, self.fj], dtype=np.float64)
        d_dr = f[None, :, None] * np.einsum("nab,nbc->nac", dist.jacobian_xy(x, y), dn_dr)

        d_dp = np.zeros((n, 2, self.n_params), dtype=np.float64)
        d_dp[:, 0, 0] = xd
        d_dp[:, 1, 1] = yd
        d_dp[:, 0, 2] = 1.0
        d_dp[:, 1, 3] = 1.0
        if self.n_params > 4:
            d_dp[:, :, 4:] = f[None, :, None] * dist.jacobian_coeffs(x, y)
        return d_dr, d_dp

    def unproject(self, ij: np.ndarray) -> np.ndarray:
        """Unit camera-frame ray directions (K,3) for image coordinates (K,2)."""
        ij = np.asarray(ij, dtype=np.float64).reshape(-1, 2)
        xd = (ij[:, 0] - self.pi) / self.fi
        yd = (ij[:, 1] - self.pj) / self.fj
        x, y = self.distortion().undistort(xd, yd)
        d = np.stack([x, y, np.ones_like(x)], axis=-1)
        return d / np.linalg.norm(d, axis=-1, keepdims=True)

    def in_image(self, ij: np.ndarray) -> np.ndarray:
        ij = np.asarray(ij, dtype=np.float64).reshape(-1, 2)
        return (
            np.isfinite(ij).all(axis=1)
            & (ij[:, 0] > 0.0)
            & (ij[:, 0] < self.width_px)
            & (ij[:, 1] > 0.0)
            & (ij[:, 1] < self.height_px)
        )


@dataclass(frozen=True)
class PinholeCameraWithRadialDistortion(PinholeCamera):
    """Pinhole camera with two-term radial distortion applied to normalized coordinates."""

    k1: float = 0.0
    k2: float = 0.0

    model_name: ClassVar[str] = "pinhole_radial"
    parameter_names: ClassVar[tuple[str, ...]] = ("fi", "fj", "pi", "pj", "k1", "k2")

    def distortion(self) -> RadialDistortion:
        return RadialDistortion(k1=self.k1, k2=self.k2)

    def finite_difference_steps(self) -> np.ndarray:
        return np.concatenate([super().finite_difference_steps(), np.full((2,), 1e-6, dtype=np.float64)])


CAMERA_MODELS: dict[str, type[PinholeCamera]] = {
    PinholeCamera.model_name: PinholeCamera,
    PinholeCameraWithRadialDistortion.model_name: PinholeCameraWithRadialDistortion,
}


def camera_from_dict(d: dict) -> PinholeCamera:
    model = str(d.get("model", PinholeCamera.model_name))
    if model not in CAMERA_MODELS:
        raise ValueError(f"unknown camera model: {model}")
    cls = CAMERA_MODELS[model]
    kwargs = {name: float(d[name]) for name in cls.parameter_names}
    return cls(width_px=int(d["width_px"]), height_px=int(d["height_px"]), **kwargs)


def camera_to_dict(camera: PinholeCamera) -> dict:
    out: dict = {"model": camera.model_name, "width_px": int(camera.width_px), "height_px": int(camera.height_px)}
    for name in camera.parameter_names:
        out[name] = float(getattr(camera, name))
    return out
