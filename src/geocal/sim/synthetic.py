from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from geocal.core.camera import PinholeCamera
from geocal.core.coordinates import (
    cartesian_to_spherical,
    normalize_quaternion,
    quaternion_from_pointing,
    quaternion_to_rotation_matrix,
    rotation_bcrf_to_sez,
)
from geocal.core.stars import Correspondence, ReferenceStar, Source


@dataclass(frozen=True)
class SyntheticScene:
    """
    Cross-matched stars generated from a known camera and orientation.

    `correspondences` hold noisy source positions; `true_ij` the exact projections
    (NaN for stars placed behind the camera).
    """

    camera: PinholeCamera
    q_sez_cam: np.ndarray
    gmst: float
    lon: float
    lat: float
    correspondences: tuple[Correspondence, ...]
    true_ij: np.ndarray  # (K,2)
    noise_px: float


def make_synthetic_scene(
    *,
    camera: PinholeCamera,
    az: float = 0.0,
    el: float = np.pi / 4,
    roll: float = 0.0,
    gmst: float = 1.0,
    lon: float = np.radians(-3.0),
    lat: float = np.radians(55.0),
    n_stars: int = 20,
    n_behind: int = 0,
    noise_px: float = 0.0,
    margin_px: float = 10.0,
    mag_range: tuple[float, float] = (0.0, 6.0),
    seed: int = 0,
) -> SyntheticScene:
    """
    Sample stars uniformly over the image (angles in radians) and back-project them to the sky.

    `n_behind` extra stars are mirrored through the camera centre so that they lie behind it;
    their sources are placed at random image positions.
    """
    if n_stars < 0 or n_behind < 0:
        raise ValueError("n_stars and n_behind must be >= 0")
    if noise_px < 0:
        raise ValueError("noise_px must be >= 0")
    rng = np.random.default_rng(seed)

    q = quaternion_from_pointing(az, el, roll)
    r_bcrf_cam = quaternion_to_rotation_matrix(q) @ rotation_bcrf_to_sez(gmst, lon, lat)

    n = int(n_stars + n_behind)
    w = float(camera.width_px)
    h = float(camera.height_px)
    i = rng.uniform(margin_px, w - margin_px, size=(n,))
    j = rng.uniform(margin_px, h - margin_px, size=(n,))
    ij = np.stack([i, j], axis=-1)

    r_cam = camera.unproject(ij)
    r_cam[n_stars:] *= -1.0
    _r, ra, dec = cartesian_to_spherical(r_cam @ r_bcrf_cam)

    true_ij = ij.copy()
    true_ij[n_stars:] = np.nan
    obs = ij + rng.normal(0.0, noise_px, size=ij.shape) if noise_px > 0 else ij
    mags = rng.uniform(mag_range[0], mag_range[1], size=(n,))

    correspondences = tuple(
        Correspondence(
            source=Source(i=float(obs[k, 0]), j=float(obs[k, 1]), brightness=float(10.0 ** (-0.4 * mags[k]))),
            star=ReferenceStar(ra=float(ra[k]), dec=float(dec[k]), mag=float(mags[k]), name=f"SIM{k:04d}"),
        )
        for k in range(n)
    )
    return SyntheticScene(
        camera=camera,
        q_sez_cam=q,
        gmst=float(gmst),
        lon=float(lon),
        lat=float(lat),
        correspondences=correspondences,
        true_ij=true_ij,
        noise_px=float(noise_px),
    )


def perturb_quaternion(q: np.ndarray, angle: float, rng: np.random.Generator) -> np.ndarray:
    """Rotate `q` by `angle` [rad] about a random axis."""
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    axis = rng.normal(size=3)
    axis /= np.linalg.norm(axis)
    delta = Rot.from_rotvec(float(angle) * axis)
    out = (delta * Rot.from_quat(normalize_quaternion(q))).as_quat()
    return normalize_quaternion(out)


def perturb_camera(camera: PinholeCamera, rel: float, rng: np.random.Generator) -> PinholeCamera:
    """Scale focal lengths by up to +-`rel` and shift the principal point by up to `rel` of the image size."""
    p = camera.get_parameters()
    p[0] *= 1.0 + rng.uniform(-rel, rel)
    p[1] *= 1.0 + rng.uniform(-rel, rel)
    p[2] += rng.uniform(-rel, rel) * camera.width_px
    p[3] += rng.uniform(-rel, rel) * camera.height_px
    return camera.with_parameters(p)
