from __future__ import annotations

import numpy as np


def spherical_to_cartesian(r: np.ndarray, theta: np.ndarray, phi: np.ndarray) -> np.ndarray:
    """
    Spherical -> cartesian. `theta` is the azimuthal angle measured from +x towards +y,
    `phi` the elevation above the xy plane (e.g. RA/Dec). Returns (..., 3).
    """
    r = np.asarray(r, dtype=np.float64)
    theta = np.asarray(theta, dtype=np.float64)
    phi = np.asarray(phi, dtype=np.float64)
    cos_phi = np.cos(phi)
    return np.stack([r * cos_phi * np.cos(theta), r * cos_phi * np.sin(theta), r * np.sin(phi)], axis=-1)


def cartesian_to_spherical(v: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Inverse of `spherical_to_cartesian`; theta is wrapped to [0, 2pi)."""
    v = np.asarray(v, dtype=np.float64)
    r = np.linalg.norm(v, axis=-1)
    theta = np.mod(np.arctan2(v[..., 1], v[..., 0]), 2.0 * np.pi)
    with np.errstate(invalid="ignore", divide="ignore"):
        phi = np.arcsin(np.clip(v[..., 2] / r, -1.0, 1.0))
    return r, theta, phi


def east_of_south_to_east_of_north(theta: np.ndarray) -> np.ndarray:
    """SEZ azimuthal angle (from south towards east) -> conventional azimuth east of north."""
    return np.mod(np.pi - np.asarray(theta, dtype=np.float64), 2.0 * np.pi)


def rotation_bcrf_to_ecef(gmst: float) -> np.ndarray:
    """Rotation about the polar axis by the Greenwich Mean Sidereal Time angle [rad]."""
    c, s = np.cos(gmst), np.sin(gmst)
    return np.array([[c, s, 0.0], [-s, c, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)


def rotation_ecef_to_sez(lon: float, lat: float) -> np.ndarray:
    """
    ECEF -> topocentric south-east-zenith rotation for a site at (lon, lat) [rad], longitude
    positive east. Rows are the S, E, Z unit vectors expressed in ECEF.
    """
    slon, clon = np.sin(lon), np.cos(lon)
    slat, clat = np.sin(lat), np.cos(lat)
    return np.array(
        [
            [slat * clon, slat * slon, -clat],
            [-slon, clon, 0.0],
            [clat * clon, clat * slon, slat],
        ],
        dtype=np.float64,
    )


def rotation_sez_to_cam(az: float, el: float, roll: float) -> np.ndarray:
    """
    SEZ -> CAM rotation for a camera whose boresight points at azimuth `az` (east of north)
    and elevation `el`, rolled by `roll` about the boresight [rad].

    CAM frame: x along increasing image column (i), y along increasing image row (j, down),
    z along the boresight. With roll = 0 the image "up" direction points towards the zenith.
    """
    saz, caz = np.sin(az), np.cos(az)
    sel, cel = np.sin(el), np.cos(el)
    x0 = np.array([saz, caz, 0.0], dtype=np.float64)
    y0 = np.array([-sel * caz, sel * saz, -cel], dtype=np.float64)
    z0 = np.array([-cel * caz, cel * saz, sel], dtype=np.float64)
    cr, sr = np.cos(roll), np.sin(roll)
    return np.stack([cr * x0 + sr * y0, -sr * x0 + cr * y0, z0], axis=0)


def pointing_from_rotation(r_sez_cam: np.ndarray) -> tuple[float, float, float]:
    """Inverse of `rotation_sez_to_cam`: returns (az, el, roll) [rad], az in [0, 2pi)."""
    r = np.asarray(r_sez_cam, dtype=np.float64).reshape(3, 3)
    z = r[2]
    el = float(np.arcsin(np.clip(z[2], -1.0, 1.0)))
    az = float(np.mod(np.arctan2(z[1], -z[0]), 2.0 * np.pi))
    saz, caz = np.sin(az), np.cos(az)
    sel, cel = np.sin(el), np.cos(el)
    x0 = np.array([saz, caz, 0.0], dtype=np.float64)
    y0 = np.array([-sel * caz, sel * saz, -cel], dtype=np.float64)
    roll = float(np.arctan2(r[0] @ y0, r[0] @ x0))
    return az, el, roll


def rotation_bcrf_to_sez(gmst: float, lon: float, lat: float) -> np.ndarray:
    return rotation_ecef_to_sez(lon, lat) @ rotation_bcrf_to_ecef(gmst)


def camera_intrinsic_matrix(
    focal_length: float,
    pixel_width: float,
    pixel_height: float,
    image_width: int,
    image_height: int,
) -> np.ndarray:
    """
    Pinhole intrinsic matrix with the principal point at the image centre.

    `focal_length`, `pixel_width` and `pixel_height` must share the same length unit.
    """
    if focal_length <= 0 or pixel_width <= 0 or pixel_height <= 0:
        raise ValueError("focal length and pixel sizes must be > 0")
    return np.array(
        [
            [focal_length / pixel_width, 0.0, image_width / 2.0],
            [0.0, focal_length / pixel_height, image_height / 2.0],
            [0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


# Quaternions are scalar-last (x, y, z, w), matching scipy.spatial.transform.Rotation.


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64).reshape(4)
    n = float(np.linalg.norm(q))
    if not np.isfinite(n) or n == 0.0:
        raise ValueError("quaternion must have a finite non-zero norm")
    q = q / n
    # q and -q are the same rotation; keep the w >= 0 hemisphere.
    if q[3] < 0.0:
        q = -q
    return q


def _skew(v: np.ndarray) -> np.ndarray:
    x, y, z = v
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def _homogeneous_rotation(q: np.ndarray) -> np.ndarray:
    # Equals |q|^2 R(q/|q|).
    v = q[:3]
    w = q[3]
    return (w * w - v @ v) * np.eye(3) + 2.0 * np.outer(v, v) + 2.0 * w * _skew(v)


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """Rotation matrix of q / |q| (same matrix as Rotation.from_quat(q).as_matrix())."""
    q = np.asarray(q, dtype=np.float64).reshape(4)
    n2 = float(q @ q)
    if n2 == 0.0:
        raise ValueError("zero quaternion")
    return _homogeneous_rotation(q) / n2


def quaternion_rotation_derivatives(q: np.ndarray) -> np.ndarray:
    """
    Derivatives of R(q / |q|) with respect to the four (unnormalized) quaternion components.

    Returns (4, 3, 3). The derivative along q itself is zero.
    """
    q = np.asarray(q, dtype=np.float64).reshape(4)
    n2 = float(q @ q)
    if n2 == 0.0:
        raise ValueError("zero quaternion")
    v = q[:3]
    w = q[3]
    rh = _homogeneous_rotation(q)
    eye = np.eye(3)
    out = np.empty((4, 3, 3), dtype=np.float64)
    for k in range(3):
        e = eye[k]
        d_h = -2.0 * v[k] * eye + 2.0 * (np.outer(e, v) + np.outer(v, e)) + 2.0 * w * _skew(e)
        out[k] = d_h / n2 - 2.0 * v[k] * rh / (n2 * n2)
    d_w = 2.0 * w * eye + 2.0 * _skew(v)
    out[3] = d_w / n2 - 2.0 * w * rh / (n2 * n2)
    return out


def rotation_matrix_to_quaternion(r: np.ndarray) -> np.ndarray:
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    q = Rot.from_matrix(np.asarray(r, dtype=np.float64).reshape(3, 3)).as_quat()
    return normalize_quaternion(q)


def quaternion_from_pointing(az: float, el: float, roll: float) -> np.ndarray:
    return rotation_matrix_to_quaternion(rotation_sez_to_cam(az, el, roll))


def quaternion_angle_between(q1: np.ndarray, q2: np.ndarray) -> float:
    """Rotation angle [rad] taking q1 to q2."""
    a = normalize_quaternion(q1)
    b = normalize_quaternion(q2)
    d = abs(float(a @ b))
    return 2.0 * float(np.arccos(min(1.0, d)))
