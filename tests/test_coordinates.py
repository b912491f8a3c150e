import math

import numpy as np
import pytest
from scipy.spatial.transform import Rotation as Rot

from geocal.core.coordinates import (
    camera_intrinsic_matrix,
    cartesian_to_spherical,
    east_of_south_to_east_of_north,
    normalize_quaternion,
    pointing_from_rotation,
    quaternion_angle_between,
    quaternion_from_pointing,
    quaternion_rotation_derivatives,
    quaternion_to_rotation_matrix,
    rotation_bcrf_to_ecef,
    rotation_bcrf_to_sez,
    rotation_ecef_to_sez,
    rotation_sez_to_cam,
    spherical_to_cartesian,
)


def _assert_rotation(r: np.ndarray) -> None:
    assert np.allclose(r @ r.T, np.eye(3), atol=1e-12)
    assert np.isclose(np.linalg.det(r), 1.0, atol=1e-12)


def test_frame_rotations_are_proper_rotations():
    rng = np.random.default_rng(0)
    for _ in range(20):
        gmst, lon = rng.uniform(0.0, 2.0 * np.pi, size=2)
        lat = rng.uniform(-0.5 * np.pi, 0.5 * np.pi)
        az = rng.uniform(0.0, 2.0 * np.pi)
        el = rng.uniform(-1.4, 1.4)
        roll = rng.uniform(-np.pi, np.pi)
        _assert_rotation(rotation_bcrf_to_ecef(gmst))
        _assert_rotation(rotation_ecef_to_sez(lon, lat))
        _assert_rotation(rotation_sez_to_cam(az, el, roll))
        _assert_rotation(rotation_bcrf_to_sez(gmst, lon, lat))


def test_spherical_roundtrip():
    rng = np.random.default_rng(1)
    ra = rng.uniform(0.0, 2.0 * np.pi, size=(200,))
    dec = rng.uniform(-1.5, 1.5, size=(200,))
    v = spherical_to_cartesian(np.ones_like(ra), ra, dec)
    assert np.allclose(np.linalg.norm(v, axis=-1), 1.0)
    r, ra2, dec2 = cartesian_to_spherical(v)
    assert np.allclose(r, 1.0)
    assert np.allclose(ra2, ra, atol=1e-12)
    assert np.allclose(dec2, dec, atol=1e-12)


def test_sez_axes_for_site_on_equator_at_greenwich():
    r = rotation_ecef_to_sez(0.0, 0.0)
    # Zenith along ECEF x, east along ECEF y, south along -z.
    assert np.allclose(r @ np.array([1.0, 0.0, 0.0]), [0.0, 0.0, 1.0])
    assert np.allclose(r @ np.array([0.0, 1.0, 0.0]), [0.0, 1.0, 0.0])
    assert np.allclose(r @ np.array([0.0, 0.0, -1.0]), [1.0, 0.0, 0.0])


def test_gmst_rotation_moves_vernal_equinox_westward():
    # With GMST = 90 deg the vernal equinox lies on the ECEF -y axis.
    v = rotation_bcrf_to_ecef(0.5 * np.pi) @ np.array([1.0, 0.0, 0.0])
    assert np.allclose(v, [0.0, -1.0, 0.0], atol=1e-15)


def test_boresight_points_at_requested_azimuth_elevation():
    az, el = math.radians(30.0), math.radians(40.0)
    r = rotation_sez_to_cam(az, el, 0.3)
    boresight_sez = r.T @ np.array([0.0, 0.0, 1.0])
    _r, theta, phi = cartesian_to_spherical(boresight_sez)
    assert np.isclose(float(east_of_south_to_east_of_north(theta)), az)
    assert np.isclose(float(phi), el)


def test_zero_roll_keeps_zenith_up_in_image():
    r = rotation_sez_to_cam(math.radians(120.0), math.radians(20.0), 0.0)
    zenith_cam = r @ np.array([0.0, 0.0, 1.0])
    # Image rows increase downwards, so "up" is -y; no sideways component.
    assert zenith_cam[1] < 0.0
    assert abs(zenith_cam[0]) < 1e-12


def test_pointing_roundtrip():
    rng = np.random.default_rng(2)
    for _ in range(50):
        az = rng.uniform(0.0, 2.0 * np.pi)
        el = rng.uniform(-1.4, 1.4)
        roll = rng.uniform(-3.0, 3.0)
        az2, el2, roll2 = pointing_from_rotation(rotation_sez_to_cam(az, el, roll))
        assert np.isclose(az2, az, atol=1e-9)
        assert np.isclose(el2, el, atol=1e-9)
        assert np.isclose(roll2, roll, atol=1e-9)


def test_quaternion_matrix_matches_scipy():
    rng = np.random.default_rng(3)
    for _ in range(20):
        q = rng.normal(size=4)
        r = quaternion_to_rotation_matrix(q)
        assert np.allclose(r, Rot.from_quat(q).as_matrix(), atol=1e-12)
        _assert_rotation(r)
        # Scaling does not change the rotation.
        assert np.allclose(quaternion_to_rotation_matrix(3.0 * q), r, atol=1e-12)


def test_quaternion_from_pointing_roundtrip():
    az, el, roll = 1.1, 0.6, -0.2
    q = quaternion_from_pointing(az, el, roll)
    assert np.isclose(np.linalg.norm(q), 1.0)
    assert q[3] >= 0.0
    assert np.allclose(quaternion_to_rotation_matrix(q), rotation_sez_to_cam(az, el, roll), atol=1e-12)


def test_quaternion_derivatives_match_finite_differences():
    rng = np.random.default_rng(4)
    q = normalize_quaternion(rng.normal(size=4))
    d = quaternion_rotation_derivatives(q)
    h = 1e-6
    for k in range(4):
        dq = np.zeros(4)
        dq[k] = h
        fd = (quaternion_to_rotation_matrix(q + dq) - quaternion_to_rotation_matrix(q - dq)) / (2.0 * h)
        assert np.allclose(d[k], fd, atol=1e-8)
    # No change along the quaternion itself.
    assert np.allclose(np.einsum("k,kab->ab", q, d), 0.0, atol=1e-12)


def test_normalize_quaternion_canonical_hemisphere():
    q = normalize_quaternion(np.array([0.0, 0.0, 2.0, -2.0]))
    assert np.allclose(q, [0.0, 0.0, -math.sqrt(0.5), math.sqrt(0.5)])
    with pytest.raises(ValueError):
        normalize_quaternion(np.zeros(4))


def test_quaternion_angle_between():
    q1 = quaternion_from_pointing(0.0, 0.5, 0.0)
    q2 = quaternion_from_pointing(0.0, 0.5 + math.radians(2.0), 0.0)
    assert np.isclose(quaternion_angle_between(q1, q2), math.radians(2.0), atol=1e-10)
    assert np.isclose(quaternion_angle_between(q1, -q1), 0.0, atol=1e-7)


def test_camera_intrinsic_matrix():
    k = camera_intrinsic_matrix(8e-3, 4e-6, 5e-6, 1280, 960)
    assert np.allclose(k, [[2000.0, 0.0, 640.0], [0.0, 1600.0, 480.0], [0.0, 0.0, 1.0]])
    with pytest.raises(ValueError):
        camera_intrinsic_matrix(0.0, 4e-6, 4e-6, 10, 10)
