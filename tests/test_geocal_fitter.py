import math

import numpy as np
import pytest

from geocal.core.camera import PinholeCamera, PinholeCameraWithRadialDistortion
from geocal.core.coordinates import quaternion_angle_between, quaternion_to_rotation_matrix, rotation_bcrf_to_sez
from geocal.core.geocal_fitter import GeoCalFitter
from geocal.core.levenberg_marquardt import ConfigurationError
from geocal.core.stars import Correspondence, ReferenceStar, Source
from geocal.sim.synthetic import make_synthetic_scene, perturb_camera, perturb_quaternion


def _camera() -> PinholeCamera:
    return PinholeCamera.from_physical(
        focal_length=8e-3, pixel_width=3.75e-6, pixel_height=3.75e-6, width_px=1280, height_px=960
    )


def _fitter(scene, q0=None, camera=None, **kwargs) -> GeoCalFitter:
    return GeoCalFitter(
        scene.camera if camera is None else camera,
        scene.q_sez_cam if q0 is None else q0,
        scene.correspondences,
        scene.gmst,
        scene.lon,
        scene.lat,
        **kwargs,
    )


def test_model_reproduces_synthetic_positions_at_truth():
    scene = make_synthetic_scene(camera=_camera(), n_stars=15, seed=0)
    fitter = _fitter(scene)
    assert fitter.M == 8
    assert fitter.N == 30
    assert np.allclose(fitter.predicted_positions(), scene.true_ij, atol=1e-8)
    assert fitter.get_chi2() < 1e-12


def test_noiseless_scene_recovers_truth_from_perturbed_guess():
    rng = np.random.default_rng(1)
    scene = make_synthetic_scene(camera=_camera(), n_stars=20, az=math.radians(200.0), roll=0.2, seed=1)
    q0 = perturb_quaternion(scene.q_sez_cam, math.radians(1.0), rng)
    cam0 = perturb_camera(scene.camera, 0.01, rng)

    fitter = _fitter(scene, q0=q0, camera=cam0)
    assert fitter.fit(500)

    assert fitter.rms_residual_px() < 1e-6
    assert np.allclose(fitter.camera_model().get_parameters(), scene.camera.get_parameters(), atol=1e-3)
    assert quaternion_angle_between(fitter.orientation(), scene.q_sez_cam) < 1e-6


def test_radial_model_recovers_distortion():
    rng = np.random.default_rng(2)
    truth = PinholeCameraWithRadialDistortion(
        width_px=1280, height_px=960, fi=2100.0, fj=2110.0, pi=650.0, pj=470.0, k1=-0.12, k2=0.03
    )
    scene = make_synthetic_scene(camera=truth, n_stars=40, seed=2)
    start = PinholeCameraWithRadialDistortion(
        width_px=1280, height_px=960, fi=2133.0, fj=2133.0, pi=640.0, pj=480.0
    )
    fitter = _fitter(scene, q0=perturb_quaternion(scene.q_sez_cam, math.radians(0.5), rng), camera=start)
    assert fitter.M == 10
    assert fitter.fit(500)
    assert fitter.rms_residual_px() < 1e-5
    fitted = fitter.camera_model()
    assert abs(fitted.k1 + 0.12) < 1e-4
    assert abs(fitted.k2 - 0.03) < 1e-3


def test_quaternion_is_unit_norm_for_every_model_evaluation():
    norms = []

    class _Recording(GeoCalFitter):
        def get_model(self):
            norms.append(float(np.linalg.norm(self.params[self._n_cam :])))
            return super().get_model()

    rng = np.random.default_rng(3)
    scene = make_synthetic_scene(camera=_camera(), n_stars=12, noise_px=0.3, seed=3)
    q0 = perturb_quaternion(scene.q_sez_cam, math.radians(3.0), rng)
    # Start from an unnormalized quaternion.
    fitter = _Recording(
        scene.camera,
        5.0 * q0,
        scene.correspondences,
        scene.gmst,
        scene.lon,
        scene.lat,
        analytic_jacobian=False,
    )
    assert fitter.fit(200)
    assert len(norms) > 10
    assert np.allclose(norms, 1.0, atol=1e-12)
    assert fitter.orientation()[3] >= 0.0


def test_behind_camera_stars_are_excluded_once():
    scene = make_synthetic_scene(camera=_camera(), n_stars=10, n_behind=4, noise_px=0.1, seed=4)
    fitter = _fitter(scene)
    assert fitter.N == 20
    assert len(fitter.correspondences) == 10
    reasons = [reason for _xm, reason in fitter.excluded]
    assert reasons == ["behind_camera"] * 4
    excluded_names = {xm.star.name for xm, _reason in fitter.excluded}
    assert excluded_names == {f"SIM{k:04d}" for k in range(10, 14)}
    assert fitter.fit(100)
    # Residual vector only covers included stars.
    assert fitter.residuals_px().shape == (10, 2)


def test_star_on_the_image_plane_is_excluded():
    scene = make_synthetic_scene(camera=_camera(), n_stars=10, noise_px=0.1, seed=12)
    # Camera-frame direction (1, 0, 0) has zero depth.
    r_bcrf = (
        rotation_bcrf_to_sez(scene.gmst, scene.lon, scene.lat).T
        @ quaternion_to_rotation_matrix(scene.q_sez_cam).T
        @ np.array([1.0, 0.0, 0.0])
    )
    edge = ReferenceStar(
        ra=math.atan2(r_bcrf[1], r_bcrf[0]), dec=math.asin(float(np.clip(r_bcrf[2], -1.0, 1.0))), mag=1.0, name="EDGE"
    )
    xms = list(scene.correspondences) + [Correspondence(source=Source(i=640.0, j=480.0), star=edge)]
    fitter = GeoCalFitter(scene.camera, scene.q_sez_cam, xms, scene.gmst, scene.lon, scene.lat)
    assert [(xm.star.name, reason) for xm, reason in fitter.excluded] == [("EDGE", "behind_camera")]
    assert fitter.N == 20
    assert np.all(np.isfinite(fitter.get_model()))
    assert fitter.fit(100)


def test_faint_stars_are_excluded():
    scene = make_synthetic_scene(camera=_camera(), n_stars=30, seed=5)
    fitter = _fitter(scene, faint_mag_limit=3.0)
    n_faint = sum(1 for xm in scene.correspondences if xm.star.mag > 3.0)
    assert n_faint > 0
    assert len(fitter.excluded) == n_faint
    assert all(reason == "faint" for _xm, reason in fitter.excluded)
    assert all(xm.star.mag <= 3.0 for xm in fitter.correspondences)
    assert fitter.N == 2 * (30 - n_faint)


def test_too_few_stars_raise_configuration_error():
    scene = make_synthetic_scene(camera=_camera(), n_stars=3, seed=6)
    fitter = _fitter(scene)
    assert fitter.N == 6 and fitter.M == 8
    with pytest.raises(ConfigurationError):
        fitter.fit(10)


@pytest.mark.parametrize("radial", [False, True])
def test_analytic_jacobian_matches_finite_differences(radial):
    camera = _camera()
    if radial:
        camera = PinholeCameraWithRadialDistortion(
            width_px=1280, height_px=960, fi=camera.fi, fj=camera.fj, pi=camera.pi, pj=camera.pj, k1=-0.1, k2=0.02
        )
    scene = make_synthetic_scene(camera=camera, n_stars=8, roll=0.4, seed=7)
    fitter = _fitter(scene)
    p_before = fitter.get_parameters()
    analytic = fitter.get_jacobian()
    assert analytic.shape == (fitter.N, fitter.M)

    fitter.analytic_jacobian = False
    fitter.finite_difference = "fourth_order"
    numeric = fitter.get_jacobian()
    scale = np.max(np.abs(analytic))
    assert np.max(np.abs(numeric - analytic)) < 1e-6 * scale
    assert np.allclose(fitter.get_parameters(), p_before, rtol=0, atol=1e-12)


def test_six_stars_two_degrees_off_converge_quickly():
    rng = np.random.default_rng(8)
    scene = make_synthetic_scene(camera=_camera(), n_stars=6, noise_px=0.2, margin_px=100.0, seed=8)
    q0 = perturb_quaternion(scene.q_sez_cam, math.radians(2.0), rng)
    fitter = _fitter(scene, q0=q0, variance_px2=0.2**2)
    assert fitter.N == 12 and fitter.M == 8

    assert fitter.fit(50)
    assert fitter.n_iterations <= 50
    assert fitter.n_accepted >= 1
    assert fitter.rms_residual_px() < 0.5
    assert quaternion_angle_between(fitter.orientation(), scene.q_sez_cam) < math.radians(0.5)


def test_covariance_is_symmetric_and_finite():
    scene = make_synthetic_scene(camera=_camera(), n_stars=25, noise_px=0.5, seed=9)
    fitter = _fitter(scene, variance_px2=0.25)
    assert fitter.fit(500)
    cov = fitter.get_parameter_covariance()
    assert cov.shape == (8, 8)
    assert np.all(np.isfinite(cov))
    assert np.allclose(cov, cov.T, atol=1e-12 * np.max(np.abs(cov)))
    err = fitter.get_asymptotic_standard_error()
    assert np.all(err[:4] > 0.0)
    # Focal length known to a fraction of a percent from 25 stars at 0.5 px.
    assert err[0] < 0.01 * fitter.camera_model().fi


@pytest.mark.integration
def test_covariance_matches_monte_carlo_scatter():
    sigma = 0.5
    base = make_synthetic_scene(camera=_camera(), n_stars=25, seed=10)
    rng = np.random.default_rng(11)

    fitted = []
    predicted = None
    for _ in range(60):
        noise = rng.normal(0.0, sigma, size=(25, 2))
        xms = [
            Correspondence(source=Source(i=xm.source.i + dn[0], j=xm.source.j + dn[1]), star=xm.star)
            for xm, dn in zip(base.correspondences, noise)
        ]
        fitter = GeoCalFitter(base.camera, base.q_sez_cam, xms, base.gmst, base.lon, base.lat, variance_px2=sigma**2)
        assert fitter.fit(500)
        fitted.append(fitter.camera_model().get_parameters())
        if predicted is None:
            predicted = fitter.get_asymptotic_standard_error()[:4] / math.sqrt(fitter.get_reduced_chi2())

    scatter = np.std(np.asarray(fitted), axis=0, ddof=1)
    ratio = scatter / predicted
    assert np.all(ratio > 0.6)
    assert np.all(ratio < 1.5)
