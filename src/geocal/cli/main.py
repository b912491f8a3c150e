from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path

import numpy as np

from geocal.api.calibration import calibrate, project_radec
from geocal.api.model_io import load_calibration, save_calibration, save_calibration_input
from geocal.core.camera import CAMERA_MODELS
from geocal.core.levenberg_marquardt import ConfigurationError
from geocal.meta import ConfigValidationError, load_calibration_input
from geocal.sim.synthetic import make_synthetic_scene, perturb_quaternion


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="geocal")
    sub = parser.add_subparsers(dest="cmd", required=True)

    cal = sub.add_parser("calibrate", help="Fit camera intrinsics and orientation to cross-matched stars.")
    cal.add_argument("input_json", type=Path)
    cal.add_argument("--out", type=Path, required=True, help="Output calibration JSON.")
    cal.add_argument("--verbose", action="store_true", help="Log solver progress.")

    sim = sub.add_parser("simulate", help="Write a synthetic calibration input with known ground truth.")
    sim.add_argument("--out", type=Path, required=True)
    sim.add_argument("--width", type=int, default=1280)
    sim.add_argument("--height", type=int, default=960)
    sim.add_argument("--focal-mm", type=float, default=8.0)
    sim.add_argument("--pixel-um", type=float, default=3.75)
    sim.add_argument("--model", type=str, default="pinhole", choices=sorted(CAMERA_MODELS))
    sim.add_argument("--az-deg", type=float, default=0.0, help="Boresight azimuth, east of north.")
    sim.add_argument("--el-deg", type=float, default=45.0)
    sim.add_argument("--roll-deg", type=float, default=0.0)
    sim.add_argument("--lon-deg", type=float, default=-3.19)
    sim.add_argument("--lat-deg", type=float, default=55.95)
    sim.add_argument("--gmst-hours", type=float, default=4.0)
    sim.add_argument("--stars", type=int, default=30)
    sim.add_argument("--behind", type=int, default=0, help="Extra stars placed behind the camera.")
    sim.add_argument("--noise-px", type=float, default=0.5)
    sim.add_argument("--perturb-deg", type=float, default=2.0, help="Rotation applied to the written initial orientation.")
    sim.add_argument("--seed", type=int, default=0)

    proj = sub.add_parser("project", help="Project a sky direction through a fitted calibration.")
    proj.add_argument("calibration_json", type=Path)
    proj.add_argument("--ra-deg", type=float, required=True)
    proj.add_argument("--dec-deg", type=float, required=True)

    args = parser.parse_args(argv)

    if args.cmd == "calibrate":
        _configure_logging(bool(args.verbose))
        try:
            inp = load_calibration_input(args.input_json)
        except ConfigValidationError as e:
            print(f"Invalid input: {e}")
            return 2
        try:
            result = calibrate(
                camera=inp.camera.to_camera(),
                q_sez_cam=inp.pointing.quaternion(),
                correspondences=inp.correspondences,
                gmst=inp.time.gmst_rad,
                lon=math.radians(inp.station.longitude_deg),
                lat=math.radians(inp.station.latitude_deg),
                faint_mag_limit=inp.solver.faint_mag_limit,
                sigma_px=inp.solver.sigma_px,
                max_iterations=inp.solver.max_iterations,
                analytic_jacobian=inp.solver.analytic_jacobian,
                exit_tolerance=inp.solver.exit_tolerance,
                max_damping=inp.solver.max_damping,
                boost_shrink_factor=inp.solver.boost_shrink_factor,
                verbose=bool(args.verbose),
            )
        except ConfigurationError as e:
            print(f"Cannot calibrate: {e}")
            return 2
        save_calibration(args.out, result)
        print(result.summary())
        print(f"Wrote {args.out}")
        return 0 if result.converged else 1

    if args.cmd == "simulate":
        camera = CAMERA_MODELS[args.model].from_physical(
            focal_length=args.focal_mm * 1e-3,
            pixel_width=args.pixel_um * 1e-6,
            pixel_height=args.pixel_um * 1e-6,
            width_px=args.width,
            height_px=args.height,
        )
        gmst_hours = float(args.gmst_hours) % 24.0
        scene = make_synthetic_scene(
            camera=camera,
            az=math.radians(args.az_deg),
            el=math.radians(args.el_deg),
            roll=math.radians(args.roll_deg),
            gmst=gmst_hours * math.pi / 12.0,
            lon=math.radians(args.lon_deg),
            lat=math.radians(args.lat_deg),
            n_stars=args.stars,
            n_behind=args.behind,
            noise_px=args.noise_px,
            seed=args.seed,
        )
        rng = np.random.default_rng(args.seed + 1)
        q0 = perturb_quaternion(scene.q_sez_cam, math.radians(args.perturb_deg), rng)
        save_calibration_input(
            args.out,
            camera=camera,
            q_sez_cam=q0,
            correspondences=scene.correspondences,
            longitude_deg=args.lon_deg,
            latitude_deg=args.lat_deg,
            gmst_hours=gmst_hours,
            solver={"sigma_px": max(float(args.noise_px), 1e-3)},
        )
        print(f"True q_sez_cam: {np.array2string(scene.q_sez_cam, precision=8)}")
        print(f"Wrote {args.out}")
        return 0

    if args.cmd == "project":
        result = load_calibration(args.calibration_json)
        ij = project_radec(result, np.radians(args.ra_deg), np.radians(args.dec_deg))[0]
        if not np.all(np.isfinite(ij)):
            print("Direction is behind the camera")
            return 1
        inside = bool(result.camera.in_image(ij[None, :])[0])
        print(f"i={ij[0]:.3f} j={ij[1]:.3f} ({'inside' if inside else 'outside'} image)")
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
