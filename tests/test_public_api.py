from __future__ import annotations


def test_public_api_exports() -> None:
    import geocal as gc

    assert hasattr(gc, "calibrate")
    assert hasattr(gc, "CalibrationResult")
    assert hasattr(gc, "GeoCalFitter")
    assert hasattr(gc, "LevenbergMarquardtSolver")
    assert hasattr(gc, "ConfigurationError")
    assert hasattr(gc, "load_calibration")
    assert hasattr(gc, "save_calibration")
    assert hasattr(gc, "project_radec")
    assert hasattr(gc, "pixel_to_radec")
    assert hasattr(gc.meta, "parse_calibration_input")
    assert issubclass(gc.ConfigurationError, ValueError)
