from geocal import meta
from geocal.api import CalibrationResult, calibrate, load_calibration, pixel_to_radec, project_radec, save_calibration
from geocal.core.geocal_fitter import GeoCalFitter
from geocal.core.levenberg_marquardt import ConfigurationError, LevenbergMarquardtSolver

__all__ = [
    "meta",
    "CalibrationResult",
    "ConfigurationError",
    "GeoCalFitter",
    "LevenbergMarquardtSolver",
    "calibrate",
    "load_calibration",
    "save_calibration",
    "project_radec",
    "pixel_to_radec",
]
