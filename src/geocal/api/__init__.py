from geocal.api.calibration import CalibrationResult, calibrate, pixel_to_radec, project_radec
from geocal.api.model_io import load_calibration, save_calibration, save_calibration_input

__all__ = [
    "CalibrationResult",
    "calibrate",
    "project_radec",
    "pixel_to_radec",
    "load_calibration",
    "save_calibration",
    "save_calibration_input",
]
