from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class RadialDistortion:
    """
    Two-term radial distortion on normalized camera coordinates (x=X/Z, y=Y/Z):

      xd = x (1 + k1 r^2 + k2 r^4)
      yd = y (1 + k1 r^2 + k2 r^4)
    """

    k1: float = 0.0
    k2: float = 0.0

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
        return x * radial, y * radial

    def undistort(self, xd: np.ndarray, yd: np.ndarray, iterations: int = 7) -> tuple[np.ndarray, np.ndarray]:
        """
        Iterative inverse of distort() for small/moderate distortion.
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        x = xd.copy()
        y = yd.copy()
        for _ in range(int(iterations)):
            x_est, y_est = self.distort(x, y)
            x += xd - x_est
            y += yd - y_est
        return x, y

    def jacobian_xy(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """d(xd, yd)/d(x, y), shape (..., 2, 2)."""
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
        g = 2.0 * (self.k1 + 2.0 * self.k2 * r2)
        jac = np.empty(x.shape + (2, 2), dtype=np.float64)
        jac[..., 0, 0] = radial + g * x * x
        jac[..., 0, 1] = g * x * y
        jac[..., 1, 0] = g * x * y
        jac[..., 1, 1] = radial + g * y * y
        return jac

    def jacobian_coeffs(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """d(xd, yd)/d(k1, k2), shape (..., 2, 2)."""
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        r4 = r2 * r2
        jac = np.empty(x.shape + (2, 2), dtype=np.float64)
        jac[..., 0, 0] = x * r2
        jac[..., 0, 1] = x * r4
        jac[..., 1, 0] = y * r2
        jac[..., 1, 1] = y * r4
        return jac
