from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from geocal.core.camera import MIN_DEPTH, PinholeCamera
from geocal.core.coordinates import cartesian_to_spherical, east_of_south_to_east_of_north, spherical_to_cartesian

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Source:
    """A source detected in an image: position in image coordinates and integrated brightness."""

    i: float
    j: float
    brightness: float = 0.0


@dataclass(frozen=True)
class ReferenceStar:
    """A catalogue star; right ascension and declination in radians."""

    ra: float
    dec: float
    mag: float
    name: str = ""

    def unit_vector_bcrf(self) -> np.ndarray:
        return spherical_to_cartesian(1.0, self.ra, self.dec)


@dataclass(frozen=True)
class Correspondence:
    source: Source
    star: ReferenceStar


@dataclass(frozen=True)
class ProjectedStar:
    """A reference star projected into an image for a given camera pose."""

    star: ReferenceStar
    i: float
    j: float
    az: float  # east of north [rad]
    el: float  # [rad]


def star_unit_vectors(stars: Sequence[ReferenceStar]) -> np.ndarray:
    """(K,3) BCRF unit vectors."""
    if len(stars) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    ra = np.array([s.ra for s in stars], dtype=np.float64)
    dec = np.array([s.dec for s in stars], dtype=np.float64)
    return spherical_to_cartesian(np.ones_like(ra), ra, dec)


def split_by_magnitude(
    correspondences: Iterable[Correspondence], faint_mag_limit: float | None
) -> tuple[list[Correspondence], list[Correspondence]]:
    """(kept, faint): faint reference stars have mag > faint_mag_limit."""
    kept: list[Correspondence] = []
    faint: list[Correspondence] = []
    for xm in correspondences:
        if faint_mag_limit is not None and xm.star.mag > faint_mag_limit:
            faint.append(xm)
        else:
            kept.append(xm)
    return kept, faint


def project_reference_stars(
    catalogue: Sequence[ReferenceStar],
    *,
    camera: PinholeCamera,
    r_bcrf_sez: np.ndarray,
    r_sez_cam: np.ndarray,
    faint_mag_limit: float | None = None,
) -> list[ProjectedStar]:
    """
    Project catalogue stars into the image. Stars fainter than the limit, behind the camera
    or outside the image bounds are omitted.
    """
    stars = [s for s in catalogue if faint_mag_limit is None or s.mag <= faint_mag_limit]
    if not stars:
        return []
    r_bcrf = star_unit_vectors(stars)
    r_sez = r_bcrf @ np.asarray(r_bcrf_sez, dtype=np.float64).T
    r_cam = r_sez @ np.asarray(r_sez_cam, dtype=np.float64).T

    front = r_cam[:, 2] > MIN_DEPTH
    ij = np.full((len(stars), 2), np.nan, dtype=np.float64)
    ij[front] = camera.project(r_cam[front])
    visible = front & camera.in_image(ij)

    _r, theta, el = cartesian_to_spherical(r_sez)
    az = east_of_south_to_east_of_north(theta)

    out: list[ProjectedStar] = []
    for k in np.flatnonzero(visible):
        out.append(
            ProjectedStar(star=stars[k], i=float(ij[k, 0]), j=float(ij[k, 1]), az=float(az[k]), el=float(el[k]))
        )
    return out


def crossmatch(
    sources: Sequence[Source],
    projected: Sequence[ProjectedStar],
    *,
    max_distance_px: float,
) -> list[Correspondence]:
    """
    One-to-one nearest-neighbour matching of detected sources to projected reference stars.

    Candidate pairs within `max_distance_px` are accepted in order of increasing distance,
    each source and each star being used at most once.
    """
    from scipy.spatial import cKDTree  # type: ignore

    if max_distance_px <= 0:
        raise ValueError("max_distance_px must be > 0")
    if not sources or not projected:
        return []

    src_ij = np.array([[s.i, s.j] for s in sources], dtype=np.float64)
    ref_ij = np.array([[p.i, p.j] for p in projected], dtype=np.float64)
    tree = cKDTree(ref_ij)
    pairs: list[tuple[float, int, int]] = []
    for si, neighbours in enumerate(tree.query_ball_point(src_ij, r=float(max_distance_px))):
        for ri in neighbours:
            pairs.append((float(np.hypot(*(src_ij[si] - ref_ij[ri]))), si, ri))
    pairs.sort()

    used_src: set[int] = set()
    used_ref: set[int] = set()
    matches: list[Correspondence] = []
    for _d, si, ri in pairs:
        if si in used_src or ri in used_ref:
            continue
        used_src.add(si)
        used_ref.add(ri)
        matches.append(Correspondence(source=sources[si], star=projected[ri].star))
    logger.debug("crossmatch: %d sources, %d stars -> %d matches", len(sources), len(projected), len(matches))
    return matches
