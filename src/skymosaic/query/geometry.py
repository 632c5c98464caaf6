"""
Spherical footprint geometry.

Handles:
- (lon, lat) <-> unit vector conversion
- Footprint normalization at ingestion (longitude wrapping, degenerate shapes)
- WKB <-> Shapely geometry conversion
- Footprint / sky-cell intersection and clipping

Footprints are stored as Shapely polygons in (lon, lat) degrees with
continuous longitudes, but their edges are great-circle arcs. Clipping
therefore happens in a gnomonic projection about the cell centre, where
great circles are straight lines and Shapely's planar operations are exact.
"""

import dataclasses
import functools
import math
from typing import Iterator, Optional, Protocol, Union

import numpy as np
import shapely
from shapely import wkb
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry import mapping as geojson_mapping
from shapely.geometry.base import BaseGeometry
from shapely.validation import make_valid

from ..errors import MalformedFeatureError
from .healpix import HealpixScheme
from .models import SkyCell

Footprint = Union[Polygon, MultiPolygon]

# A footprint part may reach at most this far from its own centroid
MAX_FOOTPRINT_RADIUS_DEG = 80.0
# Footprints are cut to this cap around a cell centre before projecting
CLIP_CAP_RADIUS_DEG = 85.0

_MAX_FOOTPRINT_COS = math.cos(math.radians(MAX_FOOTPRINT_RADIUS_DEG))
_CLIP_CAP_COS = math.cos(math.radians(CLIP_CAP_RADIUS_DEG))
_DUPLICATE_EPS = 1e-12
_AREA_EPS = 1e-14

_X_AXIS = np.array([1.0, 0.0, 0.0])
_Z_AXIS = np.array([0.0, 0.0, 1.0])


def lonlat_to_vectors(coords) -> np.ndarray:
    """Convert (lon, lat) degree pairs to unit vectors, shape (N, 3)."""
    arr = np.asarray(coords, dtype=float).reshape(-1, 2)
    lon = np.radians(arr[:, 0])
    lat = np.radians(arr[:, 1])
    cos_lat = np.cos(lat)
    return np.column_stack(
        (cos_lat * np.cos(lon), cos_lat * np.sin(lon), np.sin(lat))
    )


def vectors_to_lonlat(vectors) -> np.ndarray:
    """Convert vectors to (lon, lat) degrees with lon in [0, 360)."""
    vecs = np.atleast_2d(np.asarray(vectors, dtype=float))
    vecs = vecs / np.linalg.norm(vecs, axis=1)[:, None]
    lon = np.degrees(np.arctan2(vecs[:, 1], vecs[:, 0])) % 360.0
    lat = np.degrees(np.arcsin(np.clip(vecs[:, 2], -1.0, 1.0)))
    return np.column_stack((lon, lat))


def unwrap_longitudes(lons, reference: Optional[float] = None) -> np.ndarray:
    """Make a longitude sequence continuous (steps within +/-180 degrees).

    The first value is placed in [0, 360), or within 180 degrees of
    ``reference`` when one is given.
    """
    lons = np.asarray(lons, dtype=float)
    if lons.size == 0:
        return lons
    steps = (np.diff(lons) + 180.0) % 360.0 - 180.0
    out = np.concatenate(([lons[0]], lons[0] + np.cumsum(steps)))
    if reference is None:
        out -= 360.0 * math.floor(out[0] / 360.0)
    else:
        out -= 360.0 * round((out[0] - reference) / 360.0)
    return out


def wkb_to_shapely(wkb_bytes: bytes):
    """Decode WKB to Shapely geometry."""
    return wkb.loads(wkb_bytes)


def shapely_to_wkb(geom) -> bytes:
    """Encode Shapely geometry to WKB."""
    return wkb.dumps(geom)


def to_geojson(geom) -> dict:
    """Shapely geometry to GeoJSON geometry dict."""
    return geojson_mapping(geom)


class TangentFrame:
    """Gnomonic projection about a point of the unit sphere."""

    def __init__(self, center):
        normal = np.asarray(center, dtype=float)
        normal = normal / np.linalg.norm(normal)
        ref = _Z_AXIS if abs(normal[2]) < 0.9 else _X_AXIS
        east = np.cross(ref, normal)
        east /= np.linalg.norm(east)
        self.normal = normal
        self.east = east
        self.north = np.cross(normal, east)

    def project(self, vectors) -> np.ndarray:
        vecs = np.atleast_2d(vectors)
        depth = vecs @ self.normal
        return np.column_stack(
            (vecs @ self.east / depth, vecs @ self.north / depth)
        )

    def unproject(self, xy) -> np.ndarray:
        xy = np.atleast_2d(np.asarray(xy, dtype=float))
        vecs = self.normal + xy[:, :1] * self.east + xy[:, 1:2] * self.north
        return vecs / np.linalg.norm(vecs, axis=1)[:, None]


def mean_direction(vectors) -> Optional[np.ndarray]:
    """Normalized mean of unit vectors, or None when they cancel out."""
    total = np.asarray(vectors, dtype=float).sum(axis=0)
    norm = np.linalg.norm(total)
    if norm < 1e-12:
        return None
    return total / norm


def _clip_to_cap(vectors: np.ndarray, normal: np.ndarray, min_cos: float) -> np.ndarray:
    """Sutherland-Hodgman clip of an open ring against the cap v.n >= min_cos.

    Crossing points are found on the chord and pushed back onto the sphere,
    which keeps them on the great-circle edge.
    """
    depth = vectors @ normal
    out = []
    count = len(vectors)
    for i in range(count):
        cur, prev = vectors[i], vectors[i - 1]
        d_cur, d_prev = depth[i], depth[i - 1]
        if d_cur >= min_cos:
            if d_prev < min_cos:
                out.append(_crossing(prev, cur, d_prev, d_cur, min_cos))
            out.append(cur)
        elif d_prev >= min_cos:
            out.append(_crossing(prev, cur, d_prev, d_cur, min_cos))
    return np.array(out).reshape(-1, 3)


def _crossing(a, b, d_a, d_b, min_cos) -> np.ndarray:
    t = (min_cos - d_a) / (d_b - d_a)
    point = a + t * (b - a)
    return point / np.linalg.norm(point)


def _dedupe_ring(vectors: np.ndarray) -> np.ndarray:
    """Drop consecutive duplicate vertices, including a closing vertex."""
    kept = []
    for vec in vectors:
        if kept and np.linalg.norm(vec - kept[-1]) < _DUPLICATE_EPS:
            continue
        kept.append(vec)
    while len(kept) > 1 and np.linalg.norm(kept[-1] - kept[0]) < _DUPLICATE_EPS:
        kept.pop()
    return np.array(kept).reshape(-1, 3)


def _normalize_ring(ring, reference: Optional[float]) -> Optional[list]:
    try:
        pts = np.asarray(ring, dtype=float)
    except (TypeError, ValueError):
        raise MalformedFeatureError("non-numeric ring coordinates")
    if pts.ndim != 2 or pts.shape[0] == 0 or pts.shape[1] < 2:
        raise MalformedFeatureError("ring is not a list of positions")
    pts = pts[:, :2]
    if not np.all(np.isfinite(pts)):
        raise MalformedFeatureError("non-finite ring coordinates")
    if np.any(np.abs(pts[:, 1]) > 90.0):
        raise MalformedFeatureError("latitude out of range")

    vecs = _dedupe_ring(lonlat_to_vectors(pts))
    if len(vecs) < 3:
        return None
    lonlat = vectors_to_lonlat(vecs)
    closed = np.append(lonlat[:, 0], lonlat[0, 0])
    unwrapped = unwrap_longitudes(closed)
    if abs(unwrapped[-1] - unwrapped[0]) > 180.0:
        raise MalformedFeatureError(
            "ring encloses a celestial pole; pole-enclosing footprints are not "
            "supported by this engine"
        )
    lons = unwrap_longitudes(lonlat[:, 0], reference)
    return list(zip(lons.tolist(), lonlat[:, 1].tolist()))


def _normalize_polygon(rings) -> Optional[Polygon]:
    if not isinstance(rings, (list, tuple)) or not rings:
        raise MalformedFeatureError("polygon without rings")
    exterior = _normalize_ring(rings[0], reference=None)
    if exterior is None:
        return None

    vecs = lonlat_to_vectors(exterior)
    center = mean_direction(vecs)
    if center is None or np.min(vecs @ center) < _MAX_FOOTPRINT_COS:
        raise MalformedFeatureError(
            f"footprint wider than {MAX_FOOTPRINT_RADIUS_DEG:g} degrees"
        )
    if Polygon(TangentFrame(center).project(vecs)).area < _AREA_EPS:
        return None

    holes = []
    for ring in rings[1:]:
        hole = _normalize_ring(ring, reference=exterior[0][0])
        if hole is not None:
            holes.append(hole)
    return Polygon(exterior, holes)


def normalize_footprint(geometry) -> Footprint:
    """Turn a GeoJSON geometry dict into a normalized footprint.

    Degenerate parts are dropped; a footprint with no usable part, an
    unsupported geometry type or invalid coordinates raises
    MalformedFeatureError.
    """
    if not isinstance(geometry, dict):
        raise MalformedFeatureError("missing geometry")
    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if geom_type == "Polygon":
        raw_polygons = [coords]
    elif geom_type == "MultiPolygon":
        raw_polygons = coords
    else:
        raise MalformedFeatureError(f"unsupported geometry type {geom_type!r}")
    if not isinstance(raw_polygons, (list, tuple)):
        raise MalformedFeatureError("geometry without coordinates")

    polygons = []
    for raw in raw_polygons:
        polygon = _normalize_polygon(raw)
        if polygon is not None:
            polygons.append(polygon)
    if not polygons:
        raise MalformedFeatureError("degenerate footprint")
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def footprint_parts(footprint) -> list[Polygon]:
    if isinstance(footprint, Polygon):
        return [footprint]
    return list(footprint.geoms)


def footprint_cap(footprint: Footprint) -> tuple[np.ndarray, float]:
    """Smallest-effort bounding cap (centre vector, radius in radians)."""
    coords = []
    for polygon in footprint_parts(footprint):
        coords.extend(polygon.exterior.coords)
    vecs = lonlat_to_vectors(coords)
    center = mean_direction(vecs)
    if center is None:
        return vecs[0], math.pi
    min_cos = float(np.min(vecs @ center))
    if min_cos <= 0.0:
        return center, math.pi
    return center, math.acos(min(min_cos, 1.0)) + 1e-9


def _polygonal_parts(geom) -> list[Polygon]:
    if geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom] if geom.area > _AREA_EPS else []
    if hasattr(geom, "geoms"):
        parts = []
        for sub in geom.geoms:
            parts.extend(_polygonal_parts(sub))
        return parts
    return []


def _as_valid(polygon: Polygon):
    return polygon if polygon.is_valid else make_valid(polygon)


@functools.lru_cache(maxsize=8192)
def _nested_region(scheme: HealpixScheme, cell: SkyCell) -> np.ndarray:
    """Cell outline cut to its parent's region, as unit vectors.

    Outlines are sampled more coarsely at deeper orders, so a child's
    raw outline can bulge past its parent's chords. Intersecting with the
    parent's region keeps every cell inside all of its ancestors.
    """
    outline = scheme.outline(cell)
    if cell.order == 0:
        return outline
    parent = _nested_region(scheme, SkyCell(cell.order - 1, cell.pix >> 2))
    frame = TangentFrame(scheme.center(cell))
    own = _as_valid(Polygon(frame.project(outline)))
    inherited = _as_valid(
        Polygon(frame.project(_clip_to_cap(parent, frame.normal, _CLIP_CAP_COS)))
    )
    parts = _polygonal_parts(own.intersection(inherited))
    if not parts:
        return outline
    largest = max(parts, key=lambda part: part.area)
    return frame.unproject(np.asarray(largest.exterior.coords)[:-1])


@dataclasses.dataclass(frozen=True)
class PreparedCell:
    """A sky cell projected once, reusable across many footprints."""

    cell: SkyCell
    frame: TangentFrame
    outline: Polygon
    anchor_lon: float


class GeometryBackend(Protocol):
    """Geometry capability needed by the builder and the tile generator."""

    def prepare(self, cell: SkyCell) -> PreparedCell: ...

    def intersects(self, footprint: Footprint, cell: PreparedCell) -> bool: ...

    def clip(self, footprint: Footprint, cell: PreparedCell) -> Optional[Footprint]: ...

    def simplify(self, footprint: Footprint, tolerance: float) -> BaseGeometry: ...


class GnomonicClipper:
    """Clip footprints to HEALPix cells in a gnomonic projection."""

    def __init__(self, scheme: HealpixScheme):
        self.scheme = scheme

    def prepare(self, cell: SkyCell) -> PreparedCell:
        center = self.scheme.center(cell)
        frame = TangentFrame(center)
        outline = _as_valid(Polygon(frame.project(_nested_region(self.scheme, cell))))
        shapely.prepare(outline)
        anchor_lon = float(vectors_to_lonlat(center)[0, 0])
        return PreparedCell(cell, frame, outline, anchor_lon)

    def intersects(self, footprint: Footprint, cell: PreparedCell) -> bool:
        for projected in self._project(footprint, cell.frame):
            if cell.outline.intersects(projected):
                return True
        return False

    def clip(self, footprint: Footprint, cell: PreparedCell) -> Optional[Footprint]:
        """Exact intersection of ``footprint`` with the cell, None if empty."""
        pieces = []
        for projected in self._project(footprint, cell.frame):
            if not cell.outline.intersects(projected):
                continue
            pieces.extend(_polygonal_parts(projected.intersection(cell.outline)))
        if not pieces:
            return None
        polygons = [self._unproject_polygon(piece, cell) for piece in pieces]
        if len(polygons) == 1:
            return polygons[0]
        return MultiPolygon(polygons)

    def simplify(self, footprint: Footprint, tolerance: float) -> BaseGeometry:
        if tolerance <= 0:
            return footprint
        simplified = footprint.simplify(tolerance, preserve_topology=True)
        return footprint if simplified.is_empty else simplified

    def _project(self, footprint: Footprint, frame: TangentFrame) -> Iterator[BaseGeometry]:
        for polygon in footprint_parts(footprint):
            exterior = self._project_ring(polygon.exterior.coords, frame)
            if exterior is None:
                continue
            holes = [
                hole
                for hole in (
                    self._project_ring(ring.coords, frame)
                    for ring in polygon.interiors
                )
                if hole is not None
            ]
            projected = Polygon(exterior, holes)
            if not projected.is_valid:
                projected = make_valid(projected)
            if not projected.is_empty:
                yield projected

    @staticmethod
    def _project_ring(coords, frame: TangentFrame) -> Optional[np.ndarray]:
        vecs = lonlat_to_vectors(list(coords)[:-1])
        clipped = _clip_to_cap(vecs, frame.normal, _CLIP_CAP_COS)
        if len(clipped) < 3:
            return None
        return frame.project(clipped)

    @staticmethod
    def _unproject_ring(coords, cell: PreparedCell) -> list:
        xy = np.asarray(coords, dtype=float)[:-1]
        lonlat = vectors_to_lonlat(cell.frame.unproject(xy))
        lons = unwrap_longitudes(lonlat[:, 0], reference=cell.anchor_lon)
        return list(zip(lons.tolist(), lonlat[:, 1].tolist()))

    def _unproject_polygon(self, piece: Polygon, cell: PreparedCell) -> Polygon:
        return Polygon(
            self._unproject_ring(piece.exterior.coords, cell),
            [self._unproject_ring(ring.coords, cell) for ring in piece.interiors],
        )
