"""
Nested HEALPix pixelization helpers.

Order k has nside = 2**k and 12 * 4**k cells. In the nested scheme the
four children of cell p at order k are 4p .. 4p+3 at order k+1, so every
descendant range is contiguous and ancestors are a bit shift away.
"""

import functools

import healpy as hp
import numpy as np

from .models import SkyCell

BASE_CELLS = 12


def npix(order: int) -> int:
    """Number of cells at ``order``."""
    return BASE_CELLS * 4**order


class HealpixScheme:
    """Cell addressing and outlines for orders 0..max_order."""

    def __init__(self, max_order: int, boundary_step: int = 16):
        self.max_order = max_order
        self.boundary_step = boundary_step

    def is_valid(self, cell: SkyCell) -> bool:
        order, pix = cell
        if order < 0 or order > self.max_order:
            return False
        return 0 <= pix < npix(order)

    def steps_for(self, order: int) -> int:
        """Boundary samples per edge; coarser cells need more."""
        return max(1, self.boundary_step >> order)

    def center(self, cell: SkyCell) -> np.ndarray:
        """Unit vector at the cell centre."""
        return _center(cell.order, cell.pix)

    def outline(self, cell: SkyCell) -> np.ndarray:
        """Unit vectors along the cell boundary, shape (N, 3), counter-clockwise."""
        return _outline(cell.order, cell.pix, self.steps_for(cell.order))

    @staticmethod
    def cells_in_cap(order: int, center: np.ndarray, radius: float) -> list[int]:
        """Cells at ``order`` overlapping a spherical cap (radius in radians).

        Inclusive: the result may contain cells that only touch the cap's
        bounding region, never fewer.
        """
        pixels = hp.query_disc(
            hp.order2nside(order),
            np.asarray(center, dtype=float),
            float(radius),
            inclusive=True,
            nest=True,
        )
        return sorted(int(p) for p in pixels)

    @staticmethod
    def descendant_range(cell: SkyCell, order: int) -> tuple[int, int]:
        """Half-open pix range of the descendants of ``cell`` at ``order``."""
        shift = 2 * (order - cell.order)
        return cell.pix << shift, (cell.pix + 1) << shift

    @staticmethod
    def ancestor(cell: SkyCell, order: int) -> int:
        """Pix of the ancestor of ``cell`` at the coarser ``order``."""
        return cell.pix >> (2 * (cell.order - order))

    @staticmethod
    def cell_of(lon: float, lat: float, order: int) -> int:
        """Cell containing a (lon, lat) position in degrees."""
        return int(
            hp.ang2pix(hp.order2nside(order), lon, lat, nest=True, lonlat=True)
        )


@functools.lru_cache(maxsize=8192)
def _center(order: int, pix: int) -> np.ndarray:
    x, y, z = hp.pix2vec(hp.order2nside(order), pix, nest=True)
    return np.array([float(x), float(y), float(z)])


@functools.lru_cache(maxsize=8192)
def _outline(order: int, pix: int, step: int) -> np.ndarray:
    corners = hp.boundaries(hp.order2nside(order), pix, step=step, nest=True)
    return np.ascontiguousarray(np.asarray(corners, dtype=float).T)
