"""Tests for nested HEALPix addressing."""

import numpy as np
import pytest

from skymosaic.query.healpix import HealpixScheme, npix
from skymosaic.query.models import ALLSKY, SkyCell


@pytest.fixture
def scheme():
    return HealpixScheme(max_order=12, boundary_step=16)


class TestAddressing:
    def test_npix(self):
        assert npix(0) == 12
        assert npix(3) == 768

    @pytest.mark.parametrize(
        "cell,valid",
        [
            (SkyCell(0, 0), True),
            (SkyCell(0, 11), True),
            (SkyCell(0, 12), False),
            (SkyCell(12, npix(12) - 1), True),
            (SkyCell(13, 0), False),
            (SkyCell(2, -1), False),
            (ALLSKY, False),
        ],
    )
    def test_is_valid(self, scheme, cell, valid):
        assert scheme.is_valid(cell) is valid

    def test_allsky(self):
        assert ALLSKY.is_allsky
        assert not SkyCell(0, 0).is_allsky

    def test_descendant_range(self):
        assert HealpixScheme.descendant_range(SkyCell(0, 1), 2) == (16, 32)
        assert HealpixScheme.descendant_range(SkyCell(3, 5), 3) == (5, 6)

    def test_ancestor(self):
        assert HealpixScheme.ancestor(SkyCell(2, 17), 0) == 1
        assert HealpixScheme.ancestor(SkyCell(5, 1234), 5) == 1234

    def test_ancestor_inverts_descendant_range(self):
        start, stop = HealpixScheme.descendant_range(SkyCell(1, 7), 4)
        assert {HealpixScheme.ancestor(SkyCell(4, p), 1) for p in range(start, stop)} == {7}

    def test_base_cells(self):
        assert HealpixScheme.cell_of(45, 40, 0) == 0
        assert HealpixScheme.cell_of(135, 40, 0) == 1
        assert HealpixScheme.cell_of(0, 0, 0) == 4
        assert HealpixScheme.cell_of(45, -40, 0) == 8


class TestGeometry:
    def test_center_is_unit_vector(self, scheme):
        center = scheme.center(SkyCell(4, 100))
        assert np.linalg.norm(center) == pytest.approx(1.0)

    def test_outline_samples(self, scheme):
        # boundary_step 16 at order 0, halved per order, at least 1
        assert scheme.outline(SkyCell(0, 0)).shape == (64, 3)
        assert scheme.outline(SkyCell(2, 0)).shape == (16, 3)
        assert scheme.outline(SkyCell(8, 0)).shape == (4, 3)

    def test_cells_in_cap_contains_center_cell(self, scheme):
        center = scheme.center(SkyCell(4, 300))
        cells = HealpixScheme.cells_in_cap(4, center, np.radians(0.1))
        assert 300 in cells
        assert cells == sorted(cells)
