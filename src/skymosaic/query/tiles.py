"""
Hierarchical tile generator.

A tile is the set of features matching a query, clipped to one HEALPix
cell and encoded as GeoJSON. Candidate features come from the
precomputed ``feature_cells`` index:

- cell order <= index order: every indexed pix in the cell's nested
  descendant range
- cell order > index order: the single indexed ancestor pix

The all-sky address (-1, 0) returns unclipped, thinned and simplified
footprints for the coarsest view.
"""

import logging
import math
from typing import Optional

import duckdb
from shapely.errors import GEOSException

from ..config import EngineSettings, get_settings
from ..errors import InternalError, NotFoundError
from ..serializers import geojson
from .database import Database
from .geometry import GeometryBackend, GnomonicClipper, wkb_to_shapely
from .healpix import HealpixScheme
from .models import ALLSKY, SkyCell
from .predicates import CompiledQuery, compile_query

logger = logging.getLogger(__name__)

HIPS_VERSION = "1.4"


class TileGenerator:
    """Stateless per call; one instance may serve many threads."""

    def __init__(
        self,
        database: Database,
        geometry: Optional[GeometryBackend] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.database = database
        self.settings = settings or get_settings()
        self.scheme = HealpixScheme(self.settings.max_order, self.settings.boundary_step)
        self.geometry = geometry or GnomonicClipper(self.scheme)

    def compile(self, spec) -> CompiledQuery:
        if isinstance(spec, CompiledQuery):
            compiled = spec
        else:
            compiled = compile_query(spec, self.database.survey_config)
        if (
            compiled.database_hash is not None
            and compiled.database_hash != self.database.content_hash
        ):
            raise NotFoundError("Query was registered against another database")
        return compiled

    def fetch_tile(self, spec, order: int, pix: int) -> bytes:
        """GeoJSON bytes for the features of ``spec`` inside cell (order, pix)."""
        compiled = self.compile(spec)
        cell = SkyCell(order, pix)
        try:
            if cell == ALLSKY:
                features = self._allsky_features(compiled)
            elif self.scheme.is_valid(cell):
                features = self._cell_features(compiled, cell)
            else:
                raise NotFoundError(f"No sky cell at order {order}, pix {pix}")
        except duckdb.Error as e:
            logger.error("Tile %s/%s query failed: %s", order, pix, e)
            raise InternalError(f"Tile query failed: {e}") from e
        except GEOSException as e:
            logger.error("Tile %s/%s clipping failed: %s", order, pix, e)
            raise InternalError(f"Tile geometry failed: {e}") from e
        return geojson.encode(features, self.settings.coordinate_precision)

    def manifest(self) -> str:
        """HiPS ``properties`` text describing the tile hierarchy."""
        info = self.database.extra_info
        content_hash = self.database.content_hash
        entries = [
            ("creator_did", f"ivo://skymosaic/{content_hash}"),
            ("obs_title", info.get("title", "Survey coverage")),
            ("dataproduct_type", "catalog"),
            ("hips_version", HIPS_VERSION),
            ("hips_release_date", info.get("release_date", "")),
            ("hips_status", "public master clonableOnce"),
            ("hips_tile_format", "geojson"),
            ("hips_order", str(self.settings.max_order)),
            ("hips_order_min", "0"),
            ("hips_frame", "equatorial"),
            ("skymosaic_content_hash", content_hash),
            ("skymosaic_index_order", str(self.database.index_order)),
        ]
        return "".join(f"{key:<20} = {value}\n" for key, value in entries)

    def _select(self, compiled: CompiledQuery) -> str:
        columns = ["id", "geometry"] + [f'"{name}"' for name in compiled.properties]
        return ", ".join(columns)

    def _cell_features(self, compiled: CompiledQuery, cell: SkyCell) -> list[dict]:
        index_order = self.database.index_order
        if cell.order <= index_order:
            start, stop = self.scheme.descendant_range(cell, index_order)
            cell_sql = "pix >= ? AND pix < ?"
            cell_params = [start, stop]
        else:
            cell_sql = "pix = ?"
            cell_params = [self.scheme.ancestor(cell, index_order)]

        where_sql, params = compiled.where()
        rows = self._fetch(
            f"SELECT {self._select(compiled)} FROM features "
            f"WHERE id IN (SELECT feature_id FROM feature_cells WHERE {cell_sql}) "
            f"AND {where_sql} ORDER BY id",
            cell_params + params,
        )

        prepared = self.geometry.prepare(cell)
        features = []
        for row in rows:
            clipped = self.geometry.clip(wkb_to_shapely(row[1]), prepared)
            if clipped is None:
                continue
            features.append(self._feature(row, clipped, compiled))
        return features

    def _allsky_features(self, compiled: CompiledQuery) -> list[dict]:
        where_sql, params = compiled.where()
        total = self._fetch(f"SELECT COUNT(*) FROM features WHERE {where_sql}", params)[0][0]
        stride = max(1, math.ceil(total / self.settings.allsky_max_features))
        rows = self._fetch(
            f"SELECT * EXCLUDE (rn) FROM ("
            f"SELECT {self._select(compiled)}, row_number() OVER (ORDER BY id) - 1 AS rn "
            f"FROM features WHERE {where_sql}) WHERE rn % ? = 0 ORDER BY id",
            params + [stride],
        )
        tolerance = self.settings.allsky_simplify_tolerance
        return [
            self._feature(row, self.geometry.simplify(wkb_to_shapely(row[1]), tolerance), compiled)
            for row in rows
        ]

    def _fetch(self, sql: str, params: list) -> list[tuple]:
        cursor = self.database.cursor()
        try:
            return cursor.execute(sql, params).fetchall()
        finally:
            cursor.close()

    @staticmethod
    def _feature(row: tuple, geometry, compiled: CompiledQuery) -> dict:
        properties = {"id": int(row[0])}
        for name, value in zip(compiled.properties, row[2:]):
            properties[name] = value
        return {"geometry": geometry, "properties": properties}
