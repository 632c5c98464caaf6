"""
Ingestion builder.

Turns a directory of GeoJSON footprint collections plus a survey schema
into a versioned, read-only DuckDB database:

1. Load and validate ``survey_config.json`` (or ``.yml``)
2. Visit every collection file in sorted order, normalizing footprints
   and converting field values; malformed features are skipped
3. Precompute per-feature HEALPix cell membership at the index order
4. Write tables into a temporary file, evaluate derived fields with
   DuckDB, then atomically move the file into place
"""

import json
import logging
import os
import tempfile
from typing import Optional, Union

import duckdb
import pyarrow as pa
import yaml
from pydantic import ValidationError

from .. import __version__
from ..config import EngineSettings, get_settings
from ..errors import IngestionError, MalformedFeatureError
from .geometry import (
    GeometryBackend,
    GnomonicClipper,
    footprint_cap,
    normalize_footprint,
    shapely_to_wkb,
)
from .healpix import HealpixScheme
from .models import DatabaseInfo, FieldSpec, ServerInfo, SkyCell, SurveyConfig
from .predicates import coerce_value, sanitize_sql_expression

logger = logging.getLogger(__name__)

ENGINE_VERSION = __version__

SCHEMA_FILENAMES = ("survey_config.json", "survey_config.yml", "survey_config.yaml")
COLLECTION_SUFFIXES = (".geojson", ".json")

_DUCKDB_TYPES = {
    "string": "VARCHAR",
    "number": "DOUBLE",
    "date": "TIMESTAMP",
    "boolean": "BOOLEAN",
}

_ARROW_TYPES = {
    "string": pa.string(),
    "number": pa.float64(),
    "date": pa.timestamp("us"),
    "boolean": pa.bool_(),
}


def load_survey_config(data_dir: str) -> SurveyConfig:
    """Read and validate the survey schema at the root of ``data_dir``."""
    for name in SCHEMA_FILENAMES:
        path = os.path.join(data_dir, name)
        if os.path.isfile(path):
            break
    else:
        raise IngestionError(f"No survey config found in {data_dir}")

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise IngestionError(f"Cannot read survey config {path}: {e}") from e

    try:
        config = SurveyConfig.model_validate(raw)
    except ValidationError as e:
        raise IngestionError(f"Invalid survey config {path}: {e}") from e

    for spec in config.fields:
        if spec.computed is None:
            continue
        try:
            sanitize_sql_expression(spec.computed)
        except ValueError as e:
            raise IngestionError(f"Computed field {spec.id}: {e}") from e
    return config


def collection_files(data_dir: str) -> list[str]:
    """Relative paths of all collection files, in visiting order."""
    if not os.path.isdir(data_dir):
        raise IngestionError(f"Data directory {data_dir} is not readable")

    def _fail(error):
        raise IngestionError(f"Cannot walk data directory {data_dir}: {error}")

    paths = []
    for root, dirs, files in os.walk(data_dir, onerror=_fail):
        # Skip VCS metadata and other hidden directories
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in files:
            if not name.lower().endswith(COLLECTION_SUFFIXES):
                continue
            rel = os.path.relpath(os.path.join(root, name), data_dir)
            if rel in SCHEMA_FILENAMES:
                continue
            paths.append(rel.replace(os.sep, "/"))
    return sorted(paths)


def _load_collection(path: str) -> list:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise IngestionError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict) or data.get("type") != "FeatureCollection":
        raise IngestionError(f"{path} is not a GeoJSON FeatureCollection")
    features = data.get("features")
    if not isinstance(features, list):
        raise IngestionError(f"{path} has no features list")
    return features


def convert_property(spec: FieldSpec, value):
    """Convert a raw property value to the field's declared type."""
    if value is None:
        return None
    if spec.type == "boolean" and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        raise ValueError(f"expected a boolean, got {value!r}")
    if spec.type == "number" and isinstance(value, str):
        value = float(value)
    return coerce_value(spec, value)


def read_feature(raw, config: SurveyConfig):
    """Normalize one raw GeoJSON feature into (footprint, values)."""
    if not isinstance(raw, dict) or raw.get("type") != "Feature":
        raise MalformedFeatureError("not a GeoJSON Feature")
    footprint = normalize_footprint(raw.get("geometry"))

    properties = raw.get("properties") or {}
    if not isinstance(properties, dict):
        raise MalformedFeatureError("properties is not an object")

    values = {}
    for spec in config.fields:
        if spec.computed is not None:
            continue
        try:
            values[spec.id] = convert_property(spec, properties.get(spec.source_key))
        except ValueError as e:
            raise MalformedFeatureError(f"field {spec.id}: {e}") from e
    return footprint, values


class _CellIndexer:
    """Exact cell membership of footprints at one order."""

    def __init__(self, order: int, scheme: HealpixScheme, backend: GeometryBackend):
        self.order = order
        self.scheme = scheme
        self.backend = backend
        self._prepared = {}

    def cells(self, footprint) -> list[int]:
        center, radius = footprint_cap(footprint)
        candidates = self.scheme.cells_in_cap(self.order, center, radius)
        cells = [pix for pix in candidates if self.backend.intersects(footprint, self._cell(pix))]
        # The index must stay conservative; never lose a footprint entirely
        return cells or candidates

    def _cell(self, pix: int):
        prepared = self._prepared.get(pix)
        if prepared is None:
            prepared = self.backend.prepare(SkyCell(self.order, pix))
            self._prepared[pix] = prepared
        return prepared


def _remove_quietly(path: str):
    for candidate in (path, path + ".wal"):
        if os.path.exists(candidate):
            os.remove(candidate)


def _write_database(
    path: str,
    config: SurveyConfig,
    features: pa.Table,
    cells: pa.Table,
    meta: dict,
):
    conn = duckdb.connect(path)
    try:
        columns = ['id BIGINT PRIMARY KEY', 'geometry BLOB NOT NULL']
        columns += [f'"{spec.id}" {_DUCKDB_TYPES[spec.type]}' for spec in config.fields]
        conn.execute(f"CREATE TABLE features ({', '.join(columns)})")
        conn.register("staged_features", features)
        conn.execute("INSERT INTO features SELECT * FROM staged_features")
        conn.unregister("staged_features")

        for spec in config.fields:
            if spec.computed is None:
                continue
            try:
                conn.execute(
                    f'UPDATE features SET "{spec.id}" = '
                    f"CAST(({spec.computed}) AS {_DUCKDB_TYPES[spec.type]})"
                )
            except duckdb.Error as e:
                raise IngestionError(f"Computed field {spec.id} failed: {e}") from e

        conn.execute("CREATE TABLE feature_cells (feature_id BIGINT NOT NULL, pix BIGINT NOT NULL)")
        conn.register("staged_cells", cells)
        conn.execute("INSERT INTO feature_cells SELECT * FROM staged_cells")
        conn.unregister("staged_cells")
        conn.execute("CREATE INDEX feature_cells_pix ON feature_cells (pix)")

        conn.execute("CREATE TABLE meta (key VARCHAR PRIMARY KEY, value VARCHAR NOT NULL)")
        conn.executemany(
            "INSERT INTO meta VALUES (?, ?)",
            [[key, json.dumps(value, sort_keys=True)] for key, value in sorted(meta.items())],
        )
        conn.execute("CHECKPOINT")
    finally:
        conn.close()


def build(
    data_dir: str,
    db_path: str,
    server_info: Union[ServerInfo, dict],
    settings: Optional[EngineSettings] = None,
    geometry: Optional[GeometryBackend] = None,
) -> DatabaseInfo:
    """Build a database from ``data_dir`` at ``db_path``.

    Raises IngestionError when the build cannot complete; a database
    previously present at ``db_path`` is then left untouched.
    """
    settings = settings or get_settings()
    if isinstance(server_info, dict):
        server_info = ServerInfo.model_validate(server_info)
    data_dir = str(data_dir)
    db_path = str(db_path)

    config = load_survey_config(data_dir)
    content_hash = server_info.content_hash()
    scheme = HealpixScheme(settings.max_order, settings.boundary_step)
    indexer = _CellIndexer(settings.index_order, scheme, geometry or GnomonicClipper(scheme))

    logger.info("Building database %s from %s (content hash %s)", db_path, data_dir, content_hash)

    ids, geometries = [], []
    values = {spec.id: [] for spec in config.fields}
    cell_ids, cell_pix = [], []
    skipped = 0

    for rel in collection_files(data_dir):
        try:
            raw_features = _load_collection(os.path.join(data_dir, rel))
        except IngestionError as e:
            logger.warning("Skipping collection %s: %s", rel, e)
            continue

        accepted = 0
        for index, raw in enumerate(raw_features):
            try:
                footprint, row = read_feature(raw, config)
            except MalformedFeatureError as e:
                skipped += 1
                logger.warning("Skipping feature %d of %s: %s", index, rel, e)
                continue

            feature_id = len(ids)
            ids.append(feature_id)
            geometries.append(shapely_to_wkb(footprint))
            for spec in config.fields:
                values[spec.id].append(row.get(spec.id))
            for pix in indexer.cells(footprint):
                cell_ids.append(feature_id)
                cell_pix.append(pix)
            accepted += 1
        logger.info("Loaded %d features from %s", accepted, rel)

    columns = {
        "id": pa.array(ids, type=pa.int64()),
        "geometry": pa.array(geometries, type=pa.binary()),
    }
    for spec in config.fields:
        columns[spec.id] = pa.array(values[spec.id], type=_ARROW_TYPES[spec.type])
    features = pa.table(columns)
    cells = pa.table({
        "feature_id": pa.array(cell_ids, type=pa.int64()),
        "pix": pa.array(cell_pix, type=pa.int64()),
    })

    extra_info = server_info.model_dump()
    extra_info["contentHash"] = content_hash
    meta = {
        "content_hash": content_hash,
        "extra_info": extra_info,
        "config": config.to_public_dict(),
        "index_order": settings.index_order,
        "engine_version": ENGINE_VERSION,
        "feature_count": len(ids),
        "skipped_count": skipped,
    }

    target_dir = os.path.dirname(os.path.abspath(db_path))
    try:
        os.makedirs(target_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".skymosaic-", suffix=".duckdb", dir=target_dir)
    except OSError as e:
        raise IngestionError(f"Cannot write to {target_dir}: {e}") from e
    os.close(fd)
    # DuckDB refuses to open an existing empty file as a database
    os.remove(tmp_path)

    try:
        _write_database(tmp_path, config, features, cells, meta)
        os.replace(tmp_path, db_path)
    except duckdb.Error as e:
        _remove_quietly(tmp_path)
        raise IngestionError(f"Cannot write database {db_path}: {e}") from e
    except BaseException:
        _remove_quietly(tmp_path)
        raise

    logger.info(
        "Database %s ready: %d features, %d skipped, %d cell entries",
        db_path,
        len(ids),
        skipped,
        len(cell_ids),
    )
    return DatabaseInfo(
        content_hash=content_hash,
        engine_version=ENGINE_VERSION,
        index_order=settings.index_order,
        feature_count=len(ids),
        skipped_count=skipped,
        extra_info=extra_info,
    )
