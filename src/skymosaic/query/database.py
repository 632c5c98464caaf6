"""
Read-only handle on a built survey database.

A database is a single DuckDB file with three tables:

    meta(key, value)              JSON-encoded build metadata
    features(id, geometry, ...)   one row per footprint, WKB geometry,
                                  one typed column per survey field
    feature_cells(feature_id, pix) HEALPix cells (at the index order)
                                  each footprint intersects
"""

import copy
import json
import logging
import os
import threading
from typing import Optional

import duckdb

from ..errors import InternalError, NotFoundError
from .models import DatabaseInfo, SurveyConfig

logger = logging.getLogger(__name__)

_REQUIRED_META = ("content_hash", "config", "extra_info", "index_order", "engine_version")


def _read_meta(conn: duckdb.DuckDBPyConnection) -> dict:
    rows = conn.execute("SELECT key, value FROM meta").fetchall()
    meta = {key: json.loads(value) for key, value in rows}
    missing = [key for key in _REQUIRED_META if key not in meta]
    if missing:
        raise InternalError(f"Database metadata incomplete, missing {missing}")
    return meta


def _connect(path: str) -> tuple[duckdb.DuckDBPyConnection, dict]:
    if not os.path.exists(path):
        raise NotFoundError(f"No database at {path}")
    try:
        conn = duckdb.connect(path, read_only=True)
    except duckdb.Error as e:
        raise InternalError(f"Cannot open database {path}: {e}") from e
    try:
        return conn, _read_meta(conn)
    except (duckdb.Error, ValueError) as e:
        conn.close()
        raise InternalError(f"Cannot read database metadata from {path}: {e}") from e
    except InternalError:
        conn.close()
        raise


def _info_from_meta(meta: dict) -> DatabaseInfo:
    return DatabaseInfo(
        content_hash=meta["content_hash"],
        engine_version=meta["engine_version"],
        index_order=meta["index_order"],
        feature_count=meta.get("feature_count", 0),
        skipped_count=meta.get("skipped_count", 0),
        extra_info=meta["extra_info"],
    )


def inspect(path: str) -> DatabaseInfo:
    """Read a database's metadata without keeping it open."""
    conn, meta = _connect(str(path))
    conn.close()
    return _info_from_meta(meta)


class Database:
    """Shared read-only database; hand out one cursor per concurrent caller."""

    def __init__(self, path: str, conn: duckdb.DuckDBPyConnection, meta: dict):
        self.path = path
        self._conn: Optional[duckdb.DuckDBPyConnection] = conn
        self._meta = meta
        self._lock = threading.Lock()
        self._survey_config = SurveyConfig.model_validate(meta["config"])

    @classmethod
    def open(cls, path: str) -> "Database":
        path = str(path)
        conn, meta = _connect(path)
        logger.info(
            "Opened database %s (content hash %s, %d features)",
            path,
            meta["content_hash"],
            meta.get("feature_count", 0),
        )
        return cls(path, conn, meta)

    @property
    def content_hash(self) -> str:
        return self._meta["content_hash"]

    @property
    def extra_info(self) -> dict:
        return copy.deepcopy(self._meta["extra_info"])

    @property
    def config(self) -> dict:
        """Survey schema and presentation rules, as ingested."""
        return copy.deepcopy(self._meta["config"])

    @property
    def survey_config(self) -> SurveyConfig:
        return self._survey_config

    @property
    def index_order(self) -> int:
        return int(self._meta["index_order"])

    @property
    def feature_count(self) -> int:
        return int(self._meta.get("feature_count", 0))

    @property
    def info(self) -> DatabaseInfo:
        return _info_from_meta(self._meta)

    @property
    def closed(self) -> bool:
        return self._conn is None

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """An independent cursor; close it when done."""
        with self._lock:
            if self._conn is None:
                raise InternalError(f"Database {self.path} is closed")
            return self._conn.cursor()

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
