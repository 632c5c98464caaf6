"""
Core query engine. Evaluates attribute filters and aggregations against
the features table of a built database.

This is the ONLY place where aggregation SQL is constructed and executed.
Filters arrive as compiled predicate trees, so user values are always
bound as parameters.
"""

import logging
import math
from datetime import date, datetime

import duckdb

from ..errors import InternalError
from .database import Database
from .models import Aggregation
from .predicates import CompiledQuery, compile_query

logger = logging.getLogger(__name__)


def _json_scalar(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _column(field: str) -> str:
    return f'"{field}"'


class QueryEngine:
    """Attribute queries over one database."""

    def __init__(self, database: Database):
        self.database = database

    def compile(self, spec) -> CompiledQuery:
        if isinstance(spec, CompiledQuery):
            return spec
        return compile_query(spec, self.database.survey_config)

    def query(self, spec) -> dict:
        """
        Evaluate ``spec`` and return a dict keyed by each aggregation's
        ``out``. Without aggregations the result is ``{"count": n}``.
        """
        compiled = self.compile(spec)
        where_sql, params = compiled.where()
        cursor = self.database.cursor()
        try:
            if not compiled.aggregations:
                row = cursor.execute(
                    f"SELECT COUNT(*) FROM features WHERE {where_sql}", params
                ).fetchone()
                return {"count": int(row[0])}
            return {
                agg.out: self._aggregate(cursor, agg, where_sql, params)
                for agg in compiled.aggregations
            }
        except duckdb.Error as e:
            logger.error("Query failed: %s", e)
            raise InternalError(f"Query failed: {e}") from e
        finally:
            cursor.close()

    def count(self, spec) -> int:
        compiled = self.compile(spec)
        return self.query(
            CompiledQuery(compiled.predicate, (), (), compiled.database_hash)
        )["count"]

    def _aggregate(self, cursor, agg: Aggregation, where_sql: str, params: list):
        operation = agg.operation

        if operation == "COUNT":
            row = cursor.execute(
                f"SELECT COUNT(*) FROM features WHERE {where_sql}", params
            ).fetchone()
            return int(row[0])

        if operation == "IDS":
            rows = cursor.execute(
                f"SELECT id FROM features WHERE {where_sql} ORDER BY id", params
            ).fetchall()
            return [int(r[0]) for r in rows]

        col = _column(agg.field)

        if operation == "VALUES_AND_COUNT":
            rows = cursor.execute(
                f"SELECT {col}, COUNT(*) FROM features WHERE {where_sql} "
                f"GROUP BY {col} ORDER BY {col} NULLS LAST",
                params,
            ).fetchall()
            return [[_json_scalar(value), int(count)] for value, count in rows]

        if operation == "MIN_MAX":
            low, high = cursor.execute(
                f"SELECT MIN({col}), MAX({col}) FROM features WHERE {where_sql}",
                params,
            ).fetchone()
            return [_json_scalar(low), _json_scalar(high)]

        if operation in ("SUM", "AVG"):
            row = cursor.execute(
                f"SELECT {operation}({col}) FROM features WHERE {where_sql}", params
            ).fetchone()
            return None if row[0] is None else _json_scalar(float(row[0]))

        if operation == "NUMBER_HISTOGRAM":
            return self._number_histogram(cursor, agg, where_sql, params)

        if operation == "DATE_HISTOGRAM":
            # step is one of a fixed set of literals, checked by the model
            rows = cursor.execute(
                f"SELECT date_trunc('{agg.step}', {col}) AS bucket, COUNT(*) "
                f"FROM features WHERE ({where_sql}) AND {col} IS NOT NULL "
                f"GROUP BY bucket ORDER BY bucket",
                params,
            ).fetchall()
            return [[_bucket_label(bucket), int(count)] for bucket, count in rows]

        raise InternalError(f"Unsupported aggregation {operation}")

    @staticmethod
    def _number_histogram(cursor, agg: Aggregation, where_sql: str, params: list) -> dict:
        col = _column(agg.field)
        low, high, total = cursor.execute(
            f"SELECT MIN({col}), MAX({col}), COUNT({col}) FROM features WHERE {where_sql}",
            params,
        ).fetchone()
        if low is None:
            return {"min": None, "max": None, "step": None, "counts": []}

        low, high = float(low), float(high)
        counts = [0] * agg.bins
        if high == low:
            counts[0] = int(total)
            return {"min": low, "max": high, "step": 0.0, "counts": counts}

        step = (high - low) / agg.bins
        rows = cursor.execute(
            f"SELECT LEAST(CAST(FLOOR(({col} - ?) / ?) AS BIGINT), ?) AS bin, COUNT(*) "
            f"FROM features WHERE ({where_sql}) AND {col} IS NOT NULL GROUP BY bin",
            [low, step, agg.bins - 1] + params,
        ).fetchall()
        for index, count in rows:
            counts[int(index)] += int(count)
        return {"min": low, "max": high, "step": step, "counts": counts}


def _bucket_label(bucket) -> str:
    if isinstance(bucket, datetime):
        return bucket.date().isoformat()
    return _json_scalar(bucket)
