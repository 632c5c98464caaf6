"""
Serialize tile features -> GeoJSON FeatureCollection bytes.

Output is deterministic: keys sorted, compact separators and coordinates
rounded to a fixed number of decimals, so identical inputs always give
byte-identical tiles.
"""

import json
import math
from datetime import date, datetime

import numpy as np
import shapely
from shapely.geometry import mapping

SEPARATORS = (",", ":")


def serialize(features: list[dict], precision: int = 6) -> dict:
    """Convert tile features to a GeoJSON FeatureCollection.

    Each feature is a dict with ``geometry`` (a Shapely geometry) and
    ``properties``.
    """
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": _round_geometry(feature["geometry"], precision),
                "properties": {
                    key: _to_json_safe(value)
                    for key, value in feature["properties"].items()
                },
            }
            for feature in features
        ],
    }


def encode(features: list[dict], precision: int = 6) -> bytes:
    """Serialize to canonical UTF-8 JSON bytes."""
    return dumps(serialize(features, precision)).encode("utf-8")


def dumps(data) -> str:
    return json.dumps(data, sort_keys=True, separators=SEPARATORS, allow_nan=False)


def _round_geometry(geom, precision: int):
    if geom is None:
        return None
    # Adding 0.0 turns -0.0 into 0.0
    rounded = shapely.transform(geom, lambda coords: np.round(coords, precision) + 0.0)
    return mapping(rounded)


def _to_json_safe(val):
    """Convert database values to JSON-serializable Python types."""
    if val is None:
        return None
    if isinstance(val, (bytes, bytearray)):
        return None
    if isinstance(val, (datetime, date)):
        return val.isoformat()
    if isinstance(val, float) and not math.isfinite(val):
        return None
    if hasattr(val, "as_py"):
        return _to_json_safe(val.as_py())
    return val
