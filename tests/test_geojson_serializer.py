"""Tests for the GeoJSON tile serializer."""

import json
from datetime import date, datetime

from shapely.geometry import Polygon

from skymosaic.serializers import geojson


def tile_feature(**properties):
    return {
        "geometry": Polygon([(0.1234567891, 1.0), (2.0, -0.0000000001), (2.0, 2.0)]),
        "properties": {"id": 7, **properties},
    }


class TestSerialize:
    def test_empty(self):
        assert geojson.serialize([]) == {"type": "FeatureCollection", "features": []}

    def test_coordinates_rounded(self):
        data = geojson.serialize([tile_feature()], precision=6)
        ring = data["features"][0]["geometry"]["coordinates"][0]
        assert ring[0] == (0.123457, 1.0)

    def test_negative_zero_normalized(self):
        payload = geojson.encode([tile_feature()], precision=6)
        assert b"-0.0" not in payload

    def test_property_values(self):
        data = geojson.serialize([tile_feature(
            when=datetime(2021, 3, 10, 12, 30),
            day=date(2021, 3, 10),
            nan=float("nan"),
            blob=b"\x00",
        )])
        props = data["features"][0]["properties"]
        assert props["when"] == "2021-03-10T12:30:00"
        assert props["day"] == "2021-03-10"
        assert props["nan"] is None
        assert props["blob"] is None


class TestEncode:
    def test_deterministic_bytes(self):
        features = [tile_feature(survey="A", exptime=1.5)]
        assert geojson.encode(features) == geojson.encode(features)

    def test_sorted_compact(self):
        payload = geojson.encode([tile_feature(survey="A")])
        assert payload.startswith(b'{"features":[{"geometry":{"coordinates":')
        assert b'"properties":{"id":7,"survey":"A"}' in payload
        assert b", " not in payload
        assert json.loads(payload)["type"] == "FeatureCollection"
