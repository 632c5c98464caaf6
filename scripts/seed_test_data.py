#!/usr/bin/env python3
"""
Create a sample survey data directory for development.

Usage:
    python scripts/seed_test_data.py [DATA_DIR]

Writes survey_config.json and two footprint collections of random
rectangular pointings, then builds data/survey.duckdb from them.
"""

import json
import os
import random
import sys
from datetime import datetime, timedelta

from skymosaic import __version__
from skymosaic.query.builder import build
from skymosaic.query.models import ServerInfo

SURVEY_CONFIG = {
    "fields": [
        {"id": "survey", "name": "Survey", "type": "string", "widget": "tags"},
        {"id": "band", "name": "Band", "type": "string", "widget": "tags"},
        {"id": "exptime", "name": "Exposure", "type": "number", "source": "EXPTIME"},
        {"id": "obs_date", "name": "Date", "type": "date", "widget": "date_range"},
        {"id": "exptime_h", "type": "number", "computed": "exptime / 3600"},
    ],
}


def pointing(ra, dec, size):
    """Rectangular footprint centred on (ra, dec), size in degrees."""
    half = size / 2
    ring = [
        [ra - half, dec - half],
        [ra + half, dec - half],
        [ra + half, dec + half],
        [ra - half, dec + half],
        [ra - half, dec - half],
    ]
    return {"type": "Polygon", "coordinates": [ring]}


def seed_collection(path, survey, n, seed):
    """Write a collection of ``n`` random pointings."""
    random.seed(seed)
    start = datetime(2020, 1, 1)
    features = []
    for _ in range(n):
        ra = random.uniform(0, 360)
        dec = random.uniform(-70, 70)
        features.append(
            {
                "type": "Feature",
                "geometry": pointing(ra, dec, random.uniform(0.5, 3.0)),
                "properties": {
                    "survey": survey,
                    "band": random.choice(["g", "r", "i", "z"]),
                    "EXPTIME": round(random.uniform(30, 900), 1),
                    "obs_date": (start + timedelta(days=random.randint(0, 1000))).isoformat(),
                },
            }
        )
    with open(path, "w") as f:
        json.dump({"type": "FeatureCollection", "features": features}, f)
    print(f"Created {path} with {n} {survey} pointings")


def main():
    data_dir = sys.argv[1] if len(sys.argv) > 1 else "data/sample"
    os.makedirs(data_dir, exist_ok=True)
    with open(os.path.join(data_dir, "survey_config.json"), "w") as f:
        json.dump(SURVEY_CONFIG, f, indent=2)

    seed_collection(os.path.join(data_dir, "wide.geojson"), "WIDE", 1000, 42)
    seed_collection(os.path.join(data_dir, "deep.geojson"), "DEEP", 200, 43)

    info = build(
        data_dir,
        os.path.join("data", "survey.duckdb"),
        ServerInfo(version=__version__, data_revision="sample", code_revision=__version__),
    )
    print(f"Seed data complete! content hash {info.content_hash}")


if __name__ == "__main__":
    main()
