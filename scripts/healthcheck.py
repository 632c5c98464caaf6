#!/usr/bin/env python3
"""
Health check script for container health probes.

Usage:
    python scripts/healthcheck.py [DB_PATH]

Checks that the survey database exists, opens read-only and answers a
count query. Exits 0 on success, 1 on failure.
"""

import os
import sys

from skymosaic.errors import SkyMosaicError
from skymosaic.query.database import Database
from skymosaic.query.engine import QueryEngine


def check_database(db_path):
    """Check the database is readable and queryable."""
    try:
        with Database.open(db_path) as database:
            result = QueryEngine(database).query({})
        return result["count"] == database.feature_count
    except SkyMosaicError:
        return False


def main():
    db_path = sys.argv[1] if len(sys.argv) > 1 else os.environ.get(
        "SKYMOSAIC_DB", "data/survey.duckdb"
    )

    if check_database(db_path):
        print(f"{db_path}: healthy")
        sys.exit(0)
    else:
        print(f"{db_path}: unhealthy", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
