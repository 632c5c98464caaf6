"""Survey coverage engine: footprint ingestion, attribute queries and HEALPix tiles."""

__version__ = "0.3.0"
