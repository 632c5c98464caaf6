"""Tile and feature serializers."""

from . import geojson

__all__ = ["geojson"]
