"""Survey query engine: shared data access layer."""

from .builder import build
from .database import Database, inspect
from .engine import QueryEngine
from .lifecycle import DatabaseState, prepare_database, resolve_code_revision
from .models import ALLSKY, DatabaseInfo, ServerInfo, SkyCell, SurveyConfig
from .registry import InMemoryQueryRegistry, QueryRegistry, query_hash
from .tiles import TileGenerator

__all__ = [
    "build",
    "Database",
    "inspect",
    "QueryEngine",
    "DatabaseState",
    "prepare_database",
    "resolve_code_revision",
    "ALLSKY",
    "DatabaseInfo",
    "ServerInfo",
    "SkyCell",
    "SurveyConfig",
    "InMemoryQueryRegistry",
    "QueryRegistry",
    "query_hash",
    "TileGenerator",
]
