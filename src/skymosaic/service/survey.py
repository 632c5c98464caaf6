"""
Survey service: the boundary a transport layer (HTTP routes, CLI) talks to.

Wires the database, the query engine, the tile generator, the query
registry and the worker pool together, and tracks the startup status:

    starting -> loading data -> ready
                             -> error
"""

import logging
from typing import Optional, Union

from ..config import EngineSettings, get_settings
from ..errors import EngineBusyError, NotFoundError, SkyMosaicError
from ..query.database import Database
from ..query.engine import QueryEngine
from ..query.geometry import GeometryBackend
from ..query.lifecycle import DatabaseState, prepare_database
from ..query.models import ServerInfo
from ..query.registry import InMemoryQueryRegistry, QueryRegistry, query_hash, resolve
from ..query.tiles import TileGenerator
from .pool import WorkerPool

logger = logging.getLogger(__name__)

STATUS_STARTING = "starting"
STATUS_LOADING = "loading data"
STATUS_READY = "ready"
STATUS_ERROR = "error"
STATUS_STOPPED = "stopped"


class SurveyService:
    """Query, register and tile one survey database."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        registry: Optional[QueryRegistry] = None,
        geometry: Optional[GeometryBackend] = None,
    ):
        self.settings = settings or get_settings()
        if registry is None:
            registry = InMemoryQueryRegistry(self.settings.registry_max_entries)
        self.registry = registry
        self.geometry = geometry
        self.status = STATUS_STARTING
        self.database: Optional[Database] = None
        self.engine: Optional[QueryEngine] = None
        self.tiles: Optional[TileGenerator] = None
        self.pool: Optional[WorkerPool] = None

    @classmethod
    def open(cls, db_path: str, **kwargs) -> "SurveyService":
        """Service over an already built database."""
        service = cls(**kwargs)
        service.attach(db_path)
        return service

    def start(
        self,
        data_dir: str,
        db_path: str,
        server_info: Union[ServerInfo, dict],
        force: bool = False,
    ) -> DatabaseState:
        """Rebuild the database if needed, then start serving it."""

        def _loading(state: DatabaseState):
            self.status = STATUS_LOADING

        try:
            state, _ = prepare_database(
                data_dir,
                db_path,
                server_info,
                force=force,
                settings=self.settings,
                on_rebuild=_loading,
            )
            self.attach(db_path)
        except SkyMosaicError:
            self.status = STATUS_ERROR
            raise
        return state

    def attach(self, db_path: str):
        database = Database.open(db_path)
        self.database = database
        self.engine = QueryEngine(database)
        self.tiles = TileGenerator(database, self.geometry, self.settings)
        if self.pool is None:
            self.pool = WorkerPool(
                self.settings.worker_count,
                self.settings.queue_size,
                self.settings.task_timeout_seconds,
            )
        self.status = STATUS_READY
        logger.info("Survey service ready (content hash %s)", database.content_hash)

    def _require_ready(self):
        if self.status != STATUS_READY:
            raise EngineBusyError(f"Service is {self.status}")

    @property
    def content_hash(self) -> str:
        self._require_ready()
        return self.database.content_hash

    @property
    def extra_info(self) -> dict:
        self._require_ready()
        return self.database.extra_info

    @property
    def config(self) -> dict:
        self._require_ready()
        return self.database.config

    def _check_database_hash(self, database_hash: Optional[str]):
        if database_hash is not None and database_hash != self.database.content_hash:
            raise NotFoundError(f"Unknown database hash: {database_hash}")

    def query(self, spec, database_hash: Optional[str] = None) -> dict:
        """Evaluate a query; ``database_hash``, if given, must be the active one."""
        self._require_ready()
        self._check_database_hash(database_hash)
        compiled = self.engine.compile(spec)
        return self.pool.run(self.engine.query, compiled)

    async def query_async(self, spec, database_hash: Optional[str] = None) -> dict:
        self._require_ready()
        self._check_database_hash(database_hash)
        compiled = self.engine.compile(spec)
        return await self.pool.run_async(self.engine.query, compiled)

    def register_query(self, spec) -> str:
        """Store a canonical query and return its Query Hash."""
        self._require_ready()
        canonical = self.engine.compile(spec).canonical()
        canonical["databaseHash"] = self.database.content_hash
        key = query_hash(canonical)
        self.registry.add(key, canonical)
        logger.debug("Registered query %s", key)
        return key

    def resolve_query(self, key: str) -> dict:
        """Deep copy of a registered query; NotFoundError if unknown."""
        return resolve(self.registry, key)

    def fetch_tile(self, key: str, order: int, pix: int) -> bytes:
        self._require_ready()
        spec = self.resolve_query(key)
        return self.pool.run(self.tiles.fetch_tile, spec, order, pix)

    async def fetch_tile_async(self, key: str, order: int, pix: int) -> bytes:
        self._require_ready()
        spec = self.resolve_query(key)
        return await self.pool.run_async(self.tiles.fetch_tile, spec, order, pix)

    def manifest(self, key: str) -> str:
        """HiPS properties, only served for a registered query."""
        self._require_ready()
        self.resolve_query(key)
        return self.tiles.manifest()

    def close(self):
        if self.pool is not None:
            self.pool.shutdown()
            self.pool = None
        if self.database is not None:
            self.database.close()
        self.status = STATUS_STOPPED

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
