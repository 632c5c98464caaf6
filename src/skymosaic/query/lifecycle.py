"""
Database rebuild decision.

On startup the service compares the content hash of the database on disk
with the hash the current data and code would produce:

    NO_DATABASE  nothing usable on disk      -> build
    STALE        hash differs (or forced)    -> rebuild
    FRESH        hash matches                -> reuse as is
"""

import enum
import logging
import os
from typing import Callable, Optional, Union

from .. import __version__
from ..config import EngineSettings
from ..errors import InternalError, NotFoundError
from .builder import build
from .database import inspect
from .models import DatabaseInfo, ServerInfo

logger = logging.getLogger(__name__)

CODE_REVISION_FILE = "extraVersionHash.txt"


class DatabaseState(enum.Enum):
    NO_DATABASE = "no_database"
    STALE = "stale"
    FRESH = "fresh"


def resolve_code_revision(root: Optional[str] = None) -> str:
    """Revision of the code, read from extraVersionHash.txt when present."""
    if root is not None:
        path = os.path.join(root, CODE_REVISION_FILE)
        if os.path.isfile(path):
            with open(path, encoding="utf-8") as f:
                revision = f.read().strip()
            if revision:
                return revision
    return __version__


def assess_database(db_path: str, server_info: ServerInfo) -> DatabaseState:
    """Classify the database at ``db_path`` against ``server_info``."""
    if server_info.data_local_modifications:
        # Locally modified data never matches a previous build
        return DatabaseState.STALE if os.path.exists(db_path) else DatabaseState.NO_DATABASE
    try:
        info = inspect(db_path)
    except NotFoundError:
        return DatabaseState.NO_DATABASE
    except InternalError as e:
        logger.warning("Existing database %s is unreadable: %s", db_path, e)
        return DatabaseState.NO_DATABASE
    if info.content_hash != server_info.content_hash():
        return DatabaseState.STALE
    return DatabaseState.FRESH


def prepare_database(
    data_dir: str,
    db_path: str,
    server_info: Union[ServerInfo, dict],
    force: bool = False,
    settings: Optional[EngineSettings] = None,
    on_rebuild: Optional[Callable[[DatabaseState], None]] = None,
) -> tuple[DatabaseState, DatabaseInfo]:
    """Build the database unless an up-to-date one already exists.

    ``on_rebuild`` is called with the assessed state just before a build
    starts. Returns the assessed state and the metadata of the database
    now on disk.
    """
    if isinstance(server_info, dict):
        server_info = ServerInfo.model_validate(server_info)
    db_path = str(db_path)

    state = assess_database(db_path, server_info)
    if state is DatabaseState.FRESH and force:
        state = DatabaseState.STALE

    if state is DatabaseState.FRESH:
        logger.info("No data/code change since last build: reusing %s", db_path)
        return state, inspect(db_path)

    logger.info("Database %s is %s: rebuilding", db_path, state.value)
    if on_rebuild is not None:
        on_rebuild(state)
    return state, build(data_dir, db_path, server_info, settings=settings)
