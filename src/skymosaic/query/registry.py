"""
Query hash registry.

Maps a Query Hash to the canonical query it was computed from. The hash
covers the canonical query together with the hash of the database it was
registered against, so a rebuilt database never resolves stale hashes to
new data.
"""

import copy
import hashlib
import json
import threading
from collections import OrderedDict
from typing import Optional, Protocol

from ..errors import NotFoundError

HASH_LENGTH = 32


def query_hash(canonical_spec: dict) -> str:
    """Hash of a canonical query spec (which embeds the database hash)."""
    payload = json.dumps(canonical_spec, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:HASH_LENGTH]


class QueryRegistry(Protocol):
    def add(self, key: str, spec: dict) -> None: ...

    def get(self, key: str) -> Optional[dict]: ...


class InMemoryQueryRegistry:
    """Thread-safe in-process registry.

    ``max_entries=None`` keeps every registration for the lifetime of the
    process; a bound evicts the oldest registration first. Nothing is
    persisted across restarts.
    """

    def __init__(self, max_entries: Optional[int] = None):
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: OrderedDict = OrderedDict()
        self._lock = threading.Lock()

    def add(self, key: str, spec: dict) -> None:
        with self._lock:
            # Same hash, same canonical spec: last writer wins
            self._entries[key] = copy.deepcopy(spec)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            spec = self._entries.get(key)
        return None if spec is None else copy.deepcopy(spec)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._entries


def resolve(registry: QueryRegistry, key: str) -> dict:
    """Stored spec for ``key`` or NotFoundError."""
    spec = registry.get(key)
    if spec is None:
        raise NotFoundError(f"Unknown query hash: {key}")
    return spec
