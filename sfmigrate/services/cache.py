"""Read-through JSON cache of query results keyed by query hash."""

import hashlib
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from ..models.record import Record

logger = logging.getLogger(__name__)


class RecordCache:
    """
    Caches query results on disk.

    A hit skips the remote call entirely; entries never expire, delete the
    cache directory to refresh.
    """

    def __init__(self, directory: str, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(endpoint: str, query: str) -> str:
        return hashlib.sha1(f"{endpoint}\n{query}".encode("utf-8")).hexdigest()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, endpoint: str, query: str) -> Optional[List[Record]]:
        if not self.enabled:
            return None
        path = self._path(self.make_key(endpoint, query))
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return [Record(r) for r in json.load(f)]

    def put(self, endpoint: str, query: str, records: List[Record]) -> None:
        if not self.enabled:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(self.make_key(endpoint, query))
        with open(path, "w", encoding="utf-8") as f:
            json.dump([dict(r) for r in records], f, default=str)

    async def read_through(
        self,
        endpoint: str,
        query: str,
        fetch: Callable[[], Awaitable[List[Record]]],
    ) -> List[Record]:
        """Return cached records or fetch, store and return them."""
        cached = self.get(endpoint, query)
        if cached is not None:
            self.hits += 1
            logger.info(f"Cache hit for query: {query[:80]}")
            return cached
        self.misses += 1
        records = await fetch()
        self.put(endpoint, query, records)
        return records
