"""Time-bounded ISBN metadata cache with in-flight request coalescing.

Concurrent lookups for the same ISBN share one ``asyncio.Task``; every final
result (found or not) is cached for ``ttl_seconds``. Expired entries are
dropped lazily on the next access.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from boekenbaai.config import Settings, settings as default_settings
from boekenbaai.normalize import empty_metadata, normalize_barcode, normalize_isbn_metadata
from boekenbaai.services.isbn_sources import MetadataSource, build_default_sources

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Dict[str, Any]
    expires_at: float


class IsbnMetadataCache:
    """Resolve bibliographic metadata for barcodes through the configured sources."""

    def __init__(
        self,
        sources: Optional[Sequence[MetadataSource]] = None,
        ttl_seconds: float = 300,
        source_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sources: List[MetadataSource] = list(sources or [])
        self.ttl_seconds = ttl_seconds
        self.source_timeout = source_timeout
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.cache_stats = {
            "hits": 0,
            "misses": 0,
            "coalesced": 0,
            "outbound": 0,
        }

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "IsbnMetadataCache":
        config = config or default_settings
        return cls(
            sources=build_default_sources(config),
            ttl_seconds=config.isbn_cache_ttl,
            source_timeout=config.isbn_lookup_timeout,
        )

    @staticmethod
    def cache_key(isbn: Any) -> str:
        sanitized = normalize_barcode(isbn)
        if sanitized:
            return sanitized
        raw = "" if isbn is None else str(isbn).strip().lower()
        return f"invalid:{raw}"

    async def lookup(self, isbn: Any) -> Dict[str, Any]:
        """Return metadata for ``isbn``; never raises for source failures."""
        key = self.cache_key(isbn)

        cached = self._get_cached(key)
        if cached is not None:
            self.cache_stats["hits"] += 1
            return cached
        self.cache_stats["misses"] += 1

        if key.startswith("invalid:"):
            result = empty_metadata("", source="none")
            self._store(key, result)
            return copy.deepcopy(result)

        # No await between the check and the insert, so this is atomic on the loop.
        task = self._inflight.get(key)
        if task is not None and not task.done():
            self.cache_stats["coalesced"] += 1
        else:
            task = asyncio.ensure_future(self._resolve(key))
            self._inflight[key] = task
        result = await asyncio.shield(task)
        return copy.deepcopy(result)

    def _get_cached(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return copy.deepcopy(entry.value)

    def _store(self, key: str, value: Dict[str, Any]) -> None:
        self._entries[key] = CacheEntry(value=copy.deepcopy(value), expires_at=self._clock() + self.ttl_seconds)

    async def _resolve(self, isbn: str) -> Dict[str, Any]:
        try:
            result = await self._query_sources(isbn)
            self._store(isbn, result)
            return result
        finally:
            self._inflight.pop(isbn, None)

    async def _query_sources(self, isbn: str) -> Dict[str, Any]:
        if not self.sources:
            return empty_metadata(isbn, source="offline")

        failures = 0
        for source in self.sources:
            self.cache_stats["outbound"] += 1
            try:
                raw = await asyncio.wait_for(source.fetch(isbn), timeout=self.source_timeout)
                if raw is None:
                    continue
                metadata = normalize_isbn_metadata(raw, isbn, source.name)
            except asyncio.TimeoutError:
                failures += 1
                logger.warning(f"ISBN lookup via {source.name} timed out after {self.source_timeout}s (ISBN {isbn})")
                continue
            except Exception as exc:
                failures += 1
                logger.warning(f"ISBN lookup via {source.name} failed for {isbn}: {exc}")
                continue

            if metadata["found"]:
                logger.info(f"Metadata for {isbn} found via {metadata['source']}: {metadata['title']}")
                return metadata

        source = "unknown" if failures == len(self.sources) else "none"
        return empty_metadata(isbn, source=source)

    def stats(self) -> Dict[str, Any]:
        stats = dict(self.cache_stats)
        stats["entries"] = len(self._entries)
        stats["inflight"] = len(self._inflight)
        stats["sources"] = [source.name for source in self.sources]
        return stats

    def clear(self) -> None:
        self._entries.clear()
