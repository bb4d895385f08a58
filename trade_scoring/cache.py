"""
Trade Scoring Engine - Score Cache.

============================================================
PURPOSE
============================================================
Read-through / write-back cache of computed scores keyed by
(rubric version, calibration version, input fingerprint).

============================================================
FAILURE POLICY
============================================================
- Lookup failures degrade to a cache miss
- Store failures are logged; the computed score stands
- No explicit eviction: a new rubric or calibration version
  simply produces new keys

Two concurrent evaluations of the same input may both miss
and both store. Stores are idempotent upserts, so this is
harmless.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence, Tuple

from .types import CacheBackendError, CacheKey, CachedScorePayload, FactorScoreRow


logger = logging.getLogger(__name__)


class ScoreCacheBackend(ABC):
    """
    Storage contract for cached scores.

    Implementations raise CacheBackendError when unreachable.
    """

    @abstractmethod
    async def get(self, key: CacheKey) -> Optional[CachedScorePayload]:
        pass

    @abstractmethod
    async def put(
        self,
        payload: CachedScorePayload,
        factor_rows: Sequence[FactorScoreRow] = (),
        trade_id: Optional[str] = None,
    ) -> None:
        """Insert unless the key already exists (never mutates)."""
        pass


class InMemoryScoreCacheBackend(ScoreCacheBackend):
    """Process-local backend for tests and store-less deployments."""

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, CachedScorePayload] = {}
        self._factor_rows: Dict[CacheKey, Tuple[FactorScoreRow, ...]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def factor_rows(self, key: CacheKey) -> Tuple[FactorScoreRow, ...]:
        return self._factor_rows.get(key, ())

    async def get(self, key: CacheKey) -> Optional[CachedScorePayload]:
        return self._entries.get(key)

    async def put(
        self,
        payload: CachedScorePayload,
        factor_rows: Sequence[FactorScoreRow] = (),
        trade_id: Optional[str] = None,
    ) -> None:
        async with self._lock:
            key = payload.cache_key
            if key in self._entries:
                return
            self._entries[key] = payload
            self._factor_rows[key] = tuple(factor_rows)


class ScoreCache:
    """
    Fingerprint cache in front of a backend.

    Usage:
        cache = ScoreCache(InMemoryScoreCacheBackend())
        hit = await cache.lookup(fingerprint, "1.3.0", "none")
        if hit is None:
            ...compute...
            await cache.store(payload, factor_rows)
    """

    def __init__(self, backend: Optional[ScoreCacheBackend] = None):
        self._backend = backend if backend is not None else InMemoryScoreCacheBackend()
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @property
    def backend(self) -> ScoreCacheBackend:
        return self._backend

    @property
    def stats(self) -> Dict[str, int]:
        return {"hits": self._hits, "misses": self._misses, "errors": self._errors}

    async def lookup(
        self,
        fingerprint: str,
        rubric_version: str,
        calibration_version: str,
    ) -> Optional[CachedScorePayload]:
        """
        Find a cached score.

        Returns:
            Cached payload, or None on miss or backend failure
        """
        key = CacheKey(
            rubric_version=rubric_version,
            calibration_version=calibration_version,
            input_hash=fingerprint,
        )
        try:
            payload = await self._backend.get(key)
        except CacheBackendError as e:
            self._errors += 1
            logger.warning(f"Score cache lookup failed, recomputing: {e}")
            return None

        if payload is None:
            self._misses += 1
            logger.debug(f"Score cache miss: {fingerprint[:12]} (rubric v{rubric_version}, cal {calibration_version})")
            return None

        self._hits += 1
        logger.debug(f"Score cache hit: {fingerprint[:12]}")
        return payload

    async def store(
        self,
        payload: CachedScorePayload,
        factor_rows: Sequence[FactorScoreRow] = (),
        trade_id: Optional[str] = None,
    ) -> bool:
        """
        Persist a computed score.

        Returns:
            True if stored, False if the backend failed (logged)
        """
        try:
            await self._backend.put(payload, factor_rows, trade_id=trade_id)
        except CacheBackendError as e:
            self._errors += 1
            logger.error(f"Failed to persist score {payload.input_hash[:12]}: {e}")
            return False
        return True
