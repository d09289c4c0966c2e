"""Analysis result cache with a Redis primary and an in-process fallback."""

import asyncio
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..config import CacheConfig
from ..schemas import AnalysisFile, ReviewSettings

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class _MemoryCache:
    """Bounded TTL map. Least recently used entries are evicted first."""

    def __init__(self, max_entries: int):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[str, Optional[float]]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: Optional[int]) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if exp is not None and exp <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class AnalysisCache:
    """Best-effort cache for analysis results.

    Redis is used when configured and reachable. When it is not, at startup
    or on any individual call, the in-process map takes over with the same
    TTL semantics. No method raises because of a backend problem: a failed
    read is a miss and a failed write is dropped (after trying the fallback).
    """

    KEY_PREFIX = "analysis"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        default_ttl: int = 1800,
        max_entries: int = 1024,
        sweep_interval: float = 60.0,
        connect_timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        """
        Initialize the cache. Nothing is connected until connect() is called.

        Args:
            redis_url: Redis URL, or None for in-process caching only.
            default_ttl: TTL in seconds used when set() gets none.
            max_entries: Bound of the in-process fallback.
            sweep_interval: Seconds between fallback expiry sweeps.
            connect_timeout: Socket connect timeout for Redis.
            client: Pre-built async Redis client (used instead of redis_url).
        """
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.connect_timeout = connect_timeout
        self._client = client
        self._memory = _MemoryCache(max_entries)
        self._sweep_task: Optional[asyncio.Task] = None
        self._primary_healthy = client is not None

    @classmethod
    def from_config(cls, config: CacheConfig) -> "AnalysisCache":
        return cls(
            redis_url=config.redis_url,
            default_ttl=config.ttl_seconds,
            max_entries=config.max_entries,
            sweep_interval=config.sweep_interval_seconds,
            connect_timeout=config.connect_timeout_seconds,
        )

    @property
    def primary_available(self) -> bool:
        return self._client is not None and self._primary_healthy

    async def connect(self) -> None:
        """Connect the primary backend (if any) and start the fallback sweeper."""
        if self._client is None and self.redis_url:
            self._client = redis.from_url(
                self.redis_url,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.connect_timeout,
                decode_responses=True,
            )

        if self._client is None:
            logger.warning("Redis not configured - using in-process analysis cache")
        else:
            try:
                await self._client.ping()
                self._primary_healthy = True
                logger.info("Connected to Redis analysis cache")
            except _BACKEND_ERRORS as e:
                logger.warning("Redis unavailable (%s) - using in-process analysis cache", e)
                await self._close_client()

        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="analysis-cache-sweep")

    async def close(self) -> None:
        """Stop the sweeper and close the primary connection."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        self._primary_healthy = False
        if client is None:
            return
        try:
            await client.aclose()
        except _BACKEND_ERRORS as e:
            logger.debug("Error closing Redis client: %s", e)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self._memory.purge_expired()
            if removed:
                logger.debug("Evicted %d expired in-process cache entries", removed)

    def _primary_failed(self, operation: str, error: Exception) -> None:
        if self._primary_healthy:
            logger.warning("Redis %s failed (%s) - falling back to in-process cache", operation, error)
        else:
            logger.debug("Redis %s failed: %s", operation, error)
        self._primary_healthy = False

    def _primary_succeeded(self) -> None:
        if not self._primary_healthy:
            logger.info("Redis analysis cache reachable again")
        self._primary_healthy = True

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value for key, or None on a miss or any backend error."""
        raw: Optional[str] = None
        if self._client is not None:
            try:
                raw = await self._client.get(key)
                self._primary_succeeded()
            except _BACKEND_ERRORS as e:
                self._primary_failed("get", e)
        if raw is None:
            # Entries written during a primary outage live only in memory.
            raw = self._memory.get(key)

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.debug("Discarding undecodable cache entry %s: %s", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a JSON-serializable value. Errors are logged and swallowed."""
        ttl = ttl or self.default_ttl
        try:
            serialized = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.debug("Not caching unserializable value for %s: %s", key, e)
            return

        if self._client is not None:
            try:
                await self._client.set(key, serialized, ex=ttl)
                self._primary_succeeded()
                return
            except _BACKEND_ERRORS as e:
                self._primary_failed("set", e)
        self._memory.set(key, serialized, ttl)

    async def invalidate(self, key: str) -> None:
        """Remove key from both backends."""
        self._memory.delete(key)
        if self._client is not None:
            try:
                await self._client.delete(key)
                self._primary_succeeded()
            except _BACKEND_ERRORS as e:
                self._primary_failed("delete", e)

    @classmethod
    def make_key(cls, files: Iterable[AnalysisFile], settings: ReviewSettings) -> str:
        """Derive the cache key for analyzing files under settings.

        The key hashes every (filename, patch) pair in filename order together
        with the canonical JSON of the settings, so the same diff analyzed
        under different settings gets a different key.
        """
        files_digest = hashlib.sha256()
        for f in sorted(files, key=lambda item: item.filename):
            files_digest.update(f.filename.encode("utf-8"))
            files_digest.update(b"\0")
            files_digest.update(f.patch.encode("utf-8"))
            files_digest.update(b"\0")

        settings_json = json.dumps(settings.model_dump(mode="json"), sort_keys=True)
        settings_digest = hashlib.sha256(settings_json.encode("utf-8")).hexdigest()

        return f"{cls.KEY_PREFIX}:{files_digest.hexdigest()}:{settings_digest}"

    def status(self) -> dict[str, Any]:
        """Backend status for health checks."""
        return {
            "backend": "redis" if self.primary_available else "memory",
            "redis_configured": bool(self.redis_url) or self._client is not None,
            "fallback_entries": len(self._memory),
        }
