# =============================================================================
# CoffeeLeaf Backend
# services/cache.py - Two-Tier Prediction Result Cache
#
# Lookaside cache keyed by image content hash: an in-process LRU tier with a
# short TTL in front of an optional Redis tier. Redis failures are logged
# and the cache keeps working from memory.
# =============================================================================

import json
import time
import logging
import threading
from fnmatch import fnmatchcase
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

import redis

from .health import HealthStatus
from .results import PredictionResult
from ..constants import (
    CACHE_PREFIX,
    MAX_MEMORY_TTL_SECONDS,
    DEFAULT_PREDICTION_TTL_SECONDS,
    MODEL_TYPE_IMAGE,
    MODEL_TYPE_SYMPTOM
)
from ..errors import CacheUnavailable

logger = logging.getLogger(__name__)


def make_cache_key(image_hash: str, namespace: str) -> str:
    """Cache key for a prediction: ``pred:<namespace>:<image hash>``."""
    return f"{CACHE_PREFIX}:{namespace}:{image_hash}"


# Separates the image key from the reported symptom ids
SYMPTOM_KEY_MARKER = ':s'

# Every fused entry, whatever its image model
SYMPTOM_VARIANT_PATTERN = f"{CACHE_PREFIX}:*:*{SYMPTOM_KEY_MARKER}*"


# =============================================================================
# Fast Tier
# =============================================================================

class MemoryTier:
    """
    Thread-safe in-memory LRU with per-entry expiry.

    TTLs longer than one hour are clamped.
    """

    def __init__(self, max_size: int = 1000, max_ttl: int = MAX_MEMORY_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.max_ttl = max_ttl
        self._clock = clock
        # key -> (value, expires_at)
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        ttl = min(ttl, self.max_ttl)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_size:
                # Oldest entry first
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def delete_matching(self, pattern: str) -> int:
        """Remove keys matching a Redis-style glob pattern."""
        with self._lock:
            doomed = [key for key in self._entries if fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def health_check(self) -> HealthStatus:
        return HealthStatus.ok('cache:memory', f"{len(self)}/{self.max_size} entries")


# =============================================================================
# Shared Tier
# =============================================================================

class RedisTier:
    """
    Redis-backed shared tier. Every Redis error surfaces as CacheUnavailable.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 2.0) -> 'RedisTier':
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(key)
        except (redis.RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis get failed: {e}") from e
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        return value

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self.client.setex(key, ttl, value)
        except (redis.RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis set failed: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(key))
        except (redis.RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis delete failed: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        return self.delete_matching(f"{prefix}*")

    def delete_matching(self, pattern: str) -> int:
        try:
            keys = list(self.client.scan_iter(match=pattern, count=500))
            return int(self.client.delete(*keys)) if keys else 0
        except (redis.RedisError, OSError) as e:
            raise CacheUnavailable(f"Redis scan failed: {e}") from e

    def health_check(self) -> HealthStatus:
        """Set, read back and remove a probe key."""
        probe_key = f"{CACHE_PREFIX}:health:{time.time_ns()}"
        try:
            self.client.setex(probe_key, 30, 'ok')
            value = self.client.get(probe_key)
            self.client.delete(probe_key)
        except (redis.RedisError, OSError) as e:
            return HealthStatus.failed('cache:redis', str(e))
        if value not in ('ok', b'ok'):
            return HealthStatus.failed('cache:redis', 'probe value mismatch')
        return HealthStatus.ok('cache:redis', 'connected')


class NullTier:
    """Shared tier used when no Redis URL is configured."""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ttl: int) -> None:
        return None

    def delete(self, key: str) -> bool:
        return False

    def delete_prefix(self, prefix: str) -> int:
        return 0

    def delete_matching(self, pattern: str) -> int:
        return 0

    def health_check(self) -> HealthStatus:
        return HealthStatus.ok('cache:shared', 'not configured (memory only)')


# =============================================================================
# Result Cache
# =============================================================================

class ResultCache:
    """
    Lookaside cache for PredictionResult values.

    Args:
        memory: Fast in-process tier
        shared: Shared tier (RedisTier or NullTier)
        default_ttl: TTL for the shared tier in seconds
    """

    def __init__(self, memory: MemoryTier, shared=None,
                 default_ttl: int = DEFAULT_PREDICTION_TTL_SECONDS):
        self.memory = memory
        self.shared = shared if shared is not None else NullTier()
        self.default_ttl = default_ttl
        self._shared_degraded = False
        self.hits = 0
        self.misses = 0
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Shared tier error handling
    # ------------------------------------------------------------------

    def _shared_call(self, operation: str, func, *args, default=None):
        try:
            result = func(*args)
        except Exception as e:
            if not self._shared_degraded:
                logger.warning(f"Shared cache {operation} failed, continuing with memory tier: {e}")
            else:
                logger.debug(f"Shared cache {operation} still failing: {e}")
            self._shared_degraded = True
            return default
        if self._shared_degraded:
            logger.info("Shared cache tier recovered")
            self._shared_degraded = False
        return result

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[PredictionResult]:
        """
        Look up a result, memory first, then the shared tier.

        A shared-tier hit is copied back into memory.
        """
        payload = self.memory.get(key)
        if payload is None:
            payload = self._shared_call('get', self.shared.get, key)
            if payload is not None:
                self.memory.set(key, payload, self.default_ttl)

        if payload is None:
            self._record(hit=False)
            return None

        try:
            result = PredictionResult.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            self.invalidate(key)
            self._record(hit=False)
            return None

        self._record(hit=True)
        logger.debug(f"Cache hit: {key[:48]}...")
        return result

    def _record(self, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def set(self, key: str, result: PredictionResult, ttl: Optional[int] = None) -> None:
        ttl = ttl or self.default_ttl
        payload = json.dumps(result.to_dict())
        self.memory.set(key, payload, ttl)
        self._shared_call('set', self.shared.set, key, payload, ttl)

    def invalidate(self, key: str) -> bool:
        """Remove one key from both tiers."""
        removed = self.memory.delete(key)
        removed_shared = self._shared_call('delete', self.shared.delete, key, default=False)
        return bool(removed or removed_shared)

    def invalidate_namespace(self, namespace: str) -> int:
        """Remove every entry cached under a model version."""
        prefix = f"{CACHE_PREFIX}:{namespace}:"
        removed = self.memory.delete_prefix(prefix)
        removed += self._shared_call('purge', self.shared.delete_prefix, prefix, default=0) or 0
        logger.info(f"Invalidated {removed} cached predictions for {namespace}")
        return removed

    def invalidate_image(self, image_hash: str, namespaces: List[str]) -> int:
        """Remove an image under each namespace, symptom variants included."""
        removed = 0
        for namespace in namespaces:
            prefix = make_cache_key(image_hash, namespace)
            removed += self.memory.delete_prefix(prefix)
            removed += self._shared_call('purge', self.shared.delete_prefix, prefix, default=0) or 0
        return removed

    def invalidate_symptom_variants(self) -> int:
        """Remove every fused entry, across all image model versions."""
        removed = self.memory.delete_matching(SYMPTOM_VARIANT_PATTERN)
        removed += self._shared_call(
            'purge', self.shared.delete_matching, SYMPTOM_VARIANT_PATTERN, default=0
        ) or 0
        logger.info(f"Invalidated {removed} cached predictions fused with symptoms")
        return removed

    def on_model_swapped(self, model_type: str, previous_version: Optional[str],
                         version: Optional[str]) -> None:
        """
        Catalog hook for model changes.

        A new image model makes its predecessor's namespace stale. Any change
        of the symptom model, including a first load or an unload, changes
        every fused confidence.
        """
        if previous_version == version:
            return
        if model_type == MODEL_TYPE_IMAGE and previous_version:
            self.invalidate_namespace(previous_version)
        elif model_type == MODEL_TYPE_SYMPTOM:
            self.invalidate_symptom_variants()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        with self._stats_lock:
            hits, misses = self.hits, self.misses
        return {
            'hits': hits,
            'misses': misses,
            'memory_entries': len(self.memory),
            'shared_degraded': self._shared_degraded
        }

    def health_check(self) -> List[HealthStatus]:
        return [self.memory.health_check(), self.shared.health_check()]
