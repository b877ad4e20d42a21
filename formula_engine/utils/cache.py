"""
Caching module for the calculated-field formula engine
Implements a thread-safe LRU cache for parsed formula ASTs
"""

import hashlib
from typing import Any, Optional
from collections import OrderedDict
import logging
import threading

from formula_engine.types import CacheStatsDict

logger = logging.getLogger(__name__)


def hash_formula(formula: str) -> str:
    """
    Generate a cache key for a formula

    Leading and trailing whitespace does not change the key.

    Args:
        formula: Formula text

    Returns:
        Hexadecimal SHA-256 digest of the stripped formula
    """
    hash_obj = hashlib.sha256(formula.strip().encode("utf-8"))
    return hash_obj.hexdigest()


class FormulaCache:
    """
    LRU cache for parsed formulas

    Stores immutable AST roots keyed by formula hash, so entries can be
    shared between threads without copying. Only successful parses are
    stored.
    """

    def __init__(self, max_size: int = 256):
        """
        Initialize cache with maximum size

        Args:
            max_size: Maximum number of cached formulas (default: 256)
        """
        self.max_size = max_size
        self._cache: OrderedDict[str, Any] = OrderedDict()
        self._lock = threading.RLock()  # Thread-safe access
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, formula_hash: str) -> Optional[Any]:
        """
        Retrieve the parsed AST for a formula

        Args:
            formula_hash: Hash of the formula

        Returns:
            Cached AST root, or None if not cached
        """
        with self._lock:
            if formula_hash in self._cache:
                # Move to end (most recently used)
                self._cache.move_to_end(formula_hash)
                self._stats["hits"] += 1
                return self._cache[formula_hash]
            self._stats["misses"] += 1
            return None

    def put(self, formula_hash: str, tree: Any) -> None:
        """
        Store a parsed AST

        Args:
            formula_hash: Hash of the formula
            tree: Parsed AST root
        """
        with self._lock:
            # Remove oldest entry if cache is full
            if len(self._cache) >= self.max_size and formula_hash not in self._cache:
                oldest_hash, _ = self._cache.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(
                    f"Cache eviction: removed formula hash {oldest_hash[:16]}..."
                )

            self._cache[formula_hash] = tree
            self._cache.move_to_end(formula_hash)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def clear(self) -> None:
        """Clear all cached entries"""
        with self._lock:
            self._cache.clear()
            self._stats["hits"] = 0
            self._stats["misses"] = 0
            self._stats["evictions"] = 0
            logger.info("Formula cache cleared")

    def get_stats(self) -> CacheStatsDict:
        """
        Get cache statistics

        Returns:
            Dictionary with cache statistics:
            - size: Current number of cached entries
            - max_size: Maximum cache size
            - hits: Number of cache hits
            - misses: Number of cache misses
            - evictions: Number of evicted entries
            - hit_rate: Hit rate as percentage
        """
        with self._lock:
            total_requests = self._stats["hits"] + self._stats["misses"]
            hit_rate = (
                (self._stats["hits"] / total_requests * 100)
                if total_requests > 0
                else 0.0
            )

            return {
                "size": len(self._cache),
                "max_size": self.max_size,
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "evictions": self._stats["evictions"],
                "hit_rate": round(hit_rate, 2),
            }


# Global cache instance, created on first access
_formula_cache: Optional[FormulaCache] = None
_cache_lock = threading.Lock()


def get_cache() -> FormulaCache:
    """
    Get the global formula cache instance

    Returns:
        Global FormulaCache instance sized from settings
    """
    global _formula_cache
    if _formula_cache is None:
        with _cache_lock:
            if _formula_cache is None:
                from formula_engine.config import get_settings
                config = get_settings()
                _formula_cache = FormulaCache(max_size=config.ast_cache_max_size)
                logger.info(
                    f"Initialized formula cache with max_size={config.ast_cache_max_size}"
                )
    return _formula_cache
