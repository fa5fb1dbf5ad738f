"""
Key/value TTL cache stores and the cache & suppression layer.

Provides:
- FileCache: atomic file writes (temp file + rename), file locking,
  directory sharding, LRU eviction and passive TTL expiry
- MemoryCache: thread-safe in-process store with the same interface
- CacheLayer: the key families used by the aggregator (raw provider
  responses, aggregate collections, provider suppression flags)

Caching is an optimization only. Every CacheLayer operation degrades to a
silent no-op when no store is attached or the effective TTL is falsy, and
store failures are logged rather than raised.
"""

import fnmatch
import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from constants import (
    AGGREGATE_KEY_PREFIX,
    CACHE_DIR,
    CACHE_ENABLED,
    DEFAULT_CACHE_TTL,
    MAX_CACHE_ENTRIES,
    MAX_CACHE_SIZE_MB,
    RAW_KEY_PREFIX,
    SUPPRESSED_KEY_PREFIX,
    SUPPRESSION_WINDOW,
    LookupMode,
)

logger = logging.getLogger(__name__)

# Try to import fcntl for file locking (Unix only)
try:
    import fcntl
    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False
    logger.debug("fcntl not available, file locking disabled")

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """
    One stored value with its lifetime.

    Timestamps are epoch seconds so entries survive a restart unchanged.
    """
    key: str
    value: Any
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """
        Create CacheEntry from dictionary.

        Raises:
            KeyError: If a required field is missing
        """
        return cls(
            key=data["key"],
            value=data["value"],
            stored_at=float(data.get("stored_at", 0.0)),
            expires_at=float(data["expires_at"]),
        )


# =============================================================================
# Stores
# =============================================================================

class FileCache:
    """
    Thread-safe file-based key/value store with LRU eviction.

    Features:
    - Atomic writes via temp file + rename
    - Optional file locking (Unix) for concurrent access
    - Directory sharding to avoid too many files in one directory
    - LRU eviction when entry count or size limit exceeded
    - TTL enforcement on read

    Usage:
        store = FileCache("./cache")
        store.set("raw:tmdb:0f3a...", payload, ttl=86400)
        payload = store.get("raw:tmdb:0f3a...")
    """

    def __init__(
        self,
        cache_dir: str = None,
        clock: Clock = time.time,
        max_entries: int = MAX_CACHE_ENTRIES,
        max_size_mb: int = MAX_CACHE_SIZE_MB,
    ):
        """
        Initialize the file cache.

        Args:
            cache_dir: Directory for cache files. Defaults to CACHE_DIR env var or ./cache
            clock: Time source (epoch seconds), injectable for tests
            max_entries: Entry count that triggers eviction
            max_size_mb: Total size that triggers eviction

        Raises:
            OSError: If the cache directory cannot be created
        """
        self._cache_dir = Path(cache_dir or CACHE_DIR)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._max_entries = max_entries
        self._max_size_mb = max_size_mb
        self._lock = threading.RLock()
        self._access_times: Dict[str, float] = {}

        self._load_access_times()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _get_cache_path(self, key: str) -> Path:
        """
        Get cache file path for a key.

        Uses hash-based directory sharding; the readable part of the
        filename is the sanitized key.
        """
        key_hash = hashlib.sha256(key.encode()).hexdigest()
        safe_key = "".join(
            c if c.isalnum() or c in '-_' else '_'
            for c in key
        )[:80]
        return self._cache_dir / key_hash[:2] / f"{safe_key}_{key_hash[:12]}.json"

    def _iter_files(self):
        for item in self._cache_dir.iterdir():
            if item.is_dir() and len(item.name) == 2:
                yield from item.glob("*.json")

    def _load_access_times(self) -> None:
        """Load access times from existing cache files for LRU tracking."""
        try:
            for cache_file in self._iter_files():
                try:
                    self._access_times[str(cache_file)] = cache_file.stat().st_mtime
                except OSError:
                    pass
        except OSError as e:
            logger.warning(f"Failed to load cache access times: {e}")

    def _lock_file(self, file_handle, exclusive: bool = False) -> None:
        if HAS_FCNTL:
            try:
                lock_type = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
                fcntl.flock(file_handle.fileno(), lock_type | fcntl.LOCK_NB)
            except OSError:
                # Lock not available, proceed anyway
                pass

    def _unlock_file(self, file_handle) -> None:
        if HAS_FCNTL:
            try:
                fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass

    def _read_entry(self, cache_path: Path) -> CacheEntry:
        with open(cache_path, 'r', encoding='utf-8') as f:
            self._lock_file(f, exclusive=False)
            try:
                data = json.load(f)
            finally:
                self._unlock_file(f)
        return CacheEntry.from_dict(data)

    def read(self, key: str) -> Optional[CacheEntry]:
        """
        Read an entry from the cache.

        Expired and unreadable entries are deleted and reported as absent.

        Args:
            key: Cache key

        Returns:
            CacheEntry if found and valid, None otherwise
        """
        cache_path = self._get_cache_path(key)
        if not cache_path.exists():
            return None

        try:
            entry = self._read_entry(cache_path)
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as e:
            logger.warning(f"Invalid cache entry {key}: {e}")
            self._delete_file(cache_path)
            return None
        except OSError as e:
            logger.warning(f"Cache read error for {key}: {e}")
            return None

        if entry.key != key:
            logger.debug(f"Cache hash collision for {key}, ignoring entry for {entry.key}")
            return None

        if entry.is_expired(self._clock()):
            logger.debug(f"Cache entry expired: {key}")
            self._delete_file(cache_path)
            return None

        self._touch(cache_path)
        return entry

    def get(self, key: str) -> Optional[Any]:
        """Stored value for a key, or None when absent or expired."""
        entry = self.read(key)
        return entry.value if entry else None

    def set(self, key: str, value: Any, ttl: float) -> bool:
        """
        Write a value atomically.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Lifetime in seconds

        Returns:
            True if write succeeded
        """
        self._maybe_evict()

        cache_path = self._get_cache_path(key)
        temp_path = cache_path.with_suffix('.tmp')
        now = self._clock()
        entry = CacheEntry(key=key, value=value, stored_at=now, expires_at=now + ttl)

        try:
            cache_path.parent.mkdir(exist_ok=True)
            with open(temp_path, 'w', encoding='utf-8') as f:
                self._lock_file(f, exclusive=True)
                try:
                    json.dump(entry.to_dict(), f, ensure_ascii=False)
                finally:
                    self._unlock_file(f)

            temp_path.replace(cache_path)

            with self._lock:
                self._access_times[str(cache_path)] = time.time()
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Cache write error for {key}: {e}")
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                pass
            return False

    def _touch(self, cache_path: Path) -> None:
        """Update access time for LRU tracking."""
        try:
            cache_path.touch()
            with self._lock:
                self._access_times[str(cache_path)] = time.time()
        except OSError:
            pass

    def _delete_file(self, cache_path: Path) -> None:
        try:
            cache_path.unlink(missing_ok=True)
        except OSError:
            pass
        with self._lock:
            self._access_times.pop(str(cache_path), None)

    def _maybe_evict(self) -> None:
        """Evict the least recently used 10% when over the count or size limit."""
        with self._lock:
            if len(self._access_times) < self._max_entries:
                total_size = 0
                for path_str in self._access_times:
                    try:
                        total_size += Path(path_str).stat().st_size
                    except OSError:
                        pass
                if total_size < self._max_size_mb * 1024 * 1024:
                    return

            sorted_by_access = sorted(self._access_times.items(), key=lambda x: x[1])
            to_evict = sorted_by_access[:max(1, len(sorted_by_access) // 10)]

            for path_str, _ in to_evict:
                self._delete_file(Path(path_str))

            logger.info(f"Evicted {len(to_evict)} cache entries")

    def delete(self, key: str) -> bool:
        """
        Delete a specific cache entry.

        Returns:
            True if entry was deleted
        """
        cache_path = self._get_cache_path(key)
        if cache_path.exists():
            self._delete_file(cache_path)
            return True
        return False

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of files deleted
        """
        count = 0
        try:
            for cache_file in list(self._iter_files()):
                self._delete_file(cache_file)
                count += 1
        except OSError as e:
            logger.warning(f"Cache clear error: {e}")
        return count

    def keys(self) -> List[str]:
        """Keys of all readable entries, expired ones included."""
        keys = []
        try:
            for cache_file in self._iter_files():
                try:
                    keys.append(self._read_entry(cache_file).key)
                except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError):
                    continue
        except OSError:
            pass
        return sorted(keys)

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with entry counts per key family and disk usage
        """
        now = self._clock()
        total_size = 0
        expired_count = 0
        families: Dict[str, int] = {}

        with self._lock:
            paths = list(self._access_times.keys())

        for path_str in paths:
            path = Path(path_str)
            try:
                total_size += path.stat().st_size
                entry = self._read_entry(path)
            except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError):
                continue
            if entry.is_expired(now):
                expired_count += 1
                continue
            family = entry.key.split(":", 1)[0]
            families[family] = families.get(family, 0) + 1

        return {
            "backend": "file",
            "cache_dir": str(self._cache_dir),
            "total_entries": len(paths),
            "expired_entries": expired_count,
            "entries_by_family": families,
            "total_size_mb": round(total_size / 1024 / 1024, 2),
            "max_entries": self._max_entries,
            "max_size_mb": self._max_size_mb,
        }


class MemoryCache:
    """Thread-safe in-process store with the FileCache interface."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry

    def get(self, key: str) -> Optional[Any]:
        entry = self.read(key)
        return entry.value if entry else None

    def set(self, key: str, value: Any, ttl: float) -> bool:
        now = self._clock()
        # Round-trip through JSON so callers get the same shapes FileCache returns
        stored = json.loads(json.dumps(value))
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=stored, stored_at=now, expires_at=now + ttl)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        families: Dict[str, int] = {}
        expired = 0
        for entry in entries:
            if entry.is_expired(now):
                expired += 1
                continue
            family = entry.key.split(":", 1)[0]
            families[family] = families.get(family, 0) + 1
        return {
            "backend": "memory",
            "total_entries": len(entries),
            "expired_entries": expired,
            "entries_by_family": families,
        }


# =============================================================================
# Cache & Suppression Layer
# =============================================================================

class CacheLayer:
    """
    Cache facade used by the aggregator.

    Key families:
        raw:{provider}:{fingerprint}   decoded provider payload for one query
        aggregate:{store}              merged records of one lookup mode
        suppressed:{provider}          present while a provider is failing

    Suppression is a plain timed breaker: the flag lifts only when its window
    elapses (or an operator lifts it), and a success never clears it.
    """

    def __init__(
        self,
        store=None,
        ttl: Optional[float] = DEFAULT_CACHE_TTL,
        suppression_window: float = SUPPRESSION_WINDOW,
    ):
        """
        Args:
            store: FileCache, MemoryCache, or None for uncached operation
            ttl: Data TTL in seconds; falsy disables data caching
            suppression_window: Suppression TTL in seconds
        """
        self.store = store
        self.ttl = ttl
        self.suppression_window = suppression_window

    @property
    def enabled(self) -> bool:
        return self.store is not None

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    @staticmethod
    def raw_key(provider: str, fingerprint: str) -> str:
        return f"{RAW_KEY_PREFIX}:{provider}:{fingerprint}"

    @staticmethod
    def aggregate_key(mode: LookupMode) -> str:
        return f"{AGGREGATE_KEY_PREFIX}:{LookupMode(mode).store_name}"

    @staticmethod
    def suppressed_key(provider: str) -> str:
        return f"{SUPPRESSED_KEY_PREFIX}:{provider}"

    # -------------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------------

    def _effective_ttl(self, ttl: Optional[float]) -> Optional[float]:
        return ttl or self.ttl

    def get(self, key: str, ttl: Optional[float] = None) -> Optional[Any]:
        """
        Value for a key, or None.

        Args:
            key: Cache key
            ttl: TTL the caller would store this family with; falsy together
                with a falsy data TTL means caching is off
        """
        if self.store is None or not self._effective_ttl(ttl):
            return None
        try:
            return self.store.get(key)
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Store a value. Empty values are never stored.

        Returns:
            True if the value was stored
        """
        effective = self._effective_ttl(ttl)
        if self.store is None or not effective:
            return False
        if value is None or value == "" or value == [] or value == {}:
            logger.debug(f"Not caching empty value for {key}")
            return False
        try:
            return bool(self.store.set(key, value, effective))
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        if self.store is None:
            return False
        try:
            return bool(self.store.delete(key))
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern (e.g. "raw:omdb:*").

        Returns:
            Number of entries deleted
        """
        deleted = 0
        for key in self.keys():
            if fnmatch.fnmatchcase(key, pattern) and self.delete(key):
                deleted += 1
        return deleted

    def clear(self) -> int:
        if self.store is None:
            return 0
        try:
            return self.store.clear()
        except Exception as e:
            logger.warning(f"Cache clear failed: {e}")
            return 0

    def keys(self) -> List[str]:
        if self.store is None:
            return []
        try:
            return self.store.keys()
        except Exception as e:
            logger.warning(f"Cache key listing failed: {e}")
            return []

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "enabled": self.enabled,
            "ttl": self.ttl,
            "suppression_window": self.suppression_window,
        }
        if self.store is not None:
            try:
                stats.update(self.store.stats())
            except Exception as e:
                logger.warning(f"Cache stats failed: {e}")
        return stats

    # -------------------------------------------------------------------------
    # Suppression
    # -------------------------------------------------------------------------

    def is_suppressed(self, provider: str) -> bool:
        """True while the provider's suppression flag is present."""
        return self.get(self.suppressed_key(provider), ttl=self.suppression_window) is not None

    def suppress(self, provider: str, reason: str = None, window: Optional[float] = None) -> bool:
        """
        Mark a provider as failing for the suppression window.

        Args:
            provider: Provider name
            reason: Failure that caused the suppression
            window: Override of the configured window, in seconds

        Returns:
            True if the flag was stored
        """
        window = window or self.suppression_window
        flag = {
            "reason": reason or "provider failure",
            "since": datetime.now(timezone.utc).isoformat(),
        }
        stored = self.set(self.suppressed_key(provider), flag, ttl=window)
        if stored:
            logger.warning(f"Suppressing {provider} for {window:.0f}s: {flag['reason']}")
        return stored

    def lift_suppression(self, provider: str) -> bool:
        """Remove a provider's suppression flag ahead of its expiry."""
        lifted = self.delete(self.suppressed_key(provider))
        if lifted:
            logger.info(f"Suppression lifted for {provider}")
        return lifted

    def suppressed_providers(self) -> Dict[str, Any]:
        """Currently suppressed providers with their flag payloads."""
        prefix = f"{SUPPRESSED_KEY_PREFIX}:"
        result = {}
        for key in self.keys():
            if not key.startswith(prefix):
                continue
            flag = self.get(key, ttl=self.suppression_window)
            if flag is not None:
                result[key[len(prefix):]] = flag
        return result


def create_cache_layer(
    cache_dir: str = None,
    enabled: bool = CACHE_ENABLED,
    ttl: Optional[float] = DEFAULT_CACHE_TTL,
    suppression_window: float = SUPPRESSION_WINDOW,
) -> CacheLayer:
    """
    Build the cache layer from configuration.

    A disabled cache yields a layer without a store (uncached and
    unsuppressed). An unusable cache directory falls back to memory.
    """
    if not enabled:
        logger.info("Caching disabled")
        return CacheLayer(None, ttl=ttl, suppression_window=suppression_window)

    try:
        store = FileCache(cache_dir or os.environ.get("CACHE_DIR") or CACHE_DIR)
    except OSError as e:
        logger.warning(f"Cache directory unavailable ({e}), using in-memory cache")
        store = MemoryCache()

    return CacheLayer(store, ttl=ttl, suppression_window=suppression_window)
