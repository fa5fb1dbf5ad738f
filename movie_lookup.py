"""
Movie Info Lookup Orchestrator

Main entry point for resolving movie metadata across providers.

Lookup flow, per selected provider:
    1. Skip the provider while it is suppressed (recent failure)
    2. Serve its decoded payload from the raw cache, or fetch it
    3. Normalize the payload into canonical records
    4. Fold every record into the mode's aggregate store (merge by imdb id)

The aggregate store is persisted to the cache after each round, so lookups by
id can be answered locally without contacting any provider.

Usage:
    from movie_lookup import MovieInfoAggregator

    with MovieInfoAggregator() as aggregator:
        result = aggregator.search_by_title("Titanic", year=1997)
        for movie in result.records:
            print(movie.imdb_id, movie.title)
"""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import tmdb_client  # noqa: F401  registers TmdbProvider
from cache import CacheLayer, create_cache_layer
from constants import (
    DEFAULT_PROVIDERS,
    MAX_TITLE_LENGTH,
    MAX_WORKERS,
    MIN_INSTANT_QUERY_LENGTH,
    CacheStatus,
    LookupMode,
)
from errors import MissingIdentifier, NoQueryDimension, ProviderError
from http_client import HttpTransport
from logging_config import provider_context
from merge import merge_movies
from metrics import metrics
from models import LookupResult, MovieInfo
from providers import ProviderAdapter, create_provider
from text_utils import query_fingerprint

logger = logging.getLogger(__name__)


# =============================================================================
# Aggregate Store
# =============================================================================

class AggregateStore:
    """
    Merged records of one lookup mode, keyed by imdb id.

    Folds for the same identifier are serialized by a per-identifier lock;
    folds for different identifiers run in parallel. Records only ever grow
    or refine, so an abandoned lookup never leaves partial state behind.
    """

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, MovieInfo] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, imdb_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(imdb_id)
            if lock is None:
                lock = self._locks[imdb_id] = threading.Lock()
            return lock

    def fold(self, record: MovieInfo) -> Tuple[MovieInfo, bool]:
        """
        Merge a record into the store.

        Returns:
            (stored record, changed)
        """
        with self._lock_for(record.imdb_id):
            existing = self._records.get(record.imdb_id)
            merged = record if existing is None else merge_movies(existing, record)
            if merged is existing:
                return existing, False
            self._records[record.imdb_id] = merged
            return merged, True

    def get(self, imdb_id: str) -> Optional[MovieInfo]:
        return self._records.get(imdb_id)

    def __contains__(self, imdb_id: str) -> bool:
        return imdb_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Serializable copy of every record."""
        return [record.to_dict() for record in list(self._records.values())]

    def hydrate(self, data: Iterable[Dict[str, Any]]) -> int:
        """
        Fold previously persisted records back in.

        Returns:
            Number of records loaded
        """
        loaded = 0
        for item in data or []:
            try:
                self.fold(MovieInfo.from_dict(item))
                loaded += 1
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Skipping invalid cached record in '{self.name}' store: {e}")
        return loaded

    def clear(self) -> int:
        # id locks are kept; a fold in flight still holds one
        with self._registry_lock:
            count = len(self._records)
            self._records.clear()
        return count


# =============================================================================
# Orchestrator
# =============================================================================

@dataclass
class ProviderOutcome:
    """What one provider contributed to a lookup round."""
    provider: str
    records: List[MovieInfo] = field(default_factory=list)
    error: Optional[str] = None
    failed: bool = False
    skipped: bool = False
    cache_status: CacheStatus = CacheStatus.MISS


class MovieInfoAggregator:
    """
    Queries providers, merges their records and answers the public lookups.

    The aggregator owns one AggregateStore per lookup mode ("full" and
    "instant"), hydrated lazily from the cache on first use.
    """

    def __init__(
        self,
        cache: CacheLayer = None,
        transport=None,
        providers: Dict[str, ProviderAdapter] = None,
        default_providers: Dict[LookupMode, List[str]] = None,
        max_workers: int = MAX_WORKERS,
    ):
        """
        Initialize the aggregator.

        Args:
            cache: Cache layer. Defaults to one built from configuration.
            transport: Object with execute(RequestDescriptor) -> RawResponse.
                Defaults to an HttpTransport owned (and closed) by the aggregator.
            providers: Pre-built adapters by name; others are created on demand
            default_providers: Provider names per mode when a lookup names none
            max_workers: Concurrent provider requests per round (1 = sequential)
        """
        self.cache = cache if cache is not None else create_cache_layer()
        self.transport = transport or HttpTransport()
        self._owns_transport = transport is None
        self.default_providers = default_providers or DEFAULT_PROVIDERS
        self.max_workers = max(1, max_workers)

        self._adapters: Dict[str, ProviderAdapter] = dict(providers or {})
        self._adapters_lock = threading.Lock()
        self._stores: Dict[str, AggregateStore] = {}
        self._stores_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Stores
    # -------------------------------------------------------------------------

    def _store(self, mode: LookupMode) -> AggregateStore:
        name = LookupMode(mode).store_name
        with self._stores_lock:
            store = self._stores.get(name)
            if store is None:
                store = self._stores[name] = AggregateStore(name)
                cached = self.cache.get(self.cache.aggregate_key(mode))
                if cached:
                    loaded = store.hydrate(cached)
                    logger.info(f"Hydrated '{name}' aggregate store with {loaded} records")
            return store

    def _persist(self, mode: LookupMode) -> None:
        self.cache.set(self.cache.aggregate_key(mode), self._store(mode).snapshot())

    # -------------------------------------------------------------------------
    # Provider selection
    # -------------------------------------------------------------------------

    def get_adapter(self, name: str) -> Optional[ProviderAdapter]:
        """Adapter for a provider name, created and kept on first use (None if unknown)."""
        with self._adapters_lock:
            adapter = self._adapters.get(name)
            if adapter is None:
                adapter = create_provider(name)
                if adapter is not None:
                    self._adapters[name] = adapter
            return adapter

    def _select_providers(
        self,
        providers: Optional[List[str]],
        mode: LookupMode,
    ) -> List[ProviderAdapter]:
        """Adapters for an explicit provider list, or the mode's defaults."""
        names = providers if providers is not None else self.default_providers.get(mode, [])

        selected = []
        for name in dict.fromkeys(names):
            adapter = self.get_adapter(name)
            if adapter is None:
                continue
            if not adapter.is_configured():
                logger.info(f"Skipping {name}: no API key configured")
                metrics.inc("provider_skipped", labels={"provider": name, "reason": "unconfigured"})
                continue
            selected.append(adapter)
        return selected

    # -------------------------------------------------------------------------
    # Provider round
    # -------------------------------------------------------------------------

    def _query_provider(
        self,
        adapter: ProviderAdapter,
        title: Optional[str],
        year: Optional[str],
        imdb_id: Optional[str],
    ) -> ProviderOutcome:
        """Suppression check, raw cache, fetch and normalization for one provider."""
        name = adapter.name
        with provider_context(name):
            if self.cache.is_suppressed(name):
                logger.info(f"Skipping {name}: suppressed")
                metrics.inc("provider_skipped", labels={"provider": name, "reason": "suppressed"})
                return ProviderOutcome(name, skipped=True)

            key = self.cache.raw_key(name, query_fingerprint(title=title, year=year, imdb_id=imdb_id))
            items = self.cache.get(key)
            if isinstance(items, list):
                cache_status = CacheStatus.HIT
                metrics.inc("raw_cache", labels={"provider": name, "result": "hit"})
                logger.debug(f"Raw cache hit: {key}")
            else:
                cache_status = CacheStatus.MISS if self.cache.enabled else CacheStatus.DISABLED
                metrics.inc("raw_cache", labels={"provider": name, "result": cache_status.value})
                try:
                    items = adapter.fetch(self.transport, title=title, year=year, imdb_id=imdb_id)
                except NoQueryDimension as e:
                    logger.info(str(e))
                    return ProviderOutcome(name, error=str(e), cache_status=cache_status)
                except ProviderError as e:
                    return self._provider_failed(name, str(e), cache_status)
                except Exception as e:
                    logger.exception(f"Unexpected error from {name}")
                    return self._provider_failed(name, f"{name}: unexpected error: {e}", cache_status)

                metrics.inc("provider_requests", labels={"provider": name, "status": "success"})
                self.cache.set(key, items)

            records = adapter.normalize_items(items)
            error = None
            if items and not records:
                error = str(MissingIdentifier(name))
            logger.info(
                f"{name}: {len(records)} records from {len(items)} items ({cache_status.value})",
                extra={'records': len(records)},
            )
            return ProviderOutcome(name, records=records, error=error, cache_status=cache_status)

    def _provider_failed(self, name: str, reason: str, cache_status: CacheStatus) -> ProviderOutcome:
        logger.warning(f"Provider failure: {reason}")
        metrics.inc("provider_requests", labels={"provider": name, "status": "failure"})
        if self.cache.suppress(name, reason):
            metrics.inc("suppressions", labels={"provider": name})
        return ProviderOutcome(name, error=reason, failed=True, cache_status=cache_status)

    def _run_round(
        self,
        adapters: List[ProviderAdapter],
        mode: LookupMode,
        title: Optional[str],
        year: Optional[str],
        imdb_id: Optional[str],
    ) -> Tuple[List[ProviderOutcome], List[str]]:
        """
        Query every adapter and fold the results.

        Returns:
            (outcomes in completion order, touched ids in provider order)
        """
        store = self._store(mode)
        outcomes: List[ProviderOutcome] = []
        changed = False

        def fold(outcome: ProviderOutcome) -> None:
            nonlocal changed
            outcomes.append(outcome)
            for record in outcome.records:
                _, record_changed = store.fold(record)
                changed = changed or record_changed

        if self.max_workers == 1 or len(adapters) == 1:
            for adapter in adapters:
                fold(self._query_provider(adapter, title, year, imdb_id))
        else:
            workers = min(self.max_workers, len(adapters))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provider") as executor:
                futures = [
                    executor.submit(
                        contextvars.copy_context().run,
                        self._query_provider, adapter, title, year, imdb_id,
                    )
                    for adapter in adapters
                ]
                for future in as_completed(futures):
                    fold(future.result())

        if changed:
            metrics.inc("aggregate_updates", labels={"store": store.name})
            self._persist(mode)

        order = {adapter.name: index for index, adapter in enumerate(adapters)}
        touched: List[str] = []
        for outcome in sorted(outcomes, key=lambda o: order[o.provider]):
            for record in outcome.records:
                if record.imdb_id not in touched:
                    touched.append(record.imdb_id)
        return outcomes, touched

    def _lookup(
        self,
        title: Optional[str] = None,
        year: Optional[Any] = None,
        imdb_id: Optional[str] = None,
        providers: Optional[List[str]] = None,
        mode: LookupMode = LookupMode.FULL,
    ) -> Tuple[LookupResult, List[ProviderOutcome]]:
        mode = LookupMode(mode)
        title = title.strip() if isinstance(title, str) and title.strip() else None
        year = str(year).strip() if year is not None and str(year).strip() else None
        imdb_id = imdb_id.strip().lower() if isinstance(imdb_id, str) and imdb_id.strip() else None

        if not (title or year or imdb_id):
            return LookupResult.empty(str(NoQueryDimension())), []

        adapters = self._select_providers(providers, mode)
        if not adapters:
            return LookupResult.empty("No provider available for this lookup"), []

        logger.info(
            f"Lookup ({mode.value}): title={title!r} year={year} imdb_id={imdb_id} "
            f"providers={[a.name for a in adapters]}",
            extra={'mode': mode.value, 'title': title, 'year': year, 'imdb_id': imdb_id},
        )
        outcomes, touched = self._run_round(adapters, mode, title, year, imdb_id)

        error = None
        for outcome in outcomes:
            if outcome.error:
                error = outcome.error
        if error is None and outcomes and all(o.skipped for o in outcomes):
            error = "All selected providers are temporarily suppressed"

        store = self._store(mode)
        records = [store.get(imdb) for imdb in touched if imdb in store]
        metrics.inc("lookups", labels={"mode": mode.value, "result": "found" if records else "not_found"})
        return LookupResult.of(records, error), outcomes

    def _lookup_by_id(
        self,
        imdb_id: str,
        providers: Optional[List[str]] = None,
        mode: LookupMode = LookupMode.FULL,
        refresh: bool = False,
    ) -> LookupResult:
        imdb_id = (imdb_id or "").strip().lower()
        if not imdb_id:
            return LookupResult.empty(str(NoQueryDimension()))

        if not refresh:
            local = self.get_movie(imdb_id, mode)
            if local is not None:
                logger.debug(f"Aggregate hit for {imdb_id} ({LookupMode(mode).value})")
                metrics.inc("lookups", labels={"mode": LookupMode(mode).value, "result": "local"})
                return LookupResult.of([local])

        result, _ = self._lookup(imdb_id=imdb_id, providers=providers, mode=mode)
        record = self._store(mode).get(imdb_id)
        return LookupResult.of([record] if record else [], result.error)

    # -------------------------------------------------------------------------
    # Core queries
    # -------------------------------------------------------------------------

    def query(
        self,
        title: Optional[str] = None,
        year: Optional[Any] = None,
        imdb_id: Optional[str] = None,
        providers: Optional[List[str]] = None,
        mode: LookupMode = LookupMode.FULL,
    ) -> List[MovieInfo]:
        """
        Query providers and return the aggregate records touched by this call.

        Args:
            title: Movie title
            year: Release year
            imdb_id: IMDb title id
            providers: Explicit provider names (overrides the mode's defaults)
            mode: Lookup mode, selects default providers and aggregate store

        Returns:
            Merged records, in first-touch order
        """
        result, _ = self._lookup(title, year, imdb_id, providers, mode)
        return result.records

    def query_by_id(
        self,
        imdb_id: str,
        providers: Optional[List[str]] = None,
        mode: LookupMode = LookupMode.FULL,
        refresh: bool = False,
    ) -> Optional[MovieInfo]:
        """
        Aggregate record for one identifier.

        A record already in the store answers without provider calls unless
        refresh is set.
        """
        result = self._lookup_by_id(imdb_id, providers, mode, refresh)
        return result.records[0] if result.records else None

    # -------------------------------------------------------------------------
    # Public query surface
    # -------------------------------------------------------------------------

    def search_by_title(
        self,
        title: str,
        year: Optional[Any] = None,
        providers: Optional[List[str]] = None,
    ) -> LookupResult:
        """Full lookup by title and optional year."""
        if not title or not title.strip():
            return LookupResult.empty("Title is required")
        result, _ = self._lookup(title=title, year=year, providers=providers, mode=LookupMode.FULL)
        return result

    def search_by_id(self, imdb_id: str, providers: Optional[List[str]] = None, refresh: bool = False) -> LookupResult:
        """Full lookup by IMDb id."""
        return self._lookup_by_id(imdb_id, providers, LookupMode.FULL, refresh)

    def instant_search(self, partial_query: str, providers: Optional[List[str]] = None) -> LookupResult:
        """
        Lightweight prefix lookup.

        When every provider answered without a match, the query is shortened
        one character at a time while it keeps at least
        MIN_INSTANT_QUERY_LENGTH characters.
        """
        query = (partial_query or "").strip()[:MAX_TITLE_LENGTH]
        if not query:
            return LookupResult.empty()

        while True:
            result, outcomes = self._lookup(title=query, providers=providers, mode=LookupMode.INSTANT)
            clean_miss = (
                not result.found
                and outcomes
                and all(not o.failed and not o.skipped and not o.error for o in outcomes)
            )
            if not clean_miss or len(query) <= MIN_INSTANT_QUERY_LENGTH:
                return result

            query = query[:-1].rstrip()
            if len(query) < MIN_INSTANT_QUERY_LENGTH:
                return result
            logger.debug(f"No instant match, retrying with '{query}'")

    def instant_search_by_id(self, imdb_id: str, providers: Optional[List[str]] = None) -> LookupResult:
        """Lightweight lookup by IMDb id; answers from the full store when possible."""
        return self._lookup_by_id(imdb_id, providers, LookupMode.INSTANT_BY_ID)

    # -------------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------------

    def get_movie(self, imdb_id: str, mode: LookupMode = LookupMode.FULL) -> Optional[MovieInfo]:
        """Stored record for an id; instant lookups fall back to the full store."""
        mode = LookupMode(mode)
        imdb_id = (imdb_id or "").strip().lower()
        record = self._store(mode).get(imdb_id)
        if record is None and mode != LookupMode.FULL:
            record = self._store(LookupMode.FULL).get(imdb_id)
        return record

    def get_movies(self, imdb_ids: Iterable[str], mode: LookupMode = LookupMode.FULL) -> List[MovieInfo]:
        """Stored records for several ids, skipping unknown ones."""
        records = []
        for imdb_id in imdb_ids:
            record = self.get_movie(imdb_id, mode)
            if record is not None:
                records.append(record)
        return records

    def clear(self, mode: Optional[LookupMode] = None) -> int:
        """
        Drop aggregate records (one mode's store, or all) and their cache entries.

        Returns:
            Number of records removed from memory
        """
        modes = [LookupMode(mode)] if mode is not None else [LookupMode.FULL, LookupMode.INSTANT]
        cleared = 0
        for current in modes:
            cleared += self._store(current).clear()
            self.cache.delete(self.cache.aggregate_key(current))
        logger.info(f"Cleared {cleared} aggregate records")
        return cleared

    def stats(self) -> Dict[str, Any]:
        with self._stores_lock:
            stores = {name: len(store) for name, store in self._stores.items()}
        return {
            "stores": stores,
            "suppressed": self.cache.suppressed_providers(),
            "default_providers": {m.value: list(names) for m, names in self.default_providers.items()},
        }

    def close(self) -> None:
        """Close the transport if the aggregator created it."""
        if self._owns_transport:
            self.transport.close()

    def __enter__(self) -> "MovieInfoAggregator":
        return self

    def __exit__(self, *args) -> None:
        self.close()
