"""Tests for the lookup orchestrator and aggregate stores."""

import json
import logging

import pytest

from cache import CacheLayer, MemoryCache
from constants import LookupMode
from errors import TransportFailure
from metrics import metrics
from models import MovieInfo, RawResponse
from movie_lookup import AggregateStore, MovieInfoAggregator
from providers import ImdbSuggestionProvider, OmdbProvider
from tmdb_client import TmdbProvider

from conftest import (
    IMDB_SUGGESTION_TITANIC,
    OMDB_TITANIC,
    TMDB_DETAILS_TITANIC,
    TMDB_FIND_TITANIC,
    TMDB_SEARCH_TITANIC,
    FakeTransport,
)


def titanic_routes(**overrides):
    routes = {
        "/search/movie": TMDB_SEARCH_TITANIC,
        "/find/": TMDB_FIND_TITANIC,
        "/movie/": TMDB_DETAILS_TITANIC,
        "omdbapi.com": OMDB_TITANIC,
        "suggestion/": IMDB_SUGGESTION_TITANIC,
    }
    routes.update(overrides)
    return routes


def make_adapters(omdb_key="omdb-key"):
    return {
        "omdb": OmdbProvider(api_key=omdb_key),
        "tmdb": TmdbProvider(api_key="tmdb-key", max_title_results=1),
        "imdb_suggestion": ImdbSuggestionProvider(),
    }


@pytest.fixture
def transport():
    return FakeTransport(titanic_routes())


@pytest.fixture
def make_aggregator(memory_cache, full_modes):
    def factory(transport, cache=None, max_workers=1, adapters=None):
        return MovieInfoAggregator(
            cache=cache if cache is not None else memory_cache,
            transport=transport,
            providers=adapters or make_adapters(),
            default_providers=full_modes,
            max_workers=max_workers,
        )
    return factory


@pytest.fixture
def aggregator(make_aggregator, transport):
    return make_aggregator(transport)


class TestAggregateStore:
    def test_fold_new_and_merge(self):
        store = AggregateStore("full")
        first, changed = store.fold(MovieInfo("tt0120338", genres=("Drama",), providers=("omdb",)))
        assert changed
        assert first.genres == ("Drama",)

        merged, changed = store.fold(MovieInfo("tt0120338", genres=("Romance",), providers=("tmdb",)))
        assert changed
        assert set(merged.genres) == {"Drama", "Romance"}
        assert len(store) == 1

    def test_fold_without_new_information(self):
        store = AggregateStore("full")
        store.fold(MovieInfo("tt0120338", title="Titanic", providers=("omdb",)))
        _, changed = store.fold(MovieInfo("tt0120338", title="Titanic", providers=("omdb",)))
        assert not changed

    def test_snapshot_and_hydrate(self):
        store = AggregateStore("full")
        store.fold(MovieInfo("tt0120338", title="Titanic", genres=("Drama",)))

        restored = AggregateStore("full")
        assert restored.hydrate(store.snapshot()) == 1
        assert restored.get("tt0120338") == store.get("tt0120338")

    def test_hydrate_skips_invalid_entries(self):
        store = AggregateStore("full")
        assert store.hydrate([{"title": "no id"}, {"imdb_id": "tt0120338"}]) == 1
        assert "tt0120338" in store

    def test_clear_keeps_identifier_locks(self):
        store = AggregateStore("full")
        store.fold(MovieInfo("tt0120338", title="Titanic"))
        lock = store._lock_for("tt0120338")

        assert store.clear() == 1
        assert "tt0120338" not in store
        assert store._lock_for("tt0120338") is lock


class TestQuery:
    def test_search_by_title(self, aggregator):
        result = aggregator.search_by_title("Titanic")

        assert result.found
        assert result.error is None
        record = result.records[0]
        assert record.imdb_id == "tt0120338"
        assert set(record.providers) == {"tmdb", "omdb"}

    def test_search_by_id(self, aggregator, transport):
        result = aggregator.search_by_id("tt0120338")

        assert result.records[0].title == "Titanic"
        assert any("/find/tt0120338" in r.url for r in transport.requests)
        assert transport.query_params(-1)["i"] == ["tt0120338"]

    def test_search_by_id_accepts_upper_case(self, aggregator, transport):
        result = aggregator.search_by_id(" TT0120338 ", providers=["omdb"])

        assert result.found
        assert result.error is None
        assert result.records[0].imdb_id == "tt0120338"
        assert transport.query_params(-1)["i"] == ["tt0120338"]
        assert aggregator.get_movie("TT0120338") == result.records[0]

    def test_lookup_log_lines_carry_query_fields(self, aggregator, caplog):
        with caplog.at_level(logging.INFO, logger="movie_lookup"):
            aggregator.search_by_id("tt0120338", providers=["omdb"])

        lookup = next(r for r in caplog.records if r.getMessage().startswith("Lookup (full)"))
        assert (lookup.mode, lookup.imdb_id, lookup.title) == ("full", "tt0120338", None)
        provider_line = next(r for r in caplog.records if r.getMessage().startswith("omdb:"))
        assert provider_line.records == 1

    def test_collections_are_merged_across_providers(self, make_aggregator):
        transport = FakeTransport(titanic_routes(**{"omdbapi.com": dict(OMDB_TITANIC, Genre="Drama, History")}))
        record = make_aggregator(transport).search_by_title("Titanic").records[0]
        assert set(record.genres) == {"Drama", "Romance", "History"}

    def test_query_returns_records(self, aggregator):
        records = aggregator.query(title="Titanic", year=1997)
        assert [r.imdb_id for r in records] == ["tt0120338"]

    def test_explicit_provider_list(self, aggregator, transport):
        aggregator.query(title="Titanic", providers=["omdb"])
        assert transport.calls_to("tmdb") == 0
        assert transport.calls_to("omdb") == 1

    def test_concurrent_round_matches_sequential(self, make_aggregator, clock):
        sequential = make_aggregator(
            FakeTransport(titanic_routes()), cache=CacheLayer(MemoryCache(clock=clock)), max_workers=1
        )
        concurrent = make_aggregator(
            FakeTransport(titanic_routes()), cache=CacheLayer(MemoryCache(clock=clock)), max_workers=4
        )
        assert sequential.query(title="Titanic") == concurrent.query(title="Titanic")

    def test_records_without_identifier(self, make_aggregator):
        transport = FakeTransport({"omdbapi.com": dict(OMDB_TITANIC, imdbID="")})
        result = make_aggregator(transport).search_by_title("Titanic", providers=["omdb"])
        assert not result.found
        assert "imdb id is missing" in result.error


class TestQueryErrors:
    def test_no_query_dimension(self, aggregator, transport):
        assert aggregator.query() == []
        assert aggregator.search_by_id("  ").error == "At least one of title, year or id is required"
        assert transport.requests == []

    def test_title_required(self, aggregator):
        assert aggregator.search_by_title("   ").error == "Title is required"

    def test_unknown_provider(self, aggregator):
        result = aggregator.search_by_title("Titanic", providers=["nope"])
        assert not result.found
        assert result.error == "No provider available for this lookup"

    def test_unconfigured_provider_is_skipped(self, make_aggregator, transport):
        aggregator = make_aggregator(transport, adapters=make_adapters(omdb_key=""))
        result = aggregator.search_by_title("Titanic")

        assert result.records[0].providers == ("tmdb",)
        assert transport.calls_to("omdb") == 0
        assert metrics.get_counter(
            "provider_skipped", labels={"provider": "omdb", "reason": "unconfigured"}
        ) == 1

    def test_unsupported_dimension_does_not_suppress(self, aggregator, memory_cache, transport):
        result = aggregator.search_by_id("tt0120338", providers=["imdb_suggestion"])

        assert not result.found
        assert "does not support" in result.error
        assert not memory_cache.is_suppressed("imdb_suggestion")
        assert transport.requests == []

    def test_year_alone_for_tmdb(self, aggregator, memory_cache):
        assert aggregator.query(year="1997", providers=["tmdb"]) == []
        assert not memory_cache.is_suppressed("tmdb")


class TestSuppression:
    @pytest.fixture
    def failing_transport(self):
        return FakeTransport(titanic_routes(**{"omdbapi.com": TransportFailure("omdb", "503 - Server error")}))

    def test_failure_suppresses_provider(self, make_aggregator, failing_transport, memory_cache):
        aggregator = make_aggregator(failing_transport)
        result = aggregator.search_by_title("Titanic")

        assert result.records[0].providers == ("tmdb",)
        assert result.error == "omdb: 503 - Server error"
        assert memory_cache.is_suppressed("omdb")
        assert metrics.get_counter("suppressions", labels={"provider": "omdb"}) == 1

    def test_suppressed_provider_is_not_contacted(self, make_aggregator, failing_transport, clock):
        aggregator = make_aggregator(failing_transport)
        aggregator.search_by_title("Titanic")
        aggregator.search_by_title("Avatar")
        assert failing_transport.calls_to("omdb") == 1

        clock.advance(600)
        aggregator.search_by_title("The Abyss")
        assert failing_transport.calls_to("omdb") == 2

    def test_all_providers_suppressed(self, aggregator, memory_cache, transport):
        memory_cache.suppress("tmdb", "tmdb: timeout")
        memory_cache.suppress("omdb", "omdb: timeout")

        result = aggregator.search_by_title("Titanic")

        assert not result.found
        assert result.error == "All selected providers are temporarily suppressed"
        assert transport.requests == []

    def test_unexpected_exception_is_a_provider_failure(self, make_aggregator, memory_cache):
        transport = FakeTransport(titanic_routes(**{"omdbapi.com": RuntimeError("boom")}))
        result = make_aggregator(transport).search_by_title("Titanic")

        assert result.found
        assert "unexpected error" in result.error
        assert memory_cache.is_suppressed("omdb")


class TestCaching:
    def test_raw_cache_avoids_second_request(self, aggregator, transport):
        first = aggregator.search_by_title("Titanic")
        calls = len(transport.requests)

        cached = aggregator.search_by_title(" titanic ")

        assert len(transport.requests) == calls
        assert [r.to_dict() for r in cached.records] == [r.to_dict() for r in first.records]
        assert metrics.get_counter("raw_cache", labels={"provider": "omdb", "result": "hit"}) == 1

    def test_raw_cache_disabled(self, make_aggregator, transport, clock):
        aggregator = make_aggregator(transport, cache=CacheLayer(MemoryCache(clock=clock), ttl=0))
        aggregator.search_by_title("Titanic")
        aggregator.search_by_title("Titanic")
        assert transport.calls_to("omdb") == 2

    def test_id_lookup_answers_locally(self, aggregator, transport):
        aggregator.search_by_title("Titanic")
        calls = len(transport.requests)

        result = aggregator.search_by_id("tt0120338")

        assert result.records[0].imdb_id == "tt0120338"
        assert len(transport.requests) == calls

    def test_refresh_contacts_providers(self, aggregator, transport):
        aggregator.search_by_title("Titanic")
        calls = len(transport.requests)

        aggregator.search_by_id("tt0120338", refresh=True)

        assert len(transport.requests) > calls

    def test_store_is_hydrated_from_cache(self, make_aggregator, transport, memory_cache):
        make_aggregator(transport).search_by_title("Titanic")

        fresh = make_aggregator(FakeTransport())
        record = fresh.get_movie("tt0120338")

        assert record is not None
        assert set(record.providers) == {"tmdb", "omdb"}

    def test_clear(self, aggregator, memory_cache):
        aggregator.search_by_title("Titanic")

        assert aggregator.clear() == 1
        assert aggregator.get_movie("tt0120338") is None
        assert memory_cache.get(CacheLayer.aggregate_key(LookupMode.FULL)) is None

    def test_get_movies_skips_unknown(self, aggregator):
        aggregator.search_by_title("Titanic")
        movies = aggregator.get_movies(["tt0000001", "tt0120338"])
        assert [m.imdb_id for m in movies] == ["tt0120338"]


class TestInstantSearch:
    @staticmethod
    def suggestion_route(matching_slug):
        def answer(request):
            payload = IMDB_SUGGESTION_TITANIC if request.url.endswith(f"/{matching_slug}.json") else {"d": []}
            return RawResponse(status_code=200, body=json.dumps(payload).encode(), url=request.url)
        return answer

    def test_prefix_lookup(self, aggregator):
        result = aggregator.instant_search("Titanic")
        assert [r.imdb_id for r in result.records] == ["tt0120338"]
        assert result.records[0].providers == ("imdb_suggestion",)

    def test_shortens_query_on_clean_miss(self, make_aggregator):
        transport = FakeTransport({"suggestion/": self.suggestion_route("titanic")})
        result = make_aggregator(transport).instant_search("Titanicz")

        assert result.found
        assert [r.url.rsplit("/", 1)[-1] for r in transport.requests] == ["titanicz.json", "titanic.json"]

    def test_stops_at_minimum_length(self, make_aggregator):
        transport = FakeTransport({"suggestion/": self.suggestion_route("never")})
        result = make_aggregator(transport).instant_search("Xyzw")

        assert not result.found
        assert len(transport.requests) == 2

    def test_failure_stops_shortening(self, make_aggregator):
        transport = FakeTransport({"suggestion/": TransportFailure("imdb_suggestion", "timeout")})
        result = make_aggregator(transport).instant_search("Titanicz")

        assert not result.found
        assert result.error == "imdb_suggestion: timeout"
        assert len(transport.requests) == 1

    def test_empty_query(self, aggregator, transport):
        assert not aggregator.instant_search("  ").found
        assert transport.requests == []

    def test_instant_store_is_separate(self, aggregator):
        aggregator.instant_search("Titanic")
        assert aggregator.get_movie("tt0120338", LookupMode.INSTANT) is not None
        assert aggregator.get_movie("tt0120338", LookupMode.FULL) is None

    def test_by_id_falls_back_to_full_store(self, aggregator, transport):
        aggregator.search_by_title("Titanic")
        calls = len(transport.requests)

        result = aggregator.instant_search_by_id("tt0120338")

        assert result.found
        assert len(transport.requests) == calls

    def test_by_id_uses_instant_providers(self, aggregator, transport):
        result = aggregator.instant_search_by_id("tt0120338")

        assert result.found
        assert transport.calls_to("omdb") == 0
        assert transport.calls_to("tmdb") == 2
