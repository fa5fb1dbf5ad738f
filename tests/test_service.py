"""Tests for the Flask service endpoints."""

import pytest

import movie_info_service
from movie_lookup import MovieInfoAggregator
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


@pytest.fixture
def transport():
    return FakeTransport({
        "/search/movie": TMDB_SEARCH_TITANIC,
        "/find/": TMDB_FIND_TITANIC,
        "/movie/": TMDB_DETAILS_TITANIC,
        "omdbapi.com": OMDB_TITANIC,
        "suggestion/": IMDB_SUGGESTION_TITANIC,
    })


@pytest.fixture
def aggregator(monkeypatch, memory_cache, full_modes, transport):
    aggregator = MovieInfoAggregator(
        cache=memory_cache,
        transport=transport,
        providers={
            "omdb": OmdbProvider(api_key="omdb-key"),
            "tmdb": TmdbProvider(api_key="tmdb-key", max_title_results=1),
            "imdb_suggestion": ImdbSuggestionProvider(),
        },
        default_providers=full_modes,
        max_workers=1,
    )
    monkeypatch.setattr(movie_info_service, "_aggregator", aggregator)
    return aggregator


@pytest.fixture
def client(aggregator):
    movie_info_service.app.config["TESTING"] = True
    with movie_info_service.app.test_client() as client:
        yield client


class TestLookupEndpoints:
    def test_search(self, client):
        response = client.get("/search?title=Titanic&year=1997")
        body = response.get_json()

        assert response.status_code == 200
        assert body["found"] is True
        assert body["count"] == 1
        assert body["results"][0]["imdb_id"] == "tt0120338"
        assert body["error"] is None
        assert body["query"] == {"title": "Titanic", "year": "1997"}

    def test_search_requires_title(self, client):
        response = client.get("/search?year=1997")
        assert response.status_code == 400
        assert "title" in response.get_json()["error"]

    def test_search_rejects_bad_year(self, client):
        assert client.get("/search?title=Titanic&year=nineteen").status_code == 400

    def test_search_with_provider_list(self, client, transport):
        client.get("/search?title=Titanic&providers=omdb")
        assert transport.calls_to("tmdb") == 0

    def test_search_by_id(self, client):
        body = client.get("/search/tt0120338").get_json()
        assert body["results"][0]["title"] == "Titanic"
        assert body["query"] == {"imdb_id": "tt0120338"}

    def test_search_by_id_upper_case(self, client):
        body = client.get("/search/TT0120338?providers=omdb").get_json()
        assert body["found"] is True
        assert body["results"][0]["imdb_id"] == "tt0120338"

    def test_search_by_id_rejects_invalid_id(self, client):
        assert client.get("/search/nm0000138").status_code == 400

    def test_refresh(self, client, transport):
        client.get("/search/tt0120338")
        calls = len(transport.requests)

        client.get("/search/tt0120338")
        assert len(transport.requests) == calls

        client.get("/search/tt0120338?refresh=true")
        assert len(transport.requests) > calls

    def test_instant(self, client):
        body = client.get("/instant?q=Titanic").get_json()
        assert body["results"][0]["providers"] == ["imdb_suggestion"]

    def test_instant_by_id(self, client):
        body = client.get("/instant/tt0120338").get_json()
        assert body["found"] is True

    def test_not_found_reports_error(self, client, memory_cache):
        memory_cache.suppress("tmdb", "tmdb: timeout")
        memory_cache.suppress("omdb", "omdb: timeout")

        body = client.get("/search?title=Titanic").get_json()

        assert body["found"] is False
        assert body["error"] == "All selected providers are temporarily suppressed"

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


class TestCacheEndpoints:
    def test_status(self, client):
        client.get("/search?title=Titanic")
        body = client.get("/cache").get_json()

        assert body["stats"]["backend"] == "memory"
        assert "aggregate:full" in body["keys"]

    def test_view_key(self, client):
        client.get("/search?title=Titanic")
        body = client.get("/cache?key=aggregate:full").get_json()
        assert body["cached"] is True
        assert body["value"][0]["imdb_id"] == "tt0120338"

    def test_view_missing_key(self, client):
        assert client.get("/cache?key=raw:omdb:nothing").status_code == 404

    def test_delete_by_pattern(self, client, memory_cache):
        client.get("/search?title=Titanic")

        body = client.post("/cache/delete?pattern=omdb").get_json()

        assert body["pattern"] == "*omdb*"
        assert body["count"] == 1
        assert not any(key.startswith("raw:omdb:") for key in memory_cache.keys())

    def test_delete_by_key(self, client, memory_cache):
        client.get("/search?title=Titanic")
        body = client.post("/cache/delete?key=aggregate:full").get_json()
        assert body["count"] == 1

    def test_delete_requires_argument(self, client):
        assert client.post("/cache/delete").status_code == 400

    def test_clear(self, client, aggregator, memory_cache):
        client.get("/search?title=Titanic")

        body = client.post("/cache/clear").get_json()

        assert body["aggregate_records"] == 1
        assert memory_cache.keys() == []
        assert aggregator.get_movie("tt0120338") is None


class TestSuppressionEndpoints:
    def test_list(self, client, memory_cache):
        memory_cache.suppress("omdb", "omdb: 503 - Server error")
        body = client.get("/suppression").get_json()
        assert body["suppressed"]["omdb"]["reason"] == "omdb: 503 - Server error"

    def test_lift(self, client, memory_cache):
        memory_cache.suppress("omdb", "omdb: timeout")

        body = client.post("/suppression/omdb/lift").get_json()

        assert body == {"provider": "omdb", "lifted": True}
        assert not memory_cache.is_suppressed("omdb")

    def test_lift_unknown_provider(self, client):
        assert client.post("/suppression/nope/lift").status_code == 404


class TestHealthEndpoints:
    def test_health(self, client):
        body = client.get("/health").get_json()
        assert body["status"] == "healthy"
        assert body["service"] == "movie-info-aggregator"

    def test_live(self, client):
        assert client.get("/health/live").get_json() == {"status": "alive"}

    def test_ready(self, client):
        response = client.get("/health/ready")
        body = response.get_json()

        assert response.status_code == 200
        assert body["checks"]["providers"] == {"imdb_suggestion": "ok", "omdb": "ok", "tmdb": "ok"}
        assert body["checks"]["suppressed"]["status"] == "ok"

    def test_ready_reports_suppression(self, client, memory_cache):
        memory_cache.suppress("tmdb", "tmdb: timeout")
        body = client.get("/health/ready").get_json()
        assert body["checks"]["suppressed"] == {"status": "degraded", "providers": ["tmdb"]}

    def test_metrics(self, client):
        client.get("/search?title=Titanic")
        body = client.get("/metrics").get_json()

        assert "counters" in body
        assert body["providers"]["omdb"]["provider_requests[status=success]"] == 1
