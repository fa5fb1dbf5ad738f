"""Shared fixtures: fake transport, in-memory cache, provider payloads."""

import json
from typing import Callable, Dict, List, Union
from urllib.parse import parse_qs, urlparse

import pytest

from cache import CacheLayer, MemoryCache
from constants import LookupMode
from errors import TransportFailure
from metrics import metrics
from models import RawResponse, RequestDescriptor


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Route = Union[dict, list, bytes, str, Exception, Callable[[RequestDescriptor], RawResponse]]


class FakeTransport:
    """
    Transport double answering by URL substring.

    Routes map a substring of the request URL to a JSON-able payload, raw
    bytes, an exception to raise, or a callable returning a RawResponse.
    """

    def __init__(self, routes: Dict[str, Route] = None):
        self.routes: Dict[str, Route] = dict(routes or {})
        self.requests: List[RequestDescriptor] = []

    def execute(self, request: RequestDescriptor) -> RawResponse:
        self.requests.append(request)
        for fragment, answer in self.routes.items():
            if fragment not in request.url:
                continue
            if isinstance(answer, Exception):
                raise answer
            if callable(answer):
                return answer(request)
            if isinstance(answer, bytes):
                body = answer
            elif isinstance(answer, str):
                body = answer.encode("utf-8")
            else:
                body = json.dumps(answer).encode("utf-8")
            return RawResponse(status_code=200, body=body, url=request.url)
        raise TransportFailure(request.provider, f"no route for {request.url}")

    def calls_to(self, provider: str) -> int:
        return sum(1 for r in self.requests if r.provider == provider)

    def query_params(self, index: int = -1) -> Dict[str, List[str]]:
        return parse_qs(urlparse(self.requests[index].url).query)

    def close(self) -> None:
        pass


# =============================================================================
# Provider payloads
# =============================================================================

OMDB_TITANIC = {
    "Title": "Titanic",
    "Year": "1997",
    "Rated": "PG-13",
    "Runtime": "194 min",
    "Genre": "Drama, Romance",
    "Director": "James Cameron",
    "Writer": "James Cameron",
    "Actors": "Leonardo DiCaprio, Kate Winslet, Billy Zane",
    "Plot": "A seventeen-year-old aristocrat falls in love with a kind but poor artist aboard the luxurious, ill-fated R.M.S. Titanic.",
    "Language": "English, Swedish, Italian, French",
    "Country": "United States, Mexico",
    "Poster": "https://m.media-amazon.com/images/M/titanic.jpg",
    "imdbRating": "7.9",
    "imdbVotes": "1,258,114",
    "imdbID": "tt0120338",
    "Type": "movie",
    "Response": "True",
}

TMDB_FIND_TITANIC = {
    "movie_results": [{"id": 597, "title": "Titanic"}],
    "tv_results": [],
}

TMDB_SEARCH_TITANIC = {
    "page": 1,
    "results": [
        {"id": 44918, "title": "Titanic", "release_date": "1943-11-10"},
        {"id": 597, "title": "Titanic", "release_date": "1997-11-18"},
        {"id": 16535, "title": "Titanic II", "release_date": "2010-08-07"},
    ],
    "total_results": 3,
}

TMDB_DETAILS_TITANIC = {
    "id": 597,
    "imdb_id": "tt0120338",
    "title": "Titanic",
    "original_title": "Titanic",
    "tagline": "Nothing on Earth could come between them.",
    "overview": "101-year-old Rose DeWitt Bukater tells the story of her life aboard the Titanic.",
    "release_date": "1997-11-18",
    "runtime": 194,
    "vote_average": 7.9,
    "vote_count": 24000,
    "poster_path": "/poster.jpg",
    "backdrop_path": "/backdrop.jpg",
    "genres": [{"id": 18, "name": "Drama"}, {"id": 10749, "name": "Romance"}],
    "spoken_languages": [{"iso_639_1": "en", "name": "English"}, {"iso_639_1": "sv", "name": "Swedish"}],
    "production_countries": [{"iso_3166_1": "US", "name": "United States of America"}],
    "alternative_titles": {
        "titles": [
            {"iso_3166_1": "US", "title": "Titanic 3D"},
            {"iso_3166_1": "TW", "title": "鐵達尼號"},
        ]
    },
    "credits": {
        "cast": [
            {"name": "Kate Winslet", "order": 1},
            {"name": "Leonardo DiCaprio", "order": 0},
        ],
        "crew": [
            {"name": "James Cameron", "job": "Director"},
            {"name": "James Cameron", "job": "Screenplay"},
            {"name": "Russell Carpenter", "job": "Director of Photography"},
        ],
    },
    "images": {"posters": [{"file_path": "/poster.jpg"}, {"file_path": "/alt-poster.jpg"}]},
    "keywords": {"keywords": [{"id": 1, "name": "shipwreck"}, {"id": 2, "name": "iceberg"}]},
    "trailers": {"youtube": [{"source": "kVrqfYjkTdQ", "type": "Trailer"}]},
    "videos": {"results": [{"site": "YouTube", "type": "Trailer", "key": "2e-eXJ6HgkQ"}]},
    "release_dates": {
        "results": [
            {"iso_3166_1": "GB", "release_dates": [{"certification": "12"}]},
            {"iso_3166_1": "US", "release_dates": [{"certification": ""}, {"certification": "PG-13"}]},
        ]
    },
}

IMDB_SUGGESTION_TITANIC = {
    "d": [
        {
            "i": {"imageUrl": "https://m.media-amazon.com/images/M/sugg.jpg", "height": 1, "width": 1},
            "id": "tt0120338",
            "l": "Titanic",
            "q": "feature",
            "s": "Leonardo DiCaprio, Kate Winslet",
            "y": 1997,
        },
        {"id": "nm0000138", "l": "Leonardo DiCaprio", "s": "Actor, Titanic"},
    ],
    "q": "titanic",
    "v": 1,
}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return CacheLayer(MemoryCache(clock=clock), ttl=3600, suppression_window=600)


@pytest.fixture
def full_modes():
    return {
        LookupMode.FULL: ["tmdb", "omdb"],
        LookupMode.INSTANT: ["imdb_suggestion"],
        LookupMode.INSTANT_BY_ID: ["tmdb"],
    }
