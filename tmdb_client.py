"""
TMDB provider adapter.

TMDB needs several requests per lookup:
- by id:    /find/{imdb_id} -> /movie/{tmdb_id}?append_to_response=...
- by title: /search/movie -> /movie/{tmdb_id} for the best candidates

The detail payloads are flattened into one dict per movie whose keys match
the TMDB response mapping, so the decoded items cached under the raw key
normalize exactly like any single-request provider's items.
"""

import logging
from typing import Any, Dict, List, Optional

from constants import (
    PROVIDER_TMDB,
    REQUEST_TIMEOUT,
    TMDB_AKA_COUNTRIES,
    TMDB_API_BASE,
    TMDB_APPEND_TO_RESPONSE,
    TMDB_IMAGE_BASE,
    TMDB_MAX_TITLE_RESULTS,
    TMDB_MOVIE_URL,
)
from errors import NoQueryDimension
from models import ProviderDescriptor, RequestDescriptor
from providers import ProviderAdapter, register_provider
from text_utils import extract_year_from_text, sanitize_text, titles_match

logger = logging.getLogger(__name__)

WRITER_JOBS = ("Screenplay", "Writer", "Author", "Story", "Novel")
MAX_EXTRA_POSTERS = 5
CONTENT_RATING_COUNTRY = "US"


@register_provider
class TmdbProvider(ProviderAdapter):
    """
    Client for the TMDB v3 API.

    Note: Only movies are supported; TV results from /find are ignored.
    """

    provider_name = PROVIDER_TMDB
    api_base = TMDB_API_BASE

    def __init__(
        self,
        descriptor: ProviderDescriptor = None,
        api_key: str = None,
        timeout: float = REQUEST_TIMEOUT,
        image_base: str = TMDB_IMAGE_BASE,
        aka_countries: List[str] = None,
        max_title_results: int = TMDB_MAX_TITLE_RESULTS,
    ):
        """
        Initialize TMDB adapter.

        Args:
            descriptor: Override of the registered descriptor
            api_key: TMDB API key. Defaults to TMDB_API_KEY env var.
            timeout: Per-request timeout in seconds
            image_base: Prefix for poster/backdrop paths
            aka_countries: Countries whose alternative titles count as aka (empty = all)
            max_title_results: Search results to fetch details for
        """
        super().__init__(descriptor, api_key=api_key, timeout=timeout)
        self.image_base = image_base.rstrip("/")
        self.aka_countries = [
            c.upper() for c in (TMDB_AKA_COUNTRIES if aka_countries is None else aka_countries)
        ]
        self.max_title_results = max_title_results

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def build_id_lookup(self, imdb_id: str) -> RequestDescriptor:
        if not imdb_id:
            raise NoQueryDimension(self.name)
        return self._build_request(
            self.descriptor.id_endpoint,
            {"imdb_id": imdb_id, "external_source": "imdb_id"},
        )

    def build_details_request(self, tmdb_id: Any) -> RequestDescriptor:
        return self._build_request(
            f"{self.api_base}/movie/{tmdb_id}",
            {"append_to_response": TMDB_APPEND_TO_RESPONSE},
        )

    def _get(self, transport, request: RequestDescriptor) -> Dict[str, Any]:
        payload = self.decode_payload(transport.execute(request).body)
        self.check_errors(payload)
        return payload if isinstance(payload, dict) else {}

    def fetch(
        self,
        transport,
        title: Optional[str] = None,
        year: Optional[Any] = None,
        imdb_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Look a movie up and return flattened detail payloads.

        An id wins over title/year: TMDB cannot combine them in one request.
        """
        if imdb_id:
            tmdb_id = self.find_by_imdb(transport, imdb_id)
            if tmdb_id is None:
                logger.debug(f"TMDB has no movie for {imdb_id}")
                return []
            return [self.get_details(transport, tmdb_id)]

        if not title:
            # /search/movie needs a query string; a year alone is not searchable
            raise NoQueryDimension(self.name, ["year"] if year else None)

        candidates = self.search(transport, title, year)
        return [self.get_details(transport, tmdb_id) for tmdb_id in candidates]

    def find_by_imdb(self, transport, imdb_id: str) -> Optional[int]:
        """TMDB id for an IMDb id, or None."""
        data = self._get(transport, self.build_id_lookup(imdb_id))
        results = data.get("movie_results") or []
        if results and results[0].get("id") is not None:
            return results[0]["id"]
        return None

    def search(self, transport, title: str, year: Optional[Any] = None) -> List[int]:
        """
        TMDB ids of the best search candidates.

        Exact title matches come first, then year matches, then TMDB's order.
        """
        data = self._get(transport, self.build_query(title=title, year=year))
        results = [r for r in data.get("results") or [] if isinstance(r, dict) and r.get("id")]

        wanted_year = str(year) if year else None

        def rank(indexed):
            position, result = indexed
            exact = titles_match(title, result.get("title") or "") or titles_match(
                title, result.get("original_title") or ""
            )
            release_year = (result.get("release_date") or "")[:4]
            return (not exact, bool(wanted_year) and release_year != wanted_year, position)

        ranked = [r for _, r in sorted(enumerate(results), key=rank)]
        ids = [r["id"] for r in ranked[:self.max_title_results]]
        logger.info(f"TMDB search '{title}' ({year}): {len(results)} results, using {ids}")
        return ids

    def get_details(self, transport, tmdb_id: Any) -> Dict[str, Any]:
        """Flattened detail payload for one TMDB movie."""
        return self.flatten_details(self._get(transport, self.build_details_request(tmdb_id)))

    # -------------------------------------------------------------------------
    # Flattening
    # -------------------------------------------------------------------------

    def _image_url(self, path: Optional[str]) -> Optional[str]:
        return f"{self.image_base}{path}" if path else None

    def _aka(self, data: Dict[str, Any]) -> List[str]:
        title = data.get("title")
        titles: List[str] = []

        original = data.get("original_title")
        if original and title and original != title:
            titles.append(original)

        alternative = (data.get("alternative_titles") or {}).get("titles") or []
        for entry in alternative:
            country = (entry.get("iso_3166_1") or "").upper()
            if self.aka_countries and country not in self.aka_countries:
                continue
            alt_title = entry.get("title")
            if alt_title and alt_title != title and alt_title not in titles:
                titles.append(alt_title)
        return titles

    def _images(self, data: Dict[str, Any]) -> List[str]:
        paths = [data.get("poster_path"), data.get("backdrop_path")]
        posters = (data.get("images") or {}).get("posters") or []
        paths.extend(p.get("file_path") for p in posters[:MAX_EXTRA_POSTERS])
        return [self._image_url(p) for p in paths if p]

    @staticmethod
    def _trailers(data: Dict[str, Any]) -> List[str]:
        keys: List[str] = []
        for trailer in (data.get("trailers") or {}).get("youtube") or []:
            if trailer.get("source"):
                keys.append(trailer["source"])
        for video in (data.get("videos") or {}).get("results") or []:
            if video.get("site") == "YouTube" and video.get("type") == "Trailer" and video.get("key"):
                keys.append(video["key"])
        return [f"youtube:{key}" for key in dict.fromkeys(keys)]

    @staticmethod
    def _content_rating(data: Dict[str, Any]) -> Optional[str]:
        for country in (data.get("release_dates") or {}).get("results") or []:
            if country.get("iso_3166_1") != CONTENT_RATING_COUNTRY:
                continue
            for release in country.get("release_dates") or []:
                if release.get("certification"):
                    return release["certification"]
        return None

    def flatten_details(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Reduce a /movie/{id} payload (with appended sections) to mapped fields.

        Args:
            data: Raw TMDB detail payload

        Returns:
            Dict keyed by the TMDB response mapping's field names
        """
        credits = data.get("credits") or {}
        crew = credits.get("crew") or []
        cast = sorted(credits.get("cast") or [], key=lambda c: c.get("order", 0))

        plot_parts = [sanitize_text(data.get(k) or "") for k in ("tagline", "overview")]
        release_year = extract_year_from_text(data.get("release_date") or "")
        keywords = (data.get("keywords") or {}).get("keywords") or []

        return {
            "tmdb_id": data.get("id"),
            "imdb_id": data.get("imdb_id"),
            "title": data.get("title"),
            "aka": self._aka(data),
            "vote_average": data.get("vote_average") if data.get("vote_count") else None,
            "vote_count": data.get("vote_count"),
            "genres": [g.get("name") for g in data.get("genres") or []],
            "plot": " - ".join(p for p in plot_parts if p),
            "languages": [l.get("iso_639_1") for l in data.get("spoken_languages") or []],
            "countries": [c.get("name") for c in data.get("production_countries") or []],
            "images": self._images(data),
            "year": str(release_year) if release_year else None,
            "runtime": data.get("runtime") or None,
            "directors": [c.get("name") for c in crew if c.get("job") == "Director"],
            "writers": [c.get("name") for c in crew if c.get("job") in WRITER_JOBS],
            "actors": [c.get("name") for c in cast],
            "content_rating": self._content_rating(data),
            "url": TMDB_MOVIE_URL.format(tmdb_id=data["id"]) if data.get("id") else None,
            "trailers": self._trailers(data),
            "tags": [k.get("name") for k in keywords],
        }
