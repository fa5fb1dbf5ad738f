"""
Shared constants, enums, and configuration for the Movie Info aggregator.

This module centralizes all magic strings/numbers and provides type-safe
enums for attribute types, request/response styles and lookup modes.
Environment variables are read once at import time.
"""

import os
from enum import Enum
from typing import Final, List


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    value = os.environ.get(key, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(key: str, default: int) -> int:
    """Get integer from environment variable, falling back on bad input."""
    value = os.environ.get(key, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_list_env(key: str, default: List[str]) -> List[str]:
    """Get comma separated list from environment variable."""
    value = os.environ.get(key, "").strip()
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


# =============================================================================
# Enums
# =============================================================================

class AttributeType(str, Enum):
    """
    Type tag of a canonical attribute.

    Drives both normalization (split/join) and merging (union/longest).
    """
    TEXT = "scalar-text"
    COLLECTION = "collection-of-text"


class RequestStyle(str, Enum):
    """How a provider expects its query parameters."""
    QUERY_STRING = "query-string"
    PLACEHOLDER = "placeholder-substitution"


class ResponseStyle(str, Enum):
    """Wire format of a provider response."""
    JSON = "json"
    JSONP = "json-with-callback-wrapper"
    XML = "xml"


class LookupMode(str, Enum):
    """
    Lookup mode.

    Each mode has its own default provider list and its own aggregate store.
    """
    FULL = "full"
    INSTANT = "instant"
    INSTANT_BY_ID = "instant_by_id"

    @property
    def store_name(self) -> str:
        """Aggregate collection shared by this mode."""
        return "full" if self == LookupMode.FULL else "instant"


class CacheStatus(str, Enum):
    """Raw response cache outcome."""
    HIT = "hit"
    MISS = "miss"
    DISABLED = "disabled"


# =============================================================================
# Service Identity
# =============================================================================

SERVICE_NAME: Final = "movie-info-aggregator"
SERVICE_VERSION: Final = "1.2.0"


# =============================================================================
# Provider Names
# =============================================================================

PROVIDER_TMDB: Final = "tmdb"
PROVIDER_OMDB: Final = "omdb"
PROVIDER_IMDB_SUGGESTION: Final = "imdb_suggestion"


# =============================================================================
# Normalization
# =============================================================================

DELIMITER: Final = ","
DEFAULT_MISSING_VALUES: Final = ("N/A",)
MIN_INSTANT_QUERY_LENGTH: Final = 3
MAX_TITLE_LENGTH: Final = 50


# =============================================================================
# Cache Settings
# =============================================================================

CACHE_DIR: str = os.environ.get("CACHE_DIR", "./cache")
CACHE_ENABLED: bool = _get_bool_env("MOVIEINFO_CACHE_ENABLED", True)
DEFAULT_CACHE_TTL: int = _get_int_env("MOVIEINFO_CACHE_TTL", 24 * 60 * 60)  # 1 day
SUPPRESSION_WINDOW: int = _get_int_env("MOVIEINFO_SUPPRESSION_WINDOW", 600)  # 10 minutes
MAX_CACHE_SIZE_MB: Final = 200  # Maximum cache size in MB
MAX_CACHE_ENTRIES: Final = 20000  # Maximum number of cached items

RAW_KEY_PREFIX: Final = "raw"
AGGREGATE_KEY_PREFIX: Final = "aggregate"
SUPPRESSED_KEY_PREFIX: Final = "suppressed"


# =============================================================================
# Rate Limits (requests per second)
# =============================================================================

RATE_LIMIT_TMDB: Final = 4.0  # TMDB allows 40/10s
RATE_LIMIT_OMDB: Final = 2.0
RATE_LIMIT_IMDB_SUGGESTION: Final = 5.0


# =============================================================================
# Request Settings
# =============================================================================

REQUEST_TIMEOUT: float = float(_get_int_env("MOVIEINFO_REQUEST_TIMEOUT", 10))
MAX_RETRIES: Final = 2
RETRY_BACKOFF_BASE: Final = 0.5  # Exponential backoff base (seconds)
MAX_WORKERS: int = _get_int_env("MOVIEINFO_MAX_WORKERS", 4)


# =============================================================================
# External URLs
# =============================================================================

TMDB_API_BASE: Final = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE: Final = "https://image.tmdb.org/t/p/original"
TMDB_MOVIE_URL: Final = "https://www.themoviedb.org/movie/{tmdb_id}"
OMDB_API_BASE: Final = "https://www.omdbapi.com/"
IMDB_SUGGESTION_URL: Final = "https://v2.sg.media-imdb.com/suggestion/{title:first}/{title}.json"
IMDB_TITLE_URL: Final = "https://www.imdb.com/title/{imdb_id}/"


# =============================================================================
# Provider Credentials & Options
# =============================================================================

TMDB_API_KEY: str = os.environ.get("TMDB_API_KEY", "")
TMDB_LANGUAGE: str = os.environ.get("TMDB_LANGUAGE", "en")
TMDB_MAX_TITLE_RESULTS: Final = 5
# Countries whose alternative titles are kept as "aka" (empty = all)
TMDB_AKA_COUNTRIES: List[str] = _get_list_env("TMDB_AKA_COUNTRIES", ["US", "GB"])
TMDB_APPEND_TO_RESPONSE: Final = "alternative_titles,credits,images,keywords,trailers,videos,release_dates"
OMDB_API_KEY: str = os.environ.get("OMDB_API_KEY", "")


# =============================================================================
# Provider Selection (configurable via environment)
# =============================================================================
# Fast partial lookups use the IMDb suggestion feed; detailed lookups combine
# TMDB and OMDb. An explicit provider list passed to a lookup always wins.

FULL_PROVIDERS: List[str] = _get_list_env(
    "MOVIEINFO_FULL_PROVIDERS", [PROVIDER_TMDB, PROVIDER_OMDB]
)
INSTANT_PROVIDERS: List[str] = _get_list_env(
    "MOVIEINFO_INSTANT_PROVIDERS", [PROVIDER_IMDB_SUGGESTION]
)
INSTANT_BY_ID_PROVIDERS: List[str] = _get_list_env(
    "MOVIEINFO_INSTANT_BY_ID_PROVIDERS", [PROVIDER_TMDB]
)

DEFAULT_PROVIDERS = {
    LookupMode.FULL: FULL_PROVIDERS,
    LookupMode.INSTANT: INSTANT_PROVIDERS,
    LookupMode.INSTANT_BY_ID: INSTANT_BY_ID_PROVIDERS,
}
