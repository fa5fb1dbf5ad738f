"""
Shared data models for movie info lookup.

This module contains the canonical record every provider normalizes into,
the static per-provider configuration, and the request/response/result
containers passed between the orchestrator, the adapters and the transport.
Kept separate to avoid circular imports between modules.
"""

import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from constants import AttributeType, DEFAULT_MISSING_VALUES, RequestStyle, ResponseStyle

IDENTIFIER_ATTRIBUTE = "imdb_id"
PROVIDERS_ATTRIBUTE = "providers"

# Canonical attribute -> type tag. Iteration order is the field order of MovieInfo.
ATTRIBUTE_TYPES: Dict[str, AttributeType] = {
    "imdb_id": AttributeType.TEXT,
    "title": AttributeType.TEXT,
    "aka": AttributeType.COLLECTION,
    "rating": AttributeType.TEXT,
    "votes": AttributeType.TEXT,
    "genres": AttributeType.COLLECTION,
    "plot": AttributeType.TEXT,
    "languages": AttributeType.COLLECTION,
    "countries": AttributeType.COLLECTION,
    "images": AttributeType.COLLECTION,
    "year": AttributeType.TEXT,
    "runtime": AttributeType.TEXT,
    "directors": AttributeType.COLLECTION,
    "writers": AttributeType.COLLECTION,
    "actors": AttributeType.COLLECTION,
    "content_rating": AttributeType.TEXT,
    "url": AttributeType.TEXT,
    "trailers": AttributeType.COLLECTION,
    "tags": AttributeType.COLLECTION,
    "providers": AttributeType.COLLECTION,
}

Collection = Optional[Tuple[str, ...]]


@dataclass(frozen=True, eq=False)
class MovieInfo:
    """
    Canonical movie record, assembled from one or more providers.

    Scalars are text or None (absent). Collections are tuples, None when the
    attribute is absent and () when a provider supplied it empty.
    Collections compare as sets: two records are equal when their scalars
    match and every collection holds the same values, whatever the order.
    """
    imdb_id: str
    title: Optional[str] = None
    aka: Collection = None
    rating: Optional[str] = None
    votes: Optional[str] = None
    genres: Collection = None
    plot: Optional[str] = None
    languages: Collection = None
    countries: Collection = None
    images: Collection = None
    year: Optional[str] = None
    runtime: Optional[str] = None
    directors: Collection = None
    writers: Collection = None
    actors: Collection = None
    content_rating: Optional[str] = None
    url: Optional[str] = None
    trailers: Collection = None
    tags: Collection = None
    providers: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.imdb_id:
            raise ValueError("MovieInfo requires an imdb_id")
        for name, attr_type in ATTRIBUTE_TYPES.items():
            value = getattr(self, name)
            if attr_type == AttributeType.COLLECTION and value is not None and not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))
            elif attr_type == AttributeType.TEXT and isinstance(value, str) and not value.strip():
                # blank scalars are absent
                object.__setattr__(self, name, None)

    def _comparable(self) -> Tuple[Union[str, FrozenSet[str], None], ...]:
        return tuple(
            frozenset(getattr(self, name))
            if attr_type == AttributeType.COLLECTION and getattr(self, name) is not None
            else getattr(self, name)
            for name, attr_type in ATTRIBUTE_TYPES.items()
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MovieInfo):
            return NotImplemented
        return self._comparable() == other._comparable()

    def __hash__(self) -> int:
        return hash(self._comparable())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            data[item.name] = list(value) if isinstance(value, tuple) else value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MovieInfo":
        """
        Create MovieInfo from dictionary.

        Unknown keys are ignored so older cached aggregates still load.
        """
        kwargs = {name: data[name] for name in ATTRIBUTE_TYPES if name in data}
        if kwargs.get(PROVIDERS_ATTRIBUTE) is None:
            kwargs[PROVIDERS_ATTRIBUTE] = ()
        return cls(**kwargs)


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    Static configuration of one provider.

    query_mapping maps the canonical query fields (id/title/year) to request
    parameter names; None means the provider does not accept that dimension.
    response_mapping maps canonical attributes to response field names
    (dotted names address nested objects); False means never supplied.
    """
    name: str
    endpoint: str
    request_style: RequestStyle
    response_style: ResponseStyle
    query_mapping: Dict[str, Optional[str]] = field(default_factory=dict)
    response_mapping: Dict[str, Union[str, bool]] = field(default_factory=dict)
    default_params: Dict[str, Any] = field(default_factory=dict)
    api_key_param: Optional[str] = None
    api_key: str = ""
    items_field: Optional[str] = None
    error_fields: Tuple[str, ...] = ("error",)
    missing_values: Tuple[str, ...] = DEFAULT_MISSING_VALUES
    id_endpoint: Optional[str] = None

    @property
    def requires_api_key(self) -> bool:
        return self.api_key_param is not None


@dataclass
class RequestDescriptor:
    """A fully built provider request, ready for the transport."""
    provider: str
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    secret_params: Tuple[str, ...] = ()

    @property
    def log_url(self) -> str:
        """URL with secret query parameters masked."""
        url = self.url
        for name in self.secret_params:
            url = re.sub(rf'([?&]{re.escape(name)}=)[^&]*', r'\1***', url)
        return url


@dataclass
class RawResponse:
    """Undecoded provider response."""
    status_code: int
    body: bytes
    url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class LookupResult:
    """Records returned by a public lookup plus the most recent failure reason."""
    records: List[MovieInfo] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "count": len(self.records),
            "results": [record.to_dict() for record in self.records],
            "error": self.error,
        }

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "LookupResult":
        return cls(records=[], error=error)

    @classmethod
    def of(cls, records: Iterable[MovieInfo], error: Optional[str] = None) -> "LookupResult":
        return cls(records=list(records), error=error)
