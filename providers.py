"""
Provider adapters: request building, response decoding and normalization.

Every external movie source is described by one ProviderDescriptor (a row in
PROVIDER_DESCRIPTORS) and implemented by one ProviderAdapter subclass
registered in PROVIDERS. The aggregator only talks to the adapter interface:

    request = adapter.build_query(title="Titanic")
    items = adapter.parse_response(transport.execute(request).body)
    records = adapter.normalize_items(items)

Adding a provider means adding a descriptor and an adapter class; neither the
aggregator nor the merge policy changes.
"""

import json
import logging
from abc import ABC
from typing import Any, Dict, List, Mapping, Optional, Type
from urllib.parse import quote

from constants import (
    IMDB_SUGGESTION_URL,
    IMDB_TITLE_URL,
    OMDB_API_BASE,
    OMDB_API_KEY,
    PROVIDER_IMDB_SUGGESTION,
    PROVIDER_OMDB,
    PROVIDER_TMDB,
    REQUEST_TIMEOUT,
    TMDB_API_BASE,
    TMDB_API_KEY,
    TMDB_LANGUAGE,
    RequestStyle,
    ResponseStyle,
)
from errors import MalformedResponse, NoQueryDimension, UnsupportedResponseStyle
from models import MovieInfo, ProviderDescriptor, RequestDescriptor
from normalizer import normalize
from text_utils import sanitize_text, validate_imdb_id

logger = logging.getLogger(__name__)

QUERY_DIMENSIONS = ("id", "title", "year")


# =============================================================================
# Provider Descriptors
# =============================================================================

PROVIDER_DESCRIPTORS: Dict[str, ProviderDescriptor] = {
    PROVIDER_IMDB_SUGGESTION: ProviderDescriptor(
        name=PROVIDER_IMDB_SUGGESTION,
        endpoint=IMDB_SUGGESTION_URL,
        request_style=RequestStyle.PLACEHOLDER,
        response_style=ResponseStyle.JSONP,
        query_mapping={"id": None, "title": "title", "year": None},
        response_mapping={
            "imdb_id": "id",
            "title": "l",
            "year": "y",
            "actors": "s",
            "images": "i.imageUrl",
            "url": "url",
            "plot": False,
            "genres": False,
        },
        items_field="d",
    ),
    PROVIDER_OMDB: ProviderDescriptor(
        name=PROVIDER_OMDB,
        endpoint=OMDB_API_BASE,
        request_style=RequestStyle.QUERY_STRING,
        response_style=ResponseStyle.JSON,
        query_mapping={"id": "i", "title": "t", "year": "y"},
        response_mapping={
            "imdb_id": "imdbID",
            "title": "Title",
            "aka": False,
            "rating": "imdbRating",
            "votes": "imdbVotes",
            "genres": "Genre",
            "plot": "Plot",
            "languages": "Language",
            "countries": "Country",
            "images": "Poster",
            "year": "Year",
            "runtime": "Runtime",
            "directors": "Director",
            "writers": "Writer",
            "actors": "Actors",
            "content_rating": "Rated",
            "url": False,
            "trailers": False,
            "tags": False,
        },
        default_params={"plot": "full", "type": "movie", "r": "json"},
        api_key_param="apikey",
        api_key=OMDB_API_KEY,
        error_fields=("Error",),
        missing_values=("N/A",),
    ),
    PROVIDER_TMDB: ProviderDescriptor(
        name=PROVIDER_TMDB,
        endpoint=f"{TMDB_API_BASE}/search/movie",
        id_endpoint=f"{TMDB_API_BASE}/find/{{imdb_id}}",
        request_style=RequestStyle.QUERY_STRING,
        response_style=ResponseStyle.JSON,
        query_mapping={"id": "imdb_id", "title": "query", "year": "year"},
        # Field names of the flattened detail payload built by TmdbProvider
        response_mapping={
            "imdb_id": "imdb_id",
            "title": "title",
            "aka": "aka",
            "rating": "vote_average",
            "votes": "vote_count",
            "genres": "genres",
            "plot": "plot",
            "languages": "languages",
            "countries": "countries",
            "images": "images",
            "year": "year",
            "runtime": "runtime",
            "directors": "directors",
            "writers": "writers",
            "actors": "actors",
            "content_rating": "content_rating",
            "url": "url",
            "trailers": "trailers",
            "tags": "tags",
        },
        default_params={"language": TMDB_LANGUAGE},
        api_key_param="api_key",
        api_key=TMDB_API_KEY,
        items_field="results",
        error_fields=("status_message",),
    ),
}


# =============================================================================
# Request Building
# =============================================================================

def _param_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query_string(params: Mapping[Any, Any], prefix: str = None) -> str:
    """
    Serialize parameters into a URL query string.

    Nested mappings (and lists) are flattened recursively as key[subkey]=value;
    None values are skipped.

    >>> build_query_string({"t": "Titanic", "filter": {"year": 1997}})
    't=Titanic&filter[year]=1997'
    """
    parts = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            nested = build_query_string(value, name)
        elif isinstance(value, (list, tuple)):
            nested = build_query_string(dict(enumerate(value)), name)
        else:
            nested = f"{quote(name, safe='[]')}={quote(_param_text(value), safe='')}"
        if nested:
            parts.append(nested)
    return "&".join(parts)


def build_url_from_placeholders(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute {field} and {field:first} tokens in a URL template.

    Values are trimmed, lower-cased and URL-quoted; {field:first} is the first
    character only, for endpoints sharded by initial letter.
    """
    url = template
    for field_name, value in values.items():
        text = _param_text(value).strip().lower()
        url = url.replace(f"{{{field_name}:first}}", quote(text[:1], safe=""))
        url = url.replace(f"{{{field_name}}}", quote(text, safe=""))
    return url


def strip_callback(text: str) -> str:
    """Remove a JSONP wrapper such as 'callback({...});'. Unwrapped JSON is returned as is."""
    body = text.strip()
    if not body or body[0] in "[{":
        return body
    start = body.find("(")
    if start < 0:
        return body
    body = body[start + 1:].rstrip().rstrip(";").rstrip()
    if body.endswith(")"):
        body = body[:-1]
    return body.strip()


# =============================================================================
# Adapter Base
# =============================================================================

class ProviderAdapter(ABC):
    """
    Uniform query contract over one provider.

    Subclasses set `provider_name` and override the hooks they need:
    `accepts` and `prepare_item` for per-item filtering and cleanup,
    `fetch` for providers that need more than one request per lookup.
    """

    provider_name: str = ""

    def __init__(
        self,
        descriptor: ProviderDescriptor = None,
        api_key: str = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        """
        Args:
            descriptor: Override of the registered descriptor
            api_key: Override of the configured API key
            timeout: Per-request timeout in seconds
        """
        self.descriptor = descriptor or PROVIDER_DESCRIPTORS[self.provider_name]
        self.api_key = api_key if api_key is not None else self.descriptor.api_key
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.descriptor.name

    def is_configured(self) -> bool:
        """False when the provider needs an API key and none is set."""
        return not self.descriptor.requires_api_key or bool(self.api_key)

    def supports(self, dimension: str) -> bool:
        """Whether the provider accepts a query dimension (id/title/year)."""
        return bool(self.descriptor.query_mapping.get(dimension))

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def build_query(
        self,
        title: Optional[str] = None,
        year: Optional[Any] = None,
        imdb_id: Optional[str] = None,
    ) -> RequestDescriptor:
        """
        Build a request from canonical query fields.

        Raises:
            NoQueryDimension: Nothing supplied, or no supplied field is accepted
        """
        supplied = {
            dimension: value
            for dimension, value in zip(QUERY_DIMENSIONS, (imdb_id, title, year))
            if value is not None and str(value).strip()
        }
        if not supplied:
            raise NoQueryDimension(self.name)

        params = {
            self.descriptor.query_mapping[dimension]: value
            for dimension, value in supplied.items()
            if self.supports(dimension)
        }
        if not params:
            raise NoQueryDimension(self.name, list(supplied))

        return self._build_request(self.descriptor.endpoint, params)

    def build_id_lookup(self, imdb_id: str) -> RequestDescriptor:
        """
        Build an identifier lookup.

        Uses the descriptor's id_endpoint when there is one, otherwise the
        regular query with only the id.
        """
        if self.descriptor.id_endpoint:
            if not imdb_id:
                raise NoQueryDimension(self.name)
            return self._build_request(self.descriptor.id_endpoint, {"imdb_id": imdb_id})
        return self.build_query(imdb_id=imdb_id)

    def _build_request(
        self,
        template: str,
        params: Mapping[str, Any],
    ) -> RequestDescriptor:
        descriptor = self.descriptor

        if descriptor.request_style == RequestStyle.PLACEHOLDER:
            url = build_url_from_placeholders(template, params)
        else:
            path_params = {k: v for k, v in params.items() if f"{{{k}" in template}
            url = build_url_from_placeholders(template, path_params)

            query: Dict[str, Any] = dict(descriptor.default_params)
            query.update((k, v) for k, v in params.items() if k not in path_params)
            if descriptor.api_key_param:
                query[descriptor.api_key_param] = self.api_key
            query_string = build_query_string(query)
            if query_string:
                url = f"{url}{'&' if '?' in url else '?'}{query_string}"

        secret = (descriptor.api_key_param,) if descriptor.api_key_param else ()
        return RequestDescriptor(
            provider=self.name,
            url=url,
            timeout=self.timeout,
            secret_params=secret,
        )

    # -------------------------------------------------------------------------
    # Responses
    # -------------------------------------------------------------------------

    def parse_response(self, raw: bytes, response_style: ResponseStyle = None) -> List[Dict[str, Any]]:
        """
        Decode a response body into provider items.

        Args:
            raw: Response body
            response_style: Override of the descriptor's style

        Returns:
            List of decoded items (dicts)

        Raises:
            MalformedResponse: Undecodable body or explicit error field
            UnsupportedResponseStyle: Style without a decoder (xml)
        """
        return self.extract_items(self.decode_payload(raw, response_style))

    def decode_payload(self, raw: bytes, response_style: ResponseStyle = None) -> Any:
        """Decode a body into a JSON value without interpreting it."""
        style = ResponseStyle(response_style or self.descriptor.response_style)
        if style == ResponseStyle.XML:
            raise UnsupportedResponseStyle(self.name, style.value)

        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        if style == ResponseStyle.JSONP:
            text = strip_callback(text)

        try:
            return json.loads(text)
        except ValueError as e:
            raise MalformedResponse(self.name, "Response should be in json format") from e

    def check_errors(self, payload: Any) -> None:
        """Raise MalformedResponse when the payload carries an error field."""
        if not isinstance(payload, dict):
            return
        for error_field in self.descriptor.error_fields:
            if payload.get(error_field):
                raise MalformedResponse(self.name, str(payload[error_field]))

    def extract_items(self, payload: Any) -> List[Dict[str, Any]]:
        """Item list of a decoded payload; raises MalformedResponse on an error field."""
        self.check_errors(payload)
        if isinstance(payload, dict):
            if self.descriptor.items_field:
                items = payload.get(self.descriptor.items_field) or []
            else:
                items = [payload]
        elif isinstance(payload, list):
            items = payload
        else:
            raise MalformedResponse(
                self.name, f"Unexpected payload type {type(payload).__name__}"
            )

        if not isinstance(items, list):
            items = [items]
        return [item for item in items if isinstance(item, dict)]

    def fetch(
        self,
        transport,
        title: Optional[str] = None,
        year: Optional[Any] = None,
        imdb_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run one lookup against the provider.

        Returns the decoded, pre-normalization items; this is what gets
        cached under the raw key.
        """
        if imdb_id and not title and not year:
            request = self.build_id_lookup(imdb_id)
        else:
            request = self.build_query(title=title, year=year, imdb_id=imdb_id)
        response = transport.execute(request)
        return self.parse_response(response.body)

    # -------------------------------------------------------------------------
    # Normalization
    # -------------------------------------------------------------------------

    def accepts(self, item: Mapping[str, Any]) -> bool:
        """Filter hook applied before normalization."""
        return True

    def prepare_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Cleanup hook applied before normalization."""
        return item

    def normalize_items(self, items: List[Dict[str, Any]]) -> List[MovieInfo]:
        """Normalize decoded items; items without an identifier are dropped."""
        records = []
        for item in items:
            if not isinstance(item, dict) or not self.accepts(item):
                continue
            record = normalize(
                self.name,
                self.prepare_item(item),
                self.descriptor.response_mapping,
                self.descriptor.missing_values,
            )
            if record is not None:
                records.append(record)
        return records


# =============================================================================
# Registry
# =============================================================================

PROVIDERS: Dict[str, Type[ProviderAdapter]] = {}


def register_provider(cls: Type[ProviderAdapter]) -> Type[ProviderAdapter]:
    """Class decorator adding an adapter to PROVIDERS under its provider name."""
    PROVIDERS[cls.provider_name] = cls
    return cls


def create_provider(name: str, **kwargs) -> Optional[ProviderAdapter]:
    """
    Instantiate a registered adapter.

    Args:
        name: Provider name
        **kwargs: Passed to the adapter (descriptor, api_key, timeout)

    Returns:
        Adapter, or None for an unknown name
    """
    adapter_cls = PROVIDERS.get(name)
    if adapter_cls is None:
        logger.warning(f"Unknown provider '{name}', ignoring")
        return None
    return adapter_cls(**kwargs)


# =============================================================================
# Adapters
# =============================================================================

@register_provider
class ImdbSuggestionProvider(ProviderAdapter):
    """
    IMDb suggestion feed: fast prefix lookups, few attributes.

    The feed also suggests people (nm...) and lists; only title ids are kept.
    """

    provider_name = PROVIDER_IMDB_SUGGESTION

    def accepts(self, item: Mapping[str, Any]) -> bool:
        return validate_imdb_id(item.get("id"))

    def prepare_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return dict(item, url=IMDB_TITLE_URL.format(imdb_id=item["id"]))


@register_provider
class OmdbProvider(ProviderAdapter):
    """OMDb API: full records by id or by title + year."""

    provider_name = PROVIDER_OMDB

    # Error answers that only mean "no match"
    NOT_FOUND_ERRORS = ("movie not found!", "incorrect imdb id.")

    def extract_items(self, payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            error = str(payload.get("Error") or "").strip().lower()
            if error in self.NOT_FOUND_ERRORS:
                logger.debug(f"OMDb has no match: {payload.get('Error')}")
                return []
        return super().extract_items(payload)

    def prepare_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        if item.get("Plot"):
            item = dict(item, Plot=sanitize_text(item["Plot"]))
        return item
