"""
Exception hierarchy for the Movie Info aggregator.

Provider failures (subclasses of ProviderError) are recovered inside the
lookup orchestrator: they are logged, counted and turn into a suppression
entry for the failing provider. Usage errors are reported back to the caller
as an error reason on an empty result.
"""

from typing import Optional


class MovieInfoError(Exception):
    """Base exception for the movie info aggregator."""


class NoQueryDimension(MovieInfoError):
    """Raised when none of title/year/id was supplied or the provider accepts none of them."""

    def __init__(self, provider: Optional[str] = None, supplied: Optional[list] = None):
        self.provider = provider
        self.supplied = supplied or []
        if self.supplied:
            message = (
                f"{provider} does not support any of the supplied query "
                f"dimensions ({', '.join(self.supplied)})"
            )
        elif provider:
            message = f"{provider}: at least one of title, year or id is required"
        else:
            message = "At least one of title, year or id is required"
        super().__init__(message)


class MissingIdentifier(MovieInfoError):
    """Raised when a provider record lacks its identifier field."""

    def __init__(self, provider: str, field_name: Optional[str] = None):
        self.provider = provider
        self.field_name = field_name
        super().__init__(
            f"{provider}: imdb id is missing"
            + (f" (field '{field_name}')" if field_name else "")
        )


class ProviderError(MovieInfoError):
    """Base class for failures that put a provider into suppression."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class MalformedResponse(ProviderError):
    """Response could not be decoded or carries an explicit error field."""


class UnsupportedResponseStyle(ProviderError):
    """Response style is declared but has no decoder."""

    def __init__(self, provider: str, style: str):
        self.style = style
        super().__init__(provider, f"response style '{style}' is not supported")


class TransportFailure(ProviderError):
    """DNS, connection, timeout or server side failure."""

    def __init__(self, provider: str, reason: str):
        self.reason = reason
        super().__init__(provider, reason)


class ProviderClientError(ProviderError):
    """4xx response from a provider."""

    def __init__(self, provider: str, http_status: int, message: str):
        self.http_status = http_status
        self.message = message
        super().__init__(provider, message)
