"""
Structured logging configuration with request and provider tracking.

Provides:
- Request ID propagation via context variables
- Provider context, so lines from concurrent provider rounds can be told apart
- ContextFilter stamping both onto every record
- JSON formatter for production, colored human formatter for development
- Flask middleware for request ids, timing and per-endpoint HTTP counters
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

NO_REQUEST = 'system'

request_id_var: ContextVar[str] = ContextVar('request_id', default=NO_REQUEST)
provider_var: ContextVar[Optional[str]] = ContextVar('provider', default=None)


def get_request_id() -> str:
    """Current request ID, or 'system' outside a request."""
    return request_id_var.get()


def set_request_id(request_id: str = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set. If None, generates a new one.

    Returns:
        The request ID that was set
    """
    rid = request_id or uuid.uuid4().hex[:8]
    request_id_var.set(rid)
    return rid


def get_provider() -> Optional[str]:
    """Provider currently being queried in this context, if any."""
    return provider_var.get()


@contextmanager
def provider_context(provider: str):
    """
    Tag every log line emitted inside the block with a provider name.

    Usage:
        with provider_context("tmdb"):
            logger.info("Requesting details")
    """
    token = provider_var.set(provider)
    try:
        yield
    finally:
        provider_var.reset(token)


class ContextFilter(logging.Filter):
    """Copies the request id and provider of the current context onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.provider = get_provider()
        return True


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

    {"timestamp": "...", "level": "INFO", "logger": "movie_lookup",
     "request_id": "abc123", "provider": "tmdb", "message": "..."}
    """

    EXTRA_FIELDS = (
        'duration_ms', 'imdb_id', 'title', 'year', 'mode', 'records',
        'status_code', 'endpoint', 'method',
    )

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, 'request_id', NO_REQUEST),
            "message": record.getMessage(),
        }
        provider = getattr(record, 'provider', None)
        if provider:
            entry["provider"] = provider
        entry.update(
            (key, getattr(record, key)) for key in self.EXTRA_FIELDS if hasattr(record, key)
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    """
    Readable single-line format for development:

    INFO     [abc123/tmdb] movie_lookup: Message here
    """

    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        request_id = getattr(record, 'request_id', NO_REQUEST)
        tags = [tag for tag in (request_id, getattr(record, 'provider', None)) if tag and tag != NO_REQUEST]
        context = f"[{'/'.join(tags)}] " if tags else ""

        level = f"{record.levelname:8}"
        if self.use_colors:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"

        text = f"{level} {context}{record.name}: {record.getMessage()}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def configure_logging(
    level: str = "INFO",
    structured: bool = False,
    use_colors: bool = True,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        structured: Use JSON format for production
        use_colors: Use colored output (only for human format)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(StructuredFormatter() if structured else HumanFormatter(use_colors))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("urllib3", "requests", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# =============================================================================
# Flask Integration
# =============================================================================

def setup_flask_request_id(app) -> None:
    """
    Request tracking middleware for a Flask app.

    - Takes the request ID from X-Request-ID or generates one
    - Logs each response with its duration
    - Counts responses per endpoint and status in the metrics registry
    - Echoes the request ID in the X-Request-ID response header
    """
    from flask import g, request

    from metrics import metrics

    @app.before_request
    def start_request():
        g.request_id = set_request_id(request.headers.get('X-Request-ID'))
        g.request_start = time.monotonic()

    @app.after_request
    def finish_request(response):
        duration_ms = (time.monotonic() - g.request_start) * 1000
        endpoint = request.url_rule.rule if request.url_rule else request.path

        metrics.inc("http_responses", labels={"endpoint": endpoint, "status": str(response.status_code)})
        logging.getLogger('http').info(
            f"{request.method} {request.path} -> {response.status_code} ({duration_ms:.0f}ms)",
            extra={
                'method': request.method,
                'endpoint': endpoint,
                'status_code': response.status_code,
                'duration_ms': round(duration_ms, 2),
            },
        )
        response.headers['X-Request-ID'] = g.request_id
        return response
