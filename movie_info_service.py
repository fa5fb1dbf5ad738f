#!/usr/bin/env python3
"""
Movie Info Aggregator Service v1.2.0

A small JSON API over the movie info aggregator: full and instant lookups,
cache administration, provider suppression control, health and metrics.

Endpoints:
    GET  /search?title=TITLE&year=YEAR&providers=tmdb,omdb
    GET  /search/<imdb_id>[?refresh=true]
    GET  /instant?q=PARTIAL
    GET  /instant/<imdb_id>
    GET  /cache[?key=KEY]
    POST /cache/clear
    POST /cache/delete?key=KEY | ?pattern=PATTERN
    GET  /suppression
    POST /suppression/<provider>/lift
    GET  /health, /health/ready, /health/live
    GET  /metrics

Lookup responses carry "found", "count", "results" (canonical records) and
"error" (most recent failure reason, or null).

Environment Variables:
    PORT: Server port (default: 5200)
    LOG_LEVEL: Logging level (default: INFO)
    STRUCTURED_LOGGING: JSON logs when "true"
    CACHE_DIR: Cache directory (default: ./cache)
    TMDB_API_KEY / OMDB_API_KEY: Provider credentials
"""

import os
import logging
import threading
from pathlib import Path
from typing import List, Optional

from flask import Flask, jsonify, request

from cache import FileCache
from constants import SERVICE_NAME, SERVICE_VERSION
from logging_config import configure_logging, setup_flask_request_id
from metrics import metrics
from models import LookupResult
from movie_lookup import MovieInfoAggregator
from providers import PROVIDERS
from text_utils import validate_imdb_id

# =============================================================================
# Configuration
# =============================================================================

PORT = int(os.environ.get("PORT", 5200))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
STRUCTURED_LOGGING = os.environ.get("STRUCTURED_LOGGING", "").lower() == "true"

configure_logging(level=LOG_LEVEL, structured=STRUCTURED_LOGGING)
logger = logging.getLogger(__name__)

app = Flask(__name__)
setup_flask_request_id(app)

_aggregator: Optional[MovieInfoAggregator] = None
_aggregator_lock = threading.Lock()


def get_aggregator() -> MovieInfoAggregator:
    """Process-wide aggregator, created on first use."""
    global _aggregator
    if _aggregator is None:
        with _aggregator_lock:
            if _aggregator is None:
                _aggregator = MovieInfoAggregator()
    return _aggregator


def _providers_arg() -> Optional[List[str]]:
    """Provider list from ?providers=a,b (None = mode defaults)."""
    value = request.args.get("providers", "").strip()
    if not value:
        return None
    return [name.strip() for name in value.split(",") if name.strip()]


def _lookup_response(result: LookupResult, **query):
    body = result.to_dict()
    body["query"] = {k: v for k, v in query.items() if v not in (None, "")}
    return jsonify(body)


# =============================================================================
# Lookup Endpoints
# =============================================================================

@app.route('/search', methods=['GET'])
def search_title():
    """
    Full lookup by title.

    Usage:
        /search?title=Titanic&year=1997
        /search?title=Titanic&providers=omdb
    """
    title = request.args.get('title', '').strip()
    year = request.args.get('year', '').strip() or None

    if not title:
        return jsonify({"error": "Missing 'title' parameter", "usage": "/search?title=TITLE&year=YEAR"}), 400
    if year and not year.isdigit():
        return jsonify({"error": f"Invalid year '{year}'"}), 400

    result = get_aggregator().search_by_title(title, year=year, providers=_providers_arg())
    return _lookup_response(result, title=title, year=year)


@app.route('/search/<imdb_id>', methods=['GET'])
def search_id(imdb_id: str):
    """Full lookup by IMDb id; ?refresh=true bypasses the aggregate store."""
    if not validate_imdb_id(imdb_id):
        return jsonify({"error": f"Invalid IMDb id '{imdb_id}'"}), 400

    refresh = request.args.get('refresh', '').lower() in ("1", "true", "yes")
    result = get_aggregator().search_by_id(imdb_id, providers=_providers_arg(), refresh=refresh)
    return _lookup_response(result, imdb_id=imdb_id)


@app.route('/instant', methods=['GET'])
def instant_search():
    """Fast partial lookup, e.g. /instant?q=titan"""
    query = request.args.get('q', '').strip()
    result = get_aggregator().instant_search(query, providers=_providers_arg())
    return _lookup_response(result, q=query)


@app.route('/instant/<imdb_id>', methods=['GET'])
def instant_search_id(imdb_id: str):
    """Fast lookup by IMDb id."""
    if not validate_imdb_id(imdb_id):
        return jsonify({"error": f"Invalid IMDb id '{imdb_id}'"}), 400

    result = get_aggregator().instant_search_by_id(imdb_id, providers=_providers_arg())
    return _lookup_response(result, imdb_id=imdb_id)


# =============================================================================
# Cache Endpoints
# =============================================================================

@app.route('/cache', methods=['GET'])
def cache_status():
    """
    View cache statistics and entries.

    Usage:
        /cache           - stats and the first 100 keys
        /cache?key=xxx   - view a specific cached value
    """
    cache = get_aggregator().cache
    key = request.args.get('key', '')

    if key:
        value = cache.get(key, ttl=cache.suppression_window)
        if value is not None:
            return jsonify({"key": key, "cached": True, "value": value})
        return jsonify({"key": key, "cached": False}), 404

    return jsonify({
        "stats": cache.stats(),
        "keys": cache.keys()[:100],
    })


@app.route('/cache/clear', methods=['POST'])
def cache_clear():
    """Clear every cache entry and the in-memory aggregate stores."""
    aggregator = get_aggregator()
    try:
        records = aggregator.clear()
        count = aggregator.cache.clear()
        return jsonify({"cleared": count, "aggregate_records": records})
    except Exception as e:
        logger.error(f"Cache clear failed: {e}")
        return jsonify({"error": str(e)}), 500


@app.route('/cache/delete', methods=['POST'])
def cache_delete():
    """
    Delete cache entries by key or pattern.

    Usage:
        POST /cache/delete?key=raw:omdb:1f2e3d4c5b6a7980
        POST /cache/delete?pattern=raw:omdb:*
        POST /cache/delete?pattern=omdb      (substring match)
    """
    cache = get_aggregator().cache
    key = request.args.get('key', '')
    pattern = request.args.get('pattern', '')

    if not key and not pattern:
        return jsonify({
            "error": "Missing 'key' or 'pattern' parameter",
            "usage": {
                "by_key": "POST /cache/delete?key=raw:tmdb:<fingerprint>",
                "by_pattern": "POST /cache/delete?pattern=raw:tmdb:*",
            }
        }), 400

    if key:
        deleted = [key] if cache.delete(key) else []
        return jsonify({"deleted": deleted, "count": len(deleted)})

    if not any(c in pattern for c in "*?["):
        pattern = f"*{pattern}*"
    count = cache.delete_pattern(pattern)
    return jsonify({"pattern": pattern, "count": count})


# =============================================================================
# Suppression Endpoints
# =============================================================================

@app.route('/suppression', methods=['GET'])
def suppression_status():
    """Currently suppressed providers and why."""
    return jsonify({"suppressed": get_aggregator().cache.suppressed_providers()})


@app.route('/suppression/<provider>/lift', methods=['POST'])
def suppression_lift(provider: str):
    """Lift a provider's suppression before its window elapses."""
    if provider not in PROVIDERS:
        return jsonify({"error": f"Unknown provider '{provider}'"}), 404
    lifted = get_aggregator().cache.lift_suppression(provider)
    return jsonify({"provider": provider, "lifted": lifted})


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.route('/health', methods=['GET'])
def health_check():
    """Shallow health check - confirms app is running."""
    return jsonify({
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
    })


@app.route('/health/ready', methods=['GET'])
def readiness_check():
    """
    Deep health check for readiness probes.

    Checks:
    - Cache directory writable (file cache only)
    - Providers configured
    - Providers currently suppressed
    """
    aggregator = get_aggregator()
    checks = {}
    healthy = True

    store = aggregator.cache.store
    if isinstance(store, FileCache):
        try:
            test_file = Path(store.cache_dir) / ".health_check"
            test_file.write_text("ok")
            test_file.unlink()
            checks["cache_writable"] = {"status": "ok"}
        except OSError as e:
            checks["cache_writable"] = {"status": "error", "message": str(e)}
            healthy = False
    else:
        checks["cache_writable"] = {"status": "ok" if store is not None else "disabled"}

    provider_checks = {}
    for name in PROVIDERS:
        adapter = aggregator.get_adapter(name)
        provider_checks[name] = "ok" if adapter and adapter.is_configured() else "disabled"
    checks["providers"] = provider_checks
    if not any(status == "ok" for status in provider_checks.values()):
        healthy = False

    suppressed = aggregator.cache.suppressed_providers()
    checks["suppressed"] = {"status": "degraded" if suppressed else "ok", "providers": sorted(suppressed)}

    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "version": SERVICE_VERSION,
        "checks": checks,
        "cache_stats": aggregator.cache.stats(),
        "aggregator": aggregator.stats(),
    }), 200 if healthy else 503


@app.route('/health/live', methods=['GET'])
def liveness_check():
    """Liveness probe - checks app isn't deadlocked."""
    return jsonify({"status": "alive"}), 200


@app.route('/metrics', methods=['GET'])
def metrics_endpoint():
    """Return application metrics, plus the same counters grouped by provider."""
    stats = metrics.get_stats()
    stats["providers"] = metrics.provider_summary()
    return jsonify(stats)


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    logger.info(f"Starting {SERVICE_NAME} v{SERVICE_VERSION} on port {PORT}")
    for provider_name in PROVIDERS:
        configured = get_aggregator().get_adapter(provider_name).is_configured()
        logger.info(f"Provider {provider_name}: {'enabled' if configured else 'disabled (no API key)'}")
    logger.info(f"Example: http://localhost:{PORT}/search?title=Titanic&year=1997")
    app.run(host="0.0.0.0", port=PORT, debug=False)
