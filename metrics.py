"""
Simple metrics collection for observability.

Thread-safe counters and histograms for provider traffic, cache
effectiveness and suppression activity. Exposed by the service at /metrics.
"""

import re
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

_LABEL_PATTERN = re.compile(r'^(?P<name>[^{]+)\{(?P<labels>.*)\}$')


def _split_provider(key: str) -> Optional[Tuple[str, str]]:
    """
    Split a labelled metric key on its provider label.

    'provider_requests{provider=tmdb,status=success}'
        -> ('tmdb', 'provider_requests[status=success]')
    """
    match = _LABEL_PATTERN.match(key)
    if not match:
        return None
    labels = dict(pair.split("=", 1) for pair in match.group("labels").split(",") if "=" in pair)
    provider = labels.pop("provider", None)
    if not provider:
        return None
    rest = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    name = match.group("name")
    return provider, f"{name}[{rest}]" if rest else name


@dataclass
class MetricCounter:
    """Thread-safe counter metric."""
    _value: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0


@dataclass
class MetricHistogram:
    """
    Simple histogram for latency tracking.

    Tracks count, total, min, max for computing averages.
    """
    _count: int = 0
    _total: float = 0.0
    _min: float = float('inf')
    _max: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._total += value
            self._min = min(self._min, value)
            self._max = max(self._max, value)

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def stats(self) -> Dict[str, float]:
        """Get all stats as dict."""
        with self._lock:
            return {
                "count": self._count,
                "avg": round(self._total / self._count, 2) if self._count > 0 else 0.0,
                "min": round(self._min, 2) if self._min != float('inf') else 0.0,
                "max": round(self._max, 2),
            }

    def reset(self) -> None:
        with self._lock:
            self._count = 0
            self._total = 0.0
            self._min = float('inf')
            self._max = 0.0


class Metrics:
    """
    Thread-safe metrics collector singleton.

    Usage:
        metrics.inc("provider_requests", labels={"provider": "tmdb", "status": "success"})
        metrics.inc("raw_cache", labels={"provider": "omdb", "result": "hit"})

        with metrics.timer("provider_request_duration_ms", labels={"provider": "tmdb"}):
            response = transport.execute(request)

        stats = metrics.get_stats()
    """

    _instance: Optional["Metrics"] = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._initialized = False
                    cls._instance = instance
        return cls._instance

    def __init__(self):
        if getattr(self, '_initialized', False):
            return

        self._registry_lock = threading.Lock()
        self._counters: Dict[str, MetricCounter] = defaultdict(MetricCounter)
        self._histograms: Dict[str, MetricHistogram] = defaultdict(MetricHistogram)
        self._initialized = True

    def _make_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create metric key with optional labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def inc(self, name: str, amount: int = 1, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter."""
        key = self._make_key(name, labels)
        with self._registry_lock:
            counter = self._counters[key]
        counter.increment(amount)

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record a histogram observation."""
        key = self._make_key(name, labels)
        with self._registry_lock:
            histogram = self._histograms[key]
        histogram.observe(value)

    @contextmanager
    def timer(self, name: str, labels: Optional[Dict[str, str]] = None):
        """Context manager recording the wrapped block's duration in milliseconds."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.observe(name, (time.monotonic() - start) * 1000, labels)

    def get_stats(self) -> Dict[str, Any]:
        """Get all metrics as a dictionary."""
        with self._registry_lock:
            counters = dict(self._counters)
            histograms = dict(self._histograms)
        return {
            "counters": {k: v.value for k, v in counters.items()},
            "histograms": {k: v.stats() for k, v in histograms.items()},
        }

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        """Get current value of a counter (0 if never incremented)."""
        key = self._make_key(name, labels)
        with self._registry_lock:
            counter = self._counters.get(key)
        return counter.value if counter else 0

    def provider_summary(self) -> Dict[str, Dict[str, Any]]:
        """
        Group provider-labelled counters and histograms by provider.

        Returns:
            {"tmdb": {"provider_requests[status=success]": 3,
                      "provider_request_duration_ms": {"count": 3, ...}}, ...}
        """
        stats = self.get_stats()
        summary: Dict[str, Dict[str, Any]] = defaultdict(dict)
        for section in ("counters", "histograms"):
            for key, value in stats[section].items():
                split = _split_provider(key)
                if split:
                    provider, name = split
                    summary[provider][name] = value
        return dict(summary)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._registry_lock:
            self._counters.clear()
            self._histograms.clear()


# Global instance
metrics = Metrics()
