"""Metrics sinks: prometheus_client-backed and in-memory."""

from __future__ import annotations

import re
import threading
import weakref
from collections import defaultdict
from typing import Any, Mapping, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")

_collectors: "weakref.WeakKeyDictionary[CollectorRegistry, dict[tuple[str, str], Any]]" = (
    weakref.WeakKeyDictionary()
)
_collectors_lock = threading.Lock()


def _metric_name(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", name)


class PrometheusMetrics:
    """Creates prometheus collectors lazily, one per metric name.

    Label names are fixed by the tags of the first observation of a metric;
    later observations must use the same tag keys. Collectors are shared by
    every sink writing to the same registry.
    """

    def __init__(
        self, registry: Optional[CollectorRegistry] = None, namespace: str = ""
    ) -> None:
        self._registry = registry if registry is not None else REGISTRY
        self._namespace = namespace

    def _collector(self, kind: type, name: str, tags: Mapping[str, str]) -> Any:
        metric_name = _metric_name(name)
        with _collectors_lock:
            collectors = _collectors.setdefault(self._registry, {})
            collector = collectors.get((self._namespace, metric_name))
            if collector is None:
                collector = kind(
                    metric_name,
                    f"x402 {kind.__name__.lower()} {name}",
                    sorted(tags),
                    namespace=self._namespace,
                    registry=self._registry,
                )
                collectors[(self._namespace, metric_name)] = collector
        return collector.labels(**tags) if tags else collector

    def increment(
        self, name: str, value: int = 1, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        self._collector(Counter, name, tags or {}).inc(value)

    def timing(
        self, name: str, seconds: float, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        self._collector(Histogram, name, tags or {}).observe(seconds)

    def gauge(
        self, name: str, value: float, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        self._collector(Gauge, name, tags or {}).set(value)


TagKey = tuple[tuple[str, str], ...]


def _tag_key(tags: Optional[Mapping[str, str]]) -> TagKey:
    return tuple(sorted((tags or {}).items()))


class InMemoryMetrics:
    """Keeps every observation in dictionaries. Useful in tests and small embeddings."""

    def __init__(self) -> None:
        self.counters: dict[str, dict[TagKey, float]] = defaultdict(dict)
        self.timings: dict[str, list[tuple[TagKey, float]]] = defaultdict(list)
        self.gauges: dict[str, dict[TagKey, float]] = defaultdict(dict)

    def increment(
        self, name: str, value: int = 1, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        key = _tag_key(tags)
        self.counters[name][key] = self.counters[name].get(key, 0) + value

    def timing(
        self, name: str, seconds: float, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        self.timings[name].append((_tag_key(tags), seconds))

    def gauge(
        self, name: str, value: float, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        self.gauges[name][_tag_key(tags)] = value

    def count(self, name: str, **tags: str) -> float:
        """Sum a counter over every tag set containing ``tags``."""
        wanted = set(tags.items())
        return sum(
            value
            for key, value in self.counters.get(name, {}).items()
            if wanted <= set(key)
        )
