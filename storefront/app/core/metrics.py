from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _label_str(key: LabelKey, extra: str = "") -> str:
    parts = [f'{k}="{v}"' for k, v in key]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


# ---------- Primitives ----------

class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_: str = ""):
        self.name = name
        self.help = help_
        self._lock = threading.Lock()

    def _header(self) -> Iterable[str]:
        if self.help:
            yield f"# HELP {self.name} {self.help}\n# TYPE {self.name} {self.kind}\n"


class _Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, help_: str = ""):
        super().__init__(name, help_)
        self._values: Dict[LabelKey, int] = defaultdict(int)

    def inc(self, labels: Optional[Dict[str, str]] = None, by: int = 1) -> None:
        with self._lock:
            self._values[_key(labels)] += by

    def value(self, labels: Optional[Dict[str, str]] = None) -> int:
        return self._values.get(_key(labels), 0)

    def render(self) -> Iterable[str]:
        yield from self._header()
        for key, v in sorted(self._values.items()):
            yield f"{self.name}{_label_str(key)} {v}\n"


class _Gauge(_Metric):
    kind = "gauge"

    def __init__(self, name: str, help_: str = ""):
        super().__init__(name, help_)
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._values[_key(labels)] = value

    def inc(self, labels: Optional[Dict[str, str]] = None, by: float = 1.0) -> None:
        with self._lock:
            self._values[_key(labels)] += by

    def dec(self, labels: Optional[Dict[str, str]] = None, by: float = 1.0) -> None:
        self.inc(labels=labels, by=-by)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        return self._values.get(_key(labels), 0.0)

    def render(self) -> Iterable[str]:
        yield from self._header()
        for key, v in sorted(self._values.items()):
            yield f"{self.name}{_label_str(key)} {v}\n"


class _Histogram(_Metric):
    kind = "histogram"
    # cart fetches and commits are sub-second when healthy
    DEFAULT_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10]

    def __init__(self, name: str, help_: str = "", buckets: Optional[Iterable[float]] = None):
        super().__init__(name, help_)
        self._buckets = sorted(buckets or self.DEFAULT_BUCKETS)
        self._counts: Dict[LabelKey, List[int]] = {}
        self._sum: Dict[LabelKey, float] = defaultdict(float)
        self._obs: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value_seconds: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = _key(labels)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * (len(self._buckets) + 1))
            self._sum[key] += value_seconds
            self._obs[key] += 1
            for i, b in enumerate(self._buckets):
                if value_seconds <= b:
                    counts[i] += 1
                    break
            else:
                counts[-1] += 1

    def timer(self, labels: Optional[Dict[str, str]] = None) -> Callable[[], None]:
        start = time.perf_counter()

        def _stop() -> None:
            self.observe(time.perf_counter() - start, labels=labels)

        return _stop

    def render(self) -> Iterable[str]:
        yield from self._header()
        for key in sorted(self._counts):
            running = 0
            bounds = [f"{b:g}" for b in self._buckets] + ["+Inf"]
            for le, n in zip(bounds, self._counts[key]):
                running += n
                le_label = f'le="{le}"'
                yield f"{self.name}_bucket{_label_str(key, le_label)} {running}\n"
            yield f"{self.name}_sum{_label_str(key)} {self._sum[key]}\n"
            yield f"{self.name}_count{_label_str(key)} {self._obs[key]}\n"


# ---------- Registry ----------

class MetricsRegistry:
    def __init__(self):
        self._items: list[_Metric] = []

    def counter(self, name: str, help_: str = "") -> _Counter:
        c = _Counter(name, help_)
        self._items.append(c)
        return c

    def gauge(self, name: str, help_: str = "") -> _Gauge:
        g = _Gauge(name, help_)
        self._items.append(g)
        return g

    def histogram(self, name: str, help_: str = "", buckets: Optional[Iterable[float]] = None) -> _Histogram:
        h = _Histogram(name, help_, buckets=buckets)
        self._items.append(h)
        return h

    def render_prometheus(self) -> str:
        out: list[str] = []
        for it in self._items:
            out.extend(it.render())
        return "".join(out)


REGISTRY = MetricsRegistry()

# ---------- Cart sync metrics ----------

cart_fetch_counter = REGISTRY.counter("storefront_cart_fetch_total", "Authoritative cart fetches by result")
cart_commit_counter = REGISTRY.counter("storefront_cart_commit_total", "Cart mutations sent upstream by op and result")
cart_coalesced_counter = REGISTRY.counter(
    "storefront_cart_coalesced_total", "Quantity requests absorbed into a later commit"
)
cart_fetch_duration = REGISTRY.histogram("storefront_cart_fetch_duration_seconds", "Cart fetch duration in seconds")
pending_edits_gauge = REGISTRY.gauge("storefront_cart_pending_edits", "Open debounce windows or in-flight commits")
