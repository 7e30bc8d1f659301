"""In-process metrics for StoreFlow, exported in Prometheus text format.

Counters and histograms register themselves in a module-level
registry when created; ``generate_metrics_text`` renders all of them for
the ``/metrics`` endpoint.  Label values are passed as keyword arguments
matching the names given at construction, e.g.
``HTTP_REQUESTS_TOTAL.inc(endpoint="/api/products", method="GET", status="200")``.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Tuple

LabelKey = Tuple[str, ...]


class Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _labels(self, key: LabelKey, **more: str) -> str:
        pairs = [f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key)]
        pairs.extend(f'{n}="{v}"' for n, v in more.items())
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def _header(self) -> List[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def samples(self) -> List[str]:
        raise NotImplementedError

    def to_prometheus(self) -> List[str]:
        with self._lock:
            return self._header() + self.samples()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class Counter(Metric):
    """Monotonic counter."""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self._values[self._key(labels)] += amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        return [f"{self.name}{self._labels(k)} {v:g}" for k, v in self._values.items()]


class Histogram(Metric):
    """Histogram with fixed upper bounds; buckets are rendered cumulatively."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Iterable[str] = (),
        buckets: Iterable[float] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    ):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        # Per-bucket (non-cumulative) hit counts; the final slot is +Inf
        self._hits: Dict[LabelKey, List[int]] = defaultdict(lambda: [0] * (len(self.buckets) + 1))
        self._sums: Dict[LabelKey, float] = defaultdict(float)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        slot = len(self.buckets)
        for idx, upper in enumerate(self.buckets):
            if value <= upper:
                slot = idx
                break
        with self._lock:
            self._hits[key][slot] += 1
            self._sums[key] += float(value)

    def count(self, **labels: str) -> int:
        with self._lock:
            hits = self._hits.get(self._key(labels))
            return sum(hits) if hits else 0

    def samples(self) -> List[str]:
        lines: List[str] = []
        for key, hits in self._hits.items():
            running = 0
            for upper, n in zip(self.buckets, hits):
                running += n
                lines.append(f"{self.name}_bucket{self._labels(key, le=f'{upper:g}')} {running}")
            total = sum(hits)
            lines.append(f"{self.name}_bucket{self._labels(key, le='+Inf')} {total}")
            lines.append(f"{self.name}_sum{self._labels(key)} {self._sums[key]:g}")
            lines.append(f"{self.name}_count{self._labels(key)} {total}")
        return lines


_METRIC_REGISTRY: List[Metric] = []


def generate_metrics_text() -> bytes:
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.to_prometheus())
    return ("\n".join(lines) + "\n").encode("utf-8")


# ------------------------------------------------------------------------------
# StoreFlow metrics
# ------------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests handled by the REST backend",
    ["endpoint", "method", "status"],
)

HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "http_request_latency_seconds",
    "REST backend request latency in seconds",
    ["endpoint"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0],
)

CHECKOUT_DURATION_SECONDS = Histogram(
    "checkout_duration_seconds",
    "Wall time of one order commit sequence in seconds",
    ["outcome"],
    buckets=[0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

CHECKOUT_ERROR_TOTAL = Counter(
    "checkout_error_total",
    "Checkout attempts that did not commit, by error type",
    ["type"],
)

ORDER_COMMIT_STEP_FAILURES_TOTAL = Counter(
    "order_commit_step_failures_total",
    "Order commit sequence failures by the step that failed",
    ["step"],
)

ORDERS_RECONCILED_TOTAL = Counter(
    "orders_reconciled_total",
    "Pending orders re-driven by the reconciler, by outcome",
    ["outcome"],
)
