"""
Prometheus Metrics Collector

In-process counters, gauges and histograms for the message pipeline,
exported in Prometheus text exposition format (text/plain; version=0.0.4).
"""
import time
import threading
from typing import Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class MetricType(str, Enum):
    """Prometheus metric types."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricValue:
    """Single sample with optional labels."""
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class _LabeledMetric:
    """Shared storage for metrics keyed by label set."""

    metric_type: MetricType

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _label_key(labels: Dict[str, str]) -> tuple:
        return tuple(sorted((k, str(v)) for k, v in labels.items()))

    def _add(self, amount: float, labels: Dict[str, str]) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        """Current value for one label combination (0 when never touched)."""
        with self._lock:
            return self._values.get(self._label_key(labels), 0.0)

    def collect(self) -> List[MetricValue]:
        with self._lock:
            return [MetricValue(value=v, labels=dict(k)) for k, v in self._values.items()]


class Counter(_LabeledMetric):
    """Monotonic count: messages, fallbacks, flags, failures."""

    metric_type = MetricType.COUNTER

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counter can only increase")
        self._add(amount, labels)


class Gauge(_LabeledMetric):
    """Value that moves both ways, e.g. circuit state."""

    metric_type = MetricType.GAUGE

    def set(self, value: float, **labels: str) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        self._add(amount, labels)

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self._add(-amount, labels)


class Histogram:
    """
    Bucketed observations (cumulative buckets, plus sum and count).
    """

    metric_type = MetricType.HISTOGRAM

    # Seconds; pipeline stages range from in-memory scoring to generator round trips
    DEFAULT_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        self._values: Dict[tuple, Dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **labels: str) -> None:
        key = tuple(sorted((k, str(v)) for k, v in labels.items()))
        with self._lock:
            data = self._values.setdefault(
                key, {"buckets": dict.fromkeys(self.buckets, 0), "sum": 0.0, "count": 0}
            )
            data["sum"] += value
            data["count"] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def collect(self) -> List[MetricValue]:
        result = []
        with self._lock:
            for key, data in self._values.items():
                base_labels = dict(key)
                for bucket in self.buckets:
                    result.append(MetricValue(
                        value=data["buckets"][bucket],
                        labels={**base_labels, "le": str(bucket)}
                    ))
                result.append(MetricValue(value=data["count"], labels={**base_labels, "le": "+Inf"}))
                result.append(MetricValue(value=data["sum"], labels={**base_labels, "_metric": "sum"}))
                result.append(MetricValue(value=data["count"], labels={**base_labels, "_metric": "count"}))
        return result


class Timer:
    """Context manager that observes elapsed seconds into a histogram."""

    def __init__(self, histogram: Histogram, **labels: str):
        self.histogram = histogram
        self.labels = labels
        self.start_time: Optional[float] = None
        self.elapsed_ms: float = 0.0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            self.elapsed_ms = duration * 1000
            self.histogram.observe(duration, **self.labels)


class MetricsRegistry:
    """
    Central registry for pipeline metrics.

    Singleton; `export()` renders every registered metric.
    """

    _instance: Optional["MetricsRegistry"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetricsRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._initialized = True
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        # ============================================
        # PIPELINE
        # ============================================
        self.messages_total = self.counter(
            "lf_messages_total",
            "Processed messages by response method",
            ["method"]
        )

        self.pipeline_duration = self.histogram(
            "lf_pipeline_duration_seconds",
            "End-to-end message processing duration",
            ["path"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
        )

        self.confidence_score = self.histogram(
            "lf_confidence_score",
            "Distribution of confidence scores",
            buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)
        )

        self.retrieval_failures = self.counter(
            "lf_retrieval_failures_total",
            "Content searches that failed or timed out"
        )

        # ============================================
        # GENERATOR
        # ============================================
        self.generator_calls = self.counter(
            "lf_generator_calls_total",
            "Generator calls by operation and outcome",
            ["operation", "outcome"]
        )

        self.generator_duration = self.histogram(
            "lf_generator_duration_seconds",
            "Generator latency including retries",
            ["operation"]
        )

        self.circuit_state = self.gauge(
            "lf_circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["circuit"]
        )

        self.fallbacks_total = self.counter(
            "lf_fallbacks_total",
            "Deterministic fallbacks taken by component",
            ["component"]
        )

        # ============================================
        # FUNNEL & KNOWLEDGE GAPS
        # ============================================
        self.state_transitions = self.counter(
            "lf_state_transitions_total",
            "Lead state transitions by target state and method",
            ["state", "method"]
        )

        self.unanswered_recorded = self.counter(
            "lf_unanswered_recorded_total",
            "Unanswered questions recorded or incremented"
        )

        # ============================================
        # ABUSE CONTROLS
        # ============================================
        self.rate_limit_hits = self.counter(
            "lf_rate_limit_hits_total",
            "Requests short-circuited by the per-actor rate limiter"
        )

        self.security_flags = self.counter(
            "lf_security_flags_total",
            "Guardrail rule matches by category and direction",
            ["category", "direction"]
        )

        self.security_blocks = self.counter(
            "lf_security_blocks_total",
            "Inbound messages refused as unsafe"
        )

    def counter(self, name: str, description: str, labels: Optional[List[str]] = None) -> Counter:
        metric = Counter(name, description, labels)
        self._metrics[name] = metric
        return metric

    def gauge(self, name: str, description: str, labels: Optional[List[str]] = None) -> Gauge:
        metric = Gauge(name, description, labels)
        self._metrics[name] = metric
        return metric

    def histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ) -> Histogram:
        metric = Histogram(name, description, labels, buckets)
        self._metrics[name] = metric
        return metric

    def export(self) -> str:
        """
        Render all metrics in Prometheus text exposition format.
        https://prometheus.io/docs/instrumenting/exposition_formats/
        """
        lines = []

        for name, metric in self._metrics.items():
            lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {metric.metric_type.value}")

            for mv in metric.collect():
                labels = dict(mv.labels)
                metric_name = name
                if isinstance(metric, Histogram):
                    if "_metric" in labels:
                        metric_name = f"{name}_{labels.pop('_metric')}"
                    elif "le" in labels:
                        metric_name = f"{name}_bucket"
                lines.append(f"{metric_name}{self._format_labels(labels)} {mv.value}")

            lines.append("")

        return "\n".join(lines)

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(parts) + "}"

    def reset(self) -> None:
        """Drop all samples and re-register metrics. Used by tests."""
        self._metrics.clear()
        self._setup_metrics()


# Global metrics instance
metrics = MetricsRegistry()
