"""
Tests for Prometheus metrics collection.
"""
import pytest
from src.utils.metrics import (
    MetricsRegistry,
    Counter,
    Gauge,
    Histogram,
    Timer,
    metrics,
)


class TestCounter:
    """Tests for Counter metric type."""

    def test_counter_increment(self):
        counter = Counter("test_counter", "Test counter")
        counter.inc()
        counter.inc(5)

        values = counter.collect()
        assert len(values) == 1
        assert values[0].value == 6

    def test_counter_with_labels(self):
        counter = Counter("test_counter", "Test counter", ["status"])
        counter.inc(1, status="success")
        counter.inc(2, status="error")
        counter.inc(1, status="success")

        assert len(counter.collect()) == 2
        assert counter.value(status="success") == 2
        assert counter.value(status="error") == 2
        assert counter.value(status="unknown") == 0

    def test_counter_rejects_negative(self):
        counter = Counter("test_counter", "Test counter")

        with pytest.raises(ValueError):
            counter.inc(-1)


class TestGauge:

    def test_set_inc_dec(self):
        gauge = Gauge("test_gauge", "Test gauge", ["circuit"])
        gauge.set(2, circuit="generator")
        gauge.inc(circuit="generator")
        gauge.dec(2, circuit="generator")

        assert gauge.value(circuit="generator") == 1


class TestHistogram:

    def test_buckets_are_cumulative(self):
        histogram = Histogram("test_hist", "Test histogram", buckets=(1.0, 0.1, 0.5))
        for value in (0.05, 0.3, 0.7, 2.0):
            histogram.observe(value)

        values = {v.labels.get("le") or v.labels["_metric"]: v.value for v in histogram.collect()}

        assert histogram.buckets == (0.1, 0.5, 1.0)
        assert values["0.1"] == 1
        assert values["0.5"] == 2
        assert values["1.0"] == 3
        assert values["+Inf"] == 4
        assert values["count"] == 4
        assert values["sum"] == pytest.approx(3.05)

    def test_timer_observes_elapsed(self):
        histogram = Histogram("test_hist", "Test histogram")

        with Timer(histogram, path="answer") as timer:
            pass

        assert timer.elapsed_ms >= 0
        count = next(v for v in histogram.collect() if v.labels.get("_metric") == "count")
        assert count.value == 1
        assert count.labels["path"] == "answer"


class TestMetricsRegistry:

    def test_singleton(self):
        assert MetricsRegistry() is metrics

    def test_pipeline_metrics_registered(self):
        output = metrics.export()

        for name in (
            "lf_messages_total",
            "lf_pipeline_duration_seconds",
            "lf_confidence_score",
            "lf_generator_calls_total",
            "lf_circuit_state",
            "lf_unanswered_recorded_total",
            "lf_rate_limit_hits_total",
            "lf_security_flags_total",
        ):
            assert f"# TYPE {name}" in output

    def test_export_format(self):
        metrics.messages_total.inc(method="confident")
        metrics.confidence_score.observe(0.82)

        output = metrics.export()

        assert "# HELP lf_messages_total Processed messages by response method" in output
        assert 'lf_messages_total{method="confident"} 1.0' in output
        assert 'lf_confidence_score_bucket{le="0.9"} 1' in output
        assert "lf_confidence_score_count 1" in output

    def test_reset_clears_samples(self):
        metrics.messages_total.inc(method="fallback")

        metrics.reset()

        assert metrics.messages_total.value(method="fallback") == 0
