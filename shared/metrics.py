"""
Shared metrics configuration for the VAT filing pricing engine.
"""

from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for the pricing engine."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up pricing metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["calculations_total"] = Counter(
            "pricing_calculations_total",
            "Total pricing calculations",
            ["status"],
            registry=self.registry
        )

        self._metrics["calculation_duration_seconds"] = Histogram(
            "pricing_calculation_duration_seconds",
            "Pricing calculation duration in seconds",
            registry=self.registry
        )

        self._metrics["rules_applied_total"] = Counter(
            "pricing_rules_applied_total",
            "Total rules applied",
            ["rule_type"],
            registry=self.registry
        )

        self._metrics["country_failures_total"] = Counter(
            "pricing_country_failures_total",
            "Total failed country evaluations",
            ["error_code"],
            registry=self.registry
        )

    def record_calculation(self, status: str, duration: float):
        """Record a finished calculation."""
        self._metrics["calculations_total"].labels(status=status).inc()
        self._metrics["calculation_duration_seconds"].observe(duration)

    def record_rule_applied(self, rule_type: str):
        """Record a rule application."""
        self._metrics["rules_applied_total"].labels(rule_type=rule_type).inc()

    def record_country_failure(self, error_code: str):
        """Record a failed country evaluation."""
        self._metrics["country_failures_total"].labels(error_code=error_code).inc()

    @contextmanager
    def time_calculation(self):
        """Time a calculation, recording success or failure."""
        start_time = time.time()
        status = "success"
        try:
            yield
        except Exception:
            status = "failure"
            raise
        finally:
            self.record_calculation(status, time.time() - start_time)

    def sample(self, metric_name: str, **labels) -> float:
        """Read the current value of a sample from the registry."""
        value = self.registry.get_sample_value(metric_name, labels or None)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get metrics collector for a service."""
    return MetricsCollector(service_name, registry)
