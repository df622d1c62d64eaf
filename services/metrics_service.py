"""
Metrics Service
Prometheus counters and histograms for on-chain operations and background jobs
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class MetricsService:
    """
    Metrics sink backed by prometheus_client.

    Each instance owns its own CollectorRegistry so several services (or
    tests) can coexist in one process without duplicate-timeseries errors.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "aid_claims"):
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace

        self.onchain_operations_total = Counter(
            "onchain_operations_total",
            "Total number of on-chain adapter operations",
            ["operation", "adapter", "status"],
            namespace=namespace,
            registry=self.registry,
        )
        self.onchain_operation_duration = Histogram(
            "onchain_operation_duration_seconds",
            "Time spent in on-chain adapter calls",
            ["operation", "adapter"],
            namespace=namespace,
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )
        self.jobs_processed_total = Counter(
            "jobs_processed_total",
            "Total number of background jobs processed",
            ["queue", "job_type", "status"],
            namespace=namespace,
            registry=self.registry,
        )

    def increment_onchain_operation(self, operation: str, adapter: str, status: str) -> None:
        """Count one adapter call; status is 'success' or 'failed'"""
        self.onchain_operations_total.labels(operation=operation, adapter=adapter, status=status).inc()

    def record_onchain_duration(self, operation: str, adapter: str, duration_seconds: float) -> None:
        self.onchain_operation_duration.labels(operation=operation, adapter=adapter).observe(duration_seconds)

    def increment_jobs_processed(self, queue: str, job_type: str, status: str) -> None:
        self.jobs_processed_total.labels(queue=queue, job_type=job_type, status=status).inc()

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Current value of a sample, 0.0 when it has never been recorded.

        ``name`` is the unprefixed sample name, e.g. ``onchain_operations_total``.
        """
        value = self.registry.get_sample_value(f"{self.namespace}_{name}", labels or {})
        return value if value is not None else 0.0

    def export(self) -> bytes:
        """Prometheus text exposition of every metric in this registry"""
        return generate_latest(self.registry)
