"""
Prometheus metrics module for Smiling Steps.

Mirrors the flow integrity monitor's aggregate counters (transitions,
violations, recoveries, alerts) and exposes service timings recorded by
@measure_operation. Follows Prometheus naming conventions and best
practices for metric types.
"""

import os
from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ..core.constants import METRICS_NAMESPACE

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    f"{METRICS_NAMESPACE}_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    f"{METRICS_NAMESPACE}_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    f"{METRICS_NAMESPACE}_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

# Flow integrity
flow_transitions_total = Counter(
    f"{METRICS_NAMESPACE}_flow_transitions_total",
    "Total number of recorded state transitions",
    ["entity_type"],
    registry=REGISTRY,
)

flow_violations_total = Counter(
    f"{METRICS_NAMESPACE}_flow_violations_total",
    "Total number of rejected or inconsistent transitions",
    ["entity_type", "severity"],
    registry=REGISTRY,
)

flow_recoveries_total = Counter(
    f"{METRICS_NAMESPACE}_flow_recoveries_total",
    "Recovery attempts by outcome",
    ["outcome"],  # success | failed
    registry=REGISTRY,
)

flow_alerts_total = Counter(
    f"{METRICS_NAMESPACE}_flow_alerts_total",
    "Alerts raised by type and delivery status",
    ["alert_type", "status"],  # sent | suppressed
    registry=REGISTRY,
)

retry_attempts_total = Counter(
    f"{METRICS_NAMESPACE}_retry_attempts_total",
    "Retried attempts of failing operations",
    ["operation"],
    registry=REGISTRY,
)

queue_depth = Gauge(
    f"{METRICS_NAMESPACE}_queue_depth",
    "Number of queued operations by queue and status",
    ["queue", "status"],  # pending | failed
    registry=REGISTRY,
)

booking_lock_total = Counter(
    f"{METRICS_NAMESPACE}_booking_lock_total",
    "Booking lock operations by action and outcome",
    ["action", "outcome"],
    registry=REGISTRY,
)

health_check_status = Gauge(
    f"{METRICS_NAMESPACE}_health_check_status",
    "Last health check result per check (1 healthy, 0 failing)",
    ["check"],
    registry=REGISTRY,
)


def _metrics_ttl_seconds() -> float:
    """Return cache TTL seconds based on SITE_MODE."""

    mode = (os.getenv("SITE_MODE") or "").strip().lower()
    if mode in {"ci", "test"}:
        return 2.0
    return 1.0


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = _metrics_ttl_seconds()

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'EdgeCaseHandler')
            operation: Operation/method name (e.g., 'handle_late_join')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()

        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_transition(entity_type: str) -> None:
        flow_transitions_total.labels(entity_type=entity_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_violation(entity_type: str, severity: str) -> None:
        flow_violations_total.labels(entity_type=entity_type, severity=severity).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_recovery(outcome: str) -> None:
        flow_recoveries_total.labels(outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_alert(alert_type: str, status: str) -> None:
        flow_alerts_total.labels(alert_type=alert_type, status=status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_retry_attempt(operation: str) -> None:
        retry_attempts_total.labels(operation=operation).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def set_queue_depth(queue: str, pending: int, failed: int) -> None:
        """Publish current pending/failed counts for a queue."""
        queue_depth.labels(queue=queue, status="pending").set(pending)
        queue_depth.labels(queue=queue, status="failed").set(failed)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_booking_lock(action: str, outcome: str) -> None:
        booking_lock_total.labels(action=action, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def set_health_check(check: str, healthy: bool) -> None:
        health_check_status.labels(check=check).set(1 if healthy else 0)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """
        Generate Prometheus metrics in exposition format.

        Returns:
            Metrics data in Prometheus text format
        """
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        ttl = PrometheusMetrics._cache_ttl_seconds

        if payload is not None and ts is not None and (now - ts) <= ttl:
            return payload

        with PrometheusMetrics._cache_lock:
            payload = PrometheusMetrics._cache_payload
            ts = PrometheusMetrics._cache_ts
            ttl = PrometheusMetrics._cache_ttl_seconds

            if payload is None or ts is None or (now - ts) > ttl:
                PrometheusMetrics._refresh_cache_locked()
                payload = PrometheusMetrics._cache_payload

        return cast(bytes, payload)

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _refresh_cache_locked() -> None:
        """Refresh cached metrics payload. Caller must hold lock."""

        PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
        PrometheusMetrics._cache_ts = monotonic()
        PrometheusMetrics._cache_ttl_seconds = _metrics_ttl_seconds()

    @staticmethod
    def _invalidate_cache() -> None:
        """Invalidate cached metrics so next scrape refreshes."""

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
