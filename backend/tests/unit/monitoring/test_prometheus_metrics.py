from app.core.constants import METRICS_NAMESPACE
from app.monitoring.prometheus_metrics import prometheus_metrics


def _scrape() -> str:
    prometheus_metrics._invalidate_cache()
    return prometheus_metrics.get_metrics().decode()


def test_flow_counters_are_exposed() -> None:
    prometheus_metrics.record_transition("session")
    prometheus_metrics.record_violation("payment", "critical")
    prometheus_metrics.record_recovery("success")

    text = _scrape()

    assert f'{METRICS_NAMESPACE}_flow_transitions_total{{entity_type="session"}}' in text
    violations = f"{METRICS_NAMESPACE}_flow_violations_total"
    assert f'{violations}{{entity_type="payment",severity="critical"}}' in text
    assert f"{METRICS_NAMESPACE}_flow_recoveries_total" in text


def test_gauges_reflect_latest_value() -> None:
    prometheus_metrics.set_queue_depth("storage", pending=3, failed=1)
    prometheus_metrics.set_health_check("storage", False)

    text = _scrape()

    assert f'{METRICS_NAMESPACE}_queue_depth{{queue="storage",status="pending"}} 3.0' in text
    assert f'{METRICS_NAMESPACE}_health_check_status{{check="storage"}} 0.0' in text


def test_cached_payload_is_reused_until_invalidated() -> None:
    first = _scrape()

    assert prometheus_metrics.get_metrics().decode() == first
