# backend/app/services/alerting.py
"""
Operator alerting with cooldown.

Alerts are keyed by ``type:severity``; an identical alert raised again
within the cooldown window is suppressed. Consecutive failures of a kind
(storage, notification, ...) raise an alert once they reach the threshold,
and a success resets the count.

Delivery is via subscribers (callbacks). Logging always happens, so an
alert with no subscribers still reaches the logs.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import threading
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.enums import Severity
from ..core.ulid_helper import generate_prefixed_id
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

ALERT_HISTORY_LIMIT = 200


@dataclass(frozen=True)
class Alert:
    alert_type: str
    severity: str
    message: str
    created_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: generate_prefixed_id("alert"))

    @property
    def key(self) -> str:
        return f"{self.alert_type}:{self.severity}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "details": dict(self.details),
            "created_at": self.created_at.isoformat(),
        }


AlertSubscriber = Callable[[Alert], None]


class AlertManager:
    """Emits alerts to subscribers, suppressing repeats within the cooldown."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        cooldown_seconds: Optional[int] = None,
        failure_threshold: Optional[int] = None,
    ) -> None:
        self.clock = clock or system_clock
        if cooldown_seconds is None:
            cooldown_seconds = settings.alert_cooldown_seconds
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.failure_threshold = failure_threshold or settings.alert_consecutive_failure_threshold
        self._last_alert_time: Dict[str, datetime] = {}
        self._consecutive_failures: Dict[str, int] = {}
        self._subscribers: List[AlertSubscriber] = []
        self._history: Deque[Alert] = deque(maxlen=ALERT_HISTORY_LIMIT)
        self._lock = threading.Lock()
        self.suppressed_count = 0

    def subscribe(self, callback: AlertSubscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def send_alert(
        self,
        alert_type: str,
        message: str,
        severity: Severity | str = Severity.HIGH,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Alert]:
        """Emit an alert unless the same type and severity fired within the cooldown."""
        severity_value = str(getattr(severity, "value", severity))
        key = f"{alert_type}:{severity_value}"
        now = self.clock.now()

        with self._lock:
            last = self._last_alert_time.get(key)
            if last is not None and now - last < self.cooldown:
                self.suppressed_count += 1
                suppressed = True
            else:
                self._last_alert_time[key] = now
                suppressed = False
            subscribers = list(self._subscribers)

        if suppressed:
            prometheus_metrics.record_alert(alert_type, "suppressed")
            logger.debug("Alert suppressed (cooldown): %s", key)
            return None

        alert = Alert(
            alert_type=alert_type,
            severity=severity_value,
            message=message,
            created_at=now,
            details=dict(details or {}),
        )
        with self._lock:
            self._history.append(alert)
        prometheus_metrics.record_alert(alert_type, "sent")
        logger.error(
            "ALERT [%s]: %s",
            key,
            message,
            extra={"alert_id": alert.id, "details": alert.details},
        )

        for subscriber in subscribers:
            try:
                subscriber(alert)
            except Exception:
                # One failing subscriber must not stop the others
                logger.exception("Alert subscriber %r failed for %s", subscriber, key)
        return alert

    def record_failure(
        self,
        kind: str,
        error: Optional[BaseException] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Alert]:
        """Count a consecutive failure; alert once the threshold is reached."""
        with self._lock:
            count = self._consecutive_failures.get(kind, 0) + 1
            self._consecutive_failures[kind] = count

        if count < self.failure_threshold:
            return None
        return self.send_alert(
            f"{kind}_failure",
            f"{count} consecutive {kind} failures"
            + (f": {error}" if error is not None else ""),
            Severity.HIGH,
            {"consecutive_failures": count, **dict(details or {})},
        )

    def record_success(self, kind: str) -> None:
        with self._lock:
            self._consecutive_failures[kind] = 0

    def consecutive_failures(self, kind: str) -> int:
        with self._lock:
            return self._consecutive_failures.get(kind, 0)

    def recent_alerts(self, limit: int = 20) -> List[Alert]:
        with self._lock:
            history = list(self._history)
        return list(reversed(history[-limit:]))
