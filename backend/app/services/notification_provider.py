# backend/app/services/notification_provider.py
"""
Notification sender interface and the default logging shim.

The shim "delivers" by logging the message. A test-only environment flag
(`NOTIFICATION_PROVIDER_RAISE_ON`) can be used to trigger transient
failures for matching event types, which exercises the retry and
notification queue paths end to end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from typing import Any, Dict, Optional, Protocol

from app.core.exceptions import NotificationPermanentError, NotificationTemporaryError
from app.core.ulid_helper import generate_ulid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    recipient: Optional[str]
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: str = field(default_factory=generate_ulid)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "event_type": self.event_type,
            "payload": dict(self.payload),
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationMessage":
        return cls(
            recipient=data.get("recipient"),
            event_type=data["event_type"],
            payload=dict(data.get("payload") or {}),
            idempotency_key=data.get("idempotency_key") or generate_ulid(),
        )


class NotificationSender(Protocol):
    def send(self, message: NotificationMessage) -> None:
        """
        Deliver a message.

        Raises:
            NotificationTemporaryError: delivery may succeed later
            NotificationPermanentError: delivery will never succeed (e.g. invalid address)
        """
        ...


def _should_raise(event_type: str) -> bool:
    """Determine whether to simulate a provider failure."""
    raw = os.getenv("NOTIFICATION_PROVIDER_RAISE_ON")
    if not raw:
        return False
    tokens = {token.strip() for token in raw.split(",") if token.strip()}
    return "*" in tokens or event_type in tokens


class LoggingNotificationSender:
    """Default sender: records the message in the application log."""

    def __init__(self) -> None:
        self.sent_count = 0

    def send(self, message: NotificationMessage) -> None:
        if not message.recipient:
            raise NotificationPermanentError(
                f"No recipient for {message.event_type} ({message.idempotency_key})"
            )

        if _should_raise(message.event_type):
            logger.warning(
                "Simulating provider failure for %s (%s)",
                message.event_type,
                message.idempotency_key,
            )
            raise NotificationTemporaryError(
                f"Simulated transient failure for {message.event_type}"
            )

        self.sent_count += 1
        logger.info(
            "Dispatching notification %s key=%s to=%s payload=%s",
            message.event_type,
            message.idempotency_key,
            message.recipient,
            json.dumps(message.payload, sort_keys=True, default=str)[:500],
        )
