"""
Flow integrity enforcement configuration (kill switch).

Controls how strictly transition rules are enforced:
- strict: block all invalid transitions
- warn: log the violation but allow the transition
- off: skip checks entirely

Runtime changes are restricted to admin, emergency, or startup contexts.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import logging
import threading
from typing import Any, Dict, Mapping, Optional

from .clock import Clock, system_clock
from .config import settings
from .enums import EnforcementLevel
from .exceptions import DomainException, IntegrityConfigLockedError, ValidationException

logger = logging.getLogger(__name__)


@dataclass
class EnforcementStats:
    total_checks: int = 0
    transitions_blocked: int = 0
    warnings_issued: int = 0
    checks_skipped: int = 0


class IntegrityConfig:
    """Holds the current enforcement level and counts how violations were handled."""

    def __init__(
        self,
        level: EnforcementLevel | str | None = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._clock = clock or system_clock
        self._lock = threading.Lock()
        self.enforcement_level = EnforcementLevel(level or settings.integrity_enforcement)
        self.started_at: datetime = self._clock.now()
        self.stats = EnforcementStats()
        logger.info(
            "Flow integrity initialized with enforcement level: %s", self.enforcement_level.value
        )

    def is_enforcement_enabled(self) -> bool:
        return self.enforcement_level != EnforcementLevel.OFF

    def is_strict(self) -> bool:
        return self.enforcement_level == EnforcementLevel.STRICT

    def set_enforcement_level(
        self,
        level: EnforcementLevel | str,
        reason: str = "Manual change",
        changed_by: str = "system",
        auth_context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        auth = dict(auth_context or {})
        if not (auth.get("is_admin") or auth.get("is_emergency") or auth.get("is_startup")):
            raise IntegrityConfigLockedError(changed_by, auth)

        try:
            new_level = EnforcementLevel(level)
        except ValueError as exc:
            raise ValidationException(
                f"Invalid enforcement level: {level}", code="INVALID_ENFORCEMENT_LEVEL"
            ) from exc

        with self._lock:
            old_level = self.enforcement_level
            self.enforcement_level = new_level

        logger.warning(
            "Integrity enforcement changed: %s -> %s",
            old_level.value,
            new_level.value,
            extra={"reason": reason, "changed_by": changed_by},
        )
        if new_level == EnforcementLevel.OFF:
            logger.critical(
                "Flow integrity enforcement DISABLED",
                extra={"reason": reason, "changed_by": changed_by},
            )

    def emergency_disable(self, reason: str, disabled_by: str = "system") -> None:
        self.set_enforcement_level(
            EnforcementLevel.OFF, f"EMERGENCY: {reason}", disabled_by, {"is_emergency": True}
        )

    def emergency_enable(self, reason: str, enabled_by: str = "system") -> None:
        self.set_enforcement_level(
            EnforcementLevel.STRICT, f"EMERGENCY: {reason}", enabled_by, {"is_emergency": True}
        )

    def record_check(self) -> None:
        with self._lock:
            self.stats.total_checks += 1

    def record_skip(self) -> None:
        with self._lock:
            self.stats.checks_skipped += 1

    def handle_violation(self, violation: DomainException, context: Mapping[str, Any]) -> bool:
        """
        Apply the enforcement level to a violation.

        Raises the violation in strict mode; returns True when it was allowed through.
        """
        level = self.enforcement_level
        if level == EnforcementLevel.STRICT:
            with self._lock:
                self.stats.transitions_blocked += 1
            logger.error(
                "Integrity violation blocked: %s",
                violation.message,
                extra={"context": dict(context), "enforcement_level": level.value},
            )
            raise violation
        if level == EnforcementLevel.WARN:
            with self._lock:
                self.stats.warnings_issued += 1
            logger.warning(
                "Integrity violation allowed (warn mode): %s",
                violation.message,
                extra={"context": dict(context), "enforcement_level": level.value},
            )
            return True
        with self._lock:
            self.stats.checks_skipped += 1
        return True

    def get_stats(self) -> Dict[str, Any]:
        uptime = max(0, int((self._clock.now() - self.started_at).total_seconds()))
        stats = asdict(self.stats)
        total = stats["total_checks"]
        blocked = stats["transitions_blocked"]
        warned = stats["warnings_issued"]
        return {
            "enforcement_level": self.enforcement_level.value,
            "uptime_seconds": uptime,
            "stats": stats,
            "rates": {
                "block_rate": round(blocked / total * 100, 2) if total else 0.0,
                "warn_rate": round(warned / total * 100, 2) if total else 0.0,
            },
        }

    def reset_stats(self) -> None:
        with self._lock:
            self.stats = EnforcementStats()
            self.started_at = self._clock.now()
