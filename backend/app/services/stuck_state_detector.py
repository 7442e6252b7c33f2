"""Stuck state detection for sessions and their payment and video sub-states."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from ..constants.flow_states import STUCK_STATE_POLICIES, is_terminal
from ..core.clock import Clock, ensure_utc, minutes_between
from ..core.constants import STUCK_STATE_MULTIPLIER
from ..core.enums import EntityType
from ..models.therapy_session import TherapySession
from ..repositories.session_repository import SessionStore
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StuckStateResult:
    entity_type: str
    state: str
    stuck: bool
    minutes_in_state: int
    expected_minutes: Optional[int] = None
    resolution: Optional[str] = None
    entity_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "state": self.state,
            "stuck": self.stuck,
            "minutes_in_state": self.minutes_in_state,
            "expected_minutes": self.expected_minutes,
            "resolution": self.resolution,
        }


class StuckStateDetector(BaseService):
    """Flags states held longer than twice their expected duration."""

    def __init__(self, store: Optional[SessionStore] = None, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.store = store

    def check(
        self,
        entity_type: EntityType | str,
        state: str,
        entered_at: datetime,
        entity_id: Optional[str] = None,
    ) -> StuckStateResult:
        entity = str(getattr(entity_type, "value", entity_type))
        minutes = max(0, minutes_between(entered_at, self.now()))
        policy = STUCK_STATE_POLICIES.get(entity, {}).get(state)

        if policy is None or is_terminal(entity, state):
            return StuckStateResult(entity, state, False, minutes, entity_id=entity_id)

        stuck = minutes > policy.expected_minutes * STUCK_STATE_MULTIPLIER
        return StuckStateResult(
            entity_type=entity,
            state=state,
            stuck=stuck,
            minutes_in_state=minutes,
            expected_minutes=policy.expected_minutes,
            resolution=policy.resolution if stuck else None,
            entity_id=entity_id,
        )

    def check_session(self, session: TherapySession) -> List[StuckStateResult]:
        """Stuck states across the session and its sub-states."""
        fallback = session.created_at or session.scheduled_start
        candidates = (
            (EntityType.SESSION, session.status, session.status_changed_at),
            (EntityType.PAYMENT, session.payment_status, session.payment_status_changed_at),
            (EntityType.VIDEO, session.video_status, session.video_status_changed_at),
        )
        results = []
        for entity_type, state, changed_at in candidates:
            entered_at = changed_at or fallback
            if entered_at is None:
                continue
            result = self.check(entity_type, state, ensure_utc(entered_at), session.id)
            if result.stuck:
                results.append(result)
        return results

    @BaseService.measure_operation("scan_stuck_states")
    def scan(self) -> List[StuckStateResult]:
        if self.store is None:
            return []
        stuck: List[StuckStateResult] = []
        for session in self.store.find():
            stuck.extend(self.check_session(session))
        if stuck:
            logger.warning(
                "Detected %d stuck states",
                len(stuck),
                extra={"resolutions": sorted({r.resolution for r in stuck if r.resolution})},
            )
        return stuck
