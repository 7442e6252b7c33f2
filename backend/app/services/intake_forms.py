# backend/app/services/intake_forms.py
"""
Intake forms capability.

Session readiness depends on whether the client completed intake forms
and agreements. The forms feature is optional: without a checker wired in,
``AlwaysCompleteFormsChecker`` treats forms as complete.
"""

from __future__ import annotations

from typing import Protocol

from ..models.therapy_session import TherapySession


class FormsCompletionChecker(Protocol):
    def is_complete(self, session: TherapySession) -> bool:
        ...


class AlwaysCompleteFormsChecker:
    """Default when no intake forms are configured."""

    def is_complete(self, session: TherapySession) -> bool:
        return True


class SessionFlagFormsChecker:
    """Reads the ``forms_complete`` flag stored on the session."""

    def is_complete(self, session: TherapySession) -> bool:
        return bool(session.forms_complete)
