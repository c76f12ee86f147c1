"""Session status gate for student-facing calls.

A paused or ended session keeps accepting turns until its grace window
closes; those turns carry a warning. Moderation blocks are checked
separately by the conversation engine and always apply.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from engines.base import BaseEngine
from engines.validation import NotFound, SessionUnavailable, require_choice
from schemas import SessionRecord, utcnow

SESSION_STATUSES = ("active", "paused", "ended")

_GRACE_WARNINGS = {
    "paused": "Session is paused. You have limited time to finish your thought.",
    "ended": "Session is ending. You have limited time to finish your thought.",
}

_CLOSED = {
    "paused": ("SESSION_PAUSED", "This session is paused. Please wait for your teacher to resume it."),
    "ended": ("SESSION_ENDED", "This session has ended."),
}


@dataclass(frozen=True)
class SessionAccess:
    allowed: bool
    status: str
    in_grace_period: bool = False
    grace_period_ends_at: Optional[datetime] = None
    warning: Optional[str] = None

    def as_warning(self) -> Optional[dict]:
        if not self.in_grace_period:
            return None
        return {
            "inGracePeriod": True,
            "gracePeriodEndsAt": self.grace_period_ends_at.isoformat() if self.grace_period_ends_at else None,
            "sessionStatus": self.status,
            "message": self.warning,
        }


def check_session_access(session: Optional[SessionRecord], now: Optional[datetime] = None) -> SessionAccess:
    if session is None:
        raise SessionUnavailable("SESSION_UNAVAILABLE", "Session not found or unavailable.")
    if session.status == "active":
        return SessionAccess(allowed=True, status="active")

    now = now or utcnow()
    grace_end = session.grace_period_ends_at
    if grace_end is not None and grace_end > now:
        return SessionAccess(
            allowed=True,
            status=session.status,
            in_grace_period=True,
            grace_period_ends_at=grace_end,
            warning=_GRACE_WARNINGS.get(session.status),
        )

    code, message = _CLOSED.get(session.status, ("SESSION_UNAVAILABLE", "Session is not available."))
    raise SessionUnavailable(code, message, status=session.status)


class SessionGate(BaseEngine):
    def access_for(self, session_id: str, now: Optional[datetime] = None) -> SessionAccess:
        return check_session_access(self.store.get_session(session_id), now)

    def access_for_conversation(self, conversation_id: str, now: Optional[datetime] = None) -> SessionAccess:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        return self.access_for(conversation.session_id, now)

    def set_status(self, session_id: str, status: str, teacher_id: Optional[str]) -> SessionRecord:
        """Pause, end or resume a session; leaving ``active`` opens the grace window."""
        require_choice(status, "status", SESSION_STATUSES)
        if not self.store.session_owned_by(session_id, teacher_id):
            raise NotFound("Session not found")
        return self.store.set_session_status(
            session_id,
            status,
            grace_seconds=self.config.grace_period_seconds,
        )
