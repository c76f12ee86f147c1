"""Teacher-facing projection of every conversation in a session."""

from __future__ import annotations

from typing import List

from engines.base import BaseEngine
from engines.validation import require_text
from schemas import Conversation, Dashboard, DashboardRow

MASTERY_THRESHOLD = 80
PROGRESSING_THRESHOLD = 60
STRUGGLING_THRESHOLD = 40
JUST_STARTED_MESSAGES = 3


def determine_status(understanding_level: int, message_count: int) -> str:
    if understanding_level >= MASTERY_THRESHOLD:
        return "mastery"
    if understanding_level >= PROGRESSING_THRESHOLD:
        return "progressing"
    if understanding_level >= STRUGGLING_THRESHOLD:
        return "struggling"
    if message_count < JUST_STARTED_MESSAGES:
        return "just_started"
    return "needs_help"


def _row(conversation: Conversation, student_name) -> DashboardRow:
    seconds = (conversation.last_updated - conversation.started_at).total_seconds()
    return DashboardRow(
        conversation_id=conversation.id,
        student_id=conversation.student_id,
        student_name=student_name,
        topic=conversation.topic,
        understanding_level=conversation.understanding_level,
        message_count=conversation.message_count,
        off_topic_warnings=conversation.off_topic_warnings,
        blocked=conversation.is_blocked,
        blocked_reason=conversation.blocked_reason,
        completed=conversation.is_completed,
        is_collaborative=conversation.collab_session_id is not None,
        status=determine_status(conversation.understanding_level, conversation.message_count),
        latest_analysis=conversation.latest_analysis(),
        started_at=conversation.started_at,
        last_updated=conversation.last_updated,
        duration_minutes=max(0, round(seconds / 60)),
    )


class TeacherDashboardAggregator(BaseEngine):
    def get_teacher_dashboard(self, session_id: str) -> Dashboard:
        session_id = require_text(session_id, "session_id")
        rows: List[DashboardRow] = [
            _row(conversation, name) for conversation, name in self.store.list_session_conversations(session_id)
        ]
        average = sum(r.understanding_level for r in rows) / len(rows) if rows else 0.0
        return Dashboard(
            session_id=session_id,
            conversations=rows,
            total_students=len({r.student_id for r in rows}),
            average_understanding=average,
        )
