"""Collaborative reverse tutoring: several students teach the AI learner together.

A collaboration attaches to an existing conversation, and its participants
share that conversation's history. In ``pass_the_mic`` mode only the turn
holder may send the next explanation, and the turn moves when the holder
tags a partner. Every answered student turn adds to the speaker's
contribution tally so the teacher can see when one student dominates.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Sequence, get_args
from uuid import uuid4

import tutor
from engines.base import BaseEngine
from engines.caching import CONVERSATION_LOCKS, KeyedLocks
from engines.validation import (
    ConversationBlocked,
    ConversationCompleted,
    NotFound,
    NotYourTurn,
    ValidationError,
    require_choice,
    require_ids,
    require_text,
)
from schemas import (
    CollaborationMode,
    CollaborationOverview,
    CollaborativeSession,
    Contribution,
    Conversation,
    Topic,
    utcnow,
)

_LOGGER = logging.getLogger(__name__)

MIN_PARTICIPANTS = 2
IMBALANCE_MIN_MESSAGES = 4
IMBALANCE_SHARE = 0.7


def contribution_balance(contributions: Mapping[str, Contribution]) -> float:
    """Share of messages sent by the busiest participant; 0.5 before anyone spoke."""
    total = sum(c.message_count for c in contributions.values())
    if total == 0:
        return 0.5
    return max(c.message_count for c in contributions.values()) / total


def record_contribution(
    collaboration: CollaborativeSession,
    student_id: str,
    message: str,
    understanding_level: int,
) -> CollaborativeSession:
    contributions = dict(collaboration.contributions)
    current = contributions.get(student_id, Contribution())
    contributions[student_id] = Contribution(
        message_count=current.message_count + 1,
        word_count=current.word_count + len(message.split()),
        analysis_sum=current.analysis_sum + understanding_level,
    )
    total = sum(c.message_count for c in contributions.values())
    imbalanced = total > IMBALANCE_MIN_MESSAGES and contribution_balance(contributions) > IMBALANCE_SHARE
    warnings = collaboration.balance_warnings + int(imbalanced and not collaboration.is_imbalanced)
    return collaboration.model_copy(
        update={"contributions": contributions, "is_imbalanced": imbalanced, "balance_warnings": warnings}
    )


def check_speaker(collaboration: CollaborativeSession, student_id: Optional[str]) -> str:
    """Return ``student_id`` if that participant may send the next message."""
    speaker = require_text(student_id, "student_id")
    if speaker not in collaboration.participant_ids:
        raise NotFound("Student is not a participant in this collaboration")
    if collaboration.mode == "pass_the_mic" and collaboration.current_turn_student_id != speaker:
        raise NotYourTurn(collaboration.id, collaboration.current_turn_student_id)
    return speaker


def _next_holder(turn_order: Sequence[str], leaving: str, remaining: Iterable[str]) -> Optional[str]:
    still_here = set(remaining)
    if leaving not in turn_order:
        return next((sid for sid in turn_order if sid in still_here), None)
    start = list(turn_order).index(leaving)
    rotated = list(turn_order[start + 1 :]) + list(turn_order[:start])
    return next((sid for sid in rotated if sid in still_here), None)


class CollaborationManager(BaseEngine):
    def __init__(self, store=None, llm=None, config=None, *, locks: Optional[KeyedLocks] = None):
        super().__init__(store, llm, config)
        self.locks = locks or CONVERSATION_LOCKS

    def _load(self, collab_session_id: str) -> CollaborativeSession:
        collaboration = self.store.get_collaboration(collab_session_id)
        if collaboration is None:
            raise NotFound("Collaborative session not found")
        return collaboration

    def _load_active(self, collab_session_id: str) -> CollaborativeSession:
        collaboration = self._load(collab_session_id)
        if not collaboration.is_active:
            raise NotFound("Collaborative session not found or not active")
        return collaboration

    def _collaborative_topic(self, conversation: Conversation) -> Topic:
        topic = self.store.get_topic(conversation.topic_id) if conversation.topic_id else None
        if topic is None or not topic.is_active:
            topic = self.store.get_active_topic(conversation.session_id, conversation.topic)
        if topic is None or not topic.allow_collaboration:
            raise ValidationError("Collaboration is not enabled for this topic")
        return topic

    def _log_event(self, event_type: str, collaboration: CollaborativeSession, **properties) -> None:
        payload = {"collabSessionId": collaboration.id, "conversationId": collaboration.conversation_id, **properties}
        self.store.log_analytics_event(event_type, collaboration.session_id, payload)
        tutor._json_log(event_type, {"session_id": collaboration.session_id, **payload})

    def start_collaboration(
        self,
        conversation_id: str,
        participant_ids: Iterable[str],
        mode: Optional[str] = None,
    ) -> CollaborativeSession:
        """Open (or reopen) a collaboration on ``conversation_id``.

        The first listed participant holds the first turn. The conversation's
        own student must take part, and the topic must allow collaboration.
        """
        require_ids(conversation_id=conversation_id)
        participants = list(dict.fromkeys(str(p).strip() for p in participant_ids or () if p and str(p).strip()))
        if len(participants) < MIN_PARTICIPANTS:
            raise ValidationError(f"At least {MIN_PARTICIPANTS} participants are required")

        with self.locks.hold(conversation_id):
            conversation = self.store.get_conversation(conversation_id)
            if conversation is None:
                raise NotFound("Conversation not found")
            if conversation.is_blocked:
                raise ConversationBlocked(conversation.id, conversation.blocked_reason)
            if conversation.is_completed:
                raise ConversationCompleted(conversation.id)

            topic = self._collaborative_topic(conversation)
            if len(participants) > topic.max_collaborators:
                raise ValidationError(f"This topic allows at most {topic.max_collaborators} collaborators")
            if conversation.student_id not in participants:
                raise ValidationError("The conversation's student must be one of the participants")
            for student_id in participants:
                if not self.store.is_active_student_in_session(conversation.session_id, student_id):
                    raise NotFound("Student not found in this session")
            chosen = require_choice(mode or topic.collaboration_mode, "mode", get_args(CollaborationMode))

            candidate = CollaborativeSession(
                id=str(uuid4()),
                conversation_id=conversation.id,
                session_id=conversation.session_id,
                mode=chosen,
                participant_ids=participants,
                participant_names={sid: self.store.get_student_name(sid) or "" for sid in participants},
                current_turn_student_id=participants[0],
                turn_order=participants,
            )
            collaboration = self.store.open_collaboration(conversation, candidate)

        self._log_event("collaboration_started", collaboration, participants=participants, mode=chosen)
        return collaboration

    def get_collaboration(self, collab_session_id: str) -> CollaborativeSession:
        require_ids(collab_session_id=collab_session_id)
        return self._load(collab_session_id)

    def pass_turn(self, collab_session_id: str, from_student_id: str, to_student_id: str) -> CollaborativeSession:
        require_ids(from_student_id=from_student_id, to_student_id=to_student_id)
        conversation_id = self._load_active(collab_session_id).conversation_id
        with self.locks.hold(conversation_id):
            collaboration = self._load_active(collab_session_id)
            if collaboration.current_turn_student_id != from_student_id:
                raise NotYourTurn(collaboration.id, collaboration.current_turn_student_id)
            if to_student_id not in collaboration.participant_ids:
                raise ValidationError("Target student is not a participant")
            saved = self.store.save_collaboration(
                collaboration.model_copy(
                    update={"current_turn_student_id": to_student_id, "turn_count": collaboration.turn_count + 1}
                )
            )
        self._log_event("collaboration_turn_passed", saved, fromStudentId=from_student_id, toStudentId=to_student_id)
        return saved

    def leave(self, collab_session_id: str, student_id: str) -> CollaborativeSession:
        """Drop ``student_id``; below two participants the conversation goes solo again."""
        require_ids(student_id=student_id)
        conversation_id = self._load_active(collab_session_id).conversation_id
        with self.locks.hold(conversation_id):
            collaboration = self._load_active(collab_session_id)
            if student_id not in collaboration.participant_ids:
                raise NotFound("Student is not a participant in this collaboration")
            remaining = [sid for sid in collaboration.participant_ids if sid != student_id]
            turn_order = [sid for sid in collaboration.turn_order if sid != student_id]

            if len(remaining) < MIN_PARTICIPANTS:
                updated = collaboration.model_copy(
                    update={
                        "participant_ids": remaining,
                        "turn_order": turn_order,
                        "current_turn_student_id": None,
                        "status": "abandoned",
                        "completed_at": utcnow(),
                    }
                )
                saved = self.store.save_collaboration(updated, detach=True)
                _LOGGER.info("Collaboration %s abandoned; conversation %s is solo again", saved.id, conversation_id)
            else:
                holder = collaboration.current_turn_student_id
                if holder == student_id:
                    holder = _next_holder(collaboration.turn_order, student_id, remaining)
                updated = collaboration.model_copy(
                    update={"participant_ids": remaining, "turn_order": turn_order, "current_turn_student_id": holder}
                )
                saved = self.store.save_collaboration(updated)

        self._log_event("collaboration_left", saved, studentId=student_id, status=saved.status)
        return saved

    def list_session_collaborations(self, session_id: str) -> List[CollaborationOverview]:
        session_id = require_text(session_id, "session_id")
        return self.store.list_session_collaborations(session_id)
