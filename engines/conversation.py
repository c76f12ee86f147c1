"""Reverse tutoring conversation lifecycle.

A student explains a topic to an AI learner persona. Each ``continue`` call
appends one student turn and one AI turn, applies the off-topic moderation
policy and the turn cap, and persists the result with a single versioned
write. Calls on the same conversation are serialized in-process; the
versioned write rejects writers working from stale state across processes.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

import tutor
from engines.base import BaseEngine
from engines.caching import CONVERSATION_LOCKS, KeyedLocks
from engines.collaboration import check_speaker, record_contribution
from engines.compliance import validate as validate_compliance
from engines.moderation import (
    Malformed,
    fallback_analysis,
    moderate,
    next_understanding,
    parse_tutor_reply,
    with_redirect,
)
from engines.validation import (
    ConversationBlocked,
    ConversationCompleted,
    DuplicateConversation,
    GenerationFailed,
    NotFound,
    StaleConversation,
    require_ids,
    require_text,
)
from prompts.masterprompts import PersonaPrompt
from schemas import (
    CollaborativeSession,
    ComplianceReport,
    Conversation,
    ConversationMessage,
    StartResult,
    TopicConfig,
    Transcript,
    TurnOptions,
    TurnResult,
    utcnow,
)

_LOGGER = logging.getLogger(__name__)


def _duration_minutes(conversation: Conversation) -> int:
    seconds = (conversation.last_updated - conversation.started_at).total_seconds()
    return max(0, round(seconds / 60))


class ConversationEngine(BaseEngine):
    def __init__(
        self,
        store=None,
        llm=None,
        config=None,
        *,
        persona: Optional[PersonaPrompt] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        super().__init__(store, llm, config)
        self.persona = persona or tutor.ACTIVE_PERSONA
        self.locks = locks or CONVERSATION_LOCKS

    # ------------------------------------------------------------------ helpers
    def _load(self, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        return conversation

    @staticmethod
    def _raise_existing(conversation: Conversation) -> None:
        if conversation.is_blocked:
            raise ConversationBlocked(conversation.id, conversation.blocked_reason)
        raise DuplicateConversation(conversation.id)

    @staticmethod
    def _ensure_open(conversation: Conversation) -> None:
        if conversation.is_blocked:
            raise ConversationBlocked(conversation.id, conversation.blocked_reason)
        if conversation.is_completed:
            raise ConversationCompleted(conversation.id)

    def _document_context(self, session_id: str, settings: TopicConfig) -> Optional[str]:
        """Live topic context when the topic is still active, else the snapshot."""
        topic = self.store.get_active_topic(session_id, settings.topic)
        if topic is not None:
            return topic.document_context
        return settings.document_context

    def _generate(self, system: str, messages, max_tokens: int, path) -> str:
        llm = self._require_llm()
        try:
            return llm.complete(system, messages, max_tokens, path=path)
        except GenerationFailed as exc:
            _LOGGER.warning("Tutor generation failed (%s): %s", " > ".join(path), exc.detail, exc_info=True)
            raise

    def _log_event(self, event_type: str, session_id: str, properties: dict) -> None:
        self.store.log_analytics_event(event_type, session_id, properties)
        tutor._json_log(event_type, {"session_id": session_id, **properties})

    # -------------------------------------------------------------------- start
    def start(self, session_id: str, student_id: str, topic_config: TopicConfig) -> StartResult:
        require_ids(session_id=session_id, student_id=student_id)
        topic = require_text(topic_config.topic, "topic")
        if not self.store.is_active_student_in_session(session_id, student_id):
            raise NotFound("Student not found in this session")

        existing = self.store.find_conversation(session_id, student_id, topic)
        if existing is not None:
            self._raise_existing(existing)

        live_topic = self.store.get_active_topic(session_id, topic)
        document_context = live_topic.document_context if live_topic else topic_config.document_context
        system = tutor.build_system_prompt(
            topic_config,
            persona=self.persona,
            document_context=document_context,
            include_signals=False,
        )
        raw = self._generate(
            system,
            tutor.opening_messages(topic_config, self.persona),
            self.config.opening_max_tokens,
            ["reverse_tutoring", "start"],
        )
        opening = parse_tutor_reply(raw).reply
        if not opening:
            raise GenerationFailed("Opening message was empty")

        now = utcnow()
        candidate = Conversation(
            id=str(uuid4()),
            session_id=session_id,
            student_id=student_id,
            topic=topic,
            topic_id=live_topic.id if live_topic else None,
            settings=topic_config,
            history=[ConversationMessage(role="ai", content=opening, kind="opening", timestamp=now)],
            message_count=1,
            understanding_level=self.config.baseline_understanding,
            started_at=now,
            last_updated=now,
        )
        stored, created = self.store.create_conversation_if_absent(candidate)
        if not created:
            # Another request for the same triple committed first.
            self._raise_existing(stored)

        self._log_event(
            "reverse_tutoring_started",
            session_id,
            {"conversationId": stored.id, "topic": topic, "subject": topic_config.subject},
        )
        return StartResult(
            conversation_id=stored.id,
            initial_message=opening,
            understanding_level=stored.understanding_level,
            message_count=stored.message_count,
            persona=self.persona.persona,
        )

    # ----------------------------------------------------------------- continue
    def continue_conversation(
        self,
        conversation_id: str,
        student_message: str,
        turn_options: Optional[TurnOptions] = None,
        *,
        contributor_id: Optional[str] = None,
    ) -> TurnResult:
        """Answer one student explanation.

        On a collaborative conversation ``contributor_id`` names the
        participant speaking, who must hold the turn in ``pass_the_mic`` mode.
        """
        message = require_text(student_message, "student_message")
        require_ids(conversation_id=conversation_id)
        options = turn_options or TurnOptions()

        # Cheap rejections before queuing behind another turn.
        self._ensure_open(self._load(conversation_id))

        with self.locks.hold(conversation_id):
            conversation = self._load(conversation_id)
            self._ensure_open(conversation)
            collaboration = self._active_collaboration(conversation)
            speaker = check_speaker(collaboration, contributor_id) if collaboration else None
            return self._take_turn(conversation, message, options, collaboration, speaker)

    def _active_collaboration(self, conversation: Conversation) -> Optional[CollaborativeSession]:
        if conversation.collab_session_id is None:
            return None
        collaboration = self.store.get_collaboration(conversation.collab_session_id)
        return collaboration if collaboration is not None and collaboration.is_active else None

    def _student_turn(
        self,
        conversation: Conversation,
        message: str,
        options: TurnOptions,
        speaker: Optional[str] = None,
    ) -> ConversationMessage:
        pending = conversation.history[-1] if conversation.awaiting_reply else None
        if pending is not None and pending.content == message and pending.contributor_id == speaker:
            return pending
        contributor = {}
        if speaker is not None:
            contributor = {
                "contributor_id": speaker,
                "contributor_name": self.store.get_student_name(speaker) or speaker,
            }
        return ConversationMessage(
            role="student",
            content=message,
            **contributor,
            help_needed=options.help_needed,
            vocabulary_used=list(options.vocabulary_used) or None,
            language=options.language,
        )

    def _persist_pending(self, conversation: Conversation, history) -> None:
        pending = conversation.model_copy(
            update={"history": history, "message_count": len(history), "last_updated": utcnow()}
        )
        self.store.save_conversation(pending)

    def _keep_pending(self, conversation: Conversation, history) -> None:
        """Save the unanswered student turn without masking the generation failure."""
        try:
            self._persist_pending(conversation, history)
        except StaleConversation:
            _LOGGER.warning("Pending turn for %s not saved: conversation changed", conversation.id, exc_info=True)

    def _take_turn(
        self,
        conversation: Conversation,
        message: str,
        options: TurnOptions,
        collaboration: Optional[CollaborativeSession] = None,
        speaker: Optional[str] = None,
    ) -> TurnResult:
        settings = conversation.settings
        # An unanswered student turn left by a failed generation is replaced.
        history = conversation.history[:-1] if conversation.awaiting_reply else list(conversation.history)
        student_turn = self._student_turn(conversation, message, options, speaker)
        pending_history = [*history, student_turn]

        turn_number = conversation.student_response_count + 1
        wrap_up = turn_number >= settings.max_student_responses
        system = tutor.build_system_prompt(
            settings,
            persona=self.persona,
            document_context=self._document_context(conversation.session_id, settings),
            turn=options,
            wrap_up=wrap_up,
        )
        try:
            raw = self._generate(
                system,
                tutor.history_messages(pending_history),
                self.config.reply_max_tokens,
                ["reverse_tutoring", "continue", "wrap_up" if wrap_up else "reply"],
            )
        except GenerationFailed:
            self._keep_pending(conversation, pending_history)
            raise

        parsed = parse_tutor_reply(raw)
        if not parsed.reply:
            self._keep_pending(conversation, pending_history)
            raise GenerationFailed("Tutor reply was empty")
        if isinstance(parsed, Malformed):
            _LOGGER.info("Signal block unusable for %s: %s", conversation.id, parsed.reason)

        understanding = next_understanding(conversation.understanding_level, parsed)
        analysis = (
            fallback_analysis(understanding)
            if isinstance(parsed, Malformed)
            else parsed.analysis.model_copy(update={"understanding_level": understanding})
        )
        outcome = moderate(
            analysis.topic_adherence,
            conversation.off_topic_warnings,
            enforce_topic_focus=settings.enforce_topic_focus,
            threshold=self.config.off_topic_block_threshold,
        )
        completed = wrap_up and not outcome.blocked

        compliance: Optional[ComplianceReport] = None
        if outcome.blocked:
            ai_text, kind = self.persona.block_message_for(settings.topic), "moderation_block"
        else:
            if outcome.counted:
                ai_text, kind = with_redirect(parsed.reply, self.persona.redirect_for(settings.topic)), "redirect"
            else:
                ai_text, kind = parsed.reply, "wrap_up" if completed else "reply"
            compliance = validate_compliance(ai_text, settings.response_length, settings.language_complexity)
            if not compliance.is_compliant:
                tutor._json_log(
                    "response_compliance",
                    {"conversation_id": conversation.id, "warnings": compliance.warnings},
                )

        now = utcnow()
        answered = student_turn.model_copy(update={"analysis": analysis})
        ai_turn = ConversationMessage(role="ai", content=ai_text, kind=kind, compliance=compliance, timestamp=now)
        history_after = [*pending_history[:-1], answered, ai_turn]
        updated = conversation.model_copy(
            update={
                "history": history_after,
                "message_count": len(history_after),
                "student_response_count": turn_number,
                "understanding_level": understanding,
                "off_topic_warnings": outcome.off_topic_warnings,
                "is_blocked": outcome.blocked,
                "blocked_reason": self.config.blocked_reason if outcome.blocked else None,
                "blocked_at": now if outcome.blocked else None,
                "completed_at": now if completed else None,
                "last_updated": now,
            }
        )
        if collaboration is not None and speaker is not None:
            collaboration = record_contribution(collaboration, speaker, message, understanding)
            if completed:
                collaboration = collaboration.model_copy(update={"status": "completed", "completed_at": now})
        saved = self.store.save_conversation(updated, collaboration=collaboration)

        self._log_event(
            "reverse_tutoring_exchange",
            saved.session_id,
            {
                "conversationId": saved.id,
                "messageNumber": saved.message_count,
                "understandingLevel": understanding,
                "topicAdherence": analysis.topic_adherence,
                "vocabularyUsed": analysis.vocabulary_used,
            },
        )
        if outcome.blocked:
            self._log_event(
                "reverse_tutoring_blocked",
                saved.session_id,
                {"conversationId": saved.id, "offTopicWarnings": outcome.off_topic_warnings},
            )
        if completed:
            self._log_event(
                "reverse_tutoring_completed",
                saved.session_id,
                {"conversationId": saved.id, "studentResponses": turn_number, "understandingLevel": understanding},
            )

        return TurnResult(
            conversation_id=saved.id,
            ai_message=ai_text,
            understanding_level=understanding,
            message_count=saved.message_count,
            topic_adherence=analysis.topic_adherence,
            off_topic_warnings=outcome.off_topic_warnings,
            blocked=outcome.blocked,
            blocked_reason=saved.blocked_reason,
            completed=completed,
            analysis=analysis,
            compliance=compliance,
            contributor_id=speaker,
            current_turn_student_id=collaboration.current_turn_student_id if collaboration else None,
            is_imbalanced=collaboration.is_imbalanced if collaboration else False,
        )

    # ------------------------------------------------------------ teacher reads
    def unblock(self, conversation_id: str) -> Conversation:
        require_ids(conversation_id=conversation_id)
        with self.locks.hold(conversation_id):
            conversation = self.store.unblock_conversation(conversation_id)
        tutor._json_log(
            "reverse_tutoring_unblocked",
            {"conversation_id": conversation.id, "student_id": conversation.student_id},
        )
        return conversation

    def get_transcript(self, conversation_id: str) -> Transcript:
        conversation = self._load(conversation_id)
        settings = conversation.settings
        return Transcript(
            conversation_id=conversation.id,
            session_id=conversation.session_id,
            student_id=conversation.student_id,
            student_name=self.store.get_student_name(conversation.student_id) or "Unknown Student",
            topic=conversation.topic,
            subject=settings.subject,
            grade_level=settings.grade_level,
            key_vocabulary=settings.key_vocabulary,
            message_count=conversation.message_count,
            understanding_level=conversation.understanding_level,
            off_topic_warnings=conversation.off_topic_warnings,
            blocked=conversation.is_blocked,
            blocked_reason=conversation.blocked_reason,
            completed=conversation.is_completed,
            started_at=conversation.started_at,
            last_updated=conversation.last_updated,
            duration_minutes=_duration_minutes(conversation),
            transcript=conversation.history,
        )

    def get_student_conversation(self, session_id: str, student_id: str, topic: str) -> Conversation:
        session_id = require_text(session_id, "session_id")
        topic = require_text(topic, "topic")
        conversation = self.store.find_conversation(session_id, student_id, topic)
        if conversation is None:
            raise NotFound("Conversation not found")
        return conversation
