"""Teacher topic management and the topic document pipeline."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from pydantic import ValidationError as ModelValidationError

import extractors
from engines.base import BaseEngine
from engines.caching import TOPIC_LOCKS, KeyedLocks
from engines.summarization import SummarizationGate, combine_document_contexts
from engines.validation import NotFound, ValidationError, require_text
from schemas import Topic, TopicDocument
from tutor import _json_log

_LOGGER = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {
        "topic",
        "subject",
        "grade_level",
        "key_vocabulary",
        "language_complexity",
        "response_length",
        "max_student_responses",
        "enforce_topic_focus",
        "concepts_covered",
        "expected_explanations",
        "critical_thinking_topics",
        "critical_thinking_depth",
        "assigned_student_ids",
        "allow_collaboration",
        "collaboration_mode",
        "max_collaborators",
        "is_active",
    }
)


def _validation_message(exc: ModelValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid {location}: {first.get('msg')}" if location else str(first.get("msg"))


def _build_topic(values: Mapping[str, Any]) -> Topic:
    try:
        topic = Topic.model_validate(dict(values))
    except ModelValidationError as exc:
        raise ValidationError(_validation_message(exc)) from exc
    require_text(topic.topic, "topic")
    return topic


class TopicManager(BaseEngine):
    def __init__(self, store=None, llm=None, config=None, *, locks: Optional[KeyedLocks] = None):
        super().__init__(store, llm, config)
        self.locks = locks or TOPIC_LOCKS
        self.gate = SummarizationGate(self.store, llm, self.config)

    def _owned_topic(self, topic_id: str, teacher_id: Optional[str]) -> Topic:
        topic = self.store.get_topic(topic_id)
        if topic is None or not self.store.session_owned_by(topic.session_id, teacher_id):
            raise NotFound("Topic not found")
        return topic

    # ------------------------------------------------------------ topics
    def create_topic(self, session_id: str, teacher_id: Optional[str], payload: Mapping[str, Any]) -> Topic:
        session_id = require_text(session_id, "session_id")
        require_text(payload.get("topic"), "topic")
        if not self.store.session_owned_by(session_id, teacher_id):
            raise NotFound("Session not found or unauthorized")
        values = {key: value for key, value in payload.items() if key in EDITABLE_FIELDS and value is not None}
        topic = _build_topic(
            {**values, "id": str(uuid4()), "session_id": session_id, "created_by": teacher_id, "is_active": True}
        )
        stored = self.store.insert_topic(topic)
        _json_log("reverse_tutoring_topic_created", {"topic_id": stored.id, "session_id": session_id})
        return stored

    def update_topic(self, topic_id: str, teacher_id: Optional[str], changes: Mapping[str, Any]) -> Topic:
        """Apply only the fields present in ``changes``."""
        current = self._owned_topic(topic_id, teacher_id)
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown topic fields: {', '.join(unknown)}")
        if not changes:
            return current
        updated = _build_topic({**current.model_dump(), **changes})
        return self.store.update_topic(updated)

    def deactivate_topic(self, topic_id: str, teacher_id: Optional[str]) -> Topic:
        """Soft delete; conversations started under the topic are kept."""
        current = self._owned_topic(topic_id, teacher_id)
        if not current.is_active:
            return current
        return self.store.update_topic(current.model_copy(update={"is_active": False}))

    def list_session_topics(
        self,
        session_id: str,
        student_id: Optional[str] = None,
        *,
        include_inactive: bool = False,
    ) -> List[Topic]:
        session_id = require_text(session_id, "session_id")
        topics = self.store.list_topics(session_id, include_inactive=include_inactive)
        if student_id:
            topics = [topic for topic in topics if topic.is_assigned_to(student_id)]
        return topics

    # ------------------------------------------------------------ documents
    def list_documents(self, topic_id: str, teacher_id: Optional[str]) -> List[TopicDocument]:
        self._owned_topic(topic_id, teacher_id)
        return self.store.list_documents(topic_id)

    def _ingest(self, topic_id: str, teacher_id: Optional[str], filename: str, content: bytes) -> TopicDocument:
        file_type = extractors.file_type_for(filename)
        text = extractors.extract_text(filename, content)
        if not text.strip():
            raise ValidationError(f"No text could be extracted from {filename}")
        prepared = self.gate.prepare(text, filename, file_type)
        document = TopicDocument(
            id=str(uuid4()),
            topic_id=topic_id,
            original_filename=filename,
            file_type=file_type,
            file_size_bytes=len(content),
            extracted_text=text,
            text_length=len(text),
            is_summarized=prepared.is_summarized,
            summary=prepared.summary,
            summary_generated_at=prepared.summary_generated_at,
            uploaded_by=teacher_id,
        )
        return self.store.insert_document(document)

    def add_documents(
        self,
        topic_id: str,
        teacher_id: Optional[str],
        files: Iterable[Tuple[str, bytes]],
    ) -> List[TopicDocument]:
        """Ingest each file, skipping ones that cannot be read, then rebuild the context once."""
        self._owned_topic(topic_id, teacher_id)
        stored: List[TopicDocument] = []
        errors: List[str] = []
        with self.locks.hold(topic_id):
            for filename, content in files:
                try:
                    stored.append(self._ingest(topic_id, teacher_id, filename, content))
                except ValidationError as exc:
                    _LOGGER.warning("Skipping %s: %s", filename, exc.message)
                    errors.append(exc.message)
            if not stored:
                raise ValidationError(errors[0] if len(errors) == 1 else "No documents could be processed")
            self._regenerate(topic_id)
        return stored

    def add_document(self, topic_id: str, teacher_id: Optional[str], filename: str, content: bytes) -> TopicDocument:
        return self.add_documents(topic_id, teacher_id, [(filename, content)])[0]

    def remove_document(self, topic_id: str, document_id: str, teacher_id: Optional[str]) -> Optional[str]:
        self._owned_topic(topic_id, teacher_id)
        with self.locks.hold(topic_id):
            document = self.store.get_document(document_id)
            if document is None or document.topic_id != topic_id:
                raise NotFound("Document not found")
            self.store.delete_document(document_id)
            return self._regenerate(topic_id)

    def _regenerate(self, topic_id: str) -> Optional[str]:
        context = combine_document_contexts(
            self.store.list_documents(topic_id),
            max_chars=self.config.max_combined_context_chars,
        )
        self.store.set_topic_document_context(topic_id, context)
        _json_log(
            "topic_document_context_regenerated",
            {"topic_id": topic_id, "context_chars": len(context) if context else 0},
        )
        return context

    def regenerate_document_context(self, topic_id: str) -> Optional[str]:
        """Rebuild the combined context from scratch; a full overwrite."""
        with self.locks.hold(topic_id):
            return self._regenerate(topic_id)
