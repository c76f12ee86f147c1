"""Pydantic records for topics, conversations and model outputs.

These models are the single canonical shape of every persisted record. The
row converters in ``db`` are the only place that turns them into (and back
from) SQLite columns.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

__all__ = [
    "LanguageComplexity",
    "ResponseLength",
    "CriticalThinkingDepth",
    "TopicAdherence",
    "SessionStatus",
    "CollaborationMode",
    "TopicSettings",
    "TopicConfig",
    "Topic",
    "TopicDocument",
    "TurnAnalysis",
    "ComplianceReport",
    "ConversationMessage",
    "Conversation",
    "TurnOptions",
    "StartResult",
    "TurnResult",
    "VocabularyEntry",
    "Scaffolding",
    "SessionRecord",
    "SessionStudent",
    "DashboardRow",
    "Dashboard",
    "Transcript",
    "Contribution",
    "CollaborativeSession",
    "CollaborationOverview",
    "parse_json_safe",
    "find_last_json_object",
    "utcnow",
]

LanguageComplexity = Literal["simple", "standard", "advanced"]
ResponseLength = Literal["short", "medium", "long"]
CriticalThinkingDepth = Literal["none", "light", "moderate"]
TopicAdherence = Literal["on_topic", "off_topic", "borderline"]
SessionStatus = Literal["active", "paused", "ended"]
CollaborationMode = Literal["pass_the_mic", "build_together", "mentor_match"]
CollaborationStatus = Literal["active", "completed", "abandoned"]
MessageRole = Literal["ai", "student"]
MessageKind = Literal["opening", "reply", "redirect", "wrap_up", "moderation_block"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_terms(values: Any) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    cleaned: list[str] = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip().strip("\"'").strip()
        if text:
            cleaned.append(text)
    return cleaned


class TopicSettings(BaseModel):
    """Teacher-controlled knobs shared by topics and conversation snapshots."""

    topic: str
    subject: str = "Science"
    grade_level: str = "7th grade"
    key_vocabulary: List[str] = Field(default_factory=list)
    language_complexity: LanguageComplexity = "standard"
    response_length: ResponseLength = "medium"
    max_student_responses: int = Field(default=10, ge=1)
    enforce_topic_focus: bool = True
    concepts_covered: List[str] = Field(default_factory=list)
    expected_explanations: List[str] = Field(default_factory=list)
    critical_thinking_topics: List[str] = Field(default_factory=list)
    critical_thinking_depth: CriticalThinkingDepth = "none"

    @field_validator(
        "key_vocabulary",
        "concepts_covered",
        "expected_explanations",
        "critical_thinking_topics",
        mode="before",
    )
    @classmethod
    def _strip_terms(cls, value: Any) -> list[str]:
        return _clean_terms(value)

    @field_validator("topic", mode="before")
    @classmethod
    def _strip_topic(cls, value: Any) -> str:
        return str(value or "").strip()


class TopicConfig(TopicSettings):
    """Settings a conversation is started with."""

    document_context: Optional[str] = None
    language_proficiency: str = "intermediate"
    native_language: str = "en"


class Topic(TopicSettings):
    id: str
    session_id: str
    document_context: Optional[str] = None
    document_context_updated_at: Optional[datetime] = None
    assigned_student_ids: List[str] = Field(default_factory=list)
    allow_collaboration: bool = False
    collaboration_mode: CollaborationMode = "pass_the_mic"
    max_collaborators: int = Field(default=2, ge=2, le=4)
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("assigned_student_ids", mode="before")
    @classmethod
    def _strip_ids(cls, value: Any) -> list[str]:
        return _clean_terms(value)

    def is_assigned_to(self, student_id: str) -> bool:
        return not self.assigned_student_ids or student_id in self.assigned_student_ids

    def to_config(
        self,
        *,
        language_proficiency: str = "intermediate",
        native_language: str = "en",
    ) -> TopicConfig:
        return TopicConfig(
            **self.model_dump(include=set(TopicSettings.model_fields)),
            document_context=self.document_context,
            language_proficiency=language_proficiency,
            native_language=native_language,
        )


class TopicDocument(BaseModel):
    id: str
    topic_id: str
    original_filename: str
    file_type: str
    file_size_bytes: int = 0
    extracted_text: str = ""
    text_length: int = 0
    is_summarized: bool = False
    summary: Optional[str] = None
    summary_generated_at: Optional[datetime] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=utcnow)


class TurnAnalysis(BaseModel):
    """Signals the model attaches to a reply about the student's last turn."""

    topic_adherence: TopicAdherence = "on_topic"
    understanding_level: int = Field(default=0, ge=0, le=100)
    concepts_demonstrated: List[str] = Field(default_factory=list)
    misconceptions: List[str] = Field(default_factory=list)
    vocabulary_used: List[str] = Field(default_factory=list)
    areas_for_improvement: List[str] = Field(default_factory=list)
    teacher_suggestion: Optional[str] = None
    parsed: bool = True


class ComplianceReport(BaseModel):
    is_compliant: bool
    sentence_count: int
    avg_sentence_length: int
    avg_word_length: int
    total_words: int
    length_compliant: bool
    complexity_compliant: bool
    expected_length: ResponseLength
    expected_complexity: LanguageComplexity
    warnings: List[str] = Field(default_factory=list)


class ConversationMessage(BaseModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    kind: Optional[MessageKind] = None
    analysis: Optional[TurnAnalysis] = None
    help_needed: Optional[bool] = None
    vocabulary_used: Optional[List[str]] = None
    language: Optional[str] = None
    compliance: Optional[ComplianceReport] = None
    contributor_id: Optional[str] = None
    contributor_name: Optional[str] = None


class Conversation(BaseModel):
    id: str
    session_id: str
    student_id: str
    topic: str
    topic_id: Optional[str] = None
    settings: TopicConfig
    history: List[ConversationMessage] = Field(default_factory=list)
    message_count: int = 0
    student_response_count: int = 0
    understanding_level: int = Field(default=0, ge=0, le=100)
    off_topic_warnings: int = 0
    is_blocked: bool = False
    blocked_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    collab_session_id: Optional[str] = None
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def awaiting_reply(self) -> bool:
        """True when the last turn is a student turn the model never answered."""
        return bool(self.history) and self.history[-1].role == "student"

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def latest_analysis(self) -> Optional[TurnAnalysis]:
        for message in reversed(self.history):
            if message.role == "student" and message.analysis is not None:
                return message.analysis
        return None


class TurnOptions(BaseModel):
    language: str = "en"
    help_needed: bool = False
    vocabulary_used: List[str] = Field(default_factory=list)


class StartResult(BaseModel):
    conversation_id: str
    initial_message: str
    understanding_level: int
    message_count: int
    persona: str


class TurnResult(BaseModel):
    conversation_id: str
    ai_message: str
    understanding_level: int
    message_count: int
    topic_adherence: TopicAdherence
    off_topic_warnings: int
    blocked: bool = False
    blocked_reason: Optional[str] = None
    completed: bool = False
    analysis: TurnAnalysis
    compliance: Optional[ComplianceReport] = None
    contributor_id: Optional[str] = None
    current_turn_student_id: Optional[str] = None
    is_imbalanced: bool = False


class VocabularyEntry(BaseModel):
    word: str
    definition: str = ""


class Scaffolding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hint: str
    sentence_starters: List[str] = Field(default_factory=list, alias="sentenceStarters")
    vocabulary: List[VocabularyEntry] = Field(default_factory=list)


class SessionRecord(BaseModel):
    id: str
    title: str = ""
    teacher_id: Optional[str] = None
    status: SessionStatus = "active"
    paused_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class SessionStudent(BaseModel):
    id: str
    session_id: str
    student_name: str = ""


class DashboardRow(BaseModel):
    conversation_id: str
    student_id: str
    student_name: Optional[str] = None
    topic: str
    understanding_level: int
    message_count: int
    off_topic_warnings: int
    blocked: bool
    blocked_reason: Optional[str] = None
    completed: bool
    is_collaborative: bool = False
    status: str
    latest_analysis: Optional[TurnAnalysis] = None
    started_at: datetime
    last_updated: datetime
    duration_minutes: int


class Dashboard(BaseModel):
    session_id: str
    conversations: List[DashboardRow] = Field(default_factory=list)
    total_students: int = 0
    average_understanding: float = 0.0


class Transcript(BaseModel):
    conversation_id: str
    session_id: str
    student_id: str
    student_name: str
    topic: str
    subject: str
    grade_level: str
    key_vocabulary: List[str]
    message_count: int
    understanding_level: int
    off_topic_warnings: int
    blocked: bool
    blocked_reason: Optional[str] = None
    completed: bool
    started_at: datetime
    last_updated: datetime
    duration_minutes: int
    transcript: List[ConversationMessage]


class Contribution(BaseModel):
    message_count: int = 0
    word_count: int = 0
    analysis_sum: int = 0


class CollaborativeSession(BaseModel):
    """Students explaining one topic together in a shared conversation.

    ``turn_order`` is the participant order; ``current_turn_student_id`` is
    the only participant who may speak in ``pass_the_mic`` mode.
    """

    id: str
    conversation_id: str
    session_id: str
    mode: CollaborationMode = "pass_the_mic"
    participant_ids: List[str] = Field(default_factory=list)
    participant_names: Dict[str, str] = Field(default_factory=dict)
    current_turn_student_id: Optional[str] = None
    turn_order: List[str] = Field(default_factory=list)
    turn_count: int = 0
    contributions: Dict[str, Contribution] = Field(default_factory=dict)
    is_imbalanced: bool = False
    balance_warnings: int = 0
    status: CollaborationStatus = "active"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class CollaborationOverview(BaseModel):
    collaboration: CollaborativeSession
    topic: str
    message_count: int
    understanding_level: int


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except Exception:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


_DECODER = json.JSONDecoder()


def find_last_json_object(text: str) -> tuple[Dict[str, Any], int, int]:
    """Return the last top-level JSON object in ``text`` and its span.

    Objects nested inside an earlier match are skipped. Raises ``ValueError``
    when the text holds no decodable object.
    """

    body = text or ""
    found: Optional[tuple[Dict[str, Any], int, int]] = None
    start = body.find("{")
    while start != -1:
        try:
            payload, end = _DECODER.raw_decode(body, start)
        except ValueError:
            start = body.find("{", start + 1)
            continue
        if isinstance(payload, dict):
            found = (payload, start, end)
            start = body.find("{", end)
        else:
            start = body.find("{", start + 1)
    if found is None:
        raise ValueError("No JSON object found")
    return found


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip().strip("`").strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except Exception:
        if first_error:
            raise first_error
        raise
