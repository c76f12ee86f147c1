"""HTTP surface for reverse tutoring sessions."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

import db
import llm
import tutor
from config import TutoringConfig
from engines.collaboration import CollaborationManager
from engines.conversation import ConversationEngine
from engines.dashboard import TeacherDashboardAggregator
from engines.scaffolding import DEFAULT_STRUGGLE_AREA, ScaffoldingProvider
from engines.session_gate import SessionAccess, SessionGate
from engines.topics import TopicManager
from engines.validation import (
    ConversationBlocked,
    DuplicateConversation,
    GenerationFailed,
    NotFound,
    NotYourTurn,
    SessionUnavailable,
    StaleConversation,
    TutoringError,
    require_ids,
    require_text,
)
from schemas import (
    CollaborationMode,
    CriticalThinkingDepth,
    LanguageComplexity,
    ResponseLength,
    SessionStatus,
    TopicConfig,
    TopicDocument,
    TurnOptions,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info(
            "Tutor model %s at %s | persona variant: %s",
            LLM_CLIENT.model_id,
            LLM_CLIENT.url,
            tutor.PROMPT_VARIANT,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="ClassFlow Reverse Tutoring", version="1.0.0", lifespan=_lifespan)

CONFIG = TutoringConfig.from_env()
LLM_CLIENT = llm.LanguageModelClient(prompt_variant=tutor.PROMPT_VARIANT)

CONVERSATIONS = ConversationEngine(db, LLM_CLIENT, CONFIG)
SCAFFOLDING = ScaffoldingProvider(db, LLM_CLIENT, CONFIG)
DASHBOARD = TeacherDashboardAggregator(db, None, CONFIG)
TOPICS = TopicManager(db, LLM_CLIENT, CONFIG)
SESSION_GATE = SessionGate(db, None, CONFIG)
COLLABORATIONS = CollaborationManager(db, None, CONFIG)


def configure_llm(client: Any) -> None:
    """Point every model-backed engine at ``client``."""
    for engine in (CONVERSATIONS, SCAFFOLDING, TOPICS, TOPICS.gate):
        engine.llm = client


# ---------- Errors ----------
@app.exception_handler(TutoringError)
async def _tutoring_error(_: Request, exc: TutoringError):
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, DuplicateConversation):
        body = {
            "message": exc.message,
            "alreadyExists": True,
            "conversationId": exc.conversation_id,
        }
    elif isinstance(exc, ConversationBlocked):
        body.update(blocked=True, reason=exc.reason, conversationId=exc.conversation_id)
    elif isinstance(exc, SessionUnavailable):
        body.update(code=exc.code, sessionStatus=exc.status)
    elif isinstance(exc, NotYourTurn):
        body.update(collabSessionId=exc.collab_session_id, currentTurn=exc.current_turn_student_id)
    elif isinstance(exc, StaleConversation):
        body.update(retry=True, conversationId=exc.conversation_id)
    elif isinstance(exc, GenerationFailed):
        logger.error("Generation failed: %s", exc.detail)
        body.update(retry=True)
    return JSONResponse(status_code=exc.status_code, content=body)


def _teacher_id(request: Request) -> str:
    teacher_id = (request.headers.get("x-teacher-id") or "").strip()
    if not teacher_id:
        raise HTTPException(status_code=401, detail="missing teacher identity")
    return teacher_id


def _require_session_owner(session_id: str, teacher_id: str) -> None:
    if not db.session_owned_by(session_id, teacher_id):
        raise NotFound("Session not found or unauthorized")


def _conversation_session(conversation_id: str) -> str:
    conversation = db.get_conversation(conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    return conversation.session_id


def _with_grace_warning(payload: Dict[str, Any], access: SessionAccess) -> Dict[str, Any]:
    warning = access.as_warning()
    if warning:
        payload["warning"] = warning
    return payload


def _document_summary(document: TopicDocument) -> Dict[str, Any]:
    return document.model_dump(mode="json", exclude={"extracted_text", "summary"})


# ---------- Schemas ----------
class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartBody(_Body):
    session_id: str = ""
    student_id: str = ""
    topic: str = ""
    subject: str = "Science"
    grade_level: str = "7th grade"
    key_vocabulary: List[str] = Field(default_factory=list)
    language_proficiency: str = "intermediate"
    native_language: str = "en"


class MessageBody(_Body):
    student_message: str = ""
    student_id: Optional[str] = None
    language: str = "en"
    help_needed: bool = False
    vocabulary_used: List[str] = Field(default_factory=list)


class HelpBody(_Body):
    struggle_area: str = DEFAULT_STRUGGLE_AREA


class TopicUpdateBody(_Body):
    topic: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    key_vocabulary: Optional[List[str]] = None
    language_complexity: Optional[LanguageComplexity] = None
    response_length: Optional[ResponseLength] = None
    max_student_responses: Optional[int] = Field(default=None, ge=1)
    enforce_topic_focus: Optional[bool] = None
    concepts_covered: Optional[List[str]] = None
    expected_explanations: Optional[List[str]] = None
    critical_thinking_topics: Optional[List[str]] = None
    critical_thinking_depth: Optional[CriticalThinkingDepth] = None
    assigned_student_ids: Optional[List[str]] = None
    allow_collaboration: Optional[bool] = None
    collaboration_mode: Optional[CollaborationMode] = None
    max_collaborators: Optional[int] = Field(default=None, ge=2, le=4)
    is_active: Optional[bool] = None


class TopicCreateBody(TopicUpdateBody):
    session_id: str = ""


class SessionStatusBody(_Body):
    status: SessionStatus


class CollaborationBody(_Body):
    conversation_id: str = ""
    participant_ids: List[str] = Field(default_factory=list)
    mode: Optional[CollaborationMode] = None


class TagBody(_Body):
    from_student_id: str = ""
    to_student_id: str = ""


class LeaveBody(_Body):
    student_id: str = ""


@app.get("/")
def root():
    return {"status": "ok", "persona": tutor.ACTIVE_PERSONA.persona, "prompt_variant": tutor.PROMPT_VARIANT}


# ---------- Student conversation ----------
@app.post("/reverse-tutoring/start")
def start_conversation(body: StartBody):
    require_ids(session_id=body.session_id, student_id=body.student_id, topic=body.topic)
    access = SESSION_GATE.access_for(body.session_id)

    live_topic = db.get_active_topic(body.session_id, body.topic.strip())
    if live_topic is not None:
        if not live_topic.is_assigned_to(body.student_id):
            raise NotFound("Topic not found for this student")
        topic_config = live_topic.to_config(
            language_proficiency=body.language_proficiency,
            native_language=body.native_language,
        )
    else:
        topic_config = TopicConfig(
            topic=body.topic,
            subject=body.subject,
            grade_level=body.grade_level,
            key_vocabulary=body.key_vocabulary,
            max_student_responses=CONFIG.default_max_student_responses,
            language_proficiency=body.language_proficiency,
            native_language=body.native_language,
        )

    result = CONVERSATIONS.start(body.session_id, body.student_id, topic_config)
    payload = {"message": "Conversation started successfully", **result.model_dump(mode="json")}
    return _with_grace_warning(payload, access)


@app.post("/reverse-tutoring/{conversation_id}/message")
def send_message(conversation_id: str, body: MessageBody):
    require_text(body.student_message, "student_message")
    access = SESSION_GATE.access_for(_conversation_session(conversation_id))
    result = CONVERSATIONS.continue_conversation(
        conversation_id,
        body.student_message,
        TurnOptions(
            language=body.language,
            help_needed=body.help_needed,
            vocabulary_used=body.vocabulary_used,
        ),
        contributor_id=body.student_id,
    )
    payload = {"message": "Message sent successfully", **result.model_dump(mode="json")}
    return _with_grace_warning(payload, access)


@app.post("/reverse-tutoring/{conversation_id}/help")
def request_help(conversation_id: str, body: Optional[HelpBody] = None):
    SESSION_GATE.access_for(_conversation_session(conversation_id))
    struggle_area = body.struggle_area if body else DEFAULT_STRUGGLE_AREA
    scaffolding = SCAFFOLDING.get_scaffolding(conversation_id, struggle_area)
    return {
        "message": "Scaffolding generated successfully",
        "scaffolding": scaffolding.model_dump(mode="json", by_alias=True),
    }


@app.get("/reverse-tutoring/student/{student_id}/conversation")
def get_student_conversation(
    student_id: str,
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    topic: Optional[str] = Query(default=None),
):
    conversation = CONVERSATIONS.get_student_conversation(session_id or "", student_id, topic or "")
    return conversation.model_dump(mode="json", exclude={"settings"})


# ---------- Teacher views ----------
@app.get("/reverse-tutoring/session/{session_id}/dashboard")
def get_dashboard(session_id: str, request: Request):
    _require_session_owner(session_id, _teacher_id(request))
    return DASHBOARD.get_teacher_dashboard(session_id).model_dump(mode="json")


@app.get("/reverse-tutoring/{conversation_id}/transcript")
def get_transcript(conversation_id: str, request: Request):
    _require_session_owner(_conversation_session(conversation_id), _teacher_id(request))
    return CONVERSATIONS.get_transcript(conversation_id).model_dump(mode="json")


@app.post("/reverse-tutoring/{conversation_id}/unblock")
def unblock_student(conversation_id: str, request: Request):
    _require_session_owner(_conversation_session(conversation_id), _teacher_id(request))
    conversation = CONVERSATIONS.unblock(conversation_id)
    return {
        "message": "Student unblocked successfully",
        "conversationId": conversation.id,
        "studentId": conversation.student_id,
        "topic": conversation.topic,
        "messageCount": conversation.message_count,
    }


@app.post("/sessions/{session_id}/status")
def set_session_status(session_id: str, body: SessionStatusBody, request: Request):
    session = SESSION_GATE.set_status(session_id, body.status, _teacher_id(request))
    return session.model_dump(mode="json")


# ---------- Collaboration ----------
@app.post("/collaboration/sessions")
def start_collaboration(body: CollaborationBody):
    require_ids(conversation_id=body.conversation_id)
    access = SESSION_GATE.access_for(_conversation_session(body.conversation_id))
    collaboration = COLLABORATIONS.start_collaboration(body.conversation_id, body.participant_ids, body.mode)
    payload = {"success": True, "collabSession": collaboration.model_dump(mode="json")}
    return _with_grace_warning(payload, access)


@app.get("/collaboration/sessions/{collab_session_id}")
def get_collaboration(collab_session_id: str):
    collaboration = COLLABORATIONS.get_collaboration(collab_session_id)
    return {"collabSession": collaboration.model_dump(mode="json")}


@app.post("/collaboration/sessions/{collab_session_id}/tag")
def tag_partner(collab_session_id: str, body: TagBody):
    SESSION_GATE.access_for(COLLABORATIONS.get_collaboration(collab_session_id).session_id)
    collaboration = COLLABORATIONS.pass_turn(collab_session_id, body.from_student_id, body.to_student_id)
    return {"success": True, "currentTurn": collaboration.current_turn_student_id}


@app.post("/collaboration/sessions/{collab_session_id}/leave")
def leave_collaboration(collab_session_id: str, body: LeaveBody):
    collaboration = COLLABORATIONS.leave(collab_session_id, body.student_id)
    return {"success": True, "status": collaboration.status, "remaining": collaboration.participant_ids}


@app.get("/collaboration/dashboard/{session_id}")
def get_collaboration_dashboard(session_id: str, request: Request):
    _require_session_owner(session_id, _teacher_id(request))
    overviews = COLLABORATIONS.list_session_collaborations(session_id)
    return {"collabSessions": [overview.model_dump(mode="json") for overview in overviews], "count": len(overviews)}


# ---------- Topics ----------
@app.post("/reverse-tutoring/topics")
def create_topic(body: TopicCreateBody, request: Request):
    payload = body.model_dump(exclude={"session_id"}, exclude_none=True)
    topic = TOPICS.create_topic(body.session_id, _teacher_id(request), payload)
    return {"message": "Topic created successfully", "topic": topic.model_dump(mode="json")}


@app.get("/reverse-tutoring/topics")
def list_topics(
    request: Request,
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    student_id: Optional[str] = Query(default=None, alias="studentId"),
    include_inactive: bool = Query(default=False, alias="includeInactive"),
):
    if include_inactive:
        _require_session_owner(session_id or "", _teacher_id(request))
    topics = TOPICS.list_session_topics(session_id or "", student_id, include_inactive=include_inactive)
    return {"topics": [topic.model_dump(mode="json", exclude={"document_context"}) for topic in topics]}


@app.patch("/reverse-tutoring/topics/{topic_id}")
def update_topic(topic_id: str, body: TopicUpdateBody, request: Request):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    topic = TOPICS.update_topic(topic_id, _teacher_id(request), changes)
    return {"message": "Topic updated successfully", "topic": topic.model_dump(mode="json")}


@app.delete("/reverse-tutoring/topics/{topic_id}")
def delete_topic(topic_id: str, request: Request):
    topic = TOPICS.deactivate_topic(topic_id, _teacher_id(request))
    return {"message": "Topic removed successfully", "topicId": topic.id}


@app.post("/reverse-tutoring/topics/{topic_id}/documents")
def upload_topic_documents(topic_id: str, request: Request, files: List[UploadFile] = File(...)):
    teacher_id = _teacher_id(request)
    payload = []
    for upload in files:
        try:
            payload.append((upload.filename or "", upload.file.read()))
        finally:
            upload.file.close()
    documents = TOPICS.add_documents(topic_id, teacher_id, payload)
    return {
        "success": True,
        "documents": [_document_summary(doc) for doc in documents],
        "message": f"{len(documents)} document(s) uploaded successfully",
    }


@app.get("/reverse-tutoring/topics/{topic_id}/documents")
def get_topic_documents(topic_id: str, request: Request):
    documents = TOPICS.list_documents(topic_id, _teacher_id(request))
    return {"documents": [_document_summary(doc) for doc in documents]}


@app.delete("/reverse-tutoring/topics/{topic_id}/documents/{document_id}")
def delete_topic_document(topic_id: str, document_id: str, request: Request):
    context = TOPICS.remove_document(topic_id, document_id, _teacher_id(request))
    logger.info(
        json.dumps({"event": "topic_document_removed", "topic_id": topic_id, "document_id": document_id})
    )
    return {"success": True, "documentContextChars": len(context) if context else 0}
