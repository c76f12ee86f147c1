import json
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from pydantic import TypeAdapter

from db_pool import SQLiteConnectionPool
from engines.validation import DuplicateTopic, NotFound, StaleConversation
from schemas import (
    CollaborationOverview,
    CollaborativeSession,
    Contribution,
    Conversation,
    ConversationMessage,
    SessionRecord,
    SessionStudent,
    Topic,
    TopicConfig,
    TopicDocument,
)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_HISTORY_ADAPTER = TypeAdapter(List[ConversationMessage])
_CONTRIBUTIONS_ADAPTER = TypeAdapter(Dict[str, Contribution])


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _tx():
    """Return a context manager holding the write lock for one transaction."""
    return _pool.transaction()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        return con.execute(sql, tuple(params))


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def _new_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _json_list(values: Sequence[Any]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _load_list(raw: Optional[str]) -> list:
    if not raw:
        return []
    value = json.loads(raw)
    return value if isinstance(value, list) else []


def _load_dict(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    value = json.loads(raw)
    return value if isinstance(value, dict) else {}


# -------------- schema helpers --------------
def _add_column_if_missing(con: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    existing = {row[1] for row in con.execute(f"PRAGMA table_info({table})").fetchall()}
    if column not in existing:
        con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS sessions (
              id                    TEXT PRIMARY KEY,
              title                 TEXT NOT NULL DEFAULT '',
              teacher_id            TEXT,
              status                TEXT NOT NULL DEFAULT 'active'
                                    CHECK (status IN ('active', 'paused', 'ended')),
              paused_at             TEXT,
              grace_period_ends_at  TEXT,
              created_at            TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

            CREATE TABLE IF NOT EXISTS session_students (
              id            TEXT PRIMARY KEY,
              session_id    TEXT NOT NULL,
              student_name  TEXT NOT NULL DEFAULT '',
              joined_at     TEXT NOT NULL,
              FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_session_students_session ON session_students(session_id);

            CREATE TABLE IF NOT EXISTS reverse_tutoring_topics (
              id                          TEXT PRIMARY KEY,
              session_id                  TEXT NOT NULL,
              topic                       TEXT NOT NULL,
              subject                     TEXT NOT NULL DEFAULT 'Science',
              grade_level                 TEXT NOT NULL DEFAULT '7th grade',
              key_vocabulary              TEXT NOT NULL DEFAULT '[]',
              language_complexity         TEXT NOT NULL DEFAULT 'standard'
                                          CHECK (language_complexity IN ('simple', 'standard', 'advanced')),
              response_length             TEXT NOT NULL DEFAULT 'medium'
                                          CHECK (response_length IN ('short', 'medium', 'long')),
              max_student_responses       INTEGER NOT NULL DEFAULT 10,
              enforce_topic_focus         INTEGER NOT NULL DEFAULT 1,
              concepts_covered            TEXT NOT NULL DEFAULT '[]',
              expected_explanations       TEXT NOT NULL DEFAULT '[]',
              critical_thinking_topics    TEXT NOT NULL DEFAULT '[]',
              critical_thinking_depth     TEXT NOT NULL DEFAULT 'none'
                                          CHECK (critical_thinking_depth IN ('none', 'light', 'moderate')),
              document_context            TEXT,
              document_context_updated_at TEXT,
              assigned_student_ids        TEXT NOT NULL DEFAULT '[]',
              allow_collaboration         INTEGER NOT NULL DEFAULT 0,
              collaboration_mode          TEXT NOT NULL DEFAULT 'pass_the_mic',
              max_collaborators           INTEGER NOT NULL DEFAULT 2,
              is_active                   INTEGER NOT NULL DEFAULT 1,
              created_by                  TEXT,
              created_at                  TEXT NOT NULL,
              FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_topics_active_label
              ON reverse_tutoring_topics(session_id, topic) WHERE is_active = 1;

            CREATE TABLE IF NOT EXISTS reverse_tutoring_topic_documents (
              id                    TEXT PRIMARY KEY,
              topic_id              TEXT NOT NULL,
              original_filename     TEXT NOT NULL,
              file_type             TEXT NOT NULL
                                    CHECK (file_type IN ('pdf', 'docx', 'doc', 'txt', 'md', 'pptx')),
              file_size_bytes       INTEGER NOT NULL,
              extracted_text        TEXT NOT NULL,
              text_length           INTEGER NOT NULL,
              is_summarized         INTEGER NOT NULL DEFAULT 0,
              summary               TEXT,
              summary_generated_at  TEXT,
              uploaded_by           TEXT,
              uploaded_at           TEXT NOT NULL,
              FOREIGN KEY(topic_id) REFERENCES reverse_tutoring_topics(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_topic_documents_topic ON reverse_tutoring_topic_documents(topic_id);

            CREATE TABLE IF NOT EXISTS reverse_tutoring_conversations (
              id                      TEXT PRIMARY KEY,
              session_id              TEXT NOT NULL,
              student_id              TEXT NOT NULL,
              topic                   TEXT NOT NULL,
              topic_id                TEXT,
              settings                TEXT NOT NULL,
              history                 TEXT NOT NULL DEFAULT '[]',
              message_count           INTEGER NOT NULL DEFAULT 0,
              student_response_count  INTEGER NOT NULL DEFAULT 0,
              understanding_level     INTEGER NOT NULL DEFAULT 0,
              off_topic_warnings      INTEGER NOT NULL DEFAULT 0,
              is_blocked              INTEGER NOT NULL DEFAULT 0,
              blocked_reason          TEXT,
              blocked_at              TEXT,
              completed_at            TEXT,
              started_at              TEXT NOT NULL,
              last_updated            TEXT NOT NULL,
              version                 INTEGER NOT NULL DEFAULT 0,
              collab_session_id       TEXT,
              UNIQUE(session_id, student_id, topic)
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_session ON reverse_tutoring_conversations(session_id);
            CREATE INDEX IF NOT EXISTS idx_conversations_blocked
              ON reverse_tutoring_conversations(is_blocked) WHERE is_blocked = 1;

            CREATE TABLE IF NOT EXISTS collaborative_tutoring_sessions (
              id                       TEXT PRIMARY KEY,
              conversation_id          TEXT NOT NULL UNIQUE,
              session_id               TEXT NOT NULL,
              mode                     TEXT NOT NULL DEFAULT 'pass_the_mic'
                                       CHECK (mode IN ('pass_the_mic', 'build_together', 'mentor_match')),
              participant_ids          TEXT NOT NULL DEFAULT '[]',
              participant_names        TEXT NOT NULL DEFAULT '{}',
              current_turn_student_id  TEXT,
              turn_order               TEXT NOT NULL DEFAULT '[]',
              turn_count               INTEGER NOT NULL DEFAULT 0,
              contributions            TEXT NOT NULL DEFAULT '{}',
              is_imbalanced            INTEGER NOT NULL DEFAULT 0,
              balance_warnings         INTEGER NOT NULL DEFAULT 0,
              status                   TEXT NOT NULL DEFAULT 'active'
                                       CHECK (status IN ('active', 'completed', 'abandoned')),
              started_at               TEXT NOT NULL,
              completed_at             TEXT,
              version                  INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY(conversation_id) REFERENCES reverse_tutoring_conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_collab_sessions_session ON collaborative_tutoring_sessions(session_id);

            CREATE TABLE IF NOT EXISTS analytics_events (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              event_type  TEXT NOT NULL,
              session_id  TEXT,
              properties  TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_analytics_session ON analytics_events(session_id, event_type);

            CREATE TABLE IF NOT EXISTS llm_metrics (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              model_id        TEXT NOT NULL,
              prompt_variant  TEXT,
              path_taken      TEXT,
              latency_ms      INTEGER NOT NULL,
              tokens_in       INTEGER,
              tokens_out      INTEGER,
              succeeded       INTEGER NOT NULL DEFAULT 1,
              created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        _add_column_if_missing(con, "reverse_tutoring_conversations", "collab_session_id", "TEXT")


# -------------- row converters --------------
def _row_to_session(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=row["id"],
        title=row["title"] or "",
        teacher_id=row["teacher_id"],
        status=row["status"],
        paused_at=row["paused_at"],
        grace_period_ends_at=row["grace_period_ends_at"],
        created_at=row["created_at"],
    )


def _row_to_topic(row: sqlite3.Row) -> Topic:
    return Topic(
        id=row["id"],
        session_id=row["session_id"],
        topic=row["topic"],
        subject=row["subject"],
        grade_level=row["grade_level"],
        key_vocabulary=_load_list(row["key_vocabulary"]),
        language_complexity=row["language_complexity"],
        response_length=row["response_length"],
        max_student_responses=row["max_student_responses"],
        enforce_topic_focus=bool(row["enforce_topic_focus"]),
        concepts_covered=_load_list(row["concepts_covered"]),
        expected_explanations=_load_list(row["expected_explanations"]),
        critical_thinking_topics=_load_list(row["critical_thinking_topics"]),
        critical_thinking_depth=row["critical_thinking_depth"],
        document_context=row["document_context"],
        document_context_updated_at=row["document_context_updated_at"],
        assigned_student_ids=_load_list(row["assigned_student_ids"]),
        allow_collaboration=bool(row["allow_collaboration"]),
        collaboration_mode=row["collaboration_mode"],
        max_collaborators=row["max_collaborators"],
        is_active=bool(row["is_active"]),
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def _topic_params(topic: Topic) -> Dict[str, Any]:
    return {
        "id": topic.id,
        "session_id": topic.session_id,
        "topic": topic.topic,
        "subject": topic.subject,
        "grade_level": topic.grade_level,
        "key_vocabulary": _json_list(topic.key_vocabulary),
        "language_complexity": topic.language_complexity,
        "response_length": topic.response_length,
        "max_student_responses": topic.max_student_responses,
        "enforce_topic_focus": int(topic.enforce_topic_focus),
        "concepts_covered": _json_list(topic.concepts_covered),
        "expected_explanations": _json_list(topic.expected_explanations),
        "critical_thinking_topics": _json_list(topic.critical_thinking_topics),
        "critical_thinking_depth": topic.critical_thinking_depth,
        "document_context": topic.document_context,
        "document_context_updated_at": _ts(topic.document_context_updated_at),
        "assigned_student_ids": _json_list(topic.assigned_student_ids),
        "allow_collaboration": int(topic.allow_collaboration),
        "collaboration_mode": topic.collaboration_mode,
        "max_collaborators": topic.max_collaborators,
        "is_active": int(topic.is_active),
        "created_by": topic.created_by,
        "created_at": _ts(topic.created_at),
    }


def _row_to_document(row: sqlite3.Row) -> TopicDocument:
    return TopicDocument(
        id=row["id"],
        topic_id=row["topic_id"],
        original_filename=row["original_filename"],
        file_type=row["file_type"],
        file_size_bytes=row["file_size_bytes"],
        extracted_text=row["extracted_text"],
        text_length=row["text_length"],
        is_summarized=bool(row["is_summarized"]),
        summary=row["summary"],
        summary_generated_at=row["summary_generated_at"],
        uploaded_by=row["uploaded_by"],
        uploaded_at=row["uploaded_at"],
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        session_id=row["session_id"],
        student_id=row["student_id"],
        topic=row["topic"],
        topic_id=row["topic_id"],
        settings=TopicConfig.model_validate_json(row["settings"]),
        history=_HISTORY_ADAPTER.validate_json(row["history"] or "[]"),
        message_count=row["message_count"],
        student_response_count=row["student_response_count"],
        understanding_level=row["understanding_level"],
        off_topic_warnings=row["off_topic_warnings"],
        is_blocked=bool(row["is_blocked"]),
        blocked_reason=row["blocked_reason"],
        blocked_at=row["blocked_at"],
        completed_at=row["completed_at"],
        started_at=row["started_at"],
        last_updated=row["last_updated"],
        version=row["version"],
        collab_session_id=row["collab_session_id"],
    )


def _conversation_state_params(conversation: Conversation) -> Dict[str, Any]:
    return {
        "settings": conversation.settings.model_dump_json(),
        "history": _HISTORY_ADAPTER.dump_json(conversation.history).decode("utf-8"),
        "message_count": len(conversation.history),
        "student_response_count": conversation.student_response_count,
        "understanding_level": conversation.understanding_level,
        "off_topic_warnings": conversation.off_topic_warnings,
        "is_blocked": int(conversation.is_blocked),
        "blocked_reason": conversation.blocked_reason,
        "blocked_at": _ts(conversation.blocked_at),
        "completed_at": _ts(conversation.completed_at),
        "last_updated": _ts(conversation.last_updated),
    }


def _row_to_collaboration(row: sqlite3.Row) -> CollaborativeSession:
    return CollaborativeSession(
        id=row["id"],
        conversation_id=row["conversation_id"],
        session_id=row["session_id"],
        mode=row["mode"],
        participant_ids=_load_list(row["participant_ids"]),
        participant_names=_load_dict(row["participant_names"]),
        current_turn_student_id=row["current_turn_student_id"],
        turn_order=_load_list(row["turn_order"]),
        turn_count=row["turn_count"],
        contributions=_CONTRIBUTIONS_ADAPTER.validate_json(row["contributions"] or "{}"),
        is_imbalanced=bool(row["is_imbalanced"]),
        balance_warnings=row["balance_warnings"],
        status=row["status"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        version=row["version"],
    )


def _collaboration_state_params(collaboration: CollaborativeSession) -> Dict[str, Any]:
    return {
        "mode": collaboration.mode,
        "participant_ids": _json_list(collaboration.participant_ids),
        "participant_names": json.dumps(collaboration.participant_names, ensure_ascii=False),
        "current_turn_student_id": collaboration.current_turn_student_id,
        "turn_order": _json_list(collaboration.turn_order),
        "turn_count": collaboration.turn_count,
        "contributions": _CONTRIBUTIONS_ADAPTER.dump_json(collaboration.contributions).decode("utf-8"),
        "is_imbalanced": int(collaboration.is_imbalanced),
        "balance_warnings": collaboration.balance_warnings,
        "status": collaboration.status,
        "completed_at": _ts(collaboration.completed_at),
    }


# -------------- sessions & roster --------------
def create_session(
    teacher_id: Optional[str],
    title: str = "",
    *,
    session_id: Optional[str] = None,
) -> SessionRecord:
    record = SessionRecord(id=session_id or _new_id(), title=title, teacher_id=teacher_id)
    _exec(
        "INSERT INTO sessions (id, title, teacher_id, status, created_at) VALUES (?, ?, ?, ?, ?)",
        (record.id, record.title, record.teacher_id, record.status, _ts(record.created_at)),
    )
    return record


def get_session(session_id: str) -> Optional[SessionRecord]:
    rows = _query("SELECT * FROM sessions WHERE id = ?", [session_id])
    return _row_to_session(rows[0]) if rows else None


def session_owned_by(session_id: str, teacher_id: Optional[str]) -> bool:
    rows = _query(
        "SELECT 1 FROM sessions WHERE id = ? AND teacher_id IS ?",
        [session_id, teacher_id],
    )
    return bool(rows)


def set_session_status(session_id: str, status: str, *, grace_seconds: int = 0) -> SessionRecord:
    """Move a session to ``status``; leaving ``active`` opens a grace window."""
    now = _now()
    if status == "active":
        params = (status, None, None, session_id)
    else:
        grace_end = now + timedelta(seconds=grace_seconds) if grace_seconds > 0 else None
        paused_at = now if status == "paused" else None
        params = (status, _ts(paused_at), _ts(grace_end), session_id)
    cur = _exec(
        "UPDATE sessions SET status = ?, paused_at = ?, grace_period_ends_at = ? WHERE id = ?",
        params,
    )
    if cur.rowcount == 0:
        raise NotFound("Session not found")
    return get_session(session_id)  # type: ignore[return-value]


def add_session_student(
    session_id: str,
    student_name: str = "",
    *,
    student_id: Optional[str] = None,
) -> SessionStudent:
    student = SessionStudent(id=student_id or _new_id(), session_id=session_id, student_name=student_name)
    _exec(
        "INSERT INTO session_students (id, session_id, student_name, joined_at) VALUES (?, ?, ?, ?)",
        (student.id, student.session_id, student.student_name, _ts(_now())),
    )
    return student


def is_active_student_in_session(session_id: str, student_id: str) -> bool:
    rows = _query(
        """
        SELECT 1
        FROM session_students ss
        JOIN sessions s ON ss.session_id = s.id
        WHERE ss.id = ? AND s.id = ?
        """,
        [student_id, session_id],
    )
    return bool(rows)


def get_student_name(student_id: str) -> Optional[str]:
    rows = _query("SELECT student_name FROM session_students WHERE id = ?", [student_id])
    return rows[0]["student_name"] if rows else None


# -------------- topics --------------
def _active_label_taken(con: sqlite3.Connection, session_id: str, label: str, exclude_id: Optional[str]) -> bool:
    row = con.execute(
        """
        SELECT id FROM reverse_tutoring_topics
        WHERE session_id = ? AND topic = ? AND is_active = 1 AND id IS NOT ?
        """,
        (session_id, label, exclude_id),
    ).fetchone()
    return row is not None


def insert_topic(topic: Topic) -> Topic:
    params = _topic_params(topic)
    columns = ", ".join(params)
    placeholders = ", ".join(f":{name}" for name in params)
    with _tx() as con:
        if topic.is_active and _active_label_taken(con, topic.session_id, topic.topic, None):
            raise DuplicateTopic(topic.session_id, topic.topic)
        con.execute(f"INSERT INTO reverse_tutoring_topics ({columns}) VALUES ({placeholders})", params)
    return topic


def update_topic(topic: Topic) -> Topic:
    """Overwrite every column of an existing topic row."""
    params = _topic_params(topic)
    assignments = ", ".join(f"{name} = :{name}" for name in params if name != "id")
    with _tx() as con:
        if topic.is_active and _active_label_taken(con, topic.session_id, topic.topic, topic.id):
            raise DuplicateTopic(topic.session_id, topic.topic)
        cur = con.execute(f"UPDATE reverse_tutoring_topics SET {assignments} WHERE id = :id", params)
        if cur.rowcount == 0:
            raise NotFound("Topic not found")
    return topic


def get_topic(topic_id: str) -> Optional[Topic]:
    rows = _query("SELECT * FROM reverse_tutoring_topics WHERE id = ?", [topic_id])
    return _row_to_topic(rows[0]) if rows else None


def get_active_topic(session_id: str, label: str) -> Optional[Topic]:
    rows = _query(
        "SELECT * FROM reverse_tutoring_topics WHERE session_id = ? AND topic = ? AND is_active = 1 LIMIT 1",
        [session_id, label],
    )
    return _row_to_topic(rows[0]) if rows else None


def list_topics(session_id: str, *, include_inactive: bool = False) -> list[Topic]:
    sql = "SELECT * FROM reverse_tutoring_topics WHERE session_id = ?"
    if not include_inactive:
        sql += " AND is_active = 1"
    sql += " ORDER BY created_at ASC, topic ASC"
    return [_row_to_topic(row) for row in _query(sql, [session_id])]


def set_topic_document_context(topic_id: str, context: Optional[str]) -> None:
    cur = _exec(
        """
        UPDATE reverse_tutoring_topics
        SET document_context = ?, document_context_updated_at = ?
        WHERE id = ?
        """,
        (context, _ts(_now()), topic_id),
    )
    if cur.rowcount == 0:
        raise NotFound("Topic not found")


# -------------- topic documents --------------
def insert_document(document: TopicDocument) -> TopicDocument:
    _exec(
        """
        INSERT INTO reverse_tutoring_topic_documents (
          id, topic_id, original_filename, file_type, file_size_bytes,
          extracted_text, text_length, is_summarized, summary,
          summary_generated_at, uploaded_by, uploaded_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            document.id,
            document.topic_id,
            document.original_filename,
            document.file_type,
            document.file_size_bytes,
            document.extracted_text,
            document.text_length,
            int(document.is_summarized),
            document.summary,
            _ts(document.summary_generated_at),
            document.uploaded_by,
            _ts(document.uploaded_at),
        ),
    )
    return document


def list_documents(topic_id: str) -> list[TopicDocument]:
    rows = _query(
        """
        SELECT * FROM reverse_tutoring_topic_documents
        WHERE topic_id = ?
        ORDER BY uploaded_at DESC, original_filename ASC, id ASC
        """,
        [topic_id],
    )
    return [_row_to_document(row) for row in rows]


def get_document(document_id: str) -> Optional[TopicDocument]:
    rows = _query("SELECT * FROM reverse_tutoring_topic_documents WHERE id = ?", [document_id])
    return _row_to_document(rows[0]) if rows else None


def delete_document(document_id: str) -> bool:
    cur = _exec("DELETE FROM reverse_tutoring_topic_documents WHERE id = ?", [document_id])
    return cur.rowcount > 0


# -------------- conversations --------------
def get_conversation(conversation_id: str) -> Optional[Conversation]:
    rows = _query("SELECT * FROM reverse_tutoring_conversations WHERE id = ?", [conversation_id])
    return _row_to_conversation(rows[0]) if rows else None


def find_conversation(session_id: str, student_id: str, topic: str) -> Optional[Conversation]:
    rows = _query(
        """
        SELECT * FROM reverse_tutoring_conversations
        WHERE session_id = ? AND student_id = ? AND topic = ?
        """,
        [session_id, student_id, topic],
    )
    return _row_to_conversation(rows[0]) if rows else None


def create_conversation_if_absent(conversation: Conversation) -> tuple[Conversation, bool]:
    """Insert ``conversation`` unless its (session, student, topic) exists.

    Returns the stored record and whether this call created it. The insert
    and the fallback read share one transaction, so there is no window
    between checking and inserting.
    """
    state = _conversation_state_params(conversation)
    with _tx() as con:
        cur = con.execute(
            """
            INSERT INTO reverse_tutoring_conversations (
              id, session_id, student_id, topic, topic_id, settings, history,
              message_count, student_response_count, understanding_level,
              off_topic_warnings, is_blocked, blocked_reason, blocked_at,
              completed_at, started_at, last_updated, version
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            ON CONFLICT(session_id, student_id, topic) DO NOTHING
            """,
            (
                conversation.id,
                conversation.session_id,
                conversation.student_id,
                conversation.topic,
                conversation.topic_id,
                state["settings"],
                state["history"],
                state["message_count"],
                state["student_response_count"],
                state["understanding_level"],
                state["off_topic_warnings"],
                state["is_blocked"],
                state["blocked_reason"],
                state["blocked_at"],
                state["completed_at"],
                _ts(conversation.started_at),
                state["last_updated"],
            ),
        )
        created = cur.rowcount == 1
        row = con.execute(
            """
            SELECT * FROM reverse_tutoring_conversations
            WHERE session_id = ? AND student_id = ? AND topic = ?
            """,
            (conversation.session_id, conversation.student_id, conversation.topic),
        ).fetchone()
    return _row_to_conversation(row), created


def _write_collaboration(con: sqlite3.Connection, collaboration: CollaborativeSession) -> None:
    state = _collaboration_state_params(collaboration)
    assignments = ", ".join(f"{name} = :{name}" for name in state)
    cur = con.execute(
        f"""
        UPDATE collaborative_tutoring_sessions
        SET {assignments}, version = version + 1
        WHERE id = :id AND version = :expected_version
        """,
        {**state, "id": collaboration.id, "expected_version": collaboration.version},
    )
    if cur.rowcount == 0:
        exists = con.execute(
            "SELECT 1 FROM collaborative_tutoring_sessions WHERE id = ?", (collaboration.id,)
        ).fetchone()
        if exists is None:
            raise NotFound("Collaborative session not found")
        raise StaleConversation(collaboration.conversation_id)


def save_conversation(
    conversation: Conversation,
    collaboration: Optional[CollaborativeSession] = None,
) -> Conversation:
    """Write ``conversation`` if nobody else has since ``conversation.version``.

    ``collaboration``, when given, is written in the same transaction under
    its own version check. Returns the record with its bumped version.
    Raises ``StaleConversation`` when a stored version moved on, ``NotFound``
    when a row is gone.
    """
    state = _conversation_state_params(conversation)
    assignments = ", ".join(f"{name} = :{name}" for name in state)
    params = {**state, "id": conversation.id, "expected_version": conversation.version}
    with _tx() as con:
        cur = con.execute(
            f"""
            UPDATE reverse_tutoring_conversations
            SET {assignments}, version = version + 1
            WHERE id = :id AND version = :expected_version
            """,
            params,
        )
        if cur.rowcount == 0:
            exists = con.execute(
                "SELECT 1 FROM reverse_tutoring_conversations WHERE id = ?", (conversation.id,)
            ).fetchone()
            if exists is None:
                raise NotFound("Conversation not found")
            raise StaleConversation(conversation.id)
        if collaboration is not None:
            _write_collaboration(con, collaboration)
    return conversation.model_copy(
        update={"version": conversation.version + 1, "message_count": state["message_count"]}
    )


def unblock_conversation(conversation_id: str) -> Conversation:
    with _tx() as con:
        cur = con.execute(
            """
            UPDATE reverse_tutoring_conversations
            SET is_blocked = 0,
                blocked_reason = NULL,
                blocked_at = NULL,
                off_topic_warnings = 0,
                last_updated = ?,
                version = version + 1
            WHERE id = ?
            """,
            (_ts(_now()), conversation_id),
        )
        if cur.rowcount == 0:
            raise NotFound("Conversation not found")
        row = con.execute(
            "SELECT * FROM reverse_tutoring_conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
    return _row_to_conversation(row)


def list_session_conversations(session_id: str) -> list[tuple[Conversation, Optional[str]]]:
    rows = _query(
        """
        SELECT rtc.*, ss.student_name AS student_name
        FROM reverse_tutoring_conversations rtc
        LEFT JOIN session_students ss ON rtc.student_id = ss.id
        WHERE rtc.session_id = ?
        ORDER BY rtc.last_updated DESC, rtc.id ASC
        """,
        [session_id],
    )
    return [(_row_to_conversation(row), row["student_name"]) for row in rows]


# -------------- collaborative sessions --------------
def open_collaboration(conversation: Conversation, collaboration: CollaborativeSession) -> CollaborativeSession:
    """Attach ``collaboration`` to ``conversation``, reviving an earlier one.

    A conversation has at most one collaboration row; opening again replaces
    its participants and turn state but keeps the contribution tallies. The
    conversation's version must still be ``conversation.version``.
    """
    state = _collaboration_state_params(collaboration)
    with _tx() as con:
        con.execute(
            """
            INSERT INTO collaborative_tutoring_sessions (
              id, conversation_id, session_id, mode, participant_ids, participant_names,
              current_turn_student_id, turn_order, turn_count, contributions,
              is_imbalanced, balance_warnings, status, started_at, completed_at, version
            )
            VALUES (
              :id, :conversation_id, :session_id, :mode, :participant_ids, :participant_names,
              :current_turn_student_id, :turn_order, :turn_count, :contributions,
              :is_imbalanced, :balance_warnings, 'active', :started_at, NULL, 0
            )
            ON CONFLICT(conversation_id) DO UPDATE SET
              mode = excluded.mode,
              participant_ids = excluded.participant_ids,
              participant_names = excluded.participant_names,
              current_turn_student_id = excluded.current_turn_student_id,
              turn_order = excluded.turn_order,
              status = 'active',
              completed_at = NULL,
              version = version + 1
            """,
            {
                **state,
                "id": collaboration.id,
                "conversation_id": conversation.id,
                "session_id": conversation.session_id,
                "started_at": _ts(collaboration.started_at),
            },
        )
        row = con.execute(
            "SELECT * FROM collaborative_tutoring_sessions WHERE conversation_id = ?", (conversation.id,)
        ).fetchone()
        cur = con.execute(
            """
            UPDATE reverse_tutoring_conversations
            SET collab_session_id = ?, version = version + 1
            WHERE id = ? AND version = ?
            """,
            (row["id"], conversation.id, conversation.version),
        )
        if cur.rowcount == 0:
            raise StaleConversation(conversation.id)
    return _row_to_collaboration(row)


def get_collaboration(collab_session_id: str) -> Optional[CollaborativeSession]:
    rows = _query("SELECT * FROM collaborative_tutoring_sessions WHERE id = ?", [collab_session_id])
    return _row_to_collaboration(rows[0]) if rows else None


def save_collaboration(collaboration: CollaborativeSession, *, detach: bool = False) -> CollaborativeSession:
    """Versioned write of ``collaboration``.

    With ``detach`` the conversation goes back to a single student.
    """
    with _tx() as con:
        _write_collaboration(con, collaboration)
        if detach:
            con.execute(
                """
                UPDATE reverse_tutoring_conversations
                SET collab_session_id = NULL, version = version + 1
                WHERE id = ? AND collab_session_id = ?
                """,
                (collaboration.conversation_id, collaboration.id),
            )
    return collaboration.model_copy(update={"version": collaboration.version + 1})


def list_session_collaborations(session_id: str) -> list[CollaborationOverview]:
    rows = _query(
        """
        SELECT cts.*, rtc.topic AS conversation_topic, rtc.message_count AS conversation_messages,
               rtc.understanding_level AS conversation_understanding
        FROM collaborative_tutoring_sessions cts
        JOIN reverse_tutoring_conversations rtc ON cts.conversation_id = rtc.id
        WHERE cts.session_id = ?
        ORDER BY cts.started_at DESC, cts.id ASC
        """,
        [session_id],
    )
    return [
        CollaborationOverview(
            collaboration=_row_to_collaboration(row),
            topic=row["conversation_topic"],
            message_count=row["conversation_messages"],
            understanding_level=row["conversation_understanding"],
        )
        for row in rows
    ]


# -------------- analytics & metrics --------------
def log_analytics_event(event_type: str, session_id: Optional[str], properties: Dict[str, Any]) -> None:
    _exec(
        "INSERT INTO analytics_events (event_type, session_id, properties) VALUES (?, ?, ?)",
        (event_type, session_id, json.dumps(properties, ensure_ascii=False, default=str)),
    )


def list_analytics_events(
    session_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> list[Dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if session_id is not None:
        clauses.append("session_id = ?")
        params.append(session_id)
    if event_type is not None:
        clauses.append("event_type = ?")
        params.append(event_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(f"SELECT * FROM analytics_events {where} ORDER BY id ASC", params)
    return [
        {
            "event_type": row["event_type"],
            "session_id": row["session_id"],
            "properties": json.loads(row["properties"]) if row["properties"] else {},
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def record_llm_metric(
    model_id: str,
    latency_ms: int,
    *,
    prompt_variant: Optional[str] = None,
    path_taken: Optional[str] = None,
    tokens_in: Optional[int] = None,
    tokens_out: Optional[int] = None,
    succeeded: bool = True,
) -> None:
    _exec(
        """
        INSERT INTO llm_metrics(model_id, prompt_variant, path_taken, latency_ms, tokens_in, tokens_out, succeeded)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            model_id,
            prompt_variant,
            path_taken,
            int(latency_ms),
            None if tokens_in is None else int(tokens_in),
            None if tokens_out is None else int(tokens_out),
            int(bool(succeeded)),
        ),
    )


def list_llm_metrics(limit: int = 100) -> list[Dict[str, Any]]:
    rows = _query("SELECT * FROM llm_metrics ORDER BY id DESC LIMIT ?", [int(limit)])
    return [dict(row) for row in rows]
