import json
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

TEACHER_ID = "teacher-1"
SESSION_ID = "session-1"
STUDENT_ID = "student-1"
OTHER_STUDENT_ID = "student-2"


def tutor_reply(text, adherence="on_topic", level=None, **signals):
    """A model reply followed by its trailing signal block."""
    payload = {"topic_adherence": adherence, **signals}
    if level is not None:
        payload["understanding_level"] = level
    return f"{text}\n{json.dumps(payload)}"


class ScriptedLLM:
    """Stand-in for ``llm.LanguageModelClient`` that replays queued replies.

    Queue an exception instance to have the matching call raise it.
    """

    def __init__(self, *replies, default=None):
        self.replies = list(replies)
        self.default = default
        self.calls = []
        self._lock = threading.Lock()

    def queue(self, *replies):
        with self._lock:
            self.replies.extend(replies)

    def complete(self, system, messages, max_tokens=None, *, path=None):
        with self._lock:
            self.calls.append(
                {"system": system, "messages": list(messages), "max_tokens": max_tokens, "path": list(path or ())}
            )
            if self.replies:
                reply = self.replies.pop(0)
            elif self.default is not None:
                reply = self.default
            else:
                raise AssertionError("ScriptedLLM ran out of replies")
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    return str(db_path)


@pytest.fixture
def classroom(temp_db):
    """One session owned by ``TEACHER_ID`` with two enrolled students."""
    import db

    session = db.create_session(TEACHER_ID, "Period 3 Science", session_id=SESSION_ID)
    db.add_session_student(SESSION_ID, "Ada", student_id=STUDENT_ID)
    db.add_session_student(SESSION_ID, "Grace", student_id=OTHER_STUDENT_ID)
    return session


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def config():
    from config import TutoringConfig

    return TutoringConfig()


@pytest.fixture
def engine(classroom, llm, config):
    import db
    from engines.caching import KeyedLocks
    from engines.conversation import ConversationEngine

    return ConversationEngine(db, llm, config, locks=KeyedLocks())


@pytest.fixture
def topic_config():
    from schemas import TopicConfig

    return TopicConfig(
        topic="Photosynthesis",
        subject="Science",
        grade_level="7th grade",
        key_vocabulary=["chlorophyll", "glucose"],
    )
