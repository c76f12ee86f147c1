import threading

import pytest

import db
from conftest import OTHER_STUDENT_ID, SESSION_ID, STUDENT_ID, TEACHER_ID, tutor_reply
from engines.validation import (
    ConversationBlocked,
    ConversationCompleted,
    DuplicateConversation,
    GenerationFailed,
    NotFound,
    StaleConversation,
    ValidationError,
)
from schemas import Topic, TopicConfig

OPENING = "Hi! I'm so confused about photosynthesis. Can you teach me how plants make food?"


def _start(engine, llm, topic_config, student_id=STUDENT_ID):
    llm.queue(OPENING)
    return engine.start(SESSION_ID, student_id, topic_config)


def _conversation_rows():
    return db._query("SELECT COUNT(*) AS n FROM reverse_tutoring_conversations")[0]["n"]


# ----------------------------------------------------------------- start
def test_start_persists_opening_turn(engine, llm, topic_config):
    result = _start(engine, llm, topic_config)

    assert result.initial_message == OPENING
    assert result.message_count == 1
    assert result.understanding_level == 0
    assert result.persona == engine.persona.persona
    assert llm.calls[0]["path"] == ["reverse_tutoring", "start"]

    stored = db.get_conversation(result.conversation_id)
    assert stored.history[0].role == "ai"
    assert stored.history[0].kind == "opening"
    assert stored.settings.topic == "Photosynthesis"

    events = db.list_analytics_events(SESSION_ID, "reverse_tutoring_started")
    assert events[0]["properties"]["conversationId"] == result.conversation_id


def test_start_twice_returns_existing_conversation(engine, llm, topic_config):
    first = _start(engine, llm, topic_config)

    with pytest.raises(DuplicateConversation) as excinfo:
        engine.start(SESSION_ID, STUDENT_ID, topic_config)

    assert excinfo.value.conversation_id == first.conversation_id
    assert len(llm.calls) == 1
    assert _conversation_rows() == 1


def test_start_on_blocked_conversation_reports_block(engine, llm, topic_config):
    first = _start(engine, llm, topic_config)
    db._exec(
        "UPDATE reverse_tutoring_conversations SET is_blocked = 1, blocked_reason = ? WHERE id = ?",
        ("off-topic discussion", first.conversation_id),
    )

    with pytest.raises(ConversationBlocked) as excinfo:
        engine.start(SESSION_ID, STUDENT_ID, topic_config)

    assert excinfo.value.reason == "off-topic discussion"
    assert len(llm.calls) == 1


def test_start_requires_enrolled_student(engine, llm, topic_config):
    with pytest.raises(NotFound):
        engine.start(SESSION_ID, "stranger", topic_config)
    assert llm.calls == []
    assert _conversation_rows() == 0


def test_start_rejects_blank_topic_before_calling_model(engine, llm):
    with pytest.raises(ValidationError):
        engine.start(SESSION_ID, STUDENT_ID, TopicConfig(topic="   "))
    assert llm.calls == []
    assert _conversation_rows() == 0


def test_students_get_separate_conversations(engine, llm, topic_config):
    first = _start(engine, llm, topic_config)
    second = _start(engine, llm, topic_config, student_id=OTHER_STUDENT_ID)
    assert first.conversation_id != second.conversation_id
    assert _conversation_rows() == 2


def test_start_failure_writes_nothing(engine, llm, topic_config):
    llm.queue(GenerationFailed("connection refused"))
    with pytest.raises(GenerationFailed):
        engine.start(SESSION_ID, STUDENT_ID, topic_config)
    assert _conversation_rows() == 0


# -------------------------------------------------------------- continue
def test_on_topic_turn_appends_two_messages(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(tutor_reply("Oh, so sunlight is the energy? Where does the glucose go?", level=35))

    result = engine.continue_conversation(started.conversation_id, "Plants use sunlight to make glucose.")

    assert result.message_count == 3
    assert result.understanding_level == 35
    assert result.topic_adherence == "on_topic"
    assert result.off_topic_warnings == 0
    assert not result.blocked
    assert not result.completed
    assert result.ai_message == "Oh, so sunlight is the energy? Where does the glucose go?"
    assert result.compliance is not None

    stored = db.get_conversation(started.conversation_id)
    assert [m.role for m in stored.history] == ["ai", "student", "ai"]
    assert stored.history[1].analysis.understanding_level == 35
    assert stored.student_response_count == 1
    assert stored.version == 1

    messages = llm.calls[-1]["messages"]
    assert messages[0] == {"role": "assistant", "content": OPENING}
    assert messages[-1] == {"role": "user", "content": "Plants use sunlight to make glucose."}


def test_unknown_conversation(engine):
    with pytest.raises(NotFound):
        engine.continue_conversation("missing", "hello")


def test_blank_student_message_is_rejected(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    with pytest.raises(ValidationError):
        engine.continue_conversation(started.conversation_id, "   ")
    assert len(llm.calls) == 1


def test_three_off_topic_turns_block(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    persona = engine.persona
    llm.queue(
        tutor_reply("Ha, games are fun.", adherence="off_topic"),
        tutor_reply("Minecraft is cool.", adherence="off_topic"),
        tutor_reply("I love pizza too.", adherence="off_topic"),
    )

    first = engine.continue_conversation(started.conversation_id, "Do you play Minecraft?")
    assert first.off_topic_warnings == 1
    assert not first.blocked
    assert persona.redirect_for("Photosynthesis") in first.ai_message

    second = engine.continue_conversation(started.conversation_id, "Minecraft is better than school")
    assert second.off_topic_warnings == 2
    assert not second.blocked

    third = engine.continue_conversation(started.conversation_id, "What's your favorite pizza?")
    assert third.off_topic_warnings == 3
    assert third.blocked
    assert third.blocked_reason == "off-topic discussion"
    assert third.ai_message == persona.block_message_for("Photosynthesis")

    stored = db.get_conversation(started.conversation_id)
    assert stored.is_blocked
    assert stored.history[-1].kind == "moderation_block"
    assert stored.message_count == 7

    with pytest.raises(ConversationBlocked):
        engine.continue_conversation(started.conversation_id, "ok photosynthesis then")
    assert len(llm.calls) == 4
    assert db.list_analytics_events(SESSION_ID, "reverse_tutoring_blocked")


def test_two_off_topic_turns_do_not_block(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(
        tutor_reply("Hmm.", adherence="off_topic"),
        tutor_reply("Okay.", adherence="off_topic"),
        tutor_reply("Chlorophyll is green? Why?", level=40),
    )
    engine.continue_conversation(started.conversation_id, "lol")
    engine.continue_conversation(started.conversation_id, "whatever")
    result = engine.continue_conversation(started.conversation_id, "Chlorophyll captures light.")

    assert result.off_topic_warnings == 2
    assert not result.blocked


def test_borderline_turns_are_never_counted(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.default = tutor_reply("Do plants in space photosynthesize too?", adherence="borderline")
    for _ in range(4):
        result = engine.continue_conversation(started.conversation_id, "Astronauts grow plants in space.")
    assert result.off_topic_warnings == 0
    assert not result.blocked


def test_off_topic_ignored_when_focus_not_enforced(engine, llm, topic_config):
    relaxed = topic_config.model_copy(update={"enforce_topic_focus": False})
    started = _start(engine, llm, relaxed)
    llm.default = tutor_reply("Ha, that's funny.", adherence="off_topic")
    for _ in range(4):
        result = engine.continue_conversation(started.conversation_id, "tell me a joke")
    assert result.off_topic_warnings == 0
    assert not result.blocked
    assert result.ai_message == "Ha, that's funny."


def test_unblock_resets_moderation_and_keeps_history(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(*[tutor_reply("Hmm.", adherence="off_topic")] * 3)
    for _ in range(3):
        engine.continue_conversation(started.conversation_id, "lol")

    unblocked = engine.unblock(started.conversation_id)

    assert not unblocked.is_blocked
    assert unblocked.blocked_reason is None
    assert unblocked.off_topic_warnings == 0
    assert unblocked.message_count == 7

    llm.queue(tutor_reply("Okay! So what does chlorophyll do?", level=20))
    result = engine.continue_conversation(started.conversation_id, "Sorry. Chlorophyll absorbs light.")
    assert result.message_count == 9
    assert result.off_topic_warnings == 0


def test_unblock_unknown_conversation(engine):
    with pytest.raises(NotFound):
        engine.unblock("missing")


def test_final_turn_wraps_up_and_completes(engine, llm, topic_config):
    started = _start(engine, llm, topic_config.model_copy(update={"max_student_responses": 2}))
    llm.queue(
        tutor_reply("Where does the energy come from?", level=30),
        tutor_reply("Thank you! You explained chlorophyll really well. Bye!", level=60),
    )

    first = engine.continue_conversation(started.conversation_id, "Plants make food.")
    assert not first.completed
    assert llm.calls[-1]["path"][-1] == "reply"

    last = engine.continue_conversation(started.conversation_id, "From sunlight, absorbed by chlorophyll.")
    assert last.completed
    assert llm.calls[-1]["path"][-1] == "wrap_up"
    assert engine.persona.wrap_up_instruction.format(topic="Photosynthesis") in llm.calls[-1]["system"]

    stored = db.get_conversation(started.conversation_id)
    assert stored.is_completed
    assert stored.history[-1].kind == "wrap_up"

    with pytest.raises(ConversationCompleted):
        engine.continue_conversation(started.conversation_id, "One more thing!")
    assert len(llm.calls) == 3
    assert db.get_conversation(started.conversation_id).message_count == 5


def test_single_turn_cap_completes_on_first_reply(engine, llm, topic_config):
    started = _start(engine, llm, topic_config.model_copy(update={"max_student_responses": 1}))
    llm.queue(tutor_reply("Thanks, that makes sense now!", level=50))

    result = engine.continue_conversation(started.conversation_id, "Plants use sunlight to make glucose.")

    assert result.completed
    assert result.message_count == 3
    assert llm.calls[-1]["path"][-1] == "wrap_up"
    stored = db.get_conversation(started.conversation_id)
    assert stored.completed_at is not None
    assert stored.history[-1].kind == "wrap_up"

    with pytest.raises(ConversationCompleted):
        engine.continue_conversation(started.conversation_id, "Also oxygen!")
    assert len(llm.calls) == 2
    assert db.get_conversation(started.conversation_id).message_count == 3


def test_blocking_on_final_turn_does_not_complete(engine, llm, topic_config, config):
    strict = engine.__class__(db, llm, config.with_overrides(off_topic_block_threshold=1))
    started = _start(strict, llm, topic_config.model_copy(update={"max_student_responses": 1}))
    llm.queue(tutor_reply("Bye!", adherence="off_topic"))

    result = strict.continue_conversation(started.conversation_id, "lol")

    assert result.blocked
    assert not result.completed
    assert db.get_conversation(started.conversation_id).completed_at is None


# ---------------------------------------------------------- understanding
def test_malformed_signal_block_keeps_understanding(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(
        tutor_reply("Nice!", level=40),
        "Cool, so what happens at night?",
        "Wait what? {not json",
    )

    engine.continue_conversation(started.conversation_id, "Chlorophyll absorbs light.")
    plain = engine.continue_conversation(started.conversation_id, "It makes glucose.")
    broken = engine.continue_conversation(started.conversation_id, "And oxygen.")

    assert plain.understanding_level == 40
    assert plain.ai_message == "Cool, so what happens at night?"
    assert plain.analysis.parsed is False
    assert plain.topic_adherence == "on_topic"
    assert broken.understanding_level == 40
    assert broken.analysis.parsed is False


def test_unknown_adherence_label_falls_back(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(tutor_reply("Hmm?", adherence="sideways", level=90))
    result = engine.continue_conversation(started.conversation_id, "Plants are green.")
    assert result.topic_adherence == "on_topic"
    assert result.understanding_level == 0
    assert result.ai_message == "Hmm?"


def test_text_after_signal_block_is_moderated_and_hidden(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue('Cool! What else?\n{"topic_adherence": "off_topic", "understanding_level": 80}\nThanks!')

    result = engine.continue_conversation(started.conversation_id, "Do you like football?")

    assert "topic_adherence" not in result.ai_message
    assert result.ai_message.startswith("Cool! What else?\nThanks!")
    assert result.topic_adherence == "off_topic"
    assert result.off_topic_warnings == 1
    assert result.understanding_level == 80
    assert result.analysis.parsed
    stored = db.get_conversation(started.conversation_id)
    assert "{" not in stored.history[-1].content


def test_understanding_delta_and_clamping(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(
        tutor_reply("Go on.", understanding_delta=15),
        tutor_reply("Wow!", level=150),
        tutor_reply("Wait, really?", understanding_delta=-30),
    )

    assert engine.continue_conversation(started.conversation_id, "a").understanding_level == 15
    assert engine.continue_conversation(started.conversation_id, "b").understanding_level == 100
    assert engine.continue_conversation(started.conversation_id, "c").understanding_level == 70


# ------------------------------------------------------------- failures
def test_generation_failure_keeps_student_turn_for_retry(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(GenerationFailed("timeout"))

    with pytest.raises(GenerationFailed):
        engine.continue_conversation(started.conversation_id, "Plants use sunlight.")

    pending = db.get_conversation(started.conversation_id)
    assert pending.message_count == 2
    assert pending.student_response_count == 0
    assert pending.awaiting_reply
    assert pending.history[-1].content == "Plants use sunlight."

    llm.queue(tutor_reply("Why sunlight?", level=25))
    result = engine.continue_conversation(started.conversation_id, "Plants use sunlight.")

    stored = db.get_conversation(started.conversation_id)
    assert result.message_count == 3
    assert [m.content for m in stored.history if m.role == "student"] == ["Plants use sunlight."]
    assert stored.history[1].timestamp == pending.history[-1].timestamp
    assert stored.student_response_count == 1


def test_retry_with_new_text_replaces_pending_turn(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(GenerationFailed("timeout"), tutor_reply("Tell me more!", level=10))

    with pytest.raises(GenerationFailed):
        engine.continue_conversation(started.conversation_id, "Plants use sunlight.")
    engine.continue_conversation(started.conversation_id, "Plants turn sunlight into food.")

    stored = db.get_conversation(started.conversation_id)
    assert [m.content for m in stored.history if m.role == "student"] == ["Plants turn sunlight into food."]
    assert stored.message_count == 3


def test_stale_pending_save_still_reports_generation_failure(engine, llm, topic_config, monkeypatch):
    started = _start(engine, llm, topic_config)
    llm.queue(GenerationFailed("timeout"))

    def _stale(conversation):
        raise StaleConversation(conversation.id)

    monkeypatch.setattr(db, "save_conversation", _stale)
    with pytest.raises(GenerationFailed):
        engine.continue_conversation(started.conversation_id, "Plants use sunlight.")
    assert db.get_conversation(started.conversation_id).message_count == 1


def test_empty_reply_counts_as_generation_failure(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue("   ")
    with pytest.raises(GenerationFailed):
        engine.continue_conversation(started.conversation_id, "Plants use sunlight.")
    assert db.get_conversation(started.conversation_id).message_count == 2


def test_concurrent_turns_are_serialized(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.default = tutor_reply("Interesting, tell me more.", level=30)
    errors = []

    def _send(text):
        try:
            engine.continue_conversation(started.conversation_id, text)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_send, args=(text,)) for text in ("Chlorophyll!", "Glucose!")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    stored = db.get_conversation(started.conversation_id)
    assert stored.message_count == 5
    assert stored.student_response_count == 2
    assert [m.role for m in stored.history] == ["ai", "student", "ai", "student", "ai"]


# --------------------------------------------------------- document context
def test_live_topic_document_context_reaches_prompt(engine, llm, topic_config):
    topic = Topic(
        id="topic-1",
        session_id=SESSION_ID,
        topic="Photosynthesis",
        document_context="[Document: notes.txt]\nChloroplasts hold chlorophyll.",
        created_by=TEACHER_ID,
    )
    db.insert_topic(topic)

    started = _start(engine, llm, topic_config)
    assert "Chloroplasts hold chlorophyll." in llm.calls[0]["system"]
    assert db.get_conversation(started.conversation_id).topic_id == "topic-1"

    db.set_topic_document_context("topic-1", "[Document: new.txt]\nStomata let gases in.")
    llm.queue(tutor_reply("What are stomata?", level=10))
    engine.continue_conversation(started.conversation_id, "Leaves breathe.")
    assert "Stomata let gases in." in llm.calls[-1]["system"]


def test_snapshot_context_used_after_topic_is_deactivated(engine, llm, topic_config):
    snapshot = topic_config.model_copy(update={"document_context": "Snapshot notes about light."})
    started = _start(engine, llm, snapshot)
    llm.queue(tutor_reply("Light?", level=5))
    engine.continue_conversation(started.conversation_id, "Light matters.")
    assert "Snapshot notes about light." in llm.calls[-1]["system"]


# ---------------------------------------------------------------- reads
def test_transcript_includes_student_name_and_history(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    llm.queue(tutor_reply("Why green?", level=20))
    engine.continue_conversation(started.conversation_id, "Chlorophyll is green.")

    transcript = engine.get_transcript(started.conversation_id)

    assert transcript.student_name == "Ada"
    assert transcript.subject == "Science"
    assert transcript.message_count == 3
    assert len(transcript.transcript) == 3
    assert transcript.duration_minutes == 0


def test_student_conversation_lookup(engine, llm, topic_config):
    started = _start(engine, llm, topic_config)
    found = engine.get_student_conversation(SESSION_ID, STUDENT_ID, "Photosynthesis")
    assert found.id == started.conversation_id
    with pytest.raises(NotFound):
        engine.get_student_conversation(SESSION_ID, OTHER_STUDENT_ID, "Photosynthesis")
