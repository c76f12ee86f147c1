import json

import pytest

import db
from conftest import SESSION_ID, STUDENT_ID
from engines.scaffolding import DEFAULT_STRUGGLE_AREA, ScaffoldingProvider
from engines.validation import ConversationBlocked, NotFound


@pytest.fixture
def conversation_id(engine, llm, topic_config):
    llm.queue("Can you teach me about photosynthesis?")
    return engine.start(SESSION_ID, STUDENT_ID, topic_config).conversation_id


@pytest.fixture
def provider(classroom, llm, config):
    return ScaffoldingProvider(db, llm, config)


def test_scaffolding_is_parsed_and_vocabulary_capped(provider, llm, conversation_id):
    payload = {
        "sentenceStarters": ["Plants need...", "Sunlight helps...", "Inside the leaf..."],
        "vocabulary": [{"word": f"term{i}", "definition": "a word"} for i in range(7)],
        "hint": "Think about what the leaf does with light.",
    }
    llm.queue("Here is some help:\n" + json.dumps(payload))

    scaffolding = provider.get_scaffolding(conversation_id, "the role of chlorophyll")

    assert scaffolding.hint == "Think about what the leaf does with light."
    assert scaffolding.sentence_starters[0] == "Plants need..."
    assert len(scaffolding.vocabulary) == 5
    call = llm.calls[-1]
    assert call["path"] == ["reverse_tutoring", "help"]
    assert "the role of chlorophyll" in call["messages"][0]["content"]
    assert "chlorophyll, glucose" in call["messages"][0]["content"]


def test_unparseable_answer_becomes_the_hint(provider, llm, conversation_id):
    llm.queue("Try describing what happens to sunlight when it hits a leaf.")
    scaffolding = provider.get_scaffolding(conversation_id)

    assert scaffolding.hint == "Try describing what happens to sunlight when it hits a leaf."
    assert scaffolding.sentence_starters == []
    assert scaffolding.vocabulary == []
    assert DEFAULT_STRUGGLE_AREA in llm.calls[-1]["messages"][0]["content"]


def test_scaffolding_leaves_the_conversation_untouched(provider, llm, conversation_id):
    before = db.get_conversation(conversation_id)
    llm.queue('{"hint": "Start with the leaf."}')

    provider.get_scaffolding(conversation_id, "  ")

    after = db.get_conversation(conversation_id)
    assert after.message_count == before.message_count
    assert after.version == before.version
    assert after.history == before.history
    events = db.list_analytics_events(SESSION_ID, "reverse_tutoring_help_requested")
    assert events[0]["properties"]["struggleArea"] == DEFAULT_STRUGGLE_AREA


def test_blocked_conversation_gets_no_help(provider, llm, conversation_id):
    db._exec(
        "UPDATE reverse_tutoring_conversations SET is_blocked = 1 WHERE id = ?",
        (conversation_id,),
    )
    calls = len(llm.calls)
    with pytest.raises(ConversationBlocked):
        provider.get_scaffolding(conversation_id)
    assert len(llm.calls) == calls


def test_unknown_conversation(provider):
    with pytest.raises(NotFound):
        provider.get_scaffolding("missing")
