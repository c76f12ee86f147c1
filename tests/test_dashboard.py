import pytest

import db
from conftest import OTHER_STUDENT_ID, SESSION_ID, STUDENT_ID, tutor_reply
from engines.dashboard import TeacherDashboardAggregator, determine_status


@pytest.mark.parametrize(
    "level, messages, expected",
    [
        (80, 1, "mastery"),
        (79, 9, "progressing"),
        (60, 9, "progressing"),
        (40, 1, "struggling"),
        (39, 2, "just_started"),
        (0, 1, "just_started"),
        (39, 3, "needs_help"),
        (0, 12, "needs_help"),
    ],
)
def test_determine_status(level, messages, expected):
    assert determine_status(level, messages) == expected


def test_empty_session_dashboard(classroom):
    dashboard = TeacherDashboardAggregator(db).get_teacher_dashboard(SESSION_ID)
    assert dashboard.conversations == []
    assert dashboard.total_students == 0
    assert dashboard.average_understanding == 0.0


def test_dashboard_rows_and_average(engine, llm, topic_config):
    llm.queue("Teach me!", "Teach me too!")
    first = engine.start(SESSION_ID, STUDENT_ID, topic_config)
    second = engine.start(SESSION_ID, OTHER_STUDENT_ID, topic_config)
    llm.queue(tutor_reply("Wow, great explanation!", level=85, teacher_suggestion="Ask about stomata"))
    engine.continue_conversation(first.conversation_id, "Chlorophyll absorbs light to make glucose.")

    dashboard = TeacherDashboardAggregator(db).get_teacher_dashboard(SESSION_ID)

    assert dashboard.total_students == 2
    assert dashboard.average_understanding == pytest.approx(42.5)
    rows = {row.conversation_id: row for row in dashboard.conversations}
    assert dashboard.conversations[0].conversation_id == first.conversation_id

    leader = rows[first.conversation_id]
    assert leader.student_name == "Ada"
    assert leader.status == "mastery"
    assert leader.message_count == 3
    assert leader.latest_analysis.teacher_suggestion == "Ask about stomata"

    newcomer = rows[second.conversation_id]
    assert newcomer.student_name == "Grace"
    assert newcomer.status == "just_started"
    assert newcomer.latest_analysis is None
