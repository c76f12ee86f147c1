import unittest

from engines.moderation import (
    Malformed,
    Parsed,
    clamp_understanding,
    moderate,
    next_understanding,
    parse_tutor_reply,
    with_redirect,
)


class ParseTutorReplyTests(unittest.TestCase):
    def test_reply_and_signal_block_are_split(self):
        raw = (
            "So the leaves are like little kitchens?\n"
            '{"topic_adherence": "on_topic", "understanding_level": 45, '
            '"concepts_demonstrated": ["light absorption"], "vocabulary_used": ["chlorophyll"]}'
        )
        parsed = parse_tutor_reply(raw)

        self.assertIsInstance(parsed, Parsed)
        self.assertEqual(parsed.reply, "So the leaves are like little kitchens?")
        self.assertEqual(parsed.understanding_level, 45)
        self.assertEqual(parsed.analysis.vocabulary_used, ["chlorophyll"])
        self.assertEqual(parsed.analysis.concepts_demonstrated, ["light absorption"])

    def test_camel_case_keys_and_fences(self):
        raw = 'Really?\n```json\n{"topicAdherence": "Off-Topic", "understandingDelta": -5}\n```'
        parsed = parse_tutor_reply(raw)

        self.assertIsInstance(parsed, Parsed)
        self.assertEqual(parsed.reply, "Really?")
        self.assertEqual(parsed.analysis.topic_adherence, "off_topic")
        self.assertIsNone(parsed.understanding_level)
        self.assertEqual(parsed.understanding_delta, -5)

    def test_braces_inside_the_reply_are_kept(self):
        raw = 'Is it like {sunlight + water}?\n{"topic_adherence": "borderline"}'
        parsed = parse_tutor_reply(raw)
        self.assertEqual(parsed.reply, "Is it like {sunlight + water}?")
        self.assertEqual(parsed.analysis.topic_adherence, "borderline")

    def test_text_after_signal_block_stays_visible(self):
        raw = 'Cool! What else?\n{"topic_adherence": "off_topic", "understanding_level": 80}\nThanks!'
        parsed = parse_tutor_reply(raw)

        self.assertIsInstance(parsed, Parsed)
        self.assertEqual(parsed.reply, "Cool! What else?\nThanks!")
        self.assertEqual(parsed.analysis.topic_adherence, "off_topic")
        self.assertEqual(parsed.understanding_level, 80)

    def test_fenced_block_in_the_middle(self):
        raw = 'Hmm, okay.\n```json\n{"topic_adherence": "borderline"}\n```\nWhat about roots?'
        parsed = parse_tutor_reply(raw)
        self.assertEqual(parsed.reply, "Hmm, okay.\nWhat about roots?")
        self.assertEqual(parsed.analysis.topic_adherence, "borderline")

    def test_last_object_is_the_signal_block(self):
        raw = 'Like {"a": 1}? Interesting.\n{"topic_adherence": "on_topic", "understanding_delta": 4}'
        parsed = parse_tutor_reply(raw)
        self.assertEqual(parsed.reply, 'Like {"a": 1}? Interesting.')
        self.assertEqual(parsed.understanding_delta, 4)

    def test_missing_block_is_malformed(self):
        parsed = parse_tutor_reply("  What do roots do?  ")
        self.assertIsInstance(parsed, Malformed)
        self.assertEqual(parsed.reply, "What do roots do?")

    def test_bad_values_are_malformed(self):
        for block in (
            '{"topic_adherence": "sideways"}',
            '{"understanding_level": "lots"}',
            '{"understanding_level": true}',
        ):
            with self.subTest(block=block):
                parsed = parse_tutor_reply(f"Hmm.\n{block}")
                self.assertIsInstance(parsed, Malformed)
                self.assertEqual(parsed.reply, "Hmm.")

    def test_empty_text(self):
        parsed = parse_tutor_reply("")
        self.assertIsInstance(parsed, Malformed)
        self.assertEqual(parsed.reply, "")


class UnderstandingTests(unittest.TestCase):
    def test_absolute_value_wins_over_delta(self):
        parsed = parse_tutor_reply('Ok.\n{"understanding_level": 70, "understanding_delta": 5}')
        self.assertEqual(next_understanding(20, parsed), 70)

    def test_delta_applies_to_previous(self):
        parsed = parse_tutor_reply('Ok.\n{"understanding_delta": 12}')
        self.assertEqual(next_understanding(20, parsed), 32)

    def test_no_estimate_keeps_previous(self):
        self.assertEqual(next_understanding(33, parse_tutor_reply('Ok.\n{"topic_adherence": "on_topic"}')), 33)
        self.assertEqual(next_understanding(33, parse_tutor_reply("Ok.")), 33)

    def test_clamp(self):
        self.assertEqual(clamp_understanding(-4), 0)
        self.assertEqual(clamp_understanding(140), 100)
        self.assertEqual(next_understanding(90, parse_tutor_reply('Ok.\n{"understanding_delta": 25}')), 100)


def test_moderation_counts_only_off_topic():
    assert moderate("on_topic", 1, enforce_topic_focus=True, threshold=3).off_topic_warnings == 1
    assert not moderate("borderline", 2, enforce_topic_focus=True, threshold=3).counted

    counted = moderate("off_topic", 1, enforce_topic_focus=True, threshold=3)
    assert counted.counted and counted.off_topic_warnings == 2 and not counted.blocked

    blocked = moderate("off_topic", 2, enforce_topic_focus=True, threshold=3)
    assert blocked.blocked and blocked.off_topic_warnings == 3


def test_moderation_disabled_without_topic_focus():
    outcome = moderate("off_topic", 2, enforce_topic_focus=False, threshold=3)
    assert not outcome.counted
    assert not outcome.blocked
    assert outcome.off_topic_warnings == 2


def test_redirect_line_added_once():
    line = "That's interesting, but I really need help understanding Photosynthesis."
    assert with_redirect("Haha.", line) == f"Haha. {line}"
    assert with_redirect(f"Haha. {line}", line) == f"Haha. {line}"
