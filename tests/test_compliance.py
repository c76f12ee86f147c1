import pytest

from engines.compliance import validate
from engines.validation import ValidationError


def test_two_short_sentences_are_compliant():
    report = validate("Plants need sun. Why they need it?", "short", "simple")

    assert report.is_compliant
    assert report.sentence_count == 2
    assert report.avg_sentence_length == 4
    assert report.avg_word_length == 4
    assert report.total_words == 7
    assert report.warnings == []


def test_four_sentences_exceed_short():
    text = "Plants need sun for food. Sun gives them energy. They use it to grow. This is called photosynthesis."
    report = validate(text, "short", "simple")

    assert not report.is_compliant
    assert not report.length_compliant
    assert report.complexity_compliant
    assert report.sentence_count == 4
    assert report.warnings == ["Expected 1-2 sentences, got 4 sentences"]


def test_length_ranges_overlap_at_boundaries():
    two = "Leaves are green. They catch light."
    three = two + " Roots drink water."
    assert validate(two, "short", "advanced").length_compliant
    assert validate(two, "medium", "advanced").length_compliant
    assert validate(three, "medium", "advanced").length_compliant
    assert validate(three, "long", "advanced").length_compliant
    assert not validate(three, "short", "advanced").length_compliant


def test_long_words_fail_simple_complexity():
    report = validate("Photosynthesis transforms electromagnetic radiation.", "short", "simple")

    assert report.length_compliant
    assert not report.complexity_compliant
    assert report.avg_word_length == 12
    assert report.warnings == ["Words too long for SIMPLE (avg 12 characters, expected ≤5)"]


def test_advanced_has_no_upper_bound():
    sentence = " ".join(["word"] * 30) + "."
    text = " ".join([sentence] * 3)

    advanced = validate(text, "long", "advanced")
    assert advanced.is_compliant
    assert advanced.avg_sentence_length == 30

    standard = validate(text, "long", "standard")
    assert not standard.is_compliant
    assert standard.warnings == ["Sentences too complex for STANDARD (avg 30 words, expected ≤15)"]


def test_empty_text_has_no_sentences():
    report = validate("", "short", "simple")
    assert report.sentence_count == 0
    assert report.avg_sentence_length == 0
    assert not report.is_compliant


def test_unknown_labels_are_rejected():
    with pytest.raises(ValidationError):
        validate("Hello.", "tiny", "simple")
    with pytest.raises(ValidationError):
        validate("Hello.", "short", "fancy")
