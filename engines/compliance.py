"""Post-hoc length and complexity check for tutor replies.

The check is advisory: callers log the report and keep it on the AI turn,
nothing is regenerated.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from engines.validation import require_choice
from schemas import ComplianceReport


@dataclass(frozen=True)
class LengthRule:
    min_sentences: int
    max_sentences: int
    label: str


@dataclass(frozen=True)
class ComplexityRule:
    max_avg_sentence_length: Optional[int]
    max_avg_word_length: Optional[int]
    label: str


# Ranges overlap at 2 and 3 sentences on purpose.
LENGTH_RULES: Dict[str, LengthRule] = {
    "short": LengthRule(1, 2, "1-2 sentences"),
    "medium": LengthRule(2, 3, "2-3 sentences"),
    "long": LengthRule(3, 4, "3-4 sentences"),
}

COMPLEXITY_RULES: Dict[str, ComplexityRule] = {
    "simple": ComplexityRule(10, 5, "SIMPLE"),
    "standard": ComplexityRule(15, 6, "STANDARD"),
    "advanced": ComplexityRule(None, None, "ADVANCED"),
}

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _words(text: str) -> List[str]:
    return [token for token in text.split() if token]


def validate(text: str, expected_length: str, expected_complexity: str) -> ComplianceReport:
    require_choice(expected_length, "expected_length", LENGTH_RULES)
    require_choice(expected_complexity, "expected_complexity", COMPLEXITY_RULES)
    length_rule = LENGTH_RULES[expected_length]
    complexity_rule = COMPLEXITY_RULES[expected_complexity]

    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text or "") if s.strip()]
    sentence_count = len(sentences)
    total_words = sum(len(_words(sentence)) for sentence in sentences)
    avg_sentence_length = _round_half_up(total_words / sentence_count) if sentence_count else 0

    tokens = _words(text or "")
    avg_word_length = _round_half_up(sum(len(t) for t in tokens) / len(tokens)) if tokens else 0

    length_ok = length_rule.min_sentences <= sentence_count <= length_rule.max_sentences
    sentences_ok = (
        complexity_rule.max_avg_sentence_length is None
        or avg_sentence_length <= complexity_rule.max_avg_sentence_length
    )
    words_ok = (
        complexity_rule.max_avg_word_length is None
        or avg_word_length <= complexity_rule.max_avg_word_length
    )

    warnings: List[str] = []
    if not length_ok:
        warnings.append(f"Expected {length_rule.label}, got {sentence_count} sentences")
    if not sentences_ok:
        qualifier = "too long" if expected_complexity == "simple" else "too complex"
        warnings.append(
            f"Sentences {qualifier} for {complexity_rule.label} "
            f"(avg {avg_sentence_length} words, expected ≤{complexity_rule.max_avg_sentence_length})"
        )
    if not words_ok:
        warnings.append(
            f"Words too long for {complexity_rule.label} "
            f"(avg {avg_word_length} characters, expected ≤{complexity_rule.max_avg_word_length})"
        )

    return ComplianceReport(
        is_compliant=length_ok and sentences_ok and words_ok,
        sentence_count=sentence_count,
        avg_sentence_length=avg_sentence_length,
        avg_word_length=avg_word_length,
        total_words=total_words,
        length_compliant=length_ok,
        complexity_compliant=sentences_ok and words_ok,
        expected_length=expected_length,  # type: ignore[arg-type]
        expected_complexity=expected_complexity,  # type: ignore[arg-type]
        warnings=warnings,
    )
