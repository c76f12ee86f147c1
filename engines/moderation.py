"""Parsing of tutor replies and the off-topic moderation policy."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from schemas import TurnAnalysis, find_last_json_object

_LOGGER = logging.getLogger(__name__)

_KEY_ALIASES = {
    "topicadherence": "topic_adherence",
    "adherence": "topic_adherence",
    "understandinglevel": "understanding_level",
    "understanding": "understanding_level",
    "understandingdelta": "understanding_delta",
    "conceptsdemonstrated": "concepts_demonstrated",
    "misconceptions": "misconceptions",
    "vocabularyused": "vocabulary_used",
    "areasforimprovement": "areas_for_improvement",
    "teachersuggestion": "teacher_suggestion",
}

_ADHERENCE_VALUES = {"on_topic", "off_topic", "borderline"}


@dataclass(frozen=True)
class Parsed:
    """A reply whose signal block decoded cleanly."""

    reply: str
    analysis: TurnAnalysis
    understanding_level: Optional[int] = None
    understanding_delta: Optional[int] = None


@dataclass(frozen=True)
class Malformed:
    """A reply without a usable signal block; ``reply`` is the visible text."""

    raw: str
    reply: str
    reason: str


TutorReply = Union[Parsed, Malformed]


def _normalize_key(key: str) -> str:
    compact = key.replace("_", "").replace("-", "").lower()
    return _KEY_ALIASES.get(compact, key)


def _normalize_adherence(value: Any) -> str:
    label = str(value or "on_topic").strip().lower().replace("-", "_").replace(" ", "_")
    if label == "ontopic":
        label = "on_topic"
    elif label == "offtopic":
        label = "off_topic"
    if label not in _ADHERENCE_VALUES:
        raise ValueError(f"Unknown topic adherence '{value}'")
    return label


def _coerce_score(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"{field} must be finite")
    return int(round(number))


def clamp_understanding(value: int) -> int:
    return max(0, min(100, int(value)))


def _visible_text(before: str, after: str) -> str:
    """Join the text around a removed signal block, dropping its fence."""
    head = before.rstrip()
    for fence in ("```json", "```JSON", "```"):
        if head.endswith(fence):
            head = head[: -len(fence)].rstrip()
            break
    tail = after.strip()
    if tail.startswith("```"):
        tail = tail[3:].lstrip()
    return f"{head}\n{tail}".strip() if tail else head


def _analysis_from_payload(payload: Mapping[str, Any]) -> Parsed:
    signals: Dict[str, Any] = {_normalize_key(str(k)): v for k, v in payload.items()}
    level = _coerce_score(signals.pop("understanding_level", None), "understanding_level")
    delta = _coerce_score(signals.pop("understanding_delta", None), "understanding_delta")
    signals["topic_adherence"] = _normalize_adherence(signals.get("topic_adherence"))
    known = {name for name in TurnAnalysis.model_fields if name not in {"understanding_level", "parsed"}}
    analysis = TurnAnalysis.model_validate(
        {
            **{k: v for k, v in signals.items() if k in known},
            "understanding_level": clamp_understanding(level if level is not None else 0),
        }
    )
    return Parsed(reply="", analysis=analysis, understanding_level=level, understanding_delta=delta)


def parse_tutor_reply(raw: str) -> TutorReply:
    """Split a model reply into visible text and its signal block.

    The signal block is the last top-level JSON object in the reply, wherever
    it sits; text the model writes after it stays visible.

    Never raises: anything that cannot be decoded comes back as
    ``Malformed`` carrying the raw text.
    """
    text = (raw or "").strip()
    try:
        payload, start, end = find_last_json_object(text)
    except ValueError:
        return Malformed(raw=text, reply=text, reason="missing signal block")

    reply = _visible_text(text[:start], text[end:])
    try:
        parsed = _analysis_from_payload(payload)
    except (ValidationError, ValueError, TypeError) as exc:
        _LOGGER.debug("Discarding malformed signal block: %s", exc)
        return Malformed(raw=text, reply=reply, reason=str(exc))
    return Parsed(
        reply=reply,
        analysis=parsed.analysis,
        understanding_level=parsed.understanding_level,
        understanding_delta=parsed.understanding_delta,
    )


def fallback_analysis(previous_level: int) -> TurnAnalysis:
    return TurnAnalysis(topic_adherence="on_topic", understanding_level=previous_level, parsed=False)


def next_understanding(previous: int, parsed: TutorReply) -> int:
    """Absolute estimate wins, then a delta, otherwise the level is kept."""
    if isinstance(parsed, Malformed):
        return clamp_understanding(previous)
    if parsed.understanding_level is not None:
        return clamp_understanding(parsed.understanding_level)
    if parsed.understanding_delta is not None:
        return clamp_understanding(previous + parsed.understanding_delta)
    return clamp_understanding(previous)


@dataclass(frozen=True)
class ModerationOutcome:
    off_topic_warnings: int
    counted: bool
    blocked: bool


def moderate(
    adherence: str,
    warnings: int,
    *,
    enforce_topic_focus: bool,
    threshold: int,
) -> ModerationOutcome:
    """Only ``off_topic`` counts; reaching ``threshold`` warnings blocks."""
    if not enforce_topic_focus or adherence != "off_topic":
        return ModerationOutcome(off_topic_warnings=warnings, counted=False, blocked=False)
    updated = warnings + 1
    return ModerationOutcome(off_topic_warnings=updated, counted=True, blocked=updated >= threshold)


def with_redirect(reply: str, redirect_line: str) -> str:
    if redirect_line.lower() in reply.lower():
        return reply
    return f"{reply} {redirect_line}".strip()
