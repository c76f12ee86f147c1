import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from prompts.masterprompts import PersonaPrompt, get_prompt, load_prompts
from schemas import ConversationMessage, TopicConfig, TurnOptions

logger = logging.getLogger(__name__)

# --------- Persona prompt management ---------
_PROMPT_VARIANTS = load_prompts()
_DEFAULT_VARIANT = os.getenv("PROMPT_VARIANT", "curious_peer")
try:
    ACTIVE_PERSONA: PersonaPrompt = get_prompt(_DEFAULT_VARIANT)
except KeyError:
    logger.warning("Unknown PROMPT_VARIANT %r, falling back to the first persona", _DEFAULT_VARIANT)
    ACTIVE_PERSONA = get_prompt(next(iter(_PROMPT_VARIANTS)))

PROMPT_VARIANT = ACTIVE_PERSONA.normalized_variant
PROMPT_VERSION = ACTIVE_PERSONA.prompt_version

LENGTH_GUIDANCE = {
    "short": "Keep every reply to 1-2 sentences.",
    "medium": "Keep every reply to 2-3 sentences.",
    "long": "Keep every reply to 3-4 sentences.",
}

COMPLEXITY_GUIDANCE = {
    "simple": (
        "Use SIMPLE language: short sentences of about 10 words or fewer and "
        "everyday words of one or two syllables."
    ),
    "standard": "Use clear, grade-appropriate language: sentences of about 15 words or fewer.",
    "advanced": "You may use longer sentences and subject-specific vocabulary.",
}

CRITICAL_THINKING_GUIDANCE = {
    "light": "Once in a while, ask a gentle 'why' or 'what if' question",
    "moderate": (
        "Regularly ask the student to justify their reasoning, compare ideas, "
        "or predict what would happen"
    ),
}

SCAFFOLD_SYSTEM_PROMPT = (
    "You help students who are explaining a school topic to a classmate. "
    "You give scaffolding only: sentence starters, vocabulary and hints. "
    "You never give complete answers. Reply with JSON only."
)

SUMMARY_SYSTEM_PROMPT = (
    "You condense teaching materials for an AI learner that will be quizzed by "
    "students. Keep facts, definitions, examples and key vocabulary. Drop "
    "formatting, repetition and administrative text. Reply with plain text only."
)


def _bullets(values: Iterable[str]) -> str:
    return "\n".join(f"- {value}" for value in values)


@lru_cache(maxsize=256)
def _persona_core(
    variant: str,
    topic: str,
    subject: str,
    grade_level: str,
    vocabulary: Tuple[str, ...],
    enforce_topic_focus: bool,
) -> str:
    persona = get_prompt(variant)
    fields = {"persona": persona.persona, "topic": topic, "subject": subject, "grade_level": grade_level}
    sections = [persona.system_template.format(**fields)]
    if enforce_topic_focus:
        sections.append(
            persona.topic_boundaries.format(redirect_line=persona.redirect_for(topic), **fields)
        )
    if vocabulary:
        sections.append(f"Key vocabulary to listen for: {', '.join(vocabulary)}")
    return "\n\n".join(sections)


def _lesson_context(settings: TopicConfig) -> Optional[str]:
    parts: List[str] = []
    if settings.concepts_covered:
        parts.append("Concepts the class has covered:\n" + _bullets(settings.concepts_covered))
    if settings.expected_explanations:
        parts.append(
            "A strong explanation from the student would include:\n"
            + _bullets(settings.expected_explanations)
        )
    guidance = CRITICAL_THINKING_GUIDANCE.get(settings.critical_thinking_depth)
    if guidance:
        if settings.critical_thinking_topics:
            guidance += f", especially about: {', '.join(settings.critical_thinking_topics)}"
        parts.append(guidance + ".")
    if not parts:
        return None
    return "LESSON CONTEXT (for your questions only, never explain it yourself):\n" + "\n\n".join(parts)


def _language_note(settings: TopicConfig, turn: Optional[TurnOptions]) -> Optional[str]:
    language = turn.language if turn else settings.native_language
    if (language or "en").lower().startswith("en") and settings.language_proficiency != "beginner":
        return None
    return (
        "Note: The student may mix English with their native language or make grammar "
        "errors. Focus on understanding their meaning, not correcting their language. "
        "Respond in clear, simple English."
    )


# --------- System-Prompt Builder ---------
def build_system_prompt(
    settings: TopicConfig,
    *,
    persona: Optional[PersonaPrompt] = None,
    document_context: Optional[str] = None,
    turn: Optional[TurnOptions] = None,
    wrap_up: bool = False,
    include_signals: bool = True,
) -> str:
    """Compose the learner persona prompt for one model call.

    The persona core is cached per topic; turn-specific directives (help,
    language, wrap-up) and the document context are appended fresh.
    """

    persona = persona or ACTIVE_PERSONA
    sections = [
        _persona_core(
            persona.normalized_variant,
            settings.topic,
            settings.subject,
            settings.grade_level,
            tuple(settings.key_vocabulary),
            settings.enforce_topic_focus,
        ),
        "RESPONSE STYLE:\n"
        f"- {LENGTH_GUIDANCE[settings.response_length]}\n"
        f"- {COMPLEXITY_GUIDANCE[settings.language_complexity]}\n"
        f"- The student can send up to {settings.max_student_responses} explanations in this conversation.",
    ]

    lesson = _lesson_context(settings)
    if lesson:
        sections.append(lesson)

    context = document_context if document_context is not None else settings.document_context
    if context:
        sections.append(
            "REFERENCE MATERIAL FROM THE TEACHER (use it to judge whether the student is "
            "accurate; never quote it or explain it yourself):\n" + context
        )

    note = _language_note(settings, turn)
    if note:
        sections.append(note)
    if turn and turn.help_needed:
        sections.append(
            "The student asked for help. Provide a gentle hint or sentence starter, "
            "but don't give away the answer."
        )
    if turn and turn.vocabulary_used:
        sections.append(f"The student says they used these words: {', '.join(turn.vocabulary_used)}")
    if wrap_up:
        sections.append(persona.wrap_up_instruction.format(topic=settings.topic))
    if include_signals:
        sections.append(persona.signal_instructions)

    return "\n\n".join(sections)


def opening_messages(settings: TopicConfig, persona: Optional[PersonaPrompt] = None) -> List[Dict[str, str]]:
    persona = persona or ACTIVE_PERSONA
    return [{"role": "user", "content": persona.opening_instruction.format(topic=settings.topic)}]


def history_messages(history: Sequence[ConversationMessage]) -> List[Dict[str, str]]:
    """Map stored turns onto chat roles: the AI learner is the assistant.

    Turns from a collaborative conversation carry the speaker's name.
    """
    return [
        {
            "role": "assistant" if message.role == "ai" else "user",
            "content": f"{message.contributor_name}: {message.content}" if message.contributor_name else message.content,
        }
        for message in history
    ]


def build_scaffold_prompt(settings: TopicConfig, struggle_area: str, recent_turns: Sequence[ConversationMessage] = ()) -> str:
    vocabulary = ", ".join(settings.key_vocabulary) or "(none listed)"
    recent = "\n".join(f"{m.role}: {m.content}" for m in recent_turns)
    prompt = f"""A {settings.grade_level} student is trying to explain {settings.topic} in {settings.subject} class but is struggling with: {struggle_area}

Key vocabulary they should use: {vocabulary}

IMPORTANT CONSTRAINTS:
- ONLY provide help related to {settings.topic} in {settings.subject}
- If the struggle area is off-topic or inappropriate, respond with sentence starters that redirect to the lesson topic
- Give a hint about {struggle_area} without giving away the answer
- Keep all content age-appropriate for {settings.grade_level}

Provide helpful scaffolding:
1. 3 sentence starters (in order of increasing detail)
2. Up to 5 relevant vocabulary words with simple definitions
3. 1 hint (without giving away the full answer)

Return as JSON:
{{
  "sentenceStarters": [string, string, string],
  "vocabulary": [{{"word": string, "definition": string}}],
  "hint": string
}}"""
    if recent:
        prompt += f"\n\nThe conversation so far ends with:\n{recent}"
    return prompt


def build_summary_prompt(
    text: str,
    filename: str,
    file_type: str,
    *,
    original_length: int,
    target_chars: int,
) -> str:
    return f"""You are summarizing an educational document for use as context in a student tutoring session.

Document: "{filename}" ({file_type.upper()})
Content length: {original_length} characters

Your summary should:
- Preserve all key concepts, definitions, and vocabulary terms
- Maintain important facts, dates, formulas, or procedures
- Keep the main topics and subtopics
- Be approximately {target_chars} characters

Provide a structured summary that a tutoring AI can use to verify student understanding.

Document content:
{text}"""


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    logger.info(message)
