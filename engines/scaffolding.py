"""On-demand hints for a student who is stuck explaining the topic."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

import tutor
from engines.base import BaseEngine
from engines.validation import ConversationBlocked, NotFound, require_ids
from schemas import Scaffolding, parse_json_safe

_LOGGER = logging.getLogger(__name__)

DEFAULT_STRUGGLE_AREA = "explaining the concept"
_RECENT_TURNS = 4
_MAX_VOCABULARY = 5


def _scaffolding_from_text(text: str) -> Scaffolding:
    """Decode the JSON answer; anything undecodable becomes the hint itself."""
    try:
        scaffolding = parse_json_safe(text, Scaffolding)
    except (ValidationError, ValueError, TypeError):
        return Scaffolding(hint=text.strip())
    scaffolding.vocabulary = scaffolding.vocabulary[:_MAX_VOCABULARY]
    return scaffolding


class ScaffoldingProvider(BaseEngine):
    """Read-only side channel: hints never touch the graded transcript."""

    def get_scaffolding(self, conversation_id: str, struggle_area: Optional[str] = None) -> Scaffolding:
        require_ids(conversation_id=conversation_id)
        area = (struggle_area or "").strip() or DEFAULT_STRUGGLE_AREA
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation.is_blocked:
            raise ConversationBlocked(conversation.id, conversation.blocked_reason)

        prompt = tutor.build_scaffold_prompt(
            conversation.settings,
            area,
            conversation.history[-_RECENT_TURNS:],
        )
        raw = self._require_llm().complete(
            tutor.SCAFFOLD_SYSTEM_PROMPT,
            [{"role": "user", "content": prompt}],
            self.config.scaffold_max_tokens,
            path=["reverse_tutoring", "help"],
        )
        scaffolding = _scaffolding_from_text(raw)

        properties: Dict[str, Any] = {"conversationId": conversation.id, "struggleArea": area}
        self.store.log_analytics_event("reverse_tutoring_help_requested", conversation.session_id, properties)
        _LOGGER.info(json.dumps({"event": "reverse_tutoring_help_requested", **properties}, ensure_ascii=False))
        return scaffolding
