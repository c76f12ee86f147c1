"""Policy constants for the reverse tutoring engines."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any

logger = logging.getLogger(__name__)

_ENV_PREFIX = "CLASSFLOW_"


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer value for %s: %r", env_name, raw)
        return default


@dataclass(frozen=True)
class TutoringConfig:
    """Every threshold and budget the engines consult.

    A single instance is built at start-up (``from_env``) and handed to each
    engine; tests construct their own with ``with_overrides``.
    """

    off_topic_block_threshold: int = 3
    blocked_reason: str = "off-topic discussion"
    baseline_understanding: int = 0
    summarization_threshold: int = 10_000
    target_summary_chars: int = 2_000
    summary_input_chars: int = 30_000
    truncation_chars: int = 2_000
    truncation_marker: str = "\n\n[Content truncated]"
    max_combined_context_chars: int = 8_000
    grace_period_seconds: int = 120
    opening_max_tokens: int = 200
    reply_max_tokens: int = 400
    scaffold_max_tokens: int = 500
    summary_max_tokens: int = 1_500
    default_max_student_responses: int = 10

    @classmethod
    def from_env(cls) -> "TutoringConfig":
        overrides: dict[str, Any] = {}
        for field in fields(cls):
            if field.type not in ("int", int):
                continue
            env_name = f"{_ENV_PREFIX}{field.name.upper()}"
            if os.getenv(env_name) is not None:
                overrides[field.name] = _safe_int(env_name, field.default)  # type: ignore[arg-type]
        config = cls(**overrides)
        config.validate()
        return config

    def with_overrides(self, **changes: Any) -> "TutoringConfig":
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        if self.off_topic_block_threshold < 1:
            raise ValueError("off_topic_block_threshold must be at least 1")
        if not 0 <= self.baseline_understanding <= 100:
            raise ValueError("baseline_understanding must be within [0, 100]")
        if self.truncation_chars < 1 or self.max_combined_context_chars < 1:
            raise ValueError("character budgets must be positive")
        if self.grace_period_seconds < 0:
            raise ValueError("grace_period_seconds cannot be negative")


DEFAULT_CONFIG = TutoringConfig()
