"""Loading of the persona prompt variants the tutor plays."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent

_REQUIRED_KEYS = (
    "id",
    "variant",
    "prompt_version",
    "persona",
    "label",
    "description",
    "system_template",
    "topic_boundaries",
    "redirect_line",
    "opening_instruction",
    "wrap_up_instruction",
    "block_message",
    "signal_instructions",
)


@dataclass(frozen=True)
class PersonaPrompt:
    """One persona the AI learner can play.

    Templates use ``str.format`` placeholders: ``{persona}``, ``{topic}``,
    ``{subject}``, ``{grade_level}`` and, inside ``topic_boundaries``,
    ``{redirect_line}``. ``signal_instructions`` is used verbatim.
    """

    id: str
    variant: str
    prompt_version: str
    persona: str
    label: str
    description: str
    system_template: str
    topic_boundaries: str
    redirect_line: str
    opening_instruction: str
    wrap_up_instruction: str
    block_message: str
    signal_instructions: str

    @property
    def normalized_variant(self) -> str:
        return self.variant.lower()

    def redirect_for(self, topic: str) -> str:
        return self.redirect_line.format(topic=topic)

    def block_message_for(self, topic: str) -> str:
        return self.block_message.format(topic=topic)


def _load_prompt(path: Path) -> PersonaPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    missing = sorted(set(_REQUIRED_KEYS) - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    return PersonaPrompt(**{key: str(payload[key]) for key in _REQUIRED_KEYS})


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


@lru_cache(maxsize=1)
def load_prompts(directory: Path | None = None) -> Mapping[str, PersonaPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, PersonaPrompt] = {}
    for file_path in _iter_prompt_files(base_dir):
        prompt = _load_prompt(file_path)
        key = prompt.normalized_variant
        if key in prompts:
            raise ValueError(f"Duplicate persona prompt variant detected: {prompt.variant}")
        prompts[key] = prompt
    if not prompts:
        raise RuntimeError(f"No persona prompt definitions found in {base_dir}")
    return prompts


def get_prompt(variant: str | None) -> PersonaPrompt:
    prompts = load_prompts()
    if not variant:
        return next(iter(prompts.values()))
    key = str(variant).lower()
    if key not in prompts:
        raise KeyError(f"Unknown persona prompt variant '{variant}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


__all__ = ["PersonaPrompt", "load_prompts", "get_prompt"]
