"""Document summarization gate and the combined topic context builder."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from engines.base import BaseEngine
from engines.validation import GenerationFailed, SummarizationFailed
from schemas import TopicDocument, utcnow
from tutor import SUMMARY_SYSTEM_PROMPT, _json_log, build_summary_prompt

_LOGGER = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
# Room left for the header line and the trailing ellipsis when a section is cut.
_TRUNCATION_OVERHEAD = 50
_MIN_PARTIAL_SECTION = 500


@dataclass(frozen=True)
class PreparedDocument:
    is_summarized: bool
    summary: Optional[str]
    summary_generated_at: Optional[datetime] = None
    fallback_used: bool = False


class SummarizationGate(BaseEngine):
    """Decides whether extracted text is condensed before it reaches prompts."""

    def needs_summarization(self, text_length: int) -> bool:
        return text_length > self.config.summarization_threshold

    def summarize_document(self, text: str, filename: str, file_type: str) -> str:
        llm = self._require_llm()
        prompt = build_summary_prompt(
            text[: self.config.summary_input_chars],
            filename,
            file_type,
            original_length=len(text),
            target_chars=self.config.target_summary_chars,
        )
        try:
            summary = llm.complete(
                SUMMARY_SYSTEM_PROMPT,
                [{"role": "user", "content": prompt}],
                self.config.summary_max_tokens,
                path=["documents", "summarize"],
            )
        except GenerationFailed as exc:
            raise SummarizationFailed(f"Summarizing {filename} failed: {exc.detail}") from exc
        summary = (summary or "").strip()
        if not summary:
            raise SummarizationFailed(f"Summarizing {filename} returned no text")
        return summary

    def truncate(self, text: str) -> str:
        return text[: self.config.truncation_chars] + self.config.truncation_marker

    def prepare(self, text: str, filename: str, file_type: str) -> PreparedDocument:
        """Return what to store alongside ``text``; never raises."""
        if not self.needs_summarization(len(text)):
            return PreparedDocument(is_summarized=False, summary=None)
        try:
            summary = self.summarize_document(text, filename, file_type)
        except SummarizationFailed as exc:
            _LOGGER.warning("Falling back to truncation for %s: %s", filename, exc)
            _json_log(
                "document_summary_fallback",
                {"filename": filename, "text_length": len(text), "cutoff": self.config.truncation_chars},
            )
            return PreparedDocument(
                is_summarized=True,
                summary=self.truncate(text),
                summary_generated_at=utcnow(),
                fallback_used=True,
            )
        return PreparedDocument(is_summarized=True, summary=summary, summary_generated_at=utcnow())


def _document_content(document: TopicDocument) -> str:
    if document.is_summarized and document.summary:
        return document.summary
    return document.extracted_text or ""


def combine_document_contexts(documents: Sequence[TopicDocument], max_chars: int = 8_000) -> Optional[str]:
    """Merge ``documents`` into one prompt section of at most ``max_chars``, newest first.

    Output depends only on the input list, so regenerating from the same
    documents yields the same string.
    """
    if not documents:
        return None

    ordered = sorted(documents, key=lambda d: (d.original_filename, d.id))
    ordered.sort(key=lambda d: d.uploaded_at, reverse=True)

    sections: list[str] = []
    total = 0
    for document in ordered:
        content = _document_content(document)
        header = f"[Document: {document.original_filename}]"
        section = f"{header}\n{content}"
        separator = len(SECTION_SEPARATOR) if sections else 0
        if total + separator + len(section) > max_chars:
            remaining = max_chars - total - separator - len(header) - _TRUNCATION_OVERHEAD
            if remaining > _MIN_PARTIAL_SECTION:
                sections.append(f"{header}\n{content[:remaining]}...")
            break
        sections.append(section)
        total += separator + len(section)

    if not sections:
        return None
    return SECTION_SEPARATOR.join(sections)
