"""OpenAI-style chat-completions client used by every engine."""

import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import requests

import db
from engines.validation import GenerationFailed
from env_validation import get_env_bool

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("classflow.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False


def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


MODEL_ID = os.getenv("MODEL_ID", "claude-3-haiku")
LLM_URL = os.getenv("LLM_URL", "http://localhost:4891/v1/chat/completions")
SEND_MAX_TOKENS = get_env_bool("SEND_MAX_TOKENS", True)


def _strip_think(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()


def _base_params() -> Dict[str, float]:
    """Only OpenAI-style fields every compatible server understands."""
    return {
        "temperature": _safe_float("LLM_TEMPERATURE", 0.7),
        "top_p": _safe_float("LLM_TOP_P", 0.95),
    }


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class LanguageModelClient:
    """Blocking chat-completions client.

    ``complete`` sends one request (plus one minimal-payload resend when the
    server rejects optional fields with HTTP 400) and returns the reply text.
    Every failure surfaces as ``GenerationFailed``; callers decide whether to
    try again.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        model_id: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        prompt_variant: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url or LLM_URL
        self.model_id = model_id or MODEL_ID
        self.api_key = api_key if api_key is not None else os.getenv("LLM_API_KEY")
        self.timeout = timeout or _safe_int("LLM_TIMEOUT", 120)
        self.prompt_variant = prompt_variant
        self._http = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        return self._http.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)

    def complete(
        self,
        system: str,
        messages: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
        *,
        path: Optional[Sequence[str]] = None,
    ) -> str:
        chat: List[Dict[str, str]] = [{"role": "system", "content": system}, *messages]
        payload: Dict[str, Any] = {"model": self.model_id, "messages": chat, **_base_params()}
        if max_tokens is not None and SEND_MAX_TOKENS:
            payload["max_tokens"] = int(max_tokens)

        normalized_path = [str(step) for step in (path or ())]
        request_id = str(uuid4())
        start = time.perf_counter()
        tokens_in: Optional[int] = None
        tokens_out: Optional[int] = None
        succeeded = False
        try:
            try:
                r = self._post(payload)
                if r.status_code == 400:
                    # Fallback: send minimal payload
                    minimal: Dict[str, Any] = {"model": self.model_id, "messages": chat}
                    if max_tokens is not None and SEND_MAX_TOKENS:
                        minimal["max_tokens"] = int(max_tokens)
                    r = self._post(minimal)
                r.raise_for_status()
                data = r.json()
            except requests.HTTPError as exc:
                response = exc.response
                status = response.status_code if response is not None else "?"
                body = response.text[:300] if response is not None else ""
                raise GenerationFailed(f"LLM-HTTP {status}: {body}") from exc
            except (requests.RequestException, ValueError) as exc:
                raise GenerationFailed(f"LLM error: {exc}") from exc

            usage = data.get("usage") if isinstance(data, dict) else None
            if isinstance(usage, dict):
                tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
                tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

            try:
                content = data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError):
                try:
                    content = data["choices"][0]["text"]
                except (KeyError, IndexError, TypeError) as exc:
                    raise GenerationFailed(f"Unexpected LLM response: {str(data)[:300]}") from exc
            if not isinstance(content, str):
                raise GenerationFailed("LLM returned non-text content")
            succeeded = True
            return _strip_think(content)
        finally:
            latency_ms = int((time.perf_counter() - start) * 1000)
            try:
                db.record_llm_metric(
                    self.model_id,
                    latency_ms,
                    prompt_variant=self.prompt_variant,
                    path_taken=" > ".join(normalized_path) if normalized_path else None,
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                    succeeded=succeeded,
                )
            except Exception:
                logger.warning("Could not record LLM metric", exc_info=True)
            log_record = {
                "event": "llm_call",
                "request_id": request_id,
                "prompt_variant": self.prompt_variant,
                "model": self.model_id,
                "latency_ms": latency_ms,
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
                "succeeded": succeeded,
                "path_decisions": normalized_path,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))
