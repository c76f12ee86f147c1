from typing import Any, Optional

from config import DEFAULT_CONFIG, TutoringConfig


class BaseEngine:
    """Shared wiring: the record store, the language model and the policy config."""

    def __init__(self, store: Any = None, llm: Any = None, config: Optional[TutoringConfig] = None):
        if store is None:
            import db as store
        self.store = store
        self.llm = llm
        self.config = config or DEFAULT_CONFIG

    def _require_llm(self) -> Any:
        if self.llm is None:
            raise RuntimeError(f"{type(self).__name__} needs a language model client")
        return self.llm
