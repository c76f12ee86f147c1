"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the variables the service reads at start-up.

    Raises EnvironmentError if validation fails.
    """
    # Nothing is strictly required: the database path has a default and the
    # model endpoint falls back to a local OpenAI-compatible server.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LLM_URL": "OpenAI-compatible chat completions endpoint",
        "LLM_API_KEY": "Bearer token for the chat completions endpoint",
        "MODEL_ID": "Model identifier sent with each completion request",
        "PROMPT_VARIANT": "Active persona prompt variant name",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"LLM_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for name in ("LLM_TEMPERATURE", "LLM_TOP_P"):
        value = os.getenv(name)
        if value:
            try:
                float(value)
            except ValueError:
                raise EnvironmentError(f"{name} must be a number, got {value!r}") from None

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
