# config.py - centralised settings loaded from the environment (.env supported)

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(key: str, default: bool) -> bool:
    raw = (os.getenv(key) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Settings:
    """Read-only application settings."""

    # ---- LLM providers (tried in this order) ----
    GROQ_API_KEY: str = (os.getenv("GROQ_API_KEY") or "").strip()
    GROQ_MODEL: str = (os.getenv("GROQ_MODEL") or "llama-3.3-70b-versatile").strip()

    OPENAI_API_KEY: str = (os.getenv("OPENAI_API_KEY") or "").strip()
    OPENAI_BASE_URL: str = (os.getenv("OPENAI_BASE_URL") or "https://api.openai.com/v1/chat/completions").strip()
    OPENAI_MODEL: str = (os.getenv("OPENAI_MODEL") or "gpt-4o-mini").strip()

    OLLAMA_BASE_URL: str = (os.getenv("OLLAMA_BASE_URL") or "http://127.0.0.1:11434").strip()
    OLLAMA_MODEL: str = (os.getenv("OLLAMA_MODEL") or "").strip()

    LLM_TIMEOUT_S: float = float(os.getenv("REQTRACE_LLM_TIMEOUT_S", "120"))

    # ---- Pipeline behaviour ----
    MAX_CONCURRENT_EXTRACTIONS: int = int(os.getenv("REQTRACE_MAX_CONCURRENT_EXTRACTIONS", "3"))
    NOTIFICATION_TTL_S: float = float(os.getenv("REQTRACE_NOTIFICATION_TTL_S", "5.0"))
    RECENT_QUERY_LIMIT: int = int(os.getenv("REQTRACE_RECENT_QUERY_LIMIT", "10"))

    # Losing the last test case does not downgrade a "Needs Review" requirement
    # unless this is switched off.
    PRESERVE_NEEDS_REVIEW: bool = _env_bool("REQTRACE_PRESERVE_NEEDS_REVIEW", True)

    # ---- Persisted preferences ----
    PREFERENCES_FILE: str = os.getenv("REQTRACE_PREFERENCES_FILE", "reqtrace_prefs.json")
