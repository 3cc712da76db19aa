"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all Fluent Coach settings: which LLM provider to talk to,
  its API key, the model name, sampling temperature and request limits.
  Designed for single-user use: each person runs their own copy of this
  backend with their own .env file.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Defines the table of supported OpenAI-compatible providers (base URL,
    default model, and the environment variable that holds the key).
  - Resolves the active provider, model and key from the environment.
  - Exposes request settings: temperature, streaming on/off, timeout,
    maximum message length and the default coach role.

USAGE:
  Import what you need: `from config import COACH_BASE_URL, COACH_API_KEY, COACH_MODEL`
  All services import from here so behaviour is consistent.
"""

import os
import logging
from dotenv import load_dotenv


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
# Used when we need to warn about a bad setting (e.g. unknown provider name).
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
# This keeps API keys and secrets out of the code and version control.
load_dotenv()


# ============================================================================
# PROVIDERS
# ============================================================================
# Every provider speaks the OpenAI chat-completions dialect, so one client
# works for all of them; only the base URL, model and key differ.
# "/chat/completions" is appended to base_url by the completion client.

PROVIDERS = {
    "siliconflow": {
        "label": "SiliconFlow (Qwen)",
        "base_url": "https://api.siliconflow.com/v1",
        "model": "Qwen/Qwen2.5-7B-Instruct",
        "key_env": "SILICONFLOW_API_KEY",
    },
    "siliconflow-deepseek": {
        "label": "SiliconFlow (DeepSeek)",
        "base_url": "https://api.siliconflow.com/v1",
        "model": "deepseek-ai/DeepSeek-V3",
        "key_env": "SILICONFLOW_API_KEY",
    },
    "groq": {
        "label": "Groq",
        "base_url": "https://api.groq.com/openai/v1",
        "model": "llama-3.3-70b-versatile",
        "key_env": "GROQ_API_KEY",
    },
    "gemini": {
        "label": "Gemini",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-1.5-flash",
        "key_env": "GEMINI_API_KEY",
    },
}

DEFAULT_PROVIDER = "siliconflow"


def _env_flag(name: str, default: bool) -> bool:
    """Read a yes/no environment variable ("1", "true", "yes", "on" count as yes)."""
    value = os.getenv(name, "").strip().lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


def _resolve_provider(name: str) -> str:
    """Return a known provider id; fall back to the default if the name is unknown."""
    name = (name or "").strip().lower()
    if name in PROVIDERS:
        return name
    if name:
        logger.warning("Unknown COACH_PROVIDER %r, falling back to %s", name, DEFAULT_PROVIDER)
    return DEFAULT_PROVIDER


def load_api_key(provider: str, allow_override: bool = True) -> str:
    """
    Load the API key for a provider from its environment variable.
    COACH_API_KEY, when set, overrides the provider-specific variable (unless
    allow_override is False, as when switching providers at runtime).
    Returns "" if nothing is configured; the provider will answer 401 and the
    user sees a hint to set the key.
    """
    override = os.getenv("COACH_API_KEY", "").strip() if allow_override else ""
    if override:
        return override
    return os.getenv(PROVIDERS[provider]["key_env"], "").strip()


# ============================================================================
# ACTIVE PROVIDER
# ============================================================================

COACH_PROVIDER = _resolve_provider(os.getenv("COACH_PROVIDER", DEFAULT_PROVIDER))
COACH_BASE_URL = os.getenv("COACH_BASE_URL", "").strip() or PROVIDERS[COACH_PROVIDER]["base_url"]
COACH_MODEL = os.getenv("COACH_MODEL", "").strip() or PROVIDERS[COACH_PROVIDER]["model"]
COACH_API_KEY = load_api_key(COACH_PROVIDER)

# ============================================================================
# REQUEST SETTINGS
# ============================================================================
# COACH_TEMPERATURE: sampling temperature sent with every request.
# COACH_STREAMING: stream replies token by token (True) or wait for the full body.
# REQUEST_TIMEOUT: seconds to wait for the provider to connect / send the next bytes.

COACH_TEMPERATURE = float(os.getenv("COACH_TEMPERATURE", "0.7"))
COACH_STREAMING = _env_flag("COACH_STREAMING", True)
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60"))

# Maximum length (characters) for a single user message. Prevents token limit errors
# and abuse. ~32K chars ≈ ~8K tokens; keeps total prompt well under model limits.
MAX_MESSAGE_LENGTH = 32_000

# Coach role a new session starts with (see app/services/coach_profiles.py).
COACH_DEFAULT_ROLE = os.getenv("COACH_DEFAULT_ROLE", "daily_coach").strip() or "daily_coach"

# ============================================================================
# SERVER
# ============================================================================
# COACH_HOST: 0.0.0.0 lets a phone on the same Wi-Fi reach the server.
# COACH_RELOAD: restart uvicorn when a .py file changes (development only).

COACH_HOST = os.getenv("COACH_HOST", "0.0.0.0").strip() or "0.0.0.0"
COACH_PORT = int(os.getenv("COACH_PORT", "8000"))
COACH_RELOAD = _env_flag("COACH_RELOAD", True)
