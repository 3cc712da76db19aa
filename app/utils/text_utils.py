"""
TEXT UTILITY
============

Small string helpers shared by the services:

  bearer_token(key)    - "Bearer <key>" header value (no double prefix).
  mask_api_key(key)    - "••••abcd" form that is safe to log or return from /health.
  speakable_text(text) - The part of a reply worth reading aloud (drops the
                         "Correction:" section the TOEFL examiner appends).
"""

BEARER_PREFIX = "Bearer "
CORRECTION_MARKER = "Correction:"


def bearer_token(api_key: str) -> str:
    """Return the Authorization header value for api_key, keeping an existing "Bearer " prefix."""
    api_key = (api_key or "").strip()
    if api_key.startswith(BEARER_PREFIX):
        return api_key
    return f"{BEARER_PREFIX}{api_key}"


def mask_api_key(api_key: str) -> str:
    """Show only the last 4 characters of a key; "Not Set" when empty."""
    if not api_key:
        return "Not Set"
    return "••••" + api_key[-4:]


def speakable_text(text: str) -> str:
    """Return the text before any "Correction:" section, trimmed."""
    return text.split(CORRECTION_MARKER, 1)[0].strip()
