"""
COMPLETION CLIENT MODULE
========================

Thin wrapper around one HTTP POST to an OpenAI-compatible
{base_url}/chat/completions endpoint. Used by ChatSession for every turn.

TWO MODES:
  - complete(messages): stream=false. Waits for the whole JSON body and
    returns choices[0].message.content.
  - open_stream(messages): stream=true. Returns a CompletionStream: an
    iterable of raw byte chunks as they arrive, plus close() so a cancelled
    turn can drop the connection right away.

ERRORS:
  Connection problems, timeouts, HTTP status >= 400 and unreadable bodies are
  all raised as CompletionError (status_code set when the server answered).
  describe_error() turns any of them into a short message for the user.

There is no retry and no backoff: a failed turn is reported once and the user
decides whether to send again.
"""

import logging
from typing import Iterator, List, Optional

import requests
from pydantic import ValidationError

from app.models import ChatMessage, CompletionRequest, ChatCompletion
from app.utils.text_utils import bearer_token, mask_api_key
from config import (
    PROVIDERS,
    COACH_BASE_URL,
    COACH_API_KEY,
    COACH_MODEL,
    COACH_TEMPERATURE,
    REQUEST_TIMEOUT,
)


logger = logging.getLogger("FluentCoach")

COMPLETIONS_PATH = "/chat/completions"

# User-friendly message when the provider's rate limit (daily token quota) is exceeded.
RATE_LIMIT_MESSAGE = (
    "You've reached your API limit for this provider. "
    "Your credits will reset in a while, or you can switch provider. "
    "Please try again later."
)

INVALID_KEY_MESSAGE = "Error: the provider rejected the API key. Check the key for this provider in your .env file."


class CompletionError(Exception):
    """A chat-completion call failed (network, HTTP status, or unreadable body)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _is_rate_limit_error(exc: Exception) -> bool:
    """True if the exception is a provider rate limit (429 / tokens per day)."""
    if getattr(exc, "status_code", None) == 429:
        return True
    msg = str(exc).lower()
    return "429" in msg or "rate limit" in msg or "tokens per day" in msg


def describe_error(exc: Exception) -> str:
    """Human-readable one-line summary of a failed turn."""
    if _is_rate_limit_error(exc):
        return RATE_LIMIT_MESSAGE
    if getattr(exc, "status_code", None) == 401:
        return INVALID_KEY_MESSAGE
    return f"Error: {exc}"


def _wrap_request_error(exc: requests.RequestException) -> CompletionError:
    """Convert a requests exception into CompletionError, keeping the HTTP status if there is one."""
    response = getattr(exc, "response", None)
    status_code = response.status_code if response is not None else None
    if status_code is not None:
        detail = (response.text or "").strip()[:300]
        message = f"HTTP {status_code}: {detail}" if detail else f"HTTP {status_code}"
        return CompletionError(message, status_code=status_code)
    return CompletionError(str(exc) or exc.__class__.__name__)


# ==============================================================================
# STREAM HANDLE
# ==============================================================================

class CompletionStream:
    """
    Live byte stream of a streaming completion.

    Iterate it to receive raw chunks in arrival order. close() releases the
    connection; it is safe to call more than once and from another thread
    (that is how ChatSession.cancel() aborts a running turn).
    """

    def __init__(self, response: requests.Response):
        self._response = response
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        try:
            # chunk_size=None yields data as soon as it arrives instead of waiting for a full block.
            for chunk in self._response.iter_content(chunk_size=None):
                if self.closed:
                    return
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            if self.closed:
                return
            raise _wrap_request_error(e) from e

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._response.close()

    def __enter__(self) -> "CompletionStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ==============================================================================
# CLIENT
# ==============================================================================

class CompletionClient:
    """Issues chat-completion requests for one provider / model / key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        temperature: Optional[float] = None,
        timeout: float = 60.0,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.http = http or requests.Session()

    @classmethod
    def from_config(cls) -> "CompletionClient":
        """Build a client for the provider configured in .env (see config.py)."""
        logger.info(
            "Completion client: %s model=%s key=%s",
            COACH_BASE_URL,
            COACH_MODEL,
            mask_api_key(COACH_API_KEY),
        )
        return cls(
            base_url=COACH_BASE_URL,
            api_key=COACH_API_KEY,
            model=COACH_MODEL,
            temperature=COACH_TEMPERATURE,
            timeout=REQUEST_TIMEOUT,
        )

    @classmethod
    def for_provider(
        cls,
        provider: str,
        api_key: str,
        model: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ) -> "CompletionClient":
        """Build a client for one of the PROVIDERS entries. Raises ValueError for an unknown provider."""
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}. Choose one of: {', '.join(PROVIDERS)}")
        settings = PROVIDERS[provider]
        model = model or settings["model"]
        logger.info("Completion client: %s model=%s key=%s", settings["base_url"], model, mask_api_key(api_key))
        return cls(
            base_url=settings["base_url"],
            api_key=api_key,
            model=model,
            temperature=COACH_TEMPERATURE,
            timeout=REQUEST_TIMEOUT,
            http=http,
        )

    @property
    def url(self) -> str:
        return self.base_url + COMPLETIONS_PATH

    def _headers(self) -> dict:
        return {
            "Authorization": bearer_token(self.api_key),
            "Content-Type": "application/json",
        }

    def build_request(self, messages: List[ChatMessage], stream: bool) -> CompletionRequest:
        return CompletionRequest(
            model=self.model,
            messages=list(messages),
            temperature=self.temperature,
            stream=stream,
        )

    def _post(self, messages: List[ChatMessage], stream: bool) -> requests.Response:
        body = self.build_request(messages, stream).model_dump(mode="json", exclude_none=True)
        try:
            response = self.http.post(
                self.url,
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
                stream=stream,
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            # Read the error body before the connection is released.
            error = _wrap_request_error(e)
            if e.response is not None:
                e.response.close()
            raise error from e
        except requests.RequestException as e:
            raise _wrap_request_error(e) from e
        return response

    def complete(self, messages: List[ChatMessage]) -> str:
        """Send the conversation with stream=false and return the assistant's reply text."""
        response = self._post(messages, stream=False)
        try:
            completion = ChatCompletion.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise CompletionError(f"Unreadable response from provider: {e}") from e
        if not completion.choices:
            raise CompletionError("Provider returned no choices")
        return completion.choices[0].message.content or ""

    def open_stream(self, messages: List[ChatMessage]) -> CompletionStream:
        """Send the conversation with stream=true and return the live byte stream."""
        response = self._post(messages, stream=True)
        logger.debug("Stream opened: %s (%s messages)", self.url, len(messages))
        return CompletionStream(response)
