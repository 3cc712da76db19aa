"""
CHAT SERVICE MODULE
===================

Keeps one ChatSession per session_id and offers the operations the HTTP API
needs: send a message (blocking or streamed), cancel, change role, clear and
read history.

SESSION IDS:
  Callers may choose their own session_id (e.g. a device id) or let the
  service generate a UUID. Ids are limited to letters, digits, "-" and "_"
  so they are safe to log and to put in URLs.

STREAMING:
  stream_message() starts the turn in a worker thread and returns a generator
  of Server-Sent-Event strings in the same OpenAI-compatible format the
  providers use (data: {"choices":[{"delta":{"content":...}}]} ... data: [DONE]),
  so any OpenAI-style client, including client.py, can read it.
  If the consumer stops reading early, the turn is cancelled.

PROVIDER:
  All sessions share one CompletionClient. set_provider() builds a new one
  (provider from config.PROVIDERS, key kept in memory per provider) and hands
  it to every session; the next turn of each session uses it.
"""

import logging
import queue
import re
import threading
import uuid
from typing import Callable, Dict, Iterator, List, Optional

from app.models import ChatMessage, ChatCompletionChunk
from app.services.chat_session import ChatSession, SessionStatus, SpeechSink, TurnResult
from app.services.coach_profiles import DEFAULT_PROFILE, get_profile
from app.services.completion_client import CompletionClient
from app.services.stream_decoder import DATA_PREFIX, DONE_SENTINEL
from app.utils.text_utils import mask_api_key
from config import PROVIDERS, load_api_key


logger = logging.getLogger("FluentCoach")

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
TERMINAL_EVENTS = ("completed", "cancelled", "errored")


class SessionBusyError(Exception):
    """A message was sent while the session is still producing the previous reply."""


def sse_event(payload: str) -> str:
    return f"{DATA_PREFIX}{payload}\n\n"


class ChatService:
    """
    Registry of chat sessions. All sessions share one completion client
    (one provider/model/key at a time, switchable with set_provider).
    """

    def __init__(
        self,
        client: CompletionClient,
        streaming: bool = True,
        speech_factory: Optional[Callable[[], SpeechSink]] = None,
        provider: Optional[str] = None,
        client_factory: Optional[Callable[..., CompletionClient]] = None,
    ):
        self.client = client
        self.streaming = streaming
        self.speech_factory = speech_factory
        self.sessions: Dict[str, ChatSession] = {}
        self.provider = provider
        # Keys entered at runtime, by provider. Never written to disk.
        self.api_keys: Dict[str, str] = {}
        if provider:
            self.api_keys[provider] = client.api_key
        self.client_factory = client_factory or CompletionClient.for_provider
        self._lock = threading.Lock()

    # ------------------------------------------------------------------------------
    # SESSIONS
    # ------------------------------------------------------------------------------

    def validate_session_id(self, session_id: str) -> None:
        """Raise ValueError if session_id is not a safe identifier."""
        if not SESSION_ID_PATTERN.match(session_id or ""):
            raise ValueError("Invalid session_id: use 1-64 letters, digits, '-' or '_'")

    def get_or_create_session(self, session_id: Optional[str] = None) -> str:
        """Return session_id (generating one if None), creating the session if it does not exist yet."""
        if not session_id:
            session_id = str(uuid.uuid4())
        self.validate_session_id(session_id)
        with self._lock:
            if session_id not in self.sessions:
                speech = self.speech_factory() if self.speech_factory else None
                self.sessions[session_id] = ChatSession(
                    self.client,
                    profile=DEFAULT_PROFILE,
                    session_id=session_id,
                    streaming=self.streaming,
                    speech=speech,
                )
                logger.info("Created session %s", session_id)
        return session_id

    def get_session(self, session_id: str) -> ChatSession:
        """Return an existing session. Raises KeyError if there is none."""
        try:
            return self.sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    def _prepare_send(self, session_id: str, message: str) -> ChatSession:
        if not message or not message.strip():
            raise ValueError("Message must not be blank")
        session = self.get_session(session_id)
        if session.status == SessionStatus.IN_FLIGHT:
            raise SessionBusyError(f"Session {session_id} is still replying; cancel it or wait")
        return session

    # ------------------------------------------------------------------------------
    # MESSAGES
    # ------------------------------------------------------------------------------

    def process_message(self, session_id: str, message: str) -> TurnResult:
        """
        Send message and wait until the turn ends. The result carries the
        reply, the error summary shown to the user, or says the turn was
        cancelled (by cancel, a role change or a clear from another request).
        """
        session = self._prepare_send(session_id, message)
        result = session.send(message)
        if result is None:
            raise SessionBusyError(f"Session {session_id} is still replying; cancel it or wait")
        return result

    def stream_message(self, session_id: str, message: str) -> Iterator[str]:
        """
        Start the turn now and return a generator of SSE strings for it.
        Validation errors (blank message, unknown or busy session) are raised
        here, before any streaming starts.
        """
        session = self._prepare_send(session_id, message)
        events: "queue.Queue" = queue.Queue()
        unsubscribe = session.subscribe(events.put)
        if session.send_in_background(message) is None:
            unsubscribe()
            raise SessionBusyError(f"Session {session_id} is still replying; cancel it or wait")
        return self._relay(session, events, unsubscribe)

    def _relay(self, session: ChatSession, events: "queue.Queue", unsubscribe: Callable[[], None]) -> Iterator[str]:
        finished = False
        try:
            while True:
                event = events.get()
                if event.kind == "fragment":
                    yield sse_event(ChatCompletionChunk.for_text(event.text).model_dump_json())
                elif event.kind == "errored":
                    # Same as the transcript: the error shows up as assistant text.
                    yield sse_event(ChatCompletionChunk.for_text(event.text).model_dump_json())
                if event.kind in TERMINAL_EVENTS:
                    break
            finished = True
            yield sse_event(DONE_SENTINEL)
        finally:
            unsubscribe()
            if not finished:
                logger.info("Session %s: stream consumer went away, cancelling", session.session_id)
                session.cancel()

    def cancel(self, session_id: str) -> bool:
        return self.get_session(session_id).cancel()

    def change_role(self, session_id: str, role_id: str) -> None:
        profile = get_profile(role_id)
        self.get_session(session_id).change_role(profile)

    def clear_history(self, session_id: str) -> None:
        self.get_session(session_id).clear_history()

    def get_chat_history(self, session_id: str) -> List[ChatMessage]:
        """Visible messages of a session (empty if the session does not exist)."""
        session = self.sessions.get(session_id)
        if session is None:
            return []
        return list(session.transcript)

    # ------------------------------------------------------------------------------
    # PROVIDER
    # ------------------------------------------------------------------------------

    def _api_key_for(self, provider: str) -> str:
        return self.api_keys.get(provider) or load_api_key(provider, allow_override=False)

    def get_provider_settings(self) -> dict:
        """Active provider, model and masked key, plus the providers to choose from."""
        settings = PROVIDERS.get(self.provider or "", {})
        return {
            "provider": self.provider,
            "label": settings.get("label", self.provider),
            "base_url": self.client.base_url,
            "model": self.client.model,
            "api_key": mask_api_key(self.client.api_key),
            "providers": [
                {"id": pid, "label": p["label"], "model": p["model"], "has_key": bool(self._api_key_for(pid))}
                for pid, p in PROVIDERS.items()
            ],
        }

    def set_provider(self, provider: str, api_key: Optional[str] = None, model: Optional[str] = None) -> dict:
        """
        Switch every session to another provider and return the new settings.
        api_key, when given, is remembered for that provider; otherwise the
        remembered key or the provider's environment variable is used. A reply
        that is already streaming finishes on the old connection.
        Raises ValueError for an unknown provider.
        """
        provider = (provider or "").strip().lower()
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}. Choose one of: {', '.join(PROVIDERS)}")
        with self._lock:
            if api_key and api_key.strip():
                self.api_keys[provider] = api_key.strip()
            client = self.client_factory(provider, self._api_key_for(provider), model=model or None)
            self.client = client
            self.provider = provider
            for session in self.sessions.values():
                session.client = client
        logger.info("Provider switched to %s (%s)", provider, client.model)
        return self.get_provider_settings()
