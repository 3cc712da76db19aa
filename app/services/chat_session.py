"""
CHAT SESSION MODULE
===================

One conversation with the coach: the message history sent to the LLM, the
reply currently being streamed, and the request lifecycle around it.

STATE:
  history    - Messages sent to the provider. At most one system message,
               always at index 0. Only real turns are stored here.
  transcript - What the user sees: the same user/assistant turns plus
               synthetic error messages for failed turns. No system message.
  pending    - Assistant text accumulated so far; only set while in flight.
  status     - idle -> in_flight -> idle            (reply completed)
                       in_flight -> cancelled -> idle (cancel / role change)
                       in_flight -> errored -> idle   (network or HTTP fault)

THREADS:
  A turn runs either in the caller's thread (send) or in a worker thread
  (send_in_background). cancel(), change_role() and clear_history() may be
  called from any thread. Applying a fragment and cancelling take the same
  lock, and every turn has a number, so once cancel() returns no fragment of
  the old turn can reach pending or history. change_role() and
  clear_history() cancel and wipe under a single hold of that lock.

LISTENERS:
  subscribe(callback) registers a function called with a SessionEvent after
  every change: started, fragment, completed, cancelled, errored, cleared.
  Callbacks run in the thread that caused the change. A state change and its
  event are delivered together under the event lock, so listeners see events
  in the same order the changes were applied (a fragment's event always
  precedes the cancelled event that ends its turn).
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from app.models import ChatMessage, Role
from app.services.coach_profiles import CoachProfile, DEFAULT_PROFILE
from app.services.completion_client import CompletionClient, CompletionStream, describe_error
from app.services.stream_decoder import decode_stream
from app.utils.text_utils import speakable_text


logger = logging.getLogger("FluentCoach")


class SessionStatus(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(frozen=True)
class SessionEvent:
    """
    Notification sent to listeners.
    kind is one of: started, fragment, completed, cancelled, errored, cleared.
    text is the new fragment, the completed reply, or the error summary.
    """
    kind: str
    text: str = ""


@dataclass(frozen=True)
class TurnResult:
    """
    How one turn ended, as seen by whoever sent it.
    outcome is "completed" (text = reply), "errored" (text = error summary)
    or "cancelled" (text = "").
    """
    outcome: str
    text: str = ""

    @property
    def completed(self) -> bool:
        return self.outcome == "completed"

    @property
    def errored(self) -> bool:
        return self.outcome == "errored"

    @property
    def cancelled(self) -> bool:
        return self.outcome == "cancelled"


CANCELLED = TurnResult("cancelled")

Listener = Callable[[SessionEvent], None]


class SpeechSink(Protocol):
    """Text-to-speech output. Anything with speak() and stop() will do."""

    def speak(self, text: str) -> None:
        ...

    def stop(self) -> None:
        ...


class ChatSession:
    """A single coach conversation driving one request at a time."""

    def __init__(
        self,
        client: CompletionClient,
        profile: CoachProfile = DEFAULT_PROFILE,
        session_id: Optional[str] = None,
        streaming: bool = True,
        speech: Optional[SpeechSink] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.client = client
        self.profile = profile
        self.streaming = streaming
        self.speech = speech

        self.history: List[ChatMessage] = []
        self.transcript: List[ChatMessage] = []
        self.pending: Optional[str] = None
        self.status = SessionStatus.IDLE
        self.last_error: Optional[str] = None

        # Lock order: _events before _lock, never the other way round.
        self._events = threading.RLock()
        self._lock = threading.RLock()
        self._turn = 0
        self._stream: Optional[CompletionStream] = None
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------------------
    # LISTENERS
    # ------------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, text: str = "") -> None:
        event = SessionEvent(kind, text)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("Session %s listener failed on %s: %s", self.session_id, kind, e, exc_info=True)

    # ------------------------------------------------------------------------------
    # SENDING
    # ------------------------------------------------------------------------------

    def send(self, text: str) -> Optional[TurnResult]:
        """
        Run one turn in the calling thread and return how it ended: the reply,
        the error summary, or cancelled. Returns None (and does nothing) for
        blank text or while another turn is in flight.
        """
        started = self._begin_turn(text)
        if started is None:
            return None
        return self._run_turn(*started)

    def send_in_background(self, text: str) -> Optional[threading.Thread]:
        """Like send() but runs the turn in a daemon thread, which is returned (None if rejected)."""
        started = self._begin_turn(text)
        if started is None:
            return None
        worker = threading.Thread(
            target=self._run_turn,
            args=started,
            name=f"chat-turn-{self.session_id[:8]}-{started[0]}",
            daemon=True,
        )
        worker.start()
        return worker

    def _refresh_system_prompt(self) -> None:
        """Make history[0] the current profile's system prompt (replace, or insert if missing)."""
        system = ChatMessage(role=Role.SYSTEM, content=self.profile.system_prompt)
        if self.history and self.history[0].role == Role.SYSTEM:
            self.history[0] = system
        else:
            self.history.insert(0, system)

    def _begin_turn(self, text: str) -> Optional[Tuple[int, List[ChatMessage]]]:
        if not text or not text.strip():
            logger.debug("Session %s: ignoring blank message", self.session_id)
            return None
        with self._events:
            with self._lock:
                if self.status == SessionStatus.IN_FLIGHT:
                    logger.warning("Session %s: message rejected, a reply is still in progress", self.session_id)
                    return None
                self._refresh_system_prompt()
                user_message = ChatMessage(role=Role.USER, content=text)
                self.history.append(user_message)
                self.transcript.append(user_message)
                self.status = SessionStatus.IN_FLIGHT
                self.pending = ""
                self.last_error = None
                self._turn += 1
                turn = self._turn
                messages = list(self.history)
            logger.info("Session %s: turn %s started (%s, %s messages)", self.session_id, turn, self.profile.id, len(messages))
            self._emit("started", text)
        return turn, messages

    def _is_current(self, turn: int) -> bool:
        return self._turn == turn and self.status == SessionStatus.IN_FLIGHT

    def _run_turn(self, turn: int, messages: List[ChatMessage]) -> TurnResult:
        """Talk to the provider for one turn. Never raises: faults end up in status/transcript."""
        try:
            if self.streaming:
                self._stream_reply(turn, messages)
            else:
                reply = self.client.complete(messages)
                self._apply_fragment(turn, reply)
        except Exception as e:
            result = self._fail(turn, e)
            if result is None:
                # Closing the stream on cancel can make the read fail; that is not an error.
                logger.debug("Session %s: turn %s ended after cancel: %s", self.session_id, turn, e)
                return CANCELLED
            return result
        return self._complete(turn) or CANCELLED

    def _stream_reply(self, turn: int, messages: List[ChatMessage]) -> None:
        stream = self.client.open_stream(messages)
        with self._lock:
            current = self._is_current(turn)
            if current:
                self._stream = stream
        if not current:
            # Cancelled while we were connecting.
            stream.close()
            return
        try:
            for fragment in decode_stream(stream):
                if not self._apply_fragment(turn, fragment):
                    break
        finally:
            stream.close()
            with self._lock:
                if self._stream is stream:
                    self._stream = None

    def _apply_fragment(self, turn: int, fragment: str) -> bool:
        """Append fragment to pending. Returns False once the turn is no longer current."""
        with self._events:
            with self._lock:
                if not self._is_current(turn):
                    return False
                if not fragment:
                    return True
                self.pending += fragment
            self._emit("fragment", fragment)
        return True

    def _complete(self, turn: int) -> Optional[TurnResult]:
        with self._events:
            with self._lock:
                if not self._is_current(turn):
                    return None
                reply = self.pending or ""
                assistant = ChatMessage(role=Role.ASSISTANT, content=reply)
                self.history.append(assistant)
                self.transcript.append(assistant)
                self.pending = None
                self.status = SessionStatus.IDLE
            logger.info("Session %s: turn %s completed (%s chars)", self.session_id, turn, len(reply))
            self._emit("completed", reply)
        self._speak(reply)
        return TurnResult("completed", reply)

    def _fail(self, turn: int, exc: Exception) -> Optional[TurnResult]:
        summary = describe_error(exc)
        with self._events:
            with self._lock:
                if not self._is_current(turn):
                    return None
                self.pending = None
                self.status = SessionStatus.ERRORED
                self.last_error = summary
                self.transcript.append(ChatMessage(role=Role.ASSISTANT, content=summary))
            logger.error("Session %s: turn %s failed: %s", self.session_id, turn, exc)
            self._emit("errored", summary)
            self._settle(turn, SessionStatus.ERRORED)
        return TurnResult("errored", summary)

    def _settle(self, turn: int, from_status: SessionStatus) -> None:
        """Return to idle unless something else already moved the session on."""
        with self._lock:
            if self._turn == turn and self.status == from_status:
                self.status = SessionStatus.IDLE

    # ------------------------------------------------------------------------------
    # SPEECH
    # ------------------------------------------------------------------------------

    def _speak(self, reply: str) -> None:
        if not self.speech:
            return
        text = speakable_text(reply)
        if not text:
            return
        try:
            self.speech.speak(text)
        except Exception as e:
            logger.warning("Session %s: speech output failed: %s", self.session_id, e)

    def _stop_speech(self) -> None:
        if not self.speech:
            return
        try:
            self.speech.stop()
        except Exception as e:
            logger.warning("Session %s: could not stop speech: %s", self.session_id, e)

    # ------------------------------------------------------------------------------
    # CANCEL / ROLE / CLEAR
    # ------------------------------------------------------------------------------

    def _mark_cancelled(self) -> Optional[Tuple[int, Optional[CompletionStream]]]:
        """Caller holds _lock. Flags the running turn cancelled and takes its stream."""
        if self.status != SessionStatus.IN_FLIGHT:
            return None
        self.status = SessionStatus.CANCELLED
        self.pending = None
        stream, self._stream = self._stream, None
        return self._turn, stream

    def _finish_cancel(self, turn: int, stream: Optional[CompletionStream]) -> None:
        if stream is not None:
            stream.close()
        self._stop_speech()
        logger.info("Session %s: turn %s cancelled", self.session_id, turn)
        self._emit("cancelled")

    def cancel(self) -> bool:
        """
        Stop the reply in progress: drop the partial text and close the stream.
        Does nothing (returns False) when no turn is in flight.
        """
        with self._events:
            with self._lock:
                cancelled = self._mark_cancelled()
            if cancelled is None:
                return False
            self._finish_cancel(*cancelled)
            self._settle(cancelled[0], SessionStatus.CANCELLED)
        return True

    def change_role(self, profile: CoachProfile) -> None:
        """Switch coach persona. Always starts a fresh, idle conversation."""
        with self._events:
            with self._lock:
                cancelled = self._mark_cancelled()
                self.profile = profile
                self._reset()
            if cancelled is not None:
                self._finish_cancel(*cancelled)
            logger.info("Session %s: role changed to %s", self.session_id, profile.id)
            self._emit("cleared")

    def clear_history(self) -> None:
        """Forget the conversation but keep the persona. A reply in progress is cancelled first."""
        with self._events:
            with self._lock:
                cancelled = self._mark_cancelled()
                self._reset()
            if cancelled is not None:
                self._finish_cancel(*cancelled)
            logger.info("Session %s: history cleared", self.session_id)
            self._emit("cleared")

    def _reset(self) -> None:
        # Bumping the turn number orphans the worker of the turn just cancelled.
        self._turn += 1
        self.history.clear()
        self.transcript.clear()
        self.pending = None
        self.last_error = None
        self.status = SessionStatus.IDLE
