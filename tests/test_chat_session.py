"""Tests for ChatSession: turn lifecycle, cancellation, role switching."""

import threading
import time
from unittest.mock import MagicMock

from app.models import ChatMessage, Role
from app.services.chat_session import CANCELLED, ChatSession, SessionStatus
from app.services.coach_profiles import CAMPUS_BUDDY, DAILY_COACH, TOEFL_EXAMINER, CoachProfile
from app.services.completion_client import CompletionError, RATE_LIMIT_MESSAGE

from conftest import FakeClient, FakeStream, sse


def history_of(session):
    return [(m.role, m.content) for m in session.history]


def test_send_streams_and_commits_reply(hello_stream):
    client = FakeClient(streams=[hello_stream])
    session = ChatSession(client, profile=DAILY_COACH)
    events = []
    session.subscribe(events.append)

    result = session.send("Hi coach")
    assert result.completed
    assert result.text == "Hello"

    assert history_of(session) == [
        ("system", DAILY_COACH.system_prompt),
        ("user", "Hi coach"),
        ("assistant", "Hello"),
    ]
    assert session.status == SessionStatus.IDLE
    assert session.pending is None
    assert hello_stream.closed
    assert [(e.kind, e.text) for e in events] == [
        ("started", "Hi coach"),
        ("fragment", "Hel"),
        ("fragment", "lo"),
        ("completed", "Hello"),
    ]


def test_request_carries_full_history():
    client = FakeClient(streams=[FakeStream([sse("One")]), FakeStream([sse("Two")])])
    session = ChatSession(client, profile=DAILY_COACH)

    session.send("first")
    session.send("second")

    assert client.calls[1] == [
        ("system", DAILY_COACH.system_prompt),
        ("user", "first"),
        ("assistant", "One"),
        ("user", "second"),
    ]


def test_pending_grows_with_each_fragment():
    client = FakeClient(streams=[FakeStream([sse("a"), sse("b"), sse("c")])])
    session = ChatSession(client)
    seen = []
    session.subscribe(lambda e: seen.append(session.pending) if e.kind == "fragment" else None)

    session.send("go")

    assert seen == ["a", "ab", "abc"]


def test_blank_message_is_a_no_op():
    client = FakeClient()
    session = ChatSession(client)

    assert session.send("") is None
    assert session.send("   \n\t") is None
    assert session.send_in_background("  ") is None

    assert session.history == []
    assert session.transcript == []
    assert session.status == SessionStatus.IDLE
    assert client.calls == []


def test_system_prompt_follows_current_profile_without_duplicates():
    client = FakeClient(streams=[FakeStream([sse("x")]), FakeStream([sse("y")])])
    session = ChatSession(client, profile=DAILY_COACH)
    session.send("one")

    # Swap the profile directly (no history wipe): the system message is replaced in place.
    session.profile = TOEFL_EXAMINER
    session.send("two")

    roles = [m.role for m in session.history]
    assert roles.count("system") == 1
    assert session.history[0].content == TOEFL_EXAMINER.system_prompt
    assert client.calls[1][0] == ("system", TOEFL_EXAMINER.system_prompt)


def test_change_role_wipes_history_and_next_send_uses_new_prompt():
    p1 = CoachProfile("p1", "P1", "P1")
    p2 = CoachProfile("p2", "P2", "P2")
    client = FakeClient(streams=[FakeStream([sse("ok")])])
    session = ChatSession(client, profile=p1)
    session.history.append(ChatMessage(role=Role.SYSTEM, content="P1"))

    session.change_role(p2)
    assert session.history == []
    assert session.status == SessionStatus.IDLE

    session.send("hi")
    assert history_of(session)[:2] == [("system", "P2"), ("user", "hi")]


def test_transport_error_surfaces_synthetic_message_without_committing():
    client = FakeClient(error=CompletionError("HTTP 500: boom", status_code=500))
    session = ChatSession(client, profile=DAILY_COACH)
    statuses = []
    session.subscribe(lambda e: statuses.append((e.kind, session.status)))

    result = session.send("hello")
    assert result.errored
    assert result.text == "Error: HTTP 500: boom"

    assert history_of(session) == [("system", DAILY_COACH.system_prompt), ("user", "hello")]
    assert session.transcript[-1].role == "assistant"
    assert session.transcript[-1].content == "Error: HTTP 500: boom"
    assert session.last_error == "Error: HTTP 500: boom"
    assert ("errored", SessionStatus.ERRORED) in statuses
    assert session.status == SessionStatus.IDLE
    assert session.pending is None


def test_rate_limit_error_gets_friendly_message():
    client = FakeClient(error=CompletionError("HTTP 429: slow down", status_code=429))
    session = ChatSession(client)

    session.send("hello")

    assert session.transcript[-1].content == RATE_LIMIT_MESSAGE


def test_error_while_reading_stream_discards_partial_text():
    class BrokenStream(FakeStream):
        def __iter__(self):
            yield sse("partial").encode("utf-8")
            raise CompletionError("connection reset")

    stream = BrokenStream([])
    session = ChatSession(FakeClient(streams=[stream]))

    session.send("hello")

    assert [m.role for m in session.history] == ["system", "user"]
    assert session.transcript[-1].content == "Error: connection reset"
    assert stream.closed


def test_can_send_again_after_error():
    client = FakeClient(error=CompletionError("down"))
    session = ChatSession(client)
    session.send("first")

    client.error = None
    client.streams.append(FakeStream([sse("back")]))
    assert session.send("second").completed
    assert session.history[-1].content == "back"


def test_cancel_from_listener_discards_pending():
    stream = FakeStream([sse("Hel"), sse("lo"), sse(" there")])
    session = ChatSession(FakeClient(streams=[stream]), profile=DAILY_COACH)
    events = []

    def on_event(event):
        events.append(event.kind)
        if event.kind == "fragment":
            session.cancel()

    session.subscribe(on_event)
    result = session.send("hi")

    assert result.cancelled
    assert result.text == ""
    assert history_of(session) == [("system", DAILY_COACH.system_prompt), ("user", "hi")]
    assert session.pending is None
    assert session.status == SessionStatus.IDLE
    assert stream.closed
    assert events == ["started", "fragment", "cancelled"]


def test_cancel_in_background_blocks_later_fragments(gate):
    stream = FakeStream([sse("first"), sse("second"), "data: [DONE]\n"], gate=gate)
    session = ChatSession(FakeClient(streams=[stream]))
    got_first = threading.Event()
    fragments = []

    def on_event(event):
        if event.kind == "fragment":
            fragments.append(event.text)
            got_first.set()

    session.subscribe(on_event)
    worker = session.send_in_background("hi")
    assert worker is not None
    assert got_first.wait(timeout=5)
    assert session.status == SessionStatus.IN_FLIGHT

    assert session.cancel() is True
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert fragments == ["first"]
    assert [m.role for m in session.history] == ["system", "user"]
    assert session.status == SessionStatus.IDLE
    assert stream.closed


def test_cancel_when_idle_is_a_no_op():
    session = ChatSession(FakeClient())
    events = []
    session.subscribe(events.append)

    assert session.cancel() is False
    assert session.cancel() is False
    assert events == []


def test_second_send_while_in_flight_is_rejected(gate):
    stream = FakeStream([sse("a"), sse("b")], gate=gate)
    client = FakeClient(streams=[stream])
    session = ChatSession(client)
    got_first = threading.Event()
    session.subscribe(lambda e: got_first.set() if e.kind == "fragment" else None)

    worker = session.send_in_background("one")
    assert got_first.wait(timeout=5)

    assert session.send("two") is None
    assert session.send_in_background("three") is None

    gate.set()
    worker.join(timeout=5)
    assert history_of(session)[1:] == [("user", "one"), ("assistant", "ab")]
    assert len(client.calls) == 1


def test_change_role_during_reply_cancels_it(gate):
    stream = FakeStream([sse("a"), sse("b")], gate=gate)
    session = ChatSession(FakeClient(streams=[stream]), profile=DAILY_COACH)
    got_first = threading.Event()
    session.subscribe(lambda e: got_first.set() if e.kind == "fragment" else None)

    worker = session.send_in_background("one")
    assert got_first.wait(timeout=5)
    session.change_role(CAMPUS_BUDDY)
    worker.join(timeout=5)

    assert session.history == []
    assert session.transcript == []
    assert session.status == SessionStatus.IDLE
    assert session.profile is CAMPUS_BUDDY
    assert stream.closed


def run_send_in_thread(session, text):
    """Call the blocking send() from another thread; returns (thread, results list)."""
    results = []
    thread = threading.Thread(target=lambda: results.append(session.send(text)), daemon=True)
    thread.start()
    return thread, results


def test_blocking_send_reports_cancelled_when_another_thread_cancels(gate):
    stream = FakeStream([sse("a"), sse("b")], gate=gate)
    session = ChatSession(FakeClient(streams=[stream]))
    got_first = threading.Event()
    session.subscribe(lambda e: got_first.set() if e.kind == "fragment" else None)

    thread, results = run_send_in_thread(session, "hi")
    assert got_first.wait(timeout=5)
    session.cancel()
    thread.join(timeout=5)

    assert results == [CANCELLED]
    assert [m.role for m in session.transcript] == ["user"]


def test_blocking_send_survives_role_change_and_clear(gate):
    for wipe in ("change_role", "clear_history"):
        gate.clear()
        stream = FakeStream([sse("a"), sse("b")], gate=gate)
        session = ChatSession(FakeClient(streams=[stream]), profile=DAILY_COACH)
        got_first = threading.Event()
        session.subscribe(lambda e: got_first.set() if e.kind == "fragment" else None)

        thread, results = run_send_in_thread(session, "hi")
        assert got_first.wait(timeout=5)
        if wipe == "change_role":
            session.change_role(TOEFL_EXAMINER)
        else:
            session.clear_history()
        thread.join(timeout=5)

        assert results == [CANCELLED], wipe
        assert session.transcript == []
        assert session.history == []


def test_clear_history_during_reply_closes_stream_and_goes_idle(gate):
    stream = FakeStream([sse("a"), sse("b")], gate=gate)
    session = ChatSession(FakeClient(streams=[stream]))
    got_first = threading.Event()
    events = []

    def on_event(event):
        events.append(event.kind)
        if event.kind == "fragment":
            got_first.set()

    session.subscribe(on_event)
    worker = session.send_in_background("hi")
    assert got_first.wait(timeout=5)

    session.clear_history()

    # Stream is closed before clear_history returns, not later by the worker.
    assert stream.closed
    assert session._stream is None
    assert session.status == SessionStatus.IDLE
    worker.join(timeout=5)
    assert events == ["started", "fragment", "cancelled", "cleared"]
    assert session.history == []


def test_clear_history_while_worker_is_connecting_closes_its_stream():
    opened = threading.Event()
    release = threading.Event()
    stream = FakeStream([sse("late")])

    class SlowClient(FakeClient):
        def open_stream(self, messages):
            opened.set()
            release.wait(timeout=5)
            return super().open_stream(messages)

    session = ChatSession(SlowClient(streams=[stream]))
    worker = session.send_in_background("hi")
    assert opened.wait(timeout=5)

    session.clear_history()
    release.set()
    worker.join(timeout=5)

    assert stream.closed
    assert session._stream is None
    assert session.history == []
    assert session.status == SessionStatus.IDLE


def test_fragment_event_is_delivered_before_cancelled(gate):
    stream = FakeStream([sse("a"), sse("b")], gate=gate)
    session = ChatSession(FakeClient(streams=[stream]))
    listener_running = threading.Event()
    events = []

    def slow_listener(event):
        if event.kind == "fragment":
            listener_running.set()
            # Hold the fragment delivery open while the main thread cancels.
            time.sleep(0.1)
        events.append(event.kind)

    session.subscribe(slow_listener)
    worker = session.send_in_background("hi")
    assert listener_running.wait(timeout=5)
    session.cancel()
    worker.join(timeout=5)

    assert events == ["started", "fragment", "cancelled"]


def test_clear_history_keeps_profile(hello_stream):
    session = ChatSession(FakeClient(streams=[hello_stream]), profile=TOEFL_EXAMINER)
    session.send("hi")

    session.clear_history()

    assert session.history == []
    assert session.transcript == []
    assert session.profile is TOEFL_EXAMINER


def test_non_streaming_mode_delivers_whole_reply():
    client = FakeClient(replies=["Sure, let's practise."])
    session = ChatSession(client, streaming=False)
    fragments = []
    session.subscribe(lambda e: fragments.append(e.text) if e.kind == "fragment" else None)

    session.send("Can we practise?")

    assert fragments == ["Sure, let's practise."]
    assert session.history[-1].content == "Sure, let's practise."


def test_completed_reply_is_spoken_without_correction():
    speech = MagicMock()
    stream = FakeStream([sse("Good answer! "), sse("Correction: say 'went', not 'goed'.")])
    session = ChatSession(FakeClient(streams=[stream]), profile=TOEFL_EXAMINER, speech=speech)

    session.send("I goed to school")

    speech.speak.assert_called_once_with("Good answer!")


def test_cancel_stops_speech(gate):
    speech = MagicMock()
    stream = FakeStream([sse("a"), sse("b")], gate=gate)
    session = ChatSession(FakeClient(streams=[stream]), speech=speech)
    got_first = threading.Event()
    session.subscribe(lambda e: got_first.set() if e.kind == "fragment" else None)

    worker = session.send_in_background("hi")
    assert got_first.wait(timeout=5)
    session.cancel()
    worker.join(timeout=5)

    speech.stop.assert_called_once()
    speech.speak.assert_not_called()


def test_failing_listener_does_not_break_the_turn(hello_stream):
    session = ChatSession(FakeClient(streams=[hello_stream]))

    def bad_listener(event):
        raise RuntimeError("ui went away")

    session.subscribe(bad_listener)
    session.send("hi")

    assert session.history[-1].content == "Hello"


def test_unsubscribe_stops_notifications(hello_stream):
    session = ChatSession(FakeClient(streams=[hello_stream]))
    events = []
    unsubscribe = session.subscribe(events.append)
    unsubscribe()

    session.send("hi")

    assert events == []
