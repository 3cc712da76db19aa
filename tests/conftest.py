"""Pytest configuration for tests.

Sets up Python path and shared fakes for all tests.
"""

import sys
import threading
from pathlib import Path

import pytest

# Add project root to Python path so imports work correctly
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


def sse(content):
    """One provider SSE line carrying `content`."""
    import json
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}, ensure_ascii=False) + "\n"


class FakeStream:
    """Stands in for CompletionStream: yields the given chunks, records close()."""

    def __init__(self, chunks, gate=None):
        self.chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.gate = gate
        self.closed = False

    def __iter__(self):
        for i, chunk in enumerate(self.chunks):
            if self.closed:
                return
            # With a gate, hold everything after the first chunk until the test releases it.
            if i == 1 and self.gate is not None:
                self.gate.wait(timeout=5)
            yield chunk

    def close(self):
        self.closed = True
        if self.gate is not None:
            self.gate.set()


class FakeClient:
    """Stands in for CompletionClient. Each call pops the next scripted reply."""

    base_url = "https://llm.example.com/v1"
    model = "fake-model"
    api_key = "sk-fake-1234"

    def __init__(self, streams=None, replies=None, error=None):
        self.streams = list(streams or [])
        self.replies = list(replies or [])
        self.error = error
        self.calls = []
        self.opened = []

    def open_stream(self, messages):
        self.calls.append([(m.role, m.content) for m in messages])
        if self.error is not None:
            raise self.error
        stream = self.streams.pop(0)
        self.opened.append(stream)
        return stream

    def complete(self, messages):
        self.calls.append([(m.role, m.content) for m in messages])
        if self.error is not None:
            raise self.error
        return self.replies.pop(0)


@pytest.fixture
def hello_stream():
    return FakeStream([
        sse("Hel"),
        sse("lo"),
        "data: [DONE]\n",
    ])


@pytest.fixture
def gate():
    return threading.Event()
