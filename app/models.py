"""
DATA MODELS MODULE
==================

This file defines the Pydantic models used on both sides of the backend:
the OpenAI-compatible wire format we send to / read from the LLM provider,
and the request/response bodies of our own HTTP API.

WIRE MODELS (provider side):
  ChatMessage          - One message in a conversation (role + content).
  CompletionRequest    - Body POSTed to {base_url}/chat/completions.
  ChatCompletion       - Non-streaming response: choices[0].message.
  ChatCompletionChunk  - One streamed SSE event: choices[0].delta.content.

API MODELS (our endpoints):
  ChatRequest     - Body of POST /chat and POST /chat/stream.
  ChatResponse    - Body returned by POST /chat.
  RoleRequest     - Body of POST /chat/{session_id}/role.
  ScenarioRequest - Body of POST /scenarios.
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional

from config import MAX_MESSAGE_LENGTH


class Role(str, Enum):
    """Who wrote a message. Values match the provider's "role" strings."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ==============================================================================
# WIRE MODELS
# ==============================================================================

class ChatMessage(BaseModel):
    """
    A single message in a conversation.
    Stored in order inside a session. No timestamp; order defines chronology.
    """
    role: Role
    content: str

    model_config = {"use_enum_values": True, "frozen": True}


class CompletionRequest(BaseModel):
    """JSON body of a chat-completion call. temperature is omitted when None."""
    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    stream: bool = False


class CompletionMessage(BaseModel):
    role: str = "assistant"
    content: Optional[str] = None


class CompletionChoice(BaseModel):
    message: CompletionMessage


class ChatCompletion(BaseModel):
    """Non-streaming response. Extra provider fields (usage, id, ...) are ignored."""
    choices: List[CompletionChoice] = Field(default_factory=list)


class Delta(BaseModel):
    # Content arrives in pieces; some events (role announcement, finish) carry none.
    content: Optional[str] = None


class StreamChoice(BaseModel):
    delta: Delta = Field(default_factory=Delta)


class ChatCompletionChunk(BaseModel):
    """One `data: {...}` event of a streamed response."""
    choices: List[StreamChoice] = Field(default_factory=list)

    @classmethod
    def for_text(cls, text: str) -> "ChatCompletionChunk":
        """Build a chunk carrying one piece of assistant text (used when we re-stream to clients)."""
        return cls(choices=[StreamChoice(delta=Delta(content=text))])


# ==============================================================================
# API MODELS
# ==============================================================================

class ChatRequest(BaseModel):
    """
    Request body for POST /chat and POST /chat/stream.

    - message: Required. The user's message. Must be 1-32,000 characters
      (validated by Pydantic; empty or too long returns 422).
    - session_id: Optional. If omitted, the server creates a new session and returns
      its ID. If provided, the server uses it (creating it if it does not exist yet).
    """
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    session_id: Optional[str] = None


class ChatResponse(BaseModel):
    """
    Response body for POST /chat.

    - response: The assistant's reply text (or a readable error summary).
    - session_id: Send it on the next request to continue the conversation.
    - errored: True when `response` describes a failure instead of a real reply.
    - cancelled: True when the turn was stopped (cancel, role change or clear)
      before it finished; `response` is then empty.
    """
    response: str
    session_id: str
    errored: bool = False
    cancelled: bool = False


class RoleRequest(BaseModel):
    role: str


class ProviderRequest(BaseModel):
    """Body for PUT /settings/provider. api_key and model are optional; the key is kept in memory only."""
    provider: str = Field(..., min_length=1)
    api_key: Optional[str] = None
    model: Optional[str] = None


class ScenarioRequest(BaseModel):
    title: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    icon: str = ""
