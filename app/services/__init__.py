"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (app.main) calls these services;
they don't handle HTTP routing, only the chat flow and LLM calls.

MODULES:
    completion_client - POST to {base_url}/chat/completions, buffered or streamed
    stream_decoder    - SSE "data: ..." lines -> assistant text fragments
    chat_session      - One conversation: history, streaming reply, cancel, role switch
    chat_service      - Sessions by id; SSE relay for the HTTP API
    coach_profiles    - Fixed coach personas and their system prompts
    scenarios         - Practice scenarios users can start a conversation with
"""
