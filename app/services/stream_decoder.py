"""
STREAM DECODER MODULE
=====================

Turns the raw bytes of a streamed chat completion (Server-Sent Events) into
pieces of assistant text.

The provider sends lines like:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

RULES:
  - Only lines starting with "data: " matter; blank keep-alive lines,
    comments and "event:" framing are dropped.
  - "data: [DONE]" ends the stream. So does the connection closing.
  - A payload that is not valid JSON of the expected shape is skipped and
    decoding goes on with the next line (providers send the odd heartbeat).
  - Empty or missing content yields nothing.

All functions are generators: lazy, finite, and usable once.
"""

import codecs
import logging
from typing import Iterable, Iterator, Optional, Union

from pydantic import ValidationError

from app.models import ChatCompletionChunk


logger = logging.getLogger("FluentCoach")

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def iter_lines(chunks: Iterable[Union[bytes, str]]) -> Iterator[str]:
    """
    Re-split arbitrary byte chunks into text lines.
    Bytes are decoded incrementally so a UTF-8 character cut between two
    chunks is not mangled. Text left without a final newline is still yielded.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        # "\r\n" endings are handled by the strip() in iter_fragments.
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer


def parse_event(payload: str) -> Optional[str]:
    """Return choices[0].delta.content of one event payload, or None if there is nothing usable."""
    try:
        chunk = ChatCompletionChunk.model_validate_json(payload)
    except ValidationError:
        logger.debug("Skipping malformed stream event: %.80s", payload)
        return None
    if not chunk.choices:
        return None
    return chunk.choices[0].delta.content


def iter_fragments(lines: Iterable[str]) -> Iterator[str]:
    """Yield the non-empty content fragments of SSE lines until [DONE] or end of input."""
    for raw_line in lines:
        line = raw_line.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            return
        content = parse_event(payload)
        if content:
            yield content


def decode_stream(chunks: Iterable[Union[bytes, str]]) -> Iterator[str]:
    """Raw response bytes in, assistant text fragments out."""
    return iter_fragments(iter_lines(chunks))
