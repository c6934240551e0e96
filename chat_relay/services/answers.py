# chat_relay/services/answers.py
"""
Answer extraction for both upstream response shapes.

Whole responses are JSON completion objects; streamed responses are
server-sent events, one ``data: {...}`` line per delta, finished by
``data: [DONE]``. OpenRouter puts the text under ``choices``, Gemini under
``candidates``; both are accepted everywhere.
"""
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, List, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def _first(items: Any) -> Optional[dict]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _candidate_text(payload: dict) -> str:
    candidate = _first(payload.get("candidates"))
    if candidate is None:
        return ""
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))


def extract_answer(payload: Any) -> str:
    """Answer text of a whole completion; empty string when there is none."""
    if not isinstance(payload, dict):
        return ""
    choice = _first(payload.get("choices"))
    if choice is not None:
        message = choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""
    return _candidate_text(payload)


def has_choices(payload: Any) -> bool:
    """True when the payload carries at least one choice or candidate."""
    if not isinstance(payload, dict):
        return False
    return _first(payload.get("choices")) is not None or _first(payload.get("candidates")) is not None


def extract_delta(event: Any) -> str:
    """Incremental text of one streamed event."""
    if not isinstance(event, dict):
        return ""
    choice = _first(event.get("choices"))
    if choice is not None:
        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""
    return _candidate_text(event)


def parse_event_line(line: str) -> Optional[dict]:
    """JSON object of a ``data:`` line, or None for anything else."""
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):].strip()
    if not data or data == DONE_SENTINEL:
        return None
    try:
        event = json.loads(data)
    except ValueError:
        logger.debug(f"Skipping unparseable stream line: {line[:120]}")
        return None
    return event if isinstance(event, dict) else None


class LineBuffer:
    """Splits a byte stream into complete lines, holding back partial ones."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    def flush(self) -> List[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail.strip() else []


async def iter_deltas(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Lazy sequence of text fragments from an SSE byte stream."""
    buffer = LineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            text = extract_delta(parse_event_line(line))
            if text:
                yield text
    for line in buffer.flush():
        text = extract_delta(parse_event_line(line))
        if text:
            yield text


async def accumulate_answer(chunks: AsyncIterable[bytes]) -> str:
    parts = []
    async for text in iter_deltas(chunks):
        parts.append(text)
    return "".join(parts)
