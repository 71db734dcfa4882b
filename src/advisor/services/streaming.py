"""Incremental Server-Sent-Events frame decoding.

The upstream bot API streams ``event:`` / ``data:`` lines. Network chunks can
split a line (or a multi-byte character) anywhere, so the decoder keeps a
carry-over buffer and only interprets complete lines. The event name is
sticky: it applies to every following ``data:`` line until another
``event:`` line replaces it. Blank lines do not reset it.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Union

Chunk = Union[bytes, str]

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SseFrame:
    event: Optional[str]
    data: str

    def json(self) -> Any:
        return json.loads(self.data)


class SseDecoder:
    def __init__(self) -> None:
        self._buffer = ""
        self._event: Optional[str] = None
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def current_event(self) -> Optional[str]:
        return self._event

    def feed(self, chunk: Chunk) -> List[SseFrame]:
        if isinstance(chunk, bytes):
            text = self._utf8.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        frames: List[SseFrame] = []
        for line in lines:
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[SseFrame]:
        """Interpret whatever is left once the transport has closed."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        frame = self._process_line(tail)
        return [frame] if frame is not None else []

    def _process_line(self, line: str) -> Optional[SseFrame]:
        trimmed = line.strip()
        if not trimmed:
            return None
        if trimmed.startswith("event:"):
            self._event = trimmed[6:].strip()
            return None
        if trimmed.startswith("data:"):
            payload = trimmed[5:].strip()
            if not payload or payload == DONE_SENTINEL:
                return None
            return SseFrame(event=self._event, data=payload)
        # comments (":keep-alive"), id:, retry: and unknown fields
        return None


def iter_frames(chunks: Iterable[Chunk]) -> Iterator[SseFrame]:
    decoder = SseDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


async def aiter_frames(chunks: AsyncIterable[Chunk]) -> AsyncIterator[SseFrame]:
    decoder = SseDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame


def encode_frame(event: Optional[str], data: Union[str, Dict[str, Any]]) -> str:
    """Serialize one frame the way the decoder above reads it back."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    lines: List[str] = []
    if event:
        lines.append(f"event: {event}")
    for part in payload.split("\n"):
        lines.append(f"data: {part}")
    return "\n".join(lines) + "\n\n"
