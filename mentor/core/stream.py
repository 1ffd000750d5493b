# mentor/core/stream.py
"""
Plain-text response stream with embedded control frames.

The /chat response is a text/plain byte stream. Besides the visible model
text it carries at most two reserved single-line frames:

    __AI_INFO__:<json>\n          session metadata, before any text
    __SUMMARY_TOKEN__:<token>      refreshed memory token, always last

StreamMultiplexer is the producer side (used by the gateway turn).
StreamDecoder is the consumer side (used by clients and tests); it strips
the frames wherever chunk boundaries fall.
"""

from __future__ import annotations

import asyncio
import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

from mentor.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_INFO_MARKER = "__AI_INFO__"
MEMORY_TOKEN_MARKER = "__SUMMARY_TOKEN__"

# Visible separator between the model text and the memory-token frame
MEMORY_TOKEN_SEPARATOR = "\n\n"

_SESSION_PREFIX = SESSION_INFO_MARKER + ":"
_TOKEN_PREFIX = MEMORY_TOKEN_MARKER + ":"
_FRAME_PREFIXES = (_SESSION_PREFIX, _TOKEN_PREFIX)

_END = object()


class StreamMultiplexer:
    """
    Single-producer, single-consumer queue of UTF-8 chunks.

    Ordering rules:
      - at most one session frame, and only before any text;
      - at most one memory-token frame, after all text; nothing follows it;
      - close() ends the stream and is idempotent.

    If the consumer goes away early the multiplexer detaches: further sends
    are dropped and on_disconnect fires once.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        self._detached = False
        self._info_sent = False
        self._text_sent = False
        self._token_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def text_sent(self) -> bool:
        return self._text_sent

    def _put(self, text: str) -> bool:
        if self._closed or self._detached:
            return False
        self._queue.put_nowait(text.encode("utf-8"))
        return True

    def send_session_info(self, info: Dict[str, Any]) -> bool:
        if self._info_sent or self._text_sent or self._token_sent:
            logger.warning("[stream] session info dropped (already sent or text started)")
            return False
        self._info_sent = True
        payload = json.dumps(info, ensure_ascii=False, separators=(",", ":"))
        return self._put(f"{_SESSION_PREFIX}{payload}\n")

    def send_text(self, text: str) -> bool:
        if not text:
            return False
        if self._token_sent:
            logger.warning("[stream] text after memory token dropped chars=%d", len(text))
            return False
        if not self._put(text):
            return False
        self._text_sent = True
        return True

    def send_memory_token(self, token: str) -> bool:
        if self._token_sent or not token:
            return False
        self._token_sent = True
        separator = MEMORY_TOKEN_SEPARATOR if self._text_sent else ""
        return self._put(f"{separator}{_TOKEN_PREFIX}{token}")

    def close(self) -> bool:
        """End the stream. Returns True only for the call that actually closed it."""
        if self._closed:
            return False
        self._closed = True
        self._queue.put_nowait(_END)
        return True

    async def stream(self, on_disconnect: Optional[Callable[[], None]] = None) -> AsyncIterator[bytes]:
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    finished = True
                    return
                yield item
        finally:
            # Consumer stopped before close(): client disconnect or server abort.
            # Nothing is awaited here; this may run inside a cancelled scope.
            if not finished:
                self._detached = True
                if on_disconnect is not None:
                    on_disconnect()


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

@dataclass
class DecodedStream:
    visible_text: str
    session_info: Optional[Dict[str, Any]] = None
    memory_token: Optional[str] = None


def _partial_prefix_len(buffer: str) -> int:
    """Length of the longest buffer suffix that could still grow into a frame prefix."""
    longest = max(len(p) for p in _FRAME_PREFIXES) - 1
    for size in range(min(longest, len(buffer)), 0, -1):
        tail = buffer[-size:]
        if any(p.startswith(tail) for p in _FRAME_PREFIXES):
            return size
    return 0


class StreamDecoder:
    """
    Incremental frame stripper.

    feed() accepts str or bytes chunks and returns the visible text that is
    safe to display so far; finish() flushes the remainder.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._visible: List[str] = []
        self.session_info: Optional[Dict[str, Any]] = None
        self.memory_token: Optional[str] = None

    @property
    def visible_text(self) -> str:
        return "".join(self._visible)

    def feed(self, chunk: Union[str, bytes]) -> str:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        self._buffer += chunk
        return self._drain(final=False)

    def finish(self) -> str:
        self._buffer += self._utf8.decode(b"", final=True)
        return self._drain(final=True)

    def result(self) -> DecodedStream:
        return DecodedStream(
            visible_text=self.visible_text,
            session_info=self.session_info,
            memory_token=self.memory_token,
        )

    def _emit(self, text: str, out: List[str]) -> None:
        if text:
            out.append(text)
            self._visible.append(text)

    def _drain(self, final: bool) -> str:
        out: List[str] = []
        while self._buffer:
            hits = [(self._buffer.find(p), p) for p in _FRAME_PREFIXES]
            hits = [(idx, p) for idx, p in hits if idx >= 0]

            if not hits:
                keep = 0 if final else _partial_prefix_len(self._buffer)
                cut = len(self._buffer) - keep
                self._emit(self._buffer[:cut], out)
                self._buffer = self._buffer[cut:]
                break

            idx, prefix = min(hits)
            self._emit(self._buffer[:idx], out)
            self._buffer = self._buffer[idx:]

            end = self._buffer.find("\n")
            if end < 0 and not final:
                # frame body incomplete; wait for more data
                break
            body_end = len(self._buffer) if end < 0 else end
            body = self._buffer[len(prefix):body_end]
            self._buffer = self._buffer[body_end + 1:] if end >= 0 else ""
            self._take_frame(prefix, body)
        return "".join(out)

    def _take_frame(self, prefix: str, body: str) -> None:
        if prefix == _SESSION_PREFIX:
            try:
                info = json.loads(body)
            except ValueError:
                logger.warning("[stream] session frame with invalid json stripped len=%d", len(body))
                return
            self.session_info = info if isinstance(info, dict) else None
        else:
            self.memory_token = body.strip() or None


def decode_stream(chunks: Iterable[Union[str, bytes]]) -> DecodedStream:
    """Decode a whole response given as an iterable of chunks."""
    decoder = StreamDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
    decoder.finish()
    return decoder.result()
