from __future__ import annotations

import codecs
import json
from typing import Any, List, Optional

from stepchain.logging import get_logger

logger = get_logger(__name__)

DONE_MARKER = "[DONE]"
_INVALID = object()


class SSEDecoder:
    """Incremental decoder for ``data:`` lines of a server-sent-event stream.

    Bytes may be split anywhere, including inside a multi-byte character or a
    JSON payload. Incomplete lines stay buffered until their newline arrives. A
    complete data line that is not valid JSON is held and retried once,
    prefixed to the next data line; if that still fails it is dropped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._held: Optional[str] = None
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: List[Any] = []
        for line in lines:
            self._handle_line(line, events)
        return events

    def flush(self) -> List[Any]:
        """Drain whatever remains once the upstream body has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        events: List[Any] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._handle_line(line, events)
        if self._held is not None:
            self._skip(self._held)
            self._held = None
        return events

    def _handle_line(self, line: str, events: List[Any]) -> None:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return
        payload = line[5:].lstrip(" ")
        if not payload or payload.strip() == DONE_MARKER:
            return

        if self._held is not None:
            held, self._held = self._held, None
            joined = self._parse(held + payload)
            if joined is not _INVALID:
                events.append(joined)
                return
            self._skip(held)

        parsed = self._parse(payload)
        if parsed is not _INVALID:
            events.append(parsed)
        else:
            self._held = payload

    @staticmethod
    def _parse(text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return _INVALID

    def _skip(self, fragment: str) -> None:
        self.skipped += 1
        logger.debug("sse_fragment_skipped", fragment_length=len(fragment))
