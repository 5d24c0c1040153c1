"""Incremental decoder for the engine's JSON log stream.

The engine writes a sequence of JSON objects to stdout. Objects are usually
newline-separated but need not be, and chunk boundaries from the pipe fall
anywhere. Text that cannot be decoded (a panic trace, a stray diagnostic) is
reported as an OutputError and skipped up to the next line break; decoding
then carries on with whatever follows.
"""

from __future__ import annotations

import asyncio
import codecs
import json
from collections.abc import AsyncIterator

from sidecar.models import LogRecord, OutputError

LogEvent = LogRecord | OutputError

# Matches the 1MB line limit used for the subprocess pipe
MAX_BUFFER = 1024 * 1024
READ_CHUNK = 64 * 1024

_WHITESPACE = " \t\r\n"


class LogStreamParser:
    """Turns arbitrary stdout chunks into LogRecord / OutputError events."""

    def __init__(self, max_buffer: int = MAX_BUFFER) -> None:
        self.max_buffer = max_buffer
        self._decoder = json.JSONDecoder()
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received but not yet decoded."""
        return self._buffer

    def feed(self, data: bytes) -> list[LogEvent]:
        """Add a chunk of stdout and return every event it completes."""
        self._buffer += self._utf8.decode(data)
        events = self._drain(final=False)
        if len(self._buffer) > self.max_buffer:
            events.append(OutputError(raw=self._buffer, reason="buffer limit exceeded"))
            self._buffer = ""
        return events

    def close(self) -> list[LogEvent]:
        """Flush at end of stream. Any undecodable remainder becomes an error."""
        self._buffer += self._utf8.decode(b"", final=True)
        events = self._drain(final=True)
        if self._buffer.strip(_WHITESPACE):
            events.append(OutputError(raw=self._buffer, reason="truncated output"))
        self._buffer = ""
        return events

    def _drain(self, final: bool) -> list[LogEvent]:
        events: list[LogEvent] = []
        buf = self._buffer
        pos = 0

        while True:
            while pos < len(buf) and buf[pos] in _WHITESPACE:
                pos += 1
            if pos >= len(buf):
                break

            if buf[pos] != "{":
                end = self._line_end(buf, pos, final)
                if end is None:
                    break
                events.append(OutputError(raw=buf[pos:end], reason="not a JSON object"))
                pos = end
                continue

            try:
                value, end = self._decoder.raw_decode(buf, pos)
            except json.JSONDecodeError as e:
                if not final and self._incomplete(e, buf):
                    break
                end = self._line_end(buf, pos, final)
                if end is None:
                    break
                events.append(OutputError(raw=buf[pos:end], reason=e.msg))
                pos = end
                continue

            events.append(LogRecord(fields=value))
            pos = end

        self._buffer = buf[pos:]
        return events

    @staticmethod
    def _incomplete(error: json.JSONDecodeError, buf: str) -> bool:
        """Whether the decode failed only because the object isn't finished yet.

        Records are line-oriented, so an error with no line break after it may
        still be completed by the next chunk (a split ``true``, an open string).
        Strict decoding rejects raw newlines inside strings, so once a line
        break follows the error position the input is really malformed.
        """
        return buf.find("\n", error.pos) < 0

    @staticmethod
    def _line_end(buf: str, pos: int, final: bool) -> int | None:
        """Index just past the line starting at ``pos``, or None to wait for more."""
        newline = buf.find("\n", pos)
        if newline >= 0:
            return newline + 1
        if final:
            return len(buf)
        return None


async def iter_events(
    reader: asyncio.StreamReader,
    parser: LogStreamParser | None = None,
    chunk_size: int = READ_CHUNK,
) -> AsyncIterator[LogEvent]:
    """Yield events decoded from ``reader`` until it reaches EOF."""
    parser = parser or LogStreamParser()
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        for event in parser.feed(chunk):
            yield event
    for event in parser.close():
        yield event
