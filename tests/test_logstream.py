"""Tests for the incremental engine log decoder."""

from __future__ import annotations

import asyncio

import pytest

from sidecar.logstream import LogStreamParser, iter_events
from sidecar.models import LogRecord, OutputError


def _values(events) -> list:
    return [e.fields if isinstance(e, LogRecord) else ("error", e.raw) for e in events]


def test_newline_delimited_records():
    parser = LogStreamParser()
    events = parser.feed(b'{"msg": "a"}\n{"msg": "b"}\n')
    assert _values(events) == [{"msg": "a"}, {"msg": "b"}]
    assert parser.pending == ""


def test_concatenated_without_separators():
    parser = LogStreamParser()
    events = parser.feed(b'{"msg": "a"}{"msg": "b"}  {"msg": "c"}')
    assert _values(events) == [{"msg": "a"}, {"msg": "b"}, {"msg": "c"}]


def test_record_split_across_chunks():
    parser = LogStreamParser()
    assert parser.feed(b'{"level": "info", "ms') == []
    assert parser.feed(b'g": "Started HTTP server.", "address": "127.0.0.1:') == []
    events = parser.feed(b'54321"}\n')
    assert _values(events) == [{
        "level": "info",
        "msg": "Started HTTP server.",
        "address": "127.0.0.1:54321",
    }]


@pytest.mark.parametrize("split", [
    b'{"ok": tr',
    b'{"ok": true',
    b'{"ok": true, "n": -',
    b'{"ok": true, "n": -1, "z": nu',
])
def test_split_inside_literal_waits(split):
    data = b'{"ok": true, "n": -1, "z": null}\n'
    assert split == data[:len(split)]

    parser = LogStreamParser()
    assert parser.feed(split) == []
    events = parser.feed(data[len(split):])
    assert _values(events) == [{"ok": True, "n": -1, "z": None}]


def test_multibyte_character_split_across_chunks():
    data = '{"msg": "café"}\n'.encode("utf-8")
    cut = data.index(b"\xc3") + 1

    parser = LogStreamParser()
    assert parser.feed(data[:cut]) == []
    assert _values(parser.feed(data[cut:])) == [{"msg": "café"}]


def test_non_json_line_is_reported_and_skipped():
    parser = LogStreamParser()
    events = parser.feed(b'{"msg": "a"}\npanic: runtime error\n{"msg": "b"}\n')
    assert _values(events) == [
        {"msg": "a"},
        ("error", "panic: runtime error\n"),
        {"msg": "b"},
    ]


def test_malformed_object_is_reported_and_skipped():
    parser = LogStreamParser()
    events = parser.feed(b'{"msg": oops}\n{"msg": "b"}\n')

    assert isinstance(events[0], OutputError)
    assert events[0].raw == '{"msg": oops}\n'
    assert events[0].reason
    assert _values(events[1:]) == [{"msg": "b"}]


def test_partial_garbage_waits_for_line_end():
    parser = LogStreamParser()
    assert parser.feed(b"not json yet") == []
    events = parser.feed(b' still not\n{"msg": "a"}\n')
    assert _values(events) == [("error", "not json yet still not\n"), {"msg": "a"}]


def test_decoding_continues_after_many_errors():
    parser = LogStreamParser()
    chunks = [b"garbage\n", b"{bad\n", b'{"msg": "ok"}\n', b"}}}\n", b'{"msg": "ok2"}\n']
    events = [e for chunk in chunks for e in parser.feed(chunk)]
    records = [e.fields["msg"] for e in events if isinstance(e, LogRecord)]
    errors = [e for e in events if isinstance(e, OutputError)]
    assert records == ["ok", "ok2"]
    assert len(errors) == 3


def test_close_flushes_truncated_output():
    parser = LogStreamParser()
    assert parser.feed(b'{"msg": "a"}\n{"msg": "trunc') == [LogRecord(fields={"msg": "a"})]
    events = parser.close()
    assert len(events) == 1
    assert isinstance(events[0], OutputError)
    assert events[0].raw == '{"msg": "trunc'


def test_close_with_only_whitespace():
    parser = LogStreamParser()
    parser.feed(b'{"msg": "a"}\n\n  ')
    assert parser.close() == []


def test_buffer_limit():
    parser = LogStreamParser(max_buffer=64)
    events = parser.feed(b'{"msg": "' + b"x" * 100)
    assert len(events) == 1
    assert isinstance(events[0], OutputError)
    assert events[0].reason == "buffer limit exceeded"
    assert parser.pending == ""
    assert _values(parser.feed(b'\n{"msg": "next"}\n')) == [{"msg": "next"}]


@pytest.mark.asyncio
async def test_iter_events_from_stream_reader():
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"msg": "a"}\nnoise\n{"msg": ')
    reader.feed_data(b'"b"}')
    reader.feed_eof()

    events = [e async for e in iter_events(reader, chunk_size=5)]
    assert _values(events) == [{"msg": "a"}, ("error", "noise\n"), {"msg": "b"}]
