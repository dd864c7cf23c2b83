from __future__ import annotations

import json

import pytest

from contextflow.runtime.framing import BufferOverflowError, FramingError, MessageDecoder, encode_message


def _decoder(**kw) -> MessageDecoder:  # type: ignore[no-untyped-def]
    opts = {"max_frame_bytes": 1024, "max_line_bytes": 1024, "max_buffer_bytes": 4096}
    opts.update(kw)
    return MessageDecoder(**opts)


def _frame(obj, sep: bytes = b"\r\n\r\n") -> bytes:  # type: ignore[no-untyped-def]
    body = json.dumps(obj).encode("utf-8")
    return b"Content-Length: " + str(len(body)).encode() + sep + body


def test_line_mode_detected_and_split_across_chunks() -> None:
    dec = _decoder()
    dec.feed(b'  \n{"jsonrpc":"2.0","id":1,"method":"ping"}\n{"jsonrpc":')
    assert dec.mode is None
    assert json.loads(dec.next_message())["id"] == 1
    assert dec.mode == "line"
    assert dec.next_message() is None
    dec.feed(b'"2.0","id":2,"method":"ping"}\r\n\n')
    assert json.loads(dec.next_message())["id"] == 2
    assert dec.next_message() is None


def test_framed_mode_crlf_and_lf_terminators() -> None:
    dec = _decoder()
    data = _frame({"id": 1}) + _frame({"id": 2}, sep=b"\n\n")
    dec.feed(data[:10])
    assert dec.next_message() is None
    assert dec.mode == "framed"
    dec.feed(data[10:])
    assert json.loads(dec.next_message()) == {"id": 1}
    assert json.loads(dec.next_message()) == {"id": 2}
    assert dec.next_message() is None


def test_framed_mode_header_is_case_insensitive_and_body_may_lag() -> None:
    dec = _decoder()
    body = '{"id": "ü"}'.encode("utf-8")
    dec.feed(b"content-length: " + str(len(body)).encode() + b"\r\nX-Other: 1\r\n\r\n" + body[:3])
    assert dec.next_message() is None
    dec.feed(body[3:])
    assert json.loads(dec.next_message()) == {"id": "ü"}


def test_framed_mode_rejects_missing_or_oversized_length() -> None:
    dec = _decoder()
    dec.feed(b"X-Nope: 1\r\n\r\n{}")
    with pytest.raises(FramingError, match="Missing Content-Length"):
        dec.next_message()

    dec2 = _decoder(max_frame_bytes=8)
    dec2.feed(b"Content-Length: 100\r\n\r\n")
    with pytest.raises(FramingError, match="exceeds max inbound frame size"):
        dec2.next_message()


def test_line_mode_rejects_oversized_and_non_json_lines() -> None:
    dec = _decoder(max_line_bytes=10)
    dec.feed(b'{"id": 1234567890}\n')
    with pytest.raises(FramingError, match="exceeds max size"):
        dec.next_message()

    dec2 = _decoder()
    dec2.feed(b'{"id": 1}\nhello\n')
    assert dec2.next_message() == '{"id": 1}'
    with pytest.raises(FramingError, match="Expected line-delimited"):
        dec2.next_message()


def test_buffer_overflow_discards_input() -> None:
    dec = _decoder(max_buffer_bytes=16)
    dec.feed(b'{"id": 1')
    with pytest.raises(BufferOverflowError):
        dec.feed(b"x" * 20)
    assert dec.next_message() is None
    dec.feed(b'{"a":1}\n')
    assert dec.next_message() == '{"a":1}'


def test_encode_message_matches_mode() -> None:
    msg = {"jsonrpc": "2.0", "id": 1, "result": {"t": "ü"}}
    line = encode_message(msg, "line")
    assert line.endswith(b"\n") and line.count(b"\n") == 1
    assert json.loads(line) == msg

    framed = encode_message(msg, "framed")
    header, body = framed.split(b"\r\n\r\n", 1)
    assert f"Content-Length: {len(body)}".encode() in header
    assert json.loads(body) == msg
    assert encode_message(msg, None).startswith(b"Content-Length: ")


def test_encode_message_escapes_lone_surrogates() -> None:
    msg = {"jsonrpc": "2.0", "id": 1, "result": {"text": "bad \ud800 char ü"}}
    line = encode_message(msg, "line")
    line.decode("utf-8")
    assert b"\\ud800" in line
    assert json.loads(line) == msg
