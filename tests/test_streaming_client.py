"""Tests for the chat stream consumer."""

import json
from unittest.mock import MagicMock

import requests

from zyria.streaming_client import (
    StreamingChatClient,
    iter_stream_messages,
    parse_stream_line,
)


def _sse(event: dict) -> bytes:
    return ("data: " + json.dumps(event) + "\n\n").encode("utf-8")


def _split(data: bytes, size: int):
    return [data[i : i + size] for i in range(0, len(data), size)]


class FakeResponse:
    def __init__(self, chunks, status_code=200):
        self._chunks = list(chunks)
        self.status_code = status_code
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            if self.closed:
                return
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


STANDARD_BODY = b"".join(
    [
        _sse({"type": "metadata", "provider": "OpenAI", "model": "gpt-4o", "sources": []}),
        _sse({"type": "content", "content": "Hel"}),
        _sse({"type": "content", "content": "lo "}),
        _sse({"type": "content", "content": "world"}),
        _sse({"type": "done"}),
    ]
)


def test_parse_stream_line():
    message = parse_stream_line('data: {"type": "content", "content": "hi"}')
    assert message.type == "content"
    assert message.content == "hi"
    assert parse_stream_line(": keep-alive") is None
    assert parse_stream_line("data: {broken") is None
    assert parse_stream_line("data: [1, 2]") is None


def test_partial_lines_and_split_utf8_are_buffered():
    chunks = [b'data: {"type":"content","content":"caf', b"\xc3", b'\xa9"}\n', b"\ndata: {\"type\":\"done\"}"]
    messages = list(iter_stream_messages(chunks))
    assert [m.type for m in messages] == ["content", "done"]
    assert messages[0].content == "café"


def test_three_chunks_reassemble():
    response = FakeResponse(_split(STANDARD_BODY, 7))
    session = FakeSession(response)
    completed = MagicMock()
    client = StreamingChatClient("https://api.zyria.test", "tok", session=session, on_complete=completed)

    result = client.stream_message("conv-1", "Hi", "bob")

    assert result.content == "Hello world"
    assert result.completed is True
    assert result.error is None
    assert result.metadata["provider"] == "OpenAI"
    assert client.current_response == "Hello world"
    assert client.is_streaming is False
    assert response.closed is True
    completed.assert_called_once()
    assert completed.call_args.args[0] == "Hello world"

    url, kwargs = session.calls[0]
    assert url == "https://api.zyria.test/functions/v1/ai-chat-stream"
    assert kwargs["json"]["conversationId"] == "conv-1"
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["stream"] is True


def test_cancel_stops_accumulation():
    response = FakeResponse([STANDARD_BODY])
    notify = MagicMock()
    client = StreamingChatClient("https://api.zyria.test", session=FakeSession(response), notify=notify)

    def on_message(event):
        if event.type == "content":
            client.cancel()

    client.on_message = on_message
    result = client.stream_message("conv-1", "Hi", "bob")

    assert result.cancelled is True
    assert result.content == "Hel"
    assert client.current_response == "Hel"
    assert response.closed is True
    assert any(call.args[1] == "Response cancelled" for call in notify.call_args_list)


def test_second_call_while_streaming_is_rejected():
    client = StreamingChatClient("https://api.zyria.test", session=FakeSession(FakeResponse([STANDARD_BODY])))
    nested = []

    def on_message(event):
        if event.type == "metadata":
            nested.append(client.stream_message("conv-1", "again", "bob"))

    client.on_message = on_message
    result = client.stream_message("conv-1", "Hi", "bob")

    assert nested == [None]
    assert result.content == "Hello world"


def test_failover_and_error_events_notify():
    body = b"".join(
        [
            _sse({"type": "metadata", "provider": "Primary", "model": "gpt-4o", "sources": []}),
            _sse({"type": "failover", "message": "Switching to backup provider..."}),
            _sse({"type": "error", "content": "backup failed too"}),
            _sse({"type": "done"}),
        ]
    )
    notify = MagicMock()
    on_error = MagicMock()
    client = StreamingChatClient(
        "https://api.zyria.test",
        session=FakeSession(FakeResponse([body])),
        notify=notify,
        on_error=on_error,
    )

    result = client.stream_message("conv-1", "Hi", "bob")

    assert result.failovers == ["Switching to backup provider..."]
    assert result.error == "backup failed too"
    on_error.assert_called_once_with("backup failed too")
    levels = [(call.args[0], call.args[1]) for call in notify.call_args_list]
    assert ("info", "Switching providers") in levels
    assert ("error", "Error") in levels


def test_http_error_status_becomes_error_result():
    on_error = MagicMock()
    client = StreamingChatClient(
        "https://api.zyria.test",
        session=FakeSession(FakeResponse([], status_code=500)),
        on_error=on_error,
        notify=MagicMock(),
    )

    result = client.stream_message("conv-1", "Hi", "bob")

    assert result.error == "HTTP error! status: 500"
    on_error.assert_called_once_with("HTTP error! status: 500")
    assert client.is_streaming is False


def test_connection_failure_is_reported_not_raised():
    client = StreamingChatClient(
        "https://api.zyria.test",
        session=FakeSession(error=requests.ConnectionError("refused")),
        notify=MagicMock(),
    )

    result = client.stream_message("conv-1", "Hi", "bob")

    assert result.error == "refused"
    assert result.completed is False


def test_reset_clears_state():
    client = StreamingChatClient("https://api.zyria.test", session=FakeSession(FakeResponse([STANDARD_BODY])))
    client.stream_message("conv-1", "Hi", "bob")

    client.reset()

    assert client.current_response == ""
    assert client.metadata == {}
