"""Client for the chat event stream.

One POST per chat turn; the response body is a line-delimited sequence of
``data: {json}`` events (``metadata``, ``content``, ``failover``, ``error``,
``done``). Network failures never escape ``stream_message``: they are logged,
reported through ``notify`` and returned as a ``StreamResult`` with ``error``.
"""

from __future__ import annotations

import codecs
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

import requests
from prometheus_client import Counter

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DEFAULT_STREAM_PATH = "/functions/v1/ai-chat-stream"

STREAM_EVENTS = Counter(
    "chat_stream_events_total",
    "Chat stream events received by the client, by type.",
    ("type",),
)
STREAM_OUTCOMES = Counter(
    "chat_stream_outcomes_total",
    "Client-side chat streams by outcome.",
    ("outcome",),
)

Notify = Callable[[str, str, str], None]


@dataclass
class StreamMessage:
    type: str
    content: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    sources: List[Dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StreamMessage":
        return cls(
            type=str(payload.get("type") or ""),
            content=payload.get("content"),
            provider=payload.get("provider"),
            model=payload.get("model"),
            sources=list(payload.get("sources") or []),
            message=payload.get("message"),
            raw=payload,
        )


@dataclass
class StreamResult:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    failovers: List[str] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False
    completed: bool = False


def parse_stream_line(line: str) -> Optional[StreamMessage]:
    """Decode one ``data: {...}`` line; anything else yields ``None``."""
    text = line.rstrip("\r")
    if not text.startswith(DATA_PREFIX):
        return None
    body = text[len(DATA_PREFIX):].strip()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.warning("skipping malformed stream line=%r", body[:200])
        return None
    if not isinstance(payload, dict):
        logger.warning("skipping non-object stream payload=%r", body[:200])
        return None
    return StreamMessage.from_payload(payload)


def iter_stream_messages(chunks: Iterable[Union[bytes, str]]) -> Iterator[StreamMessage]:
    """Yield messages from arbitrary byte chunks, holding back a trailing partial line."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            message = parse_stream_line(line)
            if message is not None:
                yield message
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        message = parse_stream_line(buffer)
        if message is not None:
            yield message


def _log_notify(level: str, title: str, description: str) -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, "%s: %s", title, description)


class StreamingChatClient:
    """Consumes one chat stream at a time and tracks the text received so far."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        notify: Optional[Notify] = None,
        on_message: Optional[Callable[[StreamMessage], None]] = None,
        on_complete: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        stream_path: str = DEFAULT_STREAM_PATH,
        timeout: float = 120.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.session = session or requests.Session()
        self.notify = notify or _log_notify
        self.on_message = on_message
        self.on_complete = on_complete
        self.on_error = on_error
        self.stream_path = stream_path
        self.timeout = timeout
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._streaming = False
        self._response: Optional[requests.Response] = None
        self._parts: List[str] = []
        self._metadata: Dict[str, Any] = {}

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def current_response(self) -> str:
        return "".join(self._parts)

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self._metadata)

    def cancel(self) -> None:
        if not self._streaming:
            return
        self._cancel.set()
        response = self._response
        if response is not None:
            try:
                response.close()
            except Exception:
                logger.debug("closing cancelled stream failed", exc_info=True)

    def reset(self) -> None:
        self.cancel()
        self._parts = []
        self._metadata = {}

    def stream_message(
        self,
        conversation_id: Optional[str],
        message: str,
        user_id: str,
        use_knowledge_base: bool = False,
        chatbot_id: Optional[str] = None,
    ) -> Optional[StreamResult]:
        with self._lock:
            if self._streaming:
                logger.warning("stream already in progress conversation=%s", conversation_id)
                return None
            self._streaming = True
            self._cancel.clear()
            self._parts = []
            self._metadata = {}

        payload = {
            "message": message,
            "conversationId": conversation_id,
            "userId": user_id,
            "useKnowledgeBase": use_knowledge_base,
            "chatbotId": chatbot_id,
        }
        try:
            return self._consume(payload)
        finally:
            self._response = None
            self._streaming = False

    def _headers(self, user_id: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "X-User-Id": user_id}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _fail(self, error: str) -> StreamResult:
        STREAM_OUTCOMES.labels(outcome="error").inc()
        logger.error("chat stream failed err=%s", error)
        if self.on_error:
            self.on_error(error)
        self.notify("error", "Error", error)
        return StreamResult(content=self.current_response, metadata=self.metadata, error=error)

    def _cancelled(self, failovers: List[str]) -> StreamResult:
        STREAM_OUTCOMES.labels(outcome="cancelled").inc()
        logger.info("chat stream cancelled chars=%s", len(self.current_response))
        self.notify("info", "Response cancelled", "The response was stopped.")
        return StreamResult(
            content=self.current_response,
            metadata=self.metadata,
            failovers=failovers,
            cancelled=True,
        )

    def _consume(self, payload: Dict[str, Any]) -> StreamResult:
        url = f"{self.base_url}{self.stream_path}"
        try:
            response = self.session.post(
                url,
                json=payload,
                headers=self._headers(payload["userId"]),
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            return self._fail(str(exc))

        self._response = response
        failovers: List[str] = []
        error: Optional[str] = None
        completed = False
        try:
            if not response.ok:
                return self._fail(f"HTTP error! status: {response.status_code}")
            for event in iter_stream_messages(response.iter_content(chunk_size=None)):
                if self._cancel.is_set():
                    break
                STREAM_EVENTS.labels(type=event.type or "unknown").inc()
                if event.type == "metadata":
                    self._metadata = {
                        "provider": event.provider,
                        "model": event.model,
                        "sources": event.sources,
                    }
                elif event.type == "content":
                    self._parts.append(event.content or "")
                elif event.type == "failover":
                    notice = event.message or "Switching to backup provider..."
                    failovers.append(notice)
                    self.notify("info", "Switching providers", notice)
                elif event.type == "error":
                    error = event.content or "Unknown streaming error"
                    if self.on_error:
                        self.on_error(error)
                    self.notify("error", "Error", error)
                if self.on_message:
                    self.on_message(event)
                if event.type == "done":
                    completed = True
                    break
        except Exception as exc:
            if self._cancel.is_set():
                return self._cancelled(failovers)
            return self._fail(str(exc))
        finally:
            response.close()

        if self._cancel.is_set():
            return self._cancelled(failovers)

        text = self.current_response
        STREAM_OUTCOMES.labels(outcome="error" if error else "completed").inc()
        if completed and error is None and self.on_complete:
            self.on_complete(text, self.metadata)
        return StreamResult(
            content=text,
            metadata=self.metadata,
            failovers=failovers,
            error=error,
            completed=completed,
        )
