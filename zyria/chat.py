from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from prometheus_client import Counter, Histogram

from . import knowledge, providers, storage

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
ERROR_REPLY = "I apologize, but I encountered an error. Please try again."
FAILOVER_NOTICE = "Switching to backup provider..."
TITLE_MODEL = os.getenv("TITLE_MODEL", "gpt-4o-mini")
TITLE_MAX_CHARS = 50
TITLE_SYSTEM_PROMPT = (
    "You generate short, concise titles (max 50 characters) for conversations. "
    "Return ONLY the title text, nothing else."
)

try:
    FAILOVER_WINDOW_SECONDS = max(0.0, float(os.getenv("PROVIDER_FAILOVER_WINDOW_SECONDS", "5") or 5))
except ValueError:
    FAILOVER_WINDOW_SECONDS = 5.0

CHAT_TURNS = Counter(
    "chat_turns_total",
    "Chat turns grouped by outcome.",
    ("status",),
)
PROVIDER_FAILOVERS = Counter(
    "provider_failovers_total",
    "Times a chat turn switched to its fallback provider.",
)
CHAT_LATENCY = Histogram(
    "chat_turn_duration_seconds",
    "Wall time of a streamed chat turn.",
    buckets=(0.5, 1, 2, 5, 10, 20, 40, 80),
)


@dataclass
class ChatTurn:
    message: str
    user_id: str
    conversation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    chatbot_id: Optional[str] = None
    use_knowledge_base: bool = False
    any_tenant: bool = False


def format_sse(event: Dict[str, Any]) -> str:
    return "data: " + json.dumps(event, ensure_ascii=False) + "\n\n"


def chatbot_in_scope(chatbot: Dict[str, Any], tenant_id: Optional[str], any_tenant: bool = False) -> bool:
    """Shared chatbots (no tenant) are usable everywhere; the rest only inside their tenant."""
    owner = chatbot.get("tenant_id")
    return any_tenant or owner is None or owner == tenant_id


def _load_chatbot(turn: ChatTurn) -> Optional[Dict[str, Any]]:
    if not turn.chatbot_id:
        return None
    try:
        chatbot = storage.get_chatbot(turn.chatbot_id, active_only=True)
    except Exception:
        logger.warning("chatbot lookup failed chatbot=%s", turn.chatbot_id, exc_info=True)
        return None
    if chatbot is not None and not chatbot_in_scope(chatbot, turn.tenant_id, turn.any_tenant):
        logger.warning("chatbot outside caller tenant chatbot=%s tenant=%s", turn.chatbot_id, turn.tenant_id)
        return None
    return chatbot


def _persist_success(
    turn: ChatTurn,
    *,
    response: str,
    provider: Dict[str, Any],
    model: str,
    response_time_ms: int,
    failover_count: int,
    sources: List[Dict[str, Any]],
) -> None:
    if not turn.conversation_id or not response:
        return
    try:
        storage.append_message(turn.conversation_id, turn.user_id, "user", turn.message)
        storage.append_message(
            turn.conversation_id,
            turn.user_id,
            "assistant",
            response,
            metadata={
                "provider": provider.get("name") or "OpenAI (Default)",
                "model": model,
                "response_time_ms": response_time_ms,
                "failover_count": failover_count,
                "sources": sources,
            },
        )
    except Exception:
        logger.warning(
            "chat history write failed conversation=%s user=%s",
            turn.conversation_id,
            turn.user_id,
            exc_info=True,
        )


def _persist_failure(turn: ChatTurn, error_message: str) -> None:
    if not turn.conversation_id:
        return
    try:
        storage.append_message(turn.conversation_id, turn.user_id, "user", turn.message)
        storage.append_message(
            turn.conversation_id,
            turn.user_id,
            "assistant",
            ERROR_REPLY,
            metadata={"error": error_message},
        )
    except Exception:
        logger.warning(
            "chat error write failed conversation=%s user=%s",
            turn.conversation_id,
            turn.user_id,
            exc_info=True,
        )


def _record_usage(
    turn: ChatTurn,
    *,
    provider: Optional[Dict[str, Any]],
    model: str,
    response_time_ms: int,
    success: bool,
    error_message: Optional[str] = None,
) -> None:
    try:
        storage.record_chatbot_usage(
            chatbot_id=turn.chatbot_id,
            user_id=turn.user_id,
            provider_id=(provider or {}).get("id"),
            model_used=model,
            response_time_ms=response_time_ms,
            success=success,
            error_message=error_message,
        )
    except Exception:
        logger.warning("usage write failed chatbot=%s user=%s", turn.chatbot_id, turn.user_id, exc_info=True)


def stream_chat_events(turn: ChatTurn) -> Iterator[Dict[str, Any]]:
    """Run one chat turn, yielding ``metadata``, ``content``, ``failover``, ``error`` and ``done`` events.

    The fallback provider is tried only when the primary fails before producing any
    content and within ``FAILOVER_WINDOW_SECONDS`` of the turn start. The stream
    always ends with a ``done`` event.
    """
    started = time.monotonic()
    chatbot = _load_chatbot(turn)
    model_override = (chatbot or {}).get("model_name")
    system_prompt = (chatbot or {}).get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    primary = (chatbot or {}).get("primary_provider") or providers.default_provider()
    fallback = (chatbot or {}).get("fallback_provider")

    knowledge_text = ""
    sources: List[Dict[str, Any]] = []
    if turn.use_knowledge_base:
        try:
            context = knowledge.build_context(turn.tenant_id, turn.message)
            knowledge_text, sources = context.text, context.sources
        except Exception:
            logger.warning("knowledge retrieval failed tenant=%s", turn.tenant_id, exc_info=True)
    prompt = turn.message + knowledge_text

    logger.info(
        "chat turn conversation=%s user=%s chatbot=%s kb=%s",
        turn.conversation_id,
        turn.user_id,
        turn.chatbot_id,
        turn.use_knowledge_base,
    )

    parts: List[str] = []
    used_provider: Dict[str, Any] = primary
    model = providers.resolve_model(primary, model_override)
    failover_count = 0

    yield {
        "type": "metadata",
        "provider": primary.get("name") or "Default",
        "model": model,
        "sources": sources,
    }

    try:
        try:
            for delta in providers.stream_completion(primary, prompt, system_prompt, model_override):
                parts.append(delta)
                yield {"type": "content", "content": delta}
        except Exception as primary_exc:
            failover_count += 1
            elapsed = time.monotonic() - started
            logger.warning(
                "primary provider failed provider=%s elapsed=%.2fs err=%s",
                primary.get("name"),
                elapsed,
                primary_exc,
            )
            if fallback is None or parts or elapsed >= FAILOVER_WINDOW_SECONDS:
                raise
            PROVIDER_FAILOVERS.inc()
            yield {"type": "failover", "message": FAILOVER_NOTICE}
            used_provider = fallback
            model = providers.resolve_model(fallback, model_override)
            for delta in providers.stream_completion(fallback, prompt, system_prompt, model_override):
                parts.append(delta)
                yield {"type": "content", "content": delta}
    except Exception as exc:
        response_time_ms = int((time.monotonic() - started) * 1000)
        error_message = str(exc) or exc.__class__.__name__
        logger.exception("chat turn failed conversation=%s user=%s", turn.conversation_id, turn.user_id)
        CHAT_TURNS.labels(status="error").inc()
        yield {"type": "error", "content": error_message}
        _record_usage(
            turn,
            provider=used_provider,
            model=model,
            response_time_ms=response_time_ms,
            success=False,
            error_message=error_message,
        )
        _persist_failure(turn, error_message)
        yield {"type": "done"}
        return

    response = "".join(parts)
    response_time_ms = int((time.monotonic() - started) * 1000)
    CHAT_LATENCY.observe(response_time_ms / 1000.0)
    CHAT_TURNS.labels(status="failover" if failover_count else "success").inc()
    logger.info(
        "chat turn complete conversation=%s provider=%s ms=%s chars=%s",
        turn.conversation_id,
        used_provider.get("name"),
        response_time_ms,
        len(response),
    )
    _record_usage(turn, provider=used_provider, model=model, response_time_ms=response_time_ms, success=True)
    _persist_success(
        turn,
        response=response,
        provider=used_provider,
        model=model,
        response_time_ms=response_time_ms,
        failover_count=failover_count,
        sources=sources,
    )
    yield {"type": "done"}


def complete_chat(turn: ChatTurn) -> Dict[str, Any]:
    """Non-streaming chat turn built on the same event sequence."""
    metadata: Dict[str, Any] = {}
    parts: List[str] = []
    error: Optional[str] = None
    failover = False
    for event in stream_chat_events(turn):
        kind = event.get("type")
        if kind == "metadata":
            metadata = event
        elif kind == "content":
            parts.append(event.get("content") or "")
        elif kind == "failover":
            failover = True
        elif kind == "error":
            error = event.get("content") or "Unknown error"
    return {
        "success": error is None,
        "response": "".join(parts) if error is None else ERROR_REPLY,
        "provider": metadata.get("provider"),
        "model": metadata.get("model"),
        "sources": metadata.get("sources") or [],
        "failover": failover,
        "error": error,
    }


def generate_title(conversation: str) -> str:
    text = (conversation or "").strip()
    if not text:
        raise ValueError("Conversation text is required")
    provider = providers.default_provider()
    if not provider.get("api_key"):
        raise RuntimeError("OPENAI_API_KEY not configured")
    llm = providers.build_chat_model(provider, TITLE_MODEL, max_tokens=50)
    reply = llm.invoke(
        [
            SystemMessage(content=TITLE_SYSTEM_PROMPT),
            HumanMessage(content=f"Generate a short title for this conversation:\n\n{text}"),
        ]
    )
    content = getattr(reply, "content", "")
    title = content.strip().strip('"').strip() if isinstance(content, str) else ""
    if not title:
        raise ValueError("No title generated")
    return title[:TITLE_MAX_CHARS]
