"""Tests for streamed chat turns, provider failover and title generation."""

import json
from unittest.mock import MagicMock, patch

import pytest

from zyria import chat, storage
from zyria.knowledge import KnowledgeContext


def parse_sse_events(text: str):
    events = []
    for block in text.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


def as_user(user_id):
    return {"X-User-Id": user_id}


def _chatbot_with_fallback(tenant):
    primary = storage.create_provider(
        tenant_id=tenant["id"], name="Primary", type="openai", api_key="sk-primary", config={"model": "gpt-4o"}
    )
    backup = storage.create_provider(
        tenant_id=tenant["id"], name="Backup", type="mistral", api_key="sk-backup", config={"model": "mistral-large"}
    )
    bot = storage.create_chatbot(
        tenant_id=tenant["id"],
        name="Support",
        system_prompt="You answer support questions.",
        primary_provider_id=primary["id"],
        fallback_provider_id=backup["id"],
    )
    return bot, primary, backup


def test_stream_success_persists_both_messages(client, member_profile):
    with patch("zyria.providers.stream_completion", return_value=iter(["Hello", " there"])):
        resp = client.post("/chat/stream", json={"message": "Hi"}, headers=as_user("bob"))

    assert resp.status_code == 200
    events = parse_sse_events(resp.text)
    assert [event["type"] for event in events] == ["metadata", "content", "content", "done"]
    assert events[0]["provider"] == "OpenAI (Default)"
    assert events[0]["sources"] == []

    conversation_id = resp.headers["X-Conversation-Id"]
    messages = storage.list_messages(conversation_id)
    assert [(m["role"], m["content"]) for m in messages] == [("user", "Hi"), ("assistant", "Hello there")]
    assert messages[1]["metadata"]["failover_count"] == 0
    assert messages[1]["metadata"]["provider"] == "OpenAI (Default)"

    usage = storage.list_chatbot_usage()
    assert len(usage) == 1
    assert usage[0]["success"] is True


def test_primary_failure_switches_to_fallback(client, tenant, member_profile):
    bot, primary, backup = _chatbot_with_fallback(tenant)

    def fake_stream(provider, prompt, system_prompt, model=None):
        if provider["id"] == primary["id"]:
            raise RuntimeError("primary down")
        return iter(["From backup"])

    with patch("zyria.providers.stream_completion", side_effect=fake_stream):
        resp = client.post(
            "/chat/stream",
            json={"message": "Help", "chatbot_id": bot["id"]},
            headers=as_user("bob"),
        )

    events = parse_sse_events(resp.text)
    assert [event["type"] for event in events] == ["metadata", "failover", "content", "done"]
    assert events[0]["provider"] == "Primary"
    assert events[1]["message"] == chat.FAILOVER_NOTICE

    messages = storage.list_messages(resp.headers["X-Conversation-Id"])
    assert messages[-1]["content"] == "From backup"
    assert messages[-1]["metadata"]["provider"] == "Backup"
    assert messages[-1]["metadata"]["model"] == "mistral-large"
    assert messages[-1]["metadata"]["failover_count"] == 1

    usage = storage.list_chatbot_usage(bot["id"])
    assert usage[0]["provider_id"] == backup["id"]


def test_no_failover_outside_window(client, tenant, member_profile, monkeypatch):
    bot, primary, _ = _chatbot_with_fallback(tenant)
    monkeypatch.setattr(chat, "FAILOVER_WINDOW_SECONDS", 0.0)

    with patch("zyria.providers.stream_completion", side_effect=RuntimeError("primary down")) as stream:
        resp = client.post(
            "/chat/stream",
            json={"message": "Help", "chatbot_id": bot["id"]},
            headers=as_user("bob"),
        )

    events = parse_sse_events(resp.text)
    assert [event["type"] for event in events] == ["metadata", "error", "done"]
    assert stream.call_count == 1


def test_failure_after_content_does_not_fail_over(tenant, member_profile):
    bot, primary, _ = _chatbot_with_fallback(tenant)

    def broken_stream():
        yield "partial"
        raise RuntimeError("connection reset")

    with patch("zyria.providers.stream_completion", return_value=broken_stream()) as stream:
        turn = chat.ChatTurn(message="Hi", user_id="bob", tenant_id=tenant["id"], chatbot_id=bot["id"])
        events = list(chat.stream_chat_events(turn))

    assert [event["type"] for event in events] == ["metadata", "content", "error", "done"]
    assert stream.call_count == 1


def test_error_persists_apology(client, member_profile):
    with patch("zyria.providers.stream_completion", side_effect=ValueError("Provider has no API key configured")):
        resp = client.post("/chat/stream", json={"message": "Hi"}, headers=as_user("bob"))

    events = parse_sse_events(resp.text)
    assert events[-2] == {"type": "error", "content": "Provider has no API key configured"}
    assert events[-1] == {"type": "done"}

    messages = storage.list_messages(resp.headers["X-Conversation-Id"])
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["content"] == chat.ERROR_REPLY
    assert messages[1]["metadata"]["error"] == "Provider has no API key configured"

    usage = storage.list_chatbot_usage()
    assert usage[0]["success"] is False
    assert usage[0]["error_message"] == "Provider has no API key configured"


def test_foreign_conversation_is_rejected(client, tenant, admin_profile, member_profile):
    conversation = storage.create_conversation("alice", tenant_id=tenant["id"], title="Private")

    resp = client.post(
        "/chat/stream",
        json={"message": "Hi", "conversation_id": conversation["id"]},
        headers=as_user("bob"),
    )

    assert resp.status_code == 404


def test_knowledge_sources_in_metadata(client, member_profile):
    context = KnowledgeContext(
        text="\n\nRelevant context from knowledge base:\n[handbook.txt]: Holidays are 25 days.",
        sources=[{"title": "handbook.txt", "url": "#", "snippet": "Holidays are 25 days.", "confidence": "high"}],
    )
    with patch("zyria.knowledge.build_context", return_value=context) as build, patch(
        "zyria.providers.stream_completion", return_value=iter(["25 days."])
    ) as stream:
        resp = client.post(
            "/chat/stream",
            json={"message": "How many holidays?", "use_knowledge_base": True},
            headers=as_user("bob"),
        )

    events = parse_sse_events(resp.text)
    assert events[0]["sources"][0]["title"] == "handbook.txt"
    build.assert_called_once()
    prompt = stream.call_args.args[1]
    assert prompt.startswith("How many holidays?")
    assert "Holidays are 25 days." in prompt

    messages = storage.list_messages(resp.headers["X-Conversation-Id"])
    assert messages[-1]["metadata"]["sources"][0]["title"] == "handbook.txt"


def test_non_streaming_chat(client, member_profile):
    with patch("zyria.providers.stream_completion", return_value=iter(["All ", "good"])):
        resp = client.post("/chat", json={"message": "Status?"}, headers=as_user("bob"))

    body = resp.json()
    assert body["success"] is True
    assert body["response"] == "All good"
    assert body["failover"] is False
    assert storage.get_conversation(body["conversation_id"]) is not None


def test_edge_function_stream(client, member_profile):
    with patch("zyria.providers.stream_completion", return_value=iter(["Hi!"])):
        resp = client.post(
            "/functions/v1/ai-chat-stream",
            json={"message": "Hello", "conversationId": "conv-edge", "userId": "bob"},
            headers=as_user("bob"),
        )

    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    assert [event["type"] for event in parse_sse_events(resp.text)] == ["metadata", "content", "done"]
    assert len(storage.list_messages("conv-edge")) == 2


def test_edge_stream_rejects_other_user_id(client, member_profile):
    with patch("zyria.providers.stream_completion") as stream:
        resp = client.post(
            "/functions/v1/ai-chat-stream",
            json={"message": "Hello", "conversationId": "conv-spoof", "userId": "bob"},
            headers=as_user("mallory"),
        )

    assert resp.status_code == 403
    assert resp.json()["success"] is False
    stream.assert_not_called()
    assert storage.get_conversation("conv-spoof") is None


def test_edge_stream_takes_identity_from_caller(client, member_profile):
    with patch("zyria.providers.stream_completion", return_value=iter(["Hi!"])):
        resp = client.post(
            "/functions/v1/ai-chat-stream",
            json={"message": "Hello", "conversation_id": "conv-snake", "use_knowledge_base": False},
            headers=as_user("bob"),
        )

    assert resp.status_code == 200
    conversation = storage.get_conversation("conv-snake")
    assert conversation["user_id"] == "bob"
    assert conversation["tenant_id"] == member_profile["tenant_id"]


def test_edge_stream_rejects_blank_message(client, member_profile):
    with patch("zyria.providers.stream_completion") as stream:
        resp = client.post(
            "/functions/v1/ai-chat-stream",
            json={"message": "   ", "conversationId": "conv-blank"},
            headers=as_user("bob"),
        )

    assert resp.status_code == 400
    stream.assert_not_called()
    assert storage.get_conversation("conv-blank") is None


def _foreign_chatbot():
    other = storage.create_tenant(name="Other Inc", slug="other")
    provider = storage.create_provider(tenant_id=other["id"], name="Other", type="openai", api_key="sk-other")
    return storage.create_chatbot(tenant_id=other["id"], name="Other bot", primary_provider_id=provider["id"])


def test_chatbot_from_another_tenant_is_rejected(client, member_profile):
    bot = _foreign_chatbot()

    with patch("zyria.providers.stream_completion") as stream:
        rest = client.post("/chat/stream", json={"message": "Hi", "chatbot_id": bot["id"]}, headers=as_user("bob"))
        edge = client.post(
            "/functions/v1/ai-chat-stream",
            json={"message": "Hi", "chatbotId": bot["id"]},
            headers=as_user("bob"),
        )

    assert rest.status_code == 404
    assert edge.status_code == 404
    stream.assert_not_called()
    assert storage.list_chatbot_usage(bot["id"]) == []


def test_turn_ignores_chatbot_outside_its_tenant(tenant, member_profile):
    bot = _foreign_chatbot()

    with patch("zyria.providers.stream_completion", return_value=iter(["ok"])) as stream:
        turn = chat.ChatTurn(message="Hi", user_id="bob", tenant_id=tenant["id"], chatbot_id=bot["id"])
        events = list(chat.stream_chat_events(turn))

    assert events[0]["provider"] == "OpenAI (Default)"
    assert stream.call_args.args[0]["api_key"] != "sk-other"


def test_shared_chatbot_is_usable_from_any_tenant(client, member_profile):
    bot = storage.create_chatbot(tenant_id=None, name="Shared helper", system_prompt="Be brief.")

    with patch("zyria.providers.stream_completion", return_value=iter(["ok"])) as stream:
        resp = client.post("/chat/stream", json={"message": "Hi", "chatbot_id": bot["id"]}, headers=as_user("bob"))

    assert resp.status_code == 200
    assert stream.call_args.args[2] == "Be brief."


def test_generate_title_trims_quotes_and_length():
    llm = MagicMock()
    llm.invoke.return_value = MagicMock(content='"' + "Quarterly planning " * 5 + '"')

    with patch("zyria.providers.build_chat_model", return_value=llm) as build:
        title = chat.generate_title("user: let's plan the quarter")

    assert len(title) == chat.TITLE_MAX_CHARS
    assert title.startswith("Quarterly planning")
    assert not title.startswith('"')
    assert build.call_args.args[1] == chat.TITLE_MODEL


def test_generate_title_rejects_empty_reply():
    llm = MagicMock()
    llm.invoke.return_value = MagicMock(content='""')

    with patch("zyria.providers.build_chat_model", return_value=llm):
        with pytest.raises(ValueError, match="No title generated"):
            chat.generate_title("something")


def test_generate_title_requires_text():
    with pytest.raises(ValueError):
        chat.generate_title("   ")
