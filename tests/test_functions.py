"""Tests for the /functions/v1 endpoints."""

from unittest.mock import MagicMock, patch

import requests

from zyria import storage


def _ok_response(payload):
    response = MagicMock()
    response.ok = True
    response.status_code = 200
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def test_preflight_returns_cors_headers(client):
    resp = client.options("/functions/v1/generate-title")

    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "x-client-info" in resp.headers["access-control-allow-headers"]


def test_generate_title_requires_conversation(client):
    resp = client.post("/functions/v1/generate-title", json={})

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Conversation text is required"}


def test_generate_title(client):
    with patch("zyria.chat.generate_title", return_value="Budget review") as generate:
        resp = client.post("/functions/v1/generate-title", json={"conversation": "user: budget?"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "title": "Budget review"}
    assert resp.headers["access-control-allow-origin"] == "*"
    generate.assert_called_once_with("user: budget?")


def test_generate_title_failure(client):
    with patch("zyria.chat.generate_title", side_effect=RuntimeError("OPENAI_API_KEY not configured")):
        resp = client.post("/functions/v1/generate-title", json={"conversation": "hello"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "OPENAI_API_KEY not configured"


def test_send_invitation_requires_fields(client):
    resp = client.post("/functions/v1/send-invitation", json={"email": "carol@acme.test"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing required fields: token, role"


def test_send_invitation(client, monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    session = MagicMock()
    session.post.return_value = _ok_response({"id": "msg_123"})

    with patch("zyria.emails._SESSION", session):
        resp = client.post(
            "/functions/v1/send-invitation",
            json={"email": "carol@acme.test", "token": "tok-1", "role": "moderator", "inviterName": "Alice"},
        )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "messageId": "msg_123"}
    payload = session.post.call_args.kwargs["json"]
    assert payload["to"] == ["carol@acme.test"]
    assert payload["subject"] == "You're invited to join Zyria as a moderator"
    assert "/invite/tok-1" in payload["text"]
    assert session.post.call_args.kwargs["headers"]["Authorization"] == "Bearer re_test"


def test_send_invitation_provider_error(client, monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("resend unreachable")

    with patch("zyria.emails._SESSION", session):
        resp = client.post(
            "/functions/v1/send-invitation",
            json={"email": "carol@acme.test", "token": "tok-1", "role": "user"},
        )

    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_password_reset_without_email_key(client, monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)

    resp = client.post("/functions/v1/send-password-reset", json={"email": "bob@acme.test"})

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Failed to send password reset notification"
    assert body["details"] == "RESEND_API_KEY not configured"


def test_password_reset(client, monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    session = MagicMock()
    session.post.return_value = _ok_response({"id": "msg_9"})

    with patch("zyria.emails._SESSION", session):
        resp = client.post(
            "/functions/v1/send-password-reset",
            json={"email": "bob@acme.test", "redirectTo": "https://app.zyria.test/reset"},
        )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Password reset notification sent successfully"}
    assert session.post.call_args.kwargs["json"]["subject"] == "Reset Your Zyria Password"


def test_password_reset_requires_email(client):
    resp = client.post("/functions/v1/send-password-reset", json={})

    assert resp.status_code == 400


def test_provider_health_check(client, tenant):
    provider = storage.create_provider(tenant_id=tenant["id"], name="OpenAI", type="openai", api_key="sk-test")
    session = MagicMock()
    session.get.return_value = _ok_response({"data": [{"id": "gpt-4o"}, {"id": "gpt-4o-mini"}]})

    with patch("zyria.providers._SESSION", session):
        resp = client.post("/functions/v1/ai-provider-health-check", json={"provider_id": provider["id"]})

    assert resp.status_code == 200
    body = resp.json()
    assert body["healthy"] is True
    assert body["available_models"] == ["gpt-4o", "gpt-4o-mini"]
    stored = storage.get_provider(provider["id"])
    assert stored["is_healthy"] is True
    assert stored["available_models"] == ["gpt-4o", "gpt-4o-mini"]


def test_provider_health_check_validation(client):
    assert client.post("/functions/v1/ai-provider-health-check", json={}).status_code == 400
    assert (
        client.post("/functions/v1/ai-provider-health-check", json={"provider_id": "missing"}).status_code == 404
    )


def test_daily_check_runs_sweep(client):
    summary = {"success": True, "checked": 3, "healthy": 2, "unhealthy": 1, "results": {}}
    with patch("zyria.functions.enqueue_provider_health_sweep", return_value=summary) as sweep:
        resp = client.post("/functions/v1/ai-providers-daily-check", json={"tenant_id": "t-1"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "checked": 3, "healthy": 2, "unhealthy": 1}
    sweep.assert_called_once_with("t-1")


def test_daily_check_queued_on_worker(client):
    async_result = MagicMock()
    async_result.id = "celery-task-1"
    with patch("zyria.functions.enqueue_provider_health_sweep", return_value=async_result):
        resp = client.post("/functions/v1/ai-providers-daily-check")

    assert resp.json() == {"success": True, "queued": True, "task_id": "celery-task-1"}
