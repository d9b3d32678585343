"""Tests for the REST API: onboarding, access control, tasks, documents and providers."""

from unittest.mock import patch

from zyria import storage


def as_user(user_id):
    return {"X-User-Id": user_id}


def test_identity_is_required(client):
    resp = client.get("/profiles/me")

    assert resp.status_code == 401


def test_onboarding_creates_tenant_and_admin(client, monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)

    resp = client.post(
        "/tenants",
        json={
            "name": "Initech Labs",
            "admin_email": "carol@initech.test",
            "admin_name": "Carol",
            "team_emails": ["dave@initech.test", " "],
        },
        headers=as_user("carol"),
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["tenant"]["slug"] == "initech-labs"
    assert body["profile"]["role"] == "admin"
    assert len(body["invitations"]) == 1
    assert body["invitations"][0]["email_sent"] is False

    profile = storage.get_profile("carol")
    assert profile["tenant_id"] == body["tenant"]["id"]
    assert profile["onboarding_completed"] is True

    again = client.post("/tenants", json={"name": "Second"}, headers=as_user("carol"))
    assert again.status_code == 400


def test_duplicate_slug_rejected(client, tenant):
    resp = client.post("/tenants", json={"name": "Acme"}, headers=as_user("newcomer"))

    assert resp.status_code == 400


def test_tenant_listing_is_global_admin_only(client, tenant, admin_profile):
    assert client.get("/tenants", headers=as_user("alice")).status_code == 403

    resp = client.get("/tenants", headers=as_user("root-admin"))
    assert resp.status_code == 200
    assert [item["slug"] for item in resp.json()["items"]] == ["acme"]


def test_admin_routes_reject_members(client, member_profile):
    assert client.get("/admin/users", headers=as_user("bob")).status_code == 403
    assert client.get("/providers", headers=as_user("bob")).status_code == 403
    assert client.post("/chatbots", json={"name": "x"}, headers=as_user("bob")).status_code == 403


def test_suspended_user_is_blocked(client, admin_profile, member_profile):
    resp = client.patch("/admin/users/bob", json={"status": "suspended"}, headers=as_user("alice"))
    assert resp.status_code == 200

    assert client.get("/profiles/me", headers=as_user("bob")).status_code == 403


def test_invitation_accept_flow(client, monkeypatch, tenant, admin_profile):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    created = client.post(
        "/admin/invitations",
        json={"email": "erin@acme.test", "role": "moderator"},
        headers=as_user("alice"),
    )
    assert created.status_code == 201
    token = created.json()["token"]

    accepted = client.post(f"/invitations/{token}/accept", headers=as_user("erin"))

    assert accepted.status_code == 200
    profile = accepted.json()["profile"]
    assert profile["tenant_id"] == tenant["id"]
    assert profile["role"] == "moderator"
    assert client.post(f"/invitations/{token}/accept", headers=as_user("erin")).status_code == 400


def test_task_lifecycle(client, member_profile):
    created = client.post(
        "/tasks",
        json={"title": "Draft proposal", "priority": "high", "category": "follow-up"},
        headers=as_user("bob"),
    )
    assert created.status_code == 201
    task_id = created.json()["id"]

    toggled = client.post(f"/tasks/{task_id}/toggle", headers=as_user("bob"))
    assert toggled.json()["completed"] is True

    assert client.patch(f"/tasks/{task_id}", json={"priority": "urgent"}, headers=as_user("bob")).status_code == 400
    assert client.patch(f"/tasks/{task_id}", json={}, headers=as_user("bob")).status_code == 400
    assert client.post(f"/tasks/{task_id}/toggle", headers=as_user("alice")).status_code == 404

    items = client.get("/tasks", headers=as_user("bob")).json()["items"]
    assert [item["title"] for item in items] == ["Draft proposal"]
    assert client.delete(f"/tasks/{task_id}", headers=as_user("bob")).status_code == 200


def test_conversation_management(client, member_profile):
    created = client.post("/conversations", json={"title": "Roadmap"}, headers=as_user("bob"))
    assert created.status_code == 201
    conversation_id = created.json()["id"]

    renamed = client.patch(
        f"/conversations/{conversation_id}", json={"title": "Roadmap 2025"}, headers=as_user("bob")
    )
    assert renamed.json()["title"] == "Roadmap 2025"

    assert client.get(f"/conversations/{conversation_id}", headers=as_user("alice")).status_code == 404
    assert client.post(f"/conversations/{conversation_id}/archive", headers=as_user("bob")).status_code == 200
    active = client.get("/conversations?include_archived=false", headers=as_user("bob")).json()["items"]
    assert active == []

    assert client.delete(f"/conversations/{conversation_id}", headers=as_user("bob")).status_code == 200
    assert client.get(f"/conversations/{conversation_id}", headers=as_user("bob")).status_code == 404


def test_document_upload_queues_processing(client, member_profile):
    with patch("zyria.main.enqueue_process_document") as enqueue:
        resp = client.post(
            "/documents",
            files={"file": ("notes.txt", b"Quarterly goals and owners.", "text/plain")},
            headers=as_user("bob"),
        )

    assert resp.status_code == 202
    document_id = resp.json()["id"]
    enqueue.assert_called_once_with(document_id, "bob")
    doc = storage.get_document(document_id)
    assert doc["status"] == "pending"
    assert doc["tenant_id"] == member_profile["tenant_id"]

    listed = client.get("/documents?status=pending", headers=as_user("bob")).json()["items"]
    assert [item["id"] for item in listed] == [document_id]
    assert client.get("/documents?status=bogus", headers=as_user("bob")).status_code == 400


def test_document_upload_rejects_bad_extension(client, member_profile):
    with patch("zyria.main.enqueue_process_document") as enqueue:
        resp = client.post(
            "/documents",
            files={"file": ("payload.exe", b"MZ", "application/octet-stream")},
            headers=as_user("bob"),
        )

    assert resp.status_code == 400
    enqueue.assert_not_called()


def test_document_delete_restricted_to_uploader_or_admin(client, tenant, admin_profile, member_profile):
    storage.upsert_profile("mia", tenant_id=tenant["id"], role="user")
    with patch("zyria.main.enqueue_process_document"):
        document_id = client.post(
            "/documents",
            files={"file": ("notes.txt", b"Team notes.", "text/plain")},
            headers=as_user("bob"),
        ).json()["id"]

    assert client.delete(f"/documents/{document_id}", headers=as_user("mia")).status_code == 403
    assert client.delete(f"/documents/{document_id}", headers=as_user("alice")).status_code == 200
    assert storage.get_document(document_id) is None


def test_provider_key_never_returned(client, admin_profile):
    created = client.post(
        "/providers",
        json={"name": "OpenAI", "type": "openai", "api_key": "sk-secret", "config": {"model": "gpt-4o"}},
        headers=as_user("alice"),
    )

    assert created.status_code == 201
    body = created.json()
    assert "api_key" not in body
    assert body["has_api_key"] is True

    listed = client.get("/providers", headers=as_user("alice")).json()["items"]
    assert all("api_key" not in item for item in listed)

    audit = client.get(f"/providers/{body['id']}/audit", headers=as_user("alice")).json()["items"]
    assert audit[0]["action"] == "created"


def test_provider_validation(client, admin_profile):
    unsupported = client.post("/providers", json={"name": "X", "type": "cohere"}, headers=as_user("alice"))
    assert unsupported.status_code == 400

    custom = client.post("/providers", json={"name": "In-house", "type": "custom"}, headers=as_user("alice"))
    assert custom.status_code == 400

    shared = client.post(
        "/providers", json={"name": "Shared", "type": "openai", "shared": True}, headers=as_user("alice")
    )
    assert shared.status_code == 403


def test_chatbot_visibility(client, tenant, admin_profile, member_profile):
    created = client.post("/chatbots", json={"name": "Helpdesk"}, headers=as_user("alice"))
    assert created.status_code == 201
    chatbot_id = created.json()["id"]
    client.patch(f"/chatbots/{chatbot_id}", json={"is_active": False}, headers=as_user("alice"))

    member_view = client.get("/chatbots", headers=as_user("bob")).json()["items"]
    admin_view = client.get("/chatbots", headers=as_user("alice")).json()["items"]

    assert member_view == []
    assert [item["id"] for item in admin_view] == [chatbot_id]


def test_notifications_and_dashboard(client, tenant, member_profile):
    note = storage.create_notification(user_id="bob", tenant_id=tenant["id"], title="Welcome")

    assert client.post(f"/notifications/{note['id']}/read", headers=as_user("bob")).status_code == 200
    assert client.get("/notifications?unread_only=true", headers=as_user("bob")).json()["items"] == []

    stats = client.get("/dashboard/stats", headers=as_user("bob")).json()
    assert stats["unread_notifications"] == 0
    assert stats["tasks"] == {"open": 0, "completed": 0}


def test_health_and_metrics(client):
    assert client.get("/health").json()["status"] == "ok"
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert b"chat_turns_total" in metrics.content
