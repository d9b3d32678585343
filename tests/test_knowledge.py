"""Tests for document ingestion and knowledge-base retrieval."""

from unittest.mock import patch

import pytest

from zyria import ingestion_worker, knowledge, storage


def _fake_embed_texts(texts):
    # one axis per topic keeps similarities predictable
    return [[1.0, 0.0] if "holiday" in text.lower() else [0.0, 1.0] for text in texts]


@pytest.fixture
def uploaded(tmp_path, tenant):
    def _upload(filename, text):
        path = tmp_path / filename
        path.write_text(text, encoding="utf-8")
        return storage.create_document(
            tenant_id=tenant["id"],
            uploaded_by="bob",
            filename=filename,
            path=str(path),
            file_url=f"/documents/{filename}/download",
        )

    return _upload


def test_process_document_stores_chunks(uploaded, tenant):
    doc = uploaded("handbook.txt", "Holiday allowance is 25 days per year.")

    with patch("zyria.knowledge._embed_texts", side_effect=_fake_embed_texts):
        result = knowledge.process_document(doc["id"])

    assert result["status"] == "ready"
    assert result["content"].startswith("Holiday allowance")
    chunks = list(storage.iter_tenant_chunks(tenant["id"]))
    assert len(chunks) == 1
    assert chunks[0]["embedding"] == [1.0, 0.0]
    assert chunks[0]["filename"] == "handbook.txt"


def test_empty_document_ends_in_error(uploaded):
    doc = uploaded("blank.txt", "   \n\n ")

    with patch("zyria.knowledge._embed_texts") as embed:
        result = knowledge.process_document(doc["id"])

    assert result["status"] == "error"
    assert result["error"] == "Document contains no readable content."
    embed.assert_not_called()


def test_embedding_failure_marks_error_and_reraises(uploaded):
    doc = uploaded("notes.txt", "some notes")

    with patch("zyria.knowledge._embed_texts", side_effect=RuntimeError("model missing")):
        with pytest.raises(RuntimeError):
            knowledge.process_document(doc["id"])

    stored = storage.get_document(doc["id"])
    assert stored["status"] == "error"
    assert stored["error"] == "model missing"


def test_missing_file_marks_error(tenant):
    doc = storage.create_document(
        tenant_id=tenant["id"], uploaded_by="bob", filename="gone.txt", path="/nonexistent/gone.txt"
    )

    with pytest.raises(RuntimeError):
        knowledge.process_document(doc["id"])

    assert storage.get_document(doc["id"])["status"] == "error"


def test_retrieve_and_build_context(uploaded, tenant):
    holidays = uploaded("handbook.txt", "Holiday allowance is 25 days per year.")
    expenses = uploaded("expenses.txt", "Expenses are reimbursed monthly.")
    with patch("zyria.knowledge._embed_texts", side_effect=_fake_embed_texts):
        knowledge.process_document(holidays["id"])
        knowledge.process_document(expenses["id"])

    with patch("zyria.knowledge._embed_query", return_value=[1.0, 0.0]):
        hits = knowledge.retrieve(tenant_id=tenant["id"], query="how many holidays?")
        context = knowledge.build_context(tenant["id"], "how many holidays?")

    assert [hit["filename"] for hit in hits] == ["handbook.txt"]
    assert hits[0]["score"] == 1.0
    assert "[handbook.txt]: Holiday allowance" in context.text
    assert context.sources[0]["title"] == "handbook.txt"
    assert context.sources[0]["confidence"] == "high"
    assert context.sources[0]["isKnowledgeBase"] is True


def test_build_context_falls_back_to_latest_ready_documents(tenant):
    storage.create_document(
        tenant_id=tenant["id"],
        uploaded_by="bob",
        filename="faq.txt",
        path=None,
        status="ready",
        content="Office opens at 9am.",
    )

    context = knowledge.build_context(tenant["id"], "when does the office open?")

    assert "[faq.txt]: Office opens at 9am." in context.text
    assert context.sources[0]["confidence"] == "medium"
    assert context.sources[0]["url"] == "#"


def test_build_context_without_documents(tenant):
    context = knowledge.build_context(tenant["id"], "anything")

    assert context.text == ""
    assert context.sources == []


def test_worker_notifies_uploader(uploaded, member_profile):
    doc = uploaded("handbook.txt", "Holiday allowance is 25 days per year.")

    with patch("zyria.knowledge._embed_texts", side_effect=_fake_embed_texts):
        ingestion_worker.process_document_inline(document_id=doc["id"], user_id="bob")

    notifications = storage.list_notifications("bob")
    assert notifications[0]["title"] == "Document ready"
