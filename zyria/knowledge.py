from __future__ import annotations

import logging
import math
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pdfplumber
from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_text_splitters import RecursiveCharacterTextSplitter

from . import storage

logger = logging.getLogger(__name__)


EMBED_MODEL = os.getenv(
    "EMBED_MODEL", "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
)
CONTENT_PREVIEW_CHARS = 4000
SNIPPET_CHARS = 200
CONTEXT_CHARS = 500

_TEXT_SPLITTER: Optional[RecursiveCharacterTextSplitter] = None
_EMBEDDINGS: Optional[HuggingFaceEmbeddings] = None


@dataclass
class KnowledgeContext:
    text: str
    sources: List[Dict[str, Any]]


def _get_text_splitter() -> RecursiveCharacterTextSplitter:
    global _TEXT_SPLITTER
    if _TEXT_SPLITTER is None:
        _TEXT_SPLITTER = RecursiveCharacterTextSplitter(
            chunk_size=800,
            chunk_overlap=200,
            separators=["\n\n", "\n", ".", "!", "?", ",", " ", ""],
        )
    return _TEXT_SPLITTER


def _get_embedding_model() -> HuggingFaceEmbeddings:
    global _EMBEDDINGS
    if _EMBEDDINGS is None:
        logger.info("loading embedding model %s", EMBED_MODEL)
        _EMBEDDINGS = HuggingFaceEmbeddings(
            model_name=EMBED_MODEL,
            encode_kwargs={"normalize_embeddings": True},
        )
    return _EMBEDDINGS


def _embed_texts(texts: Sequence[str]) -> List[List[float]]:
    if not texts:
        return []
    model = _get_embedding_model()
    return model.embed_documents(list(texts))


def _embed_query(text: str) -> List[float]:
    return _get_embedding_model().embed_query(text)


def _format_snippet(text: str, *, max_length: int = 300) -> str:
    snippet = " ".join(text.split())
    if len(snippet) <= max_length:
        return snippet
    return snippet[: max_length - 1].rstrip() + "..."


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a)) or 1e-9
    norm_b = math.sqrt(sum(y * y for y in b)) or 1e-9
    return dot / (norm_a * norm_b)


def _extract_pdf_text(file_path: Path) -> str:
    pages: List[str] = []
    with pdfplumber.open(file_path) as pdf:
        for page in pdf.pages:
            text = page.extract_text() or ""
            if text.strip():
                pages.append(text)
    return "\n\n".join(pages)


def extract_text(file_path: Path) -> str:
    if file_path.suffix.lower() == ".pdf":
        return _extract_pdf_text(file_path)
    try:
        return file_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return file_path.read_text(encoding="utf-8", errors="ignore")


def process_document(document_id: str) -> Dict[str, Any]:
    """Extract, chunk and embed an uploaded document, moving it to ``ready``.

    Empty documents end in ``error``. Unexpected failures also mark the document
    ``error`` and are re-raised so a worker can retry.
    """
    doc = storage.get_document(document_id)
    if doc is None:
        raise LookupError(f"Document not found: {document_id}")
    path = doc.get("path")
    if not path or not Path(path).exists():
        storage.update_document_status(document_id, status="error", error="Document file is missing.")
        raise RuntimeError(f"source not found: {path}")

    file_path = Path(path)
    tenant_id = doc.get("tenant_id")
    storage.update_document_status(document_id, status="processing", error=None)
    logger.info("processing document doc_id=%s tenant=%s path=%s", document_id, tenant_id, file_path)

    try:
        text = extract_text(file_path)
        pieces = [piece for piece in _get_text_splitter().split_text(text) if piece.strip()]
        if not pieces:
            storage.update_document_status(
                document_id, status="error", error="Document contains no readable content."
            )
            logger.warning("document empty doc_id=%s", document_id)
            return storage.get_document(document_id) or {}

        embeddings = _embed_texts(pieces)
        chunk_payloads = [
            {
                "id": uuid.uuid4().hex,
                "chunk_index": idx,
                "content": piece,
                "embedding": embedding,
                "metadata": {"filename": doc["filename"], "chunk_index": idx, "document_id": document_id},
            }
            for idx, (piece, embedding) in enumerate(zip(pieces, embeddings))
        ]
        storage.delete_chunks_for_document(document_id)
        storage.store_chunks(document_id=document_id, tenant_id=tenant_id, chunks=chunk_payloads)
        storage.update_document_status(
            document_id,
            status="ready",
            error=None,
            content=text[:CONTENT_PREVIEW_CHARS],
        )
    except Exception as exc:
        logger.exception("document processing failed doc_id=%s", document_id)
        storage.update_document_status(document_id, status="error", error=str(exc))
        raise

    logger.info("document processed doc_id=%s chunks=%s", document_id, len(chunk_payloads))
    return storage.get_document(document_id) or {}


def retrieve(
    *,
    tenant_id: Optional[str],
    query: str,
    top_k: int = 5,
    min_score: float = 0.2,
) -> List[Dict[str, Any]]:
    normalized = (query or "").strip()
    if not normalized:
        return []
    chunks = list(storage.iter_tenant_chunks(tenant_id))
    if not chunks:
        return []
    query_vector = _embed_query(normalized)

    scored: List[Tuple[float, Dict[str, Any]]] = []
    for chunk in chunks:
        score = _cosine_similarity(query_vector, chunk["embedding"])
        if score < min_score:
            continue
        scored.append(
            (
                score,
                {
                    "chunk_id": chunk["id"],
                    "document_id": chunk["document_id"],
                    "filename": chunk.get("filename"),
                    "file_url": chunk.get("file_url"),
                    "content": chunk["content"],
                    "score": round(float(score), 4),
                },
            )
        )
    scored.sort(key=lambda item: item[0], reverse=True)
    return [item for _, item in scored[:top_k]]


def _confidence(score: Optional[float]) -> str:
    if score is None:
        return "medium"
    if score >= 0.75:
        return "high"
    if score >= 0.45:
        return "medium"
    return "low"


def build_context(tenant_id: Optional[str], query: str, *, top_k: int = 5) -> KnowledgeContext:
    """Prompt context plus citation sources for a chat turn.

    Uses embedding retrieval when chunks exist, else the latest ready documents.
    """
    hits = retrieve(tenant_id=tenant_id, query=query, top_k=top_k)
    entries: List[Tuple[str, str, Optional[str], Optional[float]]] = [
        (hit.get("filename") or "document", hit["content"], hit.get("file_url"), hit["score"]) for hit in hits
    ]
    if not entries:
        for doc in storage.list_documents(tenant_id, status="ready", limit=top_k):
            entries.append((doc["filename"], doc.get("content") or "", doc.get("file_url"), None))
    if not entries:
        return KnowledgeContext(text="", sources=[])

    text = "\n\nRelevant context from knowledge base:\n" + "\n".join(
        f"[{title}]: {content[:CONTEXT_CHARS]}" for title, content, _, _ in entries
    )
    sources = [
        {
            "title": title,
            "url": url or "#",
            "snippet": _format_snippet(content, max_length=SNIPPET_CHARS),
            "confidence": _confidence(score),
            "type": "document",
            "isKnowledgeBase": True,
        }
        for title, content, url, score in entries
    ]
    return KnowledgeContext(text=text, sources=sources)


def search_documents(tenant_id: Optional[str], query: str) -> List[Dict[str, Any]]:
    normalized = (query or "").strip()
    if not normalized:
        return []
    return storage.search_documents(tenant_id, normalized)
