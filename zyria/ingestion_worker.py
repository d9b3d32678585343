from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from . import knowledge, providers, storage

logger = logging.getLogger(__name__)


def _notify(user_id: Optional[str], tenant_id: Optional[str], title: str, body: str, kind: str) -> None:
    if not user_id:
        return
    try:
        storage.create_notification(user_id=user_id, tenant_id=tenant_id, title=title, body=body, kind=kind)
    except Exception:
        logger.warning("notification write failed user=%s title=%s", user_id, title, exc_info=True)


def process_document_inline(*, document_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Process one uploaded document and tell the uploader how it went."""
    doc = storage.get_document(document_id) or {}
    filename = doc.get("filename") or document_id
    tenant_id = doc.get("tenant_id")
    recipient = user_id or doc.get("uploaded_by")
    try:
        processed = knowledge.process_document(document_id)
    except Exception as exc:
        _notify(recipient, tenant_id, "Document processing failed", f"{filename}: {exc}", "error")
        raise

    if processed.get("status") == "ready":
        _notify(recipient, tenant_id, "Document ready", f"{filename} is now searchable.", "success")
    else:
        _notify(
            recipient,
            tenant_id,
            "Document processing failed",
            f"{filename}: {processed.get('error') or 'unknown error'}",
            "error",
        )
    return processed


def run_provider_sweep(tenant_id: Optional[str] = None) -> Dict[str, Any]:
    summary = providers.run_health_sweep(tenant_id)
    if summary["unhealthy"]:
        logger.warning(
            "provider sweep found unhealthy providers tenant=%s unhealthy=%s",
            tenant_id,
            summary["unhealthy"],
        )
    return summary
