from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from celery import Celery

logger = logging.getLogger(__name__)

BROKER_URL = os.getenv("CELERY_BROKER_URL", "").strip()
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "").strip() or BROKER_URL
ENABLE_CELERY = bool(BROKER_URL)

celery_app: Optional[Celery] = None
if ENABLE_CELERY:
    celery_app = Celery(
        "zyria",
        broker=BROKER_URL,
        backend=RESULT_BACKEND or None,
    )
    celery_app.conf.update(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_default_queue="default",
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "600")),
        task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "540")),
    )
else:
    logger.warning("Celery not enabled (no CELERY_BROKER_URL); tasks will run inline.")


def enqueue_process_document(document_id: str, user_id: Optional[str] = None):
    from .ingestion_worker import process_document_inline

    if celery_app:
        return process_document_task.delay(document_id=document_id, user_id=user_id)
    return process_document_inline(document_id=document_id, user_id=user_id)


def enqueue_provider_health_sweep(tenant_id: Optional[str] = None):
    from .ingestion_worker import run_provider_sweep

    if celery_app:
        return provider_health_sweep_task.delay(tenant_id=tenant_id)
    return run_provider_sweep(tenant_id=tenant_id)


if celery_app:

    @celery_app.task(
        bind=True,
        autoretry_for=(Exception,),
        retry_backoff=True,
        retry_kwargs={"max_retries": 3},
    )
    def process_document_task(self, *, document_id: str, user_id: Optional[str] = None) -> str:  # type: ignore
        from .ingestion_worker import process_document_inline

        process_document_inline(document_id=document_id, user_id=user_id)
        return document_id

    @celery_app.task(bind=True, retry_kwargs={"max_retries": 3})
    def provider_health_sweep_task(self, *, tenant_id: Optional[str] = None) -> Dict[str, Any]:  # type: ignore
        from .ingestion_worker import run_provider_sweep

        return run_provider_sweep(tenant_id=tenant_id)
