"""Edge-function endpoints mounted under ``/functions/v1``.

Each function takes a JSON body and answers JSON carrying the CORS headers the
browser client expects. Failures become ``{"success": false, "error": ...}``
with a 4xx/5xx status rather than FastAPI's default error shape.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field
from starlette import status

from . import chat, emails, providers, storage
from .auth import Caller, get_caller
from .task_queue import enqueue_provider_health_sweep

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

router = APIRouter(prefix="/functions/v1", tags=["functions"])
preflight_router = APIRouter(prefix="/functions/v1", tags=["functions"])


class HealthCheckReq(BaseModel):
    provider_id: Optional[str] = None


class GenerateTitleReq(BaseModel):
    conversation: Optional[str] = None


class InvitationEmailReq(BaseModel):
    email: Optional[str] = None
    token: Optional[str] = None
    role: Optional[str] = None
    inviterName: Optional[str] = None


class PasswordResetReq(BaseModel):
    email: Optional[str] = None
    redirectTo: Optional[str] = None


class ChatStreamReq(BaseModel):
    message: str
    conversationId: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("conversationId", "conversation_id")
    )
    userId: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    useKnowledgeBase: bool = Field(
        default=False, validation_alias=AliasChoices("useKnowledgeBase", "use_knowledge_base")
    )
    chatbotId: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatbotId", "chatbot_id"))


class DailyCheckReq(BaseModel):
    tenant_id: Optional[str] = Field(default=None)


def _json(payload: Dict[str, Any], status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers=CORS_HEADERS)


@preflight_router.options("/{function_name}")
def preflight(function_name: str) -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@router.post("/ai-provider-health-check")
def ai_provider_health_check(body: HealthCheckReq):
    provider_id = (body.provider_id or "").strip()
    if not provider_id:
        return _json({"healthy": False, "error_message": "provider_id is required"}, status.HTTP_400_BAD_REQUEST)
    try:
        result = providers.run_health_check(provider_id)
    except LookupError as exc:
        return _json({"healthy": False, "error_message": str(exc)}, status.HTTP_404_NOT_FOUND)
    except Exception as exc:
        logger.exception("health check function failed provider=%s", provider_id)
        return _json({"healthy": False, "error_message": str(exc)}, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return _json(result)


@router.post("/ai-providers-daily-check")
def ai_providers_daily_check(body: Optional[DailyCheckReq] = None):
    tenant_id = body.tenant_id if body else None
    try:
        outcome = enqueue_provider_health_sweep(tenant_id)
    except Exception as exc:
        logger.exception("provider sweep failed tenant=%s", tenant_id)
        return _json({"success": False, "error": str(exc)}, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if not isinstance(outcome, dict):
        # dispatched to a Celery worker
        return _json({"success": True, "queued": True, "task_id": getattr(outcome, "id", None)})
    return _json({key: outcome[key] for key in ("success", "checked", "healthy", "unhealthy")})


@router.post("/generate-title")
def generate_title(body: GenerateTitleReq):
    conversation = (body.conversation or "").strip()
    if not conversation:
        return _json({"success": False, "error": "Conversation text is required"}, status.HTTP_400_BAD_REQUEST)
    try:
        title = chat.generate_title(conversation)
    except Exception as exc:
        logger.exception("title generation failed chars=%s", len(conversation))
        return _json({"success": False, "error": str(exc)}, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return _json({"success": True, "title": title})


@router.post("/send-invitation")
def send_invitation(body: InvitationEmailReq):
    missing = [name for name in ("email", "token", "role") if not (getattr(body, name) or "").strip()]
    if missing:
        return _json(
            {"success": False, "error": f"Missing required fields: {', '.join(missing)}"},
            status.HTTP_400_BAD_REQUEST,
        )
    try:
        message_id = emails.send_invitation(body.email, body.token, body.role, body.inviterName)
    except (RuntimeError, requests.RequestException) as exc:
        logger.warning("invitation email failed email=%s err=%s", body.email, exc)
        return _json({"success": False, "error": str(exc)}, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return _json({"success": True, "messageId": message_id})


@router.post("/send-password-reset")
def send_password_reset(body: PasswordResetReq):
    email = (body.email or "").strip()
    if not email:
        return _json({"success": False, "error": "email is required"}, status.HTTP_400_BAD_REQUEST)
    logger.info("password reset requested email=%s", email)
    try:
        emails.send_password_reset(email, body.redirectTo)
    except (RuntimeError, requests.RequestException) as exc:
        logger.warning("password reset email failed email=%s err=%s", email, exc)
        return _json(
            {"error": "Failed to send password reset notification", "details": str(exc)},
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return _json({"success": True, "message": "Password reset notification sent successfully"})


@router.post("/ai-chat-stream")
def ai_chat_stream(body: ChatStreamReq, caller: Caller = Depends(get_caller)):
    message = body.message.strip()
    if not message:
        return _json({"success": False, "error": "message is required"}, status.HTTP_400_BAD_REQUEST)
    if body.userId and body.userId != caller.user_id:
        logger.warning("chat stream user mismatch caller=%s body=%s", caller.user_id, body.userId)
        return _json({"success": False, "error": "userId does not match the signed-in user"}, status.HTTP_403_FORBIDDEN)
    if body.chatbotId:
        chatbot = storage.get_chatbot(body.chatbotId, active_only=False)
        if chatbot is None or not chat.chatbot_in_scope(chatbot, caller.tenant_id, caller.is_global_admin):
            return _json({"success": False, "error": "Chatbot not found"}, status.HTTP_404_NOT_FOUND)
    turn = chat.ChatTurn(
        message=message,
        user_id=caller.user_id,
        conversation_id=body.conversationId,
        tenant_id=caller.tenant_id,
        chatbot_id=body.chatbotId,
        use_knowledge_base=body.useKnowledgeBase,
        any_tenant=caller.is_global_admin,
    )
    if turn.conversation_id:
        try:
            storage.ensure_conversation(
                turn.conversation_id,
                turn.user_id,
                tenant_id=turn.tenant_id,
                chatbot_id=turn.chatbot_id,
                title=turn.message[:80],
            )
        except ValueError:
            return _json({"success": False, "error": "Conversation not found"}, status.HTTP_404_NOT_FOUND)

    def event_gen():
        for event in chat.stream_chat_events(turn):
            yield chat.format_sse(event)

    return StreamingResponse(event_gen(), media_type="text/event-stream", headers=CORS_HEADERS)
