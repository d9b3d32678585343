from __future__ import annotations
import os

import logging
import re
import time
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    HTTPException,
    UploadFile,
    Response,
    Query,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, FileResponse
from pydantic import BaseModel
from starlette import status

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from . import DOC_ROOT, chat, emails, functions, knowledge, providers, storage
from .auth import (
    ALLOW_USER_REGISTRATION,
    AUTH_SECRET_KEY,
    GLOBAL_ADMIN_USERS,
    Caller,
    _issue_dev_token,
    _issue_session_token,
    enforce_rate_limit,
    get_caller,
    require_admin,
)
from .settings import SUPPORTED_PROVIDER_TYPES, load_settings
from .task_queue import enqueue_process_document

_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_LOG_DIR.mkdir(parents=True, exist_ok=True)
_LOG_FILE = _LOG_DIR / "app.log"

logger = logging.getLogger(__name__)
if not any(
    isinstance(handler, RotatingFileHandler)
    and getattr(handler, "baseFilename", None) == str(_LOG_FILE)
    for handler in logger.handlers
):
    file_handler = RotatingFileHandler(
        _LOG_FILE,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logger.addHandler(file_handler)
logger.setLevel(logging.INFO)

app = FastAPI(title="Zyria · Enterprise AI Chat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

try:
    settings = load_settings()
except Exception as exc:  # pragma: no cover - startup guard
    logger.warning("config validation failed: %s (continuing with environment defaults for dev)", exc)
    settings = None


def _parse_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


MAX_UPLOAD_BYTES = max(0, _parse_int_env("UPLOAD_MAX_BYTES", 20_000_000))  # 20 MB default
ALLOWED_UPLOAD_EXTS = {
    ext.strip().lower()
    for ext in (os.getenv("UPLOAD_ALLOWED_EXTS") or ".pdf,.txt,.md,.csv").split(",")
    if ext.strip()
}
ALLOWED_MIME_PREFIXES = {
    prefix.strip().lower()
    for prefix in (os.getenv("UPLOAD_ALLOWED_MIME_PREFIXES") or "application/pdf,text/,application/octet-stream")
    .split(",")
    if prefix.strip()
}
BLOCKED_KEYWORDS = [
    keyword.strip().lower()
    for keyword in (os.getenv("UPLOAD_BLOCKED_KEYWORDS") or "").split(",")
    if keyword.strip()
]


class LoginReq(BaseModel):
    username: str
    password: str
    email: Optional[str] = None
    full_name: Optional[str] = None


class LoginResp(BaseModel):
    token: str
    expires_at: int
    user: str


class TenantCreateReq(BaseModel):
    name: str
    slug: Optional[str] = None
    branding: Dict[str, Any] = {}
    settings: Dict[str, Any] = {}
    admin_email: Optional[str] = None
    admin_name: Optional[str] = None
    team_emails: List[str] = []
    team_role: str = "user"


class TenantUpdateReq(BaseModel):
    name: Optional[str] = None
    status: Optional[str] = None
    branding: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None


class ProfileUpdateReq(BaseModel):
    email: Optional[str] = None
    full_name: Optional[str] = None
    onboarding_completed: Optional[bool] = None


class AdminUserUpdateReq(BaseModel):
    role: Optional[str] = None
    status: Optional[str] = None


class InvitationCreateReq(BaseModel):
    email: str
    role: str = "user"


class ConversationCreateReq(BaseModel):
    title: Optional[str] = None
    chatbot_id: Optional[str] = None


class ConversationUpdateReq(BaseModel):
    title: Optional[str] = None
    status: Optional[str] = None


class ChatReq(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    use_knowledge_base: bool = False
    chatbot_id: Optional[str] = None


class TaskCreateReq(BaseModel):
    title: str
    description: Optional[str] = None
    priority: str = "medium"
    category: str = "action-item"
    due_date: Optional[str] = None
    ai_generated: bool = False
    source: Optional[str] = None


class TaskUpdateReq(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    due_date: Optional[str] = None
    completed: Optional[bool] = None


class ProviderCreateReq(BaseModel):
    name: str
    type: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    config: Dict[str, Any] = {}
    custom_headers: Dict[str, str] = {}
    is_active: bool = True
    shared: bool = False


class ProviderUpdateReq(BaseModel):
    name: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    custom_headers: Optional[Dict[str, str]] = None
    is_active: Optional[bool] = None


class ChatbotCreateReq(BaseModel):
    name: str
    system_prompt: Optional[str] = None
    model_name: Optional[str] = None
    primary_provider_id: Optional[str] = None
    fallback_provider_id: Optional[str] = None
    avatar_url: Optional[str] = None


class ChatbotUpdateReq(BaseModel):
    name: Optional[str] = None
    system_prompt: Optional[str] = None
    model_name: Optional[str] = None
    primary_provider_id: Optional[str] = None
    fallback_provider_id: Optional[str] = None
    is_active: Optional[bool] = None
    avatar_url: Optional[str] = None


def _ensure_tenant_access(caller: Caller, tenant_id: Optional[str], detail: str = "Not found") -> None:
    if caller.is_global_admin:
        return
    if tenant_id is not None and tenant_id != caller.tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _ensure_tenant_write(caller: Caller, tenant_id: Optional[str], detail: str = "Not found") -> None:
    """Shared (tenant-less) records are editable by global admins only."""
    if caller.is_global_admin:
        return
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Shared records are read-only.")
    _ensure_tenant_access(caller, tenant_id, detail)


def _changes(payload: BaseModel) -> Dict[str, Any]:
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No changes submitted.")
    return updates


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").strip().lower()).strip("-")
    return slug or uuid.uuid4().hex[:8]


# ---- auth ----

@app.post("/auth/login", response_model=LoginResp)
def login(payload: LoginReq):
    username = payload.username.strip()
    password = payload.password
    if not username or not password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username and password are required.")

    if not AUTH_SECRET_KEY:
        # dev mode: first login creates the user
        if not storage.user_exists(username):
            storage.set_user_password(username, password)
        elif not storage.verify_user_password(username, password):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials.")
        storage.record_login(username)
        return LoginResp(**_issue_dev_token(username))

    if not storage.user_exists(username) or not storage.verify_user_password(username, password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials.")

    storage.record_login(username)
    return LoginResp(**_issue_session_token(username))


@app.post("/auth/register", response_model=LoginResp)
def register(payload: LoginReq):
    username = payload.username.strip()
    password = payload.password
    if not username or not password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username and password are required.")
    if AUTH_SECRET_KEY and not ALLOW_USER_REGISTRATION:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Registration is disabled.")
    if storage.user_exists(username):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists.")

    storage.set_user_password(username, password)
    storage.upsert_profile(
        username,
        email=payload.email,
        full_name=payload.full_name,
        is_global_admin=username in GLOBAL_ADMIN_USERS or None,
    )
    storage.record_login(username)
    token_info = _issue_session_token(username) if AUTH_SECRET_KEY else _issue_dev_token(username)
    return LoginResp(**token_info)


@app.get("/auth/me")
def auth_me(caller: Caller = Depends(get_caller)):
    return {"status": "ok", "user": caller.user_id, "profile": caller.profile}


# ---- tenants & onboarding ----

@app.post("/tenants", status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreateReq, caller: Caller = Depends(get_caller)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Tenant name is required.")
    if caller.tenant_id and not caller.is_global_admin:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already belongs to a tenant.")
    if payload.team_role not in storage.USER_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role: {payload.team_role}")
    slug = _slugify(payload.slug or name)
    if storage.get_tenant_by_slug(slug):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Slug already taken: {slug}")

    tenant = storage.create_tenant(name=name, slug=slug, branding=payload.branding, settings=payload.settings)
    profile = caller.profile
    if not caller.is_global_admin:
        profile = storage.upsert_profile(
            caller.user_id,
            tenant_id=tenant["id"],
            email=payload.admin_email,
            full_name=payload.admin_name,
            role="admin",
        )
        storage.update_profile(caller.user_id, onboarding_completed=True)

    invitations: List[Dict[str, Any]] = []
    for email in payload.team_emails:
        address = (email or "").strip()
        if not address:
            continue
        invitation = storage.create_invitation(
            tenant_id=tenant["id"], email=address, role=payload.team_role, invited_by=caller.user_id
        )
        invitation["email_sent"] = _send_invitation_email(invitation, payload.admin_name)
        invitations.append(invitation)

    logger.info(
        "tenant created tenant=%s slug=%s by=%s invitations=%s",
        tenant["id"],
        slug,
        caller.user_id,
        len(invitations),
    )
    return {"tenant": tenant, "profile": profile, "invitations": invitations}


@app.get("/tenants")
def list_tenants(caller: Caller = Depends(get_caller)):
    if not caller.is_global_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Global admin required.")
    return {"items": storage.list_tenants()}


@app.get("/tenants/{tenant_id}")
def get_tenant(tenant_id: str, caller: Caller = Depends(get_caller)):
    _ensure_tenant_access(caller, tenant_id, "Tenant not found")
    tenant = storage.get_tenant(tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


@app.patch("/tenants/{tenant_id}")
def update_tenant(tenant_id: str, payload: TenantUpdateReq, caller: Caller = Depends(require_admin)):
    _ensure_tenant_access(caller, tenant_id, "Tenant not found")
    if not storage.update_tenant(tenant_id, **_changes(payload)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return storage.get_tenant(tenant_id)


# ---- profile ----

@app.get("/profiles/me")
def get_my_profile(caller: Caller = Depends(get_caller)):
    return caller.profile


@app.patch("/profiles/me")
def update_my_profile(payload: ProfileUpdateReq, caller: Caller = Depends(get_caller)):
    storage.update_profile(caller.user_id, **_changes(payload))
    return storage.get_profile(caller.user_id)


# ---- admin: users & invitations ----

def _send_invitation_email(invitation: Dict[str, Any], inviter_name: Optional[str]) -> bool:
    try:
        emails.send_invitation(invitation["email"], invitation["token"], invitation["role"], inviter_name)
    except Exception:
        logger.warning("invitation email failed invitation=%s", invitation.get("id"), exc_info=True)
        return False
    return True


@app.get("/admin/users")
def admin_list_users(caller: Caller = Depends(require_admin)):
    return {"items": storage.list_profiles(caller.scope_tenant)}


@app.patch("/admin/users/{user_id}")
def admin_update_user(user_id: str, payload: AdminUserUpdateReq, caller: Caller = Depends(require_admin)):
    updates = _changes(payload)
    if "role" in updates and updates["role"] not in storage.USER_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role: {updates['role']}")
    if "status" in updates and updates["status"] not in storage.USER_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status: {updates['status']}")
    target = storage.get_profile(user_id)
    if not target:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    _ensure_tenant_access(caller, target.get("tenant_id"), "User not found")
    storage.update_profile(user_id, **updates)
    logger.info("user updated target=%s by=%s fields=%s", user_id, caller.user_id, sorted(updates))
    return storage.get_profile(user_id)


@app.post("/admin/invitations", status_code=status.HTTP_201_CREATED)
def admin_create_invitation(payload: InvitationCreateReq, caller: Caller = Depends(require_admin)):
    email = payload.email.strip()
    if not email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="email is required")
    if payload.role not in storage.USER_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role: {payload.role}")
    invitation = storage.create_invitation(
        tenant_id=caller.tenant_id, email=email, role=payload.role, invited_by=caller.user_id
    )
    invitation["email_sent"] = _send_invitation_email(invitation, caller.profile.get("full_name"))
    return invitation


@app.get("/admin/invitations")
def admin_list_invitations(caller: Caller = Depends(require_admin)):
    return {"items": storage.list_invitations(caller.scope_tenant)}


@app.post("/invitations/{token}/accept")
def accept_invitation(token: str, caller: Caller = Depends(get_caller)):
    invitation = storage.get_invitation_by_token(token)
    if not invitation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invitation not found")
    if invitation.get("status") != "pending":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invitation is no longer valid.")
    if (invitation.get("expires_at") or 0) < time.time():
        storage.set_invitation_status(token, "expired")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invitation has expired.")
    profile = storage.upsert_profile(
        caller.user_id,
        tenant_id=invitation.get("tenant_id"),
        email=invitation.get("email"),
        role=invitation.get("role"),
    )
    storage.set_invitation_status(token, "accepted")
    logger.info("invitation accepted token=%s user=%s", invitation.get("id"), caller.user_id)
    return {"status": "accepted", "profile": profile}


# ---- conversations ----

def _owned_conversation(conversation_id: str, caller: Caller) -> Dict[str, Any]:
    conversation = storage.get_conversation(conversation_id)
    if not conversation or conversation.get("user_id") != caller.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@app.get("/conversations")
def list_conversations(include_archived: bool = True, caller: Caller = Depends(get_caller)):
    items = storage.list_conversations(caller.user_id, caller.scope_tenant, include_archived=include_archived)
    return {"items": items}


@app.post("/conversations", status_code=status.HTTP_201_CREATED)
def create_conversation(payload: ConversationCreateReq, caller: Caller = Depends(get_caller)):
    return storage.create_conversation(
        caller.user_id,
        tenant_id=caller.tenant_id,
        chatbot_id=payload.chatbot_id,
        title=(payload.title or "").strip() or "New conversation",
    )


@app.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, caller: Caller = Depends(get_caller)):
    return _owned_conversation(conversation_id, caller)


@app.patch("/conversations/{conversation_id}")
def update_conversation(conversation_id: str, payload: ConversationUpdateReq, caller: Caller = Depends(get_caller)):
    _owned_conversation(conversation_id, caller)
    updates = _changes(payload)
    title = (updates.get("title") or "").strip()
    if "title" in updates:
        if not title:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="title is required")
        storage.update_conversation_title(conversation_id, caller.user_id, title)
    if "status" in updates:
        try:
            storage.set_conversation_status(conversation_id, caller.user_id, updates["status"])
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return storage.get_conversation(conversation_id) or {"id": conversation_id, "status": "deleted"}


@app.post("/conversations/{conversation_id}/archive")
def archive_conversation(conversation_id: str, caller: Caller = Depends(get_caller)):
    _owned_conversation(conversation_id, caller)
    storage.set_conversation_status(conversation_id, caller.user_id, "archived")
    return {"id": conversation_id, "status": "archived"}


@app.delete("/conversations/{conversation_id}")
def delete_conversation(conversation_id: str, caller: Caller = Depends(get_caller)):
    if not storage.soft_delete_conversation(conversation_id, caller.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    logger.info("conversation deleted conversation=%s user=%s", conversation_id, caller.user_id)
    return {"id": conversation_id, "status": "deleted"}


@app.get("/conversations/{conversation_id}/messages")
def conversation_messages(conversation_id: str, limit: int = 500, caller: Caller = Depends(get_caller)):
    _owned_conversation(conversation_id, caller)
    return {"items": storage.list_messages(conversation_id, limit=limit)}


# ---- chat ----

def _chat_turn(body: ChatReq, caller: Caller) -> chat.ChatTurn:
    message = body.message.strip()
    if not message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="message is required")
    if body.chatbot_id:
        chatbot = storage.get_chatbot(body.chatbot_id, active_only=False)
        if chatbot is None or not chat.chatbot_in_scope(chatbot, caller.tenant_id, caller.is_global_admin):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chatbot not found")
    conversation_id = body.conversation_id or uuid.uuid4().hex
    try:
        storage.ensure_conversation(
            conversation_id,
            caller.user_id,
            tenant_id=caller.tenant_id,
            chatbot_id=body.chatbot_id,
            title=message[:80],
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found") from exc
    return chat.ChatTurn(
        message=message,
        user_id=caller.user_id,
        conversation_id=conversation_id,
        tenant_id=caller.tenant_id,
        chatbot_id=body.chatbot_id,
        use_knowledge_base=body.use_knowledge_base,
        any_tenant=caller.is_global_admin,
    )


@app.post("/chat/stream")
def chat_stream(body: ChatReq, caller: Caller = Depends(get_caller)) -> StreamingResponse:
    turn = _chat_turn(body, caller)
    logger.info("chat stream conversation=%s user=%s", turn.conversation_id, turn.user_id)

    def event_gen():
        for event in chat.stream_chat_events(turn):
            yield chat.format_sse(event)

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={"X-Conversation-Id": turn.conversation_id or ""},
    )


@app.post("/chat")
def chat_once(body: ChatReq, caller: Caller = Depends(get_caller)):
    turn = _chat_turn(body, caller)
    result = chat.complete_chat(turn)
    result["conversation_id"] = turn.conversation_id
    return result


# ---- documents ----

def _safe_filename(name: Optional[str]) -> str:
    if not name:
        return 'upload.txt'
    clean = Path(name).name.strip()
    return clean or 'upload.txt'


def _tenant_folder(tenant_id: Optional[str]) -> Path:
    raw = tenant_id or "_shared"
    safe = ''.join(ch if ch.isalnum() or ch in '-_' else '_' for ch in raw)
    folder = DOC_ROOT / safe
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def _scan_upload(content: bytes, filename: str) -> None:
    if not BLOCKED_KEYWORDS:
        return
    text = content.decode("utf-8", errors="ignore").lower()
    for keyword in BLOCKED_KEYWORDS:
        if keyword in text:
            logger.warning("upload blocked filename=%s keyword=%s", filename, keyword)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Upload blocked by content policy: '{keyword}' detected.",
            )


def _validate_upload(file: UploadFile, content: bytes) -> Dict[str, Any]:
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty.")

    size_bytes = len(content)
    if MAX_UPLOAD_BYTES and size_bytes > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File too large: {size_bytes} bytes (limit {MAX_UPLOAD_BYTES}).",
        )

    filename = _safe_filename(file.filename)
    ext = Path(filename).suffix.lower()
    mime_type = (file.content_type or "").split(";")[0].strip().lower() or None

    if ALLOWED_UPLOAD_EXTS and ext not in ALLOWED_UPLOAD_EXTS:
        allowed = ", ".join(sorted(ALLOWED_UPLOAD_EXTS))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File extension '{ext or 'unknown'}' is not allowed. Allowed: {allowed}",
        )
    if ALLOWED_MIME_PREFIXES and mime_type:
        if all(not mime_type.startswith(prefix) for prefix in ALLOWED_MIME_PREFIXES):
            allowed = ", ".join(sorted(ALLOWED_MIME_PREFIXES))
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"MIME type '{mime_type}' is not allowed. Allowed prefixes: {allowed}",
            )

    _scan_upload(content, filename)
    return {"filename": filename, "size_bytes": float(size_bytes), "mime_type": mime_type}


def _queue_document(document_id: str, user_id: str) -> None:
    try:
        enqueue_process_document(document_id, user_id)
    except Exception:
        # the worker already moved the document to ``error``
        logger.warning("document processing failed doc_id=%s user=%s", document_id, user_id, exc_info=True)


def _visible_document(document_id: str, caller: Caller) -> Dict[str, Any]:
    doc = storage.get_document(document_id)
    if not doc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    _ensure_tenant_access(caller, doc.get("tenant_id"), "Document not found")
    return doc


@app.post("/documents", status_code=status.HTTP_202_ACCEPTED)
async def upload_document(file: UploadFile = File(...), caller: Caller = Depends(get_caller)):
    content = await file.read()
    meta = _validate_upload(file, content)
    document_id = uuid.uuid4().hex
    filename = meta["filename"]
    destination = _tenant_folder(caller.tenant_id) / f"{document_id}_{filename}"
    destination.write_bytes(content)

    storage.create_document(
        document_id=document_id,
        tenant_id=caller.tenant_id,
        uploaded_by=caller.user_id,
        filename=filename,
        path=str(destination),
        status="pending",
        size_bytes=meta["size_bytes"],
        mime_type=meta["mime_type"],
        file_url=f"/documents/{document_id}/download",
    )
    logger.info(
        "document uploaded doc_id=%s user=%s filename=%s bytes=%s",
        document_id,
        caller.user_id,
        filename,
        len(content),
    )
    _queue_document(document_id, caller.user_id)
    doc = storage.get_document(document_id) or {}
    return {"id": document_id, "status": doc.get("status", "pending")}


@app.get("/documents")
def list_documents(
    status_filter: Optional[str] = Query(None, alias="status"),
    caller: Caller = Depends(get_caller),
):
    if status_filter and status_filter not in storage.DOCUMENT_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status: {status_filter}")
    return {"items": storage.list_documents(caller.scope_tenant, status=status_filter)}


@app.get("/documents/search")
def search_documents(q: str, caller: Caller = Depends(get_caller)):
    return {"items": knowledge.search_documents(caller.scope_tenant, q)}


@app.get("/documents/{document_id}")
def get_document(document_id: str, caller: Caller = Depends(get_caller)):
    return _visible_document(document_id, caller)


@app.get("/documents/{document_id}/download")
def download_document(document_id: str, caller: Caller = Depends(get_caller)):
    doc = _visible_document(document_id, caller)
    path = doc.get("path")
    if not path or not Path(path).exists():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Original file not found on server")
    media_type = doc.get("mime_type") or "application/octet-stream"
    return FileResponse(path, media_type=media_type, filename=doc.get("filename") or "document")


@app.post("/documents/{document_id}/retry", status_code=status.HTTP_202_ACCEPTED)
def retry_document(document_id: str, caller: Caller = Depends(get_caller)):
    doc = _visible_document(document_id, caller)
    path = doc.get("path")
    if not path or not Path(path).exists():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Document file is missing; please re-upload.")
    storage.update_document_status(document_id, status="pending", error=None)
    logger.info("document retry queued doc_id=%s user=%s", document_id, caller.user_id)
    _queue_document(document_id, caller.user_id)
    refreshed = storage.get_document(document_id) or {}
    return {"id": document_id, "status": refreshed.get("status", "pending")}


@app.delete("/documents/{document_id}")
def delete_document(document_id: str, caller: Caller = Depends(get_caller)):
    doc = _visible_document(document_id, caller)
    if doc.get("uploaded_by") != caller.user_id and not caller.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the uploader or an admin may delete.")
    path = doc.get("path")
    storage.delete_document(document_id)
    if path:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError:
            logger.warning("failed to delete document file path=%s", path, exc_info=True)
    logger.info("document deleted doc_id=%s user=%s", document_id, caller.user_id)
    return {"id": document_id, "status": "deleted"}


# ---- tasks ----

@app.get("/tasks")
def list_tasks(caller: Caller = Depends(get_caller)):
    return {"items": storage.list_tasks(caller.user_id, caller.scope_tenant)}


@app.post("/tasks", status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreateReq, caller: Caller = Depends(get_caller)):
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="title is required")
    try:
        return storage.create_task(
            user_id=caller.user_id,
            tenant_id=caller.tenant_id,
            title=title,
            description=payload.description,
            priority=payload.priority,
            category=payload.category,
            due_date=payload.due_date,
            ai_generated=payload.ai_generated,
            source=payload.source,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@app.patch("/tasks/{task_id}")
def update_task(task_id: str, payload: TaskUpdateReq, caller: Caller = Depends(get_caller)):
    try:
        updated = storage.update_task(task_id, caller.user_id, **_changes(payload))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return storage.get_task(task_id)


@app.post("/tasks/{task_id}/toggle")
def toggle_task(task_id: str, caller: Caller = Depends(get_caller)):
    task = storage.get_task(task_id)
    if not task or task.get("user_id") != caller.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    storage.update_task(task_id, caller.user_id, completed=not task.get("completed"))
    return storage.get_task(task_id)


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str, caller: Caller = Depends(get_caller)):
    if not storage.delete_task(task_id, caller.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return {"id": task_id, "status": "deleted"}


# ---- notifications ----

@app.get("/notifications")
def list_notifications(unread_only: bool = False, caller: Caller = Depends(get_caller)):
    return {"items": storage.list_notifications(caller.user_id, unread_only=unread_only)}


@app.post("/notifications/read-all")
def read_all_notifications(caller: Caller = Depends(get_caller)):
    return {"updated": storage.mark_all_notifications_read(caller.user_id)}


@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str, caller: Caller = Depends(get_caller)):
    if not storage.mark_notification_read(notification_id, caller.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"id": notification_id, "read": True}


# ---- AI providers ----

def _admin_provider(provider_id: str, caller: Caller, *, write: bool = False) -> Dict[str, Any]:
    provider = storage.get_provider(provider_id)
    if not provider:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    if write:
        _ensure_tenant_write(caller, provider.get("tenant_id"), "Provider not found")
    else:
        _ensure_tenant_access(caller, provider.get("tenant_id"), "Provider not found")
    return provider


def _audit(provider_id: str, action: str, details: Dict[str, Any], user_id: str) -> None:
    try:
        storage.add_provider_audit(provider_id, action, details, user_id=user_id)
    except Exception:
        logger.warning("provider audit write failed provider=%s action=%s", provider_id, action, exc_info=True)


@app.get("/providers")
def list_providers(caller: Caller = Depends(require_admin)):
    items = storage.list_providers(caller.scope_tenant)
    return {"items": [providers.public_view(item) for item in items]}


@app.post("/providers", status_code=status.HTTP_201_CREATED)
def create_provider(payload: ProviderCreateReq, caller: Caller = Depends(require_admin)):
    provider_type = payload.type.strip().lower()
    if provider_type not in SUPPORTED_PROVIDER_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported provider type: {payload.type}")
    if provider_type == "custom" and not payload.base_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Custom providers require base_url.")
    if payload.shared and not caller.is_global_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Global admin required for shared providers.")
    provider = storage.create_provider(
        tenant_id=None if payload.shared else caller.tenant_id,
        name=payload.name.strip(),
        type=provider_type,
        api_key=payload.api_key,
        base_url=payload.base_url,
        config=payload.config,
        custom_headers=payload.custom_headers,
        is_active=payload.is_active,
    )
    _audit(provider["id"], "created", {"name": provider["name"], "type": provider_type}, caller.user_id)
    return providers.public_view(provider)


@app.patch("/providers/{provider_id}")
def update_provider(provider_id: str, payload: ProviderUpdateReq, caller: Caller = Depends(require_admin)):
    _admin_provider(provider_id, caller, write=True)
    updates = _changes(payload)
    storage.update_provider(provider_id, **updates)
    _audit(provider_id, "updated", {"fields": sorted(updates)}, caller.user_id)
    return providers.public_view(storage.get_provider(provider_id))


@app.delete("/providers/{provider_id}")
def delete_provider(provider_id: str, caller: Caller = Depends(require_admin)):
    _admin_provider(provider_id, caller, write=True)
    storage.delete_provider(provider_id)
    logger.info("provider deleted provider=%s by=%s", provider_id, caller.user_id)
    return {"id": provider_id, "status": "deleted"}


@app.post("/providers/{provider_id}/health-check")
def provider_health_check(provider_id: str, caller: Caller = Depends(require_admin)):
    _admin_provider(provider_id, caller)
    return providers.run_health_check(provider_id, user_id=caller.user_id)


@app.get("/providers/{provider_id}/audit")
def provider_audit(provider_id: str, limit: int = 50, caller: Caller = Depends(require_admin)):
    _admin_provider(provider_id, caller)
    return {"items": storage.list_provider_audit(provider_id, limit=limit)}


# ---- chatbots ----

def _check_chatbot_providers(caller: Caller, *provider_ids: Optional[str]) -> None:
    for provider_id in provider_ids:
        if provider_id:
            _admin_provider(provider_id, caller)


def _admin_chatbot(chatbot_id: str, caller: Caller) -> Dict[str, Any]:
    chatbot = storage.get_chatbot(chatbot_id, active_only=False)
    if not chatbot:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chatbot not found")
    _ensure_tenant_write(caller, chatbot.get("tenant_id"), "Chatbot not found")
    return chatbot


@app.get("/chatbots")
def list_chatbots(caller: Caller = Depends(get_caller)):
    items = storage.list_chatbots(caller.scope_tenant)
    if not caller.is_admin:
        items = [item for item in items if item.get("is_active")]
    return {"items": items}


@app.post("/chatbots", status_code=status.HTTP_201_CREATED)
def create_chatbot(payload: ChatbotCreateReq, caller: Caller = Depends(require_admin)):
    _check_chatbot_providers(caller, payload.primary_provider_id, payload.fallback_provider_id)
    chatbot = storage.create_chatbot(
        tenant_id=caller.tenant_id,
        name=payload.name.strip(),
        system_prompt=payload.system_prompt,
        model_name=payload.model_name,
        primary_provider_id=payload.primary_provider_id,
        fallback_provider_id=payload.fallback_provider_id,
        avatar_url=payload.avatar_url,
    )
    chatbot["primary_provider"] = providers.public_view(chatbot.get("primary_provider"))
    chatbot["fallback_provider"] = providers.public_view(chatbot.get("fallback_provider"))
    return chatbot


@app.patch("/chatbots/{chatbot_id}")
def update_chatbot(chatbot_id: str, payload: ChatbotUpdateReq, caller: Caller = Depends(require_admin)):
    _admin_chatbot(chatbot_id, caller)
    updates = _changes(payload)
    _check_chatbot_providers(caller, updates.get("primary_provider_id"), updates.get("fallback_provider_id"))
    storage.update_chatbot(chatbot_id, **updates)
    chatbot = storage.get_chatbot(chatbot_id, active_only=False) or {}
    chatbot["primary_provider"] = providers.public_view(chatbot.get("primary_provider"))
    chatbot["fallback_provider"] = providers.public_view(chatbot.get("fallback_provider"))
    return chatbot


@app.delete("/chatbots/{chatbot_id}")
def delete_chatbot(chatbot_id: str, caller: Caller = Depends(require_admin)):
    _admin_chatbot(chatbot_id, caller)
    storage.delete_chatbot(chatbot_id)
    return {"id": chatbot_id, "status": "deleted"}


# ---- dashboard & ops ----

@app.get("/dashboard/stats")
def dashboard_stats(caller: Caller = Depends(get_caller)):
    return storage.dashboard_stats(caller.user_id, caller.scope_tenant)


@app.get("/health")
def health():
    return {"status": "ok", "time": time.time()}


@app.get("/metrics")
def metrics():
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


app.include_router(functions.preflight_router)
app.include_router(functions.router, dependencies=[Depends(enforce_rate_limit)])
