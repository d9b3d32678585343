from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence


_ROOT_DIR = Path(__file__).resolve().parent.parent
_DATA_DIR = _ROOT_DIR / "data"
DB_PATH = Path(os.getenv("ZYRIA_DB_PATH") or (_DATA_DIR / "zyria.sqlite3"))

_CONNECTION: Optional[sqlite3.Connection] = None
_LOCK = threading.RLock()

DOCUMENT_STATUSES = {"pending", "processing", "ready", "error"}
CONVERSATION_STATUSES = {"active", "archived", "deleted"}
USER_ROLES = {"admin", "moderator", "user"}
USER_STATUSES = {"active", "inactive", "suspended"}
TASK_PRIORITIES = {"high", "medium", "low"}
TASK_CATEGORIES = {"follow-up", "action-item", "reminder", "insight"}

_JSON_COLUMNS = {
    "branding",
    "settings",
    "config",
    "custom_headers",
    "available_models",
    "details",
    "metadata",
    "embedding",
}
_BOOL_COLUMNS = {
    "is_global_admin",
    "onboarding_completed",
    "is_active",
    "is_healthy",
    "success",
    "completed",
    "ai_generated",
    "read",
}


def _get_connection() -> sqlite3.Connection:
    global _CONNECTION
    if _CONNECTION is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        _CONNECTION = sqlite3.connect(DB_PATH, check_same_thread=False)
        _CONNECTION.row_factory = sqlite3.Row
        _CONNECTION.execute("PRAGMA foreign_keys = ON")
    return _CONNECTION


def init_db() -> None:
    conn = _get_connection()
    with _LOCK:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tenants (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL DEFAULT 'active',
                branding TEXT,
                settings TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                password_hash TEXT,
                password_salt TEXT,
                created_at REAL,
                updated_at REAL,
                last_login_at REAL
            );

            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                email TEXT,
                full_name TEXT DEFAULT '',
                role TEXT NOT NULL DEFAULT 'user',
                status TEXT NOT NULL DEFAULT 'active',
                is_global_admin INTEGER NOT NULL DEFAULT 0,
                onboarding_completed INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY(id) REFERENCES users(user_id) ON DELETE CASCADE,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_profiles_tenant ON profiles(tenant_id);

            CREATE TABLE IF NOT EXISTS invitations (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                email TEXT NOT NULL,
                role TEXT NOT NULL,
                token TEXT NOT NULL UNIQUE,
                invited_by TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                expires_at REAL NOT NULL,
                created_at REAL NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS ai_providers (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                api_key TEXT,
                base_url TEXT,
                config TEXT,
                custom_headers TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                is_healthy INTEGER,
                last_health_check REAL,
                available_models TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS provider_audit_log (
                id TEXT PRIMARY KEY,
                provider_id TEXT NOT NULL,
                action TEXT NOT NULL,
                details TEXT,
                user_id TEXT,
                created_at REAL NOT NULL,
                FOREIGN KEY(provider_id) REFERENCES ai_providers(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS chatbots (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                name TEXT NOT NULL,
                system_prompt TEXT,
                model_name TEXT,
                primary_provider_id TEXT,
                fallback_provider_id TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                avatar_url TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY(primary_provider_id) REFERENCES ai_providers(id) ON DELETE SET NULL,
                FOREIGN KEY(fallback_provider_id) REFERENCES ai_providers(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS chatbot_usage (
                id TEXT PRIMARY KEY,
                chatbot_id TEXT,
                user_id TEXT,
                provider_id TEXT,
                model_used TEXT,
                response_time_ms INTEGER,
                success INTEGER NOT NULL,
                error_message TEXT,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                user_id TEXT NOT NULL,
                chatbot_id TEXT,
                title TEXT DEFAULT '',
                status TEXT NOT NULL DEFAULT 'active',
                deleted_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id) ON DELETE CASCADE,
                FOREIGN KEY(chatbot_id) REFERENCES chatbots(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, updated_at DESC);

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT,
                deleted_at REAL,
                created_at REAL NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);

            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                uploaded_by TEXT NOT NULL,
                filename TEXT NOT NULL,
                path TEXT,
                content TEXT,
                file_url TEXT,
                mime_type TEXT,
                size_bytes REAL,
                status TEXT NOT NULL,
                error TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_documents_tenant ON documents(tenant_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL,
                tenant_id TEXT,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                embedding TEXT NOT NULL,
                metadata TEXT,
                created_at REAL NOT NULL,
                FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_chunks_tenant ON chunks(tenant_id);
            CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id);

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                priority TEXT NOT NULL DEFAULT 'medium',
                category TEXT NOT NULL DEFAULT 'action-item',
                due_date TEXT,
                completed INTEGER NOT NULL DEFAULT 0,
                ai_generated INTEGER NOT NULL DEFAULT 0,
                source TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                tenant_id TEXT,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL DEFAULT 'info',
                title TEXT NOT NULL,
                body TEXT DEFAULT '',
                read INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at DESC);
            """
        )
        conn.commit()


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    item: Dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if key in _JSON_COLUMNS and isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                pass
        elif key in _BOOL_COLUMNS and value is not None:
            value = bool(value)
        item[key] = value
    return item


def _rows_to_dicts(rows: Iterable[sqlite3.Row]) -> List[Dict[str, Any]]:
    return [_row_to_dict(row) for row in rows]  # type: ignore[misc]


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if column in _BOOL_COLUMNS and isinstance(value, bool):
        return int(value)
    return value


def _update_row(
    table: str,
    key_column: str,
    key: str,
    fields: Dict[str, Any],
    allowed: Sequence[str],
    *,
    extra_where: str = "",
    extra_params: Sequence[Any] = (),
    touch: bool = True,
) -> bool:
    updates = {col: _encode(col, value) for col, value in fields.items() if col in allowed}
    if touch:
        updates["updated_at"] = time.time()
    if not updates:
        return False
    assignments = ", ".join(f"{col} = ?" for col in updates)
    params = list(updates.values()) + [key] + list(extra_params)
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {key_column} = ? {extra_where}",
            params,
        )
        conn.commit()
        return cur.rowcount > 0


# ---- users & auth ----

def upsert_user(user_id: str) -> None:
    conn = _get_connection()
    now = time.time()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO users (user_id, created_at, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET updated_at=excluded.updated_at
            """,
            (user_id, now, now),
        )
        conn.commit()


def user_exists(user_id: str) -> bool:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT 1 FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return row is not None


def _hash_password(password: str, salt: str) -> str:
    raw = (salt + password).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def set_user_password(user_id: str, password: str) -> None:
    salt = secrets.token_hex(16)
    digest = _hash_password(password, salt)
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO users (user_id, password_hash, password_salt, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                password_hash=excluded.password_hash,
                password_salt=excluded.password_salt,
                updated_at=excluded.updated_at
            """,
            (user_id, digest, salt, now, now),
        )
        conn.commit()


def verify_user_password(user_id: str, password: str) -> bool:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute(
            "SELECT password_hash, password_salt FROM users WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    if not row:
        return False
    stored_hash = row["password_hash"] or ""
    salt = row["password_salt"] or ""
    if not stored_hash or not salt:
        return False
    candidate = _hash_password(password, salt)
    return hmac.compare_digest(stored_hash, candidate)


def record_login(user_id: str) -> None:
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            "UPDATE users SET last_login_at = ? WHERE user_id = ?",
            (time.time(), user_id),
        )
        conn.commit()


# ---- tenants ----

def create_tenant(
    *,
    name: str,
    slug: str,
    branding: Optional[Dict[str, Any]] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    tenant_id = uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO tenants (id, name, slug, status, branding, settings, created_at, updated_at)
            VALUES (?, ?, ?, 'active', ?, ?, ?, ?)
            """,
            (
                tenant_id,
                name,
                slug,
                _encode("branding", branding or {}),
                _encode("settings", settings or {}),
                now,
                now,
            ),
        )
        conn.commit()
    return get_tenant(tenant_id)  # type: ignore[return-value]


def get_tenant(tenant_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
    return _row_to_dict(row)


def get_tenant_by_slug(slug: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM tenants WHERE slug = ?", (slug,)).fetchone()
    return _row_to_dict(row)


def list_tenants() -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute("SELECT * FROM tenants ORDER BY created_at DESC").fetchall()
    return _rows_to_dicts(rows)


def update_tenant(tenant_id: str, **fields: Any) -> bool:
    return _update_row("tenants", "id", tenant_id, fields, ("name", "status", "branding", "settings"))


# ---- profiles ----

def upsert_profile(
    user_id: str,
    *,
    tenant_id: Optional[str] = None,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    role: Optional[str] = None,
    is_global_admin: Optional[bool] = None,
) -> Dict[str, Any]:
    upsert_user(user_id)
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO profiles (id, tenant_id, email, full_name, role, is_global_admin, created_at, updated_at)
            VALUES (?, ?, ?, COALESCE(?, ''), COALESCE(?, 'user'), COALESCE(?, 0), ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                tenant_id = COALESCE(excluded.tenant_id, profiles.tenant_id),
                email = COALESCE(?, profiles.email),
                full_name = COALESCE(?, profiles.full_name),
                role = COALESCE(?, profiles.role),
                is_global_admin = COALESCE(?, profiles.is_global_admin),
                updated_at = excluded.updated_at
            """,
            (
                user_id,
                tenant_id,
                email,
                full_name,
                role,
                _encode("is_global_admin", is_global_admin),
                now,
                now,
                email,
                full_name,
                role,
                _encode("is_global_admin", is_global_admin),
            ),
        )
        conn.commit()
    return get_profile(user_id)  # type: ignore[return-value]


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
    return _row_to_dict(row)


def list_profiles(tenant_id: Optional[str]) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        if tenant_id is None:
            rows = conn.execute("SELECT * FROM profiles ORDER BY created_at DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM profiles WHERE tenant_id = ? ORDER BY created_at DESC",
                (tenant_id,),
            ).fetchall()
    return _rows_to_dicts(rows)


def update_profile(user_id: str, **fields: Any) -> bool:
    return _update_row(
        "profiles",
        "id",
        user_id,
        fields,
        ("email", "full_name", "role", "status", "tenant_id", "onboarding_completed", "is_global_admin"),
    )


# ---- invitations ----

def create_invitation(
    *,
    tenant_id: Optional[str],
    email: str,
    role: str,
    invited_by: Optional[str],
    ttl_seconds: int = 7 * 24 * 3600,
) -> Dict[str, Any]:
    invitation_id = uuid.uuid4().hex
    token = secrets.token_urlsafe(24)
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO invitations (id, tenant_id, email, role, token, invited_by, status, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (invitation_id, tenant_id, email, role, token, invited_by, now + ttl_seconds, now),
        )
        conn.commit()
    return get_invitation_by_token(token)  # type: ignore[return-value]


def get_invitation_by_token(token: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM invitations WHERE token = ?", (token,)).fetchone()
    return _row_to_dict(row)


def list_invitations(tenant_id: Optional[str]) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        if tenant_id is None:
            rows = conn.execute("SELECT * FROM invitations ORDER BY created_at DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM invitations WHERE tenant_id = ? ORDER BY created_at DESC",
                (tenant_id,),
            ).fetchall()
    return _rows_to_dicts(rows)


def set_invitation_status(token: str, status: str) -> bool:
    return _update_row("invitations", "token", token, {"status": status}, ("status",), touch=False)


# ---- AI providers ----

_PROVIDER_FIELDS = ("name", "type", "api_key", "base_url", "config", "custom_headers", "is_active", "tenant_id")


def create_provider(
    *,
    tenant_id: Optional[str],
    name: str,
    type: str,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    custom_headers: Optional[Dict[str, str]] = None,
    is_active: bool = True,
) -> Dict[str, Any]:
    provider_id = uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO ai_providers (
                id, tenant_id, name, type, api_key, base_url, config, custom_headers,
                is_active, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                provider_id,
                tenant_id,
                name,
                type,
                api_key,
                base_url,
                _encode("config", config or {}),
                _encode("custom_headers", custom_headers or {}),
                int(is_active),
                now,
                now,
            ),
        )
        conn.commit()
    return get_provider(provider_id)  # type: ignore[return-value]


def get_provider(provider_id: str) -> Optional[Dict[str, Any]]:
    if not provider_id:
        return None
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM ai_providers WHERE id = ?", (provider_id,)).fetchone()
    return _row_to_dict(row)


def list_providers(tenant_id: Optional[str] = None, *, active_only: bool = False) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if tenant_id is not None:
        clauses.append("(tenant_id = ? OR tenant_id IS NULL)")
        params.append(tenant_id)
    if active_only:
        clauses.append("is_active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            f"SELECT * FROM ai_providers {where} ORDER BY created_at ASC", params
        ).fetchall()
    return _rows_to_dicts(rows)


def update_provider(provider_id: str, **fields: Any) -> bool:
    return _update_row("ai_providers", "id", provider_id, fields, _PROVIDER_FIELDS)


def delete_provider(provider_id: str) -> bool:
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute("DELETE FROM ai_providers WHERE id = ?", (provider_id,))
        conn.commit()
        return cur.rowcount > 0


def record_provider_health(provider_id: str, *, healthy: bool, models: Sequence[str]) -> bool:
    return _update_row(
        "ai_providers",
        "id",
        provider_id,
        {
            "is_healthy": healthy,
            "last_health_check": time.time(),
            "available_models": list(models),
        },
        ("is_healthy", "last_health_check", "available_models"),
    )


def add_provider_audit(
    provider_id: str, action: str, details: Dict[str, Any], user_id: Optional[str] = None
) -> str:
    entry_id = uuid.uuid4().hex
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO provider_audit_log (id, provider_id, action, details, user_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entry_id, provider_id, action, _encode("details", details), user_id, time.time()),
        )
        conn.commit()
    return entry_id


def list_provider_audit(provider_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            """
            SELECT * FROM provider_audit_log
            WHERE provider_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (provider_id, max(1, limit)),
        ).fetchall()
    return _rows_to_dicts(rows)


# ---- chatbots ----

_CHATBOT_FIELDS = (
    "name",
    "system_prompt",
    "model_name",
    "primary_provider_id",
    "fallback_provider_id",
    "is_active",
    "avatar_url",
)


def create_chatbot(
    *,
    tenant_id: Optional[str],
    name: str,
    system_prompt: Optional[str] = None,
    model_name: Optional[str] = None,
    primary_provider_id: Optional[str] = None,
    fallback_provider_id: Optional[str] = None,
    avatar_url: Optional[str] = None,
) -> Dict[str, Any]:
    chatbot_id = uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO chatbots (
                id, tenant_id, name, system_prompt, model_name, primary_provider_id,
                fallback_provider_id, is_active, avatar_url, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                chatbot_id,
                tenant_id,
                name,
                system_prompt,
                model_name,
                primary_provider_id,
                fallback_provider_id,
                avatar_url,
                now,
                now,
            ),
        )
        conn.commit()
    return get_chatbot(chatbot_id, active_only=False)  # type: ignore[return-value]


def get_chatbot(chatbot_id: str, *, active_only: bool = True) -> Optional[Dict[str, Any]]:
    """Return a chatbot with its primary/fallback provider records inlined."""
    conn = _get_connection()
    with _LOCK:
        query = "SELECT * FROM chatbots WHERE id = ?"
        if active_only:
            query += " AND is_active = 1"
        row = conn.execute(query, (chatbot_id,)).fetchone()
    chatbot = _row_to_dict(row)
    if chatbot is None:
        return None
    chatbot["primary_provider"] = get_provider(chatbot.get("primary_provider_id") or "")
    chatbot["fallback_provider"] = get_provider(chatbot.get("fallback_provider_id") or "")
    return chatbot


def list_chatbots(tenant_id: Optional[str]) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        if tenant_id is None:
            rows = conn.execute("SELECT * FROM chatbots ORDER BY created_at DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM chatbots WHERE tenant_id = ? OR tenant_id IS NULL ORDER BY created_at DESC",
                (tenant_id,),
            ).fetchall()
    return _rows_to_dicts(rows)


def update_chatbot(chatbot_id: str, **fields: Any) -> bool:
    return _update_row("chatbots", "id", chatbot_id, fields, _CHATBOT_FIELDS)


def delete_chatbot(chatbot_id: str) -> bool:
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute("DELETE FROM chatbots WHERE id = ?", (chatbot_id,))
        conn.commit()
        return cur.rowcount > 0


def record_chatbot_usage(
    *,
    chatbot_id: Optional[str],
    user_id: Optional[str],
    provider_id: Optional[str],
    model_used: str,
    response_time_ms: int,
    success: bool,
    error_message: Optional[str] = None,
) -> str:
    usage_id = uuid.uuid4().hex
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO chatbot_usage (
                id, chatbot_id, user_id, provider_id, model_used, response_time_ms,
                success, error_message, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                usage_id,
                chatbot_id,
                user_id,
                provider_id,
                model_used,
                int(response_time_ms),
                int(success),
                error_message,
                time.time(),
            ),
        )
        conn.commit()
    return usage_id


def list_chatbot_usage(chatbot_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        if chatbot_id:
            rows = conn.execute(
                "SELECT * FROM chatbot_usage WHERE chatbot_id = ? ORDER BY created_at DESC LIMIT ?",
                (chatbot_id, max(1, limit)),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM chatbot_usage ORDER BY created_at DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
    return _rows_to_dicts(rows)


# ---- conversations & messages ----

def create_conversation(
    user_id: str,
    *,
    tenant_id: Optional[str],
    chatbot_id: Optional[str] = None,
    title: str = "",
    conversation_id: Optional[str] = None,
) -> Dict[str, Any]:
    cid = conversation_id or uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO conversations (id, tenant_id, user_id, chatbot_id, title, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
            """,
            (cid, tenant_id, user_id, chatbot_id, title or "", now, now),
        )
        conn.commit()
    return get_conversation(cid)  # type: ignore[return-value]


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    if not conversation_id:
        return None
    conn = _get_connection()
    with _LOCK:
        row = conn.execute(
            "SELECT * FROM conversations WHERE id = ? AND deleted_at IS NULL",
            (conversation_id,),
        ).fetchone()
    return _row_to_dict(row)


def ensure_conversation(
    conversation_id: str,
    user_id: str,
    *,
    tenant_id: Optional[str],
    chatbot_id: Optional[str] = None,
    title: str = "",
) -> Dict[str, Any]:
    """Fetch the conversation, creating it if missing; reject foreign owners."""
    existing = get_conversation(conversation_id)
    if existing is None:
        return create_conversation(
            user_id,
            tenant_id=tenant_id,
            chatbot_id=chatbot_id,
            title=title,
            conversation_id=conversation_id,
        )
    if existing["user_id"] != user_id:
        raise ValueError("Conversation already belongs to a different user.")
    return existing


def list_conversations(
    user_id: str, tenant_id: Optional[str], *, include_archived: bool = True, limit: int = 100
) -> List[Dict[str, Any]]:
    """List a user's live conversations, newest first, each with its last message.

    ``tenant_id=None`` means no tenant filter (global admins).
    """
    clauses = ["c.user_id = ?", "c.deleted_at IS NULL"]
    params: List[Any] = [user_id]
    if tenant_id is not None:
        clauses.append("c.tenant_id = ?")
        params.append(tenant_id)
    if not include_archived:
        clauses.append("c.status = 'active'")
    params.append(max(1, limit))
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            f"""
            SELECT c.*, b.name AS chatbot_name, b.avatar_url AS chatbot_avatar_url
            FROM conversations c
            LEFT JOIN chatbots b ON b.id = c.chatbot_id
            WHERE {' AND '.join(clauses)}
            ORDER BY c.updated_at DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        items: List[Dict[str, Any]] = []
        for row in rows:
            item = _row_to_dict(row) or {}
            chatbot_name = item.pop("chatbot_name", None)
            chatbot_avatar = item.pop("chatbot_avatar_url", None)
            item["chatbot"] = (
                {"name": chatbot_name, "avatar_url": chatbot_avatar} if item.get("chatbot_id") else None
            )
            last = conn.execute(
                """
                SELECT content, created_at FROM messages
                WHERE conversation_id = ? AND deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (item["id"],),
            ).fetchone()
            item["last_message"] = (
                {"content": last["content"], "timestamp": last["created_at"]} if last else None
            )
            items.append(item)
    return items


def update_conversation_title(conversation_id: str, user_id: str, title: str) -> bool:
    return _update_row(
        "conversations",
        "id",
        conversation_id,
        {"title": title},
        ("title",),
        extra_where="AND user_id = ? AND deleted_at IS NULL",
        extra_params=(user_id,),
    )


def set_conversation_status(conversation_id: str, user_id: str, status: str) -> bool:
    if status not in CONVERSATION_STATUSES:
        raise ValueError(f"Unknown conversation status: {status}")
    if status == "deleted":
        return soft_delete_conversation(conversation_id, user_id)
    return _update_row(
        "conversations",
        "id",
        conversation_id,
        {"status": status},
        ("status",),
        extra_where="AND user_id = ? AND deleted_at IS NULL",
        extra_params=(user_id,),
    )


def touch_conversation(conversation_id: str) -> None:
    _update_row("conversations", "id", conversation_id, {}, ())


def soft_delete_conversation(conversation_id: str, user_id: str) -> bool:
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute(
            """
            UPDATE conversations
            SET deleted_at = ?, status = 'deleted', updated_at = ?
            WHERE id = ? AND user_id = ? AND deleted_at IS NULL
            """,
            (now, now, conversation_id, user_id),
        )
        if cur.rowcount == 0:
            conn.rollback()
            return False
        conn.execute(
            "UPDATE messages SET deleted_at = ? WHERE conversation_id = ? AND deleted_at IS NULL",
            (now, conversation_id),
        )
        conn.commit()
        return True


def append_message(
    conversation_id: str,
    user_id: str,
    role: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    message_id = uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO messages (id, conversation_id, user_id, role, content, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (message_id, conversation_id, user_id, role, content or "", _encode("metadata", metadata), now),
        )
        conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
        conn.commit()
    return message_id


def list_messages(conversation_id: str, limit: int = 500) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            """
            SELECT id, conversation_id, user_id, role, content, metadata, created_at
            FROM messages
            WHERE conversation_id = ? AND deleted_at IS NULL
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?
            """,
            (conversation_id, max(1, limit)),
        ).fetchall()
    return _rows_to_dicts(rows)


# ---- documents & chunks ----

def create_document(
    *,
    tenant_id: Optional[str],
    uploaded_by: str,
    filename: str,
    path: Optional[str],
    status: str = "pending",
    mime_type: Optional[str] = None,
    size_bytes: Optional[float] = None,
    file_url: Optional[str] = None,
    content: Optional[str] = None,
    document_id: Optional[str] = None,
) -> Dict[str, Any]:
    doc_id = document_id or uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO documents (
                id, tenant_id, uploaded_by, filename, path, content, file_url,
                mime_type, size_bytes, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                doc_id,
                tenant_id,
                uploaded_by,
                filename,
                path,
                content,
                file_url,
                mime_type,
                size_bytes,
                status,
                now,
                now,
            ),
        )
        conn.commit()
    return get_document(doc_id)  # type: ignore[return-value]


def get_document(document_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
    return _row_to_dict(row)


def list_documents(tenant_id: Optional[str], *, status: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if tenant_id is not None:
        clauses.append("tenant_id = ?")
        params.append(tenant_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(max(1, limit))
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            f"SELECT * FROM documents {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            params,
        ).fetchall()
    return _rows_to_dicts(rows)


def update_document_status(
    document_id: str,
    *,
    status: str,
    error: Optional[str] = None,
    content: Optional[str] = None,
) -> bool:
    if status not in DOCUMENT_STATUSES:
        raise ValueError(f"Unknown document status: {status}")
    fields: Dict[str, Any] = {"status": status, "error": error}
    if content is not None:
        fields["content"] = content
    return _update_row("documents", "id", document_id, fields, ("status", "error", "content"))


def delete_document(document_id: str) -> bool:
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        conn.commit()
        return cur.rowcount > 0


def search_documents(tenant_id: Optional[str], query: str, limit: int = 50) -> List[Dict[str, Any]]:
    pattern = f"%{query}%"
    clauses = ["(filename LIKE ? OR content LIKE ?)", "status = 'ready'"]
    params: List[Any] = [pattern, pattern]
    if tenant_id is not None:
        clauses.append("tenant_id = ?")
        params.append(tenant_id)
    params.append(max(1, limit))
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            f"""
            SELECT * FROM documents
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
    return _rows_to_dicts(rows)


def delete_chunks_for_document(document_id: str) -> None:
    conn = _get_connection()
    with _LOCK:
        conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
        conn.commit()


def store_chunks(*, document_id: str, tenant_id: Optional[str], chunks: Sequence[Dict[str, Any]]) -> int:
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.executemany(
            """
            INSERT INTO chunks (id, document_id, tenant_id, chunk_index, content, embedding, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    chunk.get("id") or uuid.uuid4().hex,
                    document_id,
                    tenant_id,
                    chunk["chunk_index"],
                    chunk["content"],
                    json.dumps(chunk["embedding"]),
                    _encode("metadata", chunk.get("metadata") or {}),
                    now,
                )
                for chunk in chunks
            ],
        )
        conn.commit()
    return len(chunks)


def iter_tenant_chunks(tenant_id: Optional[str]) -> Iterable[Dict[str, Any]]:
    """Chunks of ready documents for a tenant, joined with their filename."""
    conn = _get_connection()
    with _LOCK:
        if tenant_id is None:
            rows = conn.execute(
                """
                SELECT c.*, d.filename, d.file_url FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE d.status = 'ready'
                """
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT c.*, d.filename, d.file_url FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE d.status = 'ready' AND c.tenant_id = ?
                """,
                (tenant_id,),
            ).fetchall()
    for row in rows:
        yield _row_to_dict(row)  # type: ignore[misc]


# ---- tasks ----

_TASK_FIELDS = ("title", "description", "priority", "category", "due_date", "completed", "ai_generated", "source")


def create_task(
    *,
    user_id: str,
    tenant_id: Optional[str],
    title: str,
    description: Optional[str] = None,
    priority: str = "medium",
    category: str = "action-item",
    due_date: Optional[str] = None,
    ai_generated: bool = False,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    if priority not in TASK_PRIORITIES:
        raise ValueError(f"Unknown task priority: {priority}")
    if category not in TASK_CATEGORIES:
        raise ValueError(f"Unknown task category: {category}")
    task_id = uuid.uuid4().hex
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO tasks (
                id, tenant_id, user_id, title, description, priority, category, due_date,
                completed, ai_generated, source, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (
                task_id,
                tenant_id,
                user_id,
                title,
                description,
                priority,
                category,
                due_date,
                int(ai_generated),
                source,
                now,
                now,
            ),
        )
        conn.commit()
    return get_task(task_id)  # type: ignore[return-value]


def get_task(task_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_dict(row)


def list_tasks(user_id: str, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        if tenant_id is None:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? AND tenant_id = ? ORDER BY created_at DESC, rowid DESC",
                (user_id, tenant_id),
            ).fetchall()
    return _rows_to_dicts(rows)


def update_task(task_id: str, user_id: str, **fields: Any) -> bool:
    if "priority" in fields and fields["priority"] not in TASK_PRIORITIES:
        raise ValueError(f"Unknown task priority: {fields['priority']}")
    if "category" in fields and fields["category"] not in TASK_CATEGORIES:
        raise ValueError(f"Unknown task category: {fields['category']}")
    return _update_row(
        "tasks",
        "id",
        task_id,
        fields,
        _TASK_FIELDS,
        extra_where="AND user_id = ?",
        extra_params=(user_id,),
    )


def delete_task(task_id: str, user_id: str) -> bool:
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id))
        conn.commit()
        return cur.rowcount > 0


# ---- notifications ----

def create_notification(
    *,
    user_id: str,
    tenant_id: Optional[str],
    title: str,
    body: str = "",
    kind: str = "info",
) -> Dict[str, Any]:
    notification_id = uuid.uuid4().hex
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO notifications (id, tenant_id, user_id, kind, title, body, read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (notification_id, tenant_id, user_id, kind, title, body, time.time()),
        )
        row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        conn.commit()
    return _row_to_dict(row)  # type: ignore[return-value]


def list_notifications(user_id: str, *, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND read = 0"
    query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(query, (user_id, max(1, limit))).fetchall()
    return _rows_to_dicts(rows)


def mark_notification_read(notification_id: str, user_id: str) -> bool:
    return _update_row(
        "notifications",
        "id",
        notification_id,
        {"read": True},
        ("read",),
        extra_where="AND user_id = ?",
        extra_params=(user_id,),
        touch=False,
    )


def mark_all_notifications_read(user_id: str) -> int:
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute("UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0", (user_id,))
        conn.commit()
        return cur.rowcount


# ---- dashboard ----

def dashboard_stats(user_id: str, tenant_id: Optional[str]) -> Dict[str, Any]:
    tenant_clause = "" if tenant_id is None else " AND tenant_id = ?"
    tenant_params: List[Any] = [] if tenant_id is None else [tenant_id]
    conn = _get_connection()
    with _LOCK:
        conversations = conn.execute(
            f"SELECT COUNT(*) FROM conversations WHERE user_id = ? AND deleted_at IS NULL{tenant_clause}",
            [user_id, *tenant_params],
        ).fetchone()[0]
        messages = conn.execute(
            f"""
            SELECT COUNT(*) FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            WHERE c.user_id = ? AND m.deleted_at IS NULL{tenant_clause.replace('tenant_id', 'c.tenant_id')}
            """,
            [user_id, *tenant_params],
        ).fetchone()[0]
        doc_rows = conn.execute(
            f"SELECT status, COUNT(*) AS n FROM documents WHERE 1 = 1{tenant_clause} GROUP BY status",
            tenant_params,
        ).fetchall()
        open_tasks = conn.execute(
            f"SELECT COUNT(*) FROM tasks WHERE user_id = ? AND completed = 0{tenant_clause}",
            [user_id, *tenant_params],
        ).fetchone()[0]
        done_tasks = conn.execute(
            f"SELECT COUNT(*) FROM tasks WHERE user_id = ? AND completed = 1{tenant_clause}",
            [user_id, *tenant_params],
        ).fetchone()[0]
        unread = conn.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read = 0",
            (user_id,),
        ).fetchone()[0]
    documents = {status: 0 for status in sorted(DOCUMENT_STATUSES)}
    for row in doc_rows:
        documents[row["status"]] = row["n"]
    return {
        "conversations": conversations,
        "messages": messages,
        "documents": documents,
        "tasks": {"open": open_tasks, "completed": done_tasks},
        "unread_notifications": unread,
    }


def clear_connection() -> None:
    global _CONNECTION
    if _CONNECTION is not None:
        _CONNECTION.close()
        _CONNECTION = None
