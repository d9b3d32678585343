"""Request authentication, rate limiting and caller resolution shared by every router."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request
from starlette import status

from . import storage

API_AUTH_TOKEN = os.getenv("API_AUTH_TOKEN", "").strip()
try:
    API_RATE_LIMIT_PER_MINUTE = max(
        1, int(os.getenv("API_RATE_LIMIT_PER_MINUTE", "120") or 1)
    )
except ValueError:
    API_RATE_LIMIT_PER_MINUTE = 120
AUTH_SECRET_KEY = os.getenv("AUTH_SECRET_KEY", "").strip()
try:
    AUTH_TOKEN_TTL_SECONDS = max(
        300, int(os.getenv("AUTH_TOKEN_TTL_SECONDS", "43200") or 43200)
    )
except ValueError:
    AUTH_TOKEN_TTL_SECONDS = 43200
ALLOW_USER_REGISTRATION = str(os.getenv("AUTH_ALLOW_REGISTRATION", "1")).strip().lower() not in {
    "0",
    "false",
    "no",
}
GLOBAL_ADMIN_USERS = {
    item.strip() for item in (os.getenv("ZYRIA_GLOBAL_ADMINS") or "").split(",") if item.strip()
}


class SlidingWindowRateLimiter:
    def __init__(self, max_calls: int, window_seconds: int = 60) -> None:
        self.max_calls = max_calls
        self.window = max(1, window_seconds)
        self._events: Dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.time()
        with self._lock:
            bucket = self._events.setdefault(key, deque())
            while bucket and now - bucket[0] > self.window:
                bucket.popleft()
            if len(bucket) >= self.max_calls:
                return False
            bucket.append(now)
            return True


rate_limiter = SlidingWindowRateLimiter(API_RATE_LIMIT_PER_MINUTE)


def _extract_api_token(request: Request, authorization: Optional[str], x_api_key: Optional[str]) -> str:
    header_token = ""
    if authorization:
        prefix = "bearer "
        if authorization.lower().startswith(prefix):
            header_token = authorization[len(prefix):].strip()
    fallback = (x_api_key or "").strip()
    query_token = request.query_params.get("api_key", "").strip()
    return header_token or fallback or query_token


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _issue_session_token(username: str) -> Dict[str, Any]:
    if not AUTH_SECRET_KEY:
        raise RuntimeError("AUTH_SECRET_KEY is not configured.")
    exp = int(time.time()) + AUTH_TOKEN_TTL_SECONDS
    payload = f"{username}:{exp}"
    sig = hmac.new(AUTH_SECRET_KEY.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    token = f"{_b64url_encode(payload.encode('utf-8'))}.{_b64url_encode(sig)}"
    return {"token": token, "expires_at": exp, "user": username}


def _issue_dev_token(username: str) -> Dict[str, Any]:
    now = int(time.time())
    fallback_token = API_AUTH_TOKEN or "dev-mode-token"
    return {"token": fallback_token, "expires_at": now + 365 * 24 * 3600, "user": username}


def _verify_session_token(token: str) -> Optional[str]:
    if not token or not AUTH_SECRET_KEY:
        return None
    if "." not in token:
        return None
    payload_b64, sig_b64 = token.split(".", 1)
    try:
        payload_bytes = _b64url_decode(payload_b64)
        provided_sig = _b64url_decode(sig_b64)
    except Exception:
        return None
    payload = payload_bytes.decode("utf-8", errors="ignore")
    if ":" not in payload:
        return None
    username, exp_raw = payload.rsplit(":", 1)
    try:
        exp = int(exp_raw)
    except ValueError:
        return None
    expected_sig = hmac.new(AUTH_SECRET_KEY.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    if not hmac.compare_digest(expected_sig, provided_sig):
        return None
    if exp < int(time.time()):
        return None
    return username.strip() or None


def require_api_key(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> str:
    provided = _extract_api_token(request, authorization, x_api_key)

    if AUTH_SECRET_KEY:
        username = _verify_session_token(provided)
        if username:
            storage.upsert_user(username)
            return username

    if API_AUTH_TOKEN:
        if provided == API_AUTH_TOKEN:
            return "static-token"
        if AUTH_SECRET_KEY:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API token.")

    # no auth configured: dev passthrough
    if AUTH_SECRET_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Login required.")
    return provided


def enforce_rate_limit(
    request: Request,
    provided_token: str = Depends(require_api_key),
) -> str:
    subject = (
        provided_token
        or request.headers.get("x-user-id")
        or (request.client.host if request.client else "anonymous")
    )
    if not rate_limiter.allow(subject):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded.")
    return provided_token


def get_current_user(request: Request, provided_token: str = Depends(enforce_rate_limit)) -> str:
    """Session tokens name the user; static-token and dev callers pass ``X-User-Id``."""
    if AUTH_SECRET_KEY and provided_token and provided_token != "static-token":
        return provided_token
    candidate = (request.headers.get("x-user-id") or request.query_params.get("user_id") or "").strip()
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User identity is required.")
    storage.upsert_user(candidate)
    return candidate


@dataclass
class Caller:
    user_id: str
    profile: Dict[str, Any]

    @property
    def tenant_id(self) -> Optional[str]:
        return self.profile.get("tenant_id")

    @property
    def is_global_admin(self) -> bool:
        return bool(self.profile.get("is_global_admin"))

    @property
    def is_admin(self) -> bool:
        return self.is_global_admin or self.profile.get("role") == "admin"

    @property
    def scope_tenant(self) -> Optional[str]:
        """Tenant filter for list queries; ``None`` lifts the filter for global admins."""
        return None if self.is_global_admin else self.tenant_id


def get_caller(user_id: str = Depends(get_current_user)) -> Caller:
    profile = storage.get_profile(user_id)
    if profile is None:
        profile = storage.upsert_profile(user_id, is_global_admin=user_id in GLOBAL_ADMIN_USERS or None)
    if profile.get("status") in {"inactive", "suspended"}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is not active.")
    return Caller(user_id=user_id, profile=profile)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required.")
    return caller
