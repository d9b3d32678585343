"""AI provider registry: health checks, model discovery and streaming completions.

Providers are plain dict records (see ``storage.create_provider``). Every operation
dispatches on the ``type`` string; unknown types raise ``ValueError``.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from prometheus_client import Counter

from . import storage
from .settings import SUPPORTED_PROVIDER_TYPES

logger = logging.getLogger(__name__)

USER_AGENT = "zyria-backend/1.0"
_SESSION = requests.Session()
_SESSION.headers.update({"User-Agent": USER_AGENT})


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(0.5, value)


PROVIDER_HTTP_TIMEOUT = _env_float("PROVIDER_HTTP_TIMEOUT", 15.0)
DEFAULT_CHAT_MODEL = os.getenv("DEFAULT_CHAT_MODEL", "gpt-4o")
DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7

OPENAI_API_BASE = "https://api.openai.com/v1"
ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_PROBE_MODEL = "claude-3-5-haiku-20241022"
ANTHROPIC_KNOWN_MODELS = [
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
]
GOOGLE_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
MISTRAL_API_BASE = "https://api.mistral.ai/v1"
TOGETHER_API_BASE = "https://api.together.xyz/v1"
XAI_API_BASE = "https://api.x.ai/v1"
DEFAULT_OLLAMA_URL = "http://localhost:11434"

# OpenAI-compatible chat endpoints per provider type; None means the SDK default.
_OPENAI_COMPATIBLE_BASES: Dict[str, Optional[str]] = {
    "openai": None,
    "mistral": MISTRAL_API_BASE,
    "meta": TOGETHER_API_BASE,
    "xai": XAI_API_BASE,
}

PROVIDER_HEALTH_CHECKS = Counter(
    "provider_health_checks_total",
    "Provider health checks grouped by provider type and outcome.",
    ("type", "result"),
)


@dataclass
class HealthResult:
    healthy: bool
    models: List[str] = field(default_factory=list)
    error_message: str = ""


def _bearer_headers(api_key: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if extra:
        headers.update(extra)
    return headers


def _list_models(url: str, headers: Dict[str, str], pick: Callable[[Dict[str, Any]], List[str]]) -> HealthResult:
    response = _SESSION.get(url, headers=headers, timeout=PROVIDER_HTTP_TIMEOUT)
    if not response.ok:
        return HealthResult(healthy=False)
    return HealthResult(healthy=True, models=pick(response.json() or {}))


def _ids_from_data(payload: Dict[str, Any]) -> List[str]:
    return [item.get("id") for item in payload.get("data") or [] if item.get("id")]


def _check_openai(provider: Dict[str, Any]) -> HealthResult:
    return _list_models(f"{OPENAI_API_BASE}/models", _bearer_headers(provider["api_key"]), _ids_from_data)


def _check_anthropic(provider: Dict[str, Any]) -> HealthResult:
    # no public model listing; a 1-token probe tells us whether the key is accepted
    response = _SESSION.post(
        f"{ANTHROPIC_API_BASE}/messages",
        headers={
            "x-api-key": provider["api_key"],
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        },
        json={
            "model": ANTHROPIC_PROBE_MODEL,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "test"}],
        },
        timeout=PROVIDER_HTTP_TIMEOUT,
    )
    healthy = response.status_code not in (401, 403)
    return HealthResult(healthy=healthy, models=list(ANTHROPIC_KNOWN_MODELS) if healthy else [])


def _check_google(provider: Dict[str, Any]) -> HealthResult:
    def pick(payload: Dict[str, Any]) -> List[str]:
        return [
            (item.get("name") or "").replace("models/", "", 1)
            for item in payload.get("models") or []
            if item.get("name")
        ]

    response = _SESSION.get(
        f"{GOOGLE_API_BASE}/models",
        params={"key": provider["api_key"]},
        timeout=PROVIDER_HTTP_TIMEOUT,
    )
    if not response.ok:
        return HealthResult(healthy=False)
    return HealthResult(healthy=True, models=pick(response.json() or {}))


def _check_mistral(provider: Dict[str, Any]) -> HealthResult:
    return _list_models(f"{MISTRAL_API_BASE}/models", _bearer_headers(provider["api_key"]), _ids_from_data)


def _check_meta(provider: Dict[str, Any]) -> HealthResult:
    def pick(payload: Dict[str, Any]) -> List[str]:
        return [model_id for model_id in _ids_from_data(payload) if "llama" in model_id.lower()]

    return _list_models(f"{TOGETHER_API_BASE}/models", _bearer_headers(provider["api_key"]), pick)


def _check_xai(provider: Dict[str, Any]) -> HealthResult:
    return _list_models(f"{XAI_API_BASE}/models", _bearer_headers(provider["api_key"]), _ids_from_data)


def _check_custom(provider: Dict[str, Any]) -> HealthResult:
    base_url = (provider.get("base_url") or "").rstrip("/")
    if not base_url:
        raise ValueError("Custom provider requires base_url")
    headers = _bearer_headers(provider["api_key"], provider.get("custom_headers") or {})
    return _list_models(f"{base_url}/models", headers, _ids_from_data)


def _check_ollama(provider: Dict[str, Any]) -> HealthResult:
    def pick(payload: Dict[str, Any]) -> List[str]:
        return [item.get("name") for item in payload.get("models") or [] if item.get("name")]

    base_url = (provider.get("base_url") or DEFAULT_OLLAMA_URL).rstrip("/")
    return _list_models(f"{base_url}/api/tags", {}, pick)


_HEALTH_CHECKS: Dict[str, Callable[[Dict[str, Any]], HealthResult]] = {
    "openai": _check_openai,
    "anthropic": _check_anthropic,
    "google": _check_google,
    "mistral": _check_mistral,
    "meta": _check_meta,
    "xai": _check_xai,
    "custom": _check_custom,
    "ollama": _check_ollama,
}


def check_provider(provider: Dict[str, Any]) -> HealthResult:
    """Probe a provider; raises ``ValueError`` for unusable configuration."""
    provider_type = (provider.get("type") or "").strip().lower()
    checker = _HEALTH_CHECKS.get(provider_type)
    if checker is None:
        raise ValueError(f"Unsupported provider type: {provider.get('type')}")
    if provider_type != "ollama" and not provider.get("api_key"):
        raise ValueError("Provider has no API key configured")
    return checker(provider)


def run_health_check(provider_id: str, *, user_id: Optional[str] = None) -> Dict[str, Any]:
    provider = storage.get_provider(provider_id)
    if provider is None:
        raise LookupError(f"Provider not found: {provider_id}")

    try:
        result = check_provider(provider)
    except (ValueError, requests.RequestException) as exc:
        logger.warning("health check failed provider=%s type=%s err=%s", provider_id, provider.get("type"), exc)
        result = HealthResult(healthy=False, error_message=str(exc))

    PROVIDER_HEALTH_CHECKS.labels(
        type=provider.get("type") or "unknown",
        result="healthy" if result.healthy else "unhealthy",
    ).inc()

    try:
        storage.record_provider_health(provider_id, healthy=result.healthy, models=result.models)
        storage.add_provider_audit(
            provider_id,
            "health_check",
            {
                "healthy": result.healthy,
                "error_message": result.error_message,
                "models_found": len(result.models),
                "models": result.models,
            },
            user_id=user_id,
        )
    except Exception:
        logger.warning("provider health write failed provider=%s", provider_id, exc_info=True)

    logger.info(
        "health check provider=%s type=%s healthy=%s models=%s",
        provider_id,
        provider.get("type"),
        result.healthy,
        len(result.models),
    )
    return {
        "healthy": result.healthy,
        "error_message": result.error_message,
        "available_models": result.models,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def run_health_sweep(tenant_id: Optional[str] = None) -> Dict[str, Any]:
    """Health-check every active provider, one at a time."""
    providers = storage.list_providers(tenant_id, active_only=True)
    results: Dict[str, Dict[str, Any]] = {}
    for provider in providers:
        results[provider["id"]] = run_health_check(provider["id"])
    healthy = sum(1 for item in results.values() if item["healthy"])
    summary = {
        "success": True,
        "checked": len(results),
        "healthy": healthy,
        "unhealthy": len(results) - healthy,
        "results": results,
    }
    logger.info("provider sweep checked=%s healthy=%s", summary["checked"], healthy)
    return summary


def default_provider() -> Dict[str, Any]:
    """Provider record used when a chat turn has no configured chatbot."""
    return {
        "id": None,
        "name": "OpenAI (Default)",
        "type": "openai",
        "api_key": os.getenv("OPENAI_API_KEY", "").strip(),
        "base_url": os.getenv("OPENAI_BASE_URL") or None,
        "config": {"model": DEFAULT_CHAT_MODEL},
        "custom_headers": {},
    }


def resolve_model(provider: Dict[str, Any], override: Optional[str] = None) -> str:
    config = provider.get("config") or {}
    return override or config.get("model") or DEFAULT_CHAT_MODEL


def _openai_base_url(provider: Dict[str, Any]) -> Optional[str]:
    provider_type = provider.get("type")
    if provider_type == "custom":
        base_url = (provider.get("base_url") or "").rstrip("/")
        if not base_url:
            raise ValueError("Custom provider requires base_url")
        return base_url
    if provider_type == "ollama":
        return f"{(provider.get('base_url') or DEFAULT_OLLAMA_URL).rstrip('/')}/v1"
    return provider.get("base_url") or _OPENAI_COMPATIBLE_BASES[provider_type]


def build_chat_model(provider: Dict[str, Any], model: str, *, max_tokens: int = DEFAULT_MAX_TOKENS) -> ChatOpenAI:
    api_key = provider.get("api_key") or ("ollama" if provider.get("type") == "ollama" else None)
    return ChatOpenAI(
        model=model,
        base_url=_openai_base_url(provider),
        api_key=api_key,
        temperature=DEFAULT_TEMPERATURE,
        max_tokens=max_tokens,
        timeout=PROVIDER_HTTP_TIMEOUT,
        default_headers=provider.get("custom_headers") or None,
    )


def _stream_openai_compatible(provider: Dict[str, Any], prompt: str, system_prompt: str, model: str) -> Iterator[str]:
    llm = build_chat_model(provider, model)
    for chunk in llm.stream([SystemMessage(content=system_prompt), HumanMessage(content=prompt)]):
        content = getattr(chunk, "content", "")
        if isinstance(content, str) and content:
            yield content


def _stream_anthropic(provider: Dict[str, Any], prompt: str, system_prompt: str, model: str) -> Iterator[str]:
    response = _SESSION.post(
        f"{ANTHROPIC_API_BASE}/messages",
        headers={
            "x-api-key": provider["api_key"],
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        },
        json={
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "system": system_prompt,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        },
        stream=True,
        timeout=PROVIDER_HTTP_TIMEOUT,
    )
    if not response.ok:
        response.close()
        raise RuntimeError(f"Anthropic API error: {response.status_code}")
    try:
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "):
                continue
            try:
                event = json.loads(line[6:])
            except json.JSONDecodeError:
                logger.warning("anthropic stream parse error line=%r", line)
                continue
            if event.get("type") == "error":
                raise RuntimeError((event.get("error") or {}).get("message") or "Anthropic stream error")
            if event.get("type") == "content_block_delta":
                text = (event.get("delta") or {}).get("text")
                if text:
                    yield text
    finally:
        response.close()


def stream_completion(
    provider: Dict[str, Any],
    prompt: str,
    system_prompt: str,
    model: Optional[str] = None,
) -> Iterator[str]:
    """Yield text deltas from ``provider``.

    Configuration problems raise before the first delta so callers can fail over.
    """
    provider_type = (provider.get("type") or "").strip().lower()
    if provider_type not in SUPPORTED_PROVIDER_TYPES:
        raise ValueError(f"Unsupported provider type: {provider.get('type')}")
    if provider_type != "ollama" and not provider.get("api_key"):
        raise ValueError("Provider has no API key configured")
    resolved = resolve_model(provider, model)
    if provider_type == "anthropic":
        return _stream_anthropic(provider, prompt, system_prompt, resolved)
    if provider_type == "google":
        raise ValueError(f"Streaming not supported for provider type: {provider_type}")
    return _stream_openai_compatible(provider, prompt, system_prompt, resolved)


def public_view(provider: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Provider record without its secret, for API responses."""
    if provider is None:
        return None
    view = {key: value for key, value in provider.items() if key != "api_key"}
    view["has_api_key"] = bool(provider.get("api_key"))
    return view
