"""OpenAI-compatible chat completions client."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

PROVIDER_PRESETS = {
    "OPENAI": "https://api.openai.com/v1",
    "GEMINI": "https://generativelanguage.googleapis.com/v1beta/openai",
    "GROQ": "https://api.groq.com/openai/v1",
    "MISTRAL": "https://api.mistral.ai/v1",
    "OPENROUTER": "https://openrouter.ai/api/v1",
}


@dataclass
class ChatCompletionResult:
    ok: bool
    content: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    error: str | None = None
    status_code: int | None = None  # None for transport errors / timeouts
    latency_ms: int = 0

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    def usage(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


def _normalize_err(err: str) -> str:
    if not err:
        return "unknown_error"
    low = err.lower()
    if "timeout" in low or "timed out" in low:
        return "timeout"
    if "connection reset by peer" in low:
        return "connection_reset"
    return err[:200]


def chat_completion(
    base_url: str,
    api_key: str,
    model: str,
    messages: list[dict[str, str]],
    *,
    temperature: float | None = None,
    max_tokens: int | None = None,
    top_p: float | None = None,
    frequency_penalty: float | None = None,
    presence_penalty: float | None = None,
    stop: list[str] | None = None,
    seed: int | None = None,
    json_mode: bool = False,
    timeout: float = 30,
) -> ChatCompletionResult:
    """Single attempt; never raises for HTTP or transport failures."""
    url = f"{(base_url or '').rstrip('/')}/chat/completions"
    payload: dict[str, Any] = {"model": model, "messages": messages}
    if temperature is not None:
        payload["temperature"] = temperature
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    if top_p is not None:
        payload["top_p"] = top_p
    if frequency_penalty is not None:
        payload["frequency_penalty"] = frequency_penalty
    if presence_penalty is not None:
        payload["presence_penalty"] = presence_penalty
    if stop:
        payload["stop"] = stop
    if seed is not None:
        payload["seed"] = seed
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    logger.info("ai_chat_request %s", json.dumps({"model": model, "messages": len(messages)}, ensure_ascii=False))
    t0 = time.perf_counter()
    try:
        r = httpx.post(url, json=payload, headers=headers, timeout=timeout)
    except httpx.RequestError as e:
        return ChatCompletionResult(
            ok=False,
            error=_normalize_err(str(e) or e.__class__.__name__),
            latency_ms=int((time.perf_counter() - t0) * 1000),
        )
    latency_ms = int((time.perf_counter() - t0) * 1000)
    try:
        data = r.json() if r.content else {}
    except ValueError:
        data = {}
    if r.status_code >= 400:
        api_err = data.get("error") if isinstance(data, dict) else None
        if isinstance(api_err, dict):
            api_err = api_err.get("message") or json.dumps(api_err, ensure_ascii=False)
        return ChatCompletionResult(
            ok=False,
            raw=data if isinstance(data, dict) else {},
            error=str(api_err or f"http_{r.status_code}")[:200],
            status_code=r.status_code,
            latency_ms=latency_ms,
        )
    choices = data.get("choices") or []
    content = ""
    if choices and isinstance(choices[0], dict):
        content = ((choices[0].get("message") or {}).get("content")) or ""
    usage = data.get("usage") or {}
    return ChatCompletionResult(
        ok=True,
        content=content,
        raw=data,
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        total_tokens=int(usage.get("total_tokens") or 0),
        status_code=r.status_code,
        latency_ms=latency_ms,
    )
