"""Anthropic Messages API client."""
from __future__ import annotations

from typing import Any, Dict, List
import logging
import time

import httpx

from consilium.errors import ProviderError
from consilium.models.base import (
    ChatResult,
    PromptBundle,
    chat_history,
    error_body,
    normalize_base_url,
    sort_models,
)

logger = logging.getLogger(__name__)

ANTHROPIC_ROOT = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicClient:
    def __init__(self, api_key: str, base_url: str = "", timeout: float = 45.0, max_tokens: int = 1024) -> None:
        self.api_key = api_key
        self.root = normalize_base_url(base_url, ANTHROPIC_ROOT)
        self.timeout = timeout
        self.max_tokens = max_tokens

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def chat(self, model: str, prompt: PromptBundle, history: List[Dict[str, Any]]) -> ChatResult:
        payload = {
            "model": model,
            "max_tokens": self.max_tokens,
            "system": prompt.system,
            "messages": [*chat_history(history), {"role": "user", "content": prompt.user}],
        }
        start = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.root}/v1/messages", json=payload, headers=self._headers())
            duration_ms = (time.perf_counter() - start) * 1000
            if resp.status_code >= 400:
                body = error_body(resp)
                return ChatResult(
                    ok=False,
                    error=f"HTTP {resp.status_code}: {body}",
                    status=resp.status_code,
                    body=body,
                    duration_ms=duration_ms,
                )
            content = resp.json().get("content") or []
            text = content[0].get("text", "") if content and isinstance(content[0], dict) else ""
            return ChatResult(text=str(text).strip(), duration_ms=duration_ms)
        except httpx.TimeoutException:
            duration_ms = (time.perf_counter() - start) * 1000
            return ChatResult(
                ok=False,
                error=f"Anthropic API timeout after {self.timeout}s",
                duration_ms=duration_ms,
                timed_out=True,
            )
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return ChatResult(ok=False, error=str(e), duration_ms=duration_ms)

    def list_models(self) -> List[Dict[str, Any]]:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(f"{self.root}/v1/models", headers=self._headers())
        except Exception as e:
            raise ProviderError(f"Anthropic model listing failed: {e}") from e
        if resp.status_code >= 400:
            body = error_body(resp)
            raise ProviderError(f"Anthropic model listing failed: HTTP {resp.status_code}", status=resp.status_code, body=body)
        data = resp.json()
        items = data.get("data") or data.get("models") or []
        return sort_models([
            {"id": item.get("id") or item.get("slug") or item.get("name"), "display_name": item.get("display_name")}
            for item in items
        ])
