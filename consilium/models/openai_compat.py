"""OpenAI-compatible chat client (OpenAI, SiliconFlow, ModelScope/DashScope)."""
from __future__ import annotations

from typing import Any, Dict, List, Optional
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

OPENAI_ROOT = "https://api.openai.com"
SILICONFLOW_ROOT = "https://api.siliconflow.cn"
MODELSCOPE_INFERENCE_ROOT = "https://api-inference.modelscope.cn/v1"
DASHSCOPE_COMPAT_ROOT = "https://dashscope.aliyuncs.com/compatible-mode/v1"


def modelscope_roots(api_key: str, base_url: str = "", listing: bool = False) -> List[str]:
    """Endpoint candidates for a ModelScope key.

    For chat a configured base URL is used exclusively. Otherwise the key
    prefix picks the host: ``ms-`` keys only go to ModelScope inference,
    ``sk-`` keys only to DashScope, anything else tries both. Model listing
    is more forgiving and falls through to both hosts after the preferred one.
    """
    if listing:
        roots = [normalize_base_url(base_url)]
        if api_key.startswith("ms-"):
            roots.append(MODELSCOPE_INFERENCE_ROOT)
        if api_key.startswith("sk-"):
            roots.append(DASHSCOPE_COMPAT_ROOT)
        roots += [MODELSCOPE_INFERENCE_ROOT, DASHSCOPE_COMPAT_ROOT]
    elif base_url and base_url.strip():
        roots = [normalize_base_url(base_url)]
    elif api_key.startswith("ms-"):
        roots = [MODELSCOPE_INFERENCE_ROOT]
    elif api_key.startswith("sk-"):
        roots = [DASHSCOPE_COMPAT_ROOT]
    else:
        roots = [MODELSCOPE_INFERENCE_ROOT, DASHSCOPE_COMPAT_ROOT]
    return list(dict.fromkeys(root for root in roots if root))


def _versioned(root: str) -> str:
    return root if root.endswith("/v1") else f"{root}/v1"


def _extract_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    choice = choices[0] if choices else {}
    message = choice.get("message") or {}
    content = message.get("content") or choice.get("text")
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                parts.append(str(part.get("text") or part.get("content") or ""))
        return "\n".join(parts).strip()
    return str(content or data.get("output_text") or "").strip()


class OpenAICompatClient:
    def __init__(self, api_key: str, roots: List[str], timeout: float = 45.0) -> None:
        self.api_key = api_key
        self.roots = roots
        self.timeout = timeout

    @classmethod
    def for_provider(
        cls,
        provider: str,
        api_key: str,
        base_url: str = "",
        timeout: float = 45.0,
        listing: bool = False,
    ) -> "OpenAICompatClient":
        if provider == "modelscope":
            roots = modelscope_roots(api_key, base_url, listing=listing)
        elif provider == "siliconflow":
            roots = [normalize_base_url(base_url, SILICONFLOW_ROOT)]
        else:
            roots = [normalize_base_url(base_url, OPENAI_ROOT)]
        return cls(api_key, roots, timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def chat(
        self,
        model: str,
        prompt: PromptBundle,
        history: List[Dict[str, Any]],
        temperature: float = 0.7,
    ) -> ChatResult:
        messages = [
            {"role": "system", "content": prompt.system},
            *chat_history(history),
            {"role": "user", "content": prompt.user},
        ]
        payload = {"model": model, "messages": messages, "temperature": temperature}
        errors: List[str] = []
        last: Optional[ChatResult] = None
        start = time.perf_counter()
        for root in self.roots:
            url = f"{_versioned(root)}/chat/completions"
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(url, json=payload, headers=self._headers())
                duration = (time.perf_counter() - start) * 1000
                if resp.status_code >= 400:
                    body = error_body(resp)
                    errors.append(f"endpoint {root}: {resp.status_code} {body}")
                    last = ChatResult(ok=False, status=resp.status_code, body=body, duration_ms=duration)
                    continue
                return ChatResult(text=_extract_text(resp.json()), duration_ms=duration)
            except httpx.TimeoutException:
                duration = (time.perf_counter() - start) * 1000
                errors.append(f"endpoint {root}: timeout after {self.timeout}s")
                last = ChatResult(ok=False, duration_ms=duration, timed_out=True)
            except Exception as exc:
                duration = (time.perf_counter() - start) * 1000
                errors.append(f"endpoint {root}: {exc}")
                last = ChatResult(ok=False, duration_ms=duration)
        result = last or ChatResult(ok=False)
        result.error = " | ".join(errors) or "no endpoint configured"
        return result

    def list_models(self) -> List[Dict[str, Any]]:
        """Sorted ``{id, display_name}`` entries from the first endpoint that answers."""
        errors: List[str] = []
        status: Optional[int] = None
        for root in self.roots:
            url = f"{_versioned(root)}/models"
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.get(url, headers={"Authorization": f"Bearer {self.api_key}"})
                if resp.status_code >= 400:
                    status = resp.status_code
                    errors.append(f"endpoint {root}: {resp.status_code} {error_body(resp)}")
                    continue
                data = resp.json()
            except Exception as exc:
                errors.append(f"endpoint {root}: {exc}")
                continue
            items = data.get("data") or data.get("models") or []
            return sort_models([
                {
                    "id": item.get("id") or item.get("name"),
                    "display_name": item.get("display_name") or item.get("owned_by") or item.get("provider"),
                }
                for item in items
            ])
        message = " | ".join(errors) or "no endpoint configured"
        logger.warning(f"Model listing failed: {message}")
        raise ProviderError(message, status=status)
