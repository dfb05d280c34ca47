"""Native Gemini API client."""
from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from consilium.errors import ProviderError
from consilium.models.base import ChatResult, PromptBundle, chat_history, error_body, normalize_base_url, sort_models

logger = logging.getLogger(__name__)

GEMINI_ROOT = "https://generativelanguage.googleapis.com"
_GOOGLE_HOST = re.compile(r"generativelanguage\.googleapis\.com$")


class GeminiClient:
    """Native Gemini API client using httpx.

    The Google host takes the key as a query parameter; proxies and other
    hosts get it in the ``x-goog-api-key`` header instead.
    """

    def __init__(self, api_key: str, base_url: str = "", timeout: float = 45.0) -> None:
        self.api_key = api_key
        self.root = normalize_base_url(base_url, GEMINI_ROOT)
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    @property
    def is_google(self) -> bool:
        return bool(_GOOGLE_HOST.search(self.root))

    def _params(self) -> Dict[str, str]:
        return {"key": self.api_key} if self.is_google else {}

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not self.is_google:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def generate(self, model: str, prompt: PromptBundle, history: List[Dict[str, Any]]) -> ChatResult:
        if not self.api_key:
            return ChatResult(ok=False, error="Gemini API key not set")

        url = f"{self.root}/v1beta/models/{model}:generateContent"
        contents = [
            {"role": "model" if item["role"] == "assistant" else "user", "parts": [{"text": item["content"]}]}
            for item in chat_history(history)
        ]
        contents.append({"role": "user", "parts": [{"text": prompt.user}]})
        body: Dict[str, Any] = {
            "systemInstruction": {"role": "system", "parts": [{"text": prompt.system}]},
            "contents": contents,
        }

        start = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=body, params=self._params(), headers=self._headers())

            duration_ms = (time.perf_counter() - start) * 1000

            if response.status_code != 200:
                error_data = error_body(response)
                return ChatResult(
                    ok=False,
                    error=f"HTTP {response.status_code}: {error_data}",
                    status=response.status_code,
                    body=error_data,
                    duration_ms=duration_ms,
                )

            data = response.json()
            candidates = data.get("candidates", [])
            if not candidates:
                return ChatResult(ok=False, error="No candidates in response", body=data, duration_ms=duration_ms)

            parts = candidates[0].get("content", {}).get("parts", [])
            first = (parts[0].get("text") or "").strip() if parts else ""
            text = first or "\n".join(p.get("text", "") for p in parts)
            return ChatResult(text=text, duration_ms=duration_ms)

        except httpx.TimeoutException:
            duration_ms = (time.perf_counter() - start) * 1000
            return ChatResult(
                ok=False,
                error=f"Gemini API timeout after {self.timeout}s",
                duration_ms=duration_ms,
                timed_out=True,
            )
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return ChatResult(ok=False, error=str(e), duration_ms=duration_ms)

    def list_models(self) -> List[Dict[str, Any]]:
        # v1 first, then v1beta
        last_error: Optional[str] = None
        for version in ("v1", "v1beta"):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.get(f"{self.root}/{version}/models", params=self._params(), headers=self._headers())
                if resp.status_code >= 400:
                    last_error = f"{version}: HTTP {resp.status_code}"
                    continue
                models = resp.json().get("models") or []
            except Exception as e:
                last_error = f"{version}: {e}"
                continue
            return sort_models([
                {"id": (item.get("name") or "").replace("models/", "", 1), "display_name": item.get("displayName")}
                for item in models
            ])
        raise ProviderError(f"Gemini model listing failed: {last_error}")
