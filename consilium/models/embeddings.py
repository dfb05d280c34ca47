"""Embedding client for OpenAI-compatible ``/embeddings`` endpoints."""
from __future__ import annotations

from typing import Any, Dict, List
import logging
import time

import httpx

from consilium.models.base import EmbeddingResult, error_body, normalize_base_url, to_float_vector
from consilium.models.openai_compat import DASHSCOPE_COMPAT_ROOT, MODELSCOPE_INFERENCE_ROOT

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-v3"


def embedding_roots(api_key: str, base_url: str = "") -> List[str]:
    if base_url and base_url.strip():
        return [normalize_base_url(base_url)]
    if api_key.startswith("sk-"):
        return [DASHSCOPE_COMPAT_ROOT]
    return [MODELSCOPE_INFERENCE_ROOT]


def _extract_vector(data: Dict[str, Any]) -> List[float]:
    items = data.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return to_float_vector(items[0].get("embedding"))
    return to_float_vector(data.get("embedding"))


class EmbeddingClient:
    def __init__(self, api_key: str, model: str = DEFAULT_EMBEDDING_MODEL, base_url: str = "", timeout: float = 45.0) -> None:
        self.api_key = api_key
        self.model = model or DEFAULT_EMBEDDING_MODEL
        self.roots = embedding_roots(api_key, base_url)
        self.timeout = timeout

    def embed(self, text: str) -> EmbeddingResult:
        if not text:
            return EmbeddingResult(vector=[])
        payload = {"model": self.model, "input": text, "encoding_format": "float"}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        errors: List[str] = []
        last = EmbeddingResult(ok=False)
        start = time.perf_counter()
        for root in self.roots:
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(f"{root}/embeddings", json=payload, headers=headers)
                duration_ms = (time.perf_counter() - start) * 1000
                if resp.status_code >= 400:
                    body = error_body(resp)
                    errors.append(f"endpoint {root}: {resp.status_code} {body}")
                    last = EmbeddingResult(ok=False, status=resp.status_code, body=body, duration_ms=duration_ms)
                    continue
                return EmbeddingResult(vector=_extract_vector(resp.json()), duration_ms=duration_ms)
            except httpx.TimeoutException:
                errors.append(f"endpoint {root}: timeout after {self.timeout}s")
                last = EmbeddingResult(ok=False, timed_out=True, duration_ms=(time.perf_counter() - start) * 1000)
            except Exception as e:
                errors.append(f"endpoint {root}: {e}")
                last = EmbeddingResult(ok=False, duration_ms=(time.perf_counter() - start) * 1000)
        last.error = " | ".join(errors) or "no endpoint configured"
        return last
