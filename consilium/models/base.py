"""Shared result types and helpers for provider clients."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class PromptBundle:
    system: str
    user: str


@dataclass
class ChatResult:
    """Normalized outcome of one provider call."""
    text: str = ""
    ok: bool = True
    error: Optional[str] = None
    status: Optional[int] = None
    body: Any = None
    duration_ms: float = 0.0
    timed_out: bool = False


@dataclass
class EmbeddingResult:
    vector: List[float] = field(default_factory=list)
    ok: bool = True
    error: Optional[str] = None
    status: Optional[int] = None
    body: Any = None
    duration_ms: float = 0.0
    timed_out: bool = False


def normalize_base_url(base_url: str | None, fallback: str = "") -> str:
    url = (base_url or fallback or "").strip()
    return url[:-1] if url.endswith("/") else url


def chat_history(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Keep only user/assistant turns in the shape providers expect."""
    return [
        {"role": item["role"], "content": str(item.get("content") or "")}
        for item in history or []
        if item.get("role") in ("user", "assistant")
    ]


def error_body(response: Any) -> Any:
    try:
        return response.json()
    except Exception:
        return (response.text or "")[:500]


def to_float_vector(values: Any) -> List[float]:
    if not isinstance(values, list):
        return []
    vector = []
    for value in values:
        try:
            vector.append(float(value))
        except (TypeError, ValueError):
            vector.append(0.0)
    return vector


def sort_models(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted((item for item in items if item.get("id")), key=lambda item: item["id"])
