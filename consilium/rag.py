"""Local knowledge base with hybrid keyword + embedding retrieval."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence
import json
import logging
import math
import threading
import time
import uuid

from consilium.chunker import DEFAULT_MAX_CHARS, chunk_text
from consilium.errors import CallTimeoutError, KnowledgeImportError, NotFoundError, ProviderError
from consilium.models.gateway import call_with_timeout
from consilium.similarity import clamp_top_k, clamp_weight, cosine_similarity, hybrid_score, keyword_similarity
from consilium.store import KeyValueStore, _now

logger = logging.getLogger(__name__)

DOCS_KEY = "kb_docs_v1"
CHUNKS_KEY = "kb_chunks_v1"
EMBEDDING_CONFIG_KEY = "kb_embedding_config_v1"
RETRIEVAL_CONFIG_KEY = "kb_retrieval_config_v1"

UNTITLED = "Untitled document"
DEFAULT_COLLECTION = "default"
DEFAULT_TOP_K = 5
DEFAULT_KEYWORD_WEIGHT = 0.5
MAX_ERRORS = 50


def _gen_id(prefix: str = "kb") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _stored_vector(value: Any) -> List[float]:
    """A persisted embedding, or ``[]`` when any component is not a finite number."""
    if not isinstance(value, list):
        return []
    vector = [_finite(item) for item in value]
    if any(item is None for item in vector):
        return []
    return vector


@dataclass
class KnowledgeDocument:
    id: str
    title: str = UNTITLED
    tags: List[str] = field(default_factory=list)
    collection_id: str = ""
    content: str = ""
    excerpt: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def normalize(cls, data: Dict[str, Any]) -> "KnowledgeDocument":
        now = _now()
        tags = data.get("tags")
        return cls(
            id=data["id"] if isinstance(data.get("id"), str) and data["id"] else _gen_id(),
            title=data["title"] if isinstance(data.get("title"), str) else UNTITLED,
            tags=[str(tag) for tag in tags if tag] if isinstance(tags, list) else [],
            collection_id=data["collection_id"] if isinstance(data.get("collection_id"), str) else "",
            content=data["content"] if isinstance(data.get("content"), str) else "",
            excerpt=data["excerpt"] if isinstance(data.get("excerpt"), str) else "",
            created_at=str(data.get("created_at") or now),
            updated_at=str(data.get("updated_at") or now),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Chunk:
    id: str
    doc_id: str
    text: str
    embedding: List[float] = field(default_factory=list)
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Chunk"]:
        if not isinstance(data, dict) or not data.get("id") or not data.get("doc_id"):
            return None
        return cls(
            id=str(data["id"]),
            doc_id=str(data["doc_id"]),
            text=str(data.get("text") or ""),
            embedding=_stored_vector(data.get("embedding")),
            created_at=str(data.get("created_at") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_embedding_config(data: Any, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    data = data if isinstance(data, dict) else {}
    defaults = defaults or {}
    return {
        "provider": "modelscope",
        "model": data.get("model") or defaults.get("model") or "text-embedding-v3",
        "api_key": data.get("api_key") or defaults.get("api_key") or "",
        "base_url": data.get("base_url") or defaults.get("base_url") or "",
    }


def normalize_retrieval_config(data: Any, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    data = data if isinstance(data, dict) else {}
    defaults = defaults or {}
    top_k = _finite(data.get("top_k"))
    if top_k is None:
        top_k = _finite(defaults.get("top_k")) or DEFAULT_TOP_K
    weight = _finite(data.get("keyword_weight"))
    if weight is None:
        weight = _finite(defaults.get("keyword_weight"))
    return {
        "top_k": clamp_top_k(top_k),
        "keyword_weight": clamp_weight(DEFAULT_KEYWORD_WEIGHT if weight is None else weight),
    }


class KnowledgeBase:
    """Documents, their embedded chunks and retrieval settings.

    Every record lives in the key-value store and is written back after
    each mutation. One re-entrant lock guards reads and writes; embedding
    calls run outside it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        gateway: Any,
        chunk_max_chars: int = DEFAULT_MAX_CHARS,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.chunk_max_chars = chunk_max_chars
        self.errors: List[Dict[str, Any]] = []
        self.pinned_ids: List[str] = []
        self._lock = threading.RLock()
        defaults = defaults or {}
        self.docs = self._load_docs()
        self.chunks = self._load_chunks()
        self.embedding_config = normalize_embedding_config(
            self.store.get(EMBEDDING_CONFIG_KEY), defaults.get("embedding")
        )
        self.retrieval_config = normalize_retrieval_config(
            self.store.get(RETRIEVAL_CONFIG_KEY), defaults.get("retrieval")
        )

    # -- persistence -------------------------------------------------

    def _load_docs(self) -> List[KnowledgeDocument]:
        raw = self.store.get(DOCS_KEY, [])
        if not isinstance(raw, list):
            return []
        return [KnowledgeDocument.normalize(item) for item in raw if isinstance(item, dict)]

    def _load_chunks(self) -> List[Chunk]:
        raw = self.store.get(CHUNKS_KEY, [])
        if not isinstance(raw, list):
            return []
        return [chunk for chunk in (Chunk.from_dict(item) for item in raw) if chunk is not None]

    def _save_docs(self) -> None:
        self.store.set(DOCS_KEY, [doc.to_dict() for doc in self.docs])

    def _save_chunks(self) -> None:
        self.store.set(CHUNKS_KEY, [chunk.to_dict() for chunk in self.chunks])

    def _record_error(self, action: str, exc: Exception) -> None:
        self.errors.append({"action": action, "error": str(exc), "time": time.time()})
        del self.errors[:-MAX_ERRORS]

    def drain_errors(self) -> List[Dict[str, Any]]:
        with self._lock:
            errors = list(self.errors)
            self.errors.clear()
            return errors

    # -- documents ---------------------------------------------------

    def get_document(self, doc_id: str) -> Optional[KnowledgeDocument]:
        with self._lock:
            return next((doc for doc in self.docs if doc.id == doc_id), None)

    def add_document(self, payload: Dict[str, Any]) -> str:
        with self._lock:
            doc = KnowledgeDocument.normalize(payload)
            doc.updated_at = _now()
            self.docs.insert(0, doc)
            self._save_docs()
            return doc.id

    def update_document(self, doc_id: str, patch: Dict[str, Any]) -> Optional[KnowledgeDocument]:
        with self._lock:
            for idx, current in enumerate(self.docs):
                if current.id != doc_id:
                    continue
                updated = KnowledgeDocument.normalize({**current.to_dict(), **patch, "id": doc_id})
                updated.created_at = current.created_at or updated.created_at
                updated.updated_at = _now()
                self.docs[idx] = updated
                self._save_docs()
                return updated
            return None

    def remove_document(self, doc_id: str) -> None:
        with self._lock:
            self.docs = [doc for doc in self.docs if doc.id != doc_id]
            self.pinned_ids = [pid for pid in self.pinned_ids if pid != doc_id]
            self.chunks = [chunk for chunk in self.chunks if chunk.doc_id != doc_id]
            self._save_docs()
            self._save_chunks()

    def set_pinned(self, ids: Any) -> None:
        with self._lock:
            self.pinned_ids = [x for x in ids if isinstance(x, str) and x] if isinstance(ids, list) else []

    def collections(self) -> Dict[str, List[KnowledgeDocument]]:
        with self._lock:
            grouped: Dict[str, List[KnowledgeDocument]] = {}
            for doc in self.docs:
                grouped.setdefault(doc.collection_id or DEFAULT_COLLECTION, []).append(doc)
            return grouped

    def search(self, query: str = "", tags: Optional[Sequence[str]] = None) -> List[KnowledgeDocument]:
        needle = (query or "").lower().strip()
        wanted = [tag for tag in tags or [] if tag]
        with self._lock:
            results = []
            for doc in self.docs:
                if wanted and not all(tag in doc.tags for tag in wanted):
                    continue
                if needle and not (
                    needle in doc.title.lower()
                    or needle in doc.content.lower()
                    or any(needle in tag.lower() for tag in doc.tags)
                ):
                    continue
                results.append(doc)
            return results

    # -- embedding ---------------------------------------------------

    def ingest(
        self,
        title: str,
        content: str,
        tags: Optional[List[str]] = None,
        collection_id: str = "",
        auto_embed: bool = True,
    ) -> str:
        doc_id = self.add_document({
            "title": title,
            "content": content,
            "tags": tags or [],
            "collection_id": collection_id,
        })
        if auto_embed:
            self.reembed(doc_id)
        return doc_id

    def reembed(self, doc_id: str) -> int:
        """Chunk and embed a document, replacing its previous chunks.

        Embedding runs without holding the lock. If any embedding fails the
        old chunks stay in place and the ``ProviderError`` propagates.
        """
        with self._lock:
            doc = self.get_document(doc_id)
            if doc is None:
                raise NotFoundError(f"Knowledge document not found: {doc_id}")
            config = dict(self.embedding_config)
            content = doc.content
        pieces = chunk_text(content, self.chunk_max_chars)
        fresh = []
        for piece in pieces:
            vector = self.gateway.embed(config, piece)
            fresh.append(Chunk(id=_gen_id("chunk"), doc_id=doc_id, text=piece, embedding=vector, created_at=_now()))
        with self._lock:
            if self.get_document(doc_id) is None:
                raise NotFoundError(f"Knowledge document was removed while embedding: {doc_id}")
            self.chunks = [chunk for chunk in self.chunks if chunk.doc_id != doc_id] + fresh
            self._save_chunks()
        logger.info(f"Embedded {len(fresh)} chunks for {doc_id}")
        return len(fresh)

    # -- retrieval ---------------------------------------------------

    def _embed_query(self, config: Dict[str, Any], text: str, timeout: Optional[float]) -> List[float]:
        try:
            if timeout is not None and timeout > 0:
                return call_with_timeout(self.gateway.embed, timeout, config, text)
            return self.gateway.embed(config, text)
        except (ProviderError, CallTimeoutError) as exc:
            logger.warning(f"Query embedding failed, using keyword scores only: {exc}")
            with self._lock:
                self._record_error("embed_query", exc)
            return []

    def retrieve(
        self,
        query_text: str,
        selected_ids: Optional[Sequence[str]] = None,
        top_k: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Top-K chunks by blended keyword and vector score.

        Candidates are read under the lock and scored outside it, so a slow
        query embedding never blocks other knowledge operations. ``timeout``
        bounds the query embedding; on timeout scoring is keyword only.
        """
        ids = set(selected_ids) if selected_ids else None
        with self._lock:
            candidates = [chunk for chunk in self.chunks if ids is None or chunk.doc_id in ids]
            if not candidates:
                return []
            docs = [doc for doc in self.docs if ids is None or doc.id in ids]
            titles = {doc.id: doc.title for doc in self.docs}
            config = dict(self.embedding_config)
            k = _finite(top_k)
            limit = clamp_top_k(k if k is not None else self.retrieval_config["top_k"])
            w = _finite(keyword_weight)
            weight = clamp_weight(w if w is not None else self.retrieval_config["keyword_weight"])

        query_vector = self._embed_query(config, query_text or "", timeout)

        scored = []
        for chunk in candidates:
            lexical = keyword_similarity(query_text or "", chunk.text)
            vector = cosine_similarity(query_vector, chunk.embedding) if query_vector else 0.0
            score = hybrid_score(lexical, vector, weight)
            if math.isfinite(score):
                scored.append((chunk, score))
        # sorted() is stable, equal scores keep store order
        scored = sorted(scored, key=lambda item: item[1], reverse=True)[:limit]

        if not scored:
            return [
                {"id": doc.id, "doc_id": doc.id, "title": doc.title, "content": doc.excerpt or doc.content}
                for doc in docs[:limit]
            ]

        return [
            {
                "id": chunk.id,
                "doc_id": chunk.doc_id,
                "title": titles.get(chunk.doc_id) or UNTITLED,
                "content": chunk.text,
                "score": score,
            }
            for chunk, score in scored
        ]

    # -- import / export ---------------------------------------------

    def import_data(self, payload: Any) -> Dict[str, int]:
        """Merge documents from an export; all or nothing."""
        try:
            parsed = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
        except json.JSONDecodeError as exc:
            raise KnowledgeImportError(f"Import failed: invalid JSON ({exc})") from exc
        if isinstance(parsed, dict) and isinstance(parsed.get("docs"), list):
            incoming = parsed["docs"]
        elif isinstance(parsed, list):
            incoming = parsed
        else:
            raise KnowledgeImportError("Import failed: expected {\"docs\": [...]} or a list of documents")
        if not all(isinstance(item, dict) for item in incoming):
            raise KnowledgeImportError("Import failed: every document must be an object")

        normalized = [KnowledgeDocument.normalize(item) for item in incoming]
        with self._lock:
            seen = {f"{doc.title}::{doc.content}" for doc in self.docs}
            merged = list(self.docs)
            for doc in normalized:
                key = f"{doc.title}::{doc.content}"
                if key in seen:
                    continue
                doc.id = _gen_id()
                merged.append(doc)
            self.docs = merged
            self._save_docs()
            return {"imported": len(normalized), "merged": len(merged)}

    def export_data(self) -> str:
        with self._lock:
            return json.dumps({"docs": [doc.to_dict() for doc in self.docs]}, indent=2, ensure_ascii=False)

    # -- configuration -----------------------------------------------

    def set_embedding_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.embedding_config = normalize_embedding_config(config)
            self.store.set(EMBEDDING_CONFIG_KEY, self.embedding_config)
            return dict(self.embedding_config)

    def set_retrieval_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.retrieval_config = normalize_retrieval_config(config)
            self.store.set(RETRIEVAL_CONFIG_KEY, self.retrieval_config)
            return dict(self.retrieval_config)
