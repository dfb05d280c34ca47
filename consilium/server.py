"""FastAPI server for Consilium."""
from __future__ import annotations

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from typing import Any, Dict
import asyncio
import logging

from consilium.config import get_config
from consilium.errors import CallTimeoutError, ConsiliumError, NotFoundError, ValidationError
from consilium.pipeline import ConsultationEngine

logger = logging.getLogger(__name__)

app = FastAPI(title="Consilium")

HISTORY_POLL_SECONDS = 0.5


@app.on_event("startup")
def _startup() -> None:
    config = get_config()
    engine = ConsultationEngine(config)
    app.state.config = config
    app.state.engine = engine
    app.state.knowledge = engine.knowledge
    app.state.store = engine.store


@app.exception_handler(ConsiliumError)
async def _consilium_error(request: Request, exc: ConsiliumError):
    status = 400
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, CallTimeoutError):
        status = 504
    return JSONResponse({"error": str(exc)}, status_code=status)


def _engine(request: Request) -> ConsultationEngine:
    return request.app.state.engine


def _apply_setup(engine: ConsultationEngine, payload: Dict[str, Any]) -> None:
    if "name" in payload:
        engine.set_consultation_name(payload.get("name"))
    if isinstance(payload.get("settings"), dict):
        engine.set_settings(payload["settings"])
    if isinstance(payload.get("doctors"), list):
        engine.set_doctors(payload["doctors"])
    if isinstance(payload.get("case"), dict):
        engine.set_patient_case(payload["case"])
    sync = bool(payload.get("sync_patient_info", True))
    if isinstance(payload.get("linked_session_ids"), list):
        engine.link_sessions(payload["linked_session_ids"], sync_patient_info=sync)
    elif "linked_cases" in payload:
        engine.set_linked_cases(payload.get("linked_cases"), sync_patient_info=sync)
    if "knowledge_ids" in payload:
        engine.set_selected_knowledge(payload.get("knowledge_ids"))


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "consilium"}


@app.websocket("/ws/session")
async def websocket_session(websocket: WebSocket):
    """Streams discussion entries as they are appended."""
    engine: ConsultationEngine = websocket.app.state.engine
    await websocket.accept()
    try:
        await websocket.send_json({"type": "state", "state": engine.snapshot()})
        last_seq = max([entry["seq"] for entry in engine.history_after(0)] + [0])
        while True:
            await asyncio.sleep(HISTORY_POLL_SECONDS)
            for entry in engine.history_after(last_seq):
                await websocket.send_json({"type": "entry", "entry": entry})
                last_seq = max(last_seq, entry["seq"])
            await websocket.send_json({"type": "workflow", "workflow": engine.workflow.to_dict()})
            if engine.workflow.phase == "finished" and not engine.running:
                await websocket.send_json({"type": "complete", "state": engine.snapshot()})
                break
    except WebSocketDisconnect:
        logger.debug("Session stream client disconnected")


# -- consultation --------------------------------------------------------


@app.post("/api/session/setup")
async def session_setup_api(payload: dict, request: Request):
    engine = _engine(request)
    if engine.running:
        raise ValidationError("A consultation is already running")
    _apply_setup(engine, payload)
    return {"ok": True, "state": engine.snapshot()}


@app.post("/api/session/start")
async def session_start_api(payload: dict, request: Request):
    engine = _engine(request)
    if engine.running:
        raise ValidationError("A consultation is already running")
    _apply_setup(engine, payload)
    session_id = engine.start(background=True)
    return {"ok": True, "session_id": session_id}


@app.post("/api/session/pause")
async def session_pause_api(request: Request):
    engine = _engine(request)
    engine.pause()
    return {"ok": True, "paused": engine.workflow.paused}


@app.post("/api/session/resume")
async def session_resume_api(request: Request):
    engine = _engine(request)
    engine.resume()
    return {"ok": True, "paused": engine.workflow.paused}


@app.post("/api/session/toggle")
async def session_toggle_api(request: Request):
    engine = _engine(request)
    engine.toggle_pause()
    return {"ok": True, "paused": engine.workflow.paused}


@app.post("/api/session/patient-message")
async def session_patient_message_api(payload: dict, request: Request):
    text = str(payload.get("text") or "").strip()
    if not text:
        return JSONResponse({"error": "text required"}, status_code=400)
    engine = _engine(request)
    engine.add_patient_message(text)
    return {"ok": True, "history_length": len(engine.history)}


@app.get("/api/session/state")
async def session_state_api(request: Request):
    return _engine(request).snapshot()


@app.get("/api/session/history")
async def session_history_api(request: Request, after: int = 0):
    return {"entries": _engine(request).history_after(after)}


# -- archive -------------------------------------------------------------


@app.get("/api/sessions")
async def sessions_api(request: Request, limit: int = 20):
    return {"sessions": request.app.state.store.list_sessions(limit=limit)}


@app.get("/api/sessions/latest")
async def sessions_latest_api(request: Request):
    return request.app.state.store.latest() or {}


@app.get("/api/sessions/{session_id}")
async def session_detail_api(session_id: str, request: Request):
    session = request.app.state.store.get_session(session_id)
    if not session:
        return JSONResponse({"error": "not found"}, status_code=404)
    return session


# -- knowledge base ------------------------------------------------------


@app.get("/api/knowledge")
async def knowledge_list_api(request: Request, q: str = "", tag: str = ""):
    kb = request.app.state.knowledge
    tags = [item.strip() for item in tag.split(",") if item.strip()]
    docs = await asyncio.to_thread(kb.search, q, tags)
    return {"documents": [doc.to_dict() for doc in docs], "pinned": list(kb.pinned_ids)}


@app.post("/api/knowledge")
async def knowledge_add_api(payload: dict, request: Request):
    content = str(payload.get("content") or "").strip()
    if not content:
        return JSONResponse({"error": "content required"}, status_code=400)
    kb = request.app.state.knowledge
    doc_id = kb.ingest(
        str(payload.get("title") or "").strip() or "Untitled document",
        content,
        tags=payload.get("tags") if isinstance(payload.get("tags"), list) else [],
        collection_id=str(payload.get("collection_id") or ""),
        auto_embed=False,
    )
    result: Dict[str, Any] = {"ok": True, "id": doc_id, "chunks": 0}
    if payload.get("embed", True):
        try:
            result["chunks"] = await asyncio.to_thread(kb.reembed, doc_id)
        except ConsiliumError as exc:
            logger.warning(f"Embedding {doc_id} failed: {exc}")
            result["embed_error"] = str(exc)
    return result


@app.get("/api/knowledge/collections")
async def knowledge_collections_api(request: Request):
    grouped = request.app.state.knowledge.collections()
    return {"collections": {key: [doc.id for doc in docs] for key, docs in grouped.items()}}


@app.get("/api/knowledge/export")
async def knowledge_export_api(request: Request):
    return PlainTextResponse(request.app.state.knowledge.export_data(), media_type="application/json")


@app.post("/api/knowledge/import")
async def knowledge_import_api(payload: dict, request: Request):
    return {"ok": True, **request.app.state.knowledge.import_data(payload)}


@app.post("/api/knowledge/retrieve")
async def knowledge_retrieve_api(payload: dict, request: Request):
    kb = request.app.state.knowledge
    results = await asyncio.to_thread(
        kb.retrieve,
        str(payload.get("query") or ""),
        selected_ids=payload.get("ids") or None,
        top_k=payload.get("top_k"),
        keyword_weight=payload.get("keyword_weight"),
    )
    return {"results": results, "errors": kb.drain_errors()}


@app.post("/api/knowledge/pinned")
async def knowledge_pinned_api(payload: dict, request: Request):
    kb = request.app.state.knowledge
    kb.set_pinned(payload.get("ids"))
    _engine(request).set_selected_knowledge(kb.pinned_ids)
    return {"ok": True, "pinned": list(kb.pinned_ids)}


@app.get("/api/knowledge/errors")
async def knowledge_errors_api(request: Request):
    return {"errors": request.app.state.knowledge.drain_errors()}


@app.get("/api/knowledge/{doc_id}")
async def knowledge_detail_api(doc_id: str, request: Request):
    doc = request.app.state.knowledge.get_document(doc_id)
    if doc is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return doc.to_dict()


@app.put("/api/knowledge/{doc_id}")
async def knowledge_update_api(doc_id: str, payload: dict, request: Request):
    doc = request.app.state.knowledge.update_document(doc_id, payload)
    if doc is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return {"ok": True, "document": doc.to_dict()}


@app.delete("/api/knowledge/{doc_id}")
async def knowledge_delete_api(doc_id: str, request: Request):
    request.app.state.knowledge.remove_document(doc_id)
    return {"ok": True}


@app.post("/api/knowledge/{doc_id}/reembed")
async def knowledge_reembed_api(doc_id: str, request: Request):
    chunks = await asyncio.to_thread(request.app.state.knowledge.reembed, doc_id)
    return {"ok": True, "chunks": chunks}


# -- configuration -------------------------------------------------------


@app.get("/api/config/knowledge")
async def knowledge_config_api(request: Request):
    kb = request.app.state.knowledge
    embedding = dict(kb.embedding_config)
    embedding["api_key"] = "***" if embedding.get("api_key") else ""
    return {"embedding": embedding, "retrieval": dict(kb.retrieval_config)}


@app.put("/api/config/knowledge")
async def knowledge_config_update_api(payload: dict, request: Request):
    kb = request.app.state.knowledge
    if isinstance(payload.get("embedding"), dict):
        kb.set_embedding_config(payload["embedding"])
    if isinstance(payload.get("retrieval"), dict):
        kb.set_retrieval_config(payload["retrieval"])
    return await knowledge_config_api(request)


@app.post("/api/models")
async def models_api(payload: dict, request: Request):
    provider = str(payload.get("provider") or "").strip()
    api_key = str(payload.get("api_key") or "").strip()
    if not provider or not api_key:
        return JSONResponse({"error": "provider and api_key required"}, status_code=400)
    gateway = _engine(request).gateway
    models = await asyncio.to_thread(
        gateway.list_models, provider, api_key, str(payload.get("base_url") or "")
    )
    return {"models": models}


def main(host: str | None = None, port: int | None = None):
    import uvicorn
    config = get_config()
    host = host or config.server.get("host", "127.0.0.1")
    port = int(port or config.server.get("port", 8099))
    uvicorn.run("consilium.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
