"""Command line interface for Consilium."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

import yaml

from consilium.config import Config, get_config
from consilium.errors import ConsiliumError, NotFoundError, ValidationError
from consilium.extract import fetch_document, read_document
from consilium.models.gateway import PROVIDERS, ModelGateway
from consilium.pipeline import ConsultationEngine
from consilium.rag import KnowledgeBase
from consilium.store import ConsultationStore, KeyValueStore


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _load_structured(path: str) -> Any:
    # YAML is a superset of JSON, so one loader covers both
    return yaml.safe_load(Path(path).expanduser().read_text(encoding="utf-8"))


def _knowledge_base(config: Config) -> KnowledgeBase:
    return KnowledgeBase(
        KeyValueStore(config.data_dir),
        ModelGateway.from_config(config.providers),
        chunk_max_chars=config.chunk_max_chars,
        defaults=config.knowledge,
    )


def _case_from_args(args: argparse.Namespace) -> dict:
    case: dict[str, Any] = {}
    if args.case:
        loaded = _load_structured(args.case) or {}
        if not isinstance(loaded, dict):
            raise ValidationError(f"Case file must contain a mapping: {args.case}")
        case.update(loaded)
    for key in ("name", "gender", "age", "past_history", "current_problem"):
        value = getattr(args, key, None)
        if value is not None:
            case[key] = value
    return case


def _progress_printer(engine: ConsultationEngine, stop_event: threading.Event) -> None:
    last = 0

    def _flush() -> None:
        nonlocal last
        for entry in engine.history_after(last):
            if entry.get("typing"):
                continue
            last = entry["seq"]
            speaker = entry.get("doctor_name") or entry.get("author") or entry["type"]
            print(f"[{speaker}] {entry.get('content', '')}", file=sys.stderr)

    while not stop_event.wait(0.5):
        _flush()
    _flush()


def cmd_run(args: argparse.Namespace) -> None:
    config = get_config()
    engine = ConsultationEngine(config)
    if args.doctors:
        doctors = _load_structured(args.doctors)
        if isinstance(doctors, dict):
            doctors = doctors.get("doctors", [])
        engine.set_doctors(doctors or [])
    settings: dict[str, Any] = {}
    if args.turn_order:
        settings["turn_order"] = args.turn_order
    if args.max_rounds:
        settings["max_rounds_without_elimination"] = args.max_rounds
    engine.set_settings(settings)
    if args.title:
        engine.set_consultation_name(args.title)
    if args.link:
        engine.link_sessions(args.link, sync_patient_info=not args.no_sync)
    if args.knowledge:
        engine.set_selected_knowledge(args.knowledge)
    engine.set_patient_case(_case_from_args(args))
    for message in args.message or []:
        engine.add_patient_message(message)

    stop_event = threading.Event()
    printer = None
    if args.progress:
        printer = threading.Thread(target=_progress_printer, args=(engine, stop_event), daemon=True)
        printer.start()
    try:
        session_id = engine.start(background=bool(printer))
        if printer:
            print(f"[consilium] session_id={session_id}", file=sys.stderr)
            engine.wait()
    finally:
        stop_event.set()
        if printer:
            printer.join(timeout=2.0)

    snapshot = engine.snapshot()
    if args.output_md:
        _write_markdown_report(Path(args.output_md), snapshot)
    _print({
        "session_id": snapshot["session_id"],
        "rounds": snapshot["workflow"]["current_round"],
        "doctors": [{"id": d["id"], "name": d["name"], "status": d["status"]} for d in snapshot["doctors"]],
        "final_summary": snapshot["final_summary"],
        "error": snapshot["error"],
    })
    if snapshot["error"]:
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    config = get_config()
    store = ConsultationStore(config.data_dir)
    if args.sessions_cmd == "latest":
        _print(store.latest() or {})
    elif args.sessions_cmd == "show":
        session = store.get_session(args.session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {args.session_id}")
        _print(session)
    else:
        limit = getattr(args, "limit", 10)
        _print({"sessions": [
            {
                "id": item.get("id"),
                "consultation_name": item.get("consultation_name"),
                "status": item.get("status"),
                "created_at": item.get("created_at"),
                "finished_at": item.get("finished_at"),
            }
            for item in store.list_sessions(limit=limit)
        ]})


def cmd_kb(args: argparse.Namespace) -> None:
    config = get_config()
    kb = _knowledge_base(config)
    if args.kb_cmd == "add":
        if args.url:
            title, content = fetch_document(args.url)
        elif args.path:
            title, content = read_document(Path(args.path).expanduser())
        elif args.text:
            title, content = "", args.text
        else:
            raise ValidationError("Provide a file path, --url or --text")
        doc_id = kb.ingest(
            args.title or title,
            content,
            tags=args.tag or [],
            collection_id=args.collection or "",
            auto_embed=not args.no_embed,
        )
        _print({"id": doc_id, "chunks": len([c for c in kb.chunks if c.doc_id == doc_id])})
    elif args.kb_cmd == "list":
        docs = kb.search(args.query or "", args.tag or [])
        _print({"docs": [
            {"id": d.id, "title": d.title, "tags": d.tags, "collection_id": d.collection_id, "updated_at": d.updated_at}
            for d in docs
        ]})
    elif args.kb_cmd == "collections":
        _print({key: [d.id for d in docs] for key, docs in kb.collections().items()})
    elif args.kb_cmd == "remove":
        kb.remove_document(args.doc_id)
        _print({"ok": True})
    elif args.kb_cmd == "reembed":
        _print({"id": args.doc_id, "chunks": kb.reembed(args.doc_id)})
    elif args.kb_cmd == "retrieve":
        results = kb.retrieve(args.query, selected_ids=args.doc or None, top_k=args.top_k, keyword_weight=args.weight)
        _print({"results": results, "errors": kb.drain_errors()})
    elif args.kb_cmd == "import":
        _print(kb.import_data(Path(args.file).expanduser().read_text(encoding="utf-8")))
    elif args.kb_cmd == "export":
        payload = kb.export_data()
        if args.output:
            Path(args.output).expanduser().write_text(payload + "\n", encoding="utf-8")
            _print({"ok": True, "path": args.output})
        else:
            print(payload)
    elif args.kb_cmd == "config":
        embedding = dict(kb.embedding_config)
        for key in ("model", "api_key", "base_url"):
            value = getattr(args, key, None)
            if value is not None:
                embedding[key] = value
        if embedding != kb.embedding_config:
            kb.set_embedding_config(embedding)
        retrieval = dict(kb.retrieval_config)
        if args.top_k is not None:
            retrieval["top_k"] = args.top_k
        if args.weight is not None:
            retrieval["keyword_weight"] = args.weight
        if retrieval != kb.retrieval_config:
            kb.set_retrieval_config(retrieval)
        shown = dict(kb.embedding_config)
        shown["api_key"] = "***" if shown.get("api_key") else ""
        _print({"embedding": shown, "retrieval": kb.retrieval_config})


def cmd_config(args: argparse.Namespace) -> None:
    config = get_config()
    _print({
        "data_dir": str(config.data_dir),
        "server": config.server,
        "consultation": config.consultation,
        "settings": config.settings,
        "providers": config.providers,
        "doctors": [
            {**doc, "api_key": "***" if doc.get("api_key") else ""} for doc in config.doctors
        ],
    })


def cmd_models(args: argparse.Namespace) -> None:
    config = get_config()
    gateway = ModelGateway.from_config(config.providers)
    models = gateway.list_models(args.provider, args.api_key, args.base_url or "")
    _print({"provider": args.provider, "models": models})


def cmd_serve(args: argparse.Namespace) -> None:
    from consilium.server import main as serve_main
    serve_main(host=args.host, port=args.port)


def _write_markdown_report(path: Path, snapshot: dict) -> None:
    if path.is_dir():
        path = path / f"consilium-{snapshot.get('session_id') or 'session'}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    case = snapshot.get("patient_case") or {}
    summary = snapshot.get("final_summary") or {}
    title = snapshot.get("consultation_name") or case.get("name") or "Consultation"
    lines = [
        f"# {title}",
        "",
        f"- **Session ID**: {snapshot.get('session_id', '')}",
        f"- **Rounds**: {snapshot.get('workflow', {}).get('current_round', '')}",
        f"- **Patient**: {case.get('name', '')}",
        f"- **Problem**: {case.get('current_problem', '')}",
        "",
        "## Final Summary",
        "",
        f"_By {summary.get('doctor_name') or 'nobody'} ({summary.get('status', '')})_",
        "",
        (summary.get("content") or "").strip() or "No summary.",
        "",
        "## Votes",
        "",
    ]
    for vote in snapshot.get("vote_log") or []:
        lines.append(f"- Round {vote['round']}: {vote['voter_name']} -> {vote['target_name']}: {vote['reason']}")
    lines.extend(["", "## Discussion", ""])
    for entry in snapshot.get("history") or []:
        if entry["type"] in ("doctor", "patient"):
            speaker = entry.get("doctor_name") or entry.get("author") or entry["type"]
            lines.extend([f"**{speaker}**", "", entry.get("content", ""), ""])
        elif entry["type"] in ("system", "vote_result"):
            lines.extend([f"_{entry.get('content', '')}_", ""])
    path.write_text("\n".join(lines).strip() + "\n", encoding="utf-8")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="consilium")
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run a consultation to completion")
    run.add_argument("--case", help="YAML/JSON file with the patient case")
    run.add_argument("--name")
    run.add_argument("--gender")
    run.add_argument("--age")
    run.add_argument("--past-history", dest="past_history")
    run.add_argument("--problem", dest="current_problem")
    run.add_argument("--message", action="append", help="Patient message added before the first round")
    run.add_argument("--doctors", help="YAML/JSON file with the doctor list")
    run.add_argument("--title", help="Consultation name")
    run.add_argument("--turn-order", choices=["random", "fixed"])
    run.add_argument("--max-rounds", type=int, help="Rounds without elimination before stopping")
    run.add_argument("--link", action="append", help="Finished session id to link")
    run.add_argument("--no-sync", action="store_true", help="Do not copy patient details from linked sessions")
    run.add_argument("--knowledge", action="append", help="Knowledge document id to restrict retrieval to")
    run.add_argument("--progress", action="store_true")
    run.add_argument("--output-md")

    sessions = sub.add_parser("sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd")
    list_cmd = sessions_sub.add_parser("list")
    list_cmd.add_argument("--limit", type=int, default=10)
    sessions_sub.add_parser("latest")
    show = sessions_sub.add_parser("show")
    show.add_argument("session_id")

    kb = sub.add_parser("kb", help="Manage the knowledge base")
    kb_sub = kb.add_subparsers(dest="kb_cmd")
    add = kb_sub.add_parser("add")
    add.add_argument("path", nargs="?")
    add.add_argument("--url")
    add.add_argument("--text")
    add.add_argument("--title")
    add.add_argument("--tag", action="append")
    add.add_argument("--collection")
    add.add_argument("--no-embed", action="store_true")
    kb_list = kb_sub.add_parser("list")
    kb_list.add_argument("--query")
    kb_list.add_argument("--tag", action="append")
    kb_sub.add_parser("collections")
    remove = kb_sub.add_parser("remove")
    remove.add_argument("doc_id")
    reembed = kb_sub.add_parser("reembed")
    reembed.add_argument("doc_id")
    retrieve = kb_sub.add_parser("retrieve")
    retrieve.add_argument("query")
    retrieve.add_argument("--doc", action="append")
    retrieve.add_argument("--top-k", type=float)
    retrieve.add_argument("--weight", type=float)
    import_cmd = kb_sub.add_parser("import")
    import_cmd.add_argument("file")
    export = kb_sub.add_parser("export")
    export.add_argument("--output")
    kb_config = kb_sub.add_parser("config")
    kb_config.add_argument("--model")
    kb_config.add_argument("--api-key", dest="api_key")
    kb_config.add_argument("--base-url", dest="base_url")
    kb_config.add_argument("--top-k", type=float)
    kb_config.add_argument("--weight", type=float)

    sub.add_parser("config", help="Show the effective configuration")

    models = sub.add_parser("models", help="List models offered by a provider")
    models.add_argument("--provider", choices=PROVIDERS, required=True)
    models.add_argument("--api-key", required=True)
    models.add_argument("--base-url")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    handlers = {
        "run": cmd_run,
        "sessions": cmd_sessions,
        "kb": cmd_kb,
        "config": cmd_config,
        "models": cmd_models,
        "serve": cmd_serve,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return
    if args.command == "kb" and not args.kb_cmd:
        parser.parse_args(["kb", "--help"])
    try:
        handler(args)
    except ConsiliumError as exc:
        _print({"ok": False, "error": str(exc), "type": type(exc).__name__})
        raise SystemExit(1)


if __name__ == "__main__":
    main()
