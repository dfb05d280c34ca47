"""Local JSON persistence: key-value records and the consultation archive."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List
from datetime import datetime
import json
import logging
import os
import re
import time
import uuid
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def _atomic_write(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".{uuid.uuid4().hex[:6]}.tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)


@dataclass
class KeyValueStore:
    """One JSON file per key under ``<data_dir>/kv``.

    Unreadable or malformed records load as the caller's default.
    """

    data_dir: Path

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"invalid key: {key!r}")
        return self.data_dir / "kv" / f"{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            logger.warning(f"Ignoring malformed record {key}", exc_info=True)
            return default

    def set(self, key: str, value: Any) -> None:
        _atomic_write(self._path(key), value)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


@dataclass
class ConsultationStore:
    """Archive of consultation sessions, one directory per session."""

    data_dir: Path

    def _sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    def session_dir(self, session_id: str) -> Path:
        return self._sessions_dir() / session_id

    def _latest_path(self) -> Path:
        return self.data_dir / "latest.json"

    def create_session(self, name: str, case: Dict[str, Any], meta: Dict[str, Any] | None = None) -> str:
        session_id = time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
        payload = {
            "id": session_id,
            "created_at": _now(),
            "status": "running",
            "consultation_name": name,
            "patient_case": case,
            "meta": meta or {},
            "events": [],
        }
        self._write_session(session_id, payload)
        return session_id

    def append_event(self, session_id: str, event: Dict[str, Any]) -> None:
        def _update(session: Dict[str, Any]) -> Dict[str, Any]:
            session.setdefault("events", []).append({"timestamp": _now(), **event})
            return session
        self._locked_update(session_id, _update)

    def finalize_session(
        self,
        session_id: str,
        final_summary: Dict[str, Any],
        history: List[Dict[str, Any]],
        votes: List[Dict[str, Any]],
        doctors: List[Dict[str, Any]],
    ) -> None:
        def _update(session: Dict[str, Any]) -> Dict[str, Any]:
            session["status"] = "complete"
            session["finished_at"] = _now()
            session["final_summary"] = final_summary
            session["history"] = history
            session["votes"] = votes
            session["doctors"] = doctors
            return session
        session = self._locked_update(session_id, _update)
        if session:
            _atomic_write(self._latest_path(), session)

    def fail_session(self, session_id: str, error: str) -> None:
        def _update(session: Dict[str, Any]) -> Dict[str, Any]:
            session["status"] = "failed"
            session["error"] = error
            session["finished_at"] = _now()
            return session
        self._locked_update(session_id, _update)

    def get_session(self, session_id: str) -> Dict[str, Any] | None:
        path = self.session_dir(session_id) / "session.json"
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            return None

    def latest(self) -> Dict[str, Any] | None:
        if not self._latest_path().exists():
            return None
        try:
            return json.loads(self._latest_path().read_text(encoding="utf-8"))
        except Exception:
            return None

    def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        sessions: List[Dict[str, Any]] = []
        if not self._sessions_dir().exists():
            return sessions
        for session_dir in sorted(self._sessions_dir().iterdir(), reverse=True)[:limit]:
            path = session_dir / "session.json"
            if not path.exists():
                continue
            try:
                sessions.append(json.loads(path.read_text(encoding="utf-8")))
            except Exception:
                continue
        return sessions

    def linked_case(self, session_id: str) -> Dict[str, Any] | None:
        """Read-only reference to a finished session, for linking into a new one."""
        session = self.get_session(session_id)
        if not session or session.get("status") != "complete":
            return None
        case = session.get("patient_case") or {}
        summary = session.get("final_summary") or {}
        return {
            "id": session_id,
            "source_id": session_id,
            "consultation_name": session.get("consultation_name") or "",
            "patient_name": case.get("name", ""),
            "patient_gender": case.get("gender", ""),
            "patient_age": case.get("age"),
            "past_history": case.get("past_history", ""),
            "current_problem": case.get("current_problem", ""),
            "image_recognition_result": case.get("image_recognition_result", ""),
            "final_summary": summary.get("content", ""),
            "finished_at": session.get("finished_at", ""),
        }

    def _write_session(self, session_id: str, payload: Dict[str, Any]) -> None:
        path = self.session_dir(session_id) / "session.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    def _locked_update(
        self,
        session_id: str,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any] | None:
        path = self.session_dir(session_id) / "session.json"
        if not path.exists():
            return None
        if fcntl is None:
            session = self.get_session(session_id)
            if not session:
                return None
            updated = updater(session)
            self._write_session(session_id, updated)
            return updated
        with path.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                handle.seek(0)
                data = handle.read()
                if not data.strip():
                    return None
                session = json.loads(data)
                updated = updater(session)
                handle.seek(0)
                handle.truncate()
                handle.write(json.dumps(updated, indent=2, ensure_ascii=False))
                return updated
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
