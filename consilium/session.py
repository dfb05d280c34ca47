"""Session data model: doctors, patient case, history and workflow state."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterator, List, Optional
import threading
import time

from consilium.errors import ValidationError

ACTIVE = "active"
ELIMINATED = "eliminated"

PHASES = ("setup", "discussion", "voting", "finished")
ENTRY_TYPES = ("system", "patient", "doctor", "vote_detail", "vote_result")


@dataclass
class Doctor:
    id: str
    name: str
    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""
    status: str = ACTIVE
    votes: int = 0
    custom_prompt: str = ""

    @property
    def active(self) -> bool:
        return self.status == ACTIVE

    @property
    def can_call(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Doctor":
        doctor_id = str(data.get("id") or "").strip()
        if not doctor_id:
            raise ValidationError("Every doctor needs an id")
        return cls(
            id=doctor_id,
            name=str(data.get("name") or doctor_id),
            provider=str(data.get("provider") or "openai"),
            model=str(data.get("model") or ""),
            api_key=str(data.get("api_key") or ""),
            base_url=str(data.get("base_url") or ""),
            status=ELIMINATED if data.get("status") == ELIMINATED else ACTIVE,
            votes=max(0, int(data.get("votes") or 0)),
            custom_prompt=str(data.get("custom_prompt") or ""),
        )

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_secrets:
            data["api_key"] = "***" if self.api_key else ""
        return data


@dataclass
class ImageRecognition:
    id: str
    name: str = ""
    data_url: str = ""
    result: str = ""
    status: str = "queued"
    error: str = ""
    created_at: float = 0.0


def _recognition_status(item: Dict[str, Any]) -> str:
    status = item.get("status")
    if status in ("queued", "recognizing"):
        return "queued"
    if status in ("error", "success"):
        return status
    if item.get("error"):
        return "error"
    if item.get("result"):
        return "success"
    return "queued"


def sanitize_image_recognitions(items: Any) -> List[ImageRecognition]:
    if not isinstance(items, list):
        return []
    now = time.time()
    result = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        result.append(ImageRecognition(
            id=str(item.get("id") or f"img-{int(now * 1000)}-{idx}"),
            name=str(item.get("name") or ""),
            data_url=str(item.get("data_url") or item.get("image_url") or ""),
            result=str(item.get("result") or ""),
            status=_recognition_status(item),
            error=str(item.get("error") or ""),
            created_at=float(item.get("created_at") or now),
        ))
    return result


def summarize_image_recognitions(items: List[ImageRecognition]) -> str:
    lines = []
    for idx, entry in enumerate(items):
        if entry.status != "success" or not entry.result:
            continue
        name_part = f" ({entry.name})" if entry.name else ""
        lines.append(f"Image {idx + 1}{name_part}: {entry.result}")
    return "\n".join(lines)


def _coerce_age(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass
class PatientCase:
    name: str = ""
    gender: str = ""
    age: Optional[int] = None
    past_history: str = ""
    current_problem: str = ""
    image_recognition_result: str = ""
    image_recognitions: List[ImageRecognition] = field(default_factory=list)

    def update(self, patch: Dict[str, Any]) -> None:
        for key in ("name", "gender", "past_history", "current_problem", "image_recognition_result"):
            if key in patch and patch[key] is not None:
                setattr(self, key, str(patch[key]))
        if "age" in patch:
            self.age = _coerce_age(patch["age"])
        if "image_recognitions" in patch:
            self.image_recognitions = sanitize_image_recognitions(patch["image_recognitions"])
            summary = summarize_image_recognitions(self.image_recognitions)
            if summary:
                self.image_recognition_result = summary

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "PatientCase":
        case = cls()
        case.update(data or {})
        return case

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LinkedCase:
    id: str
    source_id: str
    consultation_name: str
    patient_name: str = ""
    patient_gender: str = ""
    patient_age: Optional[int] = None
    past_history: str = ""
    current_problem: str = ""
    image_recognition_result: str = ""
    final_summary: str = ""
    finished_at: str = ""
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sanitize_linked_cases(items: Any) -> List[LinkedCase]:
    if not isinstance(items, list):
        return []
    result = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict) or not item:
            continue
        linked_id = item.get("id") or item.get("source_id") or f"linked-{idx}"
        result.append(LinkedCase(
            id=str(linked_id),
            source_id=str(item.get("source_id") or linked_id),
            consultation_name=str(
                item.get("consultation_name") or item.get("name") or f"Linked consultation {idx + 1}"
            ),
            patient_name=str(item.get("patient_name") or ""),
            patient_gender=str(item.get("patient_gender") or ""),
            patient_age=_coerce_age(item.get("patient_age")),
            past_history=str(item.get("past_history") or ""),
            current_problem=str(item.get("current_problem") or ""),
            image_recognition_result=str(item.get("image_recognition_result") or ""),
            final_summary=str(item.get("final_summary") or ""),
            finished_at=str(item.get("finished_at") or ""),
            metadata=item.get("metadata") if isinstance(item.get("metadata"), dict) else None,
        ))
    return result


@dataclass
class HistoryEntry:
    seq: int
    type: str
    content: str = ""
    author: str = ""
    doctor_id: Optional[str] = None
    doctor_name: Optional[str] = None
    voter_id: Optional[str] = None
    voter_name: Optional[str] = None
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    reason: Optional[str] = None
    typing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, False)}


class DiscussionHistory:
    """Append-only discussion log shared by the engine and its readers.

    Only typing placeholders may be removed. Every append gets a fresh
    ``seq`` so readers can poll for entries after the last one they saw.
    """

    def __init__(self) -> None:
        self._entries: List[HistoryEntry] = []
        self._next_seq = 1
        self._lock = threading.Lock()

    def append(self, type: str, content: str = "", **fields: Any) -> HistoryEntry:
        if type not in ENTRY_TYPES:
            raise ValueError(f"unknown history entry type: {type}")
        with self._lock:
            entry = HistoryEntry(seq=self._next_seq, type=type, content=content, **fields)
            self._next_seq += 1
            self._entries.append(entry)
            return entry

    def begin_typing(self, doctor: Doctor) -> HistoryEntry:
        return self.append("system", f"{doctor.name} is typing...", doctor_id=doctor.id, typing=True)

    def remove_placeholder(self, entry: HistoryEntry) -> None:
        if not entry.typing:
            raise ValueError("only typing placeholders can be removed")
        with self._lock:
            self._entries = [item for item in self._entries if item.seq != entry.seq]

    def extend_content(self, entry: HistoryEntry, text: str) -> None:
        with self._lock:
            entry.content += text

    def clear(self) -> None:
        with self._lock:
            self._entries = []

    def after(self, seq: int) -> List[HistoryEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.seq > seq]

    def entries(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class VoteRecord:
    round: int
    voter_id: str
    voter_name: str
    target_id: str
    target_name: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Progress:
    total: int = 0
    done: int = 0
    current: str = ""


@dataclass
class WorkflowState:
    phase: str = "setup"
    current_round: int = 0
    rounds_without_elimination: int = 0
    turn_queue: List[str] = field(default_factory=list)
    active_turn: Optional[str] = None
    paused: bool = False
    progress: Progress = field(default_factory=Progress)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Settings:
    global_system_prompt: str
    summary_prompt: str
    turn_order: str = "random"
    max_rounds_without_elimination: int = 3

    def update(self, patch: Dict[str, Any]) -> None:
        if patch.get("global_system_prompt"):
            self.global_system_prompt = str(patch["global_system_prompt"])
        if patch.get("summary_prompt"):
            self.summary_prompt = str(patch["summary_prompt"])
        if patch.get("turn_order") in ("random", "fixed"):
            self.turn_order = patch["turn_order"]
        if patch.get("max_rounds_without_elimination") is not None:
            self.max_rounds_without_elimination = max(1, int(patch["max_rounds_without_elimination"]))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FinalSummary:
    status: str = "idle"
    doctor_id: Optional[str] = None
    doctor_name: str = ""
    content: str = ""
    used_prompt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
