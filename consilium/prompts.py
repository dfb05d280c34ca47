"""Prompt construction for discussion turns, votes and the final summary."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional
import json

from consilium.models.base import PromptBundle
from consilium.session import Doctor, HistoryEntry, LinkedCase, PatientCase

QUERY_HISTORY_ENTRIES = 4
TRANSCRIPT_OPENER = "Consultation transcript so far."


def format_case(case: PatientCase) -> str:
    lines = [f"Name: {case.name}"]
    if case.gender:
        lines.append(f"Gender: {case.gender}")
    if case.age is not None:
        lines.append(f"Age: {case.age}")
    if case.past_history:
        lines.append(f"Past history: {case.past_history}")
    lines.append(f"Current problem: {case.current_problem}")
    if case.image_recognition_result:
        lines.append(f"Image findings:\n{case.image_recognition_result}")
    return "\n".join(lines)


def format_linked_cases(linked: Iterable[LinkedCase]) -> str:
    blocks = []
    for idx, item in enumerate(linked, start=1):
        header = f"{idx}. {item.consultation_name}"
        if item.patient_name:
            header += f" (patient: {item.patient_name})"
        if item.finished_at:
            header += f", finished {item.finished_at}"
        body = [header]
        if item.current_problem:
            body.append(f"   Problem: {item.current_problem}")
        if item.final_summary:
            body.append(f"   Conclusion: {item.final_summary}")
        blocks.append("\n".join(body))
    return "\n".join(blocks)


def format_knowledge(entries: Iterable[Dict[str, Any]]) -> str:
    blocks = []
    for idx, entry in enumerate(entries, start=1):
        title = entry.get("title") or "Untitled document"
        blocks.append(f"[{idx}] {title}\n{entry.get('content', '')}")
    return "\n\n".join(blocks)


def _context_sections(
    case: PatientCase,
    linked: List[LinkedCase],
    knowledge: List[Dict[str, Any]],
) -> List[str]:
    sections = [f"## Patient case\n{format_case(case)}"]
    if linked:
        sections.append(f"## Related earlier consultations\n{format_linked_cases(linked)}")
    if knowledge:
        sections.append(
            "## Reference knowledge\nUse these excerpts where relevant; they may be incomplete.\n\n"
            + format_knowledge(knowledge)
        )
    return sections


def build_turn_prompt(
    system_prompt: str,
    case: PatientCase,
    doctor: Doctor,
    linked: List[LinkedCase],
    knowledge: List[Dict[str, Any]],
) -> PromptBundle:
    sections = _context_sections(case, linked, knowledge)
    sections.append(
        f"You are {doctor.name}. Give your analysis for this round: core diagnosis, reasoning "
        "and recommendations. Respond to the other doctors' points where relevant."
    )
    return PromptBundle(system=system_prompt, user="\n\n".join(sections))


def build_vote_prompt(
    system_prompt: str,
    case: PatientCase,
    candidates: List[Doctor],
    voter: Doctor,
    linked: List[LinkedCase],
    knowledge: List[Dict[str, Any]],
) -> PromptBundle:
    sections = _context_sections(case, linked, knowledge)
    roster = "\n".join(f"- {doc.id}: {doc.name}" for doc in candidates)
    example = json.dumps({"targetDoctorId": candidates[0].id if candidates else "", "reason": "..."})
    sections.append(
        f"You are {voter.name}. The discussion round is over. Review every doctor's answer "
        "(your own included) and name the ONE doctor whose answer is the least accurate or "
        f"least well supported.\n\nDoctors still in the consultation:\n{roster}\n\n"
        "Reply with JSON only, no other text, in exactly this form:\n"
        f"{example}"
    )
    return PromptBundle(system=system_prompt, user="\n\n".join(sections))


def build_summary_prompt(
    summary_prompt: str,
    system_prompt: str,
    case: PatientCase,
    doctor: Doctor,
    linked: List[LinkedCase],
    knowledge: List[Dict[str, Any]],
) -> PromptBundle:
    sections = _context_sections(case, linked, knowledge)
    sections.append(f"You are {doctor.name}. The consultation has ended.\n\n{summary_prompt}")
    return PromptBundle(system=system_prompt, user="\n\n".join(sections))


def _speaker(entry: HistoryEntry) -> str:
    if entry.type == "doctor":
        return entry.doctor_name or "Doctor"
    return entry.author or "Patient"


def format_history_for_provider(history: Iterable[HistoryEntry], doctor_id: str) -> List[Dict[str, str]]:
    """Render the discussion as chat turns from ``doctor_id``'s point of view.

    The doctor's own replies become ``assistant`` turns; everybody else's
    contributions become ``user`` turns prefixed with the speaker. System and
    vote entries are left out. Consecutive turns of one role are merged and
    the result always opens with a ``user`` turn.
    """
    messages: List[Dict[str, str]] = []
    for entry in history:
        if entry.type not in ("doctor", "patient") or not entry.content:
            continue
        if entry.type == "doctor" and entry.doctor_id == doctor_id:
            role, content = "assistant", entry.content
        else:
            role, content = "user", f"{_speaker(entry)}: {entry.content}"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += f"\n\n{content}"
        else:
            messages.append({"role": role, "content": content})
    if messages and messages[0]["role"] == "assistant":
        messages.insert(0, {"role": "user", "content": TRANSCRIPT_OPENER})
    return messages


def build_case_query_text(case: PatientCase, history: Optional[Iterable[HistoryEntry]] = None) -> str:
    """Retrieval query: the case fields plus the most recent contributions."""
    parts = []
    if case.name:
        parts.append(f"Patient: {case.name}")
    if case.gender:
        parts.append(f"Gender: {case.gender}")
    if case.age is not None:
        parts.append(f"Age: {case.age}")
    if case.past_history:
        parts.append(f"Past history: {case.past_history}")
    if case.current_problem:
        parts.append(f"Chief complaint: {case.current_problem}")
    if case.image_recognition_result:
        parts.append(f"Image findings: {case.image_recognition_result}")
    recent = [entry for entry in history or [] if entry.type in ("doctor", "patient")]
    latest = "; ".join(
        f"{_speaker(entry)}: {entry.content}" for entry in recent[-QUERY_HISTORY_ENTRIES:]
    )
    if latest:
        parts.append(f"Discussion excerpt: {latest}")
    return "\n".join(parts)
