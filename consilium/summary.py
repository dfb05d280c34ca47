"""Closing synthesis once a consultation finishes."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional
import logging

from consilium.errors import ConsiliumError
from consilium.models.gateway import call_with_timeout
from consilium.prompts import build_summary_prompt, format_history_for_provider
from consilium.session import Doctor, DiscussionHistory, FinalSummary, LinkedCase, PatientCase, Settings

logger = logging.getLogger(__name__)


def summary_candidates(
    doctors: List[Doctor],
    preferred_id: Optional[str] = None,
    last_success_id: Optional[str] = None,
) -> List[Doctor]:
    """Preferred doctor, then the last doctor that answered, then the active ones.

    Falls back to the first doctor when nobody else qualifies.
    """
    by_id = {doc.id: doc for doc in doctors}
    ordered: List[Doctor] = []
    for doc_id in (preferred_id, last_success_id):
        doc = by_id.get(doc_id) if doc_id else None
        if doc is not None and doc not in ordered:
            ordered.append(doc)
    for doc in doctors:
        if doc.active and doc not in ordered:
            ordered.append(doc)
    if not ordered and doctors:
        ordered.append(doctors[0])
    return ordered


class SummaryProducer:
    def __init__(
        self,
        gateway: Any,
        call_timeout: float = 60.0,
        call: Optional[Callable[..., str]] = None,
    ) -> None:
        self.gateway = gateway
        self.call_timeout = call_timeout
        self.call = call or self._call

    def _call(self, role: str, doctor: Doctor, prompt: Any, history: List[Dict[str, str]]) -> str:
        return call_with_timeout(self.gateway.generate, self.call_timeout, doctor, prompt, history)

    def produce(
        self,
        doctors: List[Doctor],
        settings: Settings,
        case: PatientCase,
        history: DiscussionHistory,
        linked: List[LinkedCase],
        knowledge: List[Dict[str, Any]],
        preferred_id: Optional[str] = None,
        last_success_id: Optional[str] = None,
    ) -> FinalSummary:
        """Ask candidates in order until one produces a summary.

        Each failure is kept as an ``error`` summary so the last attempt is
        what the caller sees if every candidate fails.
        """
        used_prompt = settings.summary_prompt
        summary = FinalSummary(used_prompt=used_prompt)
        for doctor in summary_candidates(doctors, preferred_id, last_success_id):
            summary = FinalSummary(
                status="pending", doctor_id=doctor.id, doctor_name=doctor.name, used_prompt=used_prompt
            )
            prompt = build_summary_prompt(
                used_prompt,
                doctor.custom_prompt or settings.global_system_prompt,
                case,
                doctor,
                linked,
                knowledge,
            )
            provider_history = format_history_for_provider(history, doctor.id)
            try:
                content = self.call("summary", doctor, prompt, provider_history)
            except ConsiliumError as exc:
                logger.warning(f"Summary by {doctor.name} failed: {exc}")
                summary.status = "error"
                summary.content = f"Summary generation failed: {exc}"
                continue
            summary.status = "ready"
            summary.content = content
            return summary
        return summary

