"""Consultation engine: discussion rounds, voting and elimination."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence
import logging
import random
import threading
import time

from consilium.audit import AuditLog
from consilium.config import Config
from consilium.errors import ConsiliumError, NotFoundError, ValidationError
from consilium.models.gateway import ModelGateway, call_with_timeout
from consilium.prompts import build_case_query_text, build_turn_prompt, build_vote_prompt, format_history_for_provider
from consilium.rag import KnowledgeBase
from consilium.session import (
    ACTIVE,
    Doctor,
    DiscussionHistory,
    ELIMINATED,
    FinalSummary,
    HistoryEntry,
    LinkedCase,
    PatientCase,
    Progress,
    Settings,
    VoteRecord,
    WorkflowState,
    sanitize_linked_cases,
)
from consilium.store import ConsultationStore, KeyValueStore
from consilium.summary import SummaryProducer
from consilium.votes import SIMULATED_REASON, VoteDecision, parse_vote, resolve_vote

logger = logging.getLogger(__name__)

RAW_VOTE_PREVIEW_CHARS = 200


class ConsultationEngine:
    """Runs one consultation at a time.

    ``start`` validates synchronously, then drives rounds either inline or
    on a background thread. Readers may poll ``snapshot`` and
    ``history_after`` while a run is in progress.
    """

    def __init__(
        self,
        config: Config,
        gateway: Optional[Any] = None,
        knowledge: Optional[KnowledgeBase] = None,
        store: Optional[ConsultationStore] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway or ModelGateway.from_config(config.providers)
        self.store = store or ConsultationStore(config.data_dir)
        self.knowledge = knowledge or KnowledgeBase(
            KeyValueStore(config.data_dir),
            self.gateway,
            chunk_max_chars=config.chunk_max_chars,
            defaults=config.knowledge,
        )
        self.rng = rng or random.Random()

        cfg = config.consultation
        self.call_timeout = config.call_timeout_seconds
        self.pause_poll = config.pause_poll_seconds
        self.reveal_chunk_chars = int(cfg.get("reveal_chunk_chars", 0))
        self.reveal_delay = float(cfg.get("reveal_delay_seconds", 0.015))
        self.vote_gap = float(cfg.get("vote_gap_seconds", 0.05))
        self.knowledge_top_k = int(cfg.get("knowledge_top_k", 5))

        self.settings = Settings(**config.settings)
        self.consultation_name = ""
        self.doctors: List[Doctor] = [Doctor.from_dict(item) for item in config.doctors]
        self.patient_case = PatientCase()
        self.linked_cases: List[LinkedCase] = []
        self.selected_knowledge: List[str] = []
        self.history = DiscussionHistory()
        self.workflow = WorkflowState()
        self.round_votes: List[VoteRecord] = []
        self.vote_log: List[VoteRecord] = []
        self.final_summary = FinalSummary()
        self.last_success_doctor_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.error: Optional[str] = None
        self.summarizer = SummaryProducer(self.gateway, self.call_timeout, call=self._call)

        self._audit: AuditLog | None = None
        self._resume = threading.Event()
        self._resume.set()
        self._thread: Optional[threading.Thread] = None

    # -- setup operations --------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def active_doctors(self) -> List[Doctor]:
        return [doc for doc in self.doctors if doc.active]

    def set_consultation_name(self, name: Any) -> None:
        self.consultation_name = name.strip() if isinstance(name, str) else ""

    def set_settings(self, patch: Dict[str, Any]) -> None:
        self.settings.update(patch or {})

    def set_doctors(self, doctors: Sequence[Any]) -> None:
        self.doctors = [doc if isinstance(doc, Doctor) else Doctor.from_dict(doc) for doc in doctors]

    def set_patient_case(self, patch: Dict[str, Any]) -> None:
        self.patient_case.update(patch or {})

    def set_linked_cases(self, items: Any, sync_patient_info: bool = True) -> None:
        self.linked_cases = sanitize_linked_cases(items)
        if not sync_patient_info or not self.linked_cases:
            return
        first = self.linked_cases[0]
        patch: Dict[str, Any] = {}
        if first.patient_name.strip():
            patch["name"] = first.patient_name.strip()
        if first.patient_gender.strip():
            patch["gender"] = first.patient_gender.strip()
        if first.patient_age is not None:
            patch["age"] = first.patient_age
        if patch:
            self.set_patient_case(patch)

    def link_sessions(self, session_ids: Sequence[str], sync_patient_info: bool = True) -> None:
        linked = []
        for session_id in session_ids:
            case = self.store.linked_case(session_id)
            if case is None:
                raise NotFoundError(f"No finished consultation with id {session_id}")
            linked.append(case)
        self.set_linked_cases(linked, sync_patient_info=sync_patient_info)

    def add_patient_message(self, text: Any) -> None:
        content = str(text or "").strip()
        if not content:
            return
        author = f"Patient ({self.patient_case.name})" if self.patient_case.name else "Patient"
        self.history.append("patient", content, author=author)

    def set_selected_knowledge(self, ids: Any) -> None:
        valid = [x for x in ids if isinstance(x, str) and x] if isinstance(ids, list) else []
        self.selected_knowledge = list(dict.fromkeys(valid))

    # -- pause control -----------------------------------------------

    def pause(self) -> None:
        self.workflow.paused = True
        self._resume.clear()

    def resume(self) -> None:
        self.workflow.paused = False
        self._resume.set()

    def toggle_pause(self) -> None:
        if self.workflow.paused:
            self.resume()
        else:
            self.pause()

    def _wait_while_paused(self) -> None:
        while self.workflow.paused:
            self._resume.wait(self.pause_poll)

    def _sleep(self, seconds: float) -> None:
        self._wait_while_paused()
        if seconds > 0:
            time.sleep(seconds)

    # -- run ---------------------------------------------------------

    def start(
        self,
        case: Optional[Dict[str, Any]] = None,
        doctors: Optional[Sequence[Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
        background: bool = False,
    ) -> str:
        if self.running:
            raise ValidationError("A consultation is already running")
        if case is not None:
            self.set_patient_case(case)
        if doctors is not None:
            self.set_doctors(doctors)
        if settings is not None:
            self.set_settings(settings)
        if not self.patient_case.name or not self.patient_case.current_problem:
            raise ValidationError("Patient name and current problem are required")
        if not self.doctors:
            raise ValidationError("Add at least one doctor before starting the consultation")

        for doctor in self.doctors:
            doctor.status = ACTIVE
            doctor.votes = 0
        self.resume()
        self.workflow.phase = "discussion"
        self.workflow.current_round = 1
        self.workflow.rounds_without_elimination = 0
        self.workflow.active_turn = None
        self.final_summary = FinalSummary()
        self.round_votes = []
        self.vote_log = []
        self.last_success_doctor_id = None
        self.error = None

        self.session_id = self.store.create_session(
            self.consultation_name or self.patient_case.name,
            self.patient_case.to_dict(),
            meta={
                "doctors": [doc.to_dict() for doc in self.doctors],
                "settings": self.settings.to_dict(),
                "linked_sessions": [item.source_id for item in self.linked_cases],
            },
        )
        self._audit = AuditLog(self.store.session_dir(self.session_id) / "audit.jsonl")
        self._audit.log("session.start", {
            "case": self.patient_case.name,
            "doctors": [doc.id for doc in self.doctors],
            "turn_order": self.settings.turn_order,
        })
        self.history.append("system", f"Round {self.workflow.current_round} of the consultation begins")
        self._build_turn_queue()

        if background:
            self._thread = threading.Thread(
                target=self._run, kwargs={"reraise": False}, name="consilium-session", daemon=True
            )
            self._thread.start()
        else:
            self._run()
        return self.session_id

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self, reraise: bool = True) -> None:
        session_id = self.session_id
        try:
            while True:
                self.store.append_event(session_id, {"phase": "discussion", "round": self.workflow.current_round})
                self._run_discussion_round()
                self.store.append_event(session_id, {"phase": "voting", "round": self.workflow.current_round})
                self._run_voting()
                if self._conclude_round():
                    break
            self.store.finalize_session(
                session_id,
                self.final_summary.to_dict(),
                self.history.to_list(),
                [vote.to_dict() for vote in self.vote_log],
                [doc.to_dict() for doc in self.doctors],
            )
            self._log("session.complete", {
                "rounds": self.workflow.current_round,
                "summary_status": self.final_summary.status,
                "summary_doctor": self.final_summary.doctor_id,
            })
        except Exception as exc:
            logger.exception(f"Consultation {session_id} failed")
            self.error = str(exc)
            self.workflow.phase = "finished"
            self.workflow.active_turn = None
            self.store.fail_session(session_id, str(exc))
            self._log("session.failed", {"error": str(exc)})
            if reraise:
                raise

    def _log(self, event: str, data: Dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.log(event, data)

    def _call(self, role: str, doctor: Doctor, prompt: Any, history: List[Dict[str, str]]) -> str:
        start = time.perf_counter()
        try:
            text = call_with_timeout(self.gateway.generate, self.call_timeout, doctor, prompt, history)
        except ConsiliumError as exc:
            self._log("call", {
                "role": role,
                "doctor": doctor.id,
                "provider": doctor.provider,
                "ok": False,
                "error": str(exc),
                "duration_ms": (time.perf_counter() - start) * 1000,
            })
            raise
        self._log("call", {
            "role": role,
            "doctor": doctor.id,
            "provider": doctor.provider,
            "ok": True,
            "simulated": not doctor.can_call,
            "duration_ms": (time.perf_counter() - start) * 1000,
        })
        return text

    def _fetch_knowledge(self) -> List[Dict[str, Any]]:
        if self.knowledge is None:
            return []
        query = build_case_query_text(self.patient_case, self.history)
        try:
            return self.knowledge.retrieve(
                query,
                selected_ids=self.selected_knowledge,
                top_k=self.knowledge_top_k,
                timeout=self.call_timeout,
            )
        except ConsiliumError as exc:
            logger.warning(f"Knowledge retrieval failed, continuing without it: {exc}")
            return []

    def _build_turn_queue(self) -> None:
        active = [doc.id for doc in self.active_doctors]
        if self.settings.turn_order == "random":
            keyed = [(self.rng.random(), doc_id) for doc_id in active]
            keyed.sort(key=lambda item: item[0])
            self.workflow.turn_queue = [doc_id for _, doc_id in keyed]
        else:
            self.workflow.turn_queue = active
        self.workflow.progress = Progress(total=len(self.workflow.turn_queue))

    def _doctor(self, doctor_id: Optional[str]) -> Optional[Doctor]:
        return next((doc for doc in self.doctors if doc.id == doctor_id), None)

    # -- discussion --------------------------------------------------

    def _run_discussion_round(self) -> None:
        knowledge = self._fetch_knowledge()
        for idx, doctor_id in enumerate(self.workflow.turn_queue):
            doctor = self._doctor(doctor_id)
            if doctor is None or not doctor.active:
                continue
            self._wait_while_paused()
            self.workflow.progress.done = idx
            self._take_turn(doctor, knowledge)
            self.workflow.active_turn = None
            self.workflow.progress.done = idx + 1
            self.workflow.progress.current = ""
        self.workflow.phase = "voting"
        self.history.append("system", "This round of discussion is over; the team is evaluating the answers...")

    def begin_turn(self, doctor: Doctor) -> HistoryEntry:
        """Mark ``doctor`` as speaking with a typing placeholder."""
        self.workflow.active_turn = doctor.id
        self.workflow.progress.current = doctor.name
        return self.history.begin_typing(doctor)

    def commit_turn(self, placeholder: HistoryEntry, doctor: Doctor, reply: str) -> None:
        """Replace the placeholder with the doctor's reply."""
        self.history.remove_placeholder(placeholder)
        self._commit_reply(doctor, reply)
        self.last_success_doctor_id = doctor.id

    def _take_turn(self, doctor: Doctor, knowledge: List[Dict[str, Any]]) -> None:
        placeholder = self.begin_turn(doctor)
        prompt = build_turn_prompt(
            doctor.custom_prompt or self.settings.global_system_prompt,
            self.patient_case,
            doctor,
            self.linked_cases,
            knowledge,
        )
        provider_history = format_history_for_provider(self.history, doctor.id)
        try:
            reply = self._call("turn", doctor, prompt, provider_history)
        except ConsiliumError as exc:
            logger.warning(f"Turn for {doctor.name} failed: {exc}")
            self.history.remove_placeholder(placeholder)
            self.history.append(
                "doctor",
                f"Call to {doctor.name} failed: {exc}",
                doctor_id=doctor.id,
                doctor_name=doctor.name,
            )
            return
        self.commit_turn(placeholder, doctor, reply)

    def _commit_reply(self, doctor: Doctor, reply: str) -> None:
        step = self.reveal_chunk_chars
        if step <= 0:
            self.history.append("doctor", reply, doctor_id=doctor.id, doctor_name=doctor.name)
            return
        entry = self.history.append("doctor", "", doctor_id=doctor.id, doctor_name=doctor.name)
        for start in range(0, len(reply), step):
            self._wait_while_paused()
            self.history.extend_content(entry, reply[start:start + step])
            if self.reveal_delay > 0:
                time.sleep(self.reveal_delay)

    # -- voting ------------------------------------------------------

    def _run_voting(self) -> None:
        for doctor in self.doctors:
            doctor.votes = 0
        self.round_votes = []
        active = self.active_doctors
        active_ids = [doc.id for doc in active]
        knowledge = self._fetch_knowledge()

        for voter in active:
            self._wait_while_paused()
            target_id, reason = self._cast_vote(voter, active, active_ids, knowledge)
            target = self._doctor(target_id)
            record = VoteRecord(
                round=self.workflow.current_round,
                voter_id=voter.id,
                voter_name=voter.name,
                target_id=target.id if target else target_id,
                target_name=target.name if target else "",
                reason=reason,
            )
            self.round_votes.append(record)
            self.vote_log.append(record)
            self.history.append(
                "vote_detail",
                f"{voter.name} marked {record.target_name or record.target_id}: {reason}",
                voter_id=voter.id,
                voter_name=voter.name,
                target_id=record.target_id,
                target_name=record.target_name,
                reason=reason,
            )
            if target is not None:
                target.votes += 1
            self._sleep(self.vote_gap)

    def _cast_vote(
        self,
        voter: Doctor,
        active: List[Doctor],
        active_ids: List[str],
        knowledge: List[Dict[str, Any]],
    ) -> tuple[str, str]:
        decision: Optional[VoteDecision] = None
        response = ""
        if not voter.can_call:
            decision = VoteDecision(target_id=voter.id, reason=SIMULATED_REASON, strategy="simulated")
        else:
            prompt = build_vote_prompt(
                voter.custom_prompt or self.settings.global_system_prompt,
                self.patient_case,
                active,
                voter,
                self.linked_cases,
                knowledge,
            )
            provider_history = format_history_for_provider(self.history, voter.id)
            try:
                response = self._call("vote", voter, prompt, provider_history)
                decision = parse_vote(response, active)
            except ConsiliumError as exc:
                logger.warning(f"Vote from {voter.name} failed, using fallback: {exc}")

        target_id, reason, fell_back = resolve_vote(decision, voter, active_ids, self.doctors)
        raw = (response or "").strip()
        if (decision is None or not decision.target_id) and raw:
            self.history.append(
                "system",
                f"Vote reply was not in JSON form, raw output: {raw[:RAW_VOTE_PREVIEW_CHARS]}",
            )
        if fell_back:
            self._log("vote.fallback", {"voter": voter.id, "target": target_id})
        return target_id, reason

    # -- tally and termination ---------------------------------------

    def tally(self) -> Optional[Doctor]:
        """Eliminate the unique top vote holder, if there is one."""
        active = self.active_doctors
        max_votes = max([0] + [doc.votes for doc in active])
        top = [doc for doc in active if doc.votes == max_votes]
        if len(top) != 1 or max_votes == 0:
            self.workflow.rounds_without_elimination += 1
            self.history.append(
                "vote_result",
                "Evaluation finished: opinions were split or unclear, nobody was marked this round.",
            )
            return None
        target = top[0]
        target.status = ELIMINATED
        self.workflow.rounds_without_elimination = 0
        self.history.append(
            "vote_result",
            f"Evaluation finished: {target.name} was marked least accurate and sits out the rest of the discussion.",
        )
        return target

    def _conclude_round(self) -> bool:
        eliminated = self.tally()
        self._log("round.complete", {
            "round": self.workflow.current_round,
            "eliminated": eliminated.id if eliminated else None,
            "votes": [vote.to_dict() for vote in self.round_votes],
        })
        if self._check_end_conditions():
            return True
        for doctor in self.doctors:
            doctor.votes = 0
        self.workflow.current_round += 1
        self.history.append("system", f"Round {self.workflow.current_round} of the consultation begins")
        self.workflow.phase = "discussion"
        self._build_turn_queue()
        return False

    def _check_end_conditions(self) -> bool:
        active = self.active_doctors
        if self.workflow.rounds_without_elimination >= self.settings.max_rounds_without_elimination:
            self.workflow.phase = "finished"
            self.history.append(
                "system", "Reached the limit of rounds without anyone marked; the consultation ends."
            )
            self._finish()
            return True
        if len(active) <= 1:
            self.workflow.phase = "finished"
            if active:
                winner = active[0]
                self.history.append("system", f"Consultation finished: adopting the answer of {winner.name}.")
                self._finish(preferred_id=winner.id)
            else:
                self.history.append("system", "Consultation finished: no doctors remain.")
                self._finish()
            return True
        self.workflow.phase = "voting"
        return False

    def _finish(self, preferred_id: Optional[str] = None) -> None:
        self.workflow.active_turn = None
        self.final_summary = FinalSummary(status="pending", used_prompt=self.settings.summary_prompt)
        self.final_summary = self.summarizer.produce(
            self.doctors,
            self.settings,
            self.patient_case,
            self.history,
            self.linked_cases,
            self._fetch_knowledge(),
            preferred_id=preferred_id,
            last_success_id=self.last_success_doctor_id,
        )

    # -- readers -----------------------------------------------------

    def history_after(self, seq: int) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.history.after(seq)]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "consultation_name": self.consultation_name,
            "workflow": self.workflow.to_dict(),
            "doctors": [doc.to_dict() for doc in self.doctors],
            "patient_case": self.patient_case.to_dict(),
            "linked_cases": [item.to_dict() for item in self.linked_cases],
            "selected_knowledge": list(self.selected_knowledge),
            "settings": self.settings.to_dict(),
            "round_votes": [vote.to_dict() for vote in self.round_votes],
            "vote_log": [vote.to_dict() for vote in self.vote_log],
            "final_summary": self.final_summary.to_dict(),
            "last_success_doctor_id": self.last_success_doctor_id,
            "history": self.history.to_list(),
            "running": self.running,
            "error": self.error,
        }
