import json
import random
import tempfile
import threading
import time
import unittest
from pathlib import Path

from consilium.audit import AuditLog
from consilium.config import Config
from consilium.errors import NotFoundError, ProviderError, ValidationError
from consilium.pipeline import ConsultationEngine
from consilium.rag import CHUNKS_KEY, DOCS_KEY
from consilium.session import ACTIVE, ELIMINATED
from consilium.store import KeyValueStore
from consilium.votes import SIMULATED_REASON

CASE = {"name": "Wang", "current_problem": "Painless jaundice for two weeks"}


def _doctors(*names, api_key="k"):
    return [
        {"id": f"doc-{name}", "name": f"Dr. {name.title()}", "provider": "openai", "model": "m", "api_key": api_key}
        for name in names
    ]


class ScriptedGateway:
    """Answers turns, votes and summaries from a script."""

    def __init__(self, votes=None, failing=(), slow=(), vote_replies=None):
        self.votes = votes or {}
        self.failing = set(failing)
        self.slow = set(slow)
        self.vote_replies = vote_replies or {}
        self.calls = []
        self.prompts = []
        self.hook = None

    @staticmethod
    def _kind(prompt):
        if "Reply with JSON only" in prompt.user:
            return "vote"
        if "The consultation has ended" in prompt.user:
            return "summary"
        return "turn"

    def generate(self, doctor, prompt, history):
        kind = self._kind(prompt)
        self.calls.append((kind, doctor.id))
        self.prompts.append(prompt)
        if self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        if kind == "turn" and doctor.id in self.failing:
            raise ProviderError("HTTP 500: upstream error", status=500)
        if kind == "turn" and doctor.id in self.slow:
            time.sleep(1.0)
        if kind == "vote":
            if doctor.id in self.vote_replies:
                return self.vote_replies[doctor.id]
            return json.dumps({"targetDoctorId": self.votes.get(doctor.id, doctor.id), "reason": "scripted"})
        if kind == "summary":
            return f"Summary by {doctor.name}"
        return f"Opinion of {doctor.name}"

    def embed(self, config, text):
        return [1.0, 0.5] if text.strip() else []

    def turn_order(self):
        return [doctor_id for kind, doctor_id in self.calls if kind == "turn"]


class PhaseRecordingGateway(ScriptedGateway):
    """Notes the workflow phase, round and turn queue at every call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.engine = None
        self.seen = []

    def generate(self, doctor, prompt, history):
        workflow = self.engine.workflow
        self.seen.append((self._kind(prompt), workflow.phase, workflow.current_round, list(workflow.turn_queue)))
        return super().generate(doctor, prompt, history)


class ConsultationEngineTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def _engine(self, gateway, **consultation):
        cfg = {"vote_gap_seconds": 0, "turn_order": "fixed", "max_rounds_without_elimination": 1}
        cfg.update(consultation)
        config = Config({"data_dir": self.tmpdir.name, "consultation": cfg})
        return ConsultationEngine(config, gateway=gateway, rng=random.Random(7))

    def _contents(self, engine, entry_type=None):
        return [e.content for e in engine.history if entry_type is None or e.type == entry_type]

    def test_requires_case_and_doctors(self):
        engine = self._engine(ScriptedGateway())
        with self.assertRaises(ValidationError):
            engine.start(case={"name": "Wang"}, doctors=_doctors("alpha"))
        engine = self._engine(ScriptedGateway())
        with self.assertRaises(ValidationError):
            engine.start(case=CASE)
        self.assertIsNone(engine.session_id)

    def test_unique_top_vote_holder_is_eliminated(self):
        gateway = ScriptedGateway(votes={
            "doc-alpha": "doc-beta",
            "doc-beta": "doc-alpha",
            "doc-gamma": "doc-alpha",
            "doc-delta": "doc-alpha",
        })
        engine = self._engine(gateway)
        session_id = engine.start(case=CASE, doctors=_doctors("alpha", "beta", "gamma", "delta"))

        statuses = {doc.id: doc.status for doc in engine.doctors}
        self.assertEqual(statuses["doc-alpha"], ELIMINATED)
        self.assertEqual([s for s in statuses.values() if s == ELIMINATED], [ELIMINATED])
        self.assertTrue(any("Dr. Alpha was marked least accurate" in c for c in self._contents(engine, "vote_result")))
        # round 2 is a three-way tie of fallback self-votes, which hits the cap
        self.assertEqual(engine.workflow.current_round, 2)
        self.assertEqual(engine.workflow.phase, "finished")
        self.assertNotIn("doc-alpha", gateway.turn_order()[4:])
        self.assertEqual(engine.final_summary.status, "ready")
        self.assertEqual(engine.store.get_session(session_id)["status"], "complete")

    def test_split_vote_eliminates_nobody(self):
        gateway = ScriptedGateway(votes={
            "doc-a": "doc-b",
            "doc-b": "doc-a",
            "doc-c": "doc-a",
            "doc-d": "doc-b",
            "doc-e": "doc-c",
        })
        engine = self._engine(gateway)
        engine.start(case=CASE, doctors=_doctors("a", "b", "c", "d", "e"))

        self.assertTrue(all(doc.status == ACTIVE for doc in engine.doctors))
        self.assertEqual(engine.workflow.current_round, 1)
        self.assertEqual(engine.workflow.rounds_without_elimination, 1)
        self.assertTrue(any("nobody was marked" in c for c in self._contents(engine, "vote_result")))
        self.assertTrue(any("limit of rounds" in c for c in self._contents(engine, "system")))

    def test_round_cap(self):
        engine = self._engine(ScriptedGateway(), max_rounds_without_elimination=3)
        engine.start(case=CASE, doctors=_doctors("a", "b"))
        self.assertEqual(engine.workflow.current_round, 3)
        self.assertEqual(engine.workflow.rounds_without_elimination, 3)
        self.assertEqual(len(engine.vote_log), 6)

    def test_sole_survivor_writes_summary(self):
        gateway = ScriptedGateway(votes={"doc-a": "doc-b", "doc-b": "doc-b"})
        engine = self._engine(gateway)
        engine.start(case=CASE, doctors=_doctors("a", "b"))

        self.assertEqual(engine.final_summary.doctor_id, "doc-a")
        self.assertEqual(engine.final_summary.content, "Summary by Dr. A")
        self.assertEqual(gateway.calls[-1], ("summary", "doc-a"))
        self.assertTrue(any("adopting the answer of Dr. A" in c for c in self._contents(engine, "system")))
        latest = engine.store.latest()
        self.assertEqual(latest["final_summary"]["content"], "Summary by Dr. A")

    def test_fixed_turn_order(self):
        gateway = ScriptedGateway()
        engine = self._engine(gateway)
        engine.start(case=CASE, doctors=_doctors("c", "a", "b"))
        self.assertEqual(gateway.turn_order(), ["doc-c", "doc-a", "doc-b"])

    def test_fixed_turn_order_repeats_every_round(self):
        gateway = ScriptedGateway()
        engine = self._engine(gateway, max_rounds_without_elimination=3)
        engine.start(case=CASE, doctors=_doctors("c", "a", "b"))
        order = gateway.turn_order()
        self.assertEqual(engine.workflow.current_round, 3)
        self.assertEqual([order[i:i + 3] for i in range(0, len(order), 3)], [["doc-c", "doc-a", "doc-b"]] * 3)

    def test_phase_sequence(self):
        gateway = PhaseRecordingGateway()
        engine = self._engine(gateway, max_rounds_without_elimination=2)
        gateway.engine = engine
        self.assertEqual(engine.workflow.phase, "setup")
        engine.start(case=CASE, doctors=_doctors("a", "b", "c"))

        expected_phase = {"turn": "discussion", "vote": "voting", "summary": "finished"}
        for kind, phase, _, _ in gateway.seen:
            self.assertEqual(phase, expected_phase[kind])
        phases = [phase for _, phase, _, _ in gateway.seen]
        collapsed = [p for i, p in enumerate(phases) if i == 0 or phases[i - 1] != p]
        self.assertEqual(collapsed, ["discussion", "voting", "discussion", "voting", "finished"])

        _, _, round_at_finish, queue_at_finish = gateway.seen[-1]
        self.assertEqual(engine.workflow.phase, "finished")
        self.assertEqual(engine.workflow.current_round, round_at_finish)
        self.assertEqual(engine.workflow.turn_queue, queue_at_finish)

    def test_malformed_stored_embedding_does_not_fail_consultation(self):
        store = KeyValueStore(Path(self.tmpdir.name))
        store.set(DOCS_KEY, [{"id": "kb-1", "title": "Guide", "content": "Painless jaundice needs imaging."}])
        store.set(CHUNKS_KEY, [
            {"id": "chunk-1", "doc_id": "kb-1", "text": "Painless jaundice needs imaging.", "embedding": ["x", "y"]},
        ])
        gateway = ScriptedGateway()
        engine = self._engine(gateway)
        session_id = engine.start(case=CASE, doctors=_doctors("a", "b"))

        self.assertIsNone(engine.error)
        self.assertEqual(engine.store.get_session(session_id)["status"], "complete")
        self.assertIn("Guide", gateway.prompts[0].user)

    def test_random_turn_order_follows_rng(self):
        ids = ["doc-a", "doc-b", "doc-c", "doc-d"]
        rng = random.Random(7)
        expected = [doc_id for _, doc_id in sorted((rng.random(), doc_id) for doc_id in ids)]
        gateway = ScriptedGateway()
        engine = self._engine(gateway, turn_order="random")
        engine.start(case=CASE, doctors=_doctors("a", "b", "c", "d"))
        self.assertEqual(gateway.turn_order(), expected)

    def test_failed_turn_is_recorded_and_run_continues(self):
        gateway = ScriptedGateway(failing={"doc-b"})
        engine = self._engine(gateway)
        engine.start(case=CASE, doctors=_doctors("a", "b", "c"))

        doctor_lines = self._contents(engine, "doctor")
        self.assertTrue(any(line.startswith("Call to Dr. B failed:") for line in doctor_lines))
        self.assertIn("Opinion of Dr. C", doctor_lines)
        self.assertFalse(any(e.typing for e in engine.history))
        self.assertEqual(engine.workflow.phase, "finished")

    def test_slow_turn_times_out(self):
        gateway = ScriptedGateway(slow={"doc-b"})
        engine = self._engine(gateway, call_timeout_seconds=0.1)
        engine.start(case=CASE, doctors=_doctors("a", "b"))
        failed = [c for c in self._contents(engine, "doctor") if c.startswith("Call to Dr. B failed:")]
        self.assertEqual(len(failed), 1)
        self.assertIn("timed out", failed[0])

    def test_doctors_without_keys_vote_for_themselves(self):
        gateway = ScriptedGateway()
        engine = self._engine(gateway)
        engine.start(case=CASE, doctors=_doctors("a", "b", "c", api_key=""))

        self.assertEqual(len(engine.vote_log), 3)
        for vote in engine.vote_log:
            self.assertEqual(vote.voter_id, vote.target_id)
            self.assertEqual(vote.reason, SIMULATED_REASON)
        self.assertNotIn("vote", [kind for kind, _ in gateway.calls])
        self.assertTrue(all(doc.status == ACTIVE for doc in engine.doctors))

    def test_unparseable_vote_falls_back_to_self(self):
        gateway = ScriptedGateway(votes={"doc-b": "doc-a"}, vote_replies={"doc-a": "I refuse to vote"})
        engine = self._engine(gateway)
        session_id = engine.start(case=CASE, doctors=_doctors("a", "b"))

        first_round = [v for v in engine.vote_log if v.round == 1]
        self.assertEqual(first_round[0].target_id, "doc-a")
        self.assertIn(
            "Vote reply was not in JSON form, raw output: I refuse to vote",
            self._contents(engine, "system"),
        )
        audit = AuditLog(engine.store.session_dir(session_id) / "audit.jsonl")
        self.assertTrue(audit.entries("vote.fallback"))
        self.assertTrue(audit.entries("session.start"))
        self.assertTrue(audit.entries("session.complete"))
        self.assertTrue(all("duration_ms" in item["data"] for item in audit.entries("call")))

    def test_pause_holds_the_next_turn(self):
        gateway = ScriptedGateway()
        entered = threading.Event()
        release = threading.Event()

        def _hold():
            entered.set()
            release.wait(5)

        gateway.hook = _hold
        engine = self._engine(gateway)
        engine.start(case=CASE, doctors=_doctors("a", "b"), background=True)
        self.assertTrue(entered.wait(5))
        engine.pause()
        release.set()
        time.sleep(0.3)
        self.assertTrue(engine.running)
        self.assertTrue(engine.workflow.paused)
        self.assertEqual(len(gateway.calls), 1)

        engine.toggle_pause()
        engine.wait(5)
        self.assertFalse(engine.running)
        self.assertEqual(engine.workflow.phase, "finished")
        self.assertGreater(len(gateway.calls), 1)

    def test_knowledge_reaches_prompts(self):
        gateway = ScriptedGateway()
        engine = self._engine(gateway)
        engine.knowledge.set_embedding_config({"api_key": "sk-test"})
        doc_id = engine.knowledge.ingest("Jaundice workup", "Painless jaundice needs imaging of the pancreas.")
        engine.set_selected_knowledge([doc_id, doc_id, 3])
        self.assertEqual(engine.selected_knowledge, [doc_id])
        engine.start(case=CASE, doctors=_doctors("a"))
        self.assertIn("Reference knowledge", gateway.prompts[0].user)
        self.assertIn("Jaundice workup", gateway.prompts[0].user)

    def test_linked_sessions_sync_patient_info(self):
        engine = self._engine(ScriptedGateway())
        first = engine.start(
            case={"name": "Wang", "gender": "male", "age": 70, "current_problem": "Jaundice"},
            doctors=_doctors("a"),
        )

        follow_up = self._engine(ScriptedGateway())
        follow_up.link_sessions([first])
        self.assertEqual(follow_up.patient_case.name, "Wang")
        self.assertEqual(follow_up.patient_case.age, 70)
        self.assertEqual(follow_up.linked_cases[0].source_id, first)
        with self.assertRaises(NotFoundError):
            follow_up.link_sessions(["no-such-session"])

    def test_patient_messages_and_snapshot(self):
        engine = self._engine(ScriptedGateway())
        engine.set_patient_case(CASE)
        engine.add_patient_message("  The pain gets worse at night. ")
        engine.add_patient_message("   ")
        patient = [e for e in engine.history if e.type == "patient"]
        self.assertEqual(len(patient), 1)
        self.assertEqual(patient[0].author, "Patient (Wang)")
        self.assertEqual(patient[0].content, "The pain gets worse at night.")

        snapshot = engine.snapshot()
        self.assertEqual(snapshot["workflow"]["phase"], "setup")
        self.assertFalse(snapshot["running"])
        self.assertEqual(len(engine.history_after(0)), 1)
        self.assertEqual(engine.history_after(patient[0].seq), [])

    def test_begin_and_commit_turn(self):
        engine = self._engine(ScriptedGateway())
        engine.set_doctors(_doctors("a"))
        doctor = engine.doctors[0]
        placeholder = engine.begin_turn(doctor)
        self.assertEqual(engine.workflow.active_turn, "doc-a")
        self.assertTrue(engine.history.entries()[-1].typing)
        engine.commit_turn(placeholder, doctor, "Check bilirubin.")
        entries = engine.history.entries()
        self.assertEqual([(e.type, e.content) for e in entries], [("doctor", "Check bilirubin.")])
        self.assertEqual(engine.last_success_doctor_id, "doc-a")

    def test_incremental_reveal(self):
        engine = self._engine(ScriptedGateway(), reveal_chunk_chars=4, reveal_delay_seconds=0)
        engine.set_doctors(_doctors("a"))
        doctor = engine.doctors[0]
        engine.commit_turn(engine.begin_turn(doctor), doctor, "abcdefghij")
        self.assertEqual(engine.history.entries()[-1].content, "abcdefghij")
        self.assertEqual(len(engine.history), 1)

    def test_api_keys_masked_in_archive(self):
        engine = self._engine(ScriptedGateway())
        session_id = engine.start(case=CASE, doctors=_doctors("a"))
        session = engine.store.get_session(session_id)
        self.assertEqual(session["doctors"][0]["api_key"], "***")
        self.assertEqual(session["meta"]["doctors"][0]["api_key"], "***")


if __name__ == "__main__":
    unittest.main()
