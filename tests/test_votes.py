import unittest

from consilium.session import Doctor
from consilium.votes import (
    DEFAULT_REASON,
    KEYWORD_REASON,
    OTHER_FALLBACK_REASON,
    SELF_FALLBACK_REASON,
    VoteDecision,
    parse_vote,
    resolve_vote,
)


class ParseVoteTests(unittest.TestCase):
    def setUp(self):
        self.doctors = [Doctor(id="doc-1", name="Dr. Liver"), Doctor(id="doc-2", name="Dr. Lung")]

    def test_plain_json(self):
        decision = parse_vote('{"targetDoctorId": "doc-2", "reason": "weak evidence"}', self.doctors)
        self.assertEqual(decision.target_id, "doc-2")
        self.assertEqual(decision.reason, "weak evidence")

    def test_fenced_json_with_prose(self):
        text = 'My vote:\n```json\n{"targetDoctorId": "doc-1", "reason": "missed the labs",}\n```'
        decision = parse_vote(text, self.doctors)
        self.assertEqual(decision.target_id, "doc-1")
        self.assertEqual(decision.reason, "missed the labs")

    def test_single_quotes_and_key_case(self):
        decision = parse_vote("{'TARGETDOCTORID': 'doc-2', 'reason': 'x'}", self.doctors)
        self.assertEqual(decision.target_id, "doc-2")

    def test_keyword_fallback(self):
        decision = parse_vote("I think Dr. Lung was least convincing.", self.doctors)
        self.assertEqual(decision.target_id, "doc-2")
        self.assertEqual(decision.reason, KEYWORD_REASON)

    def test_unparseable(self):
        self.assertEqual(parse_vote("no idea", self.doctors).target_id, "")
        self.assertEqual(parse_vote("", self.doctors).target_id, "")
        self.assertEqual(parse_vote(None, self.doctors).target_id, "")


class ResolveVoteTests(unittest.TestCase):
    def setUp(self):
        self.a = Doctor(id="a", name="A")
        self.b = Doctor(id="b", name="B")
        self.doctors = [self.a, self.b]

    def test_valid_target(self):
        target, reason, fell_back = resolve_vote(VoteDecision("b", ""), self.a, ["a", "b"], self.doctors)
        self.assertEqual((target, reason, fell_back), ("b", DEFAULT_REASON, False))

    def test_invalid_target_falls_back_to_self(self):
        target, reason, fell_back = resolve_vote(VoteDecision("zz", ""), self.a, ["a", "b"], self.doctors)
        self.assertEqual((target, reason, fell_back), ("a", SELF_FALLBACK_REASON, True))

    def test_inactive_voter_falls_back_to_other(self):
        target, reason, fell_back = resolve_vote(None, self.a, ["b"], self.doctors)
        self.assertEqual((target, reason, fell_back), ("b", OTHER_FALLBACK_REASON, True))

    def test_eliminated_target_rejected(self):
        target, _, fell_back = resolve_vote(VoteDecision("b", "why"), self.a, ["a"], self.doctors)
        self.assertEqual(target, "a")
        self.assertTrue(fell_back)


if __name__ == "__main__":
    unittest.main()
