"""Vote extraction from free-form model replies.

Models are asked for ``{"targetDoctorId": ..., "reason": ...}`` but often wrap
it in prose or code fences, or ignore the format entirely. ``parse_vote``
tries a chain of strategies in order and stops at the first that yields a
decision; ``resolve_vote`` then turns the decision into a valid target.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
import json
import logging
import re

from consilium.errors import VoteParseError
from consilium.session import Doctor

logger = logging.getLogger(__name__)

TARGET_KEY = "targetDoctorId"
DEFAULT_REASON = "Judgement after weighing the discussion."
KEYWORD_REASON = "Reply was not JSON; target matched by name in the text."
SIMULATED_REASON = "Simulated mode: marks its own answer as needing further support."
SELF_FALLBACK_REASON = "Vote could not be parsed; marking self by default."
OTHER_FALLBACK_REASON = "Vote could not be parsed; marking another doctor by default."

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_FRAGMENT = re.compile(r"\{[\s\S]*?\}")
_TRAILING_COMMA = re.compile(r",\s*}")
_TARGET_MENTION = re.compile(TARGET_KEY, re.IGNORECASE)
_COMPRESS = re.compile(r"[\s:：]")


@dataclass
class VoteDecision:
    target_id: str
    reason: str = ""
    strategy: str = ""


UNPARSED = VoteDecision(target_id="", reason="Reply did not follow the JSON format", strategy="unparsed")


def strip_fences(text: str) -> str:
    return _FENCE.sub("", text)


def _load_fragment(fragment: str) -> Dict[str, Any]:
    repaired = _TRAILING_COMMA.sub("}", fragment).replace("'", '"')
    try:
        data = json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise VoteParseError(f"invalid vote fragment: {exc}") from exc
    if not isinstance(data, dict):
        raise VoteParseError("vote fragment is not an object")
    return data


def _decision(data: Dict[str, Any], strategy: str) -> VoteDecision:
    target: Any = ""
    for key, value in data.items():
        if key.lower() == TARGET_KEY.lower():
            target = value
            break
    reason = data.get("reason")
    return VoteDecision(
        target_id=target if isinstance(target, str) else "",
        reason=str(reason).strip() if reason is not None else "",
        strategy=strategy,
    )


def from_keyed_fragments(text: str, doctors: Sequence[Doctor]) -> Optional[VoteDecision]:
    """First brace fragment that mentions the target key and decodes."""
    for fragment in _FRAGMENT.findall(text):
        if not _TARGET_MENTION.search(fragment):
            continue
        try:
            return _decision(_load_fragment(fragment), "fragment")
        except VoteParseError:
            continue
    return None


def from_brace_span(text: str, doctors: Sequence[Doctor]) -> Optional[VoteDecision]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return _decision(_load_fragment(text[start:end + 1]), "span")
    except VoteParseError:
        return None


def from_keywords(text: str, doctors: Sequence[Doctor]) -> Optional[VoteDecision]:
    """Doctor whose id or name occurs most often; ties keep the earlier doctor."""
    lower = text.lower()
    compressed = _COMPRESS.sub("", lower)
    best_id: Optional[str] = None
    best_score = 0
    for doctor in doctors:
        variants = [doctor.id.lower(), doctor.name.lower(), re.sub(r"\s+", "", doctor.name.lower())]
        score = sum(lower.count(v) + compressed.count(v) for v in variants if v)
        if score > best_score:
            best_id, best_score = doctor.id, score
    if best_id is None:
        return None
    return VoteDecision(target_id=best_id, reason=KEYWORD_REASON, strategy="keywords")


STRATEGIES: List[Callable[[str, Sequence[Doctor]], Optional[VoteDecision]]] = [
    from_keyed_fragments,
    from_brace_span,
    from_keywords,
]


def parse_vote(text: Optional[str], doctors: Sequence[Doctor]) -> VoteDecision:
    if not text or not isinstance(text, str):
        return UNPARSED
    cleaned = strip_fences(text)
    for strategy in STRATEGIES:
        decision = strategy(cleaned, doctors)
        if decision is not None:
            return decision
    return UNPARSED


def resolve_vote(
    decision: Optional[VoteDecision],
    voter: Doctor,
    active_ids: Sequence[str],
    doctors: Sequence[Doctor],
) -> tuple[str, str, bool]:
    """Validate a decision against the active doctors.

    Returns ``(target_id, reason, fell_back)``. An invalid or missing target
    falls back to a self-vote, then to any other doctor, then to the first
    active id.
    """
    target = decision.target_id if decision else ""
    reason = decision.reason if decision else ""
    if target and target in active_ids:
        return target, reason or DEFAULT_REASON, False

    if voter.id in active_ids:
        return voter.id, reason or SELF_FALLBACK_REASON, True
    other = next((doc for doc in doctors if doc.id != voter.id), None)
    if other is not None:
        return other.id, reason or OTHER_FALLBACK_REASON, True
    fallback = voter.id or (active_ids[0] if active_ids else "")
    return fallback, reason or SELF_FALLBACK_REASON, True
