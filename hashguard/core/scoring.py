from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

# Sub-check states as the scoring tables see them.
SIGNATURE_VALID = "valid"
SIGNATURE_INVALID = "invalid"
SIGNATURE_UNAVAILABLE = "unavailable"

TIMESTAMP_CONFIRMED = "confirmed"
TIMESTAMP_PENDING = "pending"
TIMESTAMP_INVALID = "invalid"
TIMESTAMP_UNAVAILABLE = "unavailable"
TIMESTAMP_LOCAL = "local"

DO_NOT_USE = "DO NOT use this evidence until the identified problems are resolved"
CONSIDER_SIGNATURE = "Consider adding a digital signature for stronger assurance"
HASH_MISMATCH = "CRITICAL: File was modified - hash does not match"
CUSTODY_PROBLEMS = "CRITICAL: Problems detected in the chain of custody"
ADD_SIGNATURE = "Add a digital signature to guarantee authenticity"
SIGNATURE_UNCHECKED = "Signature could not be checked: {reason}"
ADD_TIMESTAMP = "Add a timestamp for temporal proof"
TIMESTAMP_UNCONFIRMED = "Timestamp could not be confirmed: {reason}"
REVIEW_CUSTODY = "Review the chain of custody issues"


@dataclass(frozen=True, slots=True)
class ScoreInputs:
    """What the scoring law reads from one verification run.

    signature / timestamp are None when the record carries no such artifact.
    An unavailable signature check counts as "did not run".
    """

    hash_valid: bool
    custody_valid: bool
    custody_issue_count: int = 0
    signature: Optional[str] = None
    signature_reason: Optional[str] = None
    timestamp: Optional[str] = None
    timestamp_reason: Optional[str] = None

    @property
    def signature_ran(self) -> bool:
        return self.signature in (SIGNATURE_VALID, SIGNATURE_INVALID)

    @property
    def signature_valid(self) -> bool:
        return self.signature == SIGNATURE_VALID

    @property
    def timestamp_valid(self) -> bool:
        return self.timestamp == TIMESTAMP_CONFIRMED


@dataclass(frozen=True, slots=True)
class ScoringPolicy:
    """Weights of the confidence score.

    The defaults are the established 40/30/20/10 split. They are a
    deployment choice, not a property of the evidence.
    """

    hash_weight: int = 40
    custody_weight: int = 30
    custody_issue_penalty: int = 5
    signature_weight: int = 20
    broken_signature_penalty: int = -10
    timestamp_weight: int = 10
    good_threshold: int = 70
    excellent_threshold: int = 90


@dataclass(frozen=True, slots=True)
class ScoreRule:
    name: str
    applies: Callable[[ScoreInputs], bool]
    delta: Callable[[ScoreInputs, ScoringPolicy], int]


@dataclass(frozen=True, slots=True)
class MessageRule:
    applies: Callable[[ScoreInputs], bool]
    render: Callable[[ScoreInputs], str]


SCORE_RULES: Tuple[ScoreRule, ...] = (
    ScoreRule("hash_valid", lambda s: s.hash_valid, lambda s, p: p.hash_weight),
    ScoreRule("custody_valid", lambda s: s.custody_valid, lambda s, p: p.custody_weight),
    ScoreRule(
        "custody_partial",
        lambda s: not s.custody_valid,
        lambda s, p: max(0, p.custody_weight - p.custody_issue_penalty * s.custody_issue_count),
    ),
    ScoreRule("signature_valid", lambda s: s.signature_valid, lambda s, p: p.signature_weight),
    ScoreRule(
        "signature_broken",
        lambda s: s.signature_ran and not s.signature_valid,
        lambda s, p: p.broken_signature_penalty,
    ),
    ScoreRule("timestamp_valid", lambda s: s.timestamp_valid, lambda s, p: p.timestamp_weight),
)

# Appended after the summary line's own recommendation, in this order.
RECOMMENDATION_RULES: Tuple[MessageRule, ...] = (
    MessageRule(lambda s: not s.hash_valid, lambda s: HASH_MISMATCH),
    MessageRule(lambda s: not s.custody_valid, lambda s: CUSTODY_PROBLEMS),
    MessageRule(lambda s: s.signature is None, lambda s: ADD_SIGNATURE),
    MessageRule(
        lambda s: s.signature == SIGNATURE_UNAVAILABLE,
        lambda s: SIGNATURE_UNCHECKED.format(reason=s.signature_reason or "unknown error"),
    ),
    MessageRule(lambda s: s.timestamp is None, lambda s: ADD_TIMESTAMP),
    MessageRule(
        lambda s: s.timestamp in (TIMESTAMP_UNAVAILABLE, TIMESTAMP_LOCAL),
        lambda s: TIMESTAMP_UNCONFIRMED.format(reason=s.timestamp_reason or "unknown error"),
    ),
    MessageRule(lambda s: s.custody_issue_count > 0, lambda s: REVIEW_CUSTODY),
)


def confidence_score(inputs: ScoreInputs, policy: ScoringPolicy = ScoringPolicy()) -> int:
    """Sum the deltas of every applicable rule, clamped to [0, 100]."""

    score = sum(rule.delta(inputs, policy) for rule in SCORE_RULES if rule.applies(inputs))
    return max(0, min(100, score))


def score_breakdown(inputs: ScoreInputs, policy: ScoringPolicy = ScoringPolicy()) -> List[Tuple[str, int]]:
    """(rule name, delta) for each rule that fired; before clamping."""

    return [(rule.name, rule.delta(inputs, policy)) for rule in SCORE_RULES if rule.applies(inputs)]


def determine_overall_validity(inputs: ScoreInputs) -> bool:
    """Hash and custody must hold; a signature that was checked must verify."""

    if not inputs.hash_valid or not inputs.custody_valid:
        return False
    if inputs.signature_ran and not inputs.signature_valid:
        return False
    return True


def summarize(
    inputs: ScoreInputs,
    score: int,
    overall_valid: bool,
    policy: ScoringPolicy = ScoringPolicy(),
) -> Tuple[str, List[str]]:
    recommendations: List[str] = []

    if overall_valid:
        summary = f"Evidence VALID with {score}% confidence. "
        if score < policy.good_threshold:
            summary += "Some improvements are recommended."
            recommendations.append(CONSIDER_SIGNATURE)
        elif score < policy.excellent_threshold:
            summary += "Good integrity, with minor improvements possible."
        else:
            summary += "Excellent integrity and authenticity."
    else:
        summary = f"Evidence INVALID ({score}% confidence). Critical problems detected."
        recommendations.append(DO_NOT_USE)

    recommendations.extend(rule.render(inputs) for rule in RECOMMENDATION_RULES if rule.applies(inputs))
    return summary, recommendations


@dataclass(frozen=True, slots=True)
class Assessment:
    score: int
    overall_valid: bool
    summary: str
    recommendations: List[str] = field(default_factory=list)


def assess(inputs: ScoreInputs, policy: ScoringPolicy = ScoringPolicy()) -> Assessment:
    score = confidence_score(inputs, policy)
    valid = determine_overall_validity(inputs)
    summary, recommendations = summarize(inputs, score, valid, policy)
    return Assessment(score=score, overall_valid=valid, summary=summary, recommendations=recommendations)
