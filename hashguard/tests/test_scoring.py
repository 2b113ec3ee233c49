from __future__ import annotations

import pytest

from hashguard.core.scoring import (
    ADD_SIGNATURE,
    ADD_TIMESTAMP,
    CONSIDER_SIGNATURE,
    CUSTODY_PROBLEMS,
    DO_NOT_USE,
    HASH_MISMATCH,
    RECOMMENDATION_RULES,
    REVIEW_CUSTODY,
    SIGNATURE_INVALID,
    SIGNATURE_UNAVAILABLE,
    SIGNATURE_VALID,
    TIMESTAMP_CONFIRMED,
    TIMESTAMP_LOCAL,
    TIMESTAMP_PENDING,
    TIMESTAMP_UNAVAILABLE,
    ScoreInputs,
    ScoringPolicy,
    assess,
    confidence_score,
    determine_overall_validity,
    score_breakdown,
)


def test_hash_and_custody_only_scores_seventy() -> None:
    a = assess(ScoreInputs(hash_valid=True, custody_valid=True))
    assert a.score == 70
    assert a.overall_valid is True
    assert a.summary == "Evidence VALID with 70% confidence. Good integrity, with minor improvements possible."
    assert a.recommendations == [ADD_SIGNATURE, ADD_TIMESTAMP]


def test_everything_valid_scores_hundred() -> None:
    a = assess(
        ScoreInputs(
            hash_valid=True,
            custody_valid=True,
            signature=SIGNATURE_VALID,
            timestamp=TIMESTAMP_CONFIRMED,
        )
    )
    assert a.score == 100
    assert a.summary.endswith("Excellent integrity and authenticity.")
    assert a.recommendations == []


def test_broken_signature_costs_ten_and_invalidates() -> None:
    inputs = ScoreInputs(hash_valid=True, custody_valid=True, signature=SIGNATURE_INVALID)
    a = assess(inputs)
    assert a.score == 60
    assert a.overall_valid is False
    assert a.summary == "Evidence INVALID (60% confidence). Critical problems detected."
    assert a.recommendations == [DO_NOT_USE, ADD_TIMESTAMP]
    assert score_breakdown(inputs) == [("hash_valid", 40), ("custody_valid", 30), ("signature_broken", -10)]


def test_unavailable_signature_does_not_count_either_way() -> None:
    inputs = ScoreInputs(
        hash_valid=True,
        custody_valid=True,
        signature=SIGNATURE_UNAVAILABLE,
        signature_reason="public verification key not loaded",
    )
    a = assess(inputs)
    assert a.score == 70
    assert a.overall_valid is True
    assert "Signature could not be checked: public verification key not loaded" in a.recommendations
    assert ADD_SIGNATURE not in a.recommendations


def test_tampered_hash_is_invalid_and_first_recommendation_is_do_not_use() -> None:
    a = assess(ScoreInputs(hash_valid=False, custody_valid=True, signature=SIGNATURE_VALID))
    assert a.score == 50
    assert a.overall_valid is False
    assert a.recommendations[:2] == [DO_NOT_USE, HASH_MISMATCH]


def test_custody_issues_reduce_partial_credit() -> None:
    inputs = ScoreInputs(hash_valid=True, custody_valid=False, custody_issue_count=2)
    assert confidence_score(inputs) == 40 + 20
    assert determine_overall_validity(inputs) is False
    recs = assess(inputs).recommendations
    assert CUSTODY_PROBLEMS in recs
    assert recs[-1] == REVIEW_CUSTODY

    many = ScoreInputs(hash_valid=True, custody_valid=False, custody_issue_count=10)
    assert confidence_score(many) == 40


def test_local_and_pending_timestamps_earn_nothing() -> None:
    local = assess(
        ScoreInputs(
            hash_valid=True,
            custody_valid=True,
            signature=SIGNATURE_VALID,
            timestamp=TIMESTAMP_LOCAL,
            timestamp_reason="only a local system timestamp exists",
        )
    )
    assert local.score == 90
    assert "Timestamp could not be confirmed: only a local system timestamp exists" in local.recommendations

    pending = assess(
        ScoreInputs(hash_valid=True, custody_valid=True, signature=SIGNATURE_VALID, timestamp=TIMESTAMP_PENDING)
    )
    assert pending.score == 90
    assert pending.recommendations == []


def test_low_score_valid_evidence_suggests_signature() -> None:
    # custody valid with a zero weight leaves 40 points
    policy = ScoringPolicy(custody_weight=0)
    a = assess(ScoreInputs(hash_valid=True, custody_valid=True), policy)
    assert a.score == 40
    assert a.overall_valid is True
    assert a.summary.endswith("Some improvements are recommended.")
    assert a.recommendations[0] == CONSIDER_SIGNATURE


def _sound(**changes) -> ScoreInputs:
    """Fully verified evidence with one condition changed."""

    base = dict(hash_valid=True, custody_valid=True, signature=SIGNATURE_VALID, timestamp=TIMESTAMP_CONFIRMED)
    base.update(changes)
    return ScoreInputs(**base)


# (condition, inputs, score, overall_valid, recommendations); one row per recommendation rule
RECOMMENDATION_TABLE = [
    ("hash mismatch", _sound(hash_valid=False), 60, False, [DO_NOT_USE, HASH_MISMATCH]),
    ("custody invalid", _sound(custody_valid=False), 100, False, [DO_NOT_USE, CUSTODY_PROBLEMS]),
    ("no signature", _sound(signature=None), 80, True, [ADD_SIGNATURE]),
    (
        "signature unchecked",
        _sound(signature=SIGNATURE_UNAVAILABLE, signature_reason="key missing"),
        80,
        True,
        ["Signature could not be checked: key missing"],
    ),
    ("no timestamp", _sound(timestamp=None), 90, True, [ADD_TIMESTAMP]),
    (
        "timestamp unavailable",
        _sound(timestamp=TIMESTAMP_UNAVAILABLE, timestamp_reason="calendar down"),
        90,
        True,
        ["Timestamp could not be confirmed: calendar down"],
    ),
    (
        "local timestamp without reason",
        _sound(timestamp=TIMESTAMP_LOCAL),
        90,
        True,
        ["Timestamp could not be confirmed: unknown error"],
    ),
    (
        "custody issues",
        _sound(custody_valid=False, custody_issue_count=1),
        95,
        False,
        [DO_NOT_USE, CUSTODY_PROBLEMS, REVIEW_CUSTODY],
    ),
]


def test_recommendation_table_covers_every_rule() -> None:
    fired = set()
    for _, inputs, _, _, _ in RECOMMENDATION_TABLE:
        fired.update(i for i, rule in enumerate(RECOMMENDATION_RULES) if rule.applies(inputs))
    assert fired == set(range(len(RECOMMENDATION_RULES)))
    assert assess(_sound()).recommendations == []


@pytest.mark.parametrize(
    "inputs,score,overall_valid,recommendations",
    [row[1:] for row in RECOMMENDATION_TABLE],
    ids=[row[0] for row in RECOMMENDATION_TABLE],
)
def test_recommendation_rules(inputs, score, overall_valid, recommendations) -> None:
    a = assess(inputs)
    assert a.score == score
    assert a.overall_valid is overall_valid
    assert a.recommendations == recommendations


@pytest.mark.parametrize(
    "score,band,first_recommendation",
    [
        (0, "Some improvements are recommended.", CONSIDER_SIGNATURE),
        (69, "Some improvements are recommended.", CONSIDER_SIGNATURE),
        (70, "Good integrity, with minor improvements possible.", ADD_SIGNATURE),
        (89, "Good integrity, with minor improvements possible.", ADD_SIGNATURE),
        (90, "Excellent integrity and authenticity.", ADD_SIGNATURE),
        (100, "Excellent integrity and authenticity.", ADD_SIGNATURE),
    ],
)
def test_summary_bands_at_thresholds(score, band, first_recommendation) -> None:
    # hash weight alone sets the score of unsigned, untimestamped evidence
    policy = ScoringPolicy(hash_weight=score, custody_weight=0)
    a = assess(ScoreInputs(hash_valid=True, custody_valid=True), policy)
    assert a.score == score
    assert a.overall_valid is True
    assert a.summary == f"Evidence VALID with {score}% confidence. {band}"
    assert a.recommendations[0] == first_recommendation
    assert a.recommendations[-2:] == [ADD_SIGNATURE, ADD_TIMESTAMP]


@pytest.mark.parametrize("score", [0, 69, 70, 90, 100])
def test_invalid_summary_ignores_score_bands(score) -> None:
    policy = ScoringPolicy(hash_weight=0, custody_weight=score)
    a = assess(ScoreInputs(hash_valid=False, custody_valid=True), policy)
    assert a.score == score
    assert a.summary == f"Evidence INVALID ({score}% confidence). Critical problems detected."
    assert a.recommendations[:2] == [DO_NOT_USE, HASH_MISMATCH]
