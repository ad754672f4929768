"""
Unit Tests for Classification and Match Scoring

Tests:
- Rule-table classifier (payer / payee / unknown, payer precedence)
- Scorer points and hard exits
- First-match-wins candidate selection
- Operator ranking

Run with: pytest tests/test_matching_rules.py -v
"""

import re
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

from database.notification_models import NotificationRole
from reconciliation.matching_rules.classifier import (
    NotificationClassifier,
    CLASSIFICATION_AMBIGUOUS,
    HIT_CONFIDENCE,
    UNKNOWN_CONFIDENCE,
)
from reconciliation.matching_rules.notification_rules import (
    NotificationMatchingRules,
    MatchSubject,
)


NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def subject(
    record_id,
    direction="DEBIT",
    amount="100.00",
    ref="FT1234567",
    channel="CBE_BANK",
    name="Jane Doe",
    minutes=0
):
    at = NOW + timedelta(minutes=minutes)
    return MatchSubject(
        id=record_id,
        amount=Decimal(amount),
        reference_code=ref,
        direction=direction,
        channel=channel,
        counterparty_name=name,
        received_at=at,
        created_at=at,
    )


class TestClassifier:
    """Rule table classification."""

    @pytest.fixture
    def classifier(self):
        return NotificationClassifier()

    def test_you_sent_is_payer(self, classifier):
        result = classifier.classify("You have transferred ETB 100.00 to Jane Doe")
        assert result.role == NotificationRole.PAYER
        assert result.confidence == HIT_CONFIDENCE
        assert result.rule_name == "you_sent"

    def test_debited_from_account_is_payer(self, classifier):
        result = classifier.classify("ETB 50.00 debited from your account")
        assert result.role == NotificationRole.PAYER

    def test_account_credited_is_payee(self, classifier):
        result = classifier.classify("Your account 1000123 has been credited with ETB 100.00")
        assert result.role == NotificationRole.PAYEE
        assert result.rule_name == "account_credited"

    def test_you_received_is_payee(self, classifier):
        result = classifier.classify("You have received ETB 100.00 from Abebe")
        assert result.role == NotificationRole.PAYEE

    def test_payer_rules_take_precedence(self, classifier):
        text = "You have sent ETB 100.00. Your account has been credited with a bonus"
        assert classifier.classify(text).role == NotificationRole.PAYER

    def test_unmatched_text_is_unknown(self, classifier):
        result = classifier.classify("here is my payment 100")
        assert result.role == NotificationRole.UNKNOWN
        assert result.confidence == UNKNOWN_CONFIDENCE
        assert result.is_ambiguous
        assert result.review_reason == CLASSIFICATION_AMBIGUOUS

    def test_custom_rule_table(self):
        classifier = NotificationClassifier(rules=[
            ("outgoing", re.compile(r"\boutgoing\b", re.IGNORECASE), NotificationRole.PAYER),
        ])
        assert classifier.classify("Outgoing transfer 100").role == NotificationRole.PAYER
        assert classifier.classify("You have received 100").role == NotificationRole.UNKNOWN


class TestScoring:
    """Points per criterion and hard exits."""

    @pytest.fixture
    def rules(self):
        return NotificationMatchingRules()

    def test_perfect_pair(self, rules):
        breakdown = rules.score(subject("p"), subject("q", direction="CREDIT", minutes=2))
        assert breakdown.exit_reason is None
        assert breakdown.total_points == 100
        assert breakdown.score == 1.0

    def test_same_direction_scores_zero(self, rules):
        breakdown = rules.score(subject("p"), subject("q"))
        assert breakdown.exit_reason == "SAME_DIRECTION"
        assert breakdown.score == 0

    def test_amount_mismatch_scores_zero(self, rules):
        breakdown = rules.score(subject("p"), subject("q", direction="CREDIT", amount="100.01"))
        assert breakdown.exit_reason == "AMOUNT_MISMATCH"
        assert breakdown.score == 0

    def test_reference_mismatch_scores_zero(self, rules):
        breakdown = rules.score(subject("p"), subject("q", direction="CREDIT", ref="FT7654321"))
        assert breakdown.exit_reason == "REFERENCE_MISMATCH"
        assert breakdown.score == 0

    def test_one_side_missing_reference_scores_zero(self, rules):
        breakdown = rules.score(subject("p"), subject("q", direction="CREDIT", ref=None))
        assert breakdown.exit_reason == "REFERENCE_MISMATCH"

    def test_both_references_missing(self, rules):
        breakdown = rules.score(subject("p", ref=None), subject("q", direction="CREDIT", ref=None))
        assert breakdown.points["reference"] == 15
        assert breakdown.score == pytest.approx(0.85)

    def test_close_reference(self, rules):
        breakdown = rules.score(subject("p"), subject("q", direction="CREDIT", ref="FT12345678"))
        assert breakdown.points["reference"] == 28

    def test_contained_reference(self, rules):
        breakdown = rules.score(subject("p", ref="1234"), subject("q", direction="CREDIT", ref="FT12345678X"))
        assert breakdown.points["reference"] == 25

    def test_time_bands(self, rules):
        near = rules.score(subject("p"), subject("q", direction="CREDIT", minutes=7))
        far = rules.score(subject("p"), subject("q", direction="CREDIT", minutes=30))
        assert near.points["time"] == 5
        assert far.points["time"] == 0

    def test_unknown_direction_scores_no_direction_points(self, rules):
        breakdown = rules.score(subject("p", direction="UNKNOWN"), subject("q", direction="CREDIT"))
        assert breakdown.exit_reason is None
        assert breakdown.points["direction"] == 0
        assert breakdown.total_points == 80

    def test_names_correlate(self, rules):
        assert rules.names_correlate("Jane Doe", "JANE DOE")
        assert rules.names_correlate("Jane", "Jane Mary Doe")
        assert rules.names_correlate("Abebe Kebede", "Abebe K")
        assert not rules.names_correlate("Abebe Kebede", "Jane Doe")
        assert not rules.names_correlate(None, "Jane Doe")


class TestCandidateSelection:
    """find_match and rank_candidates."""

    @pytest.fixture
    def rules(self):
        return NotificationMatchingRules()

    def test_first_match_wins_most_recent_first(self, rules):
        payer = subject("payer")
        older_exact = subject("older", direction="CREDIT", minutes=-1)
        newer_close = subject("newer", direction="CREDIT", ref="FT12345678", minutes=1)

        result = rules.find_match(payer, [older_exact, newer_close])

        assert result.auto_matched
        assert result.best_match.record_id == "newer"
        assert result.best_match.score == pytest.approx(0.98)
        # Evaluation stops at the first accepted candidate
        assert [c.record_id for c in result.candidates] == ["newer"]

    def test_suggested_match_below_auto_threshold(self, rules):
        payer = subject("payer", ref=None, name="Abebe Kebede")
        payee = subject("payee", direction="CREDIT", ref=None, channel="TELEBIRR", name="Jane Doe", minutes=30)

        result = rules.find_match(payer, [payee])

        assert not result.auto_matched
        assert result.suggested_match
        assert result.best_match.score == pytest.approx(0.65)

    def test_no_candidates(self, rules):
        result = rules.find_match(subject("payer"), [])
        assert not result.auto_matched
        assert result.best_match is None
        assert result.candidates == []

    def test_record_is_never_its_own_candidate(self, rules):
        payer = subject("payer")
        result = rules.find_match(payer, [payer])
        assert result.candidates == []

    def test_custom_threshold(self, rules):
        payer = subject("payer", ref=None)
        payee = subject("payee", direction="CREDIT", ref=None)
        assert rules.find_match(payer, [payee]).auto_matched
        assert not rules.find_match(payer, [payee], threshold=0.9).auto_matched

    def test_rank_candidates_best_first(self, rules):
        payer = subject("payer")
        candidates = [
            subject("close", direction="CREDIT", ref="FT12345678", minutes=1),
            subject("exact", direction="CREDIT", minutes=-1),
            subject("wrong", direction="CREDIT", ref="ZZ999999"),
        ]

        ranked = rules.rank_candidates(payer, candidates)

        assert [c.record_id for c in ranked] == ["exact", "close", "wrong"]
        assert ranked[0].score_percent == 100
        assert ranked[-1].score == 0
        assert ranked[-1].breakdown.exit_reason == "REFERENCE_MISMATCH"
