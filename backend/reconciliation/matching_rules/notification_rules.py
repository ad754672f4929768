"""
Notification Matching Rules

Scores a payer notification against a payee notification (or the
reverse) and decides whether they describe the same transfer.

Criteria (points, additive, out of 100):
- direction: opposite 20, same known direction -> exit with 0
- amount: exact 30, anything else -> exit with 0
- reference: equal 30, absent on both 15, containment 25-28,
  anything else -> exit with 0
- elapsed time: <= 5 min 10, <= 10 min 5
- same known channel: 5
- counterparty name correlation: 5

Confidence Scoring:
- High (>=0.85): Auto-match
- Medium (0.60-0.85): Shown to operators as a candidate
- Low (<0.60): No match

Candidates are evaluated most-recent-first and the first one at or above
the auto-match threshold is accepted; later candidates are not scored.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, List, Optional, Sequence

from database.ledger_models import as_utc


AUTO_MATCH_THRESHOLD = 0.85
SUGGEST_MATCH_THRESHOLD = 0.60


def _value(v):
    return v.value if isinstance(v, Enum) else v


@dataclass
class MatchSubject:
    """
    The fields of a notification record the scorer reads.
    """
    id: str
    amount: Optional[Decimal]
    reference_code: Optional[str] = None
    direction: str = "UNKNOWN"
    channel: str = "UNKNOWN"
    counterparty_name: Optional[str] = None
    received_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "MatchSubject":
        return cls(
            id=record.id,
            amount=record.amount,
            reference_code=record.reference_code,
            direction=_value(record.direction) or "UNKNOWN",
            channel=_value(record.channel) or "UNKNOWN",
            counterparty_name=record.counterparty_name,
            received_at=record.received_at,
            created_at=as_utc(record.created_at),
        )


@dataclass
class ScoreBreakdown:
    """
    Points per criterion. exit_reason is set when a hard rule forced 0.
    """
    points: Dict[str, int] = field(default_factory=dict)
    exit_reason: Optional[str] = None

    @property
    def total_points(self) -> int:
        if self.exit_reason:
            return 0
        return sum(self.points.values())

    @property
    def score(self) -> float:
        return round(self.total_points / 100.0, 4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "points": dict(self.points),
            "exit_reason": self.exit_reason,
            "total_points": self.total_points,
            "score": self.score,
        }


@dataclass
class MatchCandidate:
    """
    A scored potential counterpart.
    """
    record_id: str
    score: float
    breakdown: ScoreBreakdown
    record: Any = None

    @property
    def score_percent(self) -> int:
        return int(round(self.score * 100))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "score": self.score,
            "score_percent": self.score_percent,
            "breakdown": self.breakdown.to_dict(),
        }


@dataclass
class MatchResult:
    """
    Result of matching attempt.
    """
    record_id: str
    candidates: List[MatchCandidate]
    best_match: Optional[MatchCandidate]
    auto_matched: bool
    suggested_match: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "candidates_count": len(self.candidates),
            "candidates": [c.to_dict() for c in self.candidates],
            "best_match": {
                "record_id": self.best_match.record_id,
                "score": self.best_match.score
            } if self.best_match else None,
            "auto_matched": self.auto_matched,
            "suggested_match": self.suggested_match
        }


class NotificationMatchingRules:
    """
    Matching rules engine for payer / payee notification pairs.
    """

    # Points
    POINTS_DIRECTION = 20
    POINTS_AMOUNT = 30
    POINTS_REFERENCE_EXACT = 30
    POINTS_REFERENCE_CLOSE = 28
    POINTS_REFERENCE_CONTAINED = 25
    POINTS_REFERENCE_BOTH_MISSING = 15
    POINTS_TIME_CLOSE = 10
    POINTS_TIME_NEAR = 5
    POINTS_CHANNEL = 5
    POINTS_NAME = 5

    # Tolerances
    TIME_CLOSE = timedelta(minutes=5)
    TIME_NEAR = timedelta(minutes=10)
    REFERENCE_CLOSE_RATIO = 0.75
    NAME_TOKEN_OVERLAP = 0.5

    def __init__(
        self,
        auto_match_threshold: float = AUTO_MATCH_THRESHOLD,
        suggest_match_threshold: float = SUGGEST_MATCH_THRESHOLD
    ):
        self.auto_match_threshold = auto_match_threshold
        self.suggest_match_threshold = suggest_match_threshold

    def score(self, a, b) -> ScoreBreakdown:
        """
        Score two notifications. Accepts MatchSubject or record objects.
        """
        a = a if isinstance(a, MatchSubject) else MatchSubject.from_record(a)
        b = b if isinstance(b, MatchSubject) else MatchSubject.from_record(b)
        breakdown = ScoreBreakdown()

        # Direction
        dir_a, dir_b = a.direction or "UNKNOWN", b.direction or "UNKNOWN"
        if dir_a != "UNKNOWN" and dir_b != "UNKNOWN":
            if dir_a == dir_b:
                breakdown.points["direction"] = 0
                breakdown.exit_reason = "SAME_DIRECTION"
                return breakdown
            breakdown.points["direction"] = self.POINTS_DIRECTION
        else:
            breakdown.points["direction"] = 0

        # Amount
        if a.amount is None or b.amount is None or Decimal(a.amount) != Decimal(b.amount):
            breakdown.points["amount"] = 0
            breakdown.exit_reason = "AMOUNT_MISMATCH"
            return breakdown
        breakdown.points["amount"] = self.POINTS_AMOUNT

        # Reference
        reference_points = self._score_reference(a.reference_code, b.reference_code)
        breakdown.points["reference"] = reference_points
        if reference_points == 0:
            breakdown.exit_reason = "REFERENCE_MISMATCH"
            return breakdown

        breakdown.points["time"] = self._score_time(a.received_at, b.received_at)

        if a.channel != "UNKNOWN" and a.channel == b.channel:
            breakdown.points["channel"] = self.POINTS_CHANNEL
        else:
            breakdown.points["channel"] = 0

        breakdown.points["name"] = self.POINTS_NAME if self.names_correlate(
            a.counterparty_name, b.counterparty_name
        ) else 0

        return breakdown

    def _score_reference(self, ref_a: Optional[str], ref_b: Optional[str]) -> int:
        ref_a = (ref_a or "").upper()
        ref_b = (ref_b or "").upper()

        if not ref_a and not ref_b:
            return self.POINTS_REFERENCE_BOTH_MISSING
        if not ref_a or not ref_b:
            return 0
        if ref_a == ref_b:
            return self.POINTS_REFERENCE_EXACT

        shorter, longer = sorted((ref_a, ref_b), key=len)
        if shorter in longer:
            if len(shorter) / len(longer) >= self.REFERENCE_CLOSE_RATIO:
                return self.POINTS_REFERENCE_CLOSE
            return self.POINTS_REFERENCE_CONTAINED
        return 0

    def _score_time(self, at_a: Optional[datetime], at_b: Optional[datetime]) -> int:
        at_a, at_b = as_utc(at_a), as_utc(at_b)
        if at_a is None or at_b is None:
            return 0
        elapsed = abs(at_a - at_b)
        if elapsed <= self.TIME_CLOSE:
            return self.POINTS_TIME_CLOSE
        if elapsed <= self.TIME_NEAR:
            return self.POINTS_TIME_NEAR
        return 0

    def names_correlate(self, name_a: Optional[str], name_b: Optional[str]) -> bool:
        """Containment, same leading token, or >= 50% token overlap."""
        if not name_a or not name_b:
            return False

        a, b = name_a.lower().strip(), name_b.lower().strip()
        if a in b or b in a:
            return True

        tokens_a, tokens_b = a.split(), b.split()
        if tokens_a[0] == tokens_b[0]:
            return True

        overlap = len(set(tokens_a) & set(tokens_b))
        return overlap / max(len(set(tokens_a)), len(set(tokens_b))) >= self.NAME_TOKEN_OVERLAP

    def find_match(
        self,
        record,
        candidates: Sequence,
        threshold: Optional[float] = None
    ) -> MatchResult:
        """
        Evaluate candidates most-recent-first and stop at the first one
        scoring at or above the threshold.
        """
        threshold = self.auto_match_threshold if threshold is None else threshold
        subject = record if isinstance(record, MatchSubject) else MatchSubject.from_record(record)

        scored: List[MatchCandidate] = []
        winner: Optional[MatchCandidate] = None

        for original, candidate in self._ordered(candidates):
            if candidate.id == subject.id:
                continue
            breakdown = self.score(subject, candidate)
            match = MatchCandidate(
                record_id=candidate.id,
                score=breakdown.score,
                breakdown=breakdown,
                record=original
            )
            scored.append(match)
            if match.score >= threshold:
                winner = match
                break

        if winner is not None:
            return MatchResult(
                record_id=subject.id,
                candidates=scored,
                best_match=winner,
                auto_matched=True,
                suggested_match=False
            )

        best = max(scored, key=lambda c: c.score, default=None)
        suggested = best is not None and best.score >= self.suggest_match_threshold
        return MatchResult(
            record_id=subject.id,
            candidates=scored,
            best_match=best if suggested else None,
            auto_matched=False,
            suggested_match=suggested
        )

    def rank_candidates(self, record, candidates: Sequence) -> List[MatchCandidate]:
        """Score every candidate, best first. Used by operator views."""
        subject = record if isinstance(record, MatchSubject) else MatchSubject.from_record(record)
        ranked = []
        for original, candidate in self._ordered(candidates):
            if candidate.id == subject.id:
                continue
            breakdown = self.score(subject, candidate)
            ranked.append(MatchCandidate(
                record_id=candidate.id,
                score=breakdown.score,
                breakdown=breakdown,
                record=original
            ))
        ranked.sort(key=lambda c: c.score, reverse=True)
        return ranked

    def _ordered(self, candidates: Sequence):
        pairs = [
            (c, c if isinstance(c, MatchSubject) else MatchSubject.from_record(c))
            for c in candidates
        ]
        pairs.sort(key=lambda p: self._recency_key(p[1]), reverse=True)
        return pairs

    @staticmethod
    def _recency_key(subject: MatchSubject) -> float:
        instant = as_utc(subject.created_at or subject.received_at)
        return instant.timestamp() if instant else 0.0


# Instantiate rules engine
notification_rules = NotificationMatchingRules()
