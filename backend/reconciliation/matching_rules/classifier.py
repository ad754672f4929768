"""
Notification Classifier

Labels a notification as PAYER (money leaving the submitter) or PAYEE
(money arriving at the collection account).

Rules are one ordered table of (name, pattern, role). Payer families are
listed before payee families and the first hit wins, so a message can
never receive both roles.
"""

import re
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple

from database.notification_models import NotificationRole


HIT_CONFIDENCE = 0.9
UNKNOWN_CONFIDENCE = 0.5

# Review reason stored on records the table could not classify
CLASSIFICATION_AMBIGUOUS = "CLASSIFICATION_AMBIGUOUS"


def _rule(pattern: str) -> "re.Pattern":
    return re.compile(pattern, re.IGNORECASE)


CLASSIFICATION_RULES: List[Tuple[str, "re.Pattern", NotificationRole]] = [
    # ---------- Payer ----------
    ("you_sent", _rule(r"\byou(?:\s+have|'ve)?\s+(?:successfully\s+)?(?:sent|transferred|paid)\b"), NotificationRole.PAYER),
    ("account_debited", _rule(r"\b(?:account|acct\.?|wallet)\b[^.]{0,60}?\b(?:has\s+been|was|is)\s+debited\b"), NotificationRole.PAYER),
    ("debited_from_account", _rule(r"\bdebited\s+from\s+your\b"), NotificationRole.PAYER),
    ("withdrawn_from_account", _rule(r"\bwithdrawn\s+from\s+your\b"), NotificationRole.PAYER),
    ("transfer_successful", _rule(r"\btransfer\b[^.]{0,60}?\bto\b[^.]{0,80}?\b(?:successful|completed)\b"), NotificationRole.PAYER),

    # ---------- Payee ----------
    ("account_credited", _rule(r"\b(?:account|acct\.?|wallet)\b[^.]{0,60}?\b(?:has\s+been|was|is)\s+credited\b"), NotificationRole.PAYEE),
    ("you_received", _rule(r"\byou(?:\s+have|'ve)?\s+(?:successfully\s+)?received\b"), NotificationRole.PAYEE),
    ("credited_to_account", _rule(r"\bcredited\s+(?:to|into)\s+your\b"), NotificationRole.PAYEE),
    ("deposited_to_account", _rule(r"\bdeposited\s+(?:to|into|in)\s+your\b"), NotificationRole.PAYEE),
    ("received_from", _rule(r"\breceived\b[^.]{0,60}?\bfrom\b"), NotificationRole.PAYEE),
]


@dataclass
class ClassificationResult:
    role: NotificationRole
    confidence: float
    rule_name: Optional[str] = None

    @property
    def is_ambiguous(self) -> bool:
        return self.role == NotificationRole.UNKNOWN

    @property
    def review_reason(self) -> Optional[str]:
        return CLASSIFICATION_AMBIGUOUS if self.is_ambiguous else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "confidence": self.confidence,
            "rule_name": self.rule_name,
        }


class NotificationClassifier:
    """
    Applies CLASSIFICATION_RULES in order.
    """

    def __init__(self, rules: Optional[List[Tuple[str, "re.Pattern", NotificationRole]]] = None):
        self.rules = rules if rules is not None else CLASSIFICATION_RULES

    def classify(self, text: str) -> ClassificationResult:
        if text:
            for name, pattern, role in self.rules:
                if pattern.search(text):
                    return ClassificationResult(role=role, confidence=HIT_CONFIDENCE, rule_name=name)

        return ClassificationResult(role=NotificationRole.UNKNOWN, confidence=UNKNOWN_CONFIDENCE)


# Instantiate classifier
notification_classifier = NotificationClassifier()
