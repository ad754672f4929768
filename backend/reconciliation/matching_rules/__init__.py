"""
Matching Rules Module
"""

from .classifier import (
    NotificationClassifier,
    ClassificationResult,
    CLASSIFICATION_RULES,
    notification_classifier,
)
from .notification_rules import (
    NotificationMatchingRules,
    MatchSubject,
    ScoreBreakdown,
    MatchCandidate,
    MatchResult,
    notification_rules,
)

__all__ = [
    "NotificationClassifier", "ClassificationResult", "CLASSIFICATION_RULES", "notification_classifier",
    "NotificationMatchingRules", "MatchSubject", "ScoreBreakdown", "MatchCandidate", "MatchResult",
    "notification_rules",
]
