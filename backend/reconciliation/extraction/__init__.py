"""
Notification Extraction Module
"""

from .identifier_extractor import (
    IdentifierExtractor,
    ExtractedIdentifiers,
    identifier_extractor,
    compute_content_hash,
    looks_like_payment_notification,
)

__all__ = [
    "IdentifierExtractor",
    "ExtractedIdentifiers",
    "identifier_extractor",
    "compute_content_hash",
    "looks_like_payment_notification",
]
