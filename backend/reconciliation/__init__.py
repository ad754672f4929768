"""
Deposit Reconciliation Engine

Pairs payer-side and payee-side payment notifications and credits the
payer's wallet:
- Identifier extraction from free-text bank / mobile-money messages
- Payer / payee classification
- Confidence scoring with hard early exits
- Auto-approval above the configured threshold
- Operator queue, force-match, reject and batch approval
- Periodic re-match sweep

Submodules are imported directly (reconciliation.services...,
reconciliation.endpoints...) because the database models depend on the
channel registry defined here.
"""

from reconciliation.channel_registry import (
    PaymentChannel,
    ChannelType,
    ChannelConfig,
    ChannelRegistry,
    ReferenceNormalizer,
    AccountSuffixNormalizer,
    channel_registry
)

__all__ = [
    'PaymentChannel',
    'ChannelType',
    'ChannelConfig',
    'ChannelRegistry',
    'ReferenceNormalizer',
    'AccountSuffixNormalizer',
    'channel_registry',
]
