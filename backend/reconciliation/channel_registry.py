"""
Payment Channel Registry

Central registry of the banks and mobile-money services that deposits
arrive through.
Each channel has:
- Unique identifier
- Display name and collection account
- Keywords used to recognise it in notification text
- A reference normalizer applied to URL-derived reference codes

Supported Channels:
- CBE_BANK, AWASH_BANK, DASHEN_BANK: bank transfers
- CBE_BIRR, TELEBIRR: mobile money
"""

import re
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field


class PaymentChannel(str, Enum):
    """
    Recognised payment channels.
    """
    CBE_BANK = "CBE_BANK"
    AWASH_BANK = "AWASH_BANK"
    DASHEN_BANK = "DASHEN_BANK"
    CBE_BIRR = "CBE_BIRR"
    TELEBIRR = "TELEBIRR"
    UNKNOWN = "UNKNOWN"


class ChannelType(str, Enum):
    BANK = "BANK"
    MOBILE_MONEY = "MOBILE_MONEY"
    UNKNOWN = "UNKNOWN"


# ==================== REFERENCE NORMALIZERS ====================

class ReferenceNormalizer:
    """
    Cleans a reference code found in a tracking URL.

    The default leaves the code untouched apart from upper-casing.
    """

    name = "passthrough"

    def normalize(self, code: str) -> str:
        return code.strip().upper()


class AccountSuffixNormalizer(ReferenceNormalizer):
    """
    Strips a fixed-length numeric account suffix from the tail of a code.

    Receipt links append the payer's account digits to the transfer id
    (FT123456799999999 -> FT1234567), while the payee message prints the
    bare id. A code made only of digits, or one that would be left without
    a digit, is returned unchanged.
    """

    name = "account_suffix"

    def __init__(self, suffix_length: int = 8):
        self.suffix_length = suffix_length
        self._pattern = re.compile(r"^(?P<head>[A-Z0-9]*?[A-Z][A-Z0-9]*?)(?P<suffix>\d{%d})$" % suffix_length)

    def normalize(self, code: str) -> str:
        code = super().normalize(code)
        match = self._pattern.match(code)
        if not match:
            return code
        head = match.group("head")
        if not any(c.isdigit() for c in head):
            return code
        return head


@dataclass
class ChannelConfig:
    """
    Configuration for a payment channel.
    """
    channel: PaymentChannel
    display_name: str
    channel_type: ChannelType
    account_name: str
    account_number: str
    instructions: str
    keywords: List[str]  # Lower-case, matched against the notification text
    normalizer: ReferenceNormalizer = field(default_factory=ReferenceNormalizer)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "display_name": self.display_name,
            "channel_type": self.channel_type.value,
            "account_name": self.account_name,
            "account_number": self.account_number,
            "instructions": self.instructions,
            "reference_normalizer": self.normalizer.name,
            "enabled": self.enabled,
        }


class ChannelRegistry:
    """
    Central registry for payment channels.

    Provides channel detection and per-channel reference normalization
    for the identifier extractor.
    """

    # Checked in order: "cbe birr" must win over the plain "cbe" bank keyword
    _detection_order: Tuple[PaymentChannel, ...] = (
        PaymentChannel.TELEBIRR,
        PaymentChannel.CBE_BIRR,
        PaymentChannel.AWASH_BANK,
        PaymentChannel.DASHEN_BANK,
        PaymentChannel.CBE_BANK,
    )

    def __init__(self):
        suffix_normalizer = AccountSuffixNormalizer(8)
        self._configs: Dict[PaymentChannel, ChannelConfig] = {
            PaymentChannel.CBE_BANK: ChannelConfig(
                channel=PaymentChannel.CBE_BANK,
                display_name="CBE Bank",
                channel_type=ChannelType.BANK,
                account_name="Bingo Game",
                account_number="1000200030004000",
                instructions="Send money to CBE account 1000200030004000 via CBE Birr or bank transfer",
                keywords=["commercial bank of ethiopia", "cbe bank", "cbe", "apps.cbe.com.et"],
                normalizer=suffix_normalizer,
            ),
            PaymentChannel.AWASH_BANK: ChannelConfig(
                channel=PaymentChannel.AWASH_BANK,
                display_name="Awash Bank",
                channel_type=ChannelType.BANK,
                account_name="Bingo Game",
                account_number="2000300040005000",
                instructions="Send money to Awash Bank account 2000300040005000",
                keywords=["awash"],
            ),
            PaymentChannel.DASHEN_BANK: ChannelConfig(
                channel=PaymentChannel.DASHEN_BANK,
                display_name="Dashen Bank",
                channel_type=ChannelType.BANK,
                account_name="Bingo Game",
                account_number="3000400050006000",
                instructions="Send money to Dashen Bank account 3000400050006000",
                keywords=["dashen"],
            ),
            PaymentChannel.CBE_BIRR: ChannelConfig(
                channel=PaymentChannel.CBE_BIRR,
                display_name="CBE Birr",
                channel_type=ChannelType.MOBILE_MONEY,
                account_name="Bingo Game",
                account_number="0911000000",
                instructions="Send money to CBE Birr 0911000000",
                keywords=["cbe birr", "cbebirr"],
            ),
            PaymentChannel.TELEBIRR: ChannelConfig(
                channel=PaymentChannel.TELEBIRR,
                display_name="Telebirr",
                channel_type=ChannelType.MOBILE_MONEY,
                account_name="Bingo Game",
                account_number="0912000000",
                instructions="Send money to Telebirr 0912000000",
                keywords=["telebirr", "ethio telecom"],
            ),
        }
        # Unrecognised channels still get the suffix cleanup; most
        # receipt links in the wild come from CBE
        self._unknown_normalizer: ReferenceNormalizer = suffix_normalizer

    def get_config(self, channel: PaymentChannel) -> Optional[ChannelConfig]:
        """Get configuration for a channel."""
        return self._configs.get(channel)

    def get_all_configs(self) -> List[ChannelConfig]:
        """Get all channel configurations."""
        return list(self._configs.values())

    def get_enabled_channels(self) -> List[PaymentChannel]:
        return [cfg.channel for cfg in self._configs.values() if cfg.enabled]

    def parse_channel(self, value: Optional[str]) -> PaymentChannel:
        """
        Resolve a caller-supplied hint ("CBE Bank", "telebirr", "CBE_BIRR")
        to a channel. Unknown hints map to UNKNOWN.
        """
        if not value:
            return PaymentChannel.UNKNOWN

        key = value.strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return PaymentChannel(key)
        except ValueError:
            pass

        lowered = value.strip().lower()
        for cfg in self._configs.values():
            if cfg.display_name.lower() == lowered:
                return cfg.channel
        return PaymentChannel.UNKNOWN

    def detect_channel(self, text: str) -> PaymentChannel:
        """Keyword lookup against known channel names."""
        if not text:
            return PaymentChannel.UNKNOWN

        lowered = text.lower()
        for channel in self._detection_order:
            cfg = self._configs[channel]
            if not cfg.enabled:
                continue
            for keyword in cfg.keywords:
                if re.search(r"(?<![a-z])" + re.escape(keyword) + r"(?![a-z])", lowered):
                    return channel
        return PaymentChannel.UNKNOWN

    def get_normalizer(self, channel: PaymentChannel) -> ReferenceNormalizer:
        cfg = self._configs.get(channel)
        if cfg is None:
            return self._unknown_normalizer
        return cfg.normalizer

    def set_normalizer(self, channel: PaymentChannel, normalizer: ReferenceNormalizer):
        """Swap the reference normalizer for one channel."""
        if channel == PaymentChannel.UNKNOWN:
            self._unknown_normalizer = normalizer
            return
        if channel in self._configs:
            self._configs[channel].normalizer = normalizer

    def normalize_reference(self, channel: PaymentChannel, code: str) -> str:
        return self.get_normalizer(channel).normalize(code)

    def to_dict(self) -> Dict[str, Any]:
        """Export registry as dictionary."""
        return {
            channel.value: cfg.to_dict()
            for channel, cfg in self._configs.items()
        }


# Global registry instance
channel_registry = ChannelRegistry()
