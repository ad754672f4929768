"""
Identifier Extractor

Turns one free-text payment notification into structured identifiers:
- amount (Decimal, 2 places)
- reference code (URL query parameter > labelled field > bare code)
- direction flags (debit / credit keyword families)
- transaction timestamp (UTC)
- counterparty name
- payment channel

Extraction is best effort. Every field is independent and a field that
cannot be recovered is None; extract() never raises.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import urlparse, parse_qsl

from dateutil import tz
from dateutil.parser import parse as parse_date

from reconciliation.channel_registry import PaymentChannel, ChannelRegistry, channel_registry

logger = logging.getLogger(__name__)


# ==================== PATTERNS ====================

_NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
_CURRENCY = r"(?:ETB|Birr|Br)(?![a-z])"

AMOUNT_PATTERNS: List[Tuple[str, "re.Pattern"]] = [
    ("number_currency", re.compile(r"(?<![\w.,])" + _NUMBER + r"\s*" + _CURRENCY, re.IGNORECASE)),
    ("currency_number", re.compile(_CURRENCY + r"\.?\s*" + _NUMBER, re.IGNORECASE)),
    ("amount_label", re.compile(r"amount\s*(?:of)?\s*[:=]?\s*(?:" + _CURRENCY + r"\.?\s*)?" + _NUMBER, re.IGNORECASE)),
    ("verb_number", re.compile(
        r"(?:sent|transferred|paid|debited|credited\s+with|received)\s+(?:" + _CURRENCY + r"\.?\s*)?" + _NUMBER,
        re.IGNORECASE
    )),
]

# Standalone number, not glued to letters, dates, times or longer digit runs
_STANDALONE_NUMBER = re.compile(r"(?<![\w.,:/*-])(\d+(?:,\d{3})*(?:\.\d+)?)(?![\w,:/*-])")

# Amounts printed right after these words describe the account, not the transfer
_BALANCE_CONTEXT = re.compile(r"(balance|bal\.?|fee|charge|vat)\s*(?:is|of)?\s*[:=]?\s*$", re.IGNORECASE)

AMOUNT_MIN = Decimal("1")
AMOUNT_MAX = Decimal("1000000")
LONG_DIGIT_RUN = 7

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
URL_REFERENCE_PARAMS = ("id", "ref", "reference", "trx", "txn", "tid")

LABELED_REFERENCE_PATTERN = re.compile(
    r"(?:\bRef(?:erence)?\.?\s*(?:Number|No|#)?\.?|\bTxn\.?\s*ID|\bTransaction\s*(?:ID|Number|No))"
    r"\s*(?:is)?\s*[:#.\-]?\s*([A-Za-z0-9]{4,32})",
    re.IGNORECASE
)

# Upper-case alphanumeric run holding at least one letter and one digit
BARE_REFERENCE_PATTERN = re.compile(r"\b(?=[A-Z0-9]*[A-Z])(?=[A-Z0-9]*\d)[A-Z0-9]{6,32}\b")
_CURRENCY_PREFIXED = re.compile(r"^(?:ETB|BIRR|BR)\d", re.IGNORECASE)

DEBIT_KEYWORDS = re.compile(r"\b(sent|transferred|debited|paid|withdrawn)\b", re.IGNORECASE)
CREDIT_KEYWORDS = re.compile(r"\b(received|credited|deposited)\b", re.IGNORECASE)

_DATE = (
    r"(?:\d{4}-\d{2}-\d{2}(?:[T ]\d{1,2}:\d{2}(?::\d{2})?(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)?"
    r"|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}"
    r"|\d{1,2}[ -][A-Za-z]{3,9}[ ,-]+\d{2,4})"
)
_TIME = r"(?:[ ,]+(?:at\s+)?\d{1,2}:\d{2}(?::\d{2})?(?:\s*[AaPp][Mm])?)?"

LABELED_TIMESTAMP_PATTERN = re.compile(r"\b(?:on|date|time)\s*[:=]?\s*(" + _DATE + _TIME + r")", re.IGNORECASE)
ISO_TIMESTAMP_PATTERN = re.compile(
    r"\b(\d{4}-\d{2}-\d{2}[T ]\d{1,2}:\d{2}(?::\d{2})?(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)"
)

_NAME = r"([A-Z][A-Za-z'.\-]*(?:\s+[A-Z][A-Za-z'.\-]*){0,4})"
PAYEE_NAME_PATTERN = re.compile(r"\bto\s+" + _NAME)
PAYER_NAME_PATTERN = re.compile(r"\bfrom\s+" + _NAME)

NAME_STOPWORDS = frozenset([
    "on", "at", "with", "ref", "reference", "via", "account", "acct", "your",
    "for", "the", "and", "txn", "transaction", "id", "no", "is", "has", "dear",
    "etb", "birr", "br", "thank", "thanks", "date", "time", "current", "balance",
])


def compute_content_hash(text: str) -> str:
    """sha256 of the whitespace-normalized text"""
    normalized = " ".join((text or "").split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _parse_decimal(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", "")).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


# ==================== RESULT ====================

@dataclass
class ExtractedIdentifiers:
    """
    Structured fields recovered from one notification.
    """
    amount: Optional[Decimal] = None
    reference_code: Optional[str] = None
    raw_reference_code: Optional[str] = None
    reference_source: Optional[str] = None  # URL | LABEL | BARE
    counterparty_name: Optional[str] = None
    transaction_time: Optional[datetime] = None
    is_debit: bool = False
    is_credit: bool = False
    direction: str = "UNKNOWN"
    channel: PaymentChannel = PaymentChannel.UNKNOWN
    warnings: List[str] = field(default_factory=list)

    @property
    def has_amount(self) -> bool:
        return self.amount is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount) if self.amount is not None else None,
            "reference_code": self.reference_code,
            "raw_reference_code": self.raw_reference_code,
            "reference_source": self.reference_source,
            "counterparty_name": self.counterparty_name,
            "transaction_time": self.transaction_time.isoformat() if self.transaction_time else None,
            "is_debit": self.is_debit,
            "is_credit": self.is_credit,
            "direction": self.direction,
            "channel": self.channel.value,
            "warnings": list(self.warnings),
        }


# ==================== EXTRACTOR ====================

class IdentifierExtractor:
    """
    Best-effort parser for bank and mobile-money notifications.
    """

    def __init__(
        self,
        registry: Optional[ChannelRegistry] = None,
        default_timezone: Optional[str] = None
    ):
        self.registry = registry or channel_registry
        self._default_timezone = default_timezone

    @property
    def local_tz(self):
        name = self._default_timezone
        if name is None:
            from config import get_settings
            name = get_settings().DEFAULT_TIMEZONE
        return tz.gettz(name) or timezone.utc

    def extract(self, text: str, channel_hint: Optional[str] = None) -> ExtractedIdentifiers:
        """
        Extract identifiers from a notification.

        Args:
            text: Raw notification text
            channel_hint: Channel named by the submitter, if any

        Returns:
            ExtractedIdentifiers; unrecoverable fields are None
        """
        result = ExtractedIdentifiers()
        if not text or not text.strip():
            result.warnings.append("empty_text")
            return result

        result.channel = self._field(result, "channel", self.extract_channel, text, channel_hint)
        if result.channel is None:
            result.channel = PaymentChannel.UNKNOWN

        result.amount = self._field(result, "amount", self.extract_amount, text)

        reference = self._field(result, "reference", self.extract_reference, text, result.channel)
        if reference:
            result.reference_code, result.raw_reference_code, result.reference_source = reference

        direction = self._field(result, "direction", self.extract_direction, text)
        if direction:
            result.is_debit, result.is_credit, result.direction = direction

        result.transaction_time = self._field(result, "timestamp", self.extract_timestamp, text)
        result.counterparty_name = self._field(
            result, "counterparty", self.extract_counterparty, text, result.direction
        )

        if result.amount is None:
            result.warnings.append("amount_not_found")
        if result.reference_code is None:
            result.warnings.append("reference_not_found")

        return result

    def _field(self, result: ExtractedIdentifiers, name: str, fn, *args):
        try:
            return fn(*args)
        except Exception as e:
            logger.warning(f"Extraction of {name} failed: {e}")
            result.warnings.append(f"{name}_error")
            return None

    # ---------- Channel ----------

    def extract_channel(self, text: str, channel_hint: Optional[str] = None) -> PaymentChannel:
        hinted = self.registry.parse_channel(channel_hint)
        if hinted != PaymentChannel.UNKNOWN:
            return hinted
        return self.registry.detect_channel(text)

    # ---------- Amount ----------

    def extract_amount(self, text: str) -> Optional[Decimal]:
        """First labelled amount in pattern order, else the first plausible number."""
        searchable = URL_PATTERN.sub(" ", text)

        for _name, pattern in AMOUNT_PATTERNS:
            for match in pattern.finditer(searchable):
                if _BALANCE_CONTEXT.search(searchable[max(0, match.start() - 30):match.start()]):
                    continue
                value = _parse_decimal(match.group(1))
                if value is not None and value > 0:
                    return value

        for match in _STANDALONE_NUMBER.finditer(searchable):
            raw = match.group(1)
            integer_part = raw.split(".")[0].replace(",", "")
            if len(integer_part) >= LONG_DIGIT_RUN:
                continue
            value = _parse_decimal(raw)
            if value is not None and AMOUNT_MIN <= value <= AMOUNT_MAX:
                return value

        return None

    # ---------- Reference ----------

    def extract_reference(
        self,
        text: str,
        channel: PaymentChannel = PaymentChannel.UNKNOWN
    ) -> Optional[Tuple[str, str, str]]:
        """
        Returns (normalized_code, raw_code, source) or None.
        """
        for url in URL_PATTERN.findall(text):
            raw = self._reference_from_url(url)
            if raw:
                return self.registry.normalize_reference(channel, raw), raw, "URL"

        for match in LABELED_REFERENCE_PATTERN.finditer(text):
            raw = match.group(1)
            if any(c.isdigit() for c in raw):
                return raw.upper(), raw, "LABEL"

        without_urls = URL_PATTERN.sub(" ", text)
        for match in BARE_REFERENCE_PATTERN.finditer(without_urls):
            raw = match.group(0)
            if _CURRENCY_PREFIXED.match(raw):
                continue
            return raw.upper(), raw, "BARE"

        return None

    def _reference_from_url(self, url: str) -> Optional[str]:
        url = url.rstrip(".,;)")
        params = {k.lower(): v for k, v in parse_qsl(urlparse(url).query)}
        for key in URL_REFERENCE_PARAMS:
            value = (params.get(key) or "").strip()
            if value and re.fullmatch(r"[A-Za-z0-9]{4,40}", value):
                return value
        return None

    # ---------- Direction ----------

    def extract_direction(self, text: str) -> Tuple[bool, bool, str]:
        """
        Returns (is_debit, is_credit, direction). Both flags may be set; the
        family whose keyword appears first decides the direction.
        """
        debit = DEBIT_KEYWORDS.search(text)
        credit = CREDIT_KEYWORDS.search(text)

        if debit and credit:
            direction = "DEBIT" if debit.start() < credit.start() else "CREDIT"
        elif debit:
            direction = "DEBIT"
        elif credit:
            direction = "CREDIT"
        else:
            direction = "UNKNOWN"

        return debit is not None, credit is not None, direction

    # ---------- Timestamp ----------

    def extract_timestamp(self, text: str) -> Optional[datetime]:
        without_urls = URL_PATTERN.sub(" ", text)
        match = LABELED_TIMESTAMP_PATTERN.search(without_urls) or ISO_TIMESTAMP_PATTERN.search(without_urls)
        if not match:
            return None

        raw = match.group(1).strip(" ,")
        try:
            parsed = parse_date(raw, dayfirst=not re.match(r"\d{4}-", raw))
        except (ValueError, OverflowError):
            logger.debug(f"Unparseable timestamp: {raw}")
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.local_tz)
        return parsed.astimezone(timezone.utc)

    # ---------- Counterparty ----------

    def extract_counterparty(self, text: str, direction: str = "UNKNOWN") -> Optional[str]:
        if direction == "DEBIT":
            pattern = PAYEE_NAME_PATTERN
        elif direction == "CREDIT":
            pattern = PAYER_NAME_PATTERN
        else:
            return None

        for match in pattern.finditer(text):
            name = self._trim_name(match.group(1))
            if name:
                return name
        return None

    def _trim_name(self, raw: str) -> Optional[str]:
        tokens = []
        for token in raw.split():
            word = token.rstrip(".,;:'-")
            if not word or word.lower() in NAME_STOPWORDS:
                break
            tokens.append(word)
            if token != word:
                # Punctuation closes the name
                break

        if not tokens:
            return None

        name = " ".join(tokens)
        if self.registry.detect_channel(name) != PaymentChannel.UNKNOWN:
            return None
        return name


# ==================== DETECTION HEURISTIC ====================

_PAYMENT_HINT_PATTERNS = [
    re.compile(r"(sent|received|transfer|transaction|deposit|balance|amount).*" + _CURRENCY, re.IGNORECASE),
    re.compile(r"cbe.*bank|awash.*bank|dashen.*bank|cbe.*birr|telebirr", re.IGNORECASE),
    re.compile(r"dear.*customer|txn.*id|transaction.*id", re.IGNORECASE),
]
_AMOUNT_WITH_CURRENCY = re.compile(r"\d+\.?\d*\s*" + _CURRENCY, re.IGNORECASE)
_TRANSACTION_WORDS = ("Txn", "Transaction", "sent", "received")


def looks_like_payment_notification(text: str) -> bool:
    """
    Cheap check used by the chat layer to decide whether a free message
    is a bank / mobile-money notification worth ingesting.
    """
    if not text:
        return False

    if any(p.search(text) for p in _PAYMENT_HINT_PATTERNS):
        return True

    has_amount = _AMOUNT_WITH_CURRENCY.search(text) is not None
    has_transaction_words = any(w in text for w in _TRANSACTION_WORDS)
    reasonable_length = 20 < len(text) < 500
    return has_amount and has_transaction_words and reasonable_length


# Shared extractor instance
identifier_extractor = IdentifierExtractor()
