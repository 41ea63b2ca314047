"""
Structured data extraction from proof text (OCR output, receipts, free text)

Pulls monetary amounts, typed dates, reference identifiers and tracking/licence
style codes so the verification pipeline can cross-check them against the
transaction.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DATE_RECEIPT = "receipt"
DATE_TRANSFER = "transfer"
DATE_SHIP = "ship"
DATE_DELIVERY = "delivery"
DATE_EVENT = "event"
DATE_UNKNOWN = "unknown"

# Dates that must sit close to the submission time
SETTLEMENT_DATE_TYPES = (DATE_RECEIPT, DATE_TRANSFER, DATE_DELIVERY)

_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY"}
_ISO_CODES = "USD|EUR|GBP|CAD|AUD|NZD|CHF|JPY|SEK|NOK|DKK|SGD|HKD|MXN|NGN|KRW"
_NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?"

_AMOUNT_PATTERNS = [
    re.compile(rf"(?P<sym>[$€£¥])\s?(?P<num>{_NUMBER})"),
    re.compile(rf"\b(?P<code>{_ISO_CODES})\s?(?P<num>{_NUMBER})\b"),
    re.compile(rf"\b(?P<num>{_NUMBER})\s?(?P<code>{_ISO_CODES})\b"),
]

_MONTHS = {
    name: index
    for index, names in enumerate(
        [
            ("jan", "january"), ("feb", "february"), ("mar", "march"), ("apr", "april"),
            ("may",), ("jun", "june"), ("jul", "july"), ("aug", "august"),
            ("sep", "sept", "september"), ("oct", "october"), ("nov", "november"), ("dec", "december"),
        ],
        start=1,
    )
    for name in names
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

_ISO_DATE = re.compile(r"\b(?P<y>\d{4})-(?P<m>\d{1,2})-(?P<d>\d{1,2})\b")
_US_DATE = re.compile(r"\b(?P<m>\d{1,2})/(?P<d>\d{1,2})/(?P<y>\d{4})\b")
_MONTH_FIRST = re.compile(rf"\b(?P<mon>{_MONTH_ALT})\.?\s+(?P<d>\d{{1,2}})(?:st|nd|rd|th)?,?\s+(?P<y>\d{{4}})\b", re.I)
_DAY_FIRST = re.compile(rf"\b(?P<d>\d{{1,2}})(?:st|nd|rd|th)?\s+(?P<mon>{_MONTH_ALT})\.?,?\s+(?P<y>\d{{4}})\b", re.I)

_DATE_KEYWORDS = [
    (DATE_EVENT, ("event", "show", "concert", "game", "performance", "doors", "kickoff")),
    (DATE_DELIVERY, ("deliver",)),
    (DATE_SHIP, ("ship", "dispatch")),
    (DATE_TRANSFER, ("transfer",)),
    (DATE_RECEIPT, ("receipt", "order", "purchase", "paid", "payment", "invoice", "issued", "completed")),
]

_IDENTIFIER = re.compile(
    r"\b(?:order|transaction|txn|reference|ref|confirmation|invoice)\s*(?:#|no\.?|number|id)?\s*[:#]?\s*"
    r"(?P<id>[A-Z0-9][A-Z0-9-]{3,})",
    re.I,
)
_TRACKING_CODE = re.compile(r"\b(?:1Z[0-9A-Z]{16}|[A-Z]{2}\d{9}[A-Z]{2}|\d{10,22})\b")
_LICENSE_CODE = re.compile(r"\b[A-Z0-9]{4,6}(?:-[A-Z0-9]{4,6}){2,}\b")


@dataclass
class ExtractedEvidence:
    amounts: List[Tuple[Decimal, Optional[str]]] = field(default_factory=list)
    dates: List[Tuple[date, str]] = field(default_factory=list)
    identifiers: List[str] = field(default_factory=list)
    codes: List[str] = field(default_factory=list)
    text: str = ""

    def is_empty(self) -> bool:
        return not (self.amounts or self.dates or self.identifiers or self.codes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amounts": [{"value": str(v), "currency": c} for v, c in self.amounts],
            "dates": [{"value": d.isoformat(), "type": t} for d, t in self.dates],
            "identifiers": list(self.identifiers),
            "codes": list(self.codes),
        }

    def merge_scoring_data(self, data: Optional[Dict[str, Any]]) -> None:
        """
        Fold in ``extractedData`` returned by the scoring model.

        Items with a missing or unparseable value are skipped. A structurally
        wrong payload (non-list containers, non-object items, non-finite
        amounts) raises ValueError or TypeError and nothing is merged.
        """
        if data is None:
            return
        if not isinstance(data, dict):
            raise TypeError("extractedData is not an object")

        amounts: List[Tuple[Decimal, Optional[str]]] = []
        for item in _scoring_items(data, "monetaryAmounts"):
            try:
                value = Decimal(str(item["value"]))
            except (KeyError, InvalidOperation):
                continue
            if not value.is_finite():
                raise ValueError(f"non-finite amount {value}")
            currency = item.get("currency")
            amounts.append((value, currency.upper() if isinstance(currency, str) else None))

        dates: List[Tuple[date, str]] = []
        for item in _scoring_items(data, "dates"):
            try:
                parsed = datetime.strptime(str(item["value"])[:10], "%Y-%m-%d").date()
            except (KeyError, ValueError):
                continue
            dates.append((parsed, str(item.get("type") or DATE_UNKNOWN).replace("_date", "")))

        for entry in amounts:
            if entry not in self.amounts:
                self.amounts.append(entry)
        for entry in dates:
            if entry not in self.dates:
                self.dates.append(entry)


def _scoring_items(data: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    items = data.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise TypeError(f"{key} is not a list")
    if not all(isinstance(item, dict) for item in items):
        raise TypeError(f"{key} contains non-object items")
    return items


def _parse_number(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def _classify_date(text: str, start: int) -> str:
    window = text[max(0, start - 40):start].lower()
    best_type, best_pos = DATE_UNKNOWN, -1
    for date_type, words in _DATE_KEYWORDS:
        for word in words:
            pos = window.rfind(word)
            if pos > best_pos:
                best_type, best_pos = date_type, pos
    return best_type


def _build_date(y: str, m: int, d: str) -> Optional[date]:
    try:
        return date(int(y), int(m), int(d))
    except ValueError:
        return None


def extract_amounts(text: str) -> List[Tuple[Decimal, Optional[str]]]:
    found: List[Tuple[Decimal, Optional[str]]] = []
    spans = []
    for pattern in _AMOUNT_PATTERNS:
        for match in pattern.finditer(text):
            if any(s <= match.start() < e for s, e in spans):
                continue
            value = _parse_number(match.group("num"))
            if value is None:
                continue
            groups = match.groupdict()
            currency = _CURRENCY_SYMBOLS.get(groups.get("sym") or "") or groups.get("code")
            spans.append(match.span())
            found.append((value, currency))
    return found


def extract_dates(text: str) -> List[Tuple[date, str]]:
    found: List[Tuple[date, str]] = []
    for pattern in (_ISO_DATE, _US_DATE):
        for match in pattern.finditer(text):
            parsed = _build_date(match.group("y"), int(match.group("m")), match.group("d"))
            if parsed:
                found.append((parsed, _classify_date(text, match.start())))
    for pattern in (_MONTH_FIRST, _DAY_FIRST):
        for match in pattern.finditer(text):
            month = _MONTHS[match.group("mon").lower()]
            parsed = _build_date(match.group("y"), month, match.group("d"))
            if parsed:
                found.append((parsed, _classify_date(text, match.start())))
    return found


def extract_evidence(text: Optional[str]) -> ExtractedEvidence:
    """Run every extractor over ``text``. Empty input yields an empty result."""
    if not text:
        return ExtractedEvidence()

    identifiers = []
    for match in _IDENTIFIER.finditer(text):
        value = match.group("id").upper()
        if value not in identifiers:
            identifiers.append(value)

    codes = []
    for pattern in (_TRACKING_CODE, _LICENSE_CODE):
        for match in pattern.finditer(text):
            if match.group(0) not in codes:
                codes.append(match.group(0))

    extracted = ExtractedEvidence(
        amounts=extract_amounts(text),
        dates=extract_dates(text),
        identifiers=identifiers,
        codes=codes,
        text=text,
    )
    logger.debug(
        f"🔎 EVIDENCE_EXTRACTED: amounts={len(extracted.amounts)} dates={len(extracted.dates)} "
        f"identifiers={len(identifiers)} codes={len(codes)}"
    )
    return extracted
