"""
Fact Normalizer.

Collapses a RawExtraction into a strict Notice. Normalization never raises on
malformed input: the worst case is a notice with empty optional fields that
is flagged for manual review.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Tuple, Union

from src.core.models import (
    Category,
    Deadline,
    DeadlineKind,
    Notice,
    Penalty,
    utcnow,
)
from src.processing.notice_extractor import FieldGuess, RawExtraction, RawPenalty

logger = logging.getLogger(__name__)

# Operating locale writes day before month, so every day-month-year form is
# tried before the single month-day-year fallback.
DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%d %B %Y",
    "%d %b %Y",
    "%d-%b-%Y",
    "%d-%B-%Y",
    "%d %B, %Y",
    "%d %b, %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%Y/%m/%d",
    "%m/%d/%Y",
]

MIN_YEAR = 1990
MAX_YEAR = 2100

_ORDINAL_RE = re.compile(r'\b(\d{1,2})(?:st|nd|rd|th)\b', re.IGNORECASE)
_WEEKDAY_RE = re.compile(
    r'^(?:mon|tue|tues|wed|thu|thur|thurs|fri|sat|sun)(?:day|nesday|sday|urday)?,?\s+',
    re.IGNORECASE,
)
_DATE_TOKEN_RE = re.compile(
    r'\d{4}-\d{2}-\d{2}'
    r'|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}'
    r'|\d{1,2}(?:st|nd|rd|th)?[\s-]+[A-Za-z]{3,9},?[\s-]+\d{4}'
    r'|[A-Za-z]{3,9}\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}',
    re.IGNORECASE,
)

CURRENCY_LABELS = {
    "rs": "INR",
    "rs.": "INR",
    "inr": "INR",
    "₹": "INR",
    "rupees": "INR",
    "$": "USD",
    "usd": "USD",
    "eur": "EUR",
    "€": "EUR",
    "£": "GBP",
    "gbp": "GBP",
}

_SCALE_WORDS = {"lakh": 100_000, "lakhs": 100_000, "crore": 10_000_000, "crores": 10_000_000}

_AMOUNT_RE = re.compile(
    r'(?P<prefix>(?<![a-z])(?:rs\.?|inr|usd|eur|gbp)|[₹$€£])?\s*'
    r'(?P<number>(?:\d{1,3}(?:,\d{2,3})+|\d{1,3}(?: \d{2,3})* \d{3}(?!\d)|\d+)(?:\.\d+)?)'
    r'(?:\s*(?P<scale>lakhs?|crores?))?'
    r'(?:\s*(?P<suffix>inr|usd|eur|gbp|rupees)\b)?',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class NotIdentified:
    """The message is not a compliance notice; no Notice is created."""
    reason: str = "not a compliance notice"


@dataclass(frozen=True)
class ParsedAmount:
    value: float
    currency: Optional[str]


def _clean_date_text(text: str) -> str:
    cleaned = " ".join(str(text).split()).strip().rstrip(".")
    cleaned = _WEEKDAY_RE.sub("", cleaned)
    return _ORDINAL_RE.sub(r"\1", cleaned)


def _parse_exact(text: str) -> Optional[date]:
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        if MIN_YEAR <= parsed.year <= MAX_YEAR:
            return parsed
        return None
    return None


def parse_date(value: object) -> Optional[date]:
    """
    Parse a free-form date against the prioritized regional formats.

    When the whole string is not a date, a single embedded date token is
    accepted; several distinct embedded dates are ambiguous and rejected.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = _clean_date_text(str(value))
    if not text:
        return None

    parsed = _parse_exact(text)
    if parsed:
        return parsed

    candidates = set()
    for token in _DATE_TOKEN_RE.findall(str(value)):
        token_date = _parse_exact(_clean_date_text(token))
        if token_date:
            candidates.add(token_date)
    if len(candidates) == 1:
        return candidates.pop()
    return None


def normalize_date(value: object) -> Optional[str]:
    """Canonical YYYY-MM-DD form, or None when the date is not confidently parseable."""
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def find_amounts(text: str) -> List[ParsedAmount]:
    """All monetary amounts in `text`, with the currency label when one is attached."""
    amounts = []
    for match in _AMOUNT_RE.finditer(text or ""):
        number = match.group("number")
        try:
            value = float(number.replace(",", "").replace(" ", ""))
        except ValueError:
            continue
        scale = match.group("scale")
        if scale:
            value *= _SCALE_WORDS[scale.lower()]
        label = match.group("prefix") or match.group("suffix")
        currency = CURRENCY_LABELS.get(label.lower()) if label else None
        amounts.append(ParsedAmount(value=value, currency=currency))
    return amounts


def parse_penalty_amount(text: str, require_label: bool = True) -> Tuple[Optional[float], Optional[str]]:
    """
    Pick the single penalty amount in `text`.

    When any amount carries a currency label, only labelled amounts count.
    More than one distinct candidate, or none, leaves the amount unset.
    """
    amounts = find_amounts(text)
    labelled = [a for a in amounts if a.currency]
    if labelled:
        candidates = labelled
    elif require_label:
        return None, None
    else:
        candidates = amounts

    distinct = {a.value for a in candidates}
    if len(distinct) != 1:
        return None, None
    chosen = candidates[0]
    return chosen.value, chosen.currency


class FactNormalizer:
    """Turns raw extraction guesses into canonical Notice drafts."""

    def __init__(self, default_currency: str = "INR"):
        self.default_currency = default_currency

    def normalize(
        self,
        raw: RawExtraction,
        user_id: str,
        source_message_id: str,
        now: Optional[datetime] = None,
    ) -> Union[Notice, NotIdentified]:
        if raw is None or not raw.is_compliance_notice:
            logger.info(f"Message {source_message_id} is not a compliance notice")
            return NotIdentified()

        now = now or utcnow()
        deadlines = self._normalize_deadlines(raw)
        notice = Notice(
            user_id=user_id,
            source_message_id=source_message_id,
            category=self._normalize_category(raw.category),
            issuing_authority=raw.issuing_authority.text()[:200],
            reference_number=raw.reference_number.text()[:100],
            subject=raw.subject.text()[:500],
            deadlines=deadlines,
            penalty=self._normalize_penalty(raw.penalty),
            required_actions=self._normalize_actions(raw.required_actions),
            needs_manual_review=not deadlines,
            created_at=now,
            updated_at=now,
        )

        if notice.needs_manual_review:
            logger.warning(
                f"No usable deadline for message {source_message_id}; notice {notice.notice_id} "
                f"flagged for manual review"
            )
        return notice

    def _normalize_category(self, guess: FieldGuess) -> Category:
        value = guess.text()
        for category in Category:
            if category.value.lower() == value.lower():
                return category
        return Category.OTHER

    def _normalize_kind(self, guess: FieldGuess) -> DeadlineKind:
        value = guess.text().lower()
        for kind in DeadlineKind:
            if kind.value == value:
                return kind
        return DeadlineKind.RESPONSE

    def _normalize_deadlines(self, raw: RawExtraction) -> List[Deadline]:
        seen = set()
        deadlines = []
        for entry in raw.deadlines:
            if not entry.date.usable:
                logger.debug(f"Dropping deadline with {entry.date.status.value} date: {entry.date.value!r}")
                continue
            parsed = parse_date(entry.date.value)
            if parsed is None:
                logger.info(f"Dropping unparseable deadline date: {entry.date.value!r}")
                continue
            kind = self._normalize_kind(entry.kind)
            if (parsed, kind) in seen:
                continue
            seen.add((parsed, kind))
            deadlines.append(Deadline(
                date=parsed,
                kind=kind,
                description=entry.description.text()[:500],
            ))
        deadlines.sort(key=lambda d: d.date)
        return deadlines

    def _normalize_penalty(self, raw: Optional[RawPenalty]) -> Optional[Penalty]:
        if raw is None:
            return None

        amount, currency = None, None
        if raw.amount.usable:
            if isinstance(raw.amount.value, (int, float)) and not isinstance(raw.amount.value, bool):
                amount = float(raw.amount.value)
            else:
                # The amount field is already isolated, so a bare number is acceptable
                amount, currency = parse_penalty_amount(str(raw.amount.value), require_label=False)
        if amount is None and raw.text.usable:
            amount, currency = parse_penalty_amount(raw.text.text())

        if amount is not None and amount < 0:
            amount = None

        if raw.currency.usable:
            label = raw.currency.text()
            currency = CURRENCY_LABELS.get(label.lower(), label.upper()[:3])
        if amount is not None and currency is None:
            currency = self.default_currency

        description = raw.description.text() or raw.text.text()
        if amount is None and not description:
            return None
        return Penalty(amount=amount, currency=currency, description=description[:500])

    def _normalize_actions(self, actions: List[str]) -> List[str]:
        seen = set()
        normalized = []
        for action in actions:
            text = " ".join(str(action).split())[:500]
            if text and text.lower() not in seen:
                seen.add(text.lower())
                normalized.append(text)
        return normalized
