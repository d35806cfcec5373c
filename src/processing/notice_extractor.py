"""
Notice Extractor for inbound regulatory messages.
Uses the LLM to produce a raw structured guess about a message, modelled as
a tagged variant so every field says whether it was found, missing, or
extracted with low confidence.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CATEGORY_NAMES = ["Tax", "Labor", "Environmental", "Corporate", "Trade", "Other"]
DEADLINE_KINDS = ["filing", "payment", "submission", "response"]

EXTRACTION_PROMPT = """You are an expert compliance analyst. Read the message below, which was found in a business inbox, and decide whether it is a regulatory or statutory compliance notice. If it is, extract the structured facts.

## WHAT COUNTS AS A COMPLIANCE NOTICE:
- Tax demands, return filing reminders, assessment orders
- Labor and payroll statutory notices (provident fund, insurance, wages)
- Environmental consent, pollution control and waste notices
- Corporate registry filings, annual returns, director KYC
- Customs, import/export and trade licence notices
Marketing mail, newsletters and invoices are NOT compliance notices.

## FIELDS:
1. **is_compliance_notice**: true or false
2. **category**: one of {categories}
3. **issuing_authority**: the body that issued the notice
4. **reference_number**: notice, case or form reference
5. **subject**: one line summary
6. **deadlines**: every date obligation. For each:
   - **date**: copy the date exactly as written in the text, do not reformat it
   - **kind**: one of {kinds}
   - **description**: what must happen by that date
   - **confidence**: 0.0 to 1.0
7. **penalty**: if a penalty, late fee or interest is stated:
   - **text**: the penalty clause, quoted
   - **amount**: the amount exactly as written, including currency
   - **description**: one line summary
8. **required_actions**: list of actions the recipient must take

Any scalar field may instead be given as {{"value": ..., "confidence": 0.0-1.0}} when you are unsure.

## MESSAGE:
{message_text}

## OUTPUT FORMAT:
Return ONLY a valid JSON object. No explanations, no markdown, no additional text.

{{
  "is_compliance_notice": true,
  "category": "Tax",
  "issuing_authority": "Goods and Services Tax Network",
  "reference_number": "ZA2704240012345",
  "subject": "GSTR-3B return for March 2024",
  "deadlines": [
    {{"date": "20/04/2024", "kind": "filing", "description": "File GSTR-3B for March 2024", "confidence": 0.95}}
  ],
  "penalty": {{"text": "late fee of Rs. 50/day", "amount": "Rs. 50", "description": "Late fee per day of delay"}},
  "required_actions": ["File GSTR-3B return", "Pay tax liability"]
}}

JSON Output:"""


class ExtractionResponseError(ValueError):
    """The extraction service answered with something that is not a JSON object."""


class FieldStatus(str, Enum):
    PRESENT = "present"
    MISSING = "missing"
    LOW_CONFIDENCE = "low_confidence"


@dataclass(frozen=True)
class FieldGuess:
    """One extracted field with an explicit confidence branch."""
    status: FieldStatus
    value: Any = None
    confidence: Optional[float] = None

    @classmethod
    def present(cls, value: Any, confidence: Optional[float] = None) -> "FieldGuess":
        return cls(FieldStatus.PRESENT, value, confidence)

    @classmethod
    def missing(cls) -> "FieldGuess":
        return cls(FieldStatus.MISSING)

    @classmethod
    def low_confidence(cls, value: Any, confidence: Optional[float] = None) -> "FieldGuess":
        return cls(FieldStatus.LOW_CONFIDENCE, value, confidence)

    @property
    def usable(self) -> bool:
        return self.status == FieldStatus.PRESENT

    def text(self, default: str = "") -> str:
        return str(self.value).strip() if self.usable else default


@dataclass
class RawDeadline:
    date: FieldGuess
    kind: FieldGuess = field(default_factory=FieldGuess.missing)
    description: FieldGuess = field(default_factory=FieldGuess.missing)


@dataclass
class RawPenalty:
    text: FieldGuess = field(default_factory=FieldGuess.missing)
    amount: FieldGuess = field(default_factory=FieldGuess.missing)
    currency: FieldGuess = field(default_factory=FieldGuess.missing)
    description: FieldGuess = field(default_factory=FieldGuess.missing)


@dataclass
class RawExtraction:
    """Loosely typed extraction result, before normalization."""
    is_compliance_notice: bool = True
    category: FieldGuess = field(default_factory=FieldGuess.missing)
    issuing_authority: FieldGuess = field(default_factory=FieldGuess.missing)
    reference_number: FieldGuess = field(default_factory=FieldGuess.missing)
    subject: FieldGuess = field(default_factory=FieldGuess.missing)
    deadlines: List[RawDeadline] = field(default_factory=list)
    penalty: Optional[RawPenalty] = None
    required_actions: List[str] = field(default_factory=list)

    @classmethod
    def not_a_notice(cls) -> "RawExtraction":
        return cls(is_compliance_notice=False)

    @classmethod
    def from_payload(cls, payload: Any, min_confidence: float = 0.5) -> "RawExtraction":
        """
        Collapse an arbitrary decoded JSON payload into the tagged variant.
        Never raises: anything unrecognised becomes a missing field.
        """
        if not isinstance(payload, dict):
            return cls()

        if _is_explicit_false(payload.get("is_compliance_notice")):
            return cls.not_a_notice()

        def guess(key: str) -> FieldGuess:
            return _to_guess(payload.get(key), min_confidence)

        deadlines = []
        raw_deadlines = payload.get("deadlines")
        if isinstance(raw_deadlines, list):
            for entry in raw_deadlines:
                if isinstance(entry, dict):
                    confidence = _as_confidence(entry.get("confidence"))
                    date_guess = _to_guess(entry.get("date"), min_confidence, confidence)
                    deadlines.append(RawDeadline(
                        date=date_guess,
                        kind=_to_guess(entry.get("kind"), min_confidence),
                        description=_to_guess(entry.get("description"), min_confidence),
                    ))
                elif isinstance(entry, str):
                    deadlines.append(RawDeadline(date=_to_guess(entry, min_confidence)))

        penalty = None
        raw_penalty = payload.get("penalty")
        if isinstance(raw_penalty, dict):
            penalty = RawPenalty(
                text=_to_guess(raw_penalty.get("text"), min_confidence),
                amount=_to_guess(raw_penalty.get("amount"), min_confidence),
                currency=_to_guess(raw_penalty.get("currency"), min_confidence),
                description=_to_guess(raw_penalty.get("description"), min_confidence),
            )
        elif isinstance(raw_penalty, (str, int, float)) and str(raw_penalty).strip():
            penalty = RawPenalty(text=FieldGuess.present(str(raw_penalty)))

        actions = payload.get("required_actions")
        if isinstance(actions, str):
            actions = [actions]
        required_actions = [
            str(a).strip() for a in actions if str(a).strip()
        ] if isinstance(actions, list) else []

        return cls(
            is_compliance_notice=True,
            category=guess("category"),
            issuing_authority=guess("issuing_authority"),
            reference_number=guess("reference_number"),
            subject=guess("subject"),
            deadlines=deadlines,
            penalty=penalty,
            required_actions=required_actions,
        )


def _is_explicit_false(value: Any) -> bool:
    if isinstance(value, bool):
        return value is False
    if isinstance(value, str):
        return value.strip().lower() in ("false", "no", "0")
    return False


def _as_confidence(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_guess(raw: Any, min_confidence: float, confidence: Optional[float] = None) -> FieldGuess:
    value = raw
    if isinstance(raw, dict) and "value" in raw:
        value = raw.get("value")
        confidence = _as_confidence(raw.get("confidence"))

    if value is None or (isinstance(value, str) and not value.strip()) or isinstance(value, (list, dict)):
        return FieldGuess.missing()
    if confidence is not None and confidence < min_confidence:
        return FieldGuess.low_confidence(value, confidence)
    return FieldGuess.present(value, confidence)


class NoticeExtractor:
    """Extracts a raw structured guess from message text using the LLM."""

    def __init__(self, llm_client, min_confidence: float = 0.5, max_input_chars: int = 15000):
        """
        Initialize the notice extractor.

        Args:
            llm_client: LiteLLM client instance for LLM calls
            min_confidence: Field confidence below which a value is treated as low confidence
            max_input_chars: Message text is truncated to this many characters
        """
        self.llm_client = llm_client
        self.min_confidence = min_confidence
        self.max_input_chars = max_input_chars
        logger.info("NoticeExtractor initialized")

    def extract(self, message_text: str, message_id: str = "") -> RawExtraction:
        """
        Extract a raw notice guess from message text.

        Errors from the LLM call propagate so the resilience layer can retry them.

        Raises:
            ExtractionResponseError: if the response holds no JSON object
        """
        text_for_analysis = message_text[:self.max_input_chars]

        prompt = EXTRACTION_PROMPT.format(
            categories=", ".join(CATEGORY_NAMES),
            kinds=", ".join(DEADLINE_KINDS),
            message_text=text_for_analysis,
        )

        response = self.llm_client.generate(prompt=prompt)
        payload = self._parse_llm_response(response)
        extraction = RawExtraction.from_payload(payload, self.min_confidence)

        logger.info(
            f"Extraction for message {message_id}: notice={extraction.is_compliance_notice}, "
            f"{len(extraction.deadlines)} deadline candidates"
        )
        return extraction

    def _parse_llm_response(self, response: str) -> Dict[str, Any]:
        """Parse LLM response to extract the JSON object."""
        json_match = re.search(r'\{[\s\S]*\}', response or "")
        if not json_match:
            raise ExtractionResponseError("No JSON object in extraction response")
        try:
            payload = json.loads(json_match.group())
        except json.JSONDecodeError as e:
            raise ExtractionResponseError(f"Failed to parse extraction response as JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ExtractionResponseError("Extraction response is not a JSON object")
        return payload
