from __future__ import annotations

import enum
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from tfl_expenses.modules.extraction.errors import MalformedExtractionError
from tfl_expenses.modules.extraction.models import TravelEntry

_CENT = Decimal("0.01")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MalformedReason(str, enum.Enum):
    UNPARSEABLE_JSON = "unparseable_json"
    MISSING_EXPENSES = "missing_expenses"


_REASON_MESSAGES: dict[MalformedReason, str] = {
    MalformedReason.UNPARSEABLE_JSON: (
        "The AI model returned a response in an unexpected format. "
        "Please try a different document or check the file quality."
    ),
    MalformedReason.MISSING_EXPENSES: (
        "The AI model was unable to find any valid expense data in the document."
    ),
}

UNUSABLE_DATA_MESSAGE = (
    "The AI model found some data, but none of it was in the correct format "
    "(e.g., YYYY-MM-DD for dates)."
)


@dataclass(frozen=True)
class ValidExtraction:
    entries: tuple[TravelEntry, ...]
    raw_count: int

    @property
    def dropped(self) -> int:
        return self.raw_count - len(self.entries)


@dataclass(frozen=True)
class MalformedExtraction:
    reason: MalformedReason

    @property
    def message(self) -> str:
        return _REASON_MESSAGES[self.reason]


ExtractionResult = ValidExtraction | MalformedExtraction


def validate_extraction(content: Any) -> ExtractionResult:
    """
    Check model output against `{"expenses": [{"date", "amount"}, ...]}`.

    Strings are decoded as JSON first. Elements with a bad date or amount are
    dropped, never repaired.
    """
    obj = _parse_json_object(content) if isinstance(content, (str, bytes)) else content
    if obj is None:
        return MalformedExtraction(MalformedReason.UNPARSEABLE_JSON)
    if not isinstance(obj, dict) or not isinstance(obj.get("expenses"), list):
        return MalformedExtraction(MalformedReason.MISSING_EXPENSES)

    raw = obj["expenses"]
    entries: list[TravelEntry] = []
    for item in raw:
        entry = _validate_item(item)
        if entry is not None:
            entries.append(entry)
    return ValidExtraction(entries=tuple(entries), raw_count=len(raw))


def require_document_extraction(result: ExtractionResult) -> ValidExtraction:
    if isinstance(result, MalformedExtraction):
        raise MalformedExtractionError(result.message)
    return result


def ensure_usable(entries: Sequence[TravelEntry], *, raw_count: int) -> None:
    if not entries and raw_count > 0:
        raise MalformedExtractionError(UNUSABLE_DATA_MESSAGE)


def _validate_item(item: Any) -> TravelEntry | None:
    if not isinstance(item, dict):
        return None
    raw_date = item.get("date")
    raw_amount = item.get("amount")
    if not isinstance(raw_date, str) or not _ISO_DATE_RE.match(raw_date):
        return None
    # bool is an int subclass
    if isinstance(raw_amount, bool) or not isinstance(raw_amount, (int, float)):
        return None
    # ints of any size and nan/inf floats all convert; finiteness is checked after
    amount = Decimal(raw_amount) if isinstance(raw_amount, int) else Decimal(str(raw_amount))
    if not amount.is_finite() or amount <= 0:
        return None
    try:
        amount.quantize(_CENT)
    except InvalidOperation:
        # too many digits to hold at penny precision
        return None
    try:
        d = date.fromisoformat(raw_date)
    except ValueError:
        return None
    return TravelEntry(date=d, amount=amount)


def _parse_json_object(content: str | bytes) -> Any:
    c = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
    c = (c or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None
