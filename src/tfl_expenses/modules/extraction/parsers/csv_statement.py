from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from tfl_expenses.modules.extraction.models import TravelEntry
from tfl_expenses.modules.extraction.parsers.dates import MONTH_NAMES, month_number, safe_date

_HEADER_DATE_RE = re.compile(r"date|journey|day")
_HEADER_AMOUNT_RE = re.compile(r"amount|total|charge|cost")

# commas outside double quotes, semicolons, tabs
_SPLIT_RE = re.compile(r',(?=(?:[^"]*"[^"]*")*[^"]*$)|;|\t')

_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_NUMERIC_DMY_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})$")
_NAMED_MONTH_RE = re.compile(rf"^(\d{{1,2}})[ -]({MONTH_NAMES})\w*[ -](\d{{4}})$", re.I)

_AMOUNT_RE = re.compile(r"-?\s*£?\s*(\d+(?:\.\d{2})?)\s*$")


def parse_statement_csv(text: str) -> list[TravelEntry]:
    rows = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    if not rows:
        return []

    header = rows[0].lower()
    has_header = bool(_HEADER_DATE_RE.search(header) and _HEADER_AMOUNT_RE.search(header))

    out: list[TravelEntry] = []
    for row in rows[1 if has_header else 0 :]:
        cols = [_clean_field(c) for c in _SPLIT_RE.split(row)]
        if len(cols) < 2:
            continue
        d = parse_statement_date(cols[0])
        if d is None:
            continue
        amount = _find_amount(cols[1:])
        if amount is None:
            continue
        out.append(TravelEntry(date=d, amount=amount))
    return out


def parse_statement_date(value: str) -> date | None:
    s = (value or "").strip()

    m = _ISO_RE.match(s)
    if m:
        return safe_date(m.group(1), m.group(2), m.group(3))

    m = _NUMERIC_DMY_RE.match(s)
    if m:
        year = m.group(3)
        if len(year) == 2:
            year = "20" + year
        return safe_date(year, m.group(2), m.group(1))

    m = _NAMED_MONTH_RE.match(s)
    if m:
        return safe_date(m.group(3), month_number(m.group(2)), m.group(1))

    return None


def _clean_field(value: str) -> str:
    s = value.strip()
    if s.startswith('"'):
        s = s[1:]
    if s.endswith('"'):
        s = s[:-1]
    return s.strip()


def _find_amount(cols: list[str]) -> Decimal | None:
    for col in reversed(cols):
        m = _AMOUNT_RE.search(col)
        if not m:
            continue
        try:
            amount = Decimal(m.group(1))
        except InvalidOperation:
            return None
        if amount > 0:
            return amount
        return None
    return None
