from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from tfl_expenses.modules.extraction.models import TravelEntry
from tfl_expenses.modules.extraction.parsers.dates import MONTH_NAMES, month_number, safe_date

_ISO_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_DAY_MONTH_YEAR_RE = re.compile(rf"(\d{{1,2}})\s+({MONTH_NAMES})\w*\s+(\d{{4}})", re.I)
_WEEKDAY_NAMES = (
    r"Mon(?:day)?|Tue(?:s|sday)?|Wed(?:nesday)?|Thu(?:rs|rsday)?|Fri(?:day)?"
    r"|Sat(?:urday)?|Sun(?:day)?"
)
_WEEKDAY_RE = re.compile(
    rf"\b(?:{_WEEKDAY_NAMES})\.?,?\s+(\d{{1,2}})\s+({MONTH_NAMES})\w*(?:\s+(\d{{4}}))?",
    re.I,
)

_EXCLUDE_RE = re.compile(
    r"cap|capped|daily cap|weekly cap|total|payment|auto\s*top\s*up|refund|credit|adjustment",
    re.I,
)
_AMOUNT_RE = re.compile(r"£?\s*(\d+\.\d{2})\b")
_WS_RE = re.compile(r"\s+")


def parse_journeys_heuristically(text: str, *, today: date | None = None) -> list[TravelEntry]:
    """
    Recover journey charges from raw statement text.

    Statements print a date once, followed by the journeys of that day. Every
    journey line inherits the most recent date header above it; lines seen before
    the first header are skipped. Cap/total/top-up style lines are never journeys.
    """
    today = today or date.today()
    current_date: date | None = None
    out: list[TravelEntry] = []

    for raw in (text or "").splitlines():
        line = _WS_RE.sub(" ", raw).strip()
        if not line:
            continue

        header = _match_date_header(line, today=today)
        if header is not None:
            current_date = header
            continue

        if _EXCLUDE_RE.search(line):
            continue

        m = _AMOUNT_RE.search(line)
        if not m or current_date is None:
            continue
        try:
            amount = Decimal(m.group(1))
        except InvalidOperation:
            continue
        if amount.is_finite() and amount > 0:
            out.append(TravelEntry(date=current_date, amount=amount))

    return out


def _match_date_header(line: str, *, today: date) -> date | None:
    m = _ISO_RE.search(line)
    if m:
        d = safe_date(m.group(1), m.group(2), m.group(3))
        if d:
            return d

    m = _DAY_MONTH_YEAR_RE.search(line)
    if m:
        d = safe_date(m.group(3), month_number(m.group(2)), m.group(1))
        if d:
            return d

    m = _WEEKDAY_RE.search(line)
    if m:
        year = m.group(3) or today.year
        return safe_date(year, month_number(m.group(2)), m.group(1))

    return None
