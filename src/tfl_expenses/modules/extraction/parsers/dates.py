from __future__ import annotations

from datetime import date

MONTH_NAMES = r"Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec"

_MONTHS: dict[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}


def month_number(name: str) -> int | None:
    return _MONTHS.get((name or "")[:3].lower())


def safe_date(year: int | str, month: int | str | None, day: int | str) -> date | None:
    if month is None:
        return None
    try:
        return date(int(year), int(month), int(day))
    except (TypeError, ValueError):
        return None
