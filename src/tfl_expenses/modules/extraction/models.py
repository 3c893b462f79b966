from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

PassMethod = Literal["ai", "heuristic", "csv"]

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class TravelEntry:
    date: date
    amount: Decimal

    @property
    def key(self) -> tuple[date, Decimal]:
        return self.date, self.amount.quantize(_CENT, rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict:
        return {"date": self.date.isoformat(), "amount": float(self.key[1])}


@dataclass(frozen=True)
class PositionedToken:
    x: float
    y: float
    text: str


@dataclass(frozen=True)
class PageText:
    number: int
    lines: tuple[str, ...]

    @classmethod
    def from_text(cls, number: int, text: str) -> PageText:
        lines = tuple(ln.strip() for ln in (text or "").splitlines() if ln.strip())
        return cls(number=number, lines=lines)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass(frozen=True)
class DocumentChunk:
    index: int
    pages: tuple[PageText, ...]

    @property
    def text(self) -> str:
        return "\n\n".join(page.text for page in self.pages)

    @property
    def page_numbers(self) -> tuple[int, ...]:
        return tuple(page.number for page in self.pages)


@dataclass(frozen=True)
class ExtractionPass:
    method: PassMethod
    scope: str
    entries: tuple[TravelEntry, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class StatementFile:
    name: str
    body: bytes
    content_type: str | None = None
