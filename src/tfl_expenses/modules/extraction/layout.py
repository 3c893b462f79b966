from __future__ import annotations

import re
from collections.abc import Iterable

from tfl_expenses.modules.extraction.models import PositionedToken

_WS_RE = re.compile(r"\s+")


def reconstruct_lines(
    tokens: Iterable[PositionedToken], *, y_tolerance: float = 2.0
) -> list[str]:
    """
    Rebuild visual text lines from positioned tokens.

    Tokens whose `y` is within `y_tolerance` of a line's first token belong to that
    line. PDF coordinates grow upwards, so lines are emitted by descending `y`.
    """
    lines: list[tuple[float, list[PositionedToken]]] = []
    for token in tokens:
        for anchor_y, parts in lines:
            if abs(anchor_y - token.y) <= y_tolerance:
                parts.append(token)
                break
        else:
            lines.append((token.y, [token]))

    lines.sort(key=lambda line: line[0], reverse=True)
    out: list[str] = []
    for _, parts in lines:
        parts.sort(key=lambda t: t.x)
        text = _WS_RE.sub(" ", " ".join(p.text for p in parts)).strip()
        if text:
            out.append(text)
    return out


def page_tokens(page) -> list[PositionedToken]:
    """Collect positioned text runs from a pypdf page."""
    tokens: list[PositionedToken] = []

    def _visit(text, cm, tm, _font_dict, _font_size) -> None:
        if not text or not text.strip():
            return
        # text space -> user space
        x = tm[4] * cm[0] + tm[5] * cm[2] + cm[4]
        y = tm[4] * cm[1] + tm[5] * cm[3] + cm[5]
        tokens.append(PositionedToken(x=float(x), y=float(y), text=text))

    page.extract_text(visitor_text=_visit)
    return tokens
