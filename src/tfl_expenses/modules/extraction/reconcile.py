from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from functools import reduce

from tfl_expenses.modules.extraction.models import TravelEntry


def merge_entries_by_max_count(
    a: Sequence[TravelEntry], b: Sequence[TravelEntry]
) -> list[TravelEntry]:
    """
    Merge two extraction passes over the same material.

    For each (date, amount) key the result holds as many entries as the pass that
    saw that key most often. Passes are expected to miss journeys independently,
    not to invent the same duplicate, so max (not sum) keeps counts honest.
    """
    count_a = Counter(e.key for e in a)
    count_b = Counter(e.key for e in b)

    out: list[TravelEntry] = []
    for key in dict.fromkeys([*count_a, *count_b]):
        d, amount = key
        n = max(count_a[key], count_b[key])
        out.extend(TravelEntry(date=d, amount=amount) for _ in range(n))
    return out


def merge_passes(passes: Iterable[Sequence[TravelEntry]]) -> list[TravelEntry]:
    return reduce(merge_entries_by_max_count, passes, [])
