from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")


async def run_in_batches(
    thunks: Sequence[Callable[[], Awaitable[T]]],
    *,
    limit: int,
    on_result: Callable[[int, T], None] | None = None,
) -> list[T]:
    """
    Run `thunks` with at most `limit` in flight, one batch at a time.

    Each batch is awaited in full before the next one starts. Results come back in
    submission order. If any task in a batch raises, its siblings still run to
    completion, the first error (in submission order) is re-raised and no further
    batch is started.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    results: list[T] = []
    for offset in range(0, len(thunks), limit):
        batch = thunks[offset : offset + limit]
        outcomes = await asyncio.gather(*(thunk() for thunk in batch), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        for idx, outcome in enumerate(outcomes):
            results.append(outcome)
            if on_result is not None:
                on_result(offset + idx, outcome)
    return results
