from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from typing import TypeVar

T = TypeVar("T")


async def gather_settled(awaitables: Iterable[Awaitable[T]]) -> list[T | Exception]:
    """
    Await all awaitables concurrently and return their outcomes in input order.

    Every awaitable runs to completion, successfully or not, before this
    returns. Ordinary exceptions are returned in place of results; anything
    that is not an Exception (cancellation, KeyboardInterrupt) is re-raised.
    """
    outcomes = await asyncio.gather(*awaitables, return_exceptions=True)
    settled: list[T | Exception] = []
    for outcome in outcomes:
        if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
            raise outcome
        settled.append(outcome)
    return settled


def first_error(outcomes: Iterable[object]) -> Exception | None:
    """Return the first exception among settled outcomes, if any."""
    for outcome in outcomes:
        if isinstance(outcome, Exception):
            return outcome
    return None
