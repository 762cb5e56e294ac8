"""Tests for the settle-all concurrency helper."""

import asyncio

import pytest

from iam_reconciler.concurrency import first_error, gather_settled


async def succeed(value: int) -> int:
    await asyncio.sleep(0)
    return value


async def fail(message: str) -> int:
    await asyncio.sleep(0)
    raise ValueError(message)


class TestGatherSettled:
    """Tests for gather_settled."""

    @pytest.mark.asyncio
    async def test_outcomes_in_input_order(self) -> None:
        outcomes = await gather_settled([succeed(1), fail("boom"), succeed(3)])

        assert outcomes[0] == 1
        assert isinstance(outcomes[1], ValueError)
        assert outcomes[2] == 3

    @pytest.mark.asyncio
    async def test_failures_do_not_cancel_siblings(self) -> None:
        finished: list[str] = []

        async def slow() -> None:
            for _ in range(5):
                await asyncio.sleep(0)
            finished.append("slow")

        await gather_settled([fail("early"), slow()])

        assert finished == ["slow"]

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        assert await gather_settled([]) == []

    @pytest.mark.asyncio
    async def test_cancellation_is_reraised(self) -> None:
        async def cancelled() -> None:
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await gather_settled([cancelled()])


class TestFirstError:
    """Tests for first_error."""

    def test_returns_first_exception(self) -> None:
        first, second = ValueError("a"), KeyError("b")
        assert first_error([1, first, second]) is first

    def test_none_without_errors(self) -> None:
        assert first_error([1, 2]) is None
