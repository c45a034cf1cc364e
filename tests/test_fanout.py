import asyncio

import pytest

from fanout import CompletionJoin, settle_all


def test_continuation_fires_once_after_reverse_order_completion_with_failure():
    completed = []
    fired = []

    async def operation(index):
        # Later operations finish first
        await asyncio.sleep((4 - index) * 0.01)
        completed.append(index)
        if index == 2:
            raise RuntimeError("stream query failed")
        return index * 10

    async def scenario():
        return await settle_all(
            [(index, operation(index)) for index in range(4)],
            continuation=lambda: fired.append(list(completed)),
        )

    results = asyncio.run(scenario())

    assert fired == [[3, 2, 1, 0]]
    assert set(results) == {0, 1, 2, 3}
    assert results[0].value == 0
    assert results[3].value == 30
    assert not results[2].ok
    assert isinstance(results[2].error, RuntimeError)


def test_settle_all_with_no_operations_returns_immediately():
    fired = []
    results = asyncio.run(settle_all([], continuation=lambda: fired.append(True)))
    assert results == {}
    assert fired == [True]


def test_failure_does_not_cancel_siblings():
    async def slow():
        await asyncio.sleep(0.02)
        return "done"

    async def broken():
        raise ValueError("bad")

    results = asyncio.run(settle_all([("slow", slow()), ("broken", broken())]))
    assert results["slow"].value == "done"
    assert isinstance(results["broken"].error, ValueError)


def test_completion_join_ignores_reports_after_firing():
    fired = []
    join = CompletionJoin(2, continuation=lambda: fired.append(True))
    join.settle()
    assert not join.fired
    join.settle()
    join.settle()
    assert join.fired
    assert join.count == 2
    assert fired == [True]


def test_completion_join_rejects_negative_total():
    with pytest.raises(ValueError):
        CompletionJoin(-1)
