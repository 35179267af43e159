from __future__ import annotations

import asyncio
import threading
import time

import pytest

from spec_tui.worktrees import BlockingOperationDispatcher, OperationResult


def explode() -> None:
    raise ValueError("boom")


def test_results_are_delivered_on_the_loop_thread() -> None:
    async def scenario():
        results: list[OperationResult] = []
        threads: list[int] = []
        finished = asyncio.Event()

        def sink(result: OperationResult) -> None:
            results.append(result)
            threads.append(threading.get_ident())
            if len(results) == 2:
                finished.set()

        dispatcher = BlockingOperationDispatcher(sink, max_workers=2)
        added = dispatcher.submit("add", lambda a, b: a + b, 1, 2, target="numbers")
        failed = dispatcher.submit("explode", explode)
        in_flight = {operation.token for operation in dispatcher.in_flight}
        await asyncio.wait_for(finished.wait(), timeout=5)
        remaining = dispatcher.in_flight
        dispatcher.shutdown(wait=True)
        return results, threads, threading.get_ident(), added, failed, in_flight, remaining

    results, threads, loop_thread, added, failed, in_flight, remaining = asyncio.run(scenario())

    assert in_flight == {added.token, failed.token}
    assert remaining == []
    assert set(threads) == {loop_thread}
    by_token = {result.operation.token: result for result in results}
    assert by_token[added.token].ok
    assert by_token[added.token].value == 3
    assert by_token[added.token].operation.target == "numbers"
    assert not by_token[failed.token].ok
    assert isinstance(by_token[failed.token].error, ValueError)


def test_blocking_work_does_not_stall_the_loop() -> None:
    async def scenario():
        done = asyncio.Event()
        dispatcher = BlockingOperationDispatcher(lambda result: done.set(), max_workers=1)
        dispatcher.submit("sleep", time.sleep, 0.3)
        ticks = 0
        while not done.is_set():
            await asyncio.sleep(0.01)
            ticks += 1
        dispatcher.shutdown()
        return ticks

    assert asyncio.run(scenario()) >= 5


def test_submit_after_shutdown_is_rejected() -> None:
    dispatcher = BlockingOperationDispatcher(lambda result: None)
    dispatcher.shutdown()

    with pytest.raises(RuntimeError):
        dispatcher.submit("noop", lambda: None)
