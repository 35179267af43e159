"""Run blocking worktree operations off the event loop."""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PendingOperation:
    """Handle for an in-flight task; ``token`` ties the result back to it."""

    token: int
    kind: str
    target: str = ""
    submitted_at: float = 0.0


@dataclass(frozen=True, slots=True)
class OperationResult:
    operation: PendingOperation
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BlockingOperationDispatcher:
    """Submit callables to a bounded worker pool and deliver results on the loop thread.

    ``sink`` is invoked from the event loop once per finished operation, in
    completion order. The dispatcher takes no lock of its own; operations on
    different worktrees may run concurrently.
    """

    def __init__(self, sink: Callable[[OperationResult], None], *, max_workers: int = 4) -> None:
        self._sink = sink
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="spec-tui-worker")
        self._tokens = itertools.count(1)
        self._in_flight: dict[int, PendingOperation] = {}
        self._closed = False

    @property
    def in_flight(self) -> list[PendingOperation]:
        return list(self._in_flight.values())

    def submit(self, kind: str, fn: Callable[..., Any], *args: Any, target: str = "", **kwargs: Any) -> PendingOperation:
        """Schedule ``fn(*args, **kwargs)`` on the pool; must be called from the running loop."""

        if self._closed:
            raise RuntimeError("Dispatcher has been shut down")

        loop = asyncio.get_running_loop()
        operation = PendingOperation(
            token=next(self._tokens),
            kind=kind,
            target=target,
            submitted_at=loop.time(),
        )
        self._in_flight[operation.token] = operation
        future = loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))
        future.add_done_callback(functools.partial(self._deliver, operation))
        logger.debug(
            "Submitted operation",
            extra={"token": operation.token, "kind": kind, "target": target},
        )
        return operation

    def _deliver(self, operation: PendingOperation, future: asyncio.Future) -> None:
        self._in_flight.pop(operation.token, None)
        if future.cancelled():
            logger.debug("Operation cancelled", extra={"token": operation.token, "kind": operation.kind})
            return

        error = future.exception()
        if error is not None:
            logger.debug(
                "Operation failed",
                extra={"token": operation.token, "kind": operation.kind, "error": str(error)},
            )
            self._sink(OperationResult(operation, error=error))
        else:
            self._sink(OperationResult(operation, value=future.result()))

    def shutdown(self, *, wait: bool = False) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)


__all__ = ["BlockingOperationDispatcher", "OperationResult", "PendingOperation"]
