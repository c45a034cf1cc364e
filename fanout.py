"""Launch a known number of independent coroutines and join once all settle.

Each operation reports into a shared completion counter when it finishes,
whether it returned or raised.  The continuation runs exactly once, after
the last operation settles, and the caller gets one :class:`Settled` entry
per operation keyed by whatever key it supplied.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Optional, Tuple


@dataclass
class Settled:
    key: Hashable
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CompletionJoin:
    """Counts completions against a precomputed total."""

    def __init__(self, total: int, continuation: Optional[Callable[[], Any]] = None):
        if total < 0:
            raise ValueError("total must be >= 0")
        self.total = total
        self.count = 0
        self._continuation = continuation
        self._fired = False
        self._done = asyncio.Event()
        if total == 0:
            self._fire()

    @property
    def fired(self) -> bool:
        return self._fired

    def settle(self) -> None:
        if self.count >= self.total:
            logging.warning("Completion reported after join of %d already fired", self.total)
            return
        self.count += 1
        if self.count == self.total:
            self._fire()

    def _fire(self) -> None:
        if self._fired:
            return
        self._fired = True
        self._done.set()
        if self._continuation is not None:
            self._continuation()

    async def wait(self) -> None:
        await self._done.wait()


async def settle_all(
    operations: Iterable[Tuple[Hashable, Awaitable[Any]]],
    continuation: Optional[Callable[[], Any]] = None,
) -> Dict[Hashable, Settled]:
    """Run all ``(key, awaitable)`` pairs concurrently and wait for every one.

    Failures are captured in the returned :class:`Settled` entries and never
    cancel sibling operations.
    """
    pending = list(operations)
    results: Dict[Hashable, Settled] = {}
    join = CompletionJoin(len(pending), continuation)

    def _on_done(key, task):
        if task.cancelled():
            results[key] = Settled(key, error=asyncio.CancelledError())
        elif task.exception() is not None:
            results[key] = Settled(key, error=task.exception())
        else:
            results[key] = Settled(key, value=task.result())
        join.settle()

    tasks = []
    for key, awaitable in pending:
        task = asyncio.ensure_future(awaitable)
        task.add_done_callback(lambda t, key=key: _on_done(key, t))
        tasks.append(task)

    try:
        await join.wait()
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    return results
