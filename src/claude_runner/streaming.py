"""Pull-based prompt queue for feeding turns into a running agent call.

The consumer (the stdin writer of a streaming session) pulls one turn at a
time; the producer pushes follow-up turns while the call is in flight and
calls :meth:`StreamingPrompt.complete` when it has nothing more to say.

A pull on an empty, open queue stays pending until a turn is pushed or the
queue is completed.  It never resolves early, and once the queue is
completed no pull is ever left waiting.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

from claude_runner.protocol.models import user_turn

logger = logging.getLogger(__name__)

Turn = dict[str, Any]


def _as_turn(turn: str | Turn) -> Turn:
    if isinstance(turn, str):
        return user_turn(turn)
    return turn


class StreamingPrompt:
    """Single-producer, single-consumer async sequence of user turns."""

    def __init__(self, *initial_turns: str | Turn) -> None:
        self._turns: deque[Turn] = deque(_as_turn(t) for t in initial_turns)
        self._waiters: deque[asyncio.Future[Turn | None]] = deque()
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def pending(self) -> int:
        """Number of buffered turns not yet pulled."""
        return len(self._turns)

    @property
    def waiters(self) -> int:
        """Number of pulls currently blocked on the next turn."""
        return sum(1 for w in self._waiters if not w.done())

    def push(self, turn: str | Turn) -> None:
        """Enqueue a turn, handing it straight to a blocked pull if any."""
        if self._completed:
            logger.warning("Dropping turn pushed after the prompt was completed")
            return
        item = _as_turn(turn)
        while self._waiters:
            waiter = self._waiters.popleft()
            # A cancelled pull leaves a done future behind; skip it.
            if not waiter.done():
                waiter.set_result(item)
                return
        self._turns.append(item)

    def complete(self) -> None:
        """Signal that no more turns will be pushed.  Idempotent."""
        if self._completed:
            return
        self._completed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def pull(self) -> Turn | None:
        """Return the next turn, or ``None`` once the queue is exhausted."""
        if self._turns:
            return self._turns.popleft()
        if self._completed:
            return None
        waiter: asyncio.Future[Turn | None] = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled():
                # Handed a turn just as the pull was cancelled; keep it.
                turn = waiter.result()
                if turn is not None:
                    self._turns.appendleft(turn)
            raise

    def __aiter__(self) -> StreamingPrompt:
        return self

    async def __anext__(self) -> Turn:
        turn = await self.pull()
        if turn is None:
            raise StopAsyncIteration
        return turn
