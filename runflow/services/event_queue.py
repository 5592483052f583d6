from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Literal, NamedTuple, Optional, Union

from runflow.services.cancellation import CancellationToken


@dataclass(frozen=True)
class DataMessage:
    channel: str  # "values" | "updates" | "custom" | "error" | ...
    payload: Any


@dataclass(frozen=True)
class ControlMessage:
    signal: Literal["done"] = "done"


Message = Union[DataMessage, ControlMessage]


class StreamEvent(NamedTuple):
    event: str
    data: Any


class EventQueue:
    """
    Per-run FIFO mailbox. `get` returns immediately when something is
    buffered, otherwise suspends until a push, the timeout, or the
    cancellation token, whichever comes first. Each push wakes one waiter.
    """

    def __init__(self) -> None:
        self._buffer: deque[Message] = deque()
        self._waiters: deque[asyncio.Future] = deque()

    def __len__(self) -> int:
        return len(self._buffer)

    def push(self, message: Message) -> None:
        self._buffer.append(message)
        self._wake_next()

    def _wake_next(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    async def get(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> Message:
        if self._buffer:
            return self._buffer.popleft()
        if cancel is not None:
            cancel.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        cancel_task = loop.create_task(cancel.wait()) if cancel is not None else None

        try:
            while True:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("Timed out waiting for a stream message")

                waiter = loop.create_future()
                self._waiters.append(waiter)
                try:
                    pending = {waiter} if cancel_task is None else {waiter, cancel_task}
                    done, _ = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    woken = waiter.done() and not waiter.cancelled()
                    if not waiter.done():
                        waiter.cancel()
                    try:
                        self._waiters.remove(waiter)
                    except ValueError:
                        pass

                if self._buffer and woken:
                    return self._buffer.popleft()
                if cancel_task is not None and cancel_task in done:
                    raise cancel.exception()  # type: ignore[union-attr]
                if not done:
                    raise TimeoutError("Timed out waiting for a stream message")
                # woken, but another reader drained the buffer first: keep waiting
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()
