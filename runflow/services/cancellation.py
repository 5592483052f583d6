from __future__ import annotations

import asyncio
from typing import Optional

from runflow.core.errors import Cancelled, cancellation_error


class CancellationToken:
    """
    Cooperative cancellation signal with a reason ("interrupt" | "rollback").
    Firing it is a message: every observer (queue waiter, graph executor)
    reacts on its own.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: str = "interrupt") -> None:
        # first reason wins
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> Optional[str]:
        await self._event.wait()
        return self._reason

    def exception(self) -> Cancelled:
        return cancellation_error(self._reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.exception()
