from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Literal, Optional, overload

from runflow.services.cancellation import CancellationToken
from runflow.services.event_queue import ControlMessage, DataMessage, EventQueue

logger = logging.getLogger(__name__)


class StreamManager:
    """
    Registry of per-run Event Queues and Run Locks.

    Queues are created on demand and kept until the run has been terminal
    for `retention_seconds`, so late joiners can still drain them.
    A Run Lock (a CancellationToken) exists only while an executor owns the run.
    """

    def __init__(self, *, retention_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._queues: Dict[str, EventQueue] = {}
        self._controls: Dict[str, CancellationToken] = {}
        self._terminal_at: Dict[str, float] = {}
        self._retention = retention_seconds
        self._clock = clock

    # ----------------------------
    # Event queues
    # ----------------------------
    @overload
    def get_queue(self, run_id: str, *, if_not_found: Literal["create"] = "create") -> EventQueue: ...

    @overload
    def get_queue(self, run_id: str, *, if_not_found: Literal["ignore"]) -> Optional[EventQueue]: ...

    def get_queue(self, run_id: str, *, if_not_found: str = "create") -> Optional[EventQueue]:
        self.evict_expired()
        with self._lock:
            queue = self._queues.get(run_id)
            if queue is None and if_not_found == "create":
                queue = self._queues[run_id] = EventQueue()
            return queue

    def publish(self, run_id: str, channel: str, payload: Any) -> None:
        self.get_queue(run_id).push(DataMessage(channel=channel, payload=payload))

    def finish(self, run_id: str) -> None:
        """Signal `done` to the run's subscribers and start its retention window."""
        self.get_queue(run_id).push(ControlMessage("done"))
        self.mark_terminal(run_id)

    def mark_terminal(self, run_id: str) -> None:
        with self._lock:
            if run_id in self._queues:
                self._terminal_at.setdefault(run_id, self._clock())

    def evict_expired(self) -> list[str]:
        now = self._clock()
        with self._lock:
            expired = [
                run_id
                for run_id, ts in self._terminal_at.items()
                if now - ts >= self._retention and run_id not in self._controls
            ]
            for run_id in expired:
                self._terminal_at.pop(run_id, None)
                self._queues.pop(run_id, None)
        if expired:
            logger.debug(f"Evicted {len(expired)} stream queue(s)")
        return expired

    # ----------------------------
    # Run locks
    # ----------------------------
    def lock(self, run_id: str) -> CancellationToken:
        token = CancellationToken()
        with self._lock:
            if run_id in self._controls:
                logger.error(f"Run {run_id} was already locked; replacing its control token")
            self._controls[run_id] = token
            self._terminal_at.pop(run_id, None)
        return token

    def try_lock(self, run_id: str) -> Optional[CancellationToken]:
        """Atomic is_locked-then-lock. Returns None if another executor owns the run."""
        with self._lock:
            if run_id in self._controls:
                return None
            token = self._controls[run_id] = CancellationToken()
            self._terminal_at.pop(run_id, None)
            return token

    def unlock(self, run_id: str) -> None:
        with self._lock:
            self._controls.pop(run_id, None)

    def is_locked(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._controls

    def get_control(self, run_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._controls.get(run_id)

    def abort(self, run_id: str, reason: str) -> bool:
        control = self.get_control(run_id)
        if control is None:
            return False
        control.abort(reason)
        return True
