from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from runflow.persistence.base import Store, Transaction, is_metadata_contained
from runflow.persistence.models import Assistant, Run, RunStatus, Thread

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTransaction(Transaction):
    """Operates directly on the store's tables; the store snapshots them for rollback."""

    def __init__(self, tables: dict[str, dict]) -> None:
        self._t = tables

    async def get_assistant(self, assistant_id: str) -> Optional[Assistant]:
        row = self._t["assistants"].get(assistant_id)
        return copy.deepcopy(row) if row else None

    async def put_assistant(self, assistant: Assistant) -> Assistant:
        existing = self._t["assistants"].get(assistant["assistant_id"])
        if existing:
            return copy.deepcopy(existing)
        self._t["assistants"][assistant["assistant_id"]] = copy.deepcopy(assistant)
        return copy.deepcopy(assistant)

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        row = self._t["threads"].get(thread_id)
        return copy.deepcopy(row) if row else None

    async def insert_thread(self, thread: Thread) -> Thread:
        if thread["thread_id"] in self._t["threads"]:
            raise ValueError(f"Thread {thread['thread_id']} already exists")
        self._t["threads"][thread["thread_id"]] = copy.deepcopy(thread)
        return copy.deepcopy(thread)

    async def update_thread(self, thread_id: str, **fields: Any) -> Optional[Thread]:
        row = self._t["threads"].get(thread_id)
        if row is None:
            return None
        row.update(copy.deepcopy(fields))
        row["updated_at"] = _now()
        return copy.deepcopy(row)

    async def delete_thread(self, thread_id: str) -> bool:
        if self._t["threads"].pop(thread_id, None) is None:
            return False
        for run_id in [rid for rid, r in self._t["runs"].items() if r["thread_id"] == thread_id]:
            del self._t["runs"][run_id]
            self._t["attempts"].pop(run_id, None)
        return True

    async def get_run(self, run_id: str) -> Optional[Run]:
        row = self._t["runs"].get(run_id)
        return copy.deepcopy(row) if row else None

    async def insert_run(self, run: Run) -> Run:
        if run["thread_id"] not in self._t["threads"]:
            raise ValueError(f"Thread {run['thread_id']} does not exist")
        if run["run_id"] in self._t["runs"]:
            raise ValueError(f"Run {run['run_id']} already exists")
        self._t["runs"][run["run_id"]] = copy.deepcopy(run)
        return copy.deepcopy(run)

    async def set_run_status(self, run_id: str, status: RunStatus) -> Optional[Run]:
        row = self._t["runs"].get(run_id)
        if row is None or row["status"] != "pending":
            return None
        row["status"] = status
        row["updated_at"] = _now()
        return copy.deepcopy(row)

    async def delete_run(self, run_id: str) -> bool:
        self._t["attempts"].pop(run_id, None)
        return self._t["runs"].pop(run_id, None) is not None

    async def list_runs(
        self,
        thread_id: str,
        *,
        status: Optional[RunStatus] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> list[Run]:
        rows = [
            r
            for r in self._t["runs"].values()
            if r["thread_id"] == thread_id
            and (status is None or r["status"] == status)
            and is_metadata_contained(r["metadata"], metadata)
        ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return copy.deepcopy(rows)

    async def pending_runs(self, thread_id: str) -> list[Run]:
        rows = [r for r in self._t["runs"].values() if r["thread_id"] == thread_id and r["status"] == "pending"]
        rows.sort(key=lambda r: r["created_at"])
        return copy.deepcopy(rows)

    async def claimable_runs(self, now: datetime) -> list[Run]:
        rows = [r for r in self._t["runs"].values() if r["status"] == "pending" and r["created_at"] <= now]
        rows.sort(key=lambda r: r["created_at"])
        return copy.deepcopy(rows)

    async def increment_attempt(self, run_id: str) -> int:
        attempt = self._t["attempts"].get(run_id, 0) + 1
        self._t["attempts"][run_id] = attempt
        return attempt


class MemoryStore(Store):
    """
    Dict-backed store for local development and tests.
    Transactions are serialised with one asyncio.Lock; a deep copy of the
    tables taken at BEGIN is restored on ROLLBACK. Transactions don't nest.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict] = {"assistants": {}, "threads": {}, "runs": {}, "attempts": {}}
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield MemoryTransaction(self._tables)
            except BaseException:
                logger.debug("Rolling back in-memory transaction")
                self._tables.clear()
                self._tables.update(snapshot)
                raise
