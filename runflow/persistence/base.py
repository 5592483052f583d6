from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional

from runflow.persistence.models import Assistant, Run, RunStatus, Thread


class Transaction(abc.ABC):
    """
    Row-level operations inside one BEGIN/COMMIT boundary.
    Reads and writes are optimistic: no row locks beyond the isolation level.
    """

    # assistants
    @abc.abstractmethod
    async def get_assistant(self, assistant_id: str) -> Optional[Assistant]: ...

    @abc.abstractmethod
    async def put_assistant(self, assistant: Assistant) -> Assistant:
        """Insert, or return the existing row if the id is taken."""

    # threads
    @abc.abstractmethod
    async def get_thread(self, thread_id: str) -> Optional[Thread]: ...

    @abc.abstractmethod
    async def insert_thread(self, thread: Thread) -> Thread: ...

    @abc.abstractmethod
    async def update_thread(self, thread_id: str, **fields: Any) -> Optional[Thread]: ...

    @abc.abstractmethod
    async def delete_thread(self, thread_id: str) -> bool:
        """Delete the thread and, by cascade, its runs."""

    # runs
    @abc.abstractmethod
    async def get_run(self, run_id: str) -> Optional[Run]: ...

    @abc.abstractmethod
    async def insert_run(self, run: Run) -> Run: ...

    @abc.abstractmethod
    async def set_run_status(self, run_id: str, status: RunStatus) -> Optional[Run]:
        """Move a `pending` run to `status`. Returns None if the run is absent or already terminal."""

    @abc.abstractmethod
    async def delete_run(self, run_id: str) -> bool: ...

    @abc.abstractmethod
    async def list_runs(
        self,
        thread_id: str,
        *,
        status: Optional[RunStatus] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> list[Run]:
        """Runs of a thread, newest first, with status and metadata-containment filters."""

    @abc.abstractmethod
    async def pending_runs(self, thread_id: str) -> list[Run]: ...

    @abc.abstractmethod
    async def claimable_runs(self, now: datetime) -> list[Run]:
        """Pending runs with created_at <= now, oldest first."""

    @abc.abstractmethod
    async def increment_attempt(self, run_id: str) -> int:
        """Bump and return the persistent attempt counter (1 on first claim)."""


class Store(abc.ABC):
    @abc.abstractmethod
    async def setup(self) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    @abc.abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        """BEGIN on enter, COMMIT on clean exit, ROLLBACK and re-raise on error."""


def is_metadata_contained(superset: dict | None, subset: dict | None) -> bool:
    """Python equivalent of jsonb `@>` for flat/nested dicts."""
    if not subset:
        return True
    superset = superset or {}
    for key, value in subset.items():
        if key not in superset:
            return False
        if isinstance(value, dict) and isinstance(superset[key], dict):
            if not is_metadata_contained(superset[key], value):
                return False
        elif superset[key] != value:
            return False
    return True
