from __future__ import annotations

import logging
from typing import Any, Optional

from langgraph.types import StateSnapshot

from runflow.core.errors import NotFound, UserInterrupt, UserRollback
from runflow.persistence.base import Transaction
from runflow.persistence.models import CheckpointPayload, Thread, ThreadStatus
from runflow.utils.encoding import safe_encode

logger = logging.getLogger(__name__)


def project_status(
    *,
    has_pending_runs: bool,
    checkpoint: Optional[CheckpointPayload],
    exception: Optional[BaseException],
) -> ThreadStatus:
    """error > interrupted > busy > idle. User cancellation is not an error."""
    if exception is not None and not isinstance(exception, (UserInterrupt, UserRollback)):
        return "error"
    if checkpoint is not None and checkpoint["next"]:
        return "interrupted"
    if has_pending_runs:
        return "busy"
    return "idle"


def project_interrupts(checkpoint: Optional[CheckpointPayload]) -> dict[str, Any]:
    if checkpoint is None:
        return {}
    return {t["id"]: t["interrupts"] for t in checkpoint["tasks"] if t.get("interrupts")}


def error_payload(exception: Optional[BaseException]) -> Optional[dict]:
    if exception is None or isinstance(exception, (UserInterrupt, UserRollback)):
        return None
    return {"error": type(exception).__name__, "message": str(exception)}


def checkpoint_from_snapshot(snapshot: Optional[StateSnapshot]) -> Optional[CheckpointPayload]:
    """
    Flatten a LangGraph StateSnapshot into the JSON-safe shape the projector stores.
    A snapshot without created_at means the thread has no checkpoint yet.
    """
    if snapshot is None or snapshot.created_at is None:
        return None
    return {
        "values": safe_encode(snapshot.values),
        "next": list(snapshot.next),
        "tasks": [
            {
                "id": task.id,
                "name": task.name,
                "interrupts": safe_encode(list(task.interrupts)),
            }
            for task in snapshot.tasks
        ],
    }


class ThreadStatusProjector:
    """Recomputes Thread.status / values / interrupts; never set by clients."""

    async def apply(
        self,
        tx: Transaction,
        thread_id: str,
        checkpoint: Optional[CheckpointPayload],
        exception: Optional[BaseException] = None,
    ) -> Thread:
        if await tx.get_thread(thread_id) is None:
            raise NotFound(f"Thread {thread_id} not found")

        pending = await tx.pending_runs(thread_id)
        status = project_status(has_pending_runs=bool(pending), checkpoint=checkpoint, exception=exception)
        thread = await tx.update_thread(
            thread_id,
            status=status,
            values=checkpoint["values"] if checkpoint is not None else None,
            interrupts=project_interrupts(checkpoint),
            error=error_payload(exception),
        )
        if thread is None:
            raise NotFound(f"Thread {thread_id} not found")
        logger.debug(f"Thread {thread_id} -> {status}")
        return thread

    async def refresh(self, tx: Transaction, thread_id: str) -> Optional[Thread]:
        """
        Recompute status from what is already persisted, after runs were
        removed or cancelled without a new checkpoint.
        """
        thread = await tx.get_thread(thread_id)
        if thread is None:
            return None
        pending = await tx.pending_runs(thread_id)
        if thread.get("error"):
            status: ThreadStatus = "error"
        elif thread.get("interrupts"):
            status = "interrupted"
        elif pending:
            status = "busy"
        else:
            status = "idle"
        if status == thread["status"]:
            return thread
        return await tx.update_thread(thread_id, status=status)
