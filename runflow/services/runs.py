from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Iterable, Optional

from runflow.core.auth import Authorizer, Filters, is_auth_matching
from runflow.core.errors import Cancelled, Conflict, NotFound
from runflow.persistence.base import Store, Transaction
from runflow.persistence.checkpointer import CheckpointStore
from runflow.persistence.models import (
    CancelAction,
    IfNotExists,
    MultitaskStrategy,
    Run,
    RunStatus,
    Thread,
)
from runflow.services.cancellation import CancellationToken
from runflow.services.event_queue import ControlMessage, StreamEvent
from runflow.services.stream_manager import StreamManager
from runflow.services.thread_status import ThreadStatusProjector
from runflow.utils.ids import new_run_id, new_thread_id
from runflow.utils.merge import configurable_of, first_non_null, merge_configs, merge_dicts

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RunClaim:
    """A run owned by the caller until the dequeue generator resumes."""

    run: Run
    attempt: int
    control: CancellationToken


class Runs:
    """
    Run lifecycle: submission, dequeue, cancellation, streaming join.

    Every state change goes through one Store transaction; the Stream
    Manager carries the in-process side (event queues, run locks).
    """

    def __init__(
        self,
        store: Store,
        streams: StreamManager,
        *,
        checkpoints: Optional[CheckpointStore] = None,
        projector: Optional[ThreadStatusProjector] = None,
        authorizer: Optional[Authorizer] = None,
        poll_timeout: float = 0.5,
    ) -> None:
        self._store = store
        self._streams = streams
        self._checkpoints = checkpoints
        self._projector = projector or ThreadStatusProjector()
        self._auth = authorizer or Authorizer()
        self._poll_timeout = poll_timeout
        # thread_id -> run_id of the run currently claimed on it
        self._active_threads: dict[str, str] = {}

    # ----------------------------
    # Submission
    # ----------------------------
    async def put(
        self,
        assistant_id: str,
        kwargs: Optional[dict[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: RunStatus = "pending",
        metadata: Optional[dict[str, Any]] = None,
        prevent_insert_if_inflight: bool = False,
        multitask_strategy: MultitaskStrategy = "reject",
        if_not_exists: IfNotExists = "reject",
        after_seconds: float = 0,
        ctx: Optional[dict] = None,
    ) -> list[Run]:
        """
        Insert a run, creating or claiming its thread, in one transaction.

        Returns [new_run, *inflight], or just the in-flight runs when
        `prevent_insert_if_inflight` short-circuits, or [] when the thread
        was requested by id, is absent, and `if_not_exists` is "reject".
        """
        run_id = run_id or new_run_id()
        kwargs = dict(kwargs or {})
        request_config = kwargs.get("config") or {}
        payload: dict[str, Any] = {
            "run_id": run_id,
            "thread_id": thread_id,
            "assistant_id": assistant_id,
            "metadata": dict(metadata or {}),
            "kwargs": kwargs,
            "multitask_strategy": multitask_strategy,
            "if_not_exists": if_not_exists,
            "after_seconds": after_seconds,
        }
        filters = await self._auth.handle_event(ctx, "create_run", payload)
        metadata = payload["metadata"]
        now = _now()

        async with self._store.transaction() as tx:
            assistant = await tx.get_assistant(assistant_id)
            if assistant is None:
                raise NotFound(f"Assistant {assistant_id} not found")
            identity = {"graph_id": assistant["graph_id"], "assistant_id": assistant_id}

            thread = await tx.get_thread(thread_id) if thread_id else None
            if thread is not None and not is_auth_matching(thread["metadata"], filters):
                return []

            if thread is None:
                if thread_id is not None and if_not_exists != "create":
                    return []
                thread = await tx.insert_thread(
                    {
                        "thread_id": thread_id or new_thread_id(),
                        "status": "busy",
                        "metadata": merge_dicts(identity, request_config.get("metadata"), metadata),
                        "config": merge_configs(assistant["config"], request_config),
                        "values": None,
                        "interrupts": {},
                        "error": None,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                logger.info(f"Created thread {thread['thread_id']} for assistant {assistant_id}")
            elif thread["status"] != "busy":
                # the previous run's error belongs to that run, not to this one
                updated = await tx.update_thread(
                    thread["thread_id"],
                    status="busy",
                    metadata=merge_dicts(thread["metadata"], identity),
                    config=merge_configs(assistant["config"], thread["config"], request_config),
                    error=None,
                )
                if updated is None:
                    raise NotFound(f"Thread {thread['thread_id']} not found")
                thread = updated
            thread_id = thread["thread_id"]

            inflight = await tx.pending_runs(thread_id)
            if prevent_insert_if_inflight and inflight:
                logger.info(f"Thread {thread_id} already has {len(inflight)} in-flight run(s); not inserting")
                return inflight

            configurable = configurable_of(request_config)
            computed = {
                "run_id": run_id,
                "thread_id": thread_id,
                "graph_id": assistant["graph_id"],
                "assistant_id": assistant_id,
                "user_id": first_non_null(
                    configurable.get("user_id"),
                    configurable_of(thread["config"]).get("user_id"),
                    configurable_of(assistant["config"]).get("user_id"),
                    user_id,
                ),
            }
            run_metadata = merge_dicts(assistant["metadata"], thread["metadata"], metadata)
            run_config = merge_configs(
                assistant["config"],
                thread["config"],
                request_config,
                {"configurable": computed, "metadata": run_metadata},
            )

            run = await tx.insert_run(
                {
                    "run_id": run_id,
                    "thread_id": thread_id,
                    "assistant_id": assistant_id,
                    "status": status,
                    "metadata": run_metadata,
                    "kwargs": {**kwargs, "config": run_config},
                    "multitask_strategy": multitask_strategy,
                    "created_at": now + timedelta(seconds=after_seconds),
                    "updated_at": now,
                }
            )

        logger.info(f"Created run {run_id} on thread {thread_id} (strategy={multitask_strategy})")
        return [run, *inflight]

    async def create(
        self,
        assistant_id: str,
        kwargs: Optional[dict[str, Any]] = None,
        *,
        thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        multitask_strategy: MultitaskStrategy = "reject",
        if_not_exists: IfNotExists = "reject",
        after_seconds: float = 0,
        ctx: Optional[dict] = None,
    ) -> Run:
        """`put` plus the multitask policy against runs already in flight on the thread."""
        run_id = new_run_id()
        runs = await self.put(
            assistant_id,
            kwargs,
            run_id=run_id,
            thread_id=thread_id,
            user_id=user_id,
            metadata=metadata,
            prevent_insert_if_inflight=multitask_strategy == "reject",
            multitask_strategy=multitask_strategy,
            if_not_exists=if_not_exists,
            after_seconds=after_seconds,
            ctx=ctx,
        )
        if not runs:
            raise NotFound(f"Thread {thread_id} not found")

        first, *inflight = runs
        if first["run_id"] != run_id:
            raise Conflict(
                "Thread is already running a task. Wait for it to finish or choose a different multitask strategy.",
                details={"thread_id": first["thread_id"], "run_ids": [r["run_id"] for r in runs]},
            )

        if inflight and multitask_strategy in ("interrupt", "rollback"):
            try:
                await self.cancel(
                    [r["run_id"] for r in inflight],
                    thread_id=first["thread_id"],
                    action=multitask_strategy,  # type: ignore[arg-type]
                    ctx=ctx,
                )
            except NotFound:
                logger.info(f"In-flight runs on thread {first['thread_id']} finished before they could be cancelled")
        return first

    # ----------------------------
    # Dequeue
    # ----------------------------
    async def next(self, *, limit: Optional[int] = None) -> AsyncIterator[RunClaim]:
        """
        Claim runs that are due, oldest first.

        Each yielded run stays locked until the consumer hands control back
        to this generator; the lock is released in `finally` even if the
        consumer raises. At most one run per thread is claimed at a time.
        """
        async with self._store.transaction() as tx:
            candidates = await tx.claimable_runs(_now())
            missing = {
                thread_id
                for thread_id in {r["thread_id"] for r in candidates}
                if await tx.get_thread(thread_id) is None
            }

        claimed = 0
        for candidate in candidates:
            if limit is not None and claimed >= limit:
                return
            run_id, thread_id = candidate["run_id"], candidate["thread_id"]
            if thread_id in missing:
                logger.warning(f"Run {run_id} is pending but its thread {thread_id} does not exist")
                continue
            if thread_id in self._active_threads:
                continue
            control = self._streams.try_lock(run_id)
            if control is None:
                continue
            self._active_threads[thread_id] = run_id

            try:
                async with self._store.transaction() as tx:
                    run = await tx.get_run(run_id)
                    if run is None or run["status"] != "pending":
                        continue
                    attempt = await tx.increment_attempt(run_id)
                claimed += 1
                logger.info(f"Claimed run {run_id} (attempt {attempt})")
                yield RunClaim(run=run, attempt=attempt, control=control)
            finally:
                self._streams.unlock(run_id)
                if self._active_threads.get(thread_id) == run_id:
                    del self._active_threads[thread_id]
                logger.debug(f"Released run {run_id}")

    # ----------------------------
    # Cancellation
    # ----------------------------
    async def cancel(
        self,
        run_ids: Iterable[str],
        *,
        thread_id: Optional[str] = None,
        action: CancelAction = "interrupt",
        ctx: Optional[dict] = None,
    ) -> None:
        run_ids = list(dict.fromkeys(run_ids))
        filters = await self._auth.handle_event(
            ctx, "update", {"thread_id": thread_id, "run_ids": run_ids, "action": action}
        )

        to_delete: list[Run] = []
        to_signal: list[str] = []
        async with self._store.transaction() as tx:
            runs: list[Run] = []
            for run_id in run_ids:
                run = await tx.get_run(run_id)
                if run is None or (thread_id is not None and run["thread_id"] != thread_id):
                    continue
                if await self._visible_thread(tx, run["thread_id"], filters) is None:
                    continue
                runs.append(run)
            if len(runs) < len(run_ids):
                raise NotFound(f"Found {len(runs)} of {len(run_ids)} runs to cancel")

            for run in runs:
                run_id = run["run_id"]
                locked = self._streams.is_locked(run_id)
                if run["status"] != "pending":
                    logger.warning(f"Attempted to cancel run {run_id} with status {run['status']!r}")
                elif locked or action != "rollback":
                    await tx.set_run_status(run_id, "interrupted")
                    await self._projector.refresh(tx, run["thread_id"])
                else:
                    to_delete.append(run)
                if locked:
                    to_signal.append(run_id)

        for run_id in to_signal:
            self._streams.abort(run_id, action)
        for run in to_delete:
            logger.info(f"Eagerly deleting unclaimed run {run['run_id']} on rollback")
            await self._purge(run)
        logger.info(f"Cancelled {len(run_ids)} run(s) with action={action}")

    # ----------------------------
    # Reads and maintenance
    # ----------------------------
    async def get(self, run_id: str, *, thread_id: Optional[str] = None, ctx: Optional[dict] = None) -> Run:
        filters = await self._auth.handle_event(ctx, "read", {"run_id": run_id, "thread_id": thread_id})
        async with self._store.transaction() as tx:
            run = await self._visible_run(tx, run_id, thread_id, filters)
        if run is None:
            raise NotFound(f"Run {run_id} not found")
        return run

    async def search(
        self,
        thread_id: str,
        *,
        limit: int = 10,
        offset: int = 0,
        status: Optional[RunStatus] = None,
        metadata: Optional[dict[str, Any]] = None,
        ctx: Optional[dict] = None,
    ) -> tuple[list[Run], int]:
        """Runs of a thread, newest first, with the exact total before pagination."""
        filters = await self._auth.handle_event(
            ctx, "search", {"thread_id": thread_id, "status": status, "metadata": metadata}
        )
        async with self._store.transaction() as tx:
            if await self._visible_thread(tx, thread_id, filters) is None:
                return [], 0
            rows = await tx.list_runs(thread_id, status=status, metadata=metadata)
        return rows[offset : offset + limit], len(rows)

    async def delete(self, run_id: str, *, thread_id: Optional[str] = None, ctx: Optional[dict] = None) -> str:
        filters = await self._auth.handle_event(ctx, "delete", {"run_id": run_id, "thread_id": thread_id})
        async with self._store.transaction() as tx:
            run = await self._visible_run(tx, run_id, thread_id, filters)
        if run is None:
            raise NotFound(f"Run {run_id} not found")
        await self._purge(run)
        return run_id

    async def set_status(self, run_id: str, status: RunStatus) -> Optional[Run]:
        async with self._store.transaction() as tx:
            return await tx.set_run_status(run_id, status)

    async def _purge(self, run: Run) -> None:
        async with self._store.transaction() as tx:
            await tx.delete_run(run["run_id"])
            await self._projector.refresh(tx, run["thread_id"])
        if self._checkpoints is not None:
            await self._checkpoints.delete(run["thread_id"], run["run_id"])
        self._streams.mark_terminal(run["run_id"])

    async def _visible_thread(self, tx: Transaction, thread_id: str, filters: Optional[Filters]) -> Optional[Thread]:
        thread = await tx.get_thread(thread_id)
        if thread is None or not is_auth_matching(thread["metadata"], filters):
            return None
        return thread

    async def _visible_run(
        self,
        tx: Transaction,
        run_id: str,
        thread_id: Optional[str],
        filters: Optional[Filters],
    ) -> Optional[Run]:
        run = await tx.get_run(run_id)
        if run is None or (thread_id is not None and run["thread_id"] != thread_id):
            return None
        if await self._visible_thread(tx, run["thread_id"], filters) is None:
            return None
        return run

    # ----------------------------
    # Streaming
    # ----------------------------
    async def join(
        self,
        run_id: str,
        *,
        thread_id: Optional[str] = None,
        ignore_404: bool = False,
        disconnect: Optional[CancellationToken] = None,
        ctx: Optional[dict] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a run's events until `done`, until the run is found gone or
        terminal by the liveness probe, or until `disconnect` fires. A
        disconnect with a thread id cancels the run (interrupt).
        """
        filters = await self._auth.handle_event(ctx, "read", {"run_id": run_id, "thread_id": thread_id})
        queue = self._streams.get_queue(run_id)
        finished = False
        try:
            while True:
                try:
                    message = await queue.get(timeout=self._poll_timeout, cancel=disconnect)
                except TimeoutError:
                    async with self._store.transaction() as tx:
                        run = await self._visible_run(tx, run_id, thread_id, filters)
                    if run is None:
                        finished = True
                        if not ignore_404:
                            yield StreamEvent("error", {"error": "NotFound", "message": f"Run {run_id} not found"})
                        return
                    if run["status"] != "pending":
                        finished = True
                        return
                    continue
                except Cancelled:
                    logger.info(f"Subscriber of run {run_id} disconnected")
                    # an executing run's queue is released when the run finishes
                    finished = not self._streams.is_locked(run_id)
                    if thread_id is not None:
                        try:
                            await self.cancel([run_id], thread_id=thread_id, action="interrupt", ctx=ctx)
                        except NotFound:
                            logger.debug(f"Run {run_id} was gone before it could be cancelled on disconnect")
                    return

                if isinstance(message, ControlMessage):
                    finished = True
                    return
                yield StreamEvent(message.channel, message.payload)
        finally:
            if finished:
                self._streams.mark_terminal(run_id)

    async def wait(
        self,
        run_id: str,
        *,
        thread_id: Optional[str] = None,
        disconnect: Optional[CancellationToken] = None,
        ctx: Optional[dict] = None,
    ) -> Any:
        """
        Drain `join` and return the last `values` payload, or
        {"__error__": ...} if the stream ended on an error. Falls back to
        the thread's stored values when the stream carried none.
        """
        last: Any = None
        seen = False
        async for event in self.join(run_id, thread_id=thread_id, disconnect=disconnect, ctx=ctx):
            if event.event == "values":
                last, seen = event.data, True
            elif event.event == "error":
                last, seen = {"__error__": event.data}, True
        if seen:
            return last

        async with self._store.transaction() as tx:
            run = await tx.get_run(run_id)
            thread = await tx.get_thread(run["thread_id"]) if run is not None else None
        return thread["values"] if thread is not None else None
