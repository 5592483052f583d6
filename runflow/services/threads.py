from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from langgraph.pregel import Pregel
from langgraph.store.base import BaseStore
from langgraph.types import StateSnapshot

from runflow.core.auth import Authorizer, is_auth_matching
from runflow.core.errors import BadRequest, Conflict, NotFound
from runflow.graphs.registry import GraphRegistry
from runflow.persistence.base import Store, Transaction
from runflow.persistence.checkpointer import CheckpointerManager, CheckpointStore
from runflow.persistence.models import CheckpointPayload, RunStatus, Thread
from runflow.services.stream_manager import StreamManager
from runflow.services.thread_status import ThreadStatusProjector, checkpoint_from_snapshot
from runflow.utils.encoding import safe_encode
from runflow.utils.ids import new_thread_id
from runflow.utils.merge import merge_configs, merge_dicts

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def state_payload(snapshot: Optional[StateSnapshot]) -> dict[str, Any]:
    """JSON-safe view of a StateSnapshot for the HTTP and MCP surfaces."""
    if snapshot is None or snapshot.created_at is None:
        return {"values": {}, "next": [], "tasks": [], "checkpoint": None, "metadata": None, "created_at": None}
    parent = (snapshot.parent_config or {}).get("configurable")
    return {
        "values": safe_encode(snapshot.values),
        "next": list(snapshot.next),
        "tasks": [
            {
                "id": task.id,
                "name": task.name,
                "error": str(task.error) if task.error is not None else None,
                "interrupts": safe_encode(list(task.interrupts)),
            }
            for task in snapshot.tasks
        ],
        "checkpoint": safe_encode((snapshot.config or {}).get("configurable")),
        "parent_checkpoint": safe_encode(parent),
        "metadata": safe_encode(snapshot.metadata),
        "created_at": snapshot.created_at,
    }


class Threads:
    """Thread rows plus the graph-engine state behind them."""

    def __init__(
        self,
        store: Store,
        streams: StreamManager,
        graphs: GraphRegistry,
        checkpointer: CheckpointerManager,
        checkpoints: CheckpointStore,
        *,
        projector: Optional[ThreadStatusProjector] = None,
        authorizer: Optional[Authorizer] = None,
        graph_store: Optional[BaseStore] = None,
    ) -> None:
        self._store = store
        self._streams = streams
        self._graphs = graphs
        self._checkpointer = checkpointer
        self._checkpoints = checkpoints
        self._projector = projector or ThreadStatusProjector()
        self._auth = authorizer or Authorizer()
        self._graph_store = graph_store

    async def _visible(self, tx: Transaction, thread_id: str, filters: Optional[dict]) -> Thread:
        thread = await tx.get_thread(thread_id)
        if thread is None or not is_auth_matching(thread["metadata"], filters):
            raise NotFound(f"Thread {thread_id} not found")
        return thread

    async def _read(self, thread_id: str, action: str, ctx: Optional[dict]) -> Thread:
        filters = await self._auth.handle_event(ctx, action, {"thread_id": thread_id})
        async with self._store.transaction() as tx:
            return await self._visible(tx, thread_id, filters)

    async def _graph_for(self, thread: Thread) -> tuple[Pregel, dict]:
        graph_id = (thread["metadata"] or {}).get("graph_id")
        if not graph_id:
            raise BadRequest(f"Thread {thread['thread_id']} has no graph_id")
        config = merge_configs(thread["config"], {"configurable": {"thread_id": thread["thread_id"]}})
        graph = await self._graphs.get(
            graph_id,
            config,
            checkpointer=self._checkpointer.get(),
            store=self._graph_store,
        )
        return graph, config

    # ----------------------------
    # Rows
    # ----------------------------
    async def create(
        self,
        *,
        thread_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        if_exists: Literal["raise", "do_nothing"] = "raise",
        ctx: Optional[dict] = None,
    ) -> Thread:
        payload: dict[str, Any] = {"thread_id": thread_id, "metadata": dict(metadata or {}), "if_exists": if_exists}
        filters = await self._auth.handle_event(ctx, "create", payload)
        thread_id = thread_id or new_thread_id()
        now = _now()
        async with self._store.transaction() as tx:
            existing = await tx.get_thread(thread_id)
            if existing is not None:
                if if_exists == "do_nothing" and is_auth_matching(existing["metadata"], filters):
                    return existing
                raise Conflict(f"Thread {thread_id} already exists")
            thread = await tx.insert_thread(
                {
                    "thread_id": thread_id,
                    "status": "idle",
                    "metadata": payload["metadata"],
                    "config": {},
                    "values": None,
                    "interrupts": {},
                    "error": None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        logger.info(f"Created thread {thread_id}")
        return thread

    async def get(self, thread_id: str, *, ctx: Optional[dict] = None) -> Thread:
        return await self._read(thread_id, "read", ctx)

    async def delete(self, thread_id: str, *, ctx: Optional[dict] = None) -> str:
        """Delete the thread, its runs and checkpoints; live runs are rolled back."""
        filters = await self._auth.handle_event(ctx, "delete", {"thread_id": thread_id})
        async with self._store.transaction() as tx:
            await self._visible(tx, thread_id, filters)
            runs = await tx.list_runs(thread_id)
            await tx.delete_thread(thread_id)

        for run in runs:
            if self._streams.abort(run["run_id"], "rollback"):
                logger.info(f"Aborted live run {run['run_id']} of deleted thread {thread_id}")
            self._streams.mark_terminal(run["run_id"])
        await self._checkpoints.delete(thread_id)
        logger.info(f"Deleted thread {thread_id} ({len(runs)} run(s))")
        return thread_id

    async def copy(self, thread_id: str, *, ctx: Optional[dict] = None) -> Thread:
        filters = await self._auth.handle_event(ctx, "read", {"thread_id": thread_id})
        new_id = new_thread_id()
        now = _now()
        async with self._store.transaction() as tx:
            source = await self._visible(tx, thread_id, filters)
            await tx.insert_thread(
                {
                    "thread_id": new_id,
                    "status": "idle",
                    "metadata": merge_dicts(source["metadata"]),
                    "config": merge_dicts(source["config"]),
                    "values": source["values"],
                    "interrupts": merge_dicts(source["interrupts"]),
                    "error": source["error"],
                    "created_at": now,
                    "updated_at": now,
                }
            )
            thread = await self._projector.refresh(tx, new_id)
            if thread is None:
                raise NotFound(f"Thread {new_id} not found")

        await self._checkpoints.copy(thread_id, new_id)
        logger.info(f"Copied thread {thread_id} -> {new_id}")
        return thread

    # ----------------------------
    # Graph state
    # ----------------------------
    async def get_state(self, thread_id: str, *, subgraphs: bool = False, ctx: Optional[dict] = None) -> dict[str, Any]:
        thread = await self._read(thread_id, "read", ctx)
        if not (thread["metadata"] or {}).get("graph_id"):
            return state_payload(None)
        graph, config = await self._graph_for(thread)
        return state_payload(await graph.aget_state(config, subgraphs=subgraphs))

    async def update_state(
        self,
        thread_id: str,
        values: Any,
        *,
        as_node: Optional[str] = None,
        ctx: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Write `values` as if produced by `as_node`, then re-project the thread."""
        thread = await self._read(thread_id, "update", ctx)
        if thread["status"] == "busy":
            raise Conflict(f"Thread {thread_id} is busy with a run", details={"thread_id": thread_id})
        graph, config = await self._graph_for(thread)

        next_config = await graph.aupdate_state(config, values, as_node=as_node)
        snapshot = await graph.aget_state(config)
        await self.set_status(thread_id, checkpoint_from_snapshot(snapshot))
        return {"checkpoint": safe_encode(next_config["configurable"])}

    async def get_history(
        self,
        thread_id: str,
        *,
        limit: int = 10,
        before: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        ctx: Optional[dict] = None,
    ) -> list[dict[str, Any]]:
        thread = await self._read(thread_id, "read", ctx)
        if not (thread["metadata"] or {}).get("graph_id"):
            return []
        graph, config = await self._graph_for(thread)
        before_config = {"configurable": {"checkpoint_id": before}} if before else None
        return [
            state_payload(snapshot)
            async for snapshot in graph.aget_state_history(config, filter=metadata, before=before_config, limit=limit)
        ]

    # ----------------------------
    # Status projection
    # ----------------------------
    async def set_status(
        self,
        thread_id: str,
        checkpoint: Optional[CheckpointPayload],
        exception: Optional[BaseException] = None,
    ) -> Thread:
        async with self._store.transaction() as tx:
            return await self._projector.apply(tx, thread_id, checkpoint, exception)

    async def set_joint_status(
        self,
        thread_id: str,
        run_id: str,
        run_status: Optional[RunStatus],
        checkpoint: Optional[CheckpointPayload],
        exception: Optional[BaseException] = None,
    ) -> Thread:
        """Finish a run and re-project its thread in one transaction."""
        async with self._store.transaction() as tx:
            if run_status is not None:
                if await tx.set_run_status(run_id, run_status) is None:
                    logger.info(f"Run {run_id} was already terminal; not setting {run_status!r}")
            return await self._projector.apply(tx, thread_id, checkpoint, exception)
