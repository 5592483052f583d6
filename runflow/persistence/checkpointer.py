from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from langgraph.checkpoint.base import BaseCheckpointSaver, CheckpointTuple
from langgraph.checkpoint.memory import InMemorySaver

logger = logging.getLogger(__name__)


@dataclass
class CheckpointerHandle:
    """
    Holds:
      - checkpointer: the active saver instance used by LangGraph
      - _cm: the async context manager returned by *.from_conn_string(...), if any
    """
    checkpointer: BaseCheckpointSaver
    _cm: Any = None

    async def close(self) -> None:
        if self._cm is None:
            return
        try:
            await self._cm.__aexit__(None, None, None)
        except Exception:
            # We don't want shutdown to crash the server
            logger.warning("Error while closing checkpointer", exc_info=True)


class CheckpointerManager:
    def __init__(self, backend: str, *, database_url: str = "", sqlite_path: str = "") -> None:
        self._backend = backend.strip().lower()
        self._database_url = database_url
        self._sqlite_path = sqlite_path
        self._handle: Optional[CheckpointerHandle] = None

    async def start(self) -> BaseCheckpointSaver:
        if self._handle is not None:
            return self._handle.checkpointer

        if self._backend == "postgres":
            from langgraph.checkpoint.postgres.aio import AsyncPostgresSaver

            cm = AsyncPostgresSaver.from_conn_string(self._database_url)
            checkpointer = await cm.__aenter__()
            await checkpointer.setup()
            self._handle = CheckpointerHandle(checkpointer=checkpointer, _cm=cm)
        elif self._backend == "sqlite":
            from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

            Path(self._sqlite_path).parent.mkdir(parents=True, exist_ok=True)
            cm = AsyncSqliteSaver.from_conn_string(self._sqlite_path)
            checkpointer = await cm.__aenter__()
            await checkpointer.setup()
            self._handle = CheckpointerHandle(checkpointer=checkpointer, _cm=cm)
        elif self._backend == "memory":
            self._handle = CheckpointerHandle(checkpointer=InMemorySaver())
        else:
            raise ValueError(
                f"Unsupported CHECKPOINT_BACKEND={self._backend!r} (use 'postgres', 'sqlite' or 'memory')"
            )

        logger.info(f"Checkpointer started ({self._backend})")
        return self._handle.checkpointer

    def get(self) -> BaseCheckpointSaver:
        if self._handle is None:
            raise RuntimeError("CheckpointerManager not started yet")
        return self._handle.checkpointer

    async def stop(self) -> None:
        if self._handle is None:
            return
        await self._handle.close()
        self._handle = None


def _thread_config(thread_id: str) -> dict:
    return {"configurable": {"thread_id": thread_id}}


class CheckpointStore:
    """
    Thread-level checkpoint maintenance on top of a LangGraph saver:
    cascading delete (whole thread, or only the checkpoints a run produced)
    and duplication into a new thread.
    """

    def __init__(self, manager: CheckpointerManager) -> None:
        self._manager = manager

    async def delete(self, thread_id: str, run_id: Optional[str] = None) -> None:
        saver = self._manager.get()
        if run_id is None:
            await saver.adelete_thread(thread_id)
            return

        history = [t async for t in saver.alist(_thread_config(thread_id))]
        if not any(t.metadata.get("run_id") == run_id for t in history):
            return

        # savers only delete whole threads: drop it and replay what survives
        await saver.adelete_thread(thread_id)
        await self._replay(history, thread_id, keep=lambda t: t.metadata.get("run_id") != run_id)
        logger.info(f"Deleted checkpoints of run {run_id} on thread {thread_id}")

    async def copy(self, old_thread_id: str, new_thread_id: str) -> None:
        saver = self._manager.get()
        history = [t async for t in saver.alist(_thread_config(old_thread_id))]
        await self._replay(history, new_thread_id)

    async def _replay(
        self,
        history: list[CheckpointTuple],
        thread_id: str,
        keep: Callable[[CheckpointTuple], bool] = lambda _t: True,
    ) -> None:
        saver = self._manager.get()
        # alist yields newest first; parents must be written before children
        for tup in reversed(history):
            if not keep(tup):
                continue
            source = tup.config["configurable"]
            target: dict[str, Any] = {
                "thread_id": thread_id,
                "checkpoint_ns": source.get("checkpoint_ns", ""),
            }
            if tup.parent_config:
                target["checkpoint_id"] = tup.parent_config["configurable"]["checkpoint_id"]

            metadata = dict(tup.metadata)
            metadata["thread_id"] = thread_id
            saved = await saver.aput(
                {"configurable": target},
                tup.checkpoint,
                metadata,
                tup.checkpoint.get("channel_versions", {}),
            )

            writes_by_task: dict[str, list[tuple[str, Any]]] = defaultdict(list)
            for task_id, channel, value in tup.pending_writes or []:
                writes_by_task[task_id].append((channel, value))
            for task_id, writes in writes_by_task.items():
                await saver.aput_writes(saved, writes, task_id)
