from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from langgraph.store.base import BaseStore
from langgraph.store.memory import InMemoryStore

from runflow.core.auth import Authorizer
from runflow.core.config import Settings
from runflow.graphs.registry import GraphRegistry
from runflow.persistence.base import Store
from runflow.persistence.checkpointer import CheckpointerManager, CheckpointStore
from runflow.persistence.memory_store import MemoryStore
from runflow.persistence.pg_store import PostgresStore
from runflow.services.runs import Runs
from runflow.services.stream_manager import StreamManager
from runflow.services.thread_status import ThreadStatusProjector
from runflow.services.threads import Threads
from runflow.services.worker import RunWorker
from runflow.utils.ids import assistant_id_for_graph
from runflow.utils.imports import load_object

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> Store:
    backend = settings.STORAGE_BACKEND.strip().lower()
    if backend == "postgres":
        return PostgresStore(settings.DATABASE_URL)
    if backend == "memory":
        return MemoryStore()
    raise ValueError(f"Unsupported STORAGE_BACKEND={backend!r} (use 'postgres' or 'memory')")


class Runtime:
    """
    Owns every long-lived component of the service. One instance per
    process (the FastAPI lifespan or the MCP server); tests build a
    fresh one each.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Store] = None,
        graphs: Optional[GraphRegistry] = None,
        authorizer: Optional[Authorizer] = None,
        callbacks: Optional[list] = None,
        graph_store: Optional[BaseStore] = None,
    ) -> None:
        self.settings = settings
        self.store = store or build_store(settings)

        if graphs is None:
            graphs = GraphRegistry()
            graphs.load(settings.GRAPHS)
        self.graphs = graphs

        if authorizer is None:
            authorizer = Authorizer(load_object(settings.AUTH_PATH) if settings.AUTH_PATH else None)
        if callbacks is None:
            callbacks = list(load_object(settings.CALLBACKS_PATH)) if settings.CALLBACKS_PATH else []

        self.graph_store = graph_store or InMemoryStore()
        self.checkpointer = CheckpointerManager(
            settings.CHECKPOINT_BACKEND,
            database_url=settings.DATABASE_URL,
            sqlite_path=settings.SQLITE_PATH,
        )
        self.checkpoints = CheckpointStore(self.checkpointer)
        self.streams = StreamManager(retention_seconds=settings.STREAM_RETENTION_SECONDS)
        projector = ThreadStatusProjector()

        self.runs = Runs(
            self.store,
            self.streams,
            checkpoints=self.checkpoints,
            projector=projector,
            authorizer=authorizer,
            poll_timeout=settings.STREAM_POLL_TIMEOUT,
        )
        self.threads = Threads(
            self.store,
            self.streams,
            self.graphs,
            self.checkpointer,
            self.checkpoints,
            projector=projector,
            authorizer=authorizer,
            graph_store=self.graph_store,
        )
        self.worker = RunWorker(
            self.runs,
            self.threads,
            self.streams,
            self.graphs,
            self.checkpointer,
            self.checkpoints,
            n_workers=settings.N_WORKERS,
            poll_interval=settings.WORKER_POLL_INTERVAL,
            max_retries=settings.BG_JOB_MAX_RETRIES,
            timeout=settings.BG_JOB_TIMEOUT,
            callbacks=callbacks,
            graph_store=self.graph_store,
        )

    async def start(self, *, workers: bool = True) -> None:
        await self.store.setup()
        await self.checkpointer.start()
        await self.seed_assistants()
        if workers and self.settings.N_WORKERS > 0:
            self.worker.start()
        logger.info(f"Runtime started (storage={self.settings.STORAGE_BACKEND}, graphs={self.graphs.graph_ids()})")

    async def stop(self) -> None:
        await self.worker.stop()
        await self.checkpointer.stop()
        await self.store.close()
        logger.info("Runtime stopped")

    async def seed_assistants(self) -> None:
        """One default assistant per registered graph, keyed by uuid5(graph_id)."""
        now = datetime.now(timezone.utc)
        async with self.store.transaction() as tx:
            for graph_id in self.graphs.graph_ids():
                await tx.put_assistant(
                    {
                        "assistant_id": assistant_id_for_graph(graph_id),
                        "graph_id": graph_id,
                        "name": graph_id,
                        "config": {},
                        "metadata": {"created_by": "system"},
                        "created_at": now,
                        "updated_at": now,
                    }
                )

    def resolve_assistant_id(self, assistant_id: str) -> str:
        """Accept a graph id wherever an assistant id is expected."""
        if assistant_id in self.graphs:
            return assistant_id_for_graph(assistant_id)
        return assistant_id
