from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, Optional

from langgraph.pregel import Pregel
from langgraph.store.base import BaseStore
from langgraph.types import Command

from runflow.core.errors import NotFound, UserInterrupt, UserRollback
from runflow.graphs.registry import GraphRegistry
from runflow.persistence.checkpointer import CheckpointerManager, CheckpointStore
from runflow.persistence.models import Run, RunStatus
from runflow.services.runs import RunClaim, Runs
from runflow.services.stream_manager import StreamManager
from runflow.services.thread_status import checkpoint_from_snapshot, error_payload
from runflow.services.threads import Threads
from runflow.utils.encoding import safe_encode
from runflow.utils.merge import merge_dicts

logger = logging.getLogger(__name__)


def _graph_input(kwargs: dict[str, Any]) -> Any:
    command = kwargs.get("command")
    if command:
        return Command(**command)
    return kwargs.get("input")


def _stream_modes(kwargs: dict[str, Any]) -> list[str]:
    modes = kwargs.get("stream_mode") or ["values"]
    return [modes] if isinstance(modes, str) else list(modes)


class RunWorker:
    """Pool of asyncio tasks that poll for due runs and execute their graphs."""

    def __init__(
        self,
        runs: Runs,
        threads: Threads,
        streams: StreamManager,
        graphs: GraphRegistry,
        checkpointer: CheckpointerManager,
        checkpoints: CheckpointStore,
        *,
        n_workers: int = 1,
        poll_interval: float = 0.5,
        max_retries: int = 3,
        timeout: Optional[float] = None,
        callbacks: Optional[list] = None,
        graph_store: Optional[BaseStore] = None,
    ) -> None:
        self._runs = runs
        self._threads = threads
        self._streams = streams
        self._graphs = graphs
        self._checkpointer = checkpointer
        self._checkpoints = checkpoints
        self._n_workers = n_workers
        self._poll_interval = poll_interval
        self._max_retries = max_retries
        self._timeout = timeout
        self._callbacks = callbacks or []
        self._graph_store = graph_store
        self._tasks: list[asyncio.Task] = []
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "n_workers": self._n_workers,
            "poll_interval_s": self._poll_interval,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._run_loop(i), name=f"runflow-worker-{i}") for i in range(self._n_workers)
        ]
        logger.info(f"Started {self._n_workers} run worker(s)")

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Run workers stopped")

    async def _run_loop(self, index: int) -> None:
        while not self._stop.is_set():
            try:
                claimed = await self.run_once()
            except Exception:
                # never let one bad poll kill the worker
                logger.error(f"Worker {index} failed while polling for runs", exc_info=True)
                claimed = False
            if claimed:
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> bool:
        """Claim and execute at most one due run. Returns whether a run was claimed."""
        async with aclosing(self._runs.next(limit=1)) as claims:
            async for claim in claims:
                try:
                    await self.execute(claim)
                except Exception:
                    logger.error(f"Unhandled failure executing run {claim.run['run_id']}", exc_info=True)
                return True
        return False

    async def execute(self, claim: RunClaim) -> RunStatus:
        run = claim.run
        run_id = run["run_id"]
        kwargs = run["kwargs"]
        config = kwargs.get("config") or {}
        graph_id = config.get("configurable", {}).get("graph_id")

        if claim.attempt > self._max_retries:
            exc = RuntimeError(f"Run {run_id} exceeded {self._max_retries} attempt(s)")
            logger.error(str(exc))
            self._streams.publish(run_id, "error", error_payload(exc))
            await self._finish(run, None, "error", exc)
            return "error"

        logger.info(f"Executing run {run_id} (graph={graph_id}, attempt={claim.attempt})")
        graph: Optional[Pregel] = None
        status: RunStatus = "success"
        exception: Optional[BaseException] = None
        rollback = False
        try:
            graph = await self._graphs.get(
                graph_id,
                config,
                checkpointer=self._checkpointer.get(),
                store=self._graph_store,
            )
            await self._race(claim, graph, config)
        except UserRollback as e:
            status, exception, rollback = "interrupted", e, True
        except UserInterrupt as e:
            status, exception = "interrupted", e
        except TimeoutError as e:
            status, exception = "timeout", e
            self._streams.publish(run_id, "error", error_payload(e))
        except Exception as e:
            status, exception = "error", e
            logger.error(f"Run {run_id} failed", exc_info=True)
            self._streams.publish(run_id, "error", error_payload(e))

        if rollback:
            await self._checkpoints.delete(run["thread_id"], run_id)
        await self._finish(run, graph, status, exception)
        logger.info(f"Run {run_id} finished with status {status}")
        return status

    async def _race(self, claim: RunClaim, graph: Pregel, config: dict) -> None:
        """Stream the graph until it ends, the run lock fires, or the timeout expires."""
        stream_task = asyncio.create_task(self._consume(claim.run, graph, config))
        cancel_task = asyncio.create_task(claim.control.wait())
        try:
            done, _ = await asyncio.wait(
                {stream_task, cancel_task},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stream_task in done:
                stream_task.result()
                return
            stream_task.cancel()
            await asyncio.gather(stream_task, return_exceptions=True)
            if cancel_task in done:
                raise claim.control.exception()
            raise TimeoutError(f"Run {claim.run['run_id']} exceeded {self._timeout}s")
        finally:
            for task in (stream_task, cancel_task):
                if not task.done():
                    task.cancel()

    async def _consume(self, run: Run, graph: Pregel, config: dict) -> None:
        kwargs = run["kwargs"]
        run_config = merge_dicts(config, {"metadata": merge_dicts(config.get("metadata"), {"run_id": run["run_id"]})})
        if self._callbacks:
            run_config["callbacks"] = list(self._callbacks)

        async for mode, chunk in graph.astream(
            _graph_input(kwargs),
            run_config,
            stream_mode=_stream_modes(kwargs),
        ):
            self._streams.publish(run["run_id"], mode, safe_encode(chunk))

    async def _finish(
        self,
        run: Run,
        graph: Optional[Pregel],
        status: RunStatus,
        exception: Optional[BaseException],
    ) -> None:
        run_id, thread_id = run["run_id"], run["thread_id"]
        try:
            checkpoint = None
            if graph is not None:
                snapshot = await graph.aget_state({"configurable": {"thread_id": thread_id}})
                checkpoint = checkpoint_from_snapshot(snapshot)
            await self._threads.set_joint_status(thread_id, run_id, status, checkpoint, exception)
        except NotFound:
            logger.warning(f"Thread {thread_id} disappeared before run {run_id} could be finalised")
        finally:
            self._streams.finish(run_id)
