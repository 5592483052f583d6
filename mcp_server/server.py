from __future__ import annotations

import asyncio
from typing import Annotated, Any, Literal, Optional

from mcp.server.fastmcp import FastMCP

from runflow.core.config import get_settings
from runflow.core.logging import configure_logging
from runflow.services.runtime import Runtime

server = FastMCP("runflow")

_RUNTIME: Optional[Runtime] = None
_BOOTSTRAP_LOCK = asyncio.Lock()


async def _runtime() -> Runtime:
    """
    Start the in-process runtime (store, checkpointer, workers) on first use.
    """
    global _RUNTIME
    if _RUNTIME is not None:
        return _RUNTIME
    async with _BOOTSTRAP_LOCK:
        if _RUNTIME is None:
            settings = get_settings()
            configure_logging(settings.LOG_LEVEL)
            runtime = Runtime(settings)
            await runtime.start()
            _RUNTIME = runtime
    return _RUNTIME


@server.tool()
async def start_run(
    assistant_id: Annotated[str, "Assistant id, or a graph id to use that graph's default assistant."],
    input: Annotated[Optional[dict], "Graph input."] = None,
    thread_id: Annotated[Optional[str], "Existing thread to run on. A new thread is created when omitted."] = None,
    multitask_strategy: Annotated[
        Literal["reject", "rollback", "interrupt", "enqueue"],
        "What to do if the thread already has a run in flight.",
    ] = "reject",
) -> dict:
    """
    Queue a run and return its record without waiting for it.
    """
    runtime = await _runtime()
    run = await runtime.runs.create(
        runtime.resolve_assistant_id(assistant_id),
        {"input": input},
        thread_id=thread_id,
        multitask_strategy=multitask_strategy,
        if_not_exists="create",
    )
    return {"run_id": run["run_id"], "thread_id": run["thread_id"], "status": run["status"]}


@server.tool()
async def wait_run(
    run_id: Annotated[str, "Run to wait for."],
    thread_id: Annotated[str, "Thread the run belongs to."],
) -> Any:
    """Block until the run ends and return the thread's final values."""
    runtime = await _runtime()
    return await runtime.runs.wait(run_id, thread_id=thread_id)


@server.tool()
async def cancel_run(
    run_id: Annotated[str, "Run to cancel."],
    thread_id: Annotated[str, "Thread the run belongs to."],
    action: Annotated[Literal["interrupt", "rollback"], "interrupt keeps the run's checkpoints, rollback deletes them."] = "interrupt",
) -> dict:
    runtime = await _runtime()
    await runtime.runs.cancel([run_id], thread_id=thread_id, action=action)
    return {"run_id": run_id, "action": action}


@server.tool()
async def get_run(
    run_id: Annotated[str, "Run id."],
    thread_id: Annotated[Optional[str], "Thread the run belongs to."] = None,
) -> dict:
    runtime = await _runtime()
    run = await runtime.runs.get(run_id, thread_id=thread_id)
    return {
        "run_id": run["run_id"],
        "thread_id": run["thread_id"],
        "assistant_id": run["assistant_id"],
        "status": run["status"],
        "metadata": run["metadata"],
        "created_at": run["created_at"].isoformat(),
    }


if __name__ == "__main__":
    server.run()
