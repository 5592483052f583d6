from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query, Response

from runflow.api.dependencies import get_auth_ctx, get_runtime
from runflow.api.schemas import RunCreate
from runflow.persistence.models import RunStatus
from runflow.services.runtime import Runtime

router = APIRouter(tags=["runs"])


async def _create(runtime: Runtime, body: RunCreate, thread_id: Optional[str], ctx: Optional[dict]):
    return await runtime.runs.create(
        runtime.resolve_assistant_id(body.assistant_id),
        body.to_kwargs(),
        thread_id=thread_id,
        user_id=(ctx or {}).get("user_id"),
        metadata=body.metadata,
        multitask_strategy=body.multitask_strategy,
        if_not_exists="create" if thread_id is None else body.if_not_exists,
        after_seconds=body.after_seconds,
        ctx=ctx,
    )


@router.post("/runs")
async def create_stateless_run(
    body: RunCreate,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await _create(runtime, body, None, ctx)


@router.post("/runs/wait")
async def wait_stateless_run(
    body: RunCreate,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    run = await _create(runtime, body, None, ctx)
    return await runtime.runs.wait(run["run_id"], thread_id=run["thread_id"], ctx=ctx)


@router.post("/threads/{thread_id}/runs")
async def create_run(
    thread_id: str,
    body: RunCreate,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await _create(runtime, body, thread_id, ctx)


@router.post("/threads/{thread_id}/runs/wait")
async def create_run_and_wait(
    thread_id: str,
    body: RunCreate,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
) -> Any:
    run = await _create(runtime, body, thread_id, ctx)
    return await runtime.runs.wait(run["run_id"], thread_id=thread_id, ctx=ctx)


@router.get("/threads/{thread_id}/runs")
async def list_runs(
    thread_id: str,
    response: Response,
    limit: int = Query(default=10, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    status: Optional[RunStatus] = None,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    runs, total = await runtime.runs.search(thread_id, limit=limit, offset=offset, status=status, ctx=ctx)
    response.headers["X-Pagination-Total"] = str(total)
    return runs


@router.get("/threads/{thread_id}/runs/{run_id}")
async def get_run(
    thread_id: str,
    run_id: str,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await runtime.runs.get(run_id, thread_id=thread_id, ctx=ctx)


@router.get("/threads/{thread_id}/runs/{run_id}/join")
async def join_run(
    thread_id: str,
    run_id: str,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
) -> Any:
    await runtime.runs.get(run_id, thread_id=thread_id, ctx=ctx)
    return await runtime.runs.wait(run_id, thread_id=thread_id, ctx=ctx)


@router.post("/threads/{thread_id}/runs/{run_id}/cancel", status_code=202)
async def cancel_run(
    thread_id: str,
    run_id: str,
    action: Literal["interrupt", "rollback"] = "interrupt",
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    await runtime.runs.cancel([run_id], thread_id=thread_id, action=action, ctx=ctx)
    return {"run_id": run_id, "action": action}


@router.delete("/threads/{thread_id}/runs/{run_id}")
async def delete_run(
    thread_id: str,
    run_id: str,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    await runtime.runs.delete(run_id, thread_id=thread_id, ctx=ctx)
    return {"run_id": run_id, "deleted": True}
