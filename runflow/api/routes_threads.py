from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from runflow.api.dependencies import get_auth_ctx, get_runtime
from runflow.api.schemas import HistoryRequest, ThreadCreate, ThreadStateUpdate
from runflow.services.runtime import Runtime

router = APIRouter(prefix="/threads", tags=["threads"])


@router.post("")
async def create_thread(
    body: ThreadCreate,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await runtime.threads.create(
        thread_id=body.thread_id,
        metadata=body.metadata,
        if_exists=body.if_exists,
        ctx=ctx,
    )


@router.get("/{thread_id}")
async def get_thread(thread_id: str, runtime: Runtime = Depends(get_runtime), ctx: Optional[dict] = Depends(get_auth_ctx)):
    return await runtime.threads.get(thread_id, ctx=ctx)


@router.delete("/{thread_id}")
async def delete_thread(
    thread_id: str,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    await runtime.threads.delete(thread_id, ctx=ctx)
    return {"thread_id": thread_id, "deleted": True}


@router.post("/{thread_id}/copy")
async def copy_thread(thread_id: str, runtime: Runtime = Depends(get_runtime), ctx: Optional[dict] = Depends(get_auth_ctx)):
    return await runtime.threads.copy(thread_id, ctx=ctx)


@router.get("/{thread_id}/state")
async def get_thread_state(
    thread_id: str,
    subgraphs: bool = False,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await runtime.threads.get_state(thread_id, subgraphs=subgraphs, ctx=ctx)


@router.post("/{thread_id}/state")
async def update_thread_state(
    thread_id: str,
    body: ThreadStateUpdate,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await runtime.threads.update_state(thread_id, body.values, as_node=body.as_node, ctx=ctx)


@router.get("/{thread_id}/history")
async def get_thread_history(
    thread_id: str,
    limit: int = Query(default=10, ge=1, le=1000),
    before: Optional[str] = None,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await runtime.threads.get_history(thread_id, limit=limit, before=before, ctx=ctx)


@router.post("/{thread_id}/history")
async def search_thread_history(
    thread_id: str,
    body: HistoryRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: Optional[dict] = Depends(get_auth_ctx),
):
    return await runtime.threads.get_history(
        thread_id,
        limit=body.limit,
        before=body.before,
        metadata=body.metadata,
        ctx=ctx,
    )
