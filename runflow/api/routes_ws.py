import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from runflow.api.dependencies import get_ws_runtime
from runflow.core.errors import NotFound
from runflow.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


@router.websocket("/threads/{thread_id}/runs/{run_id}/stream")
async def stream_run(websocket: WebSocket, thread_id: str, run_id: str, cancel_on_disconnect: bool = True):
    runtime = get_ws_runtime(websocket)
    user_id = websocket.headers.get("x-user-id")
    ctx = {"user_id": user_id} if user_id else None
    disconnect = CancellationToken()
    await websocket.accept()

    async def watch() -> None:
        try:
            while True:
                msg = await websocket.receive_text()
                # optional keepalive
                if msg == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            disconnect.abort("disconnect")

    watcher = asyncio.create_task(watch())
    try:
        async for event in runtime.runs.join(
            run_id,
            thread_id=thread_id if cancel_on_disconnect else None,
            disconnect=disconnect,
            ctx=ctx,
        ):
            await websocket.send_json({"event": event.event, "data": event.data})
        if not disconnect.cancelled:
            await websocket.close()
    except WebSocketDisconnect:
        # the client went away mid-send; join never saw its token fire
        logger.info(f"Stream client of run {run_id} disconnected")
        if cancel_on_disconnect:
            try:
                await runtime.runs.cancel([run_id], thread_id=thread_id, action="interrupt", ctx=ctx)
            except NotFound:
                pass
    finally:
        watcher.cancel()
